"""Broker-backed event bus over MQTT (paho-mqtt).

:class:`MQTTEventBus` implements the same
:class:`~core.bus.BackbonePublisher` / :class:`~core.bus.BackboneConsumer`
protocols as the in-memory bus, so pipeline stages can run in separate
processes around a shared broker.

Architecture note:
    Uses synchronous paho-mqtt with its background network thread
    (``loop_start()``) rather than async/await. Message callbacks run
    inline in that thread; handlers must be non-blocking.

Wire format:
    Bus topics are prefixed (``pulsewire/raw.trades``) and every event is
    serialized with :func:`core.events.encode_event`, a JSON envelope
    naming the event model, and decoded back into the same model on the
    consuming side.

Connection semantics:
    ``clean_session=True``: at-most-once delivery, no persistence and no
    replay on reconnect. The topic → handlers registry is the source of
    truth and is replayed to the broker on every successful connect.
    Transport reconnection is delegated to paho's own loop using
    ``reconnect_delay_set(min, max)``; nothing above the bus retries.

Callback contract:
    Handlers are isolated per invocation like the in-memory bus: a
    raising handler is counted and logged and never affects the others.
"""

import logging
import threading
import time
import uuid
from enum import Enum
from typing import Any

import paho.mqtt.client as mqtt
from pydantic import BaseModel, ConfigDict, Field

from core.bus import EventHandler
from core.errors import EventValidationError
from core.events import decode_event, encode_event

logger: logging.Logger = logging.getLogger(__name__)

_LOG_FIRST_N: int = 10
"""Number of initial handler/decode errors logged with full stack trace."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every N-th error."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ClientState(str, Enum):
    """Connection state machine for :class:`MQTTEventBus`.

    States:
        INIT: Bus created but ``connect()`` not yet called.
        CONNECTING: Network connect issued, awaiting CONNACK.
        CONNECTED: Broker accepted the session, subscriptions replayed.
        RECONNECTING: Connection lost, paho is retrying.
        SHUTDOWN: ``shutdown()`` called; terminal state.
    """

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    SHUTDOWN = "SHUTDOWN"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MQTTBusConfig(BaseModel):
    """Configuration for :class:`MQTTEventBus`.

    Attributes:
        host: Broker hostname.
        port: Broker port. Default 1883.
        keepalive: MQTT keepalive interval in seconds.
        topic_prefix: Prefix joined to every bus topic with ``/``.
        client_id: MQTT client id. Empty lets the broker assign one.
        qos: Publish/subscribe QoS (0 or 1).
        username: Optional broker username.
        password: Optional broker password.
        reconnect_min_delay: Minimum reconnect backoff in seconds.
        reconnect_max_delay: Maximum reconnect backoff in seconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(default="localhost", min_length=1, description="Broker host")
    port: int = Field(default=1883, gt=0, le=65535, description="Broker port")
    keepalive: int = Field(
        default=30,
        ge=5,
        le=300,
        description="MQTT keepalive interval in seconds",
    )
    topic_prefix: str = Field(default="pulsewire", description="Bus topic prefix")
    client_id: str = Field(
        default_factory=lambda: f"pulsewire-{uuid.uuid4().hex[:8]}",
        description="MQTT client id",
    )
    qos: int = Field(default=0, ge=0, le=1, description="MQTT QoS level")
    username: str | None = Field(default=None, description="Broker username")
    password: str | None = Field(default=None, description="Broker password")
    reconnect_min_delay: int = Field(
        default=1,
        ge=1,
        description="Minimum reconnect backoff delay in seconds",
    )
    reconnect_max_delay: int = Field(
        default=30,
        ge=1,
        description="Maximum reconnect backoff delay in seconds",
    )


# ---------------------------------------------------------------------------
# MQTT Event Bus
# ---------------------------------------------------------------------------


class MQTTEventBus:
    """Event bus transported over an MQTT broker.

    Args:
        config: Broker and topic configuration.

    Example::

        bus = MQTTEventBus(MQTTBusConfig(host="broker.local"))
        bus.connect()
        bus.subscribe("canonical.events", gateway.broadcast)
        ...
        bus.shutdown()
    """

    def __init__(self, config: MQTTBusConfig | None = None) -> None:
        self._config: MQTTBusConfig = config or MQTTBusConfig()
        self._prefix: str = self._config.topic_prefix.strip("/")

        self._client: mqtt.Client = self._create_mqtt_client()

        # Subscription registry: bus topic → handlers (source of truth)
        self._subscriptions: dict[str, tuple[EventHandler, ...]] = {}
        self._sub_lock: threading.Lock = threading.Lock()

        # State machine
        self._state: ClientState = ClientState.INIT
        self._state_lock: threading.Lock = threading.Lock()

        # Counters (guarded by _counter_lock)
        self._messages_published: int = 0
        self._messages_received: int = 0
        self._decode_errors: int = 0
        self._callback_errors: int = 0
        self._reconnect_count: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

        # Timestamps
        self._last_connect_ts: float = 0.0
        self._last_disconnect_ts: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        """Whether the bus is currently connected to the broker."""
        with self._state_lock:
            return self._state == ClientState.CONNECTED

    @property
    def state(self) -> ClientState:
        """Current connection state."""
        with self._state_lock:
            return self._state

    def connect(self) -> None:
        """Connect to the broker and start the network loop.

        Raises:
            RuntimeError: If the bus is not in INIT state.
            OSError: If the broker cannot be reached.
        """
        with self._state_lock:
            if self._state != ClientState.INIT:
                raise RuntimeError(f"Cannot connect: bus is in {self._state} state")
            self._state = ClientState.CONNECTING

        self._client.connect(
            host=self._config.host,
            port=self._config.port,
            keepalive=self._config.keepalive,
        )
        self._client.loop_start()
        logger.info(
            "MQTT bus started, connecting to %s:%d",
            self._config.host,
            self._config.port,
        )

    def publish(self, topic: str, key: str, event: Any) -> None:
        """Serialize ``event`` and publish it to the broker.

        ``key`` is not used by MQTT; per-instrument ordering holds because
        a topic is delivered in order.

        Raises:
            EventValidationError: If the event type cannot be encoded.
        """
        payload: bytes = encode_event(event)
        self._client.publish(
            self._broker_topic(topic),
            payload=payload,
            qos=self._config.qos,
        )
        with self._counter_lock:
            self._messages_published += 1

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``topic``.

        The broker subscription is sent immediately when connected;
        otherwise it is replayed on the next successful connect.
        """
        with self._sub_lock:
            existing: tuple[EventHandler, ...] = self._subscriptions.get(topic, ())
            self._subscriptions[topic] = existing + (handler,)
            if not existing and self.connected:
                self._client.subscribe(self._broker_topic(topic), qos=self._config.qos)
                logger.info("Subscribed to topic: %s", topic)

    def unsubscribe(self, topic: str) -> None:
        """Remove every handler on ``topic``. Idempotent."""
        with self._sub_lock:
            if topic not in self._subscriptions:
                return
            del self._subscriptions[topic]
            if self.connected:
                self._client.unsubscribe(self._broker_topic(topic))
                logger.info("Unsubscribed from topic: %s", topic)

    def shutdown(self) -> None:
        """Stop the network loop and disconnect. Idempotent."""
        with self._state_lock:
            if self._state == ClientState.SHUTDOWN:
                return
            self._state = ClientState.SHUTDOWN

        logger.info("Shutting down MQTT bus")
        try:
            self._client.disconnect()
        except Exception:
            logger.debug("Exception during disconnect", exc_info=True)
        try:
            self._client.loop_stop()
        except Exception:
            logger.debug("Exception during loop_stop", exc_info=True)

        with self._counter_lock:
            published: int = self._messages_published
            received: int = self._messages_received
            errors: int = self._callback_errors
        logger.info(
            "MQTT bus shut down (published=%d, received=%d, errors=%d)",
            published,
            received,
            errors,
        )

    def stats(self) -> dict[str, str | int | float | bool]:
        """Return bus statistics."""
        with self._state_lock:
            current_state: str = self._state.value
        with self._counter_lock:
            return {
                "state": current_state,
                "connected": current_state == ClientState.CONNECTED.value,
                "messages_published": self._messages_published,
                "messages_received": self._messages_received,
                "decode_errors": self._decode_errors,
                "callback_errors": self._callback_errors,
                "reconnect_count": self._reconnect_count,
                "last_connect_ts": self._last_connect_ts,
                "last_disconnect_ts": self._last_disconnect_ts,
            }

    # ------------------------------------------------------------------
    # MQTT Client Factory
    # ------------------------------------------------------------------

    def _create_mqtt_client(self) -> mqtt.Client:
        client: mqtt.Client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._config.client_id,
            clean_session=True,
        )
        if self._config.username is not None:
            client.username_pw_set(self._config.username, self._config.password)
        client.reconnect_delay_set(
            min_delay=self._config.reconnect_min_delay,
            max_delay=self._config.reconnect_max_delay,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _broker_topic(self, topic: str) -> str:
        return f"{self._prefix}/{topic}" if self._prefix else topic

    def _bus_topic(self, broker_topic: str) -> str:
        if self._prefix and broker_topic.startswith(self._prefix + "/"):
            return broker_topic[len(self._prefix) + 1 :]
        return broker_topic

    # ------------------------------------------------------------------
    # MQTT Callbacks (paho network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: object,
        reason_code: Any,
        properties: object = None,
    ) -> None:
        """Mark CONNECTED and replay every registered topic.

        State transitions to CONNECTED only happen here, after the
        broker's CONNACK.
        """
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return

        with self._state_lock:
            if self._state == ClientState.SHUTDOWN:
                return
            was_reconnecting: bool = self._state == ClientState.RECONNECTING
            self._state = ClientState.CONNECTED
        self._last_connect_ts = time.time()
        if was_reconnecting:
            with self._counter_lock:
                self._reconnect_count += 1
        logger.info(
            "Connected to MQTT broker at %s:%d",
            self._config.host,
            self._config.port,
        )

        with self._sub_lock:
            topics: list[str] = list(self._subscriptions.keys())
        for topic in topics:
            client.subscribe(self._broker_topic(topic), qos=self._config.qos)
            logger.info("Replayed subscription: %s", topic)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: object,
        reason_code: Any,
        properties: object = None,
    ) -> None:
        """Record the disconnect; paho's loop handles reconnection."""
        self._last_disconnect_ts = time.time()
        with self._state_lock:
            if self._state == ClientState.SHUTDOWN:
                logger.info("Disconnected from MQTT broker (clean)")
                return
            self._state = ClientState.RECONNECTING
        logger.warning("Unexpected MQTT disconnect (%s), reconnecting", reason_code)

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: object,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Decode and dispatch to every handler of the bus topic."""
        with self._counter_lock:
            self._messages_received += 1

        topic: str = self._bus_topic(msg.topic)
        handlers: tuple[EventHandler, ...] = self._subscriptions.get(topic, ())
        if not handlers:
            return

        try:
            event: BaseModel = decode_event(msg.payload)
        except EventValidationError:
            with self._counter_lock:
                self._decode_errors += 1
                count: int = self._decode_errors
            if count <= _LOG_FIRST_N or count % _LOG_EVERY_N == 0:
                logger.exception("Undecodable message on topic %s (total=%d)", topic, count)
            return

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                with self._counter_lock:
                    self._callback_errors += 1
                    errors: int = self._callback_errors
                if errors <= _LOG_FIRST_N:
                    logger.exception(
                        "Callback error for topic %s (%d/%d)",
                        topic,
                        errors,
                        _LOG_FIRST_N,
                    )
                elif errors % _LOG_EVERY_N == 0:
                    logger.error("Callback error for topic %s (total=%d)", topic, errors)
