"""Data plane wiring: bus, normalizer, gateway, supervisor and transport.

:class:`DataPlane` assembles the whole pipeline for a static list of feed
adapters::

    adapters -> RawEventPublisher -> raw.* -> Normalizer
             -> canonical.events -> FanoutGateway -> client sessions

Start order is downstream first (gateway, normalizer, WebSocket server,
then adapters) so no event is published before its consumers exist.
``stop()`` reverses it.

Example::

    config = DataPlaneConfig(websocket_enabled=True)
    adapters = [SyntheticExchangeAdapter(SyntheticFeedConfig(symbols=["AAPL"]))]
    with DataPlane(config, adapters) as plane:
        time.sleep(10)
        print(plane.stats())
"""

import logging
import os
from enum import Enum
from typing import Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.bus import BackboneConsumer, BackbonePublisher, InMemoryEventBus
from core.feed_health import AdapterHealthMonitor, FeedHealthConfig
from core.gateway import FanoutGateway
from core.normalizer import Normalizer, NormalizerConfig
from infra.feed_adapter import FeedAdapter
from infra.mqtt_bus import MQTTBusConfig, MQTTEventBus
from infra.supervisor import FeedSupervisor, FeedSupervisorConfig
from infra.ws_gateway import WebSocketGatewayConfig, WebSocketGatewayServer

logger: logging.Logger = logging.getLogger(__name__)

_TRUE_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})


class BackboneType(str, Enum):
    """Bus implementation backing the pipeline."""

    MEMORY = "memory"
    MQTT = "mqtt"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DataPlaneConfig(BaseModel):
    """Top-level configuration for :class:`DataPlane`.

    Attributes:
        backbone: ``memory`` (default) or ``mqtt``.
        mqtt: Broker settings, used when ``backbone`` is ``mqtt``.
        normalizer: Normalizer settings.
        supervisor: Adapter supervision settings.
        health: Adapter liveness thresholds.
        websocket_enabled: Serve the gateway over WebSocket.
        websocket: WebSocket server settings.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backbone: BackboneType = Field(default=BackboneType.MEMORY)
    mqtt: MQTTBusConfig = Field(default_factory=MQTTBusConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    supervisor: FeedSupervisorConfig = Field(default_factory=FeedSupervisorConfig)
    health: FeedHealthConfig = Field(default_factory=FeedHealthConfig)
    websocket_enabled: bool = Field(default=False)
    websocket: WebSocketGatewayConfig = Field(default_factory=WebSocketGatewayConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "DataPlaneConfig":
        """Build a config from ``PULSEWIRE_*`` environment variables.

        Unset variables keep their defaults. Values are validated by the
        models, so a bad value raises ``pydantic.ValidationError``.

        Recognized variables: ``PULSEWIRE_BACKBONE``,
        ``PULSEWIRE_MQTT_HOST``, ``PULSEWIRE_MQTT_PORT``,
        ``PULSEWIRE_MQTT_TOPIC_PREFIX``, ``PULSEWIRE_SCHEMA_VERSION``,
        ``PULSEWIRE_HEARTBEAT_INTERVAL``, ``PULSEWIRE_WS_ENABLED``,
        ``PULSEWIRE_WS_HOST``, ``PULSEWIRE_WS_PORT``.
        """
        env: Mapping[str, str] = os.environ if environ is None else environ

        mqtt_kwargs: dict[str, object] = {}
        if "PULSEWIRE_MQTT_HOST" in env:
            mqtt_kwargs["host"] = env["PULSEWIRE_MQTT_HOST"]
        if "PULSEWIRE_MQTT_PORT" in env:
            mqtt_kwargs["port"] = env["PULSEWIRE_MQTT_PORT"]
        if "PULSEWIRE_MQTT_TOPIC_PREFIX" in env:
            mqtt_kwargs["topic_prefix"] = env["PULSEWIRE_MQTT_TOPIC_PREFIX"]

        ws_kwargs: dict[str, object] = {}
        if "PULSEWIRE_WS_HOST" in env:
            ws_kwargs["host"] = env["PULSEWIRE_WS_HOST"]
        if "PULSEWIRE_WS_PORT" in env:
            ws_kwargs["port"] = env["PULSEWIRE_WS_PORT"]

        normalizer_kwargs: dict[str, object] = {}
        if "PULSEWIRE_SCHEMA_VERSION" in env:
            normalizer_kwargs["schema_version"] = env["PULSEWIRE_SCHEMA_VERSION"]

        supervisor_kwargs: dict[str, object] = {}
        if "PULSEWIRE_HEARTBEAT_INTERVAL" in env:
            supervisor_kwargs["heartbeat_interval_seconds"] = env[
                "PULSEWIRE_HEARTBEAT_INTERVAL"
            ]

        return cls(
            backbone=env.get("PULSEWIRE_BACKBONE", BackboneType.MEMORY.value).lower(),
            mqtt=MQTTBusConfig(**mqtt_kwargs),
            normalizer=NormalizerConfig(**normalizer_kwargs),
            supervisor=FeedSupervisorConfig(**supervisor_kwargs),
            websocket_enabled=(
                env.get("PULSEWIRE_WS_ENABLED", "").strip().lower() in _TRUE_VALUES
            ),
            websocket=WebSocketGatewayConfig(**ws_kwargs),
        )


# ---------------------------------------------------------------------------
# Data plane
# ---------------------------------------------------------------------------


class DataPlane:
    """The assembled pipeline for a static set of adapters.

    Args:
        config: Data plane configuration. Defaults to
            ``DataPlaneConfig()`` (in-memory bus, no WebSocket server).
        adapters: Feed adapters to supervise.
        bus: Optional pre-built bus implementing both backbone protocols.
            Overrides ``config.backbone``.
    """

    def __init__(
        self,
        config: DataPlaneConfig | None = None,
        adapters: Sequence[FeedAdapter] = (),
        bus: object | None = None,
    ) -> None:
        self._config: DataPlaneConfig = config or DataPlaneConfig()
        self._bus: object = bus if bus is not None else self._build_bus()
        consumer: BackboneConsumer = self._bus  # type: ignore[assignment]
        publisher: BackbonePublisher = self._bus  # type: ignore[assignment]

        self._health: AdapterHealthMonitor = AdapterHealthMonitor(self._config.health)
        self._normalizer: Normalizer = Normalizer(
            consumer,
            publisher,
            self._config.normalizer,
        )
        self._gateway: FanoutGateway = FanoutGateway(
            consumer,
            self._config.normalizer.canonical_topic,
        )
        self._supervisor: FeedSupervisor = FeedSupervisor(
            adapters,
            publisher,
            self._config.supervisor,
            health=self._health,
        )
        self._ws_server: WebSocketGatewayServer | None = (
            WebSocketGatewayServer(self._gateway, self._config.websocket)
            if self._config.websocket_enabled
            else None
        )
        self._running: bool = False

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def bus(self) -> object:
        return self._bus

    @property
    def normalizer(self) -> Normalizer:
        return self._normalizer

    @property
    def gateway(self) -> FanoutGateway:
        return self._gateway

    @property
    def supervisor(self) -> FeedSupervisor:
        return self._supervisor

    @property
    def health(self) -> AdapterHealthMonitor:
        return self._health

    @property
    def websocket_server(self) -> WebSocketGatewayServer | None:
        return self._ws_server

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start downstream stages first, then the adapters. Idempotent."""
        if self._running:
            return
        if isinstance(self._bus, MQTTEventBus):
            self._bus.connect()
        self._gateway.start()
        self._normalizer.start()
        if self._ws_server is not None:
            self._ws_server.start()
        self._supervisor.start()
        self._running = True
        logger.info(
            "Data plane started (backbone=%s, adapters=%d)",
            type(self._bus).__name__,
            len(self._supervisor.adapters),
        )

    def stop(self) -> None:
        """Stop adapters first, then downstream stages. Idempotent."""
        if not self._running:
            return
        self._running = False
        self._supervisor.stop()
        if self._ws_server is not None:
            self._ws_server.stop()
        self._normalizer.stop()
        self._gateway.stop()
        if isinstance(self._bus, MQTTEventBus):
            self._bus.shutdown()
        logger.info("Data plane stopped")

    def __enter__(self) -> "DataPlane":
        self.start()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, object]:
        """Return a nested snapshot of every stage's counters."""
        bus_stats: object = (
            self._bus.stats() if hasattr(self._bus, "stats") else None
        )
        if isinstance(bus_stats, BaseModel):
            bus_stats = bus_stats.model_dump()
        return {
            "running": self._running,
            "bus": bus_stats,
            "supervisor": self._supervisor.stats(),
            "normalizer": self._normalizer.stats(),
            "gateway": self._gateway.stats(),
            "health": {
                adapter_id: health.model_dump()
                for adapter_id, health in self._health.snapshot().items()
            },
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _build_bus(self) -> object:
        if self._config.backbone == BackboneType.MQTT:
            return MQTTEventBus(self._config.mqtt)
        return InMemoryEventBus()
