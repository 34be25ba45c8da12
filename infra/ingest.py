"""Raw ingest: turn adapter messages into raw bus events.

:class:`RawEventPublisher` is the :class:`~infra.feed_adapter.FeedEventHandler`
shared by every adapter the supervisor runs. It decodes each
:class:`~core.events.RawFeedMessage` JSON payload into a
:class:`~core.events.RawMarketEvent` and publishes it on the raw topic for
its type, keyed by instrument id.

Decoding rules:
    - ``type`` ``"TRADE"`` → :class:`~core.events.Trade` on ``raw.trades``;
      ``event_id`` is the payload ``tradeId`` (a fresh uuid if absent);
      size comes from ``quantity``, or ``qty`` when that key is absent.
    - ``type`` ``"QUOTE"`` → :class:`~core.events.Quote` on ``raw.quotes``;
      ``event_id`` is a fresh uuid.
    - ``symbol`` → ``instrument_id``; payload ``timestamp`` → exchange
      time; the adapter's receive time is carried through unchanged.

Undecodable payloads (bad JSON, unknown type, failed payload validation)
are counted and logged with rate limiting, never raised: the adapter
keeps running.

Thread safety:
    Callbacks from different adapters arrive concurrently on their own
    worker threads. Counters and per-adapter sequence tracking are
    guarded by one lock.
"""

import json
import logging
import threading
import uuid
from typing import Any

from core.bus import RAW_QUOTES_TOPIC, RAW_TRADES_TOPIC, BackbonePublisher
from core.errors import EventValidationError
from core.events import EventType, Quote, RawFeedMessage, RawMarketEvent, Trade
from core.feed_health import AdapterHealthMonitor

logger: logging.Logger = logging.getLogger(__name__)

_LOG_FIRST_N: int = 10
"""Number of initial decode errors logged with full stack trace."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every N-th error."""


def decode_raw_event(message: RawFeedMessage) -> tuple[str, RawMarketEvent]:
    """Decode an adapter payload into ``(topic, event)``.

    Args:
        message: The raw adapter message.

    Returns:
        The raw topic to publish on and the decoded event.

    Raises:
        EventValidationError: If the payload cannot be decoded.
    """
    try:
        data: Any = json.loads(message.payload)
        if not isinstance(data, dict):
            raise EventValidationError(
                f"payload is not a JSON object: {type(data).__name__}"
            )
        kind: object = data.get("type")
        if kind == EventType.TRADE.value:
            topic: str = RAW_TRADES_TOPIC
            event_type: EventType = EventType.TRADE
            event_id: str = data.get("tradeId") or uuid.uuid4().hex
            # ``qty`` is the short form of ``quantity``.
            size: Any = data["quantity"] if "quantity" in data else data["qty"]
            payload: Trade | Quote = Trade(
                price=data["price"],
                size=size,
                side=data.get("side"),
                conditions=data.get("conditions"),
            )
        elif kind == EventType.QUOTE.value:
            topic = RAW_QUOTES_TOPIC
            event_type = EventType.QUOTE
            event_id = uuid.uuid4().hex
            payload = Quote(
                bid_price=data["bidPrice"],
                bid_size=data["bidSize"],
                ask_price=data["askPrice"],
                ask_size=data["askSize"],
            )
        else:
            raise EventValidationError(f"unsupported message type: {kind!r}")

        event: RawMarketEvent = RawMarketEvent(
            event_id=event_id,
            instrument_id=data.get("symbol") or "",
            event_type=event_type,
            exchange_timestamp=data.get("timestamp"),
            receive_timestamp=message.receive_timestamp,
            payload=payload,
        )
    except EventValidationError:
        raise
    except (ValueError, KeyError, TypeError) as exc:
        raise EventValidationError(f"undecodable payload: {exc}") from exc
    return topic, event


class RawEventPublisher:
    """Feed event handler publishing decoded raw events to the bus.

    Args:
        publisher: Bus to publish raw events on.
        health: Optional monitor receiving lifecycle and liveness signals.

    Example::

        bus = InMemoryEventBus()
        ingest = RawEventPublisher(bus, health=AdapterHealthMonitor())
        adapter.connect(ingest)
    """

    def __init__(
        self,
        publisher: BackbonePublisher,
        health: AdapterHealthMonitor | None = None,
    ) -> None:
        self._publisher: BackbonePublisher = publisher
        self._health: AdapterHealthMonitor | None = health

        # Guarded by _lock
        self._last_sequence: dict[str, int] = {}
        self._received: int = 0
        self._published: int = 0
        self._decode_errors: int = 0
        self._publish_errors: int = 0
        self._sequence_gaps: int = 0
        self._adapter_errors: int = 0
        self._heartbeat_timeouts: int = 0
        self._lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # FeedEventHandler
    # ------------------------------------------------------------------

    def on_connected(self, adapter_id: str) -> None:
        with self._lock:
            self._last_sequence.pop(adapter_id, None)
        if self._health is not None:
            self._health.on_connected(adapter_id)

    def on_disconnected(self, adapter_id: str, reason: str) -> None:
        if self._health is not None:
            self._health.on_disconnected(adapter_id, reason)

    def on_message(self, adapter_id: str, message: RawFeedMessage) -> None:
        """Decode and publish one adapter message. Never raises."""
        self._track_sequence(adapter_id, message)
        if self._health is not None:
            self._health.on_message(adapter_id)

        try:
            topic, event = decode_raw_event(message)
        except EventValidationError:
            self._log_decode_error(adapter_id)
            return

        try:
            self._publisher.publish(topic, event.instrument_id, event)
        except Exception:
            with self._lock:
                self._publish_errors += 1
                count: int = self._publish_errors
            if count <= _LOG_FIRST_N or count % _LOG_EVERY_N == 0:
                logger.exception(
                    "Failed to publish raw event from %s to %s (total=%d)",
                    adapter_id,
                    topic,
                    count,
                )
            return

        with self._lock:
            self._published += 1

    def on_error(self, adapter_id: str, error: Exception) -> None:
        with self._lock:
            self._adapter_errors += 1
        logger.warning("Adapter %s reported error: %s", adapter_id, error)

    def on_heartbeat_timeout(self, adapter_id: str) -> None:
        with self._lock:
            self._heartbeat_timeouts += 1
        if self._health is not None:
            self._health.on_heartbeat_timeout(adapter_id)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def decode_errors(self) -> int:
        with self._lock:
            return self._decode_errors

    @property
    def sequence_gaps(self) -> int:
        with self._lock:
            return self._sequence_gaps

    def stats(self) -> dict[str, int]:
        """Return ingest counters."""
        with self._lock:
            return {
                "received": self._received,
                "published": self._published,
                "decode_errors": self._decode_errors,
                "publish_errors": self._publish_errors,
                "sequence_gaps": self._sequence_gaps,
                "adapter_errors": self._adapter_errors,
                "heartbeat_timeouts": self._heartbeat_timeouts,
            }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _track_sequence(self, adapter_id: str, message: RawFeedMessage) -> None:
        gap: int = 0
        with self._lock:
            self._received += 1
            if not message.has_sequence_number():
                return
            last: int | None = self._last_sequence.get(adapter_id)
            if last is not None and message.sequence_number != last + 1:
                gap = message.sequence_number - last - 1
                self._sequence_gaps += 1
            self._last_sequence[adapter_id] = message.sequence_number
        if gap:
            logger.warning(
                "Sequence gap from %s: expected %d, got %d",
                adapter_id,
                message.sequence_number - gap,
                message.sequence_number,
            )

    def _log_decode_error(self, adapter_id: str) -> None:
        """Count a decode failure and log it with rate limiting.

        Must be called from within an ``except`` block.
        """
        with self._lock:
            self._decode_errors += 1
            count: int = self._decode_errors
        if count <= _LOG_FIRST_N:
            logger.exception(
                "Failed to decode message from %s (%d/%d)",
                adapter_id,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error(
                "Failed to decode message from %s (total=%d)",
                adapter_id,
                count,
            )
