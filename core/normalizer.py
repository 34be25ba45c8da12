"""Normalizer: validate raw events and republish them in canonical form.

The :class:`Normalizer` subscribes to the raw topics, checks every
:class:`~core.events.RawMarketEvent`, stamps valid ones with a publish
time and the configured schema version, and publishes the resulting
:class:`~core.events.CanonicalEvent` on the canonical topic keyed by
instrument id.

Validation:
    An event is publishable when it has a non-blank ``event_id``, a
    non-blank ``instrument_id``, an ``event_type``, and a payload whose
    variant matches that type. Anything else increments
    :attr:`Normalizer.error_count` and is dropped: no retry, no
    forwarding.

Threading:
    The normalizer is a bus subscriber, so it runs on whichever thread
    published the raw event (an adapter worker with the in-memory bus,
    the paho network thread with the MQTT bus). Counters are guarded by
    a lock because several adapters publish concurrently.

Hot path:
    Canonical events are built with ``CanonicalEvent.model_construct()``
    after the explicit checks above, skipping a second validation pass.
"""

import logging
import threading
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from core.bus import (
    CANONICAL_TOPIC,
    RAW_QUOTES_TOPIC,
    RAW_TRADES_TOPIC,
    BackboneConsumer,
    BackbonePublisher,
)
from core.events import CanonicalEvent, RawMarketEvent, payload_matches

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class NormalizerConfig(BaseModel):
    """Configuration for :class:`Normalizer`.

    Attributes:
        raw_topics: Topics to consume raw events from.
        canonical_topic: Topic canonical events are published to.
        schema_version: Version stamped on every canonical event.
        log_every_n: Log a progress line every N normalized events.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    raw_topics: tuple[str, ...] = Field(
        default=(RAW_TRADES_TOPIC, RAW_QUOTES_TOPIC),
        min_length=1,
        description="Raw topics to consume",
    )
    canonical_topic: str = Field(
        default=CANONICAL_TOPIC,
        min_length=1,
        description="Canonical output topic",
    )
    schema_version: int = Field(default=1, ge=1, description="Canonical schema version")
    log_every_n: int = Field(default=1000, gt=0, description="Progress log interval")


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class Normalizer:
    """Validating raw → canonical transformer.

    Args:
        consumer: Bus to subscribe raw topics on.
        publisher: Bus to publish canonical events on (usually the same
            object as ``consumer``).
        config: Normalizer configuration. Defaults to
            ``NormalizerConfig()``.

    Example:
        >>> from core.bus import InMemoryEventBus
        >>> bus = InMemoryEventBus()
        >>> normalizer = Normalizer(bus, bus)
        >>> normalizer.start()
        >>> normalizer.normalized_count
        0
    """

    def __init__(
        self,
        consumer: BackboneConsumer,
        publisher: BackbonePublisher,
        config: NormalizerConfig | None = None,
    ) -> None:
        self._consumer: BackboneConsumer = consumer
        self._publisher: BackbonePublisher = publisher
        self._config: NormalizerConfig = config or NormalizerConfig()
        self._started: bool = False

        # Counters (guarded by _counter_lock)
        self._normalized: int = 0
        self._errors: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to every configured raw topic. Idempotent."""
        if self._started:
            return
        for topic in self._config.raw_topics:
            self._consumer.subscribe(topic, self.normalize)
        self._started = True
        logger.info(
            "Normalizer started, subscribed to %s",
            ", ".join(self._config.raw_topics),
        )

    def stop(self) -> None:
        """Unsubscribe from the raw topics. Idempotent."""
        if not self._started:
            return
        for topic in self._config.raw_topics:
            self._consumer.unsubscribe(topic)
        self._started = False
        logger.info(
            "Normalizer stopped (normalized=%d, errors=%d)",
            self.normalized_count,
            self.error_count,
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def normalize(self, raw: RawMarketEvent) -> None:
        """Validate ``raw`` and publish its canonical form.

        Bus handler. Never raises: failures are counted and logged.
        """
        reason: str | None = self.validate(raw)
        if reason is not None:
            with self._counter_lock:
                self._errors += 1
            logger.warning(
                "Validation failed for event %r: %s",
                getattr(raw, "event_id", None),
                reason,
            )
            return

        try:
            canonical: CanonicalEvent = CanonicalEvent.model_construct(
                event_id=raw.event_id,
                instrument_id=raw.instrument_id,
                event_type=raw.event_type,
                exchange_timestamp=raw.exchange_timestamp,
                receive_timestamp=raw.receive_timestamp,
                publish_timestamp=datetime.now(timezone.utc),
                schema_version=self._config.schema_version,
                payload=raw.payload,
            )
            self._publisher.publish(
                self._config.canonical_topic,
                canonical.instrument_id,
                canonical,
            )
        except Exception:
            with self._counter_lock:
                self._errors += 1
            logger.exception("Error normalizing event %s", raw.event_id)
            return

        with self._counter_lock:
            self._normalized += 1
            count: int = self._normalized
            errors: int = self._errors
        if count % self._config.log_every_n == 0:
            logger.info("Normalized %d events, %d errors", count, errors)

    @staticmethod
    def validate(raw: object) -> str | None:
        """Return why ``raw`` is not publishable, or ``None`` if it is."""
        if raw is None:
            return "event is None"
        event_id: object = getattr(raw, "event_id", None)
        if not isinstance(event_id, str) or not event_id.strip():
            return "blank event_id"
        instrument_id: object = getattr(raw, "instrument_id", None)
        if not isinstance(instrument_id, str) or not instrument_id.strip():
            return "blank instrument_id"
        event_type: object = getattr(raw, "event_type", None)
        if event_type is None:
            return "missing event_type"
        payload: object = getattr(raw, "payload", None)
        if payload is None:
            return "missing payload"
        if not payload_matches(event_type, payload):  # type: ignore[arg-type]
            return f"payload {type(payload).__name__} does not match {event_type}"
        return None

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def normalized_count(self) -> int:
        with self._counter_lock:
            return self._normalized

    @property
    def error_count(self) -> int:
        with self._counter_lock:
            return self._errors

    def stats(self) -> dict[str, object]:
        """Return normalizer counters and configuration."""
        with self._counter_lock:
            normalized: int = self._normalized
            errors: int = self._errors
        return {
            "started": self._started,
            "normalized": normalized,
            "errors": errors,
            "schema_version": self._config.schema_version,
            "canonical_topic": self._config.canonical_topic,
        }
