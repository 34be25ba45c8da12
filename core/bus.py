"""Publish/subscribe event bus decoupling pipeline stages.

This module defines the two capability protocols every backbone
implements (:class:`BackbonePublisher` and :class:`BackboneConsumer`) and
the in-process :class:`InMemoryEventBus`. A broker-backed implementation
lives in :mod:`infra.mqtt_bus`.

Architecture note:
    ``publish()`` dispatches synchronously on the caller's thread, in
    publish order, to every handler registered on the topic at the moment
    of the call. A publish therefore costs the sum of its handlers'
    execution times; a slow handler delays every handler after it and the
    publisher itself. Handlers should hand heavy work off to their own
    queue (see :class:`core.dispatcher.Dispatcher`).

Registry contract:
    Handler lists are immutable tuples replaced copy-on-write under
    ``_registry_lock``. ``publish()`` reads the current tuple without
    taking the lock, so subscribe, unsubscribe and publish are safe to
    interleave from any thread.

Handler isolation:
    A raising handler is caught per invocation, counted and logged
    (first ``_LOG_FIRST_N`` with a stack trace, then every
    ``_LOG_EVERY_N``-th). It stays registered and never prevents
    delivery to the remaining handlers.

Example:
    >>> from core.bus import InMemoryEventBus
    >>> bus = InMemoryEventBus()
    >>> received = []
    >>> bus.subscribe("canonical.events", received.append)
    >>> bus.publish("canonical.events", "AAPL", "event-1")
    >>> received
    ['event-1']
"""

import logging
import threading
from typing import Any, Callable, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Topics and type aliases
# ---------------------------------------------------------------------------

RAW_TRADES_TOPIC: str = "raw.trades"
RAW_QUOTES_TOPIC: str = "raw.quotes"
CANONICAL_TOPIC: str = "canonical.events"

EventHandler = Callable[[Any], None]
"""Handler signature: ``(event) -> None``."""

_LOG_FIRST_N: int = 10
"""Number of initial handler errors logged with full stack trace."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every N-th error."""


# ---------------------------------------------------------------------------
# Capability protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class BackbonePublisher(Protocol):
    """Publishing side of the event backbone."""

    def publish(self, topic: str, key: str, event: Any) -> None:
        """Publish ``event`` to ``topic``.

        ``key`` is a partitioning hint for broker backbones. The
        in-memory bus ignores it.
        """
        ...


@runtime_checkable
class BackboneConsumer(Protocol):
    """Consuming side of the event backbone."""

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        """Register ``handler`` for every event published to ``topic``."""
        ...

    def unsubscribe(self, topic: str) -> None:
        """Remove all handlers registered on ``topic``."""
        ...


# ---------------------------------------------------------------------------
# Stats Model
# ---------------------------------------------------------------------------


class EventBusStats(BaseModel):
    """Immutable snapshot of bus counters.

    Attributes:
        published: Total ``publish()`` calls.
        delivered: Total successful handler invocations.
        handler_errors: Total handler invocations that raised.
        topics: Number of topics with at least one handler.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    published: int = Field(ge=0, description="Total publish() calls")
    delivered: int = Field(ge=0, description="Successful handler invocations")
    handler_errors: int = Field(ge=0, description="Handler invocations that raised")
    topics: int = Field(ge=0, description="Topics with at least one handler")


# ---------------------------------------------------------------------------
# In-memory bus
# ---------------------------------------------------------------------------


class InMemoryEventBus:
    """Synchronous in-process bus implementing both backbone protocols.

    Broadcast semantics: every handler registered on a topic receives
    every event published to it, including duplicate registrations of
    the same callable. Publishing to a topic with no handlers is a no-op.

    Thread safety:
        - ``subscribe()`` / ``unsubscribe()``: any thread, serialized by
          ``_registry_lock``.
        - ``publish()``: any thread, lock-free read of the handler tuple.
        - ``stats()``: any thread.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[EventHandler, ...]] = {}
        self._registry_lock: threading.Lock = threading.Lock()

        # Counters (guarded by _counter_lock)
        self._published: int = 0
        self._delivered: int = 0
        self._handler_errors: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def publish(self, topic: str, key: str, event: Any) -> None:
        """Deliver ``event`` to every handler currently on ``topic``.

        Args:
            topic: Destination topic.
            key: Partitioning key (ignored in-process).
            event: The event object, delivered by reference.
        """
        handlers: tuple[EventHandler, ...] = self._handlers.get(topic, ())
        delivered: int = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                self._log_handler_error(topic)
        with self._counter_lock:
            self._published += 1
            self._delivered += delivered

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        """Register ``handler`` on ``topic``.

        Raises:
            ValueError: If ``handler`` is not callable.
        """
        if not callable(handler):
            raise ValueError(f"handler for {topic!r} is not callable")
        with self._registry_lock:
            self._handlers[topic] = self._handlers.get(topic, ()) + (handler,)
        logger.debug("Handler subscribed to topic %s", topic)

    def unsubscribe(self, topic: str) -> None:
        """Remove every handler on ``topic``. Idempotent."""
        with self._registry_lock:
            removed: tuple[EventHandler, ...] = self._handlers.pop(topic, ())
        if removed:
            logger.debug(
                "Unsubscribed %d handler(s) from topic %s", len(removed), topic
            )

    def handler_count(self, topic: str) -> int:
        """Number of handlers currently registered on ``topic``."""
        return len(self._handlers.get(topic, ()))

    def stats(self) -> EventBusStats:
        """Return a snapshot of bus counters."""
        with self._counter_lock:
            published: int = self._published
            delivered: int = self._delivered
            errors: int = self._handler_errors
        with self._registry_lock:
            topics: int = len(self._handlers)
        return EventBusStats(
            published=published,
            delivered=delivered,
            handler_errors=errors,
            topics=topics,
        )

    # ------------------------------------------------------------------
    # Error Logging (rate-limited)
    # ------------------------------------------------------------------

    def _log_handler_error(self, topic: str) -> None:
        """Count a handler failure and log it with rate limiting.

        First ``_LOG_FIRST_N`` errors: full stack trace via
        ``logger.exception()``. Subsequent errors: every
        ``_LOG_EVERY_N``-th occurrence at ERROR level (no trace).

        Must be called from within an ``except`` block.
        """
        with self._counter_lock:
            self._handler_errors += 1
            count: int = self._handler_errors
        if count <= _LOG_FIRST_N:
            logger.exception(
                "Handler error on topic %s (%d/%d)",
                topic,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error(
                "Handler error on topic %s (total=%d)",
                topic,
                count,
            )
