"""Bounded outbound queue decoupling broadcast from slow client writers.

This module provides the ``Dispatcher``, a thread-safe, bounded queue
backed by ``collections.deque(maxlen)``. Each WebSocket client session
owns one: the gateway's broadcast thread (and any adapter thread that
publishes) pushes serialized events without blocking, while the
session's writer thread drains them and performs the socket I/O.

Architecture note:
    The in-memory bus dispatches synchronously, so without a per-session
    queue a single slow client would stall every adapter that publishes.
    The dispatcher is the one place a per-subscriber buffer is used.

MPSC contract:
    Multiple producers (any publishing thread), single consumer (the
    session writer). All queue mutation and counters are guarded by one
    ``threading.Condition``; ``poll()`` may block up to ``timeout``
    waiting for data.

Backpressure policy:
    Drop-oldest. When the queue is full, ``deque.append()`` evicts the
    oldest item. Stale market data is worthless; new data always wins.
    Drops are counted via a pre-append length check under the lock.

Stats consistency:
    ``stats()`` is taken under the lock, so
    ``total_pushed - total_dropped - total_polled == queue_len`` holds
    for every snapshot.

Example:
    >>> from core.dispatcher import Dispatcher, DispatcherConfig
    >>> dispatcher = Dispatcher(config=DispatcherConfig(maxlen=1000))
    >>> dispatcher.push("event_1")
    >>> dispatcher.push("event_2")
    >>> dispatcher.poll(max_events=10)
    ['event_1', 'event_2']
    >>> dispatcher.stats().total_pushed
    2
"""

import collections
import logging
import threading
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Generic item type
# ---------------------------------------------------------------------------

T = TypeVar("T")
"""Type variable for items stored in the dispatcher."""

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DispatcherConfig(BaseModel):
    """Configuration for :class:`Dispatcher`.

    Attributes:
        maxlen: Maximum number of items the queue can hold. When full,
            ``push()`` evicts the oldest item. Must be greater than zero.
        ema_alpha: Smoothing factor for the drop-rate EMA. Default 0.01
            (~100-message half-life).
        drop_warning_threshold: Drop-rate EMA above which a warning is
            logged once per excursion. Default 0.01 (1%).

    Example:
        >>> DispatcherConfig(maxlen=4096).maxlen
        4096
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    maxlen: int = Field(
        default=10_000,
        gt=0,
        description="Maximum queue length. Oldest items are dropped when exceeded.",
    )
    ema_alpha: float = Field(
        default=0.01,
        gt=0.0,
        le=1.0,
        description="EMA smoothing factor for drop rate.",
    )
    drop_warning_threshold: float = Field(
        default=0.01,
        gt=0.0,
        le=1.0,
        description="Drop rate EMA threshold for warning log.",
    )


# ---------------------------------------------------------------------------
# Stats Model
# ---------------------------------------------------------------------------


class DispatcherStats(BaseModel):
    """Immutable snapshot of dispatcher statistics.

    Attributes:
        total_pushed: Items pushed, including those that caused a drop.
        total_polled: Items consumed via ``poll()``.
        total_dropped: Items evicted due to overflow.
        queue_len: Items currently queued.
        maxlen: Configured maximum queue length.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    total_pushed: int = Field(ge=0, description="Total items pushed.")
    total_polled: int = Field(ge=0, description="Total items consumed via poll().")
    total_dropped: int = Field(ge=0, description="Items evicted on overflow.")
    queue_len: int = Field(ge=0, description="Items currently queued.")
    maxlen: int = Field(gt=0, description="Configured maximum queue length.")


# ---------------------------------------------------------------------------
# Health Model
# ---------------------------------------------------------------------------


class DispatcherHealth(BaseModel):
    """Immutable snapshot of dispatcher health metrics.

    Attributes:
        drop_rate_ema: Smoothed drop rate. 0.0 = no drops.
        queue_utilization: ``queue_len / maxlen``.
        total_dropped: Cumulative drops since last ``clear()``.
        total_pushed: Cumulative pushes since last ``clear()``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    drop_rate_ema: float = Field(ge=0.0, description="Smoothed drop rate (EMA).")
    queue_utilization: float = Field(
        ge=0.0,
        le=1.0,
        description="Queue fill ratio: len(queue) / maxlen.",
    )
    total_dropped: int = Field(ge=0, description="Cumulative drops.")
    total_pushed: int = Field(ge=0, description="Cumulative pushes.")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class Dispatcher(Generic[T]):
    """Bounded drop-oldest queue with blocking poll.

    Thread safety:
        - ``push()``: any thread.
        - ``poll()``: the single consumer thread.
        - ``close()``: any thread; wakes a blocked ``poll()``.
        - ``stats()`` / ``health()``: any thread.

    Args:
        config: Dispatcher configuration. Defaults to
            ``DispatcherConfig()``.

    Example:
        >>> outbox: Dispatcher[str] = Dispatcher(DispatcherConfig(maxlen=2))
        >>> for item in ("a", "b", "c"):
        ...     outbox.push(item)
        >>> outbox.poll(max_events=10)
        ['b', 'c']
        >>> outbox.stats().total_dropped
        1
    """

    def __init__(self, config: DispatcherConfig | None = None) -> None:
        self._config: DispatcherConfig = config or DispatcherConfig()
        self._maxlen: int = self._config.maxlen
        self._queue: collections.deque[T] = collections.deque(maxlen=self._maxlen)
        self._cond: threading.Condition = threading.Condition(threading.Lock())
        self._closed: bool = False

        # Counters (guarded by _cond)
        self._total_pushed: int = 0
        self._total_polled: int = 0
        self._total_dropped: int = 0

        # EMA drop-rate tracking (guarded by _cond)
        self._ema_alpha: float = self._config.ema_alpha
        self._drop_warning_threshold: float = self._config.drop_warning_threshold
        self._drop_rate_ema: float = 0.0
        self._warned_drop_rate: bool = False

        logger.debug("Dispatcher created with maxlen=%d", self._maxlen)

    # ------------------------------------------------------------------
    # Producer Path
    # ------------------------------------------------------------------

    def push(self, item: T) -> bool:
        """Append ``item``, evicting the oldest one if the queue is full.

        Never blocks on a full queue.

        Args:
            item: The item to enqueue.

        Returns:
            ``False`` if the dispatcher is closed and the item was
            discarded, ``True`` otherwise.
        """
        with self._cond:
            if self._closed:
                return False
            dropped: float = 0.0
            if len(self._queue) == self._maxlen:
                self._total_dropped += 1
                dropped = 1.0
            self._queue.append(item)
            self._total_pushed += 1

            # EMA: ema = alpha * sample + (1 - alpha) * ema
            alpha: float = self._ema_alpha
            self._drop_rate_ema = alpha * dropped + (1.0 - alpha) * self._drop_rate_ema
            self._update_drop_warning()
            self._cond.notify()
        return True

    # ------------------------------------------------------------------
    # Consumer Path
    # ------------------------------------------------------------------

    def poll(self, max_events: int = 100, timeout: float | None = 0.0) -> list[T]:
        """Consume up to ``max_events`` items in FIFO order.

        Args:
            max_events: Maximum number of items to return. Must be > 0.
            timeout: Seconds to wait for the first item when the queue is
                empty. ``0.0`` returns immediately, ``None`` waits until
                an item arrives or the dispatcher is closed.

        Returns:
            Items in FIFO order. Empty on timeout or after ``close()``
            once the queue has drained.

        Raises:
            ValueError: If ``max_events`` is not greater than zero.
        """
        if max_events <= 0:
            raise ValueError(f"max_events must be > 0, got {max_events}")

        with self._cond:
            if not self._queue and not self._closed and timeout != 0.0:
                self._cond.wait_for(
                    lambda: bool(self._queue) or self._closed,
                    timeout=timeout,
                )
            events: list[T] = []
            for _ in range(max_events):
                if not self._queue:
                    break
                events.append(self._queue.popleft())
            self._total_polled += len(events)
        return events

    # ------------------------------------------------------------------
    # Queue Management
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Reject further pushes and wake any blocked ``poll()``.

        Items already queued can still be drained. Idempotent.
        """
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has been called."""
        with self._cond:
            return self._closed

    def clear(self) -> None:
        """Discard queued items and reset all counters."""
        with self._cond:
            remaining: int = len(self._queue)
            self._queue.clear()
            self._total_pushed = 0
            self._total_polled = 0
            self._total_dropped = 0
            self._drop_rate_ema = 0.0
            self._warned_drop_rate = False
        if remaining > 0:
            logger.warning("Dispatcher cleared %d remaining items", remaining)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> DispatcherStats:
        """Return a consistent snapshot of dispatcher statistics."""
        with self._cond:
            return DispatcherStats(
                total_pushed=self._total_pushed,
                total_polled=self._total_polled,
                total_dropped=self._total_dropped,
                queue_len=len(self._queue),
                maxlen=self._maxlen,
            )

    def health(self) -> DispatcherHealth:
        """Return drop-rate EMA and utilization."""
        with self._cond:
            return DispatcherHealth(
                drop_rate_ema=self._drop_rate_ema,
                queue_utilization=len(self._queue) / self._maxlen,
                total_dropped=self._total_dropped,
                total_pushed=self._total_pushed,
            )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _update_drop_warning(self) -> None:
        # Caller holds _cond.
        if self._drop_rate_ema > self._drop_warning_threshold:
            if not self._warned_drop_rate:
                logger.warning(
                    "Drop rate EMA %.4f exceeds threshold %.4f",
                    self._drop_rate_ema,
                    self._drop_warning_threshold,
                )
                self._warned_drop_rate = True
        elif self._warned_drop_rate:
            logger.info(
                "Drop rate EMA %.4f recovered below threshold %.4f",
                self._drop_rate_ema,
                self._drop_warning_threshold,
            )
            self._warned_drop_rate = False

    def _invariant_ok(self) -> bool:
        """``total_pushed - total_dropped - total_polled == queue_len``."""
        with self._cond:
            return (
                self._total_pushed - self._total_dropped - self._total_polled
                == len(self._queue)
            )
