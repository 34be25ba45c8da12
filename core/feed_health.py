"""Per-adapter liveness monitor for the feed supervision layer.

Tracks, for every feed adapter, whether it is connected, when it last
produced a message and how many heartbeat probes went unanswered. Uses
monotonic timestamps (``time.perf_counter_ns()``) exclusively, never wall
clock, to avoid false alerts from NTP adjustments.

Architecture note:
    ``AdapterHealthMonitor`` is fed by :class:`infra.ingest.RawEventPublisher`,
    which receives the callbacks of every adapter on that adapter's own
    worker thread. Several adapters report concurrently, so all state is
    guarded by a single lock.

Startup-aware state:
    An adapter that has never produced a message is not stale (unknown,
    not dead). Use :meth:`has_seen` to distinguish "unknown" from
    "healthy".

Heartbeat timeouts:
    A timeout is recorded and counted only. The adapter remains
    CONNECTED and nothing reconnects it; callers decide what to do with
    :meth:`heartbeat_timeouts`.

Example:
    >>> from core.feed_health import AdapterHealthMonitor, FeedHealthConfig
    >>> monitor = AdapterHealthMonitor(
    ...     config=FeedHealthConfig(
    ...         max_gap_seconds=5.0,
    ...         per_adapter_max_gap={"slow-feed": 60.0},
    ...     ),
    ... )
    >>> monitor.on_connected("synthetic-exchange-1")
    >>> monitor.on_message("synthetic-exchange-1")
    >>> monitor.is_stale("synthetic-exchange-1")
    False
"""

import logging
import threading
import time

from pydantic import BaseModel, ConfigDict, Field

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class FeedHealthConfig(BaseModel):
    """Immutable configuration for :class:`AdapterHealthMonitor`.

    Frozen after construction because gap thresholds are cached in
    nanoseconds at monitor init.

    Attributes:
        max_gap_seconds: Maximum silence (seconds) before a connected
            adapter is considered stale. Default 5.0 seconds.
        per_adapter_max_gap: Per-adapter override for
            ``max_gap_seconds``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_gap_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Maximum silence (seconds) before an adapter is stale",
    )
    per_adapter_max_gap: dict[str, float] = Field(
        default_factory=dict,
        description="Per-adapter max gap override (seconds)",
    )


# ---------------------------------------------------------------------------
# Snapshot Model
# ---------------------------------------------------------------------------


class AdapterHealth(BaseModel):
    """Immutable health snapshot of one adapter.

    Attributes:
        adapter_id: Adapter identifier.
        connected: Whether ``on_connected`` was seen without a later
            ``on_disconnected``.
        messages: Messages recorded since the monitor started.
        heartbeat_timeouts: Unanswered heartbeat probes.
        last_seen_gap_ms: Milliseconds since the last message, or
            ``None`` if no message was ever recorded.
        stale: Whether the gap exceeds the adapter's threshold.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    adapter_id: str
    connected: bool
    messages: int = Field(ge=0)
    heartbeat_timeouts: int = Field(ge=0)
    last_seen_gap_ms: float | None = None
    stale: bool = False


# ---------------------------------------------------------------------------
# Adapter Health Monitor
# ---------------------------------------------------------------------------


class AdapterHealthMonitor:
    """Thread-safe per-adapter liveness tracker.

    Args:
        config: Health configuration. Defaults to ``FeedHealthConfig()``.

    Example:
        >>> monitor = AdapterHealthMonitor()
        >>> monitor.on_heartbeat_timeout("a1")
        >>> monitor.heartbeat_timeouts("a1")
        1
    """

    def __init__(self, config: FeedHealthConfig | None = None) -> None:
        self._config: FeedHealthConfig = config or FeedHealthConfig()
        self._max_gap_ns: int = int(self._config.max_gap_seconds * 1_000_000_000)
        self._per_adapter_max_gap_ns: dict[str, int] = {
            adapter_id: int(gap * 1_000_000_000)
            for adapter_id, gap in self._config.per_adapter_max_gap.items()
        }

        self._lock: threading.Lock = threading.Lock()
        self._connected: dict[str, bool] = {}
        self._last_message_mono_ns: dict[str, int] = {}
        self._message_counts: dict[str, int] = {}
        self._heartbeat_timeouts: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Lifecycle signals
    # ------------------------------------------------------------------

    def on_connected(self, adapter_id: str) -> None:
        """Record that ``adapter_id`` entered CONNECTED."""
        with self._lock:
            self._connected[adapter_id] = True
        logger.info("Adapter %s connected", adapter_id)

    def on_disconnected(self, adapter_id: str, reason: str = "") -> None:
        """Record that ``adapter_id`` left CONNECTED."""
        with self._lock:
            self._connected[adapter_id] = False
        logger.info("Adapter %s disconnected: %s", adapter_id, reason)

    def on_message(self, adapter_id: str, now_ns: int | None = None) -> None:
        """Record a message from ``adapter_id``.

        Args:
            adapter_id: Adapter that produced the message.
            now_ns: Optional pre-captured ``time.perf_counter_ns()``.
        """
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        with self._lock:
            self._last_message_mono_ns[adapter_id] = now
            self._message_counts[adapter_id] = (
                self._message_counts.get(adapter_id, 0) + 1
            )

    def on_heartbeat_timeout(self, adapter_id: str) -> None:
        """Count an unanswered heartbeat probe for ``adapter_id``."""
        with self._lock:
            count: int = self._heartbeat_timeouts.get(adapter_id, 0) + 1
            self._heartbeat_timeouts[adapter_id] = count
        logger.warning(
            "Heartbeat timeout for adapter %s (total=%d)", adapter_id, count
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_connected(self, adapter_id: str) -> bool:
        """Whether ``adapter_id`` is currently recorded as connected."""
        with self._lock:
            return self._connected.get(adapter_id, False)

    def has_seen(self, adapter_id: str) -> bool:
        """Whether any message from ``adapter_id`` was ever recorded."""
        with self._lock:
            return adapter_id in self._last_message_mono_ns

    def heartbeat_timeouts(self, adapter_id: str) -> int:
        """Unanswered heartbeat probes recorded for ``adapter_id``."""
        with self._lock:
            return self._heartbeat_timeouts.get(adapter_id, 0)

    def is_stale(self, adapter_id: str, now_ns: int | None = None) -> bool:
        """Check whether a connected adapter has gone silent.

        Returns ``False`` for never-seen or disconnected adapters.

        Args:
            adapter_id: Adapter to check.
            now_ns: Optional pre-captured ``time.perf_counter_ns()``.
        """
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        with self._lock:
            return self._is_stale_locked(adapter_id, now)

    def stale_adapters(self, now_ns: int | None = None) -> list[str]:
        """Return every connected adapter whose gap exceeds its threshold."""
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        with self._lock:
            return [
                adapter_id
                for adapter_id in self._last_message_mono_ns
                if self._is_stale_locked(adapter_id, now)
            ]

    def last_seen_gap_ms(
        self,
        adapter_id: str,
        now_ns: int | None = None,
    ) -> float | None:
        """Milliseconds since the last message, or ``None`` if never seen."""
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        with self._lock:
            last_ns: int | None = self._last_message_mono_ns.get(adapter_id)
        if last_ns is None:
            return None
        return max(0, now - last_ns) / 1_000_000

    def snapshot(self, now_ns: int | None = None) -> dict[str, AdapterHealth]:
        """Return an :class:`AdapterHealth` per known adapter."""
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        with self._lock:
            known: set[str] = (
                set(self._connected)
                | set(self._last_message_mono_ns)
                | set(self._heartbeat_timeouts)
            )
            result: dict[str, AdapterHealth] = {}
            for adapter_id in sorted(known):
                last_ns: int | None = self._last_message_mono_ns.get(adapter_id)
                result[adapter_id] = AdapterHealth(
                    adapter_id=adapter_id,
                    connected=self._connected.get(adapter_id, False),
                    messages=self._message_counts.get(adapter_id, 0),
                    heartbeat_timeouts=self._heartbeat_timeouts.get(adapter_id, 0),
                    last_seen_gap_ms=(
                        None if last_ns is None else max(0, now - last_ns) / 1_000_000
                    ),
                    stale=self._is_stale_locked(adapter_id, now),
                )
        return result

    # ------------------------------------------------------------------
    # Lifecycle Management
    # ------------------------------------------------------------------

    def purge(self, adapter_id: str) -> bool:
        """Drop all state for ``adapter_id``.

        Returns:
            ``True`` if the adapter was tracked.
        """
        with self._lock:
            tracked: bool = (
                self._connected.pop(adapter_id, None) is not None
            ) | (self._last_message_mono_ns.pop(adapter_id, None) is not None)
            self._message_counts.pop(adapter_id, None)
            self._heartbeat_timeouts.pop(adapter_id, None)
        return tracked

    def reset(self) -> None:
        """Clear all tracking state."""
        with self._lock:
            self._connected.clear()
            self._last_message_mono_ns.clear()
            self._message_counts.clear()
            self._heartbeat_timeouts.clear()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _is_stale_locked(self, adapter_id: str, now: int) -> bool:
        if not self._connected.get(adapter_id, False):
            return False
        last_ns: int | None = self._last_message_mono_ns.get(adapter_id)
        if last_ns is None:
            return False
        max_gap: int = self._per_adapter_max_gap_ns.get(adapter_id, self._max_gap_ns)
        return max(0, now - last_ns) > max_gap
