"""Feed adapter contract and the reusable connection lifecycle.

Defines the two capability protocols at the ingestion boundary,
:class:`FeedAdapter` and :class:`FeedEventHandler`, plus
:class:`AdapterLifecycle`, the state machine concrete adapters compose
instead of re-implementing connection handling.

State machine::

    DISCONNECTED --connect()--> CONNECTING --worker--> CONNECTED
    CONNECTED / CONNECTING --disconnect()--> DISCONNECTED

Connection epochs:
    Every accepted ``connect()`` opens a new epoch. Sequence numbers are
    scoped to it: the first message of an epoch carries ``0`` and each
    further message ``+1``. Work scheduled on the worker carries the epoch
    it was scheduled for; once the epoch has ended (``disconnect()`` or a
    newer ``connect()``) such work is silently ignored.

Callback contract:
    All :class:`FeedEventHandler` callbacks of one adapter run under the
    adapter's callback lock, normally on its private
    :class:`~infra.worker.SequentialWorker`, so they never overlap. The
    lock is reentrant: a callback may call ``disconnect()`` on its own
    adapter. Exceptions raised by a callback are logged (rate-limited)
    and swallowed so a faulty handler cannot kill the worker.

Disconnect guarantee:
    ``disconnect()`` flips the state under the callback lock, so once it
    has flipped no ``on_message`` or ``on_error`` can start. Taking that
    lock waits for any callback already in progress, however long it
    runs; handlers are expected not to block. It then shuts the worker
    down (waiting ``shutdown_timeout_seconds`` for the remaining in-flight
    task, abandoning it otherwise) and finally delivers
    ``on_disconnected`` exactly once.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Protocol, runtime_checkable

from core.errors import AlreadyConnectedError, EmissionError, NotConnectedError
from core.events import AdapterConnectionState, RawFeedMessage, TransportType
from infra.worker import ScheduledTask, SequentialWorker

logger: logging.Logger = logging.getLogger(__name__)

_LOG_FIRST_N: int = 10
"""Number of initial callback errors logged with full stack trace."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every N-th error."""


# ---------------------------------------------------------------------------
# Capability protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class FeedEventHandler(Protocol):
    """Receiver of one or more adapters' lifecycle and data callbacks.

    Implementations must be non-blocking and fast: they run on the
    adapter's worker thread, inline with emission.
    """

    def on_connected(self, adapter_id: str) -> None: ...

    def on_disconnected(self, adapter_id: str, reason: str) -> None: ...

    def on_message(self, adapter_id: str, message: RawFeedMessage) -> None: ...

    def on_error(self, adapter_id: str, error: Exception) -> None: ...

    def on_heartbeat_timeout(self, adapter_id: str) -> None: ...


@runtime_checkable
class FeedAdapter(Protocol):
    """A source of raw, sequenced market data messages."""

    @property
    def adapter_id(self) -> str: ...

    @property
    def transport_type(self) -> TransportType: ...

    @property
    def state(self) -> AdapterConnectionState: ...

    @property
    def is_connected(self) -> bool: ...

    def connect(self, handler: FeedEventHandler) -> None: ...

    def disconnect(self) -> None: ...

    def send_heartbeat(self) -> None: ...


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class AdapterLifecycle:
    """Connection state machine, sequencing and callback delivery.

    Owned by exactly one adapter. The adapter calls :meth:`begin_connect`
    from ``connect()``, :meth:`disconnect` from ``disconnect()``, and the
    emission helpers (:meth:`emit`, :meth:`report_error`,
    :meth:`report_heartbeat_timeout`) from tasks on :attr:`worker`.

    Args:
        adapter_id: Identifier passed to every callback.
        shutdown_timeout_seconds: How long ``disconnect()`` waits for an
            in-flight worker task before abandoning the worker. A
            handler callback already running is always awaited.

    Example::

        lifecycle = AdapterLifecycle("demo-feed")
        epoch = lifecycle.begin_connect(handler, on_started=start_ticks)
        ...
        lifecycle.emit(epoch, b'{"type":"QUOTE"}')
        ...
        lifecycle.disconnect("operator request")
    """

    def __init__(
        self,
        adapter_id: str,
        shutdown_timeout_seconds: float = 1.0,
    ) -> None:
        self._adapter_id: str = adapter_id
        self._shutdown_timeout: float = shutdown_timeout_seconds

        # State (guarded by _state_lock)
        self._state: AdapterConnectionState = AdapterConnectionState.DISCONNECTED
        self._epoch: int = 0
        self._next_sequence: int = 0
        self._handler: FeedEventHandler | None = None
        self._worker: SequentialWorker | None = None
        self._state_lock: threading.Lock = threading.Lock()

        # Serializes callback delivery; reentrant so callbacks can disconnect
        self._callback_lock: threading.RLock = threading.RLock()

        self._callback_errors: int = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def adapter_id(self) -> str:
        return self._adapter_id

    @property
    def state(self) -> AdapterConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        with self._state_lock:
            return self._state == AdapterConnectionState.CONNECTED

    @property
    def epoch(self) -> int:
        """Current (or last) connection epoch. ``0`` before any connect."""
        with self._state_lock:
            return self._epoch

    @property
    def callback_errors(self) -> int:
        """Handler exceptions swallowed so far."""
        return self._callback_errors

    def is_live(self, epoch: int) -> bool:
        """Whether ``epoch`` is the current epoch and it is CONNECTED."""
        with self._state_lock:
            return (
                self._epoch == epoch
                and self._state == AdapterConnectionState.CONNECTED
            )

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def begin_connect(
        self,
        handler: FeedEventHandler,
        on_started: Callable[[int], None] | None = None,
    ) -> int:
        """Accept a ``connect()`` call and schedule the CONNECTED transition.

        The transition runs on a fresh worker: state becomes CONNECTED,
        ``on_connected`` fires, then ``on_started(epoch)`` lets the adapter
        schedule its emission.

        Args:
            handler: Callback receiver for this epoch.
            on_started: Invoked on the worker after ``on_connected``.

        Returns:
            The new epoch number.

        Raises:
            ValueError: If ``handler`` is ``None``.
            AlreadyConnectedError: If the state is not DISCONNECTED.
        """
        if handler is None:
            raise ValueError("FeedEventHandler cannot be None")

        with self._state_lock:
            if self._state != AdapterConnectionState.DISCONNECTED:
                raise AlreadyConnectedError(
                    f"Adapter {self._adapter_id} is {self._state.value}"
                )
            self._state = AdapterConnectionState.CONNECTING
            self._epoch += 1
            self._next_sequence = 0
            self._handler = handler
            epoch: int = self._epoch
            worker: SequentialWorker = SequentialWorker(
                name=f"{self._adapter_id}-e{epoch}",
            )
            self._worker = worker

        worker.submit(lambda: self._complete_connect(epoch, on_started))
        logger.info("Adapter %s connecting (epoch=%d)", self._adapter_id, epoch)
        return epoch

    def disconnect(self, reason: str = "Disconnect requested") -> bool:
        """End the current epoch. Idempotent and safe from any thread.

        Returns:
            ``True`` if this call performed the disconnect, ``False`` if
            the adapter was already DISCONNECTED.
        """
        with self._callback_lock:
            with self._state_lock:
                if self._state == AdapterConnectionState.DISCONNECTED:
                    return False
                self._state = AdapterConnectionState.DISCONNECTED
                handler: FeedEventHandler | None = self._handler
                worker: SequentialWorker | None = self._worker
                self._handler = None
                self._worker = None
                epoch: int = self._epoch

        if worker is not None:
            worker.shutdown(timeout=self._shutdown_timeout)

        logger.info(
            "Adapter %s disconnected (epoch=%d): %s",
            self._adapter_id,
            epoch,
            reason,
        )
        if handler is not None:
            with self._callback_lock:
                self._invoke("on_disconnected", handler.on_disconnected, reason)
        return True

    # ------------------------------------------------------------------
    # Worker access
    # ------------------------------------------------------------------

    def require_connected(self) -> int:
        """Return the live epoch.

        Raises:
            NotConnectedError: If the adapter is not CONNECTED.
        """
        with self._state_lock:
            if self._state != AdapterConnectionState.CONNECTED:
                raise NotConnectedError(
                    f"Adapter {self._adapter_id} is {self._state.value}"
                )
            return self._epoch

    def schedule(
        self,
        epoch: int,
        fn: Callable[[], None],
        delay: float,
    ) -> ScheduledTask | None:
        """Run ``fn`` once on the worker after ``delay`` seconds.

        Returns:
            The task handle, or ``None`` if ``epoch`` is no longer live.
        """
        worker: SequentialWorker | None = self._worker_for(epoch)
        if worker is None:
            return None
        try:
            return worker.schedule(fn, delay)
        except RuntimeError:
            return None

    def schedule_at_fixed_rate(
        self,
        epoch: int,
        fn: Callable[[], None],
        initial_delay: float,
        period: float,
    ) -> ScheduledTask | None:
        """Run ``fn`` on the worker every ``period`` seconds.

        Returns:
            The task handle, or ``None`` if ``epoch`` is no longer live.
        """
        worker: SequentialWorker | None = self._worker_for(epoch)
        if worker is None:
            return None
        try:
            return worker.schedule_at_fixed_rate(fn, initial_delay, period)
        except RuntimeError:
            return None

    # ------------------------------------------------------------------
    # Emission (worker thread)
    # ------------------------------------------------------------------

    def emit(
        self,
        epoch: int,
        payload: bytes,
        receive_timestamp: datetime | None = None,
    ) -> bool:
        """Assign the next sequence number and deliver ``on_message``.

        Args:
            epoch: Epoch the emitting task belongs to.
            payload: Raw message bytes.
            receive_timestamp: Defaults to now (UTC).

        Returns:
            ``True`` if the message was delivered, ``False`` if the epoch
            has ended.
        """
        with self._callback_lock:
            with self._state_lock:
                if (
                    self._epoch != epoch
                    or self._state != AdapterConnectionState.CONNECTED
                ):
                    return False
                sequence: int = self._next_sequence
                self._next_sequence += 1
                handler: FeedEventHandler = self._handler  # type: ignore[assignment]
            # Trusted adapter-built data: skip validation on the hot path
            message: RawFeedMessage = RawFeedMessage.model_construct(
                payload=payload,
                receive_timestamp=receive_timestamp or datetime.now(timezone.utc),
                sequence_number=sequence,
            )
            self._invoke("on_message", handler.on_message, message)
        return True

    def report_error(self, epoch: int, error: Exception) -> bool:
        """Deliver ``on_error`` with an :class:`EmissionError`.

        The adapter stays CONNECTED.

        Returns:
            ``True`` if delivered, ``False`` if the epoch has ended.
        """
        with self._callback_lock:
            handler: FeedEventHandler | None = self._live_handler(epoch)
            if handler is None:
                return False
            wrapped: EmissionError = (
                error
                if isinstance(error, EmissionError)
                else EmissionError(self._adapter_id, f"emission failed: {error}")
            )
            if wrapped is not error:
                wrapped.__cause__ = error
            self._invoke("on_error", handler.on_error, wrapped)
        return True

    def report_heartbeat_timeout(self, epoch: int) -> bool:
        """Deliver ``on_heartbeat_timeout``. The adapter stays CONNECTED."""
        with self._callback_lock:
            handler: FeedEventHandler | None = self._live_handler(epoch)
            if handler is None:
                return False
            logger.warning("Adapter %s heartbeat timed out", self._adapter_id)
            self._invoke("on_heartbeat_timeout", handler.on_heartbeat_timeout)
        return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _complete_connect(
        self,
        epoch: int,
        on_started: Callable[[int], None] | None,
    ) -> None:
        with self._callback_lock:
            with self._state_lock:
                if (
                    self._epoch != epoch
                    or self._state != AdapterConnectionState.CONNECTING
                ):
                    return
                self._state = AdapterConnectionState.CONNECTED
                handler: FeedEventHandler = self._handler  # type: ignore[assignment]
            logger.info("Adapter %s connected (epoch=%d)", self._adapter_id, epoch)
            self._invoke("on_connected", handler.on_connected)
            # on_connected may have disconnected us
            if on_started is not None and self.is_live(epoch):
                on_started(epoch)

    def _live_handler(self, epoch: int) -> FeedEventHandler | None:
        with self._state_lock:
            if (
                self._epoch != epoch
                or self._state != AdapterConnectionState.CONNECTED
            ):
                return None
            return self._handler

    def _worker_for(self, epoch: int) -> SequentialWorker | None:
        with self._state_lock:
            if self._epoch != epoch or self._state == AdapterConnectionState.DISCONNECTED:
                return None
            return self._worker

    def _invoke(self, name: str, callback: Callable[..., None], *args: object) -> None:
        """Call a handler callback, logging and swallowing its exceptions."""
        try:
            callback(self._adapter_id, *args)
        except Exception:
            self._callback_errors += 1
            count: int = self._callback_errors
            if count <= _LOG_FIRST_N:
                logger.exception(
                    "FeedEventHandler.%s raised for adapter %s (%d/%d)",
                    name,
                    self._adapter_id,
                    count,
                    _LOG_FIRST_N,
                )
            elif count % _LOG_EVERY_N == 0:
                logger.error(
                    "FeedEventHandler.%s raised for adapter %s (total=%d)",
                    name,
                    self._adapter_id,
                    count,
                )
