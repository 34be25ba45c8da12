"""Single-threaded task scheduler owned by one feed adapter.

Every adapter runs its emission ticks, connection transition and
heartbeat probes on a private :class:`SequentialWorker`. Tasks execute
strictly one after another on one daemon thread, so an adapter's
``FeedEventHandler`` callbacks never overlap, while different adapters
run concurrently on their own workers.

Scheduling model:
    Pending tasks live in a heap ordered by ``(due_time, submit_order)``
    using ``time.monotonic()``. Fixed-rate tasks are rescheduled from
    their previous due time (not from completion), which keeps the
    average rate exact. When a fixed-rate task falls more than one period
    behind, missed runs are skipped and the next run is aligned to now.

Shutdown:
    :meth:`SequentialWorker.shutdown` cancels every pending task, wakes
    the thread and waits up to ``timeout`` for the in-flight task. When
    called from the worker thread itself (a callback disconnecting its
    own adapter) the join is skipped; the thread exits as soon as the
    current task returns.

Example:
    >>> from infra.worker import SequentialWorker
    >>> worker = SequentialWorker(name="demo")
    >>> handle = worker.schedule_at_fixed_rate(lambda: None, 0.0, 0.1)
    >>> handle.cancel()
    >>> worker.shutdown(timeout=1.0)
    True
"""

import heapq
import itertools
import logging
import threading
import time
from typing import Callable

logger: logging.Logger = logging.getLogger(__name__)

Task = Callable[[], None]
"""Zero-argument callable executed on the worker thread."""


# ---------------------------------------------------------------------------
# Task handle
# ---------------------------------------------------------------------------


class ScheduledTask:
    """Cancellable handle for a submitted task.

    Args:
        fn: The callable to run.
        period: Repeat period in seconds, or ``None`` for one-shot tasks.
    """

    __slots__ = ("_fn", "_period", "_cancelled", "_runs")

    def __init__(self, fn: Task, period: float | None = None) -> None:
        self._fn: Task = fn
        self._period: float | None = period
        self._cancelled: bool = False
        self._runs: int = 0

    def cancel(self) -> None:
        """Prevent any future run. An in-flight run is not interrupted."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        """Whether :meth:`cancel` was called."""
        return self._cancelled

    @property
    def period(self) -> float | None:
        """Repeat period in seconds, ``None`` for one-shot tasks."""
        return self._period

    @property
    def runs(self) -> int:
        """Number of completed runs."""
        return self._runs


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class SequentialWorker:
    """One daemon thread executing submitted tasks in due-time order.

    A task that raises is logged and does not stop the worker; fixed-rate
    tasks keep their schedule.

    Args:
        name: Thread name, used in logs.
    """

    def __init__(self, name: str = "sequential-worker") -> None:
        self._name: str = name
        self._heap: list[tuple[float, int, ScheduledTask]] = []
        self._order: itertools.count[int] = itertools.count()
        self._cond: threading.Condition = threading.Condition(threading.Lock())
        self._shutdown: bool = False
        self._thread: threading.Thread = threading.Thread(
            target=self._run,
            name=name,
            daemon=True,
        )
        self._thread.start()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        """Worker thread name."""
        return self._name

    @property
    def is_shutdown(self) -> bool:
        """Whether :meth:`shutdown` was called."""
        with self._cond:
            return self._shutdown

    def in_worker_thread(self) -> bool:
        """Whether the caller is running on this worker's thread."""
        return threading.current_thread() is self._thread

    def submit(self, fn: Task) -> ScheduledTask:
        """Run ``fn`` as soon as possible."""
        return self.schedule(fn, 0.0)

    def schedule(self, fn: Task, delay: float) -> ScheduledTask:
        """Run ``fn`` once after ``delay`` seconds.

        Raises:
            RuntimeError: If the worker has been shut down.
        """
        task: ScheduledTask = ScheduledTask(fn)
        self._enqueue(time.monotonic() + max(0.0, delay), task)
        return task

    def schedule_at_fixed_rate(
        self,
        fn: Task,
        initial_delay: float,
        period: float,
    ) -> ScheduledTask:
        """Run ``fn`` every ``period`` seconds starting after ``initial_delay``.

        Raises:
            ValueError: If ``period`` is not positive.
            RuntimeError: If the worker has been shut down.
        """
        if period <= 0:
            raise ValueError(f"period must be > 0, got {period}")
        task: ScheduledTask = ScheduledTask(fn, period=period)
        self._enqueue(time.monotonic() + max(0.0, initial_delay), task)
        return task

    def shutdown(self, timeout: float = 1.0) -> bool:
        """Cancel pending tasks and stop the thread.

        Args:
            timeout: Seconds to wait for an in-flight task to finish.

        Returns:
            ``True`` if the thread has terminated (or will, because the
            call came from the worker itself), ``False`` if it was
            abandoned still running.
        """
        with self._cond:
            self._shutdown = True
            for _, _, task in self._heap:
                task.cancel()
            self._heap.clear()
            self._cond.notify_all()

        if self.in_worker_thread():
            return True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning(
                "Worker %s did not finish within %.2fs, abandoning it",
                self._name,
                timeout,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _enqueue(self, due: float, task: ScheduledTask) -> None:
        with self._cond:
            if self._shutdown:
                raise RuntimeError(f"worker {self._name} is shut down")
            heapq.heappush(self._heap, (due, next(self._order), task))
            self._cond.notify()

    def _next_task(self) -> tuple[float, ScheduledTask] | None:
        """Block until a task is due. ``None`` means shut down."""
        with self._cond:
            while not self._shutdown:
                if not self._heap:
                    self._cond.wait()
                    continue
                due, _, task = self._heap[0]
                if task.cancelled:
                    heapq.heappop(self._heap)
                    continue
                remaining: float = due - time.monotonic()
                if remaining <= 0:
                    heapq.heappop(self._heap)
                    return due, task
                self._cond.wait(timeout=remaining)
            return None

    def _reschedule(self, due: float, task: ScheduledTask) -> None:
        period: float = task.period  # type: ignore[assignment]
        next_due: float = due + period
        now: float = time.monotonic()
        if now - next_due > period:
            next_due = now
        with self._cond:
            if self._shutdown or task.cancelled:
                return
            heapq.heappush(self._heap, (next_due, next(self._order), task))

    def _run(self) -> None:
        logger.debug("Worker %s started", self._name)
        while True:
            item: tuple[float, ScheduledTask] | None = self._next_task()
            if item is None:
                break
            due, task = item
            try:
                task._fn()
            except Exception:
                logger.exception("Task failed on worker %s", self._name)
            task._runs += 1
            if task.period is not None:
                self._reschedule(due, task)
        logger.debug("Worker %s stopped", self._name)
