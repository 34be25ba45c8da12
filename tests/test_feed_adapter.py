"""Unit tests for infra.feed_adapter module.

Tests the AdapterLifecycle state machine, per-epoch sequencing, stale
epoch suppression, disconnect guarantees, and callback isolation.
"""

import threading
import time
from typing import Iterator

import pytest

from core.errors import AlreadyConnectedError, EmissionError, NotConnectedError
from core.events import AdapterConnectionState, RawFeedMessage
from infra.feed_adapter import AdapterLifecycle, FeedEventHandler


class RecordingHandler:
    """FeedEventHandler that records every callback."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.messages: list[RawFeedMessage] = []
        self.errors: list[Exception] = []
        self.reasons: list[str] = []
        self.connected: threading.Event = threading.Event()
        self.disconnected: threading.Event = threading.Event()
        self.timed_out: threading.Event = threading.Event()
        self._lock: threading.Lock = threading.Lock()

    def on_connected(self, adapter_id: str) -> None:
        with self._lock:
            self.events.append(("connected", adapter_id))
        self.connected.set()

    def on_disconnected(self, adapter_id: str, reason: str) -> None:
        with self._lock:
            self.events.append(("disconnected", adapter_id))
            self.reasons.append(reason)
        self.disconnected.set()

    def on_message(self, adapter_id: str, message: RawFeedMessage) -> None:
        with self._lock:
            self.messages.append(message)

    def on_error(self, adapter_id: str, error: Exception) -> None:
        with self._lock:
            self.errors.append(error)

    def on_heartbeat_timeout(self, adapter_id: str) -> None:
        with self._lock:
            self.events.append(("heartbeat_timeout", adapter_id))
        self.timed_out.set()

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.events]


@pytest.fixture()
def lifecycle() -> Iterator[AdapterLifecycle]:
    lc: AdapterLifecycle = AdapterLifecycle("test-feed", shutdown_timeout_seconds=1.0)
    yield lc
    lc.disconnect()


def _connect(lc: AdapterLifecycle, handler: RecordingHandler) -> int:
    started: threading.Event = threading.Event()
    epoch: int = lc.begin_connect(handler, on_started=lambda e: started.set())
    assert started.wait(timeout=2.0)
    return epoch


# ---------------------------------------------------------------------------
# Protocol conformance
# ---------------------------------------------------------------------------


class TestProtocol:
    """RecordingHandler satisfies the handler protocol."""

    def test_handler_protocol(self) -> None:
        assert isinstance(RecordingHandler(), FeedEventHandler)


# ---------------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------------


class TestConnect:
    """Tests for begin_connect and the CONNECTED transition."""

    def test_initial_state(self, lifecycle: AdapterLifecycle) -> None:
        assert lifecycle.state == AdapterConnectionState.DISCONNECTED
        assert not lifecycle.is_connected
        assert lifecycle.epoch == 0

    def test_connect_reaches_connected(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        epoch: int = _connect(lifecycle, handler)
        assert epoch == 1
        assert lifecycle.state == AdapterConnectionState.CONNECTED
        assert lifecycle.is_live(epoch)
        assert handler.names() == ["connected"]

    def test_none_handler_rejected(self, lifecycle: AdapterLifecycle) -> None:
        with pytest.raises(ValueError):
            lifecycle.begin_connect(None)  # type: ignore[arg-type]
        assert lifecycle.state == AdapterConnectionState.DISCONNECTED

    def test_double_connect_rejected(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        _connect(lifecycle, handler)
        with pytest.raises(AlreadyConnectedError):
            lifecycle.begin_connect(RecordingHandler())
        assert lifecycle.is_connected

    def test_already_connected_is_runtime_error(self) -> None:
        assert issubclass(AlreadyConnectedError, RuntimeError)

    def test_require_connected(self, lifecycle: AdapterLifecycle) -> None:
        with pytest.raises(NotConnectedError):
            lifecycle.require_connected()
        epoch: int = _connect(lifecycle, RecordingHandler())
        assert lifecycle.require_connected() == epoch


# ---------------------------------------------------------------------------
# Emission
# ---------------------------------------------------------------------------


class TestEmit:
    """Tests for sequencing and delivery."""

    def test_sequence_starts_at_zero(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        epoch: int = _connect(lifecycle, handler)
        for _ in range(5):
            assert lifecycle.emit(epoch, b"{}")
        assert [m.sequence_number for m in handler.messages] == [0, 1, 2, 3, 4]

    def test_receive_timestamp_defaults_to_utc_now(
        self, lifecycle: AdapterLifecycle
    ) -> None:
        handler: RecordingHandler = RecordingHandler()
        epoch: int = _connect(lifecycle, handler)
        lifecycle.emit(epoch, b"x")
        assert handler.messages[0].receive_timestamp.tzinfo is not None
        assert handler.messages[0].payload == b"x"

    def test_sequence_resets_on_reconnect(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        first: int = _connect(lifecycle, handler)
        lifecycle.emit(first, b"a")
        lifecycle.emit(first, b"b")
        lifecycle.disconnect()

        second: int = _connect(lifecycle, handler)
        assert second == first + 1
        lifecycle.emit(second, b"c")
        assert [m.sequence_number for m in handler.messages] == [0, 1, 0]

    def test_stale_epoch_suppressed(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        first: int = _connect(lifecycle, handler)
        lifecycle.disconnect()
        _connect(lifecycle, handler)
        assert lifecycle.emit(first, b"late") is False
        assert lifecycle.report_error(first, RuntimeError("late")) is False
        assert lifecycle.schedule(first, lambda: None, 0.0) is None
        assert handler.messages == []

    def test_emit_after_disconnect_suppressed(
        self, lifecycle: AdapterLifecycle
    ) -> None:
        handler: RecordingHandler = RecordingHandler()
        epoch: int = _connect(lifecycle, handler)
        lifecycle.disconnect()
        assert lifecycle.emit(epoch, b"x") is False
        assert handler.messages == []

    def test_report_error_wraps(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        epoch: int = _connect(lifecycle, handler)
        cause: RuntimeError = RuntimeError("generator broke")
        assert lifecycle.report_error(epoch, cause)
        assert len(handler.errors) == 1
        error: Exception = handler.errors[0]
        assert isinstance(error, EmissionError)
        assert error.adapter_id == "test-feed"
        assert error.__cause__ is cause
        assert lifecycle.is_connected

    def test_heartbeat_timeout_keeps_connection(
        self, lifecycle: AdapterLifecycle
    ) -> None:
        handler: RecordingHandler = RecordingHandler()
        epoch: int = _connect(lifecycle, handler)
        assert lifecycle.report_heartbeat_timeout(epoch)
        assert handler.timed_out.is_set()
        assert lifecycle.is_connected


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------


class TestDisconnect:
    """Tests for disconnect guarantees."""

    def test_disconnect_delivers_once(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        _connect(lifecycle, handler)
        assert lifecycle.disconnect("operator") is True
        assert lifecycle.disconnect("again") is False
        assert handler.names() == ["connected", "disconnected"]
        assert handler.reasons == ["operator"]
        assert lifecycle.state == AdapterConnectionState.DISCONNECTED

    def test_disconnect_when_never_connected(
        self, lifecycle: AdapterLifecycle
    ) -> None:
        assert lifecycle.disconnect() is False

    def test_no_messages_after_disconnect(self, lifecycle: AdapterLifecycle) -> None:
        handler: RecordingHandler = RecordingHandler()
        epoch: int = _connect(lifecycle, handler)
        lifecycle.schedule_at_fixed_rate(
            epoch, lambda: lifecycle.emit(epoch, b"tick"), 0.0, 0.005
        )
        time.sleep(0.1)
        lifecycle.disconnect()
        count: int = len(handler.messages)
        time.sleep(0.3)
        assert len(handler.messages) == count
        assert count > 0

    def test_disconnect_from_callback(self, lifecycle: AdapterLifecycle) -> None:
        """A handler may disconnect its own adapter."""
        handler: RecordingHandler = RecordingHandler()
        original = handler.on_message

        def on_message(adapter_id: str, message: RawFeedMessage) -> None:
            original(adapter_id, message)
            lifecycle.disconnect("handler request")

        handler.on_message = on_message  # type: ignore[method-assign]
        epoch: int = _connect(lifecycle, handler)
        done: threading.Event = threading.Event()

        def emit_twice() -> None:
            lifecycle.emit(epoch, b"a")
            lifecycle.emit(epoch, b"b")
            done.set()

        lifecycle.schedule(epoch, emit_twice, 0.0)
        assert done.wait(timeout=2.0)
        assert handler.disconnected.wait(timeout=2.0)
        assert len(handler.messages) == 1
        assert not lifecycle.is_connected

    def test_disconnect_awaits_running_callback(self) -> None:
        """A callback in progress finishes before disconnect returns."""
        lc: AdapterLifecycle = AdapterLifecycle(
            "slow-handler", shutdown_timeout_seconds=0.05
        )
        handler: RecordingHandler = RecordingHandler()
        entered: threading.Event = threading.Event()
        finished: threading.Event = threading.Event()
        original = handler.on_message

        def on_message(adapter_id: str, message: RawFeedMessage) -> None:
            entered.set()
            time.sleep(0.3)
            original(adapter_id, message)
            finished.set()

        handler.on_message = on_message  # type: ignore[method-assign]
        epoch: int = _connect(lc, handler)
        lc.schedule(epoch, lambda: lc.emit(epoch, b"slow"), 0.0)
        assert entered.wait(timeout=2.0)

        started: float = time.monotonic()
        assert lc.disconnect("operator") is True
        elapsed: float = time.monotonic() - started

        assert finished.is_set()
        assert elapsed >= 0.2
        assert handler.names() == ["connected", "disconnected"]
        assert len(handler.messages) == 1

    def test_disconnect_during_connecting(self) -> None:
        """Disconnect before the worker completes the transition."""
        lc: AdapterLifecycle = AdapterLifecycle("slow-feed")
        handler: RecordingHandler = RecordingHandler()
        lc.begin_connect(handler)
        lc.disconnect("early")
        time.sleep(0.1)
        assert lc.state == AdapterConnectionState.DISCONNECTED
        assert "disconnected" in handler.names()


# ---------------------------------------------------------------------------
# Callback isolation
# ---------------------------------------------------------------------------


class TestCallbackIsolation:
    """A raising handler never kills the adapter."""

    def test_raising_on_message_is_swallowed(
        self, lifecycle: AdapterLifecycle
    ) -> None:
        handler: RecordingHandler = RecordingHandler()

        def boom(adapter_id: str, message: RawFeedMessage) -> None:
            raise RuntimeError("handler failure")

        handler.on_message = boom  # type: ignore[method-assign]
        epoch: int = _connect(lifecycle, handler)
        for _ in range(3):
            assert lifecycle.emit(epoch, b"x")
        assert lifecycle.callback_errors == 3
        assert lifecycle.is_connected

    def test_raising_on_connected_still_starts(self) -> None:
        lc: AdapterLifecycle = AdapterLifecycle("faulty-feed")
        handler: RecordingHandler = RecordingHandler()

        def boom(adapter_id: str) -> None:
            raise RuntimeError("connect handler failure")

        handler.on_connected = boom  # type: ignore[method-assign]
        started: threading.Event = threading.Event()
        lc.begin_connect(handler, on_started=lambda e: started.set())
        try:
            assert started.wait(timeout=2.0)
            assert lc.is_connected
            assert lc.callback_errors == 1
        finally:
            lc.disconnect()
