"""Unit tests for infra.supervisor module.

Tests that the supervisor connects every adapter to the shared ingest
handler, survives a failing adapter, probes connected adapters, and
disconnects everything on stop.
"""

import time
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from core.bus import RAW_QUOTES_TOPIC, RAW_TRADES_TOPIC, InMemoryEventBus
from core.errors import NotConnectedError
from core.events import AdapterConnectionState, RawMarketEvent
from core.feed_health import AdapterHealthMonitor
from infra.supervisor import FeedSupervisor, FeedSupervisorConfig
from infra.synthetic import SyntheticExchangeAdapter, SyntheticFeedConfig


def _mock_adapter(adapter_id: str, connected: bool = True) -> MagicMock:
    adapter: MagicMock = MagicMock()
    adapter.adapter_id = adapter_id
    adapter.is_connected = connected
    adapter.state = (
        AdapterConnectionState.CONNECTED if connected else AdapterConnectionState.DISCONNECTED
    )
    return adapter


NO_HEARTBEAT: FeedSupervisorConfig = FeedSupervisorConfig(heartbeat_enabled=False)


class TestFeedSupervisorConfig:
    """Tests for FeedSupervisorConfig."""

    def test_defaults(self) -> None:
        config: FeedSupervisorConfig = FeedSupervisorConfig()
        assert config.heartbeat_enabled
        assert config.heartbeat_interval_seconds == 5.0

    def test_non_positive_interval_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FeedSupervisorConfig(heartbeat_interval_seconds=0.0)


class TestStartStop:
    """Tests for start() and stop()."""

    def test_connects_all_to_shared_ingest(self) -> None:
        adapters: list[MagicMock] = [_mock_adapter("a"), _mock_adapter("b")]
        supervisor: FeedSupervisor = FeedSupervisor(adapters, MagicMock(), NO_HEARTBEAT)
        supervisor.start()
        for adapter in adapters:
            adapter.connect.assert_called_once_with(supervisor.ingest)
        supervisor.stop()
        for adapter in adapters:
            adapter.disconnect.assert_called_once()

    def test_failing_adapter_does_not_block_others(self) -> None:
        broken: MagicMock = _mock_adapter("broken")
        broken.connect.side_effect = RuntimeError("cannot start")
        healthy: MagicMock = _mock_adapter("healthy")
        supervisor: FeedSupervisor = FeedSupervisor(
            [broken, healthy], MagicMock(), NO_HEARTBEAT
        )
        supervisor.start()
        healthy.connect.assert_called_once()
        supervisor.stop()

    def test_start_and_stop_idempotent(self) -> None:
        adapter: MagicMock = _mock_adapter("a")
        supervisor: FeedSupervisor = FeedSupervisor([adapter], MagicMock(), NO_HEARTBEAT)
        supervisor.start()
        supervisor.start()
        supervisor.stop()
        supervisor.stop()
        adapter.connect.assert_called_once()
        adapter.disconnect.assert_called_once()


class TestHeartbeats:
    """Tests for send_heartbeats() and the heartbeat thread."""

    def test_probes_connected_only(self) -> None:
        up: MagicMock = _mock_adapter("up")
        down: MagicMock = _mock_adapter("down", connected=False)
        supervisor: FeedSupervisor = FeedSupervisor([up, down], MagicMock(), NO_HEARTBEAT)
        assert supervisor.send_heartbeats() == 1
        up.send_heartbeat.assert_called_once()
        down.send_heartbeat.assert_not_called()

    def test_race_with_disconnect_tolerated(self) -> None:
        racing: MagicMock = _mock_adapter("racing")
        racing.send_heartbeat.side_effect = NotConnectedError("gone")
        supervisor: FeedSupervisor = FeedSupervisor([racing], MagicMock(), NO_HEARTBEAT)
        assert supervisor.send_heartbeats() == 0
        assert supervisor.stats()["heartbeat_failures"] == 0

    def test_unexpected_failure_counted(self) -> None:
        faulty: MagicMock = _mock_adapter("faulty")
        faulty.send_heartbeat.side_effect = ValueError("bad probe")
        supervisor: FeedSupervisor = FeedSupervisor([faulty], MagicMock(), NO_HEARTBEAT)
        supervisor.send_heartbeats()
        assert supervisor.stats()["heartbeat_failures"] == 1

    def test_heartbeat_thread_runs(self) -> None:
        adapter: MagicMock = _mock_adapter("a")
        supervisor: FeedSupervisor = FeedSupervisor(
            [adapter],
            MagicMock(),
            FeedSupervisorConfig(heartbeat_interval_seconds=0.05),
        )
        supervisor.start()
        time.sleep(0.3)
        supervisor.stop()
        assert adapter.send_heartbeat.call_count >= 2


class TestWithSyntheticAdapters:
    """Integration with real synthetic adapters and the in-memory bus."""

    def test_raw_events_flow_to_bus(self) -> None:
        bus: InMemoryEventBus = InMemoryEventBus()
        received: list[RawMarketEvent] = []
        bus.subscribe(RAW_TRADES_TOPIC, received.append)
        bus.subscribe(RAW_QUOTES_TOPIC, received.append)
        health: AdapterHealthMonitor = AdapterHealthMonitor()

        adapters: list[SyntheticExchangeAdapter] = [
            SyntheticExchangeAdapter(
                SyntheticFeedConfig(symbols=["AAPL"], message_rate_per_second=100),
                adapter_id="sim-1",
            ),
            SyntheticExchangeAdapter(
                SyntheticFeedConfig(symbols=["MSFT"], message_rate_per_second=100),
                adapter_id="sim-2",
            ),
        ]
        supervisor: FeedSupervisor = FeedSupervisor(
            adapters, bus, NO_HEARTBEAT, health=health
        )
        supervisor.start()
        time.sleep(0.3)
        supervisor.stop()

        instruments: set[str] = {event.instrument_id for event in received}
        assert instruments == {"AAPL", "MSFT"}
        assert health.has_seen("sim-1")
        assert health.has_seen("sim-2")
        assert not health.is_connected("sim-1")
        stats: dict[str, object] = supervisor.stats()
        assert stats["adapters"] == {"sim-1": "DISCONNECTED", "sim-2": "DISCONNECTED"}
        assert stats["ingest"]["decode_errors"] == 0  # type: ignore[index]
        assert stats["ingest"]["sequence_gaps"] == 0  # type: ignore[index]
