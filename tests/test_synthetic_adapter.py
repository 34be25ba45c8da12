"""Unit tests for infra.synthetic module.

Tests SyntheticFeedConfig and BurstConfig validation, message
generation (rate, mix, burst), per-epoch sequencing, heartbeat
simulation, and lifecycle errors.
"""

import json
import random
import re
import threading
import time
from typing import Any, Iterator

import pytest
from pydantic import ValidationError

from core.errors import AlreadyConnectedError, NotConnectedError
from core.events import AdapterConnectionState, RawFeedMessage, TransportType
from infra.feed_adapter import FeedAdapter
from infra.synthetic import (
    MIN_PRICE,
    BurstConfig,
    SymbolPriceState,
    SyntheticExchangeAdapter,
    SyntheticFeedConfig,
    SyntheticQuote,
)


class CollectingHandler:
    """FeedEventHandler collecting messages and lifecycle callbacks."""

    def __init__(self) -> None:
        self.messages: list[RawFeedMessage] = []
        self.callbacks: list[str] = []
        self.connected: threading.Event = threading.Event()
        self.timed_out: threading.Event = threading.Event()
        self._lock: threading.Lock = threading.Lock()

    def on_connected(self, adapter_id: str) -> None:
        with self._lock:
            self.callbacks.append("connected")
        self.connected.set()

    def on_disconnected(self, adapter_id: str, reason: str) -> None:
        with self._lock:
            self.callbacks.append("disconnected")

    def on_message(self, adapter_id: str, message: RawFeedMessage) -> None:
        with self._lock:
            self.messages.append(message)

    def on_error(self, adapter_id: str, error: Exception) -> None:
        with self._lock:
            self.callbacks.append("error")

    def on_heartbeat_timeout(self, adapter_id: str) -> None:
        with self._lock:
            self.callbacks.append("heartbeat_timeout")
        self.timed_out.set()

    def count(self) -> int:
        with self._lock:
            return len(self.messages)

    def decoded(self) -> list[dict[str, Any]]:
        with self._lock:
            return [json.loads(m.payload) for m in self.messages]


@pytest.fixture()
def handler() -> CollectingHandler:
    return CollectingHandler()


@pytest.fixture()
def make_adapter() -> Iterator:
    created: list[SyntheticExchangeAdapter] = []

    def _make(**kwargs: Any) -> SyntheticExchangeAdapter:
        adapter: SyntheticExchangeAdapter = SyntheticExchangeAdapter(
            SyntheticFeedConfig(**kwargs), seed=42
        )
        created.append(adapter)
        return adapter

    yield _make
    for adapter in created:
        adapter.disconnect()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestBurstConfig:
    """Tests for burst validation."""

    def test_disabled_skips_validation(self) -> None:
        config: BurstConfig = BurstConfig(enabled=False, multiplier=0, duration_ms=0)
        assert config.multiplier == 0

    def test_valid_enabled(self) -> None:
        config: BurstConfig = BurstConfig(
            enabled=True, multiplier=5, duration_ms=500, interval_ms=2000
        )
        assert config.enabled

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"multiplier": 1},
            {"duration_ms": 0},
            {"duration_ms": 2000, "interval_ms": 2000},
        ],
    )
    def test_invalid_enabled(self, kwargs: dict[str, int]) -> None:
        fields: dict[str, Any] = {
            "enabled": True,
            "multiplier": 5,
            "duration_ms": 500,
            "interval_ms": 2000,
        }
        fields.update(kwargs)
        with pytest.raises(ValidationError):
            BurstConfig(**fields)


class TestSyntheticFeedConfig:
    """Tests for adapter configuration validation."""

    def test_defaults(self) -> None:
        config: SyntheticFeedConfig = SyntheticFeedConfig()
        assert config.enabled
        assert config.symbols == ("AAPL", "GOOGL", "MSFT")
        assert config.message_rate_per_second == 10
        assert config.trade_to_quote_ratio == 5
        assert config.heartbeat_timeout_ms == 5000
        assert config.base_prices["NVDA"] == 850.0

    def test_symbols_stripped(self) -> None:
        config: SyntheticFeedConfig = SyntheticFeedConfig(symbols=[" AAPL ", "MSFT"])
        assert config.symbols == ("AAPL", "MSFT")

    def test_empty_symbols_rejected_when_enabled(self) -> None:
        with pytest.raises(ValidationError):
            SyntheticFeedConfig(symbols=[])

    def test_empty_symbols_allowed_when_disabled(self) -> None:
        config: SyntheticFeedConfig = SyntheticFeedConfig(enabled=False, symbols=[])
        assert config.symbols == ()

    def test_blank_symbol_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SyntheticFeedConfig(symbols=["AAPL", "  "])

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"message_rate_per_second": 0},
            {"trade_to_quote_ratio": 0},
            {"heartbeat_timeout_ms": 0},
            {"heartbeat_latency_ms": -1},
            {"base_prices": {"AAPL": 0.0}},
            {"unknown_field": 1},
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict[str, Any]) -> None:
        with pytest.raises(ValidationError):
            SyntheticFeedConfig(**kwargs)


# ---------------------------------------------------------------------------
# Price model
# ---------------------------------------------------------------------------


class TestSymbolPriceState:
    """Tests for the bounded random walk."""

    def test_drift_bounded(self) -> None:
        state: SymbolPriceState = SymbolPriceState("AAPL", 100.0, random.Random(1))
        previous: float = state.last_price
        for _ in range(1_000):
            price: float = state.next_price()
            assert abs(price - previous) <= previous * 0.001 + 0.005 + 1e-9
            previous = price

    def test_price_floor(self) -> None:
        state: SymbolPriceState = SymbolPriceState("PENNY", MIN_PRICE, random.Random(2))
        for _ in range(1_000):
            assert state.next_price() >= MIN_PRICE

    def test_half_spread_minimum(self) -> None:
        state: SymbolPriceState = SymbolPriceState("X", 1.0, random.Random(3))
        assert state.half_spread() == MIN_PRICE

    def test_synthetic_quote_rejects_crossed(self) -> None:
        with pytest.raises(ValidationError):
            SyntheticQuote(
                symbol="AAPL",
                bid_price=2.0,
                bid_size=100,
                ask_price=1.0,
                ask_size=100,
                timestamp="2026-01-05T14:30:00Z",
            )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class TestIdentity:
    """Tests for adapter identity and protocol conformance."""

    def test_generated_id(self) -> None:
        adapter: SyntheticExchangeAdapter = SyntheticExchangeAdapter()
        assert re.fullmatch(r"synthetic-exchange-[0-9a-f]{8}", adapter.adapter_id)

    def test_explicit_id(self) -> None:
        adapter: SyntheticExchangeAdapter = SyntheticExchangeAdapter(adapter_id="sim-1")
        assert adapter.adapter_id == "sim-1"

    def test_transport_and_protocol(self) -> None:
        adapter: SyntheticExchangeAdapter = SyntheticExchangeAdapter()
        assert adapter.transport_type == TransportType.VENDOR_SDK
        assert isinstance(adapter, FeedAdapter)
        assert adapter.state == AdapterConnectionState.DISCONNECTED


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class TestGeneration:
    """Tests for emitted messages."""

    def test_rate_approximately_honoured(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(message_rate_per_second=100)
        adapter.connect(handler)
        assert handler.connected.wait(timeout=2.0)
        time.sleep(1.0)
        adapter.disconnect()
        assert 70 <= handler.count() <= 130

    def test_sequence_numbers_contiguous(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(message_rate_per_second=200)
        adapter.connect(handler)
        time.sleep(0.3)
        adapter.disconnect()
        sequences: list[int] = [m.sequence_number for m in handler.messages]
        assert sequences == list(range(len(sequences)))

    def test_trade_quote_mix(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(
            message_rate_per_second=200, trade_to_quote_ratio=5
        )
        adapter.connect(handler)
        time.sleep(0.3)
        adapter.disconnect()
        decoded: list[dict[str, Any]] = handler.decoded()
        assert len(decoded) >= 12
        for index, message in enumerate(decoded, start=1):
            expected: str = "TRADE" if index % 6 == 0 else "QUOTE"
            assert message["type"] == expected

    def test_message_invariants(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(
            symbols=["AAPL", "NVDA"], message_rate_per_second=200
        )
        adapter.connect(handler)
        time.sleep(0.3)
        adapter.disconnect()
        decoded: list[dict[str, Any]] = handler.decoded()
        assert decoded
        for message in decoded:
            assert message["symbol"] in {"AAPL", "NVDA"}
            assert message["timestamp"]
            if message["type"] == "QUOTE":
                assert message["bidPrice"] < message["askPrice"]
                assert message["bidSize"] > 0
                assert message["askSize"] > 0
            else:
                assert message["price"] > 0
                assert message["quantity"] > 0
                assert message["quantity"] % 100 == 0
                assert message["side"] in {"BUY", "SELL"}
                assert message["tradeId"].startswith("T")

    def test_no_messages_after_disconnect(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(message_rate_per_second=100)
        adapter.connect(handler)
        time.sleep(0.2)
        adapter.disconnect()
        count: int = handler.count()
        time.sleep(0.5)
        assert handler.count() == count

    def test_burst_increases_volume(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(
            message_rate_per_second=10,
            burst=BurstConfig(
                enabled=True, multiplier=5, duration_ms=500, interval_ms=2000
            ),
        )
        adapter.connect(handler)
        time.sleep(3.0)
        adapter.disconnect()
        assert handler.count() > 30


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Tests for connect/disconnect semantics."""

    def test_sequence_resets_on_reconnect(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(message_rate_per_second=100)
        adapter.connect(handler)
        time.sleep(0.2)
        adapter.disconnect()
        first_count: int = handler.count()
        assert first_count > 0

        adapter.connect(handler)
        time.sleep(0.2)
        adapter.disconnect()
        second: list[RawFeedMessage] = handler.messages[first_count:]
        assert second
        assert second[0].sequence_number == 0

    def test_double_connect_rejected(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter()
        adapter.connect(handler)
        with pytest.raises(AlreadyConnectedError):
            adapter.connect(handler)

    def test_none_handler_rejected(self, make_adapter: Any) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter()
        with pytest.raises(ValueError):
            adapter.connect(None)  # type: ignore[arg-type]

    def test_disabled_adapter_is_silent(self, handler: CollectingHandler) -> None:
        adapter: SyntheticExchangeAdapter = SyntheticExchangeAdapter(
            SyntheticFeedConfig(enabled=False)
        )
        adapter.connect(handler)
        time.sleep(0.2)
        assert adapter.state == AdapterConnectionState.DISCONNECTED
        assert handler.callbacks == []
        assert handler.messages == []

    def test_disconnect_idempotent(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter()
        adapter.connect(handler)
        assert handler.connected.wait(timeout=2.0)
        adapter.disconnect()
        adapter.disconnect()
        assert handler.callbacks.count("disconnected") == 1


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


class TestHeartbeat:
    """Tests for the simulated heartbeat probe."""

    def test_requires_connection(self, make_adapter: Any) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter()
        with pytest.raises(NotConnectedError):
            adapter.send_heartbeat()

    def test_answered_probe_does_not_time_out(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(
            heartbeat_latency_ms=1, heartbeat_timeout_ms=100
        )
        adapter.connect(handler)
        assert handler.connected.wait(timeout=2.0)
        adapter.send_heartbeat()
        assert not handler.timed_out.wait(timeout=0.3)
        assert adapter.stats()["heartbeats_sent"] == 1

    def test_slow_probe_times_out_and_stays_connected(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(
            heartbeat_latency_ms=500, heartbeat_timeout_ms=100
        )
        adapter.connect(handler)
        assert handler.connected.wait(timeout=2.0)
        adapter.send_heartbeat()
        assert handler.timed_out.wait(timeout=2.0)
        assert adapter.is_connected
        assert adapter.stats()["heartbeat_timeouts"] == 1

    def test_latency_equal_to_timeout_times_out(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(
            heartbeat_latency_ms=100, heartbeat_timeout_ms=100
        )
        adapter.connect(handler)
        assert handler.connected.wait(timeout=2.0)
        adapter.send_heartbeat()
        assert handler.timed_out.wait(timeout=2.0)
        assert adapter.is_connected
        assert adapter.stats()["heartbeat_timeouts"] == 1


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestStats:
    """Tests for adapter statistics."""

    def test_counters_match_emitted(
        self, make_adapter: Any, handler: CollectingHandler
    ) -> None:
        adapter: SyntheticExchangeAdapter = make_adapter(message_rate_per_second=200)
        adapter.connect(handler)
        time.sleep(0.3)
        adapter.disconnect()
        stats: dict[str, object] = adapter.stats()
        assert stats["messages_emitted"] == handler.count()
        assert stats["trades"] + stats["quotes"] == stats["messages_emitted"]  # type: ignore[operator]
        assert stats["errors"] == 0
        assert stats["state"] == "DISCONNECTED"
        assert stats["in_burst"] is False
