"""Synthetic exchange feed adapter for development, demos and tests.

Generates realistic trade and quote messages without a real exchange
connection. Implements the :class:`~infra.feed_adapter.FeedAdapter`
protocol on top of :class:`~infra.feed_adapter.AdapterLifecycle`.

Price model:
    One bounded random walk per configured symbol. Each tick drifts the
    last price by at most ±0.1%, rounds it to cents and floors it at
    0.01. Quotes straddle the new price with a half-spread of
    ``max(0.01, 0.02% of price)``, so ``bid_price < ask_price`` always
    holds.

Emission schedule:
    A fixed-rate tick every ``1 / message_rate_per_second`` seconds on
    the adapter's worker. Each tick emits one message, or
    ``burst.multiplier`` messages while a burst window is active. Burst
    windows open every ``burst.interval_ms`` after connect (the first at
    ``interval_ms``) and last ``burst.duration_ms``.

Message mix:
    A per-epoch counter numbers messages from 1; message ``n`` is a trade
    when ``n % (trade_to_quote_ratio + 1) == 0``. With the default ratio
    of 5, one message in six is a trade.

Heartbeat:
    There is no remote peer, so ``send_heartbeat()`` simulates one: the
    probe is answered after ``heartbeat_latency_ms`` and checked at
    ``heartbeat_timeout_ms``. Setting the latency at or above the timeout
    reproduces an unresponsive venue.

Wire format (UTF-8 JSON)::

    {"type":"TRADE","symbol":"AAPL","price":185.12,"quantity":300,
     "timestamp":"2026-01-05T14:30:00.123456Z","tradeId":"T1a2b3c4d","side":"BUY"}
    {"type":"QUOTE","symbol":"AAPL","bidPrice":185.08,"bidSize":200,
     "askPrice":185.16,"askSize":500,"timestamp":"2026-01-05T14:30:00.123456Z"}
"""

import logging
import random
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from core.events import AdapterConnectionState, TradeSide, TransportType
from infra.feed_adapter import AdapterLifecycle, FeedEventHandler

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_DRIFT_FRACTION: float = 0.001
"""Maximum relative price drift per tick (0.1%)."""

SPREAD_FRACTION: float = 0.0002
"""Half-spread as a fraction of price (0.02%)."""

MIN_PRICE: float = 0.01
"""Price floor and minimum half-spread."""

DEFAULT_PRICE: float = 100.0
"""Starting price for symbols missing from ``base_prices``."""

DEFAULT_BASE_PRICES: dict[str, float] = {
    "AAPL": 185.0,
    "GOOGL": 140.0,
    "MSFT": 375.0,
    "AMZN": 170.0,
    "META": 480.0,
    "NVDA": 850.0,
    "TSLA": 240.0,
    "JPM": 190.0,
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BurstConfig(BaseModel):
    """Periodic burst window settings.

    Rules are checked only when ``enabled`` is ``True``.

    Attributes:
        enabled: Whether burst windows occur at all.
        multiplier: Messages per tick while a burst is active. Must be > 1.
        duration_ms: Length of each burst window. Must be > 0.
        interval_ms: Period between burst starts. Must exceed
            ``duration_ms``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(default=False, description="Enable burst windows")
    multiplier: int = Field(default=5, description="Messages per tick in a burst")
    duration_ms: int = Field(default=1000, description="Burst window length (ms)")
    interval_ms: int = Field(default=10_000, description="Burst period (ms)")

    @model_validator(mode="after")
    def _validate_when_enabled(self) -> "BurstConfig":
        if not self.enabled:
            return self
        if self.multiplier <= 1:
            raise ValueError(f"Burst multiplier must be > 1: {self.multiplier}")
        if self.duration_ms <= 0:
            raise ValueError(f"Burst duration must be positive: {self.duration_ms}")
        if self.interval_ms <= self.duration_ms:
            raise ValueError(
                "Burst interval must be > duration: "
                f"interval={self.interval_ms}, duration={self.duration_ms}"
            )
        return self


class SyntheticFeedConfig(BaseModel):
    """Configuration for :class:`SyntheticExchangeAdapter`.

    All rules are enforced at construction; an invalid configuration
    raises ``pydantic.ValidationError`` before any connection attempt.

    Attributes:
        enabled: ``False`` makes ``connect()`` a no-op with no callbacks.
        symbols: Symbols to generate. Non-empty when enabled.
        message_rate_per_second: Base emission rate. Must be > 0.
        burst: Burst window settings.
        trade_to_quote_ratio: Quotes per trade. Must be >= 1.
        heartbeat_timeout_ms: Probe deadline. Must be > 0.
        heartbeat_latency_ms: Simulated probe round trip. Must be >= 0.
        base_prices: Starting price per symbol. Each must be > 0.
        shutdown_timeout_seconds: Wait for in-flight work on disconnect.

    Example:
        >>> config = SyntheticFeedConfig(
        ...     symbols=["AAPL", "NVDA"],
        ...     message_rate_per_second=100,
        ...     burst=BurstConfig(enabled=True, multiplier=5,
        ...                       duration_ms=500, interval_ms=2000),
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(default=True, description="Start the adapter on connect")
    symbols: tuple[str, ...] = Field(
        default=("AAPL", "GOOGL", "MSFT"),
        description="Symbols to generate",
    )
    message_rate_per_second: int = Field(
        default=10,
        gt=0,
        description="Base emission rate (messages/second)",
    )
    burst: BurstConfig = Field(default_factory=BurstConfig)
    trade_to_quote_ratio: int = Field(
        default=5,
        ge=1,
        description="Quotes emitted per trade",
    )
    heartbeat_timeout_ms: int = Field(
        default=5000,
        gt=0,
        description="Heartbeat probe deadline (ms)",
    )
    heartbeat_latency_ms: int = Field(
        default=1,
        ge=0,
        description="Simulated heartbeat round trip (ms)",
    )
    base_prices: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_BASE_PRICES),
        description="Starting price per symbol",
    )
    shutdown_timeout_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="Seconds disconnect() waits for in-flight work",
    )

    @field_validator("symbols")
    @classmethod
    def _strip_symbols(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        cleaned: tuple[str, ...] = tuple(s.strip() for s in v)
        if any(not s for s in cleaned):
            raise ValueError("Symbols cannot be blank")
        return cleaned

    @field_validator("base_prices")
    @classmethod
    def _positive_prices(cls, v: dict[str, float]) -> dict[str, float]:
        for symbol, price in v.items():
            if price <= 0:
                raise ValueError(f"Base price must be positive: {symbol}={price}")
        return v

    @model_validator(mode="after")
    def _symbols_when_enabled(self) -> "SyntheticFeedConfig":
        if self.enabled and not self.symbols:
            raise ValueError("Symbols cannot be empty when adapter is enabled")
        return self


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class _SyntheticPayload(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_bytes(self) -> bytes:
        """Serialize to the UTF-8 JSON wire format."""
        return self.model_dump_json(by_alias=True).encode("utf-8")


class SyntheticTrade(_SyntheticPayload):
    """Executed trade as emitted on the wire."""

    type: Literal["TRADE"] = "TRADE"
    symbol: str = Field(min_length=1)
    price: float = Field(gt=0.0)
    quantity: int = Field(gt=0)
    timestamp: datetime
    trade_id: str = Field(min_length=1)
    side: TradeSide


class SyntheticQuote(_SyntheticPayload):
    """Top-of-book quote as emitted on the wire."""

    type: Literal["QUOTE"] = "QUOTE"
    symbol: str = Field(min_length=1)
    bid_price: float = Field(gt=0.0)
    bid_size: int = Field(gt=0)
    ask_price: float = Field(gt=0.0)
    ask_size: int = Field(gt=0)
    timestamp: datetime

    @model_validator(mode="after")
    def _check_uncrossed(self) -> "SyntheticQuote":
        if self.bid_price >= self.ask_price:
            raise ValueError(
                f"bid must be below ask: bid={self.bid_price}, ask={self.ask_price}"
            )
        return self


# ---------------------------------------------------------------------------
# Price state
# ---------------------------------------------------------------------------


class SymbolPriceState:
    """Bounded random-walk price for one symbol.

    Args:
        symbol: Symbol name.
        initial_price: Starting price. Must be > 0.
        rng: Random source shared with the owning adapter.
    """

    __slots__ = ("symbol", "last_price", "_rng")

    def __init__(self, symbol: str, initial_price: float, rng: random.Random) -> None:
        self.symbol: str = symbol
        self.last_price: float = initial_price
        self._rng: random.Random = rng

    def next_price(self) -> float:
        """Advance the walk by one tick and return the new price."""
        drift: float = (self._rng.random() * 2.0 - 1.0) * MAX_DRIFT_FRACTION
        price: float = round(self.last_price * (1.0 + drift), 2)
        self.last_price = max(MIN_PRICE, price)
        return self.last_price

    def half_spread(self) -> float:
        """Half of the quoted spread at the current price."""
        return max(MIN_PRICE, self.last_price * SPREAD_FRACTION)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class SyntheticExchangeAdapter:
    """Feed adapter producing synthetic trades and quotes.

    Args:
        config: Adapter configuration. Defaults to
            ``SyntheticFeedConfig()``.
        adapter_id: Identifier. Defaults to
            ``synthetic-exchange-<8 hex chars>``.
        seed: Optional seed for reproducible price paths.

    Example::

        adapter = SyntheticExchangeAdapter(SyntheticFeedConfig(symbols=["AAPL"]))
        adapter.connect(handler)
        ...
        adapter.disconnect()
    """

    def __init__(
        self,
        config: SyntheticFeedConfig | None = None,
        adapter_id: str | None = None,
        seed: int | None = None,
    ) -> None:
        self._config: SyntheticFeedConfig = config or SyntheticFeedConfig()
        self._adapter_id: str = (
            adapter_id or f"synthetic-exchange-{uuid.uuid4().hex[:8]}"
        )
        self._lifecycle: AdapterLifecycle = AdapterLifecycle(
            self._adapter_id,
            shutdown_timeout_seconds=self._config.shutdown_timeout_seconds,
        )
        self._rng: random.Random = random.Random(seed)
        self._symbols: tuple[str, ...] = self._config.symbols
        self._prices: dict[str, SymbolPriceState] = {
            symbol: SymbolPriceState(
                symbol,
                self._config.base_prices.get(symbol, DEFAULT_PRICE),
                self._rng,
            )
            for symbol in self._symbols
        }
        self._tick_period: float = 1.0 / self._config.message_rate_per_second

        # Per-epoch generation state (worker thread only)
        self._message_counter: int = 0
        self._connected_mono: float = 0.0

        # Pending heartbeat probes (guarded by _probe_lock)
        self._pending_probes: set[int] = set()
        self._next_probe: int = 0
        self._probe_lock: threading.Lock = threading.Lock()

        # Counters (guarded by _counter_lock)
        self._messages_emitted: int = 0
        self._trades: int = 0
        self._quotes: int = 0
        self._errors: int = 0
        self._heartbeats_sent: int = 0
        self._heartbeat_timeouts: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # FeedAdapter protocol
    # ------------------------------------------------------------------

    @property
    def adapter_id(self) -> str:
        return self._adapter_id

    @property
    def transport_type(self) -> TransportType:
        return TransportType.VENDOR_SDK

    @property
    def state(self) -> AdapterConnectionState:
        return self._lifecycle.state

    @property
    def is_connected(self) -> bool:
        return self._lifecycle.is_connected

    @property
    def config(self) -> SyntheticFeedConfig:
        return self._config

    def connect(self, handler: FeedEventHandler) -> None:
        """Start generating messages for ``handler``.

        A disabled adapter ignores the call entirely.

        Raises:
            ValueError: If ``handler`` is ``None``.
            AlreadyConnectedError: If not DISCONNECTED.
        """
        if not self._config.enabled:
            logger.info(
                "SyntheticExchangeAdapter %s is disabled in configuration, not starting",
                self._adapter_id,
            )
            return
        self._lifecycle.begin_connect(handler, on_started=self._on_started)

    def disconnect(self) -> None:
        """Stop generation and deliver ``on_disconnected``. Idempotent."""
        self._lifecycle.disconnect("Disconnect requested")
        with self._probe_lock:
            self._pending_probes.clear()

    def send_heartbeat(self) -> None:
        """Issue a simulated liveness probe.

        Raises:
            NotConnectedError: If the adapter is not CONNECTED.
        """
        epoch: int = self._lifecycle.require_connected()
        with self._probe_lock:
            probe: int = self._next_probe
            self._next_probe += 1
            self._pending_probes.add(probe)
        with self._counter_lock:
            self._heartbeats_sent += 1

        # A round trip as long as the timeout is never answered in time.
        if self._config.heartbeat_latency_ms < self._config.heartbeat_timeout_ms:
            self._lifecycle.schedule(
                epoch,
                lambda: self._answer_probe(probe),
                self._config.heartbeat_latency_ms / 1000.0,
            )
        self._lifecycle.schedule(
            epoch,
            lambda: self._check_probe(epoch, probe),
            self._config.heartbeat_timeout_ms / 1000.0,
        )
        logger.debug("Adapter %s heartbeat probe %d sent", self._adapter_id, probe)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def in_burst(self) -> bool:
        """Whether a burst window is active right now."""
        if not self._lifecycle.is_connected:
            return False
        return self._burst_active(time.monotonic())

    def stats(self) -> dict[str, object]:
        """Return adapter statistics."""
        with self._counter_lock:
            counters: dict[str, object] = {
                "messages_emitted": self._messages_emitted,
                "trades": self._trades,
                "quotes": self._quotes,
                "errors": self._errors,
                "heartbeats_sent": self._heartbeats_sent,
                "heartbeat_timeouts": self._heartbeat_timeouts,
            }
        return {
            "adapter_id": self._adapter_id,
            "state": self._lifecycle.state.value,
            "epoch": self._lifecycle.epoch,
            "in_burst": self.in_burst(),
            **counters,
        }

    # ------------------------------------------------------------------
    # Worker tasks
    # ------------------------------------------------------------------

    def _on_started(self, epoch: int) -> None:
        self._message_counter = 0
        self._connected_mono = time.monotonic()
        logger.info(
            "SyntheticExchangeAdapter %s started: symbols=%s, rate=%d/s, burst=%s",
            self._adapter_id,
            ",".join(self._symbols),
            self._config.message_rate_per_second,
            self._config.burst.enabled,
        )
        self._lifecycle.schedule_at_fixed_rate(
            epoch,
            lambda: self._tick(epoch),
            self._tick_period,
            self._tick_period,
        )

    def _tick(self, epoch: int) -> None:
        count: int = (
            self._config.burst.multiplier
            if self._burst_active(time.monotonic())
            else 1
        )
        for _ in range(count):
            if not self._lifecycle.is_live(epoch):
                return
            self._emit_one(epoch)

    def _burst_active(self, now_mono: float) -> bool:
        burst: BurstConfig = self._config.burst
        if not burst.enabled:
            return False
        elapsed_ms: float = (now_mono - self._connected_mono) * 1000.0
        if elapsed_ms < burst.interval_ms:
            return False
        return elapsed_ms % burst.interval_ms < burst.duration_ms

    def _emit_one(self, epoch: int) -> None:
        try:
            symbol: str = self._rng.choice(self._symbols)
            self._message_counter += 1
            is_trade: bool = (
                self._message_counter % (self._config.trade_to_quote_ratio + 1) == 0
            )
            payload: bytes = (
                self._generate_trade(symbol) if is_trade else self._generate_quote(symbol)
            )
        except Exception as exc:
            with self._counter_lock:
                self._errors += 1
            logger.exception(
                "Error generating message in SyntheticExchangeAdapter %s",
                self._adapter_id,
            )
            self._lifecycle.report_error(epoch, exc)
            return

        if self._lifecycle.emit(epoch, payload):
            with self._counter_lock:
                self._messages_emitted += 1
                if is_trade:
                    self._trades += 1
                else:
                    self._quotes += 1

    def _generate_trade(self, symbol: str) -> bytes:
        state: SymbolPriceState = self._prices[symbol]
        trade: SyntheticTrade = SyntheticTrade(
            symbol=symbol,
            price=state.next_price(),
            quantity=self._random_quantity(),
            timestamp=datetime.now(timezone.utc),
            trade_id=f"T{uuid.uuid4().hex[:8]}",
            side=TradeSide.BUY if self._rng.random() < 0.5 else TradeSide.SELL,
        )
        return trade.to_bytes()

    def _generate_quote(self, symbol: str) -> bytes:
        state: SymbolPriceState = self._prices[symbol]
        mid: float = state.next_price()
        half: float = state.half_spread()
        quote: SyntheticQuote = SyntheticQuote(
            symbol=symbol,
            bid_price=round(max(MIN_PRICE, mid - half), 4),
            bid_size=self._random_quantity(),
            ask_price=round(mid + half, 4),
            ask_size=self._random_quantity(),
            timestamp=datetime.now(timezone.utc),
        )
        return quote.to_bytes()

    def _random_quantity(self) -> int:
        # Round lots of 100 in [100, 10000]
        return (self._rng.randrange(100) + 1) * 100

    def _answer_probe(self, probe: int) -> None:
        with self._probe_lock:
            self._pending_probes.discard(probe)

    def _check_probe(self, epoch: int, probe: int) -> None:
        with self._probe_lock:
            if probe not in self._pending_probes:
                return
            self._pending_probes.discard(probe)
        with self._counter_lock:
            self._heartbeat_timeouts += 1
        self._lifecycle.report_heartbeat_timeout(epoch)
