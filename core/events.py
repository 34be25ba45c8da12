"""Event models for the PulseWire market data pipeline.

This module defines every value that crosses a pipeline boundary: the
transport-agnostic :class:`RawFeedMessage` produced by feed adapters, the
:class:`RawMarketEvent` decoded from it and published on raw topics, and
the validated :class:`CanonicalEvent` fanned out to clients. All models
are Pydantic-based with ``frozen=True`` for immutability and thread
safety.

Architecture note:
    Events are built in adapter worker threads and consumed on whichever
    thread called ``publish``. Construction at trust boundaries (raw
    payload decoding, tests, client requests) goes through regular
    validated construction. The normalizer builds canonical events with
    ``model_construct()`` after its own explicit checks, skipping a
    second validation pass on the hot path.

Wire format:
    Models that reach clients or a broker serialize with camelCase keys
    (``eventId``, ``bidPrice``) and ISO-8601 timestamps. Use
    :meth:`CanonicalEvent.to_json` / :func:`encode_event` rather than
    calling ``model_dump_json()`` directly so aliases are applied.

Float precision contract:
    Prices and sizes are IEEE 754 ``float``. Compare prices with a
    tolerance (``abs(a - b) < 1e-9``), never exact equality.

Example:
    >>> from datetime import datetime, timezone
    >>> from core.events import Quote
    >>> quote = Quote(bid_price=185.48, bid_size=100, ask_price=185.52, ask_size=200)
    >>> round(quote.spread(), 2)
    0.04
    >>> quote.model_dump(by_alias=True)["bidPrice"]
    185.48
"""

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from core.errors import EventValidationError


WILDCARD: str = "*"
"""Subscription token matching every instrument."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Canonical event type tag.

    ``TRADE`` events carry a :class:`Trade` payload, ``QUOTE`` events a
    :class:`Quote`. Book and status events carry a free-form mapping.
    """

    TRADE = "TRADE"
    QUOTE = "QUOTE"
    BOOK_SNAPSHOT = "BOOK_SNAPSHOT"
    BOOK_DELTA = "BOOK_DELTA"
    STATUS = "STATUS"


class TransportType(str, Enum):
    """Transport used by a feed adapter.

    Metadata only (configuration, logging, metrics). Downstream stages
    receive the same :class:`RawFeedMessage` regardless of transport and
    must never branch on this value.
    """

    TCP = "TCP"
    UDP = "UDP"
    WEBSOCKET = "WEBSOCKET"
    VENDOR_SDK = "VENDOR_SDK"


class AdapterConnectionState(str, Enum):
    """Connection state machine of a feed adapter.

    States:
        DISCONNECTED: Initial and terminal state.
        CONNECTING: ``connect()`` accepted, transition pending on the
            adapter's worker.
        CONNECTED: ``on_connected`` delivered, messages flowing.
    """

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class TradeSide(str, Enum):
    """Aggressor side of a trade (BUY hit the ask, SELL hit the bid)."""

    BUY = "BUY"
    SELL = "SELL"


class SubscriptionAction(str, Enum):
    """Client request action on the fan-out gateway."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


# ---------------------------------------------------------------------------
# Raw adapter output
# ---------------------------------------------------------------------------


class RawFeedMessage(BaseModel):
    """Transport-agnostic message emitted by a feed adapter.

    Owned by the adapter until handed to ``FeedEventHandler.on_message``,
    immutable afterwards.

    Attributes:
        payload: Raw bytes as received (or generated). May be empty.
        receive_timestamp: UTC time the adapter received the message.
        sequence_number: Adapter-assigned sequence within the current
            connection epoch, or ``-1`` when unknown.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    payload: bytes = Field(description="Raw message bytes")
    receive_timestamp: datetime = Field(description="Adapter receive time (UTC)")
    sequence_number: int = Field(
        ge=-1,
        description="Sequence within the connection epoch; -1 = unknown",
    )

    @classmethod
    def without_sequence(
        cls,
        payload: bytes,
        receive_timestamp: datetime,
    ) -> "RawFeedMessage":
        """Build a message whose sequence number is unknown (``-1``)."""
        return cls(
            payload=payload,
            receive_timestamp=receive_timestamp,
            sequence_number=-1,
        )

    def has_sequence_number(self) -> bool:
        """Return ``True`` if the message carries a real sequence number."""
        return self.sequence_number >= 0


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    """Base for models serialized to clients: frozen, camelCase aliases."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Trade(_WireModel):
    """Executed trade payload.

    Attributes:
        price: Execution price. Strictly positive.
        size: Executed quantity. Strictly positive.
        conditions: Optional venue trade-condition codes.
        side: Optional aggressor side.
    """

    price: float = Field(gt=0.0, description="Execution price")
    size: float = Field(gt=0.0, description="Executed quantity")
    conditions: str | None = Field(default=None, description="Trade conditions")
    side: TradeSide | None = Field(default=None, description="Aggressor side")


class Quote(_WireModel):
    """Top-of-book quote payload.

    Enforces the uncrossed-market invariant ``bid_price < ask_price``.

    Attributes:
        bid_price: Best bid price. Strictly positive.
        bid_size: Quantity at the bid. Strictly positive.
        ask_price: Best ask price. Strictly positive.
        ask_size: Quantity at the ask. Strictly positive.
    """

    bid_price: float = Field(gt=0.0, description="Best bid price")
    bid_size: float = Field(gt=0.0, description="Quantity at the bid")
    ask_price: float = Field(gt=0.0, description="Best ask price")
    ask_size: float = Field(gt=0.0, description="Quantity at the ask")

    @model_validator(mode="after")
    def _check_uncrossed(self) -> "Quote":
        if self.bid_price >= self.ask_price:
            raise ValueError(
                f"bid must be below ask: bid={self.bid_price}, ask={self.ask_price}"
            )
        return self

    def spread(self) -> float:
        """Return ``ask_price - bid_price``."""
        return self.ask_price - self.bid_price

    def mid_price(self) -> float:
        """Return the midpoint of bid and ask."""
        return (self.bid_price + self.ask_price) / 2.0


EventPayload = Annotated[
    Union[Trade, Quote, dict[str, Any]],
    Field(union_mode="left_to_right"),
]
"""Payload variants. Book and status events use a free-form mapping."""

_PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.TRADE: Trade,
    EventType.QUOTE: Quote,
}


def payload_matches(event_type: EventType | None, payload: object) -> bool:
    """Check that ``payload`` is the variant required by ``event_type``.

    Args:
        event_type: The event's type tag.
        payload: The event's payload.

    Returns:
        ``True`` if TRADE carries a :class:`Trade`, QUOTE a
        :class:`Quote`, and any other type a mapping.
    """
    if event_type is None or payload is None:
        return False
    expected: type | None = _PAYLOAD_TYPES.get(event_type)
    if expected is None:
        return isinstance(payload, dict)
    return isinstance(payload, expected)


# ---------------------------------------------------------------------------
# Event envelopes
# ---------------------------------------------------------------------------


class RawMarketEvent(_WireModel):
    """Event decoded from a :class:`RawFeedMessage`, before normalization.

    Deliberately permissive: identifiers may be empty and the type or
    payload may be missing. The normalizer decides what is publishable.

    Attributes:
        event_id: Event identifier (may be empty).
        instrument_id: Instrument identifier (may be empty).
        event_type: Type tag, or ``None`` if the source did not provide one.
        exchange_timestamp: Venue timestamp, if known.
        receive_timestamp: Adapter receive time, if known.
        publish_timestamp: Always ``None`` on raw topics.
        schema_version: Source schema version (0 = unversioned).
        payload: Payload variant, or ``None``.
    """

    event_id: str = Field(default="", description="Event identifier")
    instrument_id: str = Field(default="", description="Instrument identifier")
    event_type: EventType | None = Field(default=None, description="Type tag")
    exchange_timestamp: datetime | None = Field(default=None)
    receive_timestamp: datetime | None = Field(default=None)
    publish_timestamp: datetime | None = Field(default=None)
    schema_version: int = Field(default=0, ge=0)
    payload: Optional[EventPayload] = Field(default=None)


class CanonicalEvent(_WireModel):
    """Validated, schema-versioned event consumed by clients.

    Created by the normalizer; never mutated after publication.

    Attributes:
        event_id: Unique, non-empty event identifier.
        instrument_id: Non-empty instrument identifier.
        event_type: Type tag. The payload variant must match it.
        exchange_timestamp: Venue timestamp, if the source provided one.
        receive_timestamp: Adapter receive time, if known.
        publish_timestamp: Time the normalizer published the event.
        schema_version: Canonical schema version from normalizer config.
        payload: :class:`Trade`, :class:`Quote`, or a mapping for book and
            status events.

    Example:
        >>> from datetime import datetime, timezone
        >>> now = datetime.now(timezone.utc)
        >>> event = CanonicalEvent(
        ...     event_id="e-1", instrument_id="AAPL", event_type=EventType.TRADE,
        ...     exchange_timestamp=now, receive_timestamp=now,
        ...     publish_timestamp=now, schema_version=1,
        ...     payload=Trade(price=185.5, size=100),
        ... )
        >>> '"instrumentId":"AAPL"' in event.to_json()
        True
    """

    event_id: str = Field(min_length=1, description="Unique event identifier")
    instrument_id: str = Field(min_length=1, description="Instrument identifier")
    event_type: EventType = Field(description="Type tag")
    exchange_timestamp: datetime | None = Field(default=None)
    receive_timestamp: datetime | None = Field(default=None)
    publish_timestamp: datetime = Field(description="Normalizer publish time")
    schema_version: int = Field(ge=0, description="Canonical schema version")
    payload: EventPayload = Field(description="Payload variant")

    @model_validator(mode="after")
    def _check_payload_variant(self) -> "CanonicalEvent":
        if not payload_matches(self.event_type, self.payload):
            raise ValueError(
                f"payload {type(self.payload).__name__} does not match "
                f"event type {self.event_type.value}"
            )
        return self

    def to_json(self) -> str:
        """Serialize with wire (camelCase) keys."""
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Gateway client protocol
# ---------------------------------------------------------------------------


class SubscriptionRequest(_WireModel):
    """Inbound client request ``{"action": ..., "instrumentId": ...}``.

    ``action`` is matched case-insensitively. Unknown keys
    (a client request id, for example) are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    action: SubscriptionAction
    instrument_id: str = Field(min_length=1)

    @field_validator("action", mode="before")
    @classmethod
    def _lower_action(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().lower()
        return v


class SubscriptionAck(_WireModel):
    """Outbound acknowledgment ``{"status": ..., "instrumentId": ...}``."""

    status: Literal["subscribed", "unsubscribed"]
    instrument_id: str

    def to_json(self) -> str:
        """Serialize with wire (camelCase) keys."""
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Bus codec (broker-backed backbones)
# ---------------------------------------------------------------------------

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    "RawMarketEvent": RawMarketEvent,
    "CanonicalEvent": CanonicalEvent,
}


def encode_event(event: BaseModel) -> bytes:
    """Encode a bus event as a JSON envelope naming its model.

    Args:
        event: A :class:`RawMarketEvent` or :class:`CanonicalEvent`.

    Returns:
        UTF-8 JSON bytes ``{"model": <name>, "event": {...}}``.

    Raises:
        EventValidationError: If the event type is not registered.
    """
    name: str = type(event).__name__
    if name not in _EVENT_MODELS:
        raise EventValidationError(f"Unsupported bus event type: {name}")
    envelope: dict[str, Any] = {
        "model": name,
        "event": event.model_dump(mode="json", by_alias=True),
    }
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def decode_event(data: bytes | str) -> BaseModel:
    """Decode an envelope produced by :func:`encode_event`.

    Raises:
        EventValidationError: If the envelope is malformed, names an
            unknown model, or fails model validation.
    """
    try:
        envelope: Any = json.loads(data)
        model: type[BaseModel] = _EVENT_MODELS[envelope["model"]]
        return model.model_validate(envelope["event"])
    except (ValueError, KeyError, TypeError) as exc:
        raise EventValidationError(f"Undecodable bus event: {exc}") from exc
