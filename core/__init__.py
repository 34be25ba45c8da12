"""Core domain layer for the PulseWire data plane.

This package provides the event models, the error taxonomy, the
publish/subscribe bus contract with its in-memory implementation, the
normalizer and the fan-out gateway. All event and configuration models
are Pydantic-based with frozen configuration for immutability.
"""

from core.bus import (
    CANONICAL_TOPIC,
    RAW_QUOTES_TOPIC,
    RAW_TRADES_TOPIC,
    BackboneConsumer,
    BackbonePublisher,
    EventBusStats,
    InMemoryEventBus,
)
from core.dispatcher import (
    Dispatcher,
    DispatcherConfig,
    DispatcherHealth,
    DispatcherStats,
)
from core.errors import (
    AlreadyConnectedError,
    ConnectionStateError,
    DeliveryError,
    EmissionError,
    EventValidationError,
    NotConnectedError,
    PulseWireError,
)
from core.events import (
    WILDCARD,
    AdapterConnectionState,
    CanonicalEvent,
    EventType,
    Quote,
    RawFeedMessage,
    RawMarketEvent,
    SubscriptionAck,
    SubscriptionAction,
    SubscriptionRequest,
    Trade,
    TradeSide,
    TransportType,
)
from core.feed_health import AdapterHealth, AdapterHealthMonitor, FeedHealthConfig
from core.gateway import ClientSession, FanoutGateway
from core.normalizer import Normalizer, NormalizerConfig

__all__: list[str] = [
    "AdapterConnectionState",
    "AdapterHealth",
    "AdapterHealthMonitor",
    "AlreadyConnectedError",
    "BackboneConsumer",
    "BackbonePublisher",
    "CANONICAL_TOPIC",
    "CanonicalEvent",
    "ClientSession",
    "ConnectionStateError",
    "DeliveryError",
    "Dispatcher",
    "DispatcherConfig",
    "DispatcherHealth",
    "DispatcherStats",
    "EmissionError",
    "EventBusStats",
    "EventType",
    "EventValidationError",
    "FanoutGateway",
    "FeedHealthConfig",
    "InMemoryEventBus",
    "Normalizer",
    "NormalizerConfig",
    "NotConnectedError",
    "PulseWireError",
    "Quote",
    "RAW_QUOTES_TOPIC",
    "RAW_TRADES_TOPIC",
    "RawFeedMessage",
    "RawMarketEvent",
    "SubscriptionAck",
    "SubscriptionAction",
    "SubscriptionRequest",
    "Trade",
    "TradeSide",
    "TransportType",
    "WILDCARD",
]
