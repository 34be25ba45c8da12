"""Infrastructure layer for the PulseWire data plane.

This package provides the feed adapter lifecycle and the reference
synthetic exchange adapter, raw ingest and supervision, the MQTT-backed
event bus, the WebSocket gateway transport, and the data plane wiring.
"""

from infra.data_plane import BackboneType, DataPlane, DataPlaneConfig
from infra.feed_adapter import AdapterLifecycle, FeedAdapter, FeedEventHandler
from infra.ingest import RawEventPublisher
from infra.mqtt_bus import ClientState, MQTTBusConfig, MQTTEventBus
from infra.supervisor import FeedSupervisor, FeedSupervisorConfig
from infra.synthetic import BurstConfig, SyntheticExchangeAdapter, SyntheticFeedConfig
from infra.worker import ScheduledTask, SequentialWorker
from infra.ws_gateway import (
    WebSocketClientSession,
    WebSocketGatewayConfig,
    WebSocketGatewayServer,
)

__all__: list[str] = [
    "AdapterLifecycle",
    "BackboneType",
    "BurstConfig",
    "ClientState",
    "DataPlane",
    "DataPlaneConfig",
    "FeedAdapter",
    "FeedEventHandler",
    "FeedSupervisor",
    "FeedSupervisorConfig",
    "MQTTBusConfig",
    "MQTTEventBus",
    "RawEventPublisher",
    "ScheduledTask",
    "SequentialWorker",
    "SyntheticExchangeAdapter",
    "SyntheticFeedConfig",
    "WebSocketClientSession",
    "WebSocketGatewayConfig",
    "WebSocketGatewayServer",
]
