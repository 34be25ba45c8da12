"""Feed supervisor: run a static set of adapters and probe their liveness.

The supervisor connects every configured adapter to one shared
:class:`~infra.ingest.RawEventPublisher` and, optionally, runs a
heartbeat thread that calls ``send_heartbeat()`` on each connected
adapter at a fixed interval.

Failure policy:
    - An adapter whose ``connect()`` raises is logged and skipped; the
      others still start.
    - Heartbeat timeouts are recorded by the health monitor only. The
      supervisor never disconnects or reconnects an adapter.
"""

import logging
import threading
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.bus import BackbonePublisher
from core.errors import ConnectionStateError
from core.feed_health import AdapterHealthMonitor
from infra.feed_adapter import FeedAdapter
from infra.ingest import RawEventPublisher

logger: logging.Logger = logging.getLogger(__name__)


class FeedSupervisorConfig(BaseModel):
    """Configuration for :class:`FeedSupervisor`.

    Attributes:
        heartbeat_enabled: Run the heartbeat thread.
        heartbeat_interval_seconds: Seconds between heartbeat rounds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    heartbeat_enabled: bool = Field(default=True, description="Send heartbeats")
    heartbeat_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Seconds between heartbeat rounds",
    )


class FeedSupervisor:
    """Starts, heartbeats and stops a fixed list of feed adapters.

    Args:
        adapters: Adapters to run.
        publisher: Bus that raw events are published on.
        config: Supervisor configuration.
        health: Optional monitor shared with the ingest handler.
    """

    def __init__(
        self,
        adapters: Sequence[FeedAdapter],
        publisher: BackbonePublisher,
        config: FeedSupervisorConfig | None = None,
        health: AdapterHealthMonitor | None = None,
    ) -> None:
        self._adapters: tuple[FeedAdapter, ...] = tuple(adapters)
        self._config: FeedSupervisorConfig = config or FeedSupervisorConfig()
        self._health: AdapterHealthMonitor | None = health
        self._ingest: RawEventPublisher = RawEventPublisher(publisher, health=health)
        self._stop_event: threading.Event = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None
        self._started: bool = False
        self._heartbeats_sent: int = 0
        self._heartbeat_failures: int = 0

    @property
    def adapters(self) -> tuple[FeedAdapter, ...]:
        return self._adapters

    @property
    def ingest(self) -> RawEventPublisher:
        """The shared handler every adapter is connected to."""
        return self._ingest

    @property
    def health(self) -> AdapterHealthMonitor | None:
        return self._health

    def start(self) -> None:
        """Connect all adapters and start the heartbeat thread."""
        if self._started:
            return
        self._started = True
        self._stop_event.clear()

        for adapter in self._adapters:
            try:
                adapter.connect(self._ingest)
                logger.info(
                    "Started adapter %s (transport=%s)",
                    adapter.adapter_id,
                    adapter.transport_type.value,
                )
            except Exception:
                logger.exception("Failed to start adapter %s", adapter.adapter_id)

        if self._config.heartbeat_enabled:
            self._heartbeat_thread = threading.Thread(
                target=self._heartbeat_loop,
                name="feed-heartbeat",
                daemon=True,
            )
            self._heartbeat_thread.start()

    def stop(self) -> None:
        """Stop heartbeats and disconnect every adapter. Idempotent."""
        if not self._started:
            return
        self._started = False
        self._stop_event.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(
                timeout=self._config.heartbeat_interval_seconds + 1.0,
            )
            self._heartbeat_thread = None

        for adapter in self._adapters:
            try:
                adapter.disconnect()
            except Exception:
                logger.exception("Failed to stop adapter %s", adapter.adapter_id)
        logger.info("Feed supervisor stopped (%d adapters)", len(self._adapters))

    def send_heartbeats(self) -> int:
        """Probe every connected adapter once.

        Returns:
            Number of probes issued.
        """
        sent: int = 0
        for adapter in self._adapters:
            if not adapter.is_connected:
                continue
            try:
                adapter.send_heartbeat()
                sent += 1
            except ConnectionStateError:
                # Disconnected between the check and the probe
                logger.debug("Adapter %s not connected for heartbeat", adapter.adapter_id)
            except Exception:
                self._heartbeat_failures += 1
                logger.exception("Heartbeat failed for adapter %s", adapter.adapter_id)
        self._heartbeats_sent += sent
        return sent

    def stats(self) -> dict[str, object]:
        """Return supervisor, adapter and ingest statistics."""
        return {
            "adapters": {
                adapter.adapter_id: adapter.state.value for adapter in self._adapters
            },
            "heartbeats_sent": self._heartbeats_sent,
            "heartbeat_failures": self._heartbeat_failures,
            "ingest": self._ingest.stats(),
        }

    def _heartbeat_loop(self) -> None:
        interval: float = self._config.heartbeat_interval_seconds
        while not self._stop_event.wait(timeout=interval):
            self.send_heartbeats()
