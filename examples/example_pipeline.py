"""Example: Run the full market data pipeline on synthetic feeds.

This script wires the complete data plane:

    SyntheticExchangeAdapter(s) → RawEventPublisher → raw.trades / raw.quotes
                                                          ↓
                                                     Normalizer
                                                          ↓
                                                 canonical.events
                                                          ↓
                                      FanoutGateway → WebSocket clients

and logs pipeline and adapter health once per reporting interval.

Prerequisites:
    1. Optionally copy ``.env.sample`` to ``.env`` to override defaults:
       - ``PULSEWIRE_BACKBONE`` (``memory`` or ``mqtt``)
       - ``PULSEWIRE_MQTT_HOST`` / ``PULSEWIRE_MQTT_PORT``
       - ``PULSEWIRE_WS_ENABLED`` / ``PULSEWIRE_WS_PORT``
    2. Install dependencies: ``pip install -e .``
    3. For ``mqtt`` backbone, run a broker (e.g. mosquitto) first.

Usage:
    python -m examples.example_pipeline
    python -m examples.example_pipeline --symbols AAPL NVDA --rate 200
    python -m examples.example_pipeline --adapters 3 --burst --duration 30

Connect a client while it runs::

    python -m examples.example_ws_client --instrument AAPL

Press Ctrl+C to stop.
"""

import argparse
import logging
import time

from dotenv import load_dotenv

from infra.data_plane import DataPlane, DataPlaneConfig
from infra.synthetic import BurstConfig, SyntheticExchangeAdapter, SyntheticFeedConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)


def main() -> None:
    """Run the synthetic pipeline until interrupted or ``--duration`` ends."""
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Synthetic market data pipeline",
    )
    parser.add_argument(
        "--symbols",
        nargs="+",
        default=["AAPL", "GOOGL", "MSFT"],
        help="Symbols to generate (default: AAPL GOOGL MSFT)",
    )
    parser.add_argument(
        "--adapters",
        type=int,
        default=1,
        help="Number of synthetic adapters (default: 1)",
    )
    parser.add_argument(
        "--rate",
        type=int,
        default=10,
        help="Messages per second per adapter (default: 10)",
    )
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Enable 5x bursts of 1s every 10s",
    )
    parser.add_argument(
        "--report-interval",
        type=float,
        default=5.0,
        help="Seconds between stats reports (default: 5.0)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after N seconds, 0 runs until Ctrl+C (default: 0)",
    )
    args: argparse.Namespace = parser.parse_args()

    config: DataPlaneConfig = DataPlaneConfig.from_env()
    feed_config: SyntheticFeedConfig = SyntheticFeedConfig(
        symbols=args.symbols,
        message_rate_per_second=args.rate,
        burst=BurstConfig(enabled=args.burst),
    )
    adapters: list[SyntheticExchangeAdapter] = [
        SyntheticExchangeAdapter(feed_config, adapter_id=f"synthetic-{n + 1}")
        for n in range(args.adapters)
    ]

    plane: DataPlane = DataPlane(config, adapters)
    try:
        plane.start()
    except Exception as exc:
        logger.exception("Failed to start data plane: %s", exc)
        return

    if plane.websocket_server is not None:
        logger.info(
            "Clients can connect to ws://%s:%d%s",
            config.websocket.host,
            plane.websocket_server.port,
            config.websocket.path,
        )

    started: float = time.monotonic()
    try:
        while not args.duration or time.monotonic() - started < args.duration:
            time.sleep(args.report_interval)
            stats: dict = plane.stats()
            logger.info(
                "normalized=%d errors=%d sessions=%d broadcast=%d",
                stats["normalizer"]["normalized"],
                stats["normalizer"]["errors"],
                stats["gateway"]["active_sessions"],
                stats["gateway"]["events_broadcast"],
            )
            for adapter_id, health in stats["health"].items():
                logger.info(
                    "[%s] connected=%s messages=%d gap=%.1fms timeouts=%d stale=%s",
                    adapter_id,
                    health["connected"],
                    health["messages"],
                    health["last_seen_gap_ms"] or 0.0,
                    health["heartbeat_timeouts"],
                    health["stale"],
                )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        plane.stop()

        logger.info("=" * 60)
        logger.info("Final Statistics")
        logger.info("-" * 60)
        for adapter in adapters:
            adapter_stats: dict[str, object] = adapter.stats()
            logger.info(
                "%s: emitted=%s trades=%s quotes=%s errors=%s",
                adapter.adapter_id,
                adapter_stats["messages_emitted"],
                adapter_stats["trades"],
                adapter_stats["quotes"],
                adapter_stats["errors"],
            )
        logger.info("Ingest: %s", plane.supervisor.ingest.stats())
        logger.info("Normalizer: %s", plane.normalizer.stats())
        logger.info("Gateway: %s", plane.gateway.stats())
        logger.info("=" * 60)


if __name__ == "__main__":
    main()
