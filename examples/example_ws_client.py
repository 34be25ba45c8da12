"""Example: Subscribe to canonical events over WebSocket.

Connects to a running data plane (``PULSEWIRE_WS_ENABLED=true``),
subscribes to one instrument (or ``*`` for all) and prints each event.

Usage:
    python -m examples.example_ws_client
    python -m examples.example_ws_client --instrument NVDA
    python -m examples.example_ws_client --url ws://localhost:9001/ws/market-data --instrument "*"

Press Ctrl+C to stop.
"""

import argparse
import json
import logging

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)


def main() -> None:
    """Print events for one instrument until interrupted."""
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Market data WebSocket client",
    )
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:8080/ws/market-data",
        help="Gateway URL (default: ws://localhost:8080/ws/market-data)",
    )
    parser.add_argument(
        "--instrument",
        type=str,
        default="AAPL",
        help='Instrument to subscribe to, "*" for all (default: AAPL)',
    )
    args: argparse.Namespace = parser.parse_args()

    received: int = 0
    try:
        with connect(args.url) as ws:
            ws.send(json.dumps({"action": "subscribe", "instrumentId": args.instrument}))
            for frame in ws:
                data: dict = json.loads(frame)
                if "status" in data:
                    logger.info("%s %s", data["status"], data["instrumentId"])
                    continue
                received += 1
                payload: dict = data["payload"]
                if data["eventType"] == "TRADE":
                    logger.info(
                        "[%s] TRADE %.2f x %g",
                        data["instrumentId"],
                        payload["price"],
                        payload["size"],
                    )
                else:
                    logger.info(
                        "[%s] QUOTE %.4f / %.4f",
                        data["instrumentId"],
                        payload["bidPrice"],
                        payload["askPrice"],
                    )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except ConnectionClosed:
        logger.warning("Gateway closed the connection")
    except OSError as exc:
        logger.error("Cannot reach %s: %s", args.url, exc)
    finally:
        logger.info("Received %d events", received)


if __name__ == "__main__":
    main()
