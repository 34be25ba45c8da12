"""WebSocket transport for the fan-out gateway.

Serves :class:`~core.gateway.FanoutGateway` on
``ws://<host>:<port>/ws/market-data`` using the threaded server from
``websockets.sync.server``. Each accepted connection gets its own handler
thread reading client requests and a :class:`WebSocketClientSession`
writing events.

Architecture note:
    Broadcast runs on whichever thread published the canonical event,
    usually an adapter worker. Writing to a socket there would let one
    slow client stall the whole pipeline, so ``send_text()`` only pushes
    into a bounded drop-oldest :class:`~core.dispatcher.Dispatcher`; a
    dedicated writer thread per session drains it into the socket.

Example::

    server = WebSocketGatewayServer(gateway, WebSocketGatewayConfig(port=8080))
    server.start()
    ...
    server.stop()
"""

import http
import logging
import threading

from pydantic import BaseModel, ConfigDict, Field
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response
from websockets.sync.server import Server, ServerConnection, serve

from core.dispatcher import Dispatcher, DispatcherConfig, DispatcherStats
from core.errors import DeliveryError
from core.gateway import FanoutGateway

logger: logging.Logger = logging.getLogger(__name__)

MARKET_DATA_PATH: str = "/ws/market-data"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class WebSocketGatewayConfig(BaseModel):
    """Configuration for :class:`WebSocketGatewayServer`.

    Attributes:
        host: Interface to bind.
        port: TCP port. ``0`` picks a free port (see
            :attr:`WebSocketGatewayServer.port`).
        path: Request path accepted for upgrades.
        outbox_maxlen: Per-session outbound queue bound.
        poll_interval_seconds: Writer wake-up interval while idle.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(default="localhost", description="Bind address")
    port: int = Field(default=8080, ge=0, le=65535, description="Bind port")
    path: str = Field(default=MARKET_DATA_PATH, description="WebSocket endpoint path")
    outbox_maxlen: int = Field(
        default=10_000,
        gt=0,
        description="Per-session outbound queue length (drop-oldest)",
    )
    poll_interval_seconds: float = Field(
        default=0.5,
        gt=0.0,
        description="Writer thread idle wake-up interval",
    )


# ---------------------------------------------------------------------------
# Client session
# ---------------------------------------------------------------------------


class WebSocketClientSession:
    """One connected WebSocket client.

    Implements :class:`~core.gateway.ClientSession`. ``send_text()`` never
    blocks on the socket.

    Args:
        connection: The accepted server connection.
        outbox_maxlen: Outbound queue bound.
        poll_interval_seconds: Writer idle wake-up interval.
    """

    def __init__(
        self,
        connection: ServerConnection,
        outbox_maxlen: int = 10_000,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self._connection: ServerConnection = connection
        self._session_id: str = str(connection.id)
        self._poll_interval: float = poll_interval_seconds
        self._outbox: Dispatcher[str] = Dispatcher(
            DispatcherConfig(maxlen=outbox_maxlen),
        )
        self._writer: threading.Thread = threading.Thread(
            target=self._write_loop,
            name=f"ws-writer-{self._session_id[:8]}",
            daemon=True,
        )

    @property
    def session_id(self) -> str:
        return self._session_id

    def start(self) -> None:
        """Start the writer thread."""
        self._writer.start()

    def send_text(self, text: str) -> None:
        """Queue ``text`` for delivery.

        Raises:
            DeliveryError: If the session is closed.
        """
        if not self._outbox.push(text):
            raise DeliveryError(self._session_id, "session is closed")

    def close(self, timeout: float = 1.0) -> None:
        """Stop accepting frames and wait for the writer to drain."""
        self._outbox.close()
        if self._writer.is_alive() and threading.current_thread() is not self._writer:
            self._writer.join(timeout=timeout)

    def outbox_stats(self) -> DispatcherStats:
        """Outbound queue statistics (pushed, dropped, queued)."""
        return self._outbox.stats()

    def _write_loop(self) -> None:
        while True:
            batch: list[str] = self._outbox.poll(
                max_events=100,
                timeout=self._poll_interval,
            )
            if not batch:
                if self._outbox.closed:
                    return
                continue
            for text in batch:
                try:
                    self._connection.send(text)
                except ConnectionClosed:
                    logger.debug("Session %s closed while writing", self._session_id)
                    self._outbox.close()
                    return


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


class WebSocketGatewayServer:
    """Threaded WebSocket server bridging clients to a :class:`FanoutGateway`.

    Args:
        gateway: Gateway that owns subscriptions and broadcast.
        config: Server configuration.
    """

    def __init__(
        self,
        gateway: FanoutGateway,
        config: WebSocketGatewayConfig | None = None,
    ) -> None:
        self._gateway: FanoutGateway = gateway
        self._config: WebSocketGatewayConfig = config or WebSocketGatewayConfig()
        self._server: Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Bound TCP port (resolves ``port=0``).

        Raises:
            RuntimeError: If the server is not running.
        """
        if self._server is None:
            raise RuntimeError("WebSocket server is not running")
        return self._server.socket.getsockname()[1]

    def start(self) -> None:
        """Bind the socket and serve in a background thread. Idempotent."""
        if self._server is not None:
            return
        self._server = serve(
            self._handle_connection,
            self._config.host,
            self._config.port,
            process_request=self._check_path,
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="ws-gateway",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "WebSocket gateway listening on ws://%s:%d%s",
            self._config.host,
            self.port,
            self._config.path,
        )

    def stop(self, timeout: float = 2.0) -> None:
        """Stop accepting connections and close the listening socket."""
        if self._server is None:
            return
        self._server.shutdown()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._server = None
        self._thread = None
        logger.info("WebSocket gateway stopped")

    # ------------------------------------------------------------------
    # Connection handling (one thread per connection)
    # ------------------------------------------------------------------

    def _check_path(
        self,
        connection: ServerConnection,
        request: Request,
    ) -> Response | None:
        path: str = request.path.split("?", 1)[0]
        if path != self._config.path:
            logger.warning("Rejected WebSocket upgrade for path %s", request.path)
            return connection.respond(http.HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    def _handle_connection(self, connection: ServerConnection) -> None:
        session: WebSocketClientSession = WebSocketClientSession(
            connection,
            outbox_maxlen=self._config.outbox_maxlen,
            poll_interval_seconds=self._config.poll_interval_seconds,
        )
        session.start()
        self._gateway.open_session(session)
        try:
            for message in connection:
                text: str = (
                    message.decode("utf-8", errors="replace")
                    if isinstance(message, bytes)
                    else message
                )
                self._gateway.handle_message(session, text)
        except ConnectionClosed:
            logger.debug("Session %s connection closed", session.session_id)
        finally:
            self._gateway.close_session(session.session_id)
            session.close()
