"""Fan-out gateway: per-client subscription filtering and broadcast.

The :class:`FanoutGateway` consumes the canonical topic and pushes every
event to the client sessions interested in its instrument. It is
transport-agnostic: anything with a ``session_id`` and a
``send_text(text)`` method is a :class:`ClientSession`. The WebSocket
transport lives in :mod:`infra.ws_gateway`.

Client protocol (JSON text frames)::

    -> {"action": "subscribe", "instrumentId": "AAPL"}
    <- {"status": "subscribed", "instrumentId": "AAPL"}
    -> {"action": "UNSUBSCRIBE", "instrumentId": "AAPL"}
    <- {"status": "unsubscribed", "instrumentId": "AAPL"}

``action`` is case-insensitive. ``"*"`` subscribes to every instrument.
Malformed or unknown requests are logged and counted; no reply is sent.

Concurrency:
    - The session registry is a dict replaced copy-on-write under
      ``_registry_lock``; :meth:`FanoutGateway.broadcast` iterates the
      current snapshot without locking.
    - Each session's subscription set is a ``frozenset`` replaced under
      that session's own lock by the request thread and read lock-free
      by the broadcast thread.

Delivery isolation:
    A session whose ``send_text`` raises is reported as a
    :class:`~core.errors.DeliveryError`, logged with rate limiting and
    counted. Other sessions still receive the event.
"""

import logging
import threading
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from core.bus import CANONICAL_TOPIC, BackboneConsumer
from core.errors import DeliveryError
from core.events import (
    WILDCARD,
    CanonicalEvent,
    SubscriptionAck,
    SubscriptionAction,
    SubscriptionRequest,
)

logger: logging.Logger = logging.getLogger(__name__)

_LOG_FIRST_N: int = 10
"""Number of initial delivery errors logged with full stack trace."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every N-th error."""


# ---------------------------------------------------------------------------
# Session protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ClientSession(Protocol):
    """A connected client able to receive text frames."""

    @property
    def session_id(self) -> str: ...

    def send_text(self, text: str) -> None: ...


class _SessionEntry:
    """Registry entry: the session plus its copy-on-write subscription set."""

    __slots__ = ("session", "instruments", "lock")

    def __init__(self, session: ClientSession) -> None:
        self.session: ClientSession = session
        self.instruments: frozenset[str] = frozenset()
        self.lock: threading.Lock = threading.Lock()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class FanoutGateway:
    """Routes canonical events to subscribed client sessions.

    Args:
        consumer: Bus to consume the canonical topic from.
        canonical_topic: Topic carrying canonical events.

    Example::

        gateway = FanoutGateway(bus)
        gateway.start()
        gateway.open_session(session)
        gateway.handle_message(session, '{"action":"subscribe","instrumentId":"*"}')
    """

    def __init__(
        self,
        consumer: BackboneConsumer,
        canonical_topic: str = CANONICAL_TOPIC,
    ) -> None:
        self._consumer: BackboneConsumer = consumer
        self._topic: str = canonical_topic
        self._started: bool = False

        self._sessions: dict[str, _SessionEntry] = {}
        self._registry_lock: threading.Lock = threading.Lock()

        # Counters (guarded by _counter_lock)
        self._events_broadcast: int = 0
        self._deliveries: int = 0
        self._delivery_errors: int = 0
        self._rejected_requests: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to the canonical topic. Idempotent."""
        if self._started:
            return
        self._consumer.subscribe(self._topic, self.broadcast)
        self._started = True
        logger.info("FanoutGateway started, listening to %s", self._topic)

    def stop(self) -> None:
        """Unsubscribe from the canonical topic. Idempotent."""
        if not self._started:
            return
        self._consumer.unsubscribe(self._topic)
        self._started = False
        logger.info("FanoutGateway stopped")

    # ------------------------------------------------------------------
    # Session registry
    # ------------------------------------------------------------------

    def open_session(self, session: ClientSession) -> None:
        """Register ``session`` with an empty subscription set."""
        entry: _SessionEntry = _SessionEntry(session)
        with self._registry_lock:
            sessions: dict[str, _SessionEntry] = dict(self._sessions)
            sessions[session.session_id] = entry
            self._sessions = sessions
        logger.info("Client session opened: %s", session.session_id)

    def close_session(self, session_id: str) -> None:
        """Remove a session and its subscriptions. Idempotent."""
        with self._registry_lock:
            if session_id not in self._sessions:
                return
            sessions: dict[str, _SessionEntry] = dict(self._sessions)
            del sessions[session_id]
            self._sessions = sessions
        logger.info("Client session closed: %s", session_id)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def subscriptions(self, session_id: str) -> frozenset[str]:
        """Return the instruments ``session_id`` is subscribed to."""
        entry: _SessionEntry | None = self._sessions.get(session_id)
        return entry.instruments if entry is not None else frozenset()

    # ------------------------------------------------------------------
    # Client requests
    # ------------------------------------------------------------------

    def handle_message(self, session: ClientSession, text: str) -> SubscriptionAck | None:
        """Apply a subscribe/unsubscribe request and acknowledge it.

        Args:
            session: The requesting session (must be open).
            text: Raw JSON text frame.

        Returns:
            The acknowledgment sent, or ``None`` if the request was
            rejected.
        """
        entry: _SessionEntry | None = self._sessions.get(session.session_id)
        if entry is None:
            self._reject(session.session_id, "unknown session")
            return None

        try:
            request: SubscriptionRequest = SubscriptionRequest.model_validate_json(text)
        except ValidationError as exc:
            self._reject(session.session_id, f"malformed request: {exc.error_count()} error(s)")
            return None

        instrument: str = request.instrument_id
        with entry.lock:
            if request.action == SubscriptionAction.SUBSCRIBE:
                entry.instruments = entry.instruments | {instrument}
                status: str = "subscribed"
            else:
                entry.instruments = entry.instruments - {instrument}
                status = "unsubscribed"
        logger.info("Session %s %s %s", session.session_id, status, instrument)

        ack: SubscriptionAck = SubscriptionAck(status=status, instrument_id=instrument)
        self._deliver(entry.session, ack.to_json())
        return ack

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    def broadcast(self, event: CanonicalEvent) -> None:
        """Send ``event`` to every session subscribed to it.

        Bus handler. Serializes the event at most once.
        """
        instrument: str = event.instrument_id
        text: str | None = None
        delivered: int = 0
        for entry in self._sessions.values():
            subs: frozenset[str] = entry.instruments
            if instrument not in subs and WILDCARD not in subs:
                continue
            if text is None:
                text = event.to_json()
            if self._deliver(entry.session, text):
                delivered += 1
        with self._counter_lock:
            self._events_broadcast += 1
            self._deliveries += delivered

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        """Return gateway counters."""
        with self._counter_lock:
            return {
                "active_sessions": len(self._sessions),
                "events_broadcast": self._events_broadcast,
                "deliveries": self._deliveries,
                "delivery_errors": self._delivery_errors,
                "rejected_requests": self._rejected_requests,
            }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _deliver(self, session: ClientSession, text: str) -> bool:
        try:
            session.send_text(text)
            return True
        except Exception as exc:
            error: DeliveryError = (
                exc
                if isinstance(exc, DeliveryError)
                else DeliveryError(session.session_id, str(exc))
            )
            with self._counter_lock:
                self._delivery_errors += 1
                count: int = self._delivery_errors
            if count <= _LOG_FIRST_N:
                logger.exception("%s (%d/%d)", error, count, _LOG_FIRST_N)
            elif count % _LOG_EVERY_N == 0:
                logger.error("%s (total=%d)", error, count)
            return False

    def _reject(self, session_id: str, reason: str) -> None:
        with self._counter_lock:
            self._rejected_requests += 1
        logger.warning("Rejected request from session %s: %s", session_id, reason)
