"""Error taxonomy for the PulseWire data plane.

Configuration problems are reported by the pydantic config models
themselves (``pydantic.ValidationError`` at construction time), so they
never reach run time. Everything else derives from :class:`PulseWireError`.

Propagation rules:
    - :class:`ConnectionStateError` subclasses are raised synchronously
      from adapter lifecycle calls (``connect()``, ``send_heartbeat()``).
    - :class:`EventValidationError` never escapes the normalizer or the
      raw ingest handler; it is counted and the event is dropped.
    - :class:`EmissionError` is handed to ``FeedEventHandler.on_error``
      and does not force a disconnect.
    - :class:`DeliveryError` is logged by the gateway and isolated to the
      failing client session.
"""


class PulseWireError(Exception):
    """Base class for all data plane errors."""


class ConnectionStateError(PulseWireError, RuntimeError):
    """A lifecycle call was made in the wrong adapter state."""


class AlreadyConnectedError(ConnectionStateError):
    """``connect()`` was called while the adapter was not DISCONNECTED."""


class NotConnectedError(ConnectionStateError):
    """An operation requiring a CONNECTED adapter was attempted."""


class EventValidationError(PulseWireError, ValueError):
    """A raw event or payload failed validation."""


class EmissionError(PulseWireError):
    """An adapter failed while producing a message.

    Args:
        adapter_id: Adapter that failed.
        message: Human-readable description.
    """

    def __init__(self, adapter_id: str, message: str) -> None:
        super().__init__(f"[{adapter_id}] {message}")
        self.adapter_id: str = adapter_id


class DeliveryError(PulseWireError):
    """Pushing an event or acknowledgment to one client session failed.

    Args:
        session_id: Session that could not be written to.
        message: Human-readable description.
    """

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(f"session {session_id}: {message}")
        self.session_id: str = session_id
