from __future__ import annotations


class BridgeError(Exception):
    pass


class FramingError(BridgeError):
    """Malformed frame (bad length prefix or payload that is not a JSON object)."""


class UnmatchedResponse(BridgeError):
    """Response referencing an unknown or already-settled request id."""

    def __init__(self, request_id: object, reason: str = "unknown request id") -> None:
        super().__init__(f"{reason}: {request_id!r}")
        self.request_id = request_id


class RequestTimeout(BridgeError):
    def __init__(self, request_id: int, timeout: float) -> None:
        super().__init__(f"Peer did not answer request {request_id} within {timeout:g}s")
        self.request_id = request_id
        self.timeout = timeout


class ConnectionLost(BridgeError):
    """The duplex channel dropped while work was outstanding."""


class NotConnected(ConnectionLost):
    """No channel is live; the request was never sent."""


class Unauthorized(BridgeError):
    pass


class ValidationError(BridgeError):
    pass


class PersistError(BridgeError):
    pass


class ConfigRejected(BridgeError):
    """The peer answered a config call with success=false."""
