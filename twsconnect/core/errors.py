"""
Exception types raised by the TWS client core.
"""
from enum import Enum
from typing import Optional


class TWSError(Exception):
    """Base exception for client-side errors"""
    pass


class ConnectFailure(Enum):
    REFUSED = "refused"
    TIMEOUT = "timeout"
    VERSION_MISMATCH = "version_mismatch"


class ConnectError(TWSError):
    """Handshake with the gateway failed. Fatal to that connect attempt."""
    def __init__(self, reason: ConnectFailure, message: str = ""):
        self.reason = reason
        super().__init__(message or reason.value)


class ConnectionLost(TWSError):
    """The session is gone (or was never up) while an operation needed it"""
    pass


class EncodingError(TWSError, ValueError):
    """A request is missing a field required for its action. Never sent."""
    pass


class RequestTimeout(TWSError, TimeoutError):
    """No terminal event arrived for a request within the caller's timeout"""
    def __init__(self, request_id: Optional[int], timeout: Optional[float]):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {request_id} timed out after {timeout}s")


class ProtocolError(TWSError):
    """
    An inbound frame could not be parsed.

    `recoverable` is False when the frame boundary itself is lost and the
    byte stream can no longer be trusted.
    """
    def __init__(self, message: str, recoverable: bool = True):
        self.recoverable = recoverable
        super().__init__(message)


class RequestError(TWSError):
    """The gateway answered a (non-order) request with an error frame"""
    def __init__(self, request_id: int, code: int, message: str):
        self.request_id = request_id
        self.code = code
        super().__init__(f"Request {request_id} failed with {code}: {message}")


class OrderStateError(TWSError):
    """Operation not allowed in the order's current state"""
    pass


class UnknownOrderError(TWSError, KeyError):
    def __str__(self):
        return str(self.args[0]) if self.args else "unknown order"


class UnknownSubscriptionError(TWSError, KeyError):
    def __str__(self):
        return str(self.args[0]) if self.args else "unknown subscription"
