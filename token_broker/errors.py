"""
Error kinds surfaced by the broker. Every kind is terminal for the request; none is
retried by the broker. Messages are generic and never carry secrets or tokens.
"""
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_ORIGIN = "InvalidOrigin"
    INVALID_STATE = "InvalidState"
    REPLAY_DETECTED = "ReplayDetected"
    UPSTREAM_ERROR = "UpstreamError"
    MALFORMED_REQUEST = "MalformedRequest"
    RATE_LIMITED = "RateLimited"
    NOT_CONNECTED = "NotConnected"
    PERSISTENCE_ERROR = "PersistenceError"
    INTERNAL_ERROR = "InternalError"


class ConfigError(Exception):
    """Invalid or missing configuration; raised at startup, never per request."""


class BrokerError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    status_code: int = 500
    message: str = "Internal error"

    def __init__(self, detail: str | None = None):
        # detail is for server-side logs only
        super().__init__(detail or self.message)
        self.detail = detail


class InvalidOrigin(BrokerError):
    kind = ErrorKind.INVALID_ORIGIN
    status_code = 403
    message = "Origin not allowed"


class InvalidState(BrokerError):
    kind = ErrorKind.INVALID_STATE
    status_code = 400
    message = "Invalid or expired state. Restart the authorization flow."


class ReplayDetected(BrokerError):
    kind = ErrorKind.REPLAY_DETECTED
    status_code = 409
    message = "Authorization already used. Restart the authorization flow."


class MalformedRequest(BrokerError):
    kind = ErrorKind.MALFORMED_REQUEST
    status_code = 400
    message = "Malformed request"


class RateLimited(BrokerError):
    kind = ErrorKind.RATE_LIMITED
    status_code = 429
    message = "Too many requests"

    def __init__(self, retry_after: int, detail: str | None = None):
        super().__init__(detail)
        self.retry_after = retry_after


class NotConnected(BrokerError):
    kind = ErrorKind.NOT_CONNECTED
    status_code = 404
    message = "No stored tokens for this realm"


class PersistenceError(BrokerError):
    kind = ErrorKind.PERSISTENCE_ERROR
    status_code = 500
    message = "Token persistence failed"


class UpstreamError(BrokerError):
    """
    Network failure, timeout, or provider rejection. error_code is the provider's
    OAuth error (e.g. invalid_grant) when it sent one. relayed is False only when the
    request provably never reached the provider (connection could not be opened).
    """

    kind = ErrorKind.UPSTREAM_ERROR
    status_code = 502
    message = "Token exchange with the provider failed. Restart the authorization flow."

    def __init__(
        self,
        error_code: str | None = None,
        error_description: str | None = None,
        *,
        relayed: bool = True,
        http_status: int | None = None,
        detail: str | None = None,
    ):
        super().__init__(detail or error_code)
        self.error_code = error_code
        self.error_description = error_description
        self.relayed = relayed
        self.http_status = http_status
