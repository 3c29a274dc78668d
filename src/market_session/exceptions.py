"""Error taxonomy for the streaming session."""

from typing import Optional


class MarketSessionError(Exception):
    """Base class for all session errors."""


class ConfigurationError(MarketSessionError):
    """Required settings are missing or invalid."""


class PasswordPolicyError(MarketSessionError):
    """A proposed new password does not satisfy the password policy."""

    def __init__(self, message: str, violations: int):
        super().__init__(message)
        self.violations = violations


class AuthenticationError(MarketSessionError):
    """Token acquisition or renewal failed."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class AuthRejectedError(AuthenticationError):
    """The authentication endpoint refused the credentials (terminal)."""


class AuthRedirectError(AuthenticationError):
    """A redirect could not be followed."""


class AuthRetryExhaustedError(AuthenticationError):
    """Transient failures persisted beyond the retry budget."""


class AuthTransportError(AuthenticationError):
    """The authentication endpoint could not be reached."""


class AuthResponseError(AuthenticationError):
    """A successful response carried a body that could not be used."""


class SessionConnectionError(MarketSessionError):
    """Base class for streaming connection errors."""


class ConnectError(SessionConnectionError):
    """The streaming connection could not be opened."""


class ConnectionNotOpenError(SessionConnectionError):
    """An operation required an open connection."""


class ConnectionLostError(SessionConnectionError):
    """The peer closed the connection or the transport failed."""


class SendError(SessionConnectionError):
    """A frame could not be written."""


class FrameDecodeError(MarketSessionError):
    """An inbound frame was not a JSON object or array of objects."""


class SessionError(MarketSessionError):
    """The session reached a state it cannot recover from."""
