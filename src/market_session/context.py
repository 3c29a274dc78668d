"""Session-wide state shared by the auth client, router and renewal loop."""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .config.settings import SessionSettings
from .exceptions import SessionError
from .token_store import TokenStore

logger = logging.getLogger(__name__)

FALLBACK_POSITION = "127.0.0.1/net"


class SessionPhase(Enum):
    """Lifecycle of the session as a whole."""
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    CONNECTING = "connecting"
    LOGGED_IN = "logged_in"
    RENEWING = "renewing"
    CLOSED = "closed"
    ABORTED = "aborted"


@dataclass
class Credentials:
    """Identity used for the password grant and the stream login."""
    username: str
    client_id: str
    password: str
    scope: str
    app_id: str
    position: str
    _password_replaced: bool = field(default=False, init=False, repr=False)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, client_id={self.client_id!r}, scope={self.scope!r})"

    def replace_password(self, new_password: str) -> None:
        """Swap in a changed password; allowed once per process."""
        if self._password_replaced:
            raise SessionError("Password has already been replaced")
        self.password = new_password
        self._password_replaced = True


@dataclass(frozen=True)
class Subscription:
    ric: str
    service: str


@dataclass
class SessionFlags:
    logged_in: bool = False

    def mark_logged_in(self) -> bool:
        """Flip logged_in to True; returns True only for the first transition."""
        if self.logged_in:
            return False
        self.logged_in = True
        return True


@dataclass
class SessionContext:
    """Explicit replacement for process-wide session globals."""
    credentials: Credentials
    subscription: Subscription
    tokens: TokenStore = field(default_factory=TokenStore)
    flags: SessionFlags = field(default_factory=SessionFlags)
    phase: SessionPhase = SessionPhase.DISCONNECTED
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)

    def transition(self, phase: SessionPhase) -> None:
        if phase is self.phase:
            return
        logger.debug(f"Session phase {self.phase.value} -> {phase.value}")
        self.phase = phase

    @property
    def is_terminal(self) -> bool:
        return self.phase in (SessionPhase.CLOSED, SessionPhase.ABORTED)

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "SessionContext":
        credentials = Credentials(
            username=settings.auth.username or "",
            client_id=settings.auth.client_id or "",
            password=settings.auth.password or "",
            scope=settings.auth.scope,
            app_id=settings.stream.app_id,
            position=settings.stream.position or resolve_position(),
        )
        subscription = Subscription(
            ric=settings.subscription.ric,
            service=settings.subscription.service,
        )
        return cls(credentials=credentials, subscription=subscription)


def resolve_position(hostname: Optional[str] = None) -> str:
    """IPv4 address of this host, used as the login Position."""
    try:
        infos = socket.getaddrinfo(hostname or socket.gethostname(), None, socket.AF_INET)
    except OSError as e:
        logger.warning(f"Could not resolve local address, using {FALLBACK_POSITION}: {e}")
        return FALLBACK_POSITION

    for info in infos:
        address = info[4][0]
        if address:
            return address

    return FALLBACK_POSITION
