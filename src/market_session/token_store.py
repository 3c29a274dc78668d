"""Token state shared between the authentication client and the renewal loop."""

import logging
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenState:
    """Snapshot of the credentials returned by the authentication endpoint."""
    access_token: str = ""
    refresh_token: str = ""
    expires_in_ms: Optional[int] = None
    # Expiry reported by the most recent password grant
    original_expires_in_ms: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.access_token

    @property
    def expiry_changed(self) -> bool:
        """True when the current lifetime differs from the password-grant baseline."""
        return self.expires_in_ms != self.original_expires_in_ms

    def renewal_delay_seconds(self, fraction: float = 0.9) -> Optional[float]:
        """Seconds to wait before renewing, or None while the lifetime is unknown."""
        if self.expires_in_ms is None:
            return None
        return self.expires_in_ms * fraction / 1000.0


class TokenStore:
    """
    Holds the current TokenState.

    Every update swaps in a new immutable snapshot, so readers never observe a
    half-written token pair.
    """

    def __init__(self):
        self._state = TokenState()

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def access_token(self) -> str:
        return self._state.access_token

    @property
    def refresh_token(self) -> str:
        return self._state.refresh_token

    def update(
        self,
        access_token: str,
        refresh_token: str,
        expires_in_seconds: Optional[int],
        password_grant: bool
    ) -> TokenState:
        """Record a successful grant and return the new snapshot."""
        expires_in_ms = int(expires_in_seconds) * 1000 if expires_in_seconds is not None else self._state.expires_in_ms

        new_state = replace(
            self._state,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_ms=expires_in_ms,
        )
        if password_grant:
            new_state = replace(new_state, original_expires_in_ms=expires_in_ms)

        self._state = new_state
        logger.debug(
            f"Token updated (password_grant={password_grant}, expires_in_ms={expires_in_ms}, "
            f"original_expires_in_ms={new_state.original_expires_in_ms})"
        )
        return new_state
