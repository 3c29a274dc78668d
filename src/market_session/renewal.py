"""Background renewal of the access token before it expires."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .clients.auth_client import AuthClient
from .clients.session_connection import ConnectionState, SessionConnection
from .config.settings import RenewalConfig
from .context import SessionContext, SessionPhase
from .router import MessageRouter

logger = logging.getLogger(__name__)


class RenewalScheduler:
    """
    Sleeps until most of the token lifetime has passed, renews the token and
    re-sends login on the existing connection.

    An authentication failure propagates out of ``run``: the session must not
    continue on a token that is about to expire.
    """

    def __init__(
        self,
        context: SessionContext,
        auth_client: AuthClient,
        connection: SessionConnection,
        router: MessageRouter,
        config: RenewalConfig,
        on_abort: Optional[Callable[[str], Awaitable[None]]] = None
    ):
        self.context = context
        self.auth_client = auth_client
        self.connection = connection
        self.router = router
        self.config = config
        self.on_abort = on_abort
        self.renewals = 0

    async def run(self) -> None:
        logger.info("Token renewal loop started")

        while not self.context.shutdown_event.is_set():
            delay = self.context.tokens.state.renewal_delay_seconds(self.config.fraction)
            if await self._wait(delay):
                break

            if self.context.flags.logged_in:
                await self.renew()

            if self.connection.state is ConnectionState.ABORTED:
                logger.error("The WebSocket connection is closed")
                if self.on_abort:
                    await self.on_abort("connection aborted")
                else:
                    self.context.shutdown_event.set()
                break

        logger.info("Token renewal loop stopped")

    async def renew(self) -> None:
        """Refresh the token, falling back to a password grant on lifetime drift, then re-login."""
        self.context.transition(SessionPhase.RENEWING)

        state = await self.auth_client.authenticate(use_previous_refresh_token=True)
        if state.expiry_changed:
            logger.warning(
                f"expire time changed from {self._seconds(state.original_expires_in_ms)} sec "
                f"to {self._seconds(state.expires_in_ms)} sec; retry with password"
            )
            await self.auth_client.authenticate(use_previous_refresh_token=False)

        await self.router.send_login(is_refresh=True)
        self.renewals += 1
        self.context.transition(SessionPhase.LOGGED_IN)

    async def _wait(self, delay: Optional[float]) -> bool:
        """Sleep for ``delay`` seconds; returns True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self.context.shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    def _seconds(milliseconds: Optional[int]):
        return None if milliseconds is None else milliseconds // 1000
