"""Market Session Service - authenticated streaming session with proactive token renewal."""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import aiohttp

from .clients.auth_client import AuthClient
from .clients.session_connection import ConnectionState, SessionConnection
from .config.settings import SessionSettings, load_settings
from .context import SessionContext, SessionPhase
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    FrameDecodeError,
    PasswordPolicyError,
    SessionConnectionError,
    SessionError,
)
from .renewal import RenewalScheduler
from .router import MessageRouter, RouterAction
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class StreamingSessionService:
    """
    Wires the auth client, connection, router and renewal loop together.

    ``run`` authenticates, connects and logs in, then runs the receive loop and
    the renewal loop until one of them fails or shutdown is requested. Every
    path out goes through ``shutdown``, which runs once.
    """

    def __init__(
        self,
        settings: SessionSettings,
        connector: Optional[Callable[..., Any]] = None,
        http_session: Optional[aiohttp.ClientSession] = None
    ):
        self.settings = settings
        self.context = SessionContext.from_settings(settings)

        proxy_url = settings.proxy.url
        self.connection = SessionConnection(settings.stream, proxy_url=proxy_url, connector=connector)
        self.router = MessageRouter(self.context, self.connection)
        self.auth_client = AuthClient(
            self.context,
            settings.auth,
            settings.retry,
            proxy_url=proxy_url,
            session=http_session
        )
        self.renewal = RenewalScheduler(
            self.context,
            self.auth_client,
            self.connection,
            self.router,
            settings.renewal,
            on_abort=self._on_abort
        )

        self.exit_code = EXIT_OK
        self._shutdown_started = False
        self._tasks: List[asyncio.Task] = []

        logger.info("Market session service initialized")

    async def run(self) -> int:
        """Run the session until shutdown; returns the process exit status."""
        self._setup_signal_handlers()
        try:
            async with self.auth_client:
                if await self._start():
                    await self._supervise()
        except (AuthenticationError, PasswordPolicyError) as e:
            logger.error(f"Authentication failed: {e}")
            await self.shutdown(str(e), failed=True)
        except (SessionConnectionError, SessionError) as e:
            logger.error(f"Session failed: {e}")
            await self.shutdown(str(e), failed=True)
        finally:
            await self.shutdown("service stopped")
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            self._remove_signal_handlers()

        logger.info(f"Market session service stopped (exit status {self.exit_code})")
        return self.exit_code

    async def _start(self) -> bool:
        """Authenticate, connect and log in; returns False if shutdown was requested meanwhile."""
        new_password = self.settings.auth.new_password
        if new_password:
            await self.auth_client.change_password(new_password)
            if self._stopping("change password"):
                return False

        self.context.transition(SessionPhase.AUTHENTICATING)
        await self.auth_client.authenticate(use_previous_refresh_token=False)
        if self._stopping("authentication"):
            return False

        self.context.transition(SessionPhase.CONNECTING)
        await self.connection.connect(self.settings.stream.url)
        if self._stopping("connect"):
            return False

        await self.router.send_login(is_refresh=False)
        return True

    def _stopping(self, step: str) -> bool:
        if self.context.shutdown_event.is_set():
            logger.info(f"Shutdown requested during startup, stopping after {step}")
            return True
        return False

    async def _supervise(self):
        self._tasks = [
            asyncio.create_task(self._receive_loop(), name="receive-loop"),
            asyncio.create_task(self._renewal_loop(), name="renewal-loop"),
        ]
        await self.context.shutdown_event.wait()

    async def _receive_loop(self):
        try:
            while not self.context.shutdown_event.is_set():
                messages = await self.connection.receive_message()
                for message in messages:
                    action = self.router.handle(message, self.context.flags)
                    if action is RouterAction.FATAL_CLOSE:
                        await self.shutdown("login stream closed by the gateway", failed=True)
                        return
                    await self.router.perform(action)
        except (SessionConnectionError, FrameDecodeError, SessionError) as e:
            if self._shutdown_started:
                return
            logger.error(f"Receive loop failed: {e}")
            await self.shutdown(str(e), failed=True)

    async def _renewal_loop(self):
        try:
            await self.renewal.run()
        except (AuthenticationError, SessionConnectionError, SessionError) as e:
            if self._shutdown_started:
                return
            logger.error(f"Token renewal failed: {e}")
            await self.shutdown(str(e), failed=True)

    async def _on_abort(self, reason: str):
        await self.shutdown(reason, failed=True)

    def request_shutdown(self):
        """Signal-safe shutdown request; both loops exit on their next wake-up."""
        logger.info("Shutdown requested")
        self.context.shutdown_event.set()

    async def shutdown(self, reason: str, failed: bool = False):
        """Close the connection and stop both loops. Only the first call does any work."""
        if failed:
            self.exit_code = EXIT_FAILURE
        if self._shutdown_started:
            return
        self._shutdown_started = True

        logger.info(f"Shutting down: {reason}")
        self.context.shutdown_event.set()

        await self.connection.close()

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        aborted = failed or self.connection.state is ConnectionState.ABORTED
        self.context.transition(SessionPhase.ABORTED if aborted else SessionPhase.CLOSED)

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread
                logger.debug(f"Signal handler for {signum} not installed")

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

    async def health_check(self) -> dict:
        tokens = self.context.tokens.state
        connection_health = await self.connection.health_check()

        status = connection_health['status']
        if self.context.is_terminal:
            status = "stopped"

        return {
            "service": self.settings.service_name,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "phase": self.context.phase.value,
            "logged_in": self.context.flags.logged_in,
            "token_expires_in_ms": tokens.expires_in_ms,
            "renewals": self.renewal.renewals,
            "components": {
                "connection": connection_health,
                "auth_client": dict(self.auth_client.stats),
            }
        }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="market-session",
        description="Authenticate, log in to a streaming gateway and keep the session alive."
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--app_id", help="Application ID sent with login")
    parser.add_argument("--auth_url", help="Authentication endpoint URL")
    parser.add_argument("--hostname", help="Streaming gateway hostname")
    parser.add_argument("--port", type=int, help="Streaming gateway port")
    parser.add_argument("--user", help="Username")
    parser.add_argument("--password", help="Password")
    parser.add_argument("--newPassword", dest="new_password", help="Change the password before connecting")
    parser.add_argument("--clientid", help="Client ID")
    parser.add_argument("--scope", help="Token scope")
    parser.add_argument("--ric", help="Item to request")
    parser.add_argument("--service", help="Service providing the item")
    parser.add_argument("--proxy_hostname", help="HTTP proxy hostname")
    parser.add_argument("--proxy_port", help="HTTP proxy port")
    parser.add_argument("--log_level", help="Log level")
    return parser


def apply_cli_overrides(settings: SessionSettings, args: argparse.Namespace) -> SessionSettings:
    """Return a copy of ``settings`` with every flag given on the command line applied."""
    overrides = {
        'auth': {
            'url': args.auth_url,
            'username': args.user,
            'password': args.password,
            'new_password': args.new_password,
            'client_id': args.clientid,
            'scope': args.scope,
        },
        'stream': {
            'hostname': args.hostname,
            'port': args.port,
            'app_id': args.app_id,
        },
        'subscription': {
            'ric': args.ric,
            'service': args.service,
        },
        'proxy': {
            'host': args.proxy_hostname,
            'port': args.proxy_port,
        },
        'logging': {
            'level': args.log_level,
        },
    }

    updates = {}
    for section, values in overrides.items():
        values = {key: value for key, value in values.items() if value is not None}
        if values:
            updates[section] = getattr(settings, section).model_copy(update=values)

    return settings.model_copy(update=updates)


def resolve_settings(argv: Optional[List[str]] = None) -> SessionSettings:
    args = build_parser().parse_args(argv)
    settings = apply_cli_overrides(load_settings(args.config), args)

    missing = settings.missing_required()
    if missing:
        raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    return settings


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    try:
        settings = resolve_settings(argv)
    except (ConfigurationError, FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    setup_logging(settings.logging, settings.service_name)
    if settings.proxy.port and settings.proxy.url is None:
        logger.warning("--proxy_port is not a number, not using proxy")

    service = StreamingSessionService(settings)

    try:
        exit_code = asyncio.run(service.run())
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(EXIT_FAILURE)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
