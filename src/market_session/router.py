"""Dispatch of decoded gateway messages."""

import logging
from enum import Enum
from typing import TYPE_CHECKING

from .context import SessionContext, SessionFlags, SessionPhase
from .exceptions import SessionError
from .messages import (
    DATA_OK,
    DecodedMessage,
    MessageType,
    login_request,
    pong,
    subscription_request,
)

if TYPE_CHECKING:
    from .clients.session_connection import SessionConnection

logger = logging.getLogger(__name__)


class RouterAction(Enum):
    """Side effect requested by a single inbound message."""
    NONE = "none"
    SEND_SUBSCRIPTION = "send_subscription"
    SEND_PONG = "send_pong"
    FATAL_CLOSE = "fatal_close"


class MessageRouter:
    """
    Interprets login, status and ping messages.

    ``handle`` decides what a message means for the session; ``perform`` and
    ``send_login`` write the resulting frames to the connection.
    """

    def __init__(self, context: SessionContext, connection: "SessionConnection"):
        self.context = context
        self.connection = connection

    def handle(self, msg: DecodedMessage, flags: SessionFlags) -> RouterAction:
        if msg.type is MessageType.REFRESH and msg.is_login:
            if msg.state is not None and msg.state.stream_closed:
                logger.error(f"Login stream was closed: {msg.state.stream} ({msg.state.text})")
                return RouterAction.FATAL_CLOSE

            if not flags.logged_in and (msg.state is None or msg.state.data == DATA_OK):
                if flags.mark_logged_in():
                    logger.info("Login accepted by the gateway")
                    return RouterAction.SEND_SUBSCRIPTION

            return RouterAction.NONE

        if msg.type is MessageType.STATUS and msg.is_login:
            if msg.state is not None and msg.state.stream_closed:
                logger.error(f"Stream is no longer open (state is {msg.state.stream})")
                return RouterAction.FATAL_CLOSE
            return RouterAction.NONE

        if msg.type is MessageType.PING:
            return RouterAction.SEND_PONG

        return RouterAction.NONE

    async def perform(self, action: RouterAction) -> None:
        if action is RouterAction.SEND_SUBSCRIPTION:
            self.context.transition(SessionPhase.LOGGED_IN)
            subscription = self.context.subscription
            logger.info(f"Requesting {subscription.ric} from {subscription.service}")
            await self.connection.send_json(subscription_request(subscription.ric, subscription.service))
        elif action is RouterAction.SEND_PONG:
            await self.connection.send_json(pong())

    async def send_login(self, is_refresh: bool = False) -> None:
        token = self.context.tokens.access_token
        if not token:
            raise SessionError("Cannot log in without an access token")

        credentials = self.context.credentials
        logger.info(f"Sending {'refresh ' if is_refresh else ''}login for {credentials.username}")
        await self.connection.send_json(
            login_request(credentials.app_id, credentials.position, token, is_refresh=is_refresh)
        )
