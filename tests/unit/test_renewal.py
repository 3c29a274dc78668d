"""Tests for the token renewal loop."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from market_session.clients.session_connection import ConnectionState
from market_session.config.settings import RenewalConfig
from market_session.context import SessionPhase
from market_session.exceptions import AuthRejectedError
from market_session.renewal import RenewalScheduler
from market_session.token_store import TokenState


def make_scheduler(session_context, authenticate=None, state=ConnectionState.OPEN, fraction=0.9, on_abort=None):
    auth_client = Mock()
    auth_client.authenticate = authenticate or AsyncMock(
        return_value=TokenState("A2", "R2", 300000, 300000)
    )
    router = Mock()
    router.send_login = AsyncMock()
    connection = SimpleNamespace(state=state)
    scheduler = RenewalScheduler(
        session_context,
        auth_client,
        connection,
        router,
        RenewalConfig(fraction=fraction),
        on_abort=on_abort
    )
    return scheduler, auth_client, router, connection


class TestRenew:
    """Test a single renewal cycle."""

    @pytest.mark.asyncio
    async def test_refresh_then_login(self, session_context):
        scheduler, auth_client, router, _ = make_scheduler(session_context)

        await scheduler.renew()

        auth_client.authenticate.assert_awaited_once_with(use_previous_refresh_token=True)
        router.send_login.assert_awaited_once_with(is_refresh=True)
        assert scheduler.renewals == 1
        assert session_context.phase is SessionPhase.LOGGED_IN

    @pytest.mark.asyncio
    async def test_expiry_drift_forces_password_grant(self, session_context):
        authenticate = AsyncMock(side_effect=[
            TokenState("A2", "R2", 120000, 300000),
            TokenState("A3", "R3", 300000, 300000),
        ])
        scheduler, auth_client, router, _ = make_scheduler(session_context, authenticate=authenticate)

        await scheduler.renew()

        assert [call.kwargs for call in authenticate.await_args_list] == [
            {'use_previous_refresh_token': True},
            {'use_previous_refresh_token': False},
        ]
        router.send_login.assert_awaited_once_with(is_refresh=True)

    @pytest.mark.asyncio
    async def test_failure_propagates_without_login(self, session_context):
        authenticate = AsyncMock(side_effect=AuthRejectedError("rejected", status=403))
        scheduler, _, router, _ = make_scheduler(session_context, authenticate=authenticate)

        with pytest.raises(AuthRejectedError):
            await scheduler.renew()

        router.send_login.assert_not_awaited()


class TestRunLoop:
    """Test the long-running loop."""

    @pytest.mark.asyncio
    async def test_renews_after_fraction_of_lifetime(self, session_context):
        session_context.tokens.update("A1", "R1", 1, password_grant=True)
        session_context.flags.logged_in = True
        scheduler, auth_client, router, _ = make_scheduler(session_context, fraction=0.01)

        task = asyncio.create_task(scheduler.run())
        while scheduler.renewals < 2:
            await asyncio.sleep(0.005)
        session_context.shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert auth_client.authenticate.await_count >= 2

    @pytest.mark.asyncio
    async def test_no_renewal_before_login(self, session_context):
        session_context.tokens.update("A1", "R1", 1, password_grant=True)
        scheduler, auth_client, _, _ = make_scheduler(session_context, fraction=0.01)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        session_context.shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

        auth_client.authenticate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_sleep(self, session_context):
        session_context.tokens.update("A1", "R1", 3600, password_grant=True)
        scheduler, auth_client, _, _ = make_scheduler(session_context)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0)
        session_context.shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

        auth_client.authenticate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_lifetime_waits_for_shutdown(self, session_context):
        scheduler, auth_client, _, _ = make_scheduler(session_context)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.01)
        assert not task.done()

        session_context.shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_aborted_connection_stops_loop(self, session_context):
        session_context.tokens.update("A1", "R1", 1, password_grant=True)
        on_abort = AsyncMock()
        scheduler, auth_client, _, _ = make_scheduler(
            session_context,
            state=ConnectionState.ABORTED,
            fraction=0.01,
            on_abort=on_abort
        )

        await asyncio.wait_for(scheduler.run(), timeout=1)

        on_abort.assert_awaited_once()
        auth_client.authenticate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_aborted_connection_without_callback_sets_shutdown(self, session_context):
        session_context.tokens.update("A1", "R1", 1, password_grant=True)
        scheduler, _, _, _ = make_scheduler(session_context, state=ConnectionState.ABORTED, fraction=0.01)

        await asyncio.wait_for(scheduler.run(), timeout=1)

        assert session_context.shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_renewal_failure_ends_loop(self, session_context):
        session_context.tokens.update("A1", "R1", 1, password_grant=True)
        session_context.flags.logged_in = True
        authenticate = AsyncMock(side_effect=AuthRejectedError("rejected", status=451))
        scheduler, _, _, _ = make_scheduler(session_context, authenticate=authenticate, fraction=0.01)

        with pytest.raises(AuthRejectedError):
            await asyncio.wait_for(scheduler.run(), timeout=1)
