"""Pytest configuration and shared fixtures."""

from typing import Any, Dict

import pytest

from market_session.config.settings import (
    AuthConfig,
    RenewalConfig,
    RetryConfig,
    SessionSettings,
    StreamConfig,
    SubscriptionConfig,
)
from market_session.context import Credentials, SessionContext, Subscription

from tests.fakes import AUTH_URL, FakeConnector, FakeWebSocket


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        url=AUTH_URL,
        username="user1",
        password="secret",
        client_id="client-123",
        scope="trapi",
        max_redirects=3,
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_backoff_seconds=0.0, max_backoff_seconds=0.0, jitter=False)


@pytest.fixture
def stream_config() -> StreamConfig:
    return StreamConfig(hostname="gateway.example.com", port=443, position="10.0.0.1")


@pytest.fixture
def session_context() -> SessionContext:
    credentials = Credentials(
        username="user1",
        client_id="client-123",
        password="secret",
        scope="trapi",
        app_id="256",
        position="10.0.0.1",
    )
    return SessionContext(credentials=credentials, subscription=Subscription(ric="/TRI.N", service="ELEKTRON_DD"))


@pytest.fixture
def test_settings(auth_config, retry_config, stream_config) -> SessionSettings:
    return SessionSettings(
        service_name="test-session",
        auth=auth_config,
        stream=stream_config,
        subscription=SubscriptionConfig(ric="/TRI.N", service="ELEKTRON_DD"),
        retry=retry_config,
        renewal=RenewalConfig(fraction=0.9),
    )


@pytest.fixture
def fake_websocket() -> FakeWebSocket:
    return FakeWebSocket()


@pytest.fixture
def fake_connector(fake_websocket) -> FakeConnector:
    return FakeConnector(fake_websocket)


@pytest.fixture
def login_refresh_message() -> Dict[str, Any]:
    return {
        "ID": 1,
        "Type": "Refresh",
        "Domain": "Login",
        "Key": {"Name": "user1"},
        "State": {"Stream": "Open", "Data": "Ok", "Text": "Login accepted by host"},
    }
