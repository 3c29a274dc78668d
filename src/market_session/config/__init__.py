"""Configuration for the streaming session."""

from .settings import (
    AuthConfig,
    LoggingConfig,
    ProxyConfig,
    RenewalConfig,
    RetryConfig,
    SessionSettings,
    StreamConfig,
    SubscriptionConfig,
    load_settings,
    substitute_env_vars,
)

__all__ = [
    "AuthConfig",
    "LoggingConfig",
    "ProxyConfig",
    "RenewalConfig",
    "RetryConfig",
    "SessionSettings",
    "StreamConfig",
    "SubscriptionConfig",
    "load_settings",
    "substitute_env_vars",
]
