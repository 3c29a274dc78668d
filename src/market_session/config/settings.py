"""Configuration settings using Pydantic for validation."""

from typing import List, Optional, Any
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings
import os
import re


DEFAULT_AUTH_URL = "https://api.refinitiv.com:443/auth/oauth2/v1/token"


class AuthConfig(BaseModel):
    """Authentication endpoint and credentials."""
    url: str = Field(default=DEFAULT_AUTH_URL, description="OAuth token endpoint")
    username: Optional[str] = Field(default=None, description="Machine ID / username")
    password: Optional[str] = Field(default=None, description="Password for the password grant")
    client_id: Optional[str] = Field(default=None, description="Client (application key) identifier")
    scope: str = Field(default="trapi", description="Token scope")
    new_password: Optional[str] = Field(default=None, description="Replace the password before connecting")
    request_timeout_seconds: int = Field(default=30, description="HTTP request timeout")
    max_redirects: int = Field(default=5, description="Maximum redirects followed per request")

    @validator('max_redirects')
    def validate_max_redirects(cls, v):
        if v < 0:
            raise ValueError("max_redirects must not be negative")
        return v


class StreamConfig(BaseModel):
    """Streaming gateway configuration."""
    hostname: Optional[str] = Field(default=None, description="Gateway hostname")
    port: int = Field(default=443, description="Gateway port")
    path: str = Field(default="/WebSocket", description="WebSocket path")
    scheme: str = Field(default="wss", description="ws or wss")
    app_id: str = Field(default="256", description="Application ID sent with login")
    position: Optional[str] = Field(default=None, description="Position override (defaults to local IPv4)")
    subprotocol: str = Field(default="tr_json2", description="WebSocket sub-protocol")
    max_message_size: int = Field(default=2**22, description="Largest inbound message in bytes")
    open_timeout_seconds: float = Field(default=10.0, description="WebSocket opening handshake timeout")

    @validator('scheme')
    def validate_scheme(cls, v):
        if v not in ['ws', 'wss']:
            raise ValueError("Scheme must be 'ws' or 'wss'")
        return v

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.hostname}:{self.port}{self.path}"


class SubscriptionConfig(BaseModel):
    """Item requested once the login succeeds."""
    ric: str = Field(default="/TRI.N", description="Item name (RIC)")
    service: str = Field(default="ELEKTRON_DD", description="Service name")


class ProxyConfig(BaseModel):
    """Optional HTTP proxy shared by the token requests and the WebSocket."""
    host: Optional[str] = Field(default=None, description="Proxy hostname")
    port: Optional[str] = Field(default=None, description="Proxy port")

    @property
    def url(self) -> Optional[str]:
        if not self.host or not self.port or not str(self.port).isdigit():
            return None
        return f"http://{self.host}:{self.port}"


class RetryConfig(BaseModel):
    """Retry configuration for transient authentication failures."""
    max_attempts: int = Field(default=5, description="Maximum attempts per request")
    initial_backoff_seconds: float = Field(default=1.0, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=30.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=True, description="Add jitter to backoff")

    @validator('max_attempts')
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class RenewalConfig(BaseModel):
    """Token renewal timing."""
    fraction: float = Field(default=0.9, description="Share of the token lifetime to wait before renewing")

    @validator('fraction')
    def validate_fraction(cls, v):
        if not 0 < v <= 1:
            raise ValueError("Renewal fraction must be in (0, 1]")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")


class SessionSettings(BaseSettings):
    """Main streaming session settings."""

    service_name: str = Field(default="market-session", description="Service name")

    auth: AuthConfig = Field(default_factory=AuthConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    renewal: RenewalConfig = Field(default_factory=RenewalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_nested_delimiter = "__"
        case_sensitive = False

    def missing_required(self) -> List[str]:
        """Names of required settings that are still unset."""
        required = {
            'auth.username': self.auth.username,
            'auth.password': self.auth.password,
            'auth.client_id': self.auth.client_id,
            'stream.hostname': self.stream.hostname,
        }
        return [name for name, value in required.items() if not value]


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> SessionSettings:
    """
    Load settings from config file and environment variables.

    The config file supports environment variable substitution using ${VAR_NAME} syntax.

    Args:
        config_file: Path to YAML configuration file

    Returns:
        SessionSettings: Validated configuration object

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return SessionSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return SessionSettings()
