"""OAuth token client for the market-data gateway."""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional
from urllib.parse import urljoin

import aiohttp

from ..config.settings import AuthConfig, RetryConfig
from ..context import SessionContext
from ..exceptions import (
    AuthRedirectError,
    AuthRejectedError,
    AuthResponseError,
    AuthRetryExhaustedError,
    AuthTransportError,
    PasswordPolicyError,
)
from ..password_policy import check_new_password, policy_violations
from ..token_store import TokenState
from ..utils.logging import log_payload
from ..utils.retry import backoff_delay

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 307, 308})
REJECTED_STATUSES = frozenset({400, 401})
FORBIDDEN_STATUSES = frozenset({403, 451})


class AuthDecision(Enum):
    """What to do with an authentication response."""
    SUCCESS = "success"
    REDIRECT = "redirect"
    RETRY_WITH_PASSWORD = "retry_with_password"
    FAIL = "fail"
    RETRY = "retry"


def decide(status: int, is_refresh: bool) -> AuthDecision:
    """Map an HTTP status to the next step of a token request."""
    if 200 <= status < 300:
        return AuthDecision.SUCCESS
    if status in REDIRECT_STATUSES:
        return AuthDecision.REDIRECT
    if status in REJECTED_STATUSES:
        return AuthDecision.RETRY_WITH_PASSWORD if is_refresh else AuthDecision.FAIL
    if status in FORBIDDEN_STATUSES:
        return AuthDecision.FAIL
    return AuthDecision.RETRY


class AuthResponse(NamedTuple):
    status: int
    reason: str
    location: Optional[str]
    body: str


def _masked(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: ("***" if "token" in key or "password" in key.lower() else value) for key, value in payload.items()}


class AuthClient:
    """
    Performs password and refresh grants against the authentication endpoint.

    Redirects are handled here rather than by aiohttp so the grant can be
    re-issued against the new location. Only one grant is in flight at a time.
    """

    def __init__(
        self,
        context: SessionContext,
        config: AuthConfig,
        retry_config: RetryConfig,
        proxy_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.context = context
        self.config = config
        self.retry_config = retry_config
        self.proxy_url = proxy_url
        self.session = session
        self._owns_session = session is None
        self._lock = asyncio.Lock()

        self.stats = {
            'requests_sent': 0,
            'password_grants': 0,
            'refresh_grants': 0,
            'redirects_followed': 0,
            'retries': 0,
        }

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    @property
    def tokens(self) -> TokenState:
        return self.context.tokens.state

    async def authenticate(
        self,
        use_previous_refresh_token: bool,
        redirect_url: Optional[str] = None
    ) -> TokenState:
        """
        Obtain a new token pair.

        Args:
            use_previous_refresh_token: Send a refresh grant with the stored
                refresh token instead of a password grant
            redirect_url: Send the first request here instead of the configured URL

        Returns:
            The updated TokenState

        Raises:
            AuthenticationError: On terminal statuses, exhausted retries or redirects,
                unreachable endpoint, or an unusable response body
        """
        async with self._lock:
            return await self._authenticate(use_previous_refresh_token, redirect_url)

    async def _authenticate(self, is_refresh: bool, redirect_url: Optional[str]) -> TokenState:
        url = redirect_url or self.config.url
        attempts = 0
        redirects = 0

        while True:
            attempts += 1
            logger.info(f"Sending authentication request (refresh={is_refresh}) to {url}")

            try:
                response = await self._post(url, self._grant_form(is_refresh))
            except aiohttp.ClientConnectorError as e:
                raise AuthTransportError(f"Authentication server request failed: {e}", url=url) from e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                await self._wait_before_retry(attempts, url, f"transport error: {e!r}")
                continue

            decision = decide(response.status, is_refresh)
            if decision is not AuthDecision.SUCCESS:
                logger.warning(
                    f"Authentication HTTP code: {response.status} {response.reason} "
                    f"(refresh={is_refresh}, decision={decision.value})"
                )

            if decision is AuthDecision.SUCCESS:
                if is_refresh:
                    self.stats['refresh_grants'] += 1
                else:
                    self.stats['password_grants'] += 1
                return self._store_tokens(response.body, password_grant=not is_refresh)

            if decision is AuthDecision.REDIRECT:
                redirects += 1
                url = self._redirect_target(url, response, redirects)
                attempts = 0
                continue

            if decision is AuthDecision.RETRY_WITH_PASSWORD:
                logger.info("Retry with username and password")
                is_refresh = False
                url = self.config.url
                attempts = 0
                continue

            if decision is AuthDecision.FAIL:
                logger.error("Stop retrying with the request")
                raise AuthRejectedError(
                    f"Authentication rejected with HTTP {response.status}",
                    status=response.status,
                    url=url
                )

            await self._wait_before_retry(attempts, url, f"HTTP {response.status}", response.status)

    async def change_password(self, new_password: str) -> None:
        """
        Replace the account password.

        The new password is checked against the password policy first. On
        success the session credentials carry the new password.

        Raises:
            PasswordPolicyError: The new password violates the policy
            AuthenticationError: The endpoint refused or could not be reached
        """
        reasons = policy_violations(new_password)
        if reasons:
            raise PasswordPolicyError("; ".join(reasons), check_new_password(new_password))

        async with self._lock:
            url = self.config.url
            attempts = 0
            redirects = 0

            while True:
                attempts += 1
                logger.info(f"Sending change password request to {url}")
                form = self._grant_form(is_refresh=False)
                form['newPassword'] = new_password

                try:
                    response = await self._post(url, form)
                except aiohttp.ClientConnectorError as e:
                    raise AuthTransportError(f"Authentication server request failed: {e}", url=url) from e
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    await self._wait_before_retry(attempts, url, f"transport error: {e!r}")
                    continue

                if 200 <= response.status < 300:
                    self.context.credentials.replace_password(new_password)
                    logger.info("Password successfully changed")
                    return

                if response.status in REDIRECT_STATUSES:
                    logger.info("Request to auth server is redirected")
                    redirects += 1
                    url = self._redirect_target(url, response, redirects)
                    attempts = 0
                    continue

                if response.status in REJECTED_STATUSES | FORBIDDEN_STATUSES:
                    logger.error(f"Change password error: HTTP {response.status} {response.reason}")
                    if response.body:
                        logger.error(f"Change password response: {response.body}")
                    raise AuthRejectedError(
                        f"Password change rejected with HTTP {response.status}",
                        status=response.status,
                        url=url
                    )

                await self._wait_before_retry(attempts, url, f"HTTP {response.status}", response.status)

    def _grant_form(self, is_refresh: bool) -> Dict[str, str]:
        credentials = self.context.credentials
        form = {
            'username': credentials.username,
            'client_id': credentials.client_id,
        }
        if is_refresh:
            form['grant_type'] = 'refresh_token'
            form['refresh_token'] = self.context.tokens.refresh_token
        else:
            form['takeExclusiveSignOnControl'] = 'true'
            form['scope'] = credentials.scope
            form['grant_type'] = 'password'
            form['password'] = credentials.password
        return form

    async def _post(self, url: str, form: Dict[str, str]) -> AuthResponse:
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        self.stats['requests_sent'] += 1
        async with self.session.post(
            url,
            data=form,
            allow_redirects=False,
            proxy=self.proxy_url
        ) as response:
            body = await response.text()
            return AuthResponse(
                status=response.status,
                reason=response.reason or "",
                location=response.headers.get('Location'),
                body=body
            )

    def _redirect_target(self, url: str, response: AuthResponse, redirects: int) -> str:
        if not response.location:
            raise AuthRedirectError(
                f"HTTP {response.status} redirect without a Location header",
                status=response.status,
                url=url
            )
        if redirects > self.config.max_redirects:
            raise AuthRedirectError(
                f"Exceeded {self.config.max_redirects} redirects",
                status=response.status,
                url=url
            )
        self.stats['redirects_followed'] += 1
        target = urljoin(url, response.location)
        logger.info(f"Following redirect to {target}")
        return target

    async def _wait_before_retry(self, attempts: int, url: str, reason: str, status: Optional[int] = None):
        if attempts >= self.retry_config.max_attempts:
            raise AuthRetryExhaustedError(
                f"Authentication failed after {attempts} attempts ({reason})",
                status=status,
                url=url
            )
        delay = backoff_delay(attempts, self.retry_config)
        self.stats['retries'] += 1
        logger.warning(
            f"Attempt {attempts}/{self.retry_config.max_attempts} failed: {reason}. "
            f"Retrying in {delay:.2f} seconds..."
        )
        await asyncio.sleep(delay)

    def _store_tokens(self, body: str, password_grant: bool) -> TokenState:
        if not body:
            raise AuthResponseError("Authentication response has no body")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise AuthResponseError(f"Authentication response is not JSON: {e}") from e

        if not isinstance(payload, dict) or not payload.get('access_token'):
            raise AuthResponseError("Authentication response has no access_token")

        log_payload(logger, "RECEIVED", _masked(payload))

        expires_in = payload.get('expires_in')
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric expires_in: {expires_in!r}")
            expires_in = None

        return self.context.tokens.update(
            access_token=str(payload['access_token']),
            refresh_token=str(payload.get('refresh_token') or self.context.tokens.refresh_token),
            expires_in_seconds=expires_in,
            password_grant=password_grant,
        )
