"""OAuth2 authorization-code flow against the mailbox identity provider.

Two pieces live here:

- ``OAuthClient`` talks HTTP to the provider: it builds the authorization
  URL and exchanges authorization codes and refresh tokens for tokens.
- ``OAuthFlowManager`` tracks which accounts have an authorization attempt
  in flight and validates the CSRF ``state`` echoed back by the provider.

A pending flow is only invalidated by completing it, cancelling it, or
starting a new one for the same account. There is no time-based expiry, so
an abandoned authorization link stays redeemable until one of those happens.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
from dataclasses import dataclass

import httpx

from .account import Account, OAuthConfig, OAuthTokens
from .errors import (
    AuthenticationError,
    CsrfMismatchError,
    MailConnectionError,
    NoSuchFlowError,
    ProtocolError,
)

logger = logging.getLogger("mailhub.oauth")

AUTH_URL = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
TOKENINFO_URL = "https://www.googleapis.com/oauth2/v1/tokeninfo"
DEFAULT_REDIRECT_URI = "http://localhost:8080/oauth/callback"

MAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
MAIL_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
MAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"
SCOPES = (MAIL_READONLY_SCOPE, MAIL_MODIFY_SCOPE, MAIL_SEND_SCOPE)


def xoauth2_string(email: str, access_token: str) -> str:
    """Build the base64-encoded SASL XOAUTH2 initial response."""
    raw = f"user={email}\x01auth=Bearer {access_token}\x01\x01"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def authorization_url(config: OAuthConfig, state: str) -> str:
    """Provider URL requesting the three mailbox scopes."""
    url = httpx.URL(
        AUTH_URL,
        params={
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        },
    )
    return str(url)


@dataclass
class UserInfo:
    email: str
    name: str
    picture: str | None = None


class OAuthClient:
    """Async HTTP client for the provider's OAuth2 endpoints."""

    def __init__(
        self,
        config: OAuthConfig,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def __aenter__(self) -> "OAuthClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _token_request(self, form: dict[str, str], what: str) -> OAuthTokens:
        try:
            response = await self._client.post(TOKEN_URL, data=form)
        except httpx.TimeoutException as e:
            raise MailConnectionError(f"{what} timed out", timed_out=True, step="oauth") from e
        except httpx.HTTPError as e:
            raise MailConnectionError(f"{what} request failed: {e}", step="oauth") from e

        if response.status_code >= 400:
            detail = response.text
            try:
                payload = response.json()
                detail = payload.get("error_description") or payload.get("error") or detail
            except ValueError:
                pass
            raise AuthenticationError(f"{what} failed: {response.status_code} {detail}")

        try:
            payload = response.json()
            access_token = payload["access_token"]
        except (ValueError, KeyError) as e:
            raise ProtocolError(f"{what} returned an unexpected response") from e

        expires_in = payload.get("expires_in")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            token_type="Bearer",
        )

    async def exchange_code(self, code: str) -> OAuthTokens:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.redirect_uri,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
            "Authorization code exchange",
        )

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
            "Token refresh",
        )

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        try:
            response = await self._client.get(
                USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as e:
            raise MailConnectionError(f"User info request failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError("User info request rejected the access token")
        if response.status_code >= 400:
            raise ProtocolError(f"Failed to get user info: {response.status_code}")

        data = response.json()
        return UserInfo(
            email=data.get("email", ""),
            name=data.get("name", ""),
            picture=data.get("picture"),
        )

    async def validate_token(self, access_token: str) -> bool:
        try:
            response = await self._client.get(
                TOKENINFO_URL, params={"access_token": access_token}
            )
        except httpx.HTTPError as e:
            raise MailConnectionError(f"Token validation request failed: {e}") from e
        return response.is_success


class OAuthFlowManager:
    """Tracks pending authorization attempts keyed by account id.

    Each account has at most one pending CSRF token. ``begin`` overwrites any
    earlier token, so only the most recent authorization link can complete.
    """

    def __init__(self, timeout_seconds: float = 30.0, http_client: httpx.AsyncClient | None = None):
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._pending: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _config_for(self, account: Account) -> OAuthConfig:
        if account.oauth is None:
            raise AuthenticationError(
                "No OAuth2 config available", account_id=account.id
            )
        return account.oauth

    def _client_for(self, account: Account) -> OAuthClient:
        return OAuthClient(self._config_for(account), self._timeout_seconds, self._http_client)

    async def begin(self, account: Account) -> str:
        """Start a flow and return the authorization URL for the user."""
        config = self._config_for(account)
        token = secrets.token_urlsafe(32)
        async with self._lock:
            replaced = account.id in self._pending
            self._pending[account.id] = token
        if replaced:
            logger.info(f"Replaced pending authorization for {account.id}")
        else:
            logger.info(f"Started authorization for {account.id}")
        return authorization_url(config, token)

    async def complete(self, account_id: str, received_state: str) -> None:
        """Consume the pending flow and check the returned state.

        Raises:
            NoSuchFlowError: Nothing pending for the account
            CsrfMismatchError: ``received_state`` differs from the issued token
        """
        async with self._lock:
            expected = self._pending.pop(account_id, None)

        if expected is None:
            raise NoSuchFlowError("Invalid or expired OAuth flow", account_id=account_id)
        if not secrets.compare_digest(expected.encode(), received_state.encode()):
            logger.warning(f"CSRF token mismatch for {account_id}")
            raise CsrfMismatchError("CSRF token mismatch", account_id=account_id)
        logger.info(f"Authorization callback validated for {account_id}")

    async def cancel(self, account_id: str) -> bool:
        async with self._lock:
            return self._pending.pop(account_id, None) is not None

    async def pending(self, account_id: str) -> bool:
        async with self._lock:
            return account_id in self._pending

    async def exchange_code(self, account: Account, code: str) -> OAuthTokens:
        """Exchange an authorization code; call only after ``complete`` succeeded."""
        async with self._client_for(account) as client:
            try:
                tokens = await client.exchange_code(code)
            except AuthenticationError as e:
                raise e.with_context(account_id=account.id)
        logger.info(f"Issued tokens for {account.id}")
        return tokens

    async def refresh(self, account: Account, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token. Failures are reported, never retried."""
        async with self._client_for(account) as client:
            try:
                tokens = await client.refresh(refresh_token)
            except AuthenticationError as e:
                logger.warning(f"Token refresh failed for {account.id}: {e.message}")
                raise e.with_context(account_id=account.id)
        logger.info(f"Refreshed tokens for {account.id}")
        return tokens
