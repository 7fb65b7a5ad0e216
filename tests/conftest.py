"""Shared test fixtures."""

import pytest

from mailhub.account import (
    Account,
    AuthMethod,
    ImapConfig,
    OAuthConfig,
    OAuthTokens,
    SmtpConfig,
    TlsMode,
)
from mailhub.config import TimeoutConfig


def make_account(
    account_id: str = "work",
    email: str = "user@example.com",
    auth_method: AuthMethod = AuthMethod.PLAIN,
    tokens: OAuthTokens | None = None,
    **overrides,
) -> Account:
    """Build a valid account; keyword overrides replace top-level fields."""
    fields = dict(
        id=account_id,
        name="Test User",
        email=email,
        imap=ImapConfig(
            server="imap.example.com",
            port=993,
            username=email,
            password="secret",
            tls=TlsMode.IMPLICIT,
            auth_method=auth_method,
        ),
        smtp=SmtpConfig(
            server="smtp.example.com",
            port=587,
            username=email,
            password="secret",
            tls=TlsMode.STARTTLS,
            auth_method=auth_method,
        ),
    )
    if auth_method is AuthMethod.OAUTH2:
        fields["oauth"] = OAuthConfig(client_id="client-id", client_secret="client-secret")
    fields["tokens"] = tokens
    fields.update(overrides)
    return Account(**fields)


@pytest.fixture
def account():
    """A password-authenticated account on a non-REST domain."""
    return make_account()


@pytest.fixture
def oauth_tokens():
    return OAuthTokens(access_token="access-123", refresh_token="refresh-456", expires_in=3600)


@pytest.fixture
def oauth_account(oauth_tokens):
    """An OAuth2 account on a non-REST domain with tokens."""
    return make_account(
        account_id="corp",
        email="user@corp.example",
        auth_method=AuthMethod.OAUTH2,
        tokens=oauth_tokens,
    )


@pytest.fixture
def rest_account(oauth_tokens):
    """An OAuth2 account on a REST-capable provider domain."""
    return make_account(
        account_id="gmail",
        email="someone@gmail.com",
        auth_method=AuthMethod.OAUTH2,
        tokens=oauth_tokens,
    )


@pytest.fixture
def timeouts():
    """Short bounds so timeout tests finish quickly."""
    return TimeoutConfig(
        connect_seconds=0.5,
        tls_seconds=0.5,
        login_seconds=0.5,
        oauth_handshake_seconds=0.2,
        http_seconds=0.5,
        command_seconds=0.5,
    )


@pytest.fixture
def account_factory():
    return make_account
