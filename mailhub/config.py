"""Configuration management for mailhub."""

import json
import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .account import (
    Account,
    AuthMethod,
    CustomFolder,
    FolderMapping,
    FolderType,
    ImapConfig,
    OAuthConfig,
    OAuthTokens,
    SmtpConfig,
    TlsMode,
    default_folder_mappings,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class TimeoutConfig:
    """Per-step time bounds, in seconds."""
    connect_seconds: float = 30.0
    tls_seconds: float = 30.0
    login_seconds: float = 30.0
    oauth_handshake_seconds: float = 10.0
    http_seconds: float = 30.0
    command_seconds: float = 30.0


@dataclass
class Config:
    accounts: list[Account] = field(default_factory=list)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    path: Path | None = None


def _env_key(account_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", account_id).upper()


def _enum(enum_cls: type[Enum], value: Any, what: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"Invalid {what} {value!r} (expected one of: {choices})") from None


def _tls_mode(data: dict, default: TlsMode) -> TlsMode:
    if "tls" in data:
        return _enum(TlsMode, data["tls"], "TLS mode")
    # Legacy boolean pair
    if data.get("use_tls") is True:
        return TlsMode.IMPLICIT
    if data.get("use_starttls") is True:
        return TlsMode.STARTTLS
    if data.get("use_tls") is False and "use_starttls" in data:
        return TlsMode.NONE
    return default


def _folder_mappings(items: list[dict] | None) -> list[FolderMapping]:
    if items is None:
        return default_folder_mappings()

    mappings = []
    for item in items:
        raw_type = item.get("type", "")
        try:
            folder_type: FolderType | CustomFolder = FolderType(str(raw_type).lower())
        except ValueError:
            folder_type = CustomFolder(str(raw_type))
        server_name = item.get("server_name", "")
        mappings.append(FolderMapping(
            folder_type=folder_type,
            server_name=server_name,
            local_name=item.get("local_name", server_name),
        ))
    return mappings


def _imap_config(data: dict, account_id: str) -> ImapConfig:
    return ImapConfig(
        server=data.get("server", ""),
        port=data.get("port", 993),
        username=data.get("username", ""),
        password=os.environ.get(
            f"MAILHUB_{_env_key(account_id)}_IMAP_PASSWORD", data.get("password", "")
        ),
        tls=_tls_mode(data, TlsMode.IMPLICIT),
        auth_method=_enum(AuthMethod, data.get("auth_method", "plain"), "IMAP auth method"),
        folders=_folder_mappings(data.get("folders")),
    )


def _smtp_config(data: dict, account_id: str) -> SmtpConfig:
    return SmtpConfig(
        server=data.get("server", ""),
        port=data.get("port", 587),
        username=data.get("username", ""),
        password=os.environ.get(
            f"MAILHUB_{_env_key(account_id)}_SMTP_PASSWORD", data.get("password", "")
        ),
        tls=_tls_mode(data, TlsMode.STARTTLS),
        auth_method=_enum(AuthMethod, data.get("auth_method", "plain"), "SMTP auth method"),
    )


def tokens_from_dict(data: dict) -> OAuthTokens:
    return OAuthTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
        token_type=data.get("token_type", "Bearer"),
    )


def tokens_to_dict(tokens: OAuthTokens) -> dict:
    data: dict[str, Any] = {
        "access_token": tokens.access_token,
        "token_type": tokens.token_type,
    }
    if tokens.refresh_token is not None:
        data["refresh_token"] = tokens.refresh_token
    if tokens.expires_in is not None:
        data["expires_in"] = tokens.expires_in
    return data


def account_from_dict(data: dict) -> Account:
    """Build an Account from its plain-dict (TOML/JSON) form."""
    account_id = data.get("id", "")
    if not account_id:
        raise ConfigurationError("Account id cannot be empty")

    oauth = None
    if "oauth" in data:
        oauth_data = data["oauth"]
        oauth = OAuthConfig(
            client_id=oauth_data.get("client_id", ""),
            client_secret=os.environ.get(
                "MAILHUB_OAUTH_CLIENT_SECRET", oauth_data.get("client_secret", "")
            ),
            redirect_uri=oauth_data.get("redirect_uri", "http://localhost:8080/oauth/callback"),
        )

    tokens = None
    if "tokens" in data and data["tokens"].get("access_token"):
        tokens = tokens_from_dict(data["tokens"])

    return Account(
        id=account_id,
        name=data.get("name", ""),
        email=data.get("email", ""),
        imap=_imap_config(data.get("imap", {}), account_id),
        smtp=_smtp_config(data.get("smtp", {}), account_id),
        signature=data.get("signature"),
        default_folder=data.get("default_folder", "INBOX"),
        enabled=data.get("enabled", True),
        oauth=oauth,
        tokens=tokens,
    )


def _folder_type_value(folder_type: FolderType | CustomFolder) -> str:
    if isinstance(folder_type, CustomFolder):
        return folder_type.name
    return folder_type.value


def account_to_dict(account: Account) -> dict:
    """Plain-dict form of an account, for an external configuration store."""
    data: dict[str, Any] = {
        "id": account.id,
        "name": account.name,
        "email": account.email,
        "default_folder": account.default_folder,
        "enabled": account.enabled,
        "imap": {
            "server": account.imap.server,
            "port": account.imap.port,
            "username": account.imap.username,
            "password": account.imap.password,
            "tls": account.imap.tls.value,
            "auth_method": account.imap.auth_method.value,
            "folders": [
                {
                    "type": _folder_type_value(m.folder_type),
                    "server_name": m.server_name,
                    "local_name": m.local_name,
                }
                for m in account.imap.folders
            ],
        },
        "smtp": {
            "server": account.smtp.server,
            "port": account.smtp.port,
            "username": account.smtp.username,
            "password": account.smtp.password,
            "tls": account.smtp.tls.value,
            "auth_method": account.smtp.auth_method.value,
        },
    }
    if account.signature is not None:
        data["signature"] = account.signature
    if account.oauth is not None:
        data["oauth"] = {
            "client_id": account.oauth.client_id,
            "client_secret": account.oauth.client_secret,
            "redirect_uri": account.oauth.redirect_uri,
        }
    if account.tokens is not None:
        data["tokens"] = tokens_to_dict(account.tokens)
    return data


def dump_accounts(accounts: list[Account]) -> list[dict]:
    return [account_to_dict(account) for account in accounts]


def token_store_path(config_path: str | Path) -> Path:
    """Token file kept beside the configuration file (``config.tokens.json``)."""
    config_path = Path(config_path)
    return config_path.with_name(f"{config_path.stem}.tokens.json")


def load_tokens(path: str | Path) -> dict[str, OAuthTokens]:
    """Read issued tokens keyed by account id; a missing file means none."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
        return {account_id: tokens_from_dict(item) for account_id, item in data.items()}
    except (ValueError, KeyError, AttributeError) as e:
        raise ConfigurationError(f"Invalid token store {path}: {e}") from e


def save_tokens(path: str | Path, accounts: list[Account]) -> int:
    """Write the tokens of every account holding some, readable by the owner only.

    Returns:
        Number of accounts written
    """
    path = Path(path)
    data = {a.id: tokens_to_dict(a.tokens) for a in accounts if a.tokens is not None}
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2)
    logger.debug(f"Saved tokens for {len(data)} accounts to {path}")
    return len(data)


def load_config(path: str | Path) -> Config:
    """Load configuration from a TOML file."""
    path = Path(path)
    with path.open("rb") as f:
        data = tomllib.load(f)

    timeout_data = data.get("timeouts", {})
    timeouts = TimeoutConfig(
        connect_seconds=timeout_data.get("connect_seconds", 30.0),
        tls_seconds=timeout_data.get("tls_seconds", 30.0),
        login_seconds=timeout_data.get("login_seconds", 30.0),
        oauth_handshake_seconds=timeout_data.get("oauth_handshake_seconds", 10.0),
        http_seconds=timeout_data.get("http_seconds", 30.0),
        command_seconds=timeout_data.get("command_seconds", 30.0),
    )

    accounts = [account_from_dict(item) for item in data.get("accounts", [])]
    logger.debug(f"Loaded {len(accounts)} accounts from {path}")

    # Stored tokens are newer than any [accounts.tokens] table
    stored = load_tokens(token_store_path(path))
    for account in accounts:
        if account.id in stored:
            account.tokens = stored[account.id]

    return Config(accounts=accounts, timeouts=timeouts, path=path)
