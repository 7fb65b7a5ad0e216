"""Account model and the in-memory account registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError, NotFoundError

logger = logging.getLogger("mailhub")


class AuthMethod(Enum):
    PLAIN = "plain"
    LOGIN = "login"
    CRAM_MD5 = "cram-md5"  # reserved, always rejected at connect time
    OAUTH2 = "oauth2"


class TlsMode(Enum):
    IMPLICIT = "implicit"
    STARTTLS = "starttls"
    NONE = "none"


class FolderType(Enum):
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class CustomFolder:
    """Folder role outside the standard set, identified by name."""

    name: str


@dataclass
class FolderMapping:
    folder_type: FolderType | CustomFolder
    server_name: str
    local_name: str


def default_folder_mappings() -> list[FolderMapping]:
    return [
        FolderMapping(FolderType.INBOX, "INBOX", "Inbox"),
        FolderMapping(FolderType.SENT, "Sent", "Sent"),
        FolderMapping(FolderType.DRAFTS, "Drafts", "Drafts"),
        FolderMapping(FolderType.TRASH, "Trash", "Trash"),
    ]


@dataclass
class ImapConfig:
    server: str
    port: int = 993
    username: str = ""
    password: str = field(default="", repr=False)
    tls: TlsMode = TlsMode.IMPLICIT
    auth_method: AuthMethod = AuthMethod.PLAIN
    folders: list[FolderMapping] = field(default_factory=default_folder_mappings)

    def connection_url(self) -> str:
        scheme = "imaps" if self.tls is TlsMode.IMPLICIT else "imap"
        return f"{scheme}://{self.server}:{self.port}"


@dataclass
class SmtpConfig:
    server: str
    port: int = 587
    username: str = ""
    password: str = field(default="", repr=False)
    tls: TlsMode = TlsMode.STARTTLS
    auth_method: AuthMethod = AuthMethod.PLAIN

    def connection_url(self) -> str:
        scheme = "smtps" if self.tls is TlsMode.IMPLICIT else "smtp"
        return f"{scheme}://{self.server}:{self.port}"


@dataclass
class OAuthConfig:
    """OAuth2 client registration for the identity provider."""

    client_id: str
    client_secret: str = field(default="", repr=False)
    redirect_uri: str = "http://localhost:8080/oauth/callback"


@dataclass(frozen=True)
class OAuthTokens:
    """Tokens issued by the provider.

    Only the OAuth2 flow manager builds these; everything else treats them
    as opaque values carried on the account.
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_in: int | None = None
    token_type: str = "Bearer"


@dataclass
class Account:
    id: str
    name: str
    email: str
    imap: ImapConfig
    smtp: SmtpConfig
    signature: str | None = None
    default_folder: str = "INBOX"
    enabled: bool = True
    oauth: OAuthConfig | None = None
    tokens: OAuthTokens | None = None

    def validate(self) -> None:
        """Check the account is usable.

        Raises:
            ConfigurationError: On the first failed check
        """
        if not self.name:
            raise ConfigurationError("Account name cannot be empty")
        if not self.email:
            raise ConfigurationError("Email cannot be empty")
        if "@" not in self.email:
            raise ConfigurationError("Invalid email format")
        if not self.imap.server:
            raise ConfigurationError("IMAP server cannot be empty")
        if not self.smtp.server:
            raise ConfigurationError("SMTP server cannot be empty")
        if not self.imap.username:
            raise ConfigurationError("IMAP username cannot be empty")
        if not self.smtp.username:
            raise ConfigurationError("SMTP username cannot be empty")

    @property
    def domain(self) -> str:
        return self.email.rpartition("@")[2].lower()

    def uses_oauth(self) -> bool:
        return AuthMethod.OAUTH2 in (self.imap.auth_method, self.smtp.auth_method)

    def folder_mapping(self, folder_type: FolderType | CustomFolder) -> FolderMapping | None:
        # First match wins
        for mapping in self.imap.folders:
            if mapping.folder_type == folder_type:
                return mapping
        return None

    def _server_folder(self, folder_type: FolderType, default: str) -> str:
        mapping = self.folder_mapping(folder_type)
        return mapping.server_name if mapping else default

    def get_inbox_folder(self) -> str:
        return self._server_folder(FolderType.INBOX, "INBOX")

    def get_sent_folder(self) -> str:
        return self._server_folder(FolderType.SENT, "Sent")

    def get_drafts_folder(self) -> str:
        return self._server_folder(FolderType.DRAFTS, "Drafts")

    def get_trash_folder(self) -> str:
        return self._server_folder(FolderType.TRASH, "Trash")


class AccountRegistry:
    """Validated accounts keyed by id.

    Single-owner structure: the connection manager is the only writer.
    """

    def __init__(self, accounts: list[Account] | None = None):
        self._accounts: dict[str, Account] = {}
        for account in accounts or []:
            self.add(account)

    def add(self, account: Account) -> bool:
        """Admit an account after validation.

        Returns:
            True if added, False if the id was already registered

        Raises:
            ConfigurationError: If the account fails validation
        """
        account.validate()
        if account.id in self._accounts:
            logger.debug(f"Account {account.id} already registered, ignoring")
            return False
        self._accounts[account.id] = account
        return True

    def remove(self, account_id: str) -> Account:
        try:
            return self._accounts.pop(account_id)
        except KeyError:
            raise NotFoundError(f"Account not found: {account_id}") from None

    def get(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def require(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

    def list(self) -> list[Account]:
        return list(self._accounts.values())

    def replace_tokens(self, account_id: str, tokens: OAuthTokens) -> Account:
        """Store freshly issued tokens on the account in one assignment."""
        account = self.require(account_id)
        account.tokens = tokens
        return account

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._accounts

    def __len__(self) -> int:
        return len(self._accounts)
