"""Error taxonomy shared by the adapters and the connection manager."""

from __future__ import annotations


class MailError(Exception):
    """Base class for every error raised by mailhub.

    Attributes:
        timed_out: True when the failing step exceeded its time bound
        step: Name of the network step that failed (e.g. "tcp", "login")
        account_id: Account the failing operation was running for
        folder: Folder the operation targeted, if any
        message_id: Backend message identifier, if any
    """

    kind = "Mail"

    def __init__(
        self,
        message: str,
        *,
        timed_out: bool = False,
        step: str | None = None,
        account_id: str | None = None,
        folder: str | None = None,
        message_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.timed_out = timed_out
        self.step = step
        self.account_id = account_id
        self.folder = folder
        self.message_id = message_id

    def with_context(
        self,
        account_id: str | None = None,
        folder: str | None = None,
        message_id: str | None = None,
    ) -> "MailError":
        """Annotate the error with operation context and return it."""
        if account_id is not None and self.account_id is None:
            self.account_id = account_id
        if folder is not None and self.folder is None:
            self.folder = folder
        if message_id is not None and self.message_id is None:
            self.message_id = message_id
        return self

    def __str__(self) -> str:
        text = f"{self.kind} error: {self.message}"
        context = []
        if self.account_id is not None:
            context.append(f"account={self.account_id}")
        if self.folder is not None:
            context.append(f"folder={self.folder}")
        if self.message_id is not None:
            context.append(f"message={self.message_id}")
        if context:
            text += f" [{', '.join(context)}]"
        return text


class MailConnectionError(MailError):
    """Transport, TLS or DNS failure, or a session that is not connected."""

    kind = "Connection"


class AuthenticationError(MailError):
    """Credentials rejected, OAuth2 exchange failure or unsupported method."""

    kind = "Authentication"


class CsrfMismatchError(AuthenticationError):
    """The state returned by the provider does not match the issued token."""


class NoSuchFlowError(AuthenticationError):
    """No authorization flow is pending for the account."""


class AuthorizationRequiredError(AuthenticationError):
    """The account has no OAuth2 tokens yet.

    ``authorization_url`` holds the link for the user to open; the pending
    flow has already been registered.
    """

    def __init__(self, message: str, authorization_url: str, **kwargs):
        super().__init__(message, **kwargs)
        self.authorization_url = authorization_url


class ProtocolError(MailError):
    """Backend returned a malformed or unexpected response."""

    kind = "Protocol"


class ParseError(MailError):
    """Caller supplied malformed input (e.g. a non-numeric UID)."""

    kind = "Parse"


class ConfigurationError(MailError):
    """Account or configuration failed validation."""

    kind = "Configuration"


class NotFoundError(MailError):
    """Lookup by id found nothing."""

    kind = "NotFound"
