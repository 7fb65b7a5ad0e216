"""Capability protocols implemented by the protocol adapters.

Each backend only implements what it actually supports:

- IMAP: ``MailSession`` + ``FolderReader`` + ``MessageMutator``
- SMTP: ``MailSession`` + ``MessageSender``
- REST mailbox: ``MailSession`` + ``FolderReader``
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar, runtime_checkable

from mailhub.errors import MailConnectionError
from mailhub.message import Message, MessageFlag

T = TypeVar("T")


@runtime_checkable
class MailSession(Protocol):
    """One live backend session for one account."""

    @property
    def kind(self) -> str:
        """Return the adapter kind identifier ("imap", "smtp" or "rest")."""
        ...

    @property
    def connected(self) -> bool:
        ...

    async def connect(self) -> None:
        """Open transport, negotiate TLS and authenticate."""
        ...

    async def disconnect(self) -> None:
        """Best-effort logout. Never raises."""
        ...


@runtime_checkable
class FolderReader(Protocol):
    async def list_folders(self) -> list[str]:
        ...

    async def fetch_messages(self, folder: str, limit: int) -> list[Message]:
        """Return up to ``limit`` most recent messages, newest first."""
        ...

    async def fetch_message_body(self, folder: str, message_id: str) -> str:
        ...


@runtime_checkable
class MessageMutator(Protocol):
    async def set_flags(self, folder: str, message_id: str, flags: set[MessageFlag]) -> None:
        ...

    async def move_message(self, from_folder: str, to_folder: str, message_id: str) -> None:
        ...

    async def delete_message(self, folder: str, message_id: str) -> None:
        """Mark deleted and expunge. Irreversible."""
        ...


@runtime_checkable
class MessageSender(Protocol):
    async def send(self, message: Message) -> None:
        ...


async def bounded(
    awaitable: Awaitable[T],
    seconds: float,
    step: str,
    on_timeout: Callable[[str], Exception] | None = None,
) -> T:
    """Await with a time bound, turning a timeout into a typed error.

    Args:
        awaitable: The network step
        seconds: Time bound for the step
        step: Step name recorded on the error
        on_timeout: Builds the error for a timeout; defaults to a connection error
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except TimeoutError:
        message = f"{step} timeout ({seconds:g} seconds)"
        if on_timeout is not None:
            raise on_timeout(message) from None
        raise MailConnectionError(message, timed_out=True, step=step) from None
