"""IMAP adapter built on imapclient."""

import asyncio
import contextlib
import logging
import ssl
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from email.header import decode_header
from typing import Any

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError
from imapclient.imapclient import SocketTimeout

from mailhub.account import Account, AuthMethod, TlsMode
from mailhub.config import TimeoutConfig
from mailhub.errors import (
    AuthenticationError,
    MailConnectionError,
    MailError,
    ParseError,
    ProtocolError,
)
from mailhub.message import Address, Flag, Message, MessageBody, MessageFlag

from .base import bounded

logger = logging.getLogger("mailhub.imap")

SEEN = b"\\Seen"
ANSWERED = b"\\Answered"
FLAGGED = b"\\Flagged"
DELETED = b"\\Deleted"
DRAFT = b"\\Draft"

_FLAG_TO_IMAP: dict[MessageFlag, bytes] = {
    Flag.SEEN: SEEN,
    Flag.ANSWERED: ANSWERED,
    Flag.FLAGGED: FLAGGED,
    Flag.DELETED: DELETED,
    Flag.DRAFT: DRAFT,
}
_IMAP_TO_FLAG = {wire.lower(): flag for flag, wire in _FLAG_TO_IMAP.items()}

SUMMARY_FIELDS = ["ENVELOPE", "FLAGS", "INTERNALDATE", "RFC822.SIZE"]


def flags_to_imap(flags: set[MessageFlag]) -> list[bytes]:
    """Translate canonical flags to IMAP system flags, dropping the rest."""
    return [_FLAG_TO_IMAP[flag] for flag in flags if flag in _FLAG_TO_IMAP]


def flags_from_imap(wire_flags) -> set[MessageFlag]:
    """Translate IMAP flags to canonical flags; unknown flags are dropped."""
    result: set[MessageFlag] = set()
    for wire in wire_flags:
        if isinstance(wire, str):
            wire = wire.encode()
        flag = _IMAP_TO_FLAG.get(wire.lower())
        if flag is not None:
            result.add(flag)
    return result


def decode_mime_header(header) -> str:
    """Decode a MIME-encoded header given as bytes or str."""
    if header is None:
        return ""
    if isinstance(header, bytes):
        header = header.decode("utf-8", errors="replace")
    decoded_parts = decode_header(header)
    result = []
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            result.append(part.decode(charset or "utf-8", errors="replace"))
        else:
            result.append(part)
    return "".join(result)


def _addresses(envelope_addresses) -> list[Address]:
    result = []
    for addr in envelope_addresses or ():
        # Group markers have no host
        if not addr.mailbox or not addr.host:
            continue
        mailbox = addr.mailbox.decode("utf-8", errors="replace")
        host = addr.host.decode("utf-8", errors="replace")
        name = decode_mime_header(addr.name) if addr.name else None
        result.append(Address(email=f"{mailbox}@{host}", name=name or None))
    return result


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        # imapclient normalises to naive local time
        value = value.astimezone()
    return value.astimezone(timezone.utc)


def parse_uid(message_id: str) -> int:
    try:
        uid = int(message_id)
    except (TypeError, ValueError):
        raise ParseError(f"Invalid IMAP UID: {message_id!r}", message_id=str(message_id)) from None
    if uid <= 0:
        raise ParseError(f"Invalid IMAP UID: {message_id!r}", message_id=str(message_id))
    return uid


def message_from_fetch(uid: int, data: dict, account_id: str, folder: str) -> Message | None:
    """Build a summary Message from one FETCH result; None without an envelope."""
    envelope = data.get(b"ENVELOPE")
    if envelope is None:
        return None

    date = _aware(envelope.date) or _aware(data.get(b"INTERNALDATE")) or datetime.now(timezone.utc)

    return Message(
        id=str(uid),
        account_id=account_id,
        folder=folder,
        subject=decode_mime_header(envelope.subject),
        from_=_addresses(envelope.from_),
        to=_addresses(envelope.to),
        cc=_addresses(envelope.cc),
        bcc=_addresses(envelope.bcc),
        # Body is fetched on demand by fetch_message_body
        body=MessageBody.plain(""),
        date=date,
        flags=flags_from_imap(data.get(b"FLAGS", ())),
    )


class ImapAdapter:
    """One authenticated IMAP session for one account.

    imapclient is blocking, so every call runs in the default executor and
    is wrapped in a time bound. Operations on the session are serialized by
    a per-session lock. A timed-out or aborted step drops the session so the
    next ``connect()`` starts clean.
    """

    def __init__(self, account: Account, timeouts: TimeoutConfig | None = None):
        self._account = account
        self._timeouts = timeouts or TimeoutConfig()
        self._client: IMAPClient | None = None
        self._lock = asyncio.Lock()

    @property
    def kind(self) -> str:
        return "imap"

    @property
    def account(self) -> Account:
        return self._account

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _abandon(self, client: IMAPClient | None) -> None:
        if client is None:
            return
        with contextlib.suppress(Exception):
            client.shutdown()

    async def connect(self) -> None:
        """Open the transport, negotiate TLS and authenticate.

        Raises:
            MailConnectionError: TCP/TLS failure or timeout
            AuthenticationError: Rejected credentials, OAuth2 handshake
                timeout, missing tokens or unsupported method
        """
        cfg = self._account.imap
        timeouts = self._timeouts

        if cfg.auth_method is AuthMethod.CRAM_MD5:
            raise AuthenticationError("CRAM-MD5 not supported", account_id=self._account.id)
        if cfg.auth_method is AuthMethod.OAUTH2 and self._account.tokens is None:
            raise AuthenticationError(
                "No OAuth2 tokens available. Please run OAuth2 flow first.",
                account_id=self._account.id,
            )

        if self._client is not None:
            await self.disconnect()

        logger.info(
            f"Connecting to {cfg.connection_url()} for {self._account.id} "
            f"(auth: {cfg.auth_method.value})"
        )
        loop = asyncio.get_event_loop()
        holder: list[IMAPClient] = []
        given_up = threading.Event()

        def open_transport() -> IMAPClient:
            client = IMAPClient(
                cfg.server,
                port=cfg.port,
                ssl=cfg.tls is TlsMode.IMPLICIT,
                timeout=SocketTimeout(
                    connect=timeouts.connect_seconds, read=timeouts.command_seconds
                ),
            )
            holder.append(client)
            # The caller stopped waiting; nobody else will close this one
            if given_up.is_set():
                self._abandon(client)
            return client

        def give_up() -> None:
            given_up.set()
            self._abandon(holder[0] if holder else None)

        try:
            step = "tls" if cfg.tls is TlsMode.IMPLICIT else "tcp"
            bound = timeouts.connect_seconds
            if cfg.tls is TlsMode.IMPLICIT:
                bound += timeouts.tls_seconds
            client = await bounded(loop.run_in_executor(None, open_transport), bound, step)

            if cfg.tls is TlsMode.STARTTLS:
                await bounded(
                    loop.run_in_executor(None, client.starttls, ssl.create_default_context()),
                    timeouts.tls_seconds,
                    "starttls",
                )

            await self._authenticate(client, loop)
        except MailError as e:
            give_up()
            raise e.with_context(account_id=self._account.id)
        except (ssl.SSLError, OSError) as e:
            give_up()
            raise MailConnectionError(
                f"IMAP connection failed: {e}", account_id=self._account.id
            ) from e
        except IMAPClientError as e:
            give_up()
            raise ProtocolError(
                f"IMAP handshake failed: {e}", account_id=self._account.id
            ) from e

        self._client = client
        logger.info(f"IMAP session ready for {self._account.id}")

    async def _authenticate(self, client: IMAPClient, loop: asyncio.AbstractEventLoop) -> None:
        cfg = self._account.imap

        if cfg.auth_method is AuthMethod.OAUTH2:
            tokens = self._account.tokens
            logger.debug(f"XOAUTH2 for {self._account.email} (token length {len(tokens.access_token)})")
            # imapclient sends user=...\x01auth=Bearer ...\x01\x01 base64-encoded
            call = loop.run_in_executor(
                None, client.oauth2_login, self._account.email, tokens.access_token
            )
            seconds = self._timeouts.oauth_handshake_seconds
            step = "oauth2"
            what = "OAuth2 IMAP authentication"
        else:
            call = loop.run_in_executor(None, client.login, cfg.username, cfg.password)
            seconds = self._timeouts.login_seconds
            step = "login"
            what = "Login"

        try:
            await bounded(
                call,
                seconds,
                step,
                on_timeout=lambda msg: AuthenticationError(msg, timed_out=True, step=step),
            )
        except IMAPClientAbortError as e:
            raise MailConnectionError(f"{what} aborted: {e}", step=step) from e
        except IMAPClientError as e:
            raise AuthenticationError(f"{what} failed: {e}", step=step) from e

    async def disconnect(self) -> None:
        """Best-effort LOGOUT; always leaves the adapter disconnected."""
        client, self._client = self._client, None
        if client is None:
            return

        loop = asyncio.get_event_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, client.logout),
                timeout=self._timeouts.login_seconds,
            )
        except Exception as e:
            logger.debug(f"IMAP logout for {self._account.id} failed: {e}")
            self._abandon(client)

    async def _run(
        self,
        step: str,
        fn: Callable[[IMAPClient], Any],
        folder: str | None = None,
        message_id: str | None = None,
    ) -> Any:
        async with self._lock:
            client = self._client
            if client is None:
                raise MailConnectionError(
                    "Not connected", account_id=self._account.id, folder=folder, message_id=message_id
                )

            loop = asyncio.get_event_loop()
            try:
                return await bounded(
                    loop.run_in_executor(None, fn, client), self._timeouts.command_seconds, step
                )
            except MailError as e:
                if e.timed_out:
                    self._drop(client)
                raise e.with_context(self._account.id, folder, message_id)
            except IMAPClientAbortError as e:
                self._drop(client)
                raise MailConnectionError(
                    f"IMAP connection lost during {step}: {e}",
                    account_id=self._account.id, folder=folder, message_id=message_id,
                ) from e
            except IMAPClientError as e:
                raise ProtocolError(
                    f"{step} failed: {e}",
                    account_id=self._account.id, folder=folder, message_id=message_id,
                ) from e
            except (ssl.SSLError, OSError) as e:
                self._drop(client)
                raise MailConnectionError(
                    f"IMAP network error during {step}: {e}",
                    account_id=self._account.id, folder=folder, message_id=message_id,
                ) from e

    def _drop(self, client: IMAPClient) -> None:
        if self._client is client:
            self._client = None
        self._abandon(client)
        logger.warning(f"IMAP session for {self._account.id} dropped")

    async def list_folders(self) -> list[str]:
        folders = await self._run("Folder list", lambda c: c.list_folders())
        return [name for _flags, _delimiter, name in folders]

    async def fetch_messages(self, folder: str, limit: int) -> list[Message]:
        """Fetch envelope, flags and date for the ``limit`` most recent messages."""
        if limit <= 0:
            return []
        account_id = self._account.id

        def fetch(client: IMAPClient) -> dict:
            client.select_folder(folder, readonly=True)
            uids = sorted(client.search(["ALL"]))
            if not uids:
                return {}
            return client.fetch(uids[-limit:], SUMMARY_FIELDS)

        response = await self._run("Message fetch", fetch, folder=folder)

        messages = []
        for uid, data in response.items():
            message = message_from_fetch(uid, data, account_id, folder)
            if message is not None:
                messages.append(message)

        messages.sort(key=lambda m: m.date, reverse=True)
        return messages[:limit]

    async def fetch_message_body(self, folder: str, message_id: str) -> str:
        uid = parse_uid(message_id)

        def fetch(client: IMAPClient) -> dict:
            client.select_folder(folder, readonly=True)
            return client.fetch([uid], ["BODY.PEEK[TEXT]"])

        response = await self._run("Message body fetch", fetch, folder=folder, message_id=message_id)
        body = response.get(uid, {}).get(b"BODY[TEXT]")
        if body is None:
            raise ProtocolError(
                "Message body not found",
                account_id=self._account.id, folder=folder, message_id=message_id,
            )
        return body.decode("utf-8", errors="replace")

    async def set_flags(self, folder: str, message_id: str, flags: set[MessageFlag]) -> None:
        """Add flags to a message; flags with no IMAP counterpart are ignored."""
        uid = parse_uid(message_id)
        wire_flags = flags_to_imap(flags)
        if not wire_flags:
            return

        def store(client: IMAPClient) -> None:
            client.select_folder(folder)
            client.add_flags([uid], wire_flags)

        await self._run("Flag setting", store, folder=folder, message_id=message_id)

    async def move_message(self, from_folder: str, to_folder: str, message_id: str) -> None:
        """Copy, mark the original deleted, then expunge."""
        uid = parse_uid(message_id)

        def move(client: IMAPClient) -> None:
            client.select_folder(from_folder)
            client.copy([uid], to_folder)
            client.add_flags([uid], [DELETED])
            client.expunge()

        await self._run("Message move", move, folder=from_folder, message_id=message_id)
        logger.info(f"Moved {message_id} from {from_folder} to {to_folder} ({self._account.id})")

    async def delete_message(self, folder: str, message_id: str) -> None:
        """Mark deleted and expunge. There is no undo."""
        uid = parse_uid(message_id)

        def delete(client: IMAPClient) -> None:
            client.select_folder(folder)
            client.add_flags([uid], [DELETED])
            client.expunge()

        await self._run("Message delete", delete, folder=folder, message_id=message_id)
        logger.info(f"Deleted {message_id} from {folder} ({self._account.id})")
