"""SMTP adapter built on aiosmtplib."""

import asyncio
import contextlib
import logging
from email.header import Header
from email.mime.text import MIMEText
from email.utils import format_datetime

import aiosmtplib

from mailhub.account import Account, AuthMethod, TlsMode
from mailhub.config import TimeoutConfig
from mailhub.errors import AuthenticationError, MailConnectionError, MailError, ProtocolError
from mailhub.message import Message
from mailhub.oauth import xoauth2_string

from .base import bounded

logger = logging.getLogger("mailhub.smtp")


def outgoing_body(message: Message, signature: str | None) -> str:
    """Body text to send, with the account signature appended."""
    body = message.body.outgoing_text()
    if signature:
        body = f"{body}\n\n--\n{signature}"
    return body


def build_message(account: Account, message: Message) -> MIMEText:
    """Translate a canonical message into a MIME message.

    From is always the account's own identity. HTML bodies keep their
    content type; everything else goes out as text/plain.
    """
    subtype = "html" if message.body.is_html else "plain"
    msg = MIMEText(outgoing_body(message, account.signature), subtype, "utf-8")

    sender = f"{account.name} <{account.email}>"
    if any(ord(c) > 127 for c in sender):
        msg["From"] = Header(sender, "utf-8").encode()
    else:
        msg["From"] = sender

    if message.to:
        msg["To"] = ", ".join(addr.formatted() for addr in message.to)
    if message.cc:
        msg["Cc"] = ", ".join(addr.formatted() for addr in message.cc)

    if any(ord(c) > 127 for c in message.subject):
        msg["Subject"] = Header(message.subject, "utf-8").encode()
    else:
        msg["Subject"] = message.subject

    msg["Date"] = format_datetime(message.date)
    if message.id:
        msg_id = message.id if message.id.startswith("<") else f"<{message.id}>"
        msg["Message-ID"] = msg_id
    # Bcc recipients are delivered but never written to the headers
    return msg


class SmtpAdapter:
    """One authenticated SMTP session for one account."""

    def __init__(self, account: Account, timeouts: TimeoutConfig | None = None):
        self._account = account
        self._timeouts = timeouts or TimeoutConfig()
        self._smtp: aiosmtplib.SMTP | None = None
        self._lock = asyncio.Lock()

    @property
    def kind(self) -> str:
        return "smtp"

    @property
    def account(self) -> Account:
        return self._account

    @property
    def connected(self) -> bool:
        return self._smtp is not None

    async def connect(self) -> None:
        """Open the transport, negotiate TLS and authenticate.

        Raises:
            MailConnectionError: TCP/TLS failure or timeout
            AuthenticationError: Rejected credentials, missing tokens or
                unsupported method
        """
        cfg = self._account.smtp
        timeouts = self._timeouts

        if cfg.auth_method is AuthMethod.CRAM_MD5:
            raise AuthenticationError("CRAM-MD5 not supported", account_id=self._account.id)
        if cfg.auth_method is AuthMethod.OAUTH2 and self._account.tokens is None:
            raise AuthenticationError(
                "No OAuth2 tokens available. Please run OAuth2 flow first.",
                account_id=self._account.id,
            )

        if self._smtp is not None:
            await self.disconnect()

        logger.info(
            f"Connecting to {cfg.connection_url()} for {self._account.id} "
            f"(auth: {cfg.auth_method.value})"
        )
        smtp = aiosmtplib.SMTP(
            hostname=cfg.server,
            port=cfg.port,
            use_tls=cfg.tls is TlsMode.IMPLICIT,
            start_tls=cfg.tls is TlsMode.STARTTLS,
            timeout=timeouts.command_seconds,
        )

        try:
            step = "tcp" if cfg.tls is TlsMode.NONE else "tls"
            await bounded(smtp.connect(), timeouts.connect_seconds + timeouts.tls_seconds, step)
            await self._authenticate(smtp)
        except MailError as e:
            self._abandon(smtp)
            raise e.with_context(account_id=self._account.id)
        except aiosmtplib.SMTPAuthenticationError as e:
            self._abandon(smtp)
            raise AuthenticationError(
                f"SMTP authentication failed: {e.message}", account_id=self._account.id
            ) from e
        except (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected, OSError) as e:
            self._abandon(smtp)
            raise MailConnectionError(
                f"SMTP connection failed: {e}", account_id=self._account.id
            ) from e
        except aiosmtplib.SMTPException as e:
            self._abandon(smtp)
            raise ProtocolError(
                f"SMTP handshake failed: {e}", account_id=self._account.id
            ) from e

        self._smtp = smtp
        logger.info(f"SMTP session ready for {self._account.id}")

    async def _authenticate(self, smtp: aiosmtplib.SMTP) -> None:
        cfg = self._account.smtp

        if cfg.auth_method is AuthMethod.OAUTH2:
            credential = xoauth2_string(self._account.email, self._account.tokens.access_token)
            logger.debug(f"XOAUTH2 for {self._account.email} (credential length {len(credential)})")
            # Raw AUTH needs a greeting; connect() only sends EHLO on the STARTTLS path
            await bounded(
                smtp.ehlo(),
                self._timeouts.oauth_handshake_seconds,
                "ehlo",
                on_timeout=lambda msg: AuthenticationError(msg, timed_out=True, step="oauth2"),
            )
            response = await bounded(
                smtp.execute_command(b"AUTH", b"XOAUTH2", credential.encode("ascii")),
                self._timeouts.oauth_handshake_seconds,
                "oauth2",
                on_timeout=lambda msg: AuthenticationError(msg, timed_out=True, step="oauth2"),
            )
            if response.code != 235:
                raise AuthenticationError(
                    f"OAuth2 SMTP authentication failed: {response.code} {response.message}",
                    step="oauth2",
                )
            return

        if cfg.auth_method is AuthMethod.LOGIN:
            call = smtp.auth_login(cfg.username, cfg.password)
        else:
            call = smtp.auth_plain(cfg.username, cfg.password)
        await bounded(
            call,
            self._timeouts.login_seconds,
            "login",
            on_timeout=lambda msg: AuthenticationError(msg, timed_out=True, step="login"),
        )

    def _abandon(self, smtp: aiosmtplib.SMTP) -> None:
        with contextlib.suppress(Exception):
            smtp.close()

    async def disconnect(self) -> None:
        """Best-effort QUIT; always leaves the adapter disconnected."""
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            await asyncio.wait_for(smtp.quit(), timeout=self._timeouts.login_seconds)
        except Exception as e:
            logger.debug(f"SMTP quit for {self._account.id} failed: {e}")
            self._abandon(smtp)

    def _require(self) -> aiosmtplib.SMTP:
        if self._smtp is None:
            raise MailConnectionError("Not connected", account_id=self._account.id)
        return self._smtp

    def _drop(self, smtp: aiosmtplib.SMTP) -> None:
        if self._smtp is smtp:
            self._smtp = None
        with contextlib.suppress(Exception):
            smtp.close()
        logger.warning(f"SMTP session for {self._account.id} dropped")

    async def send(self, message: Message) -> None:
        """Submit a message over the authenticated session.

        Raises:
            MailConnectionError: Not connected, connection lost or timeout
            ProtocolError: Server rejected the message or recipients
        """
        async with self._lock:
            smtp = self._require()
            recipients = [addr.email for addr in (*message.to, *message.cc, *message.bcc)]
            if not recipients:
                raise ProtocolError(
                    "Message has no recipients", account_id=self._account.id, message_id=message.id
                )

            msg = build_message(self._account, message)
            try:
                await bounded(
                    smtp.send_message(msg, sender=self._account.email, recipients=recipients),
                    self._timeouts.command_seconds,
                    "send",
                )
            except MailError as e:
                if e.timed_out:
                    self._drop(smtp)
                raise e.with_context(account_id=self._account.id, message_id=message.id)
            except aiosmtplib.SMTPServerDisconnected as e:
                self._drop(smtp)
                raise MailConnectionError(
                    f"SMTP connection lost: {e}", account_id=self._account.id, message_id=message.id
                ) from e
            except aiosmtplib.SMTPException as e:
                raise ProtocolError(
                    f"Failed to send email: {e}", account_id=self._account.id, message_id=message.id
                ) from e

        logger.info(f"Sent message to {len(recipients)} recipient(s) from {self._account.id}")

    async def test_connection(self) -> bool:
        """NOOP round-trip on the live session."""
        async with self._lock:
            smtp = self._require()
            try:
                await bounded(smtp.noop(), self._timeouts.command_seconds, "noop")
            except MailError as e:
                raise e.with_context(account_id=self._account.id)
            except aiosmtplib.SMTPException as e:
                raise MailConnectionError(
                    f"SMTP connection test failed: {e}", account_id=self._account.id
                ) from e
        return True
