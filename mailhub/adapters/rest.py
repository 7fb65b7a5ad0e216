"""REST mailbox adapter (Gmail API) built on httpx.

Flags are derived from labels only, and coarsely: a message is unread when
it carries the provider's ``UNREAD`` label and read otherwise. Stars,
drafts and the rest of the label set are not mapped to flags.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime

import httpx

from mailhub.account import Account
from mailhub.config import TimeoutConfig
from mailhub.errors import AuthenticationError, MailConnectionError, MailError, ProtocolError
from mailhub.message import Address, Flag, Message, MessageBody, MessageFlag

logger = logging.getLogger("mailhub.rest")

API_BASE_URL = "https://www.googleapis.com/gmail/v1"

# Domains whose mailboxes are served over the REST API
REST_DOMAINS = ("gmail.com", "googlemail.com")

UNREAD_LABEL = "UNREAD"

# UI display names and their English originals
FOLDER_LABELS = {
    "INBOX": "INBOX",
    "受信箱": "INBOX",
    "Sent": "SENT",
    "送信済み": "SENT",
    "Drafts": "DRAFT",
    "下書き": "DRAFT",
    "Trash": "TRASH",
    "ゴミ箱": "TRASH",
}


def supports_account(account: Account) -> bool:
    """True when the account's mailbox is reachable over the REST API."""
    return account.domain in REST_DOMAINS


def folder_to_label(folder: str) -> str | None:
    """Label id for a folder name; None means no label filter."""
    return FOLDER_LABELS.get(folder)


def flags_from_labels(label_ids: list[str] | None) -> set[MessageFlag]:
    if not label_ids or UNREAD_LABEL in label_ids:
        return set()
    return {Flag.SEEN}


def _parse_date(value: str) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        date = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return date.astimezone(timezone.utc)


def _parse_addresses(value: str) -> list[Address]:
    return [
        Address(email=addr, name=name or None)
        for name, addr in getaddresses([value])
        if addr
    ]


def _decode_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Invalid body encoding: {e}") from e
    return raw.decode("utf-8", errors="replace")


def _find_part(payload: dict, mime_type: str) -> str | None:
    if payload.get("mimeType", "").startswith(mime_type):
        data = payload.get("body", {}).get("data")
        if data:
            return data
    for part in payload.get("parts") or ():
        found = _find_part(part, mime_type)
        if found is not None:
            return found
    return None


def body_text(resource: dict) -> str:
    """Body text of a full message resource: text/plain, text/html, then snippet."""
    payload = resource.get("payload") or {}
    for mime_type in ("text/plain", "text/html"):
        data = _find_part(payload, mime_type)
        if data is not None:
            return _decode_data(data)
    return resource.get("snippet", "")


def message_from_resource(resource: dict, account_id: str, folder: str) -> Message:
    """Build a Message from a REST message resource; the body is the snippet."""
    payload = resource.get("payload")
    if not payload:
        raise ProtocolError("Message payload not found", message_id=resource.get("id"))
    headers = payload.get("headers")
    if headers is None:
        raise ProtocolError("Message headers not found", message_id=resource.get("id"))

    values = {}
    for header in headers:
        name = header.get("name", "").lower()
        if name in ("subject", "from", "to", "cc", "date") and name not in values:
            values[name] = header.get("value", "")

    return Message(
        id=resource["id"],
        account_id=account_id,
        folder=folder,
        subject=values.get("subject", ""),
        from_=_parse_addresses(values.get("from", "")),
        to=_parse_addresses(values.get("to", "")),
        cc=_parse_addresses(values.get("cc", "")),
        body=MessageBody.plain(resource.get("snippet", "")),
        date=_parse_date(values.get("date", "")),
        flags=flags_from_labels(resource.get("labelIds")),
    )


@dataclass
class Profile:
    email: str
    messages_total: int = 0
    threads_total: int = 0


class RestAdapter:
    """Session against the REST mailbox API for one OAuth2 account.

    The bearer token is read from the account on every request, so tokens
    written back after a refresh take effect without reconnecting.
    """

    def __init__(
        self,
        account: Account,
        timeouts: TimeoutConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._account = account
        self._timeouts = timeouts or TimeoutConfig()
        self._http_client = http_client
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self.profile: Profile | None = None

    @property
    def kind(self) -> str:
        return "rest"

    @property
    def account(self) -> Account:
        return self._account

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _access_token(self) -> str:
        if self._account.tokens is None:
            raise AuthenticationError("No OAuth2 tokens available", account_id=self._account.id)
        return self._account.tokens.access_token

    async def _get(self, client: httpx.AsyncClient, path: str, what: str, **params) -> dict:
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        try:
            response = await client.get(
                f"{API_BASE_URL}{path}", headers=headers, params=params or None
            )
        except httpx.TimeoutException as e:
            raise MailConnectionError(f"{what} timed out", timed_out=True, step="http") from e
        except httpx.HTTPError as e:
            raise MailConnectionError(f"{what} failed: {e}", step="http") from e

        if response.status_code == 401:
            raise AuthenticationError(f"{what} rejected the access token")
        if response.status_code == 404:
            raise ProtocolError(f"{what} failed: not found")
        if not response.is_success:
            raise ProtocolError(f"{what} failed: {response.status_code} - {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Failed to parse {what.lower()} response") from e

    async def connect(self) -> None:
        """Validate the token by fetching the mailbox profile."""
        self._access_token()
        client = self._http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeouts.http_seconds)
        )
        logger.info(f"Connecting to {API_BASE_URL} for {self._account.id}")
        try:
            data = await self._get(client, "/users/me/profile", "Profile request")
        except MailError as e:
            if self._http_client is None:
                await client.aclose()
            raise e.with_context(account_id=self._account.id)

        self.profile = Profile(
            email=data.get("emailAddress", ""),
            messages_total=int(data.get("messagesTotal", 0)),
            threads_total=int(data.get("threadsTotal", 0)),
        )
        self._client = client
        logger.info(
            f"REST session ready for {self._account.id} "
            f"({self.profile.messages_total} messages, {self.profile.threads_total} threads)"
        )

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None or client is self._http_client:
            return
        try:
            await client.aclose()
        except Exception as e:
            logger.debug(f"Closing REST client for {self._account.id} failed: {e}")

    def _require(self, folder: str | None = None, message_id: str | None = None) -> httpx.AsyncClient:
        if self._client is None:
            raise MailConnectionError(
                "Not connected", account_id=self._account.id, folder=folder, message_id=message_id
            )
        return self._client

    async def list_folders(self) -> list[str]:
        async with self._lock:
            client = self._require()
            try:
                data = await self._get(client, "/users/me/labels", "Labels request")
            except MailError as e:
                raise e.with_context(account_id=self._account.id)
        return [label["name"] for label in data.get("labels") or ()]

    async def fetch_messages(self, folder: str, limit: int) -> list[Message]:
        """List the most recent messages in a folder, newest first.

        Message resources that fail to load are skipped with a warning.
        """
        if limit <= 0:
            return []
        params: dict[str, str | int] = {"maxResults": limit}
        label = folder_to_label(folder)
        if label is not None:
            params["labelIds"] = label

        async with self._lock:
            client = self._require(folder=folder)
            try:
                listing = await self._get(client, "/users/me/messages", "Messages request", **params)
            except MailError as e:
                raise e.with_context(account_id=self._account.id, folder=folder)

            refs = (listing.get("messages") or [])[:limit]
            logger.debug(f"Listed {len(refs)} message refs in {folder} for {self._account.id}")

            messages = []
            for ref in refs:
                try:
                    resource = await self._get(client, f"/users/me/messages/{ref['id']}", "Message request")
                    messages.append(message_from_resource(resource, self._account.id, folder))
                except (AuthenticationError, MailConnectionError) as e:
                    raise e.with_context(self._account.id, folder, ref["id"])
                except ProtocolError as e:
                    logger.warning(f"Skipping message {ref['id']} in {folder}: {e.message}")

        messages.sort(key=lambda m: m.date, reverse=True)
        return messages

    async def fetch_message_body(self, folder: str, message_id: str) -> str:
        async with self._lock:
            client = self._require(folder=folder, message_id=message_id)
            try:
                resource = await self._get(
                    client, f"/users/me/messages/{message_id}", "Message request", format="full"
                )
                return body_text(resource)
            except MailError as e:
                raise e.with_context(self._account.id, folder, message_id)
