"""Connection manager: the single entry point for account sessions.

The manager owns the account registry and one session cache per adapter
kind (IMAP, SMTP, REST). Each cache is guarded by its own lock, which is
held only while looking up, inserting or removing a session, never across
network I/O. Operations on one cached session are serialized by the
adapter itself.

Fallback between adapters is an explicit rule:

1. Accounts on a REST-capable provider domain go straight to the REST
   adapter when an IMAP session is requested.
2. Otherwise IMAP is tried. If the IMAP OAuth2 handshake times out, the
   REST adapter is tried exactly once. A password LOGIN timeout does not
   qualify.
3. Any other IMAP error is raised as is.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Callable

from .account import Account, AccountRegistry, AuthMethod, OAuthTokens
from .adapters import FolderReader, ImapAdapter, MailSession, RestAdapter, SmtpAdapter
from .adapters.rest import supports_account
from .config import TimeoutConfig, dump_accounts
from .errors import (
    AuthenticationError,
    AuthorizationRequiredError,
    ConfigurationError,
    MailConnectionError,
    MailError,
)
from .message import Flag, Message, MessageFlag
from .oauth import OAuthFlowManager

logger = logging.getLogger("mailhub.manager")

AdapterFactory = Callable[[Account, TimeoutConfig], MailSession]


class SessionCache:
    """Live sessions of one adapter kind, keyed by account id."""

    def __init__(self, kind: str):
        self.kind = kind
        self._sessions: dict[str, MailSession] = {}
        self._lock = asyncio.Lock()

    async def get(self, account_id: str) -> MailSession | None:
        async with self._lock:
            return self._sessions.get(account_id)

    async def put(self, account_id: str, session: MailSession) -> MailSession | None:
        """Insert a session and return the one it displaced, if any."""
        async with self._lock:
            previous = self._sessions.get(account_id)
            self._sessions[account_id] = session
            return previous

    async def pop(self, account_id: str) -> MailSession | None:
        async with self._lock:
            return self._sessions.pop(account_id, None)

    async def drain(self) -> list[tuple[str, MailSession]]:
        async with self._lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()
            return sessions

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)


class ConnectionManager:
    """Registry, OAuth2 flows and cached adapter sessions for many accounts.

    Operations other than ``connect_*`` never connect implicitly: they fail
    with ``MailConnectionError`` when the session they need is not cached.
    Call ``disconnect_all()`` (or use the manager as an async context
    manager) before discarding it.
    """

    def __init__(
        self,
        accounts: list[Account] | None = None,
        timeouts: TimeoutConfig | None = None,
        flow_manager: OAuthFlowManager | None = None,
        imap_factory: AdapterFactory = ImapAdapter,
        smtp_factory: AdapterFactory = SmtpAdapter,
        rest_factory: AdapterFactory = RestAdapter,
    ):
        self.timeouts = timeouts or TimeoutConfig()
        self.registry = AccountRegistry(accounts)
        self.flows = flow_manager or OAuthFlowManager(self.timeouts.http_seconds)
        self._imap_factory = imap_factory
        self._smtp_factory = smtp_factory
        self._rest_factory = rest_factory
        self._imap = SessionCache("imap")
        self._smtp = SessionCache("smtp")
        self._rest = SessionCache("rest")

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect_all()

    def _caches(self) -> tuple[SessionCache, SessionCache, SessionCache]:
        return (self._imap, self._smtp, self._rest)

    # Accounts

    def add_account(self, account: Account) -> bool:
        """Register a validated account; a duplicate id is ignored."""
        added = self.registry.add(account)
        if added:
            logger.info(f"Registered account {account.id} ({account.email})")
        return added

    async def remove_account(self, account_id: str) -> Account:
        """Disconnect every session of the account, then unregister it."""
        self.registry.require(account_id)
        await self.disconnect(account_id)
        return self.registry.remove(account_id)

    def get_account(self, account_id: str) -> Account | None:
        return self.registry.get(account_id)

    def list_accounts(self) -> list[Account]:
        return self.registry.list()

    def dump_accounts(self) -> list[dict]:
        """Account list in plain-dict form for the configuration store."""
        return dump_accounts(self.registry.list())

    def _usable_account(self, account_id: str) -> Account:
        account = self.registry.require(account_id)
        if not account.enabled:
            raise ConfigurationError("Account is disabled", account_id=account_id)
        return account

    # OAuth2

    async def begin_authorization(self, account_id: str) -> str:
        """Start an OAuth2 flow and return the URL for the user to open."""
        account = self.registry.require(account_id)
        return await self.flows.begin(account)

    async def complete_authorization(self, account_id: str, code: str, state: str) -> Account:
        """Validate the callback state, exchange the code and store the tokens."""
        account = self.registry.require(account_id)
        await self.flows.complete(account_id, state)
        tokens = await self.flows.exchange_code(account, code)
        return self.registry.replace_tokens(account_id, tokens)

    async def refresh_tokens(self, account_id: str) -> OAuthTokens:
        """Refresh the access token and write it back to the registry.

        On failure the stale tokens are kept so the caller can decide to
        re-authorize.
        """
        account = self.registry.require(account_id)
        if account.tokens is None or not account.tokens.refresh_token:
            raise AuthenticationError("No refresh token available", account_id=account_id)

        refresh_token = account.tokens.refresh_token
        tokens = await self.flows.refresh(account, refresh_token)
        if tokens.refresh_token is None:
            tokens = dataclasses.replace(tokens, refresh_token=refresh_token)
        self.registry.replace_tokens(account_id, tokens)
        return tokens

    async def _require_tokens(self, account: Account) -> None:
        if account.tokens is not None:
            return
        url = await self.flows.begin(account)
        raise AuthorizationRequiredError(
            "OAuth2 authorization required", authorization_url=url, account_id=account.id
        )

    # Session lifecycle

    async def _teardown(self, session: MailSession, account_id: str) -> None:
        try:
            await session.disconnect()
        except Exception as e:
            logger.warning(f"Disconnecting {session.kind} session for {account_id} failed: {e}")

    async def _open(self, cache: SessionCache, account: Account, factory: AdapterFactory) -> MailSession:
        """Connect a new session, replacing any cached one for the account."""
        previous = await cache.pop(account.id)
        if previous is not None:
            logger.info(f"Replacing {cache.kind} session for {account.id}")
            await self._teardown(previous, account.id)

        session = factory(account, self.timeouts)
        await session.connect()

        # A concurrent connect for the same account may have won the race
        stale = await cache.put(account.id, session)
        if stale is not None and stale is not session:
            await self._teardown(stale, account.id)
        return session

    async def _open_refreshing(
        self,
        cache: SessionCache,
        account: Account,
        factory: AdapterFactory,
        auth_method: AuthMethod,
    ) -> MailSession:
        """``_open``, refreshing tokens and retrying once on an OAuth2 rejection."""
        try:
            return await self._open(cache, account, factory)
        except AuthenticationError as e:
            refreshable = (
                auth_method is AuthMethod.OAUTH2
                and not e.timed_out
                and account.tokens is not None
                and bool(account.tokens.refresh_token)
            )
            if not refreshable:
                raise
            logger.info(f"{cache.kind} login rejected for {account.id}, refreshing tokens")
            await self.refresh_tokens(account.id)
        return await self._open(cache, account, factory)

    async def connect_imap(self, account_id: str) -> MailSession:
        """Open the read/mutate session for an account.

        Returns the session actually opened: a REST session for REST-capable
        providers or after a timed-out IMAP OAuth2 handshake, IMAP otherwise.
        """
        account = self._usable_account(account_id)

        if supports_account(account):
            logger.info(f"{account.id} is served by the REST API, skipping IMAP")
            return await self.connect_rest(account_id)

        if account.imap.auth_method is AuthMethod.OAUTH2:
            await self._require_tokens(account)

        try:
            return await self._open_refreshing(
                self._imap, account, self._imap_factory, account.imap.auth_method
            )
        except AuthenticationError as imap_error:
            if not (imap_error.timed_out and imap_error.step == "oauth2"):
                raise
            logger.warning(
                f"IMAP OAuth2 handshake timed out for {account.id}, falling back to REST API"
            )
            try:
                return await self._open(self._rest, account, self._rest_factory)
            except MailError as rest_error:
                raise rest_error.with_context(account_id=account.id) from imap_error

    async def connect_smtp(self, account_id: str) -> MailSession:
        account = self._usable_account(account_id)
        if account.smtp.auth_method is AuthMethod.OAUTH2:
            await self._require_tokens(account)
        return await self._open_refreshing(
            self._smtp, account, self._smtp_factory, account.smtp.auth_method
        )

    async def connect_rest(self, account_id: str) -> MailSession:
        account = self._usable_account(account_id)
        await self._require_tokens(account)
        return await self._open_refreshing(
            self._rest, account, self._rest_factory, AuthMethod.OAUTH2
        )

    async def disconnect(self, account_id: str) -> None:
        """Disconnect and forget every cached session of one account."""
        for cache in self._caches():
            session = await cache.pop(account_id)
            if session is not None:
                await self._teardown(session, account_id)
                logger.info(f"Disconnected {cache.kind} session for {account_id}")

    async def disconnect_all(self) -> None:
        """Best-effort teardown of every cached session; never raises."""
        for cache in self._caches():
            for account_id, session in await cache.drain():
                await self._teardown(session, account_id)
        logger.debug("All sessions disconnected")

    async def is_connected(self, account_id: str, kind: str = "imap") -> bool:
        caches = {cache.kind: cache for cache in self._caches()}
        if kind not in caches:
            raise ValueError(f"Unknown session kind: {kind}")
        session = await caches[kind].get(account_id)
        return session is not None and session.connected

    async def session_count(self) -> int:
        return sum([await cache.count() for cache in self._caches()])

    # Dispatch

    async def _reader(self, account_id: str, folder: str | None = None) -> FolderReader:
        session = await self._rest.get(account_id)
        if session is None:
            session = await self._imap.get(account_id)
        if session is None:
            raise MailConnectionError(
                "No active IMAP or REST connection", account_id=account_id, folder=folder
            )
        return session

    async def _session(
        self,
        cache: SessionCache,
        account_id: str,
        folder: str | None = None,
        message_id: str | None = None,
    ) -> MailSession:
        session = await cache.get(account_id)
        if session is None:
            raise MailConnectionError(
                f"{cache.kind.upper()} not connected",
                account_id=account_id, folder=folder, message_id=message_id,
            )
        return session

    async def list_folders(self, account_id: str) -> list[str]:
        reader = await self._reader(account_id)
        try:
            return await reader.list_folders()
        except MailError as e:
            raise e.with_context(account_id=account_id)

    async def fetch_messages(self, account_id: str, folder: str, limit: int = 50) -> list[Message]:
        """Most recent messages of a folder, newest first."""
        reader = await self._reader(account_id, folder)
        try:
            return await reader.fetch_messages(folder, limit)
        except MailError as e:
            raise e.with_context(account_id=account_id, folder=folder)

    async def fetch_message_body(self, account_id: str, folder: str, message_id: str) -> str:
        reader = await self._reader(account_id, folder)
        try:
            return await reader.fetch_message_body(folder, message_id)
        except MailError as e:
            raise e.with_context(account_id, folder, message_id)

    async def send_message(self, account_id: str, message: Message) -> None:
        session = await self._session(self._smtp, account_id, message_id=message.id)
        try:
            await session.send(message)
        except MailError as e:
            raise e.with_context(account_id=account_id, message_id=message.id)

    async def set_flags(
        self, account_id: str, folder: str, message_id: str, flags: set[MessageFlag]
    ) -> None:
        session = await self._session(self._imap, account_id, folder, message_id)
        try:
            await session.set_flags(folder, message_id, flags)
        except MailError as e:
            raise e.with_context(account_id, folder, message_id)

    async def mark_as_read(self, account_id: str, folder: str, message_id: str) -> None:
        await self.set_flags(account_id, folder, message_id, {Flag.SEEN})

    async def move_message(
        self, account_id: str, from_folder: str, to_folder: str, message_id: str
    ) -> None:
        session = await self._session(self._imap, account_id, from_folder, message_id)
        try:
            await session.move_message(from_folder, to_folder, message_id)
        except MailError as e:
            raise e.with_context(account_id, from_folder, message_id)

    async def delete_message(self, account_id: str, folder: str, message_id: str) -> None:
        """Delete permanently (mark deleted, then expunge)."""
        session = await self._session(self._imap, account_id, folder, message_id)
        try:
            await session.delete_message(folder, message_id)
        except MailError as e:
            raise e.with_context(account_id, folder, message_id)
