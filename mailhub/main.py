"""Command implementations for the mailhub CLI.

Each command builds a ConnectionManager from the configuration and uses it
as an async context manager, so every session it opened is disconnected
before the command returns. Tokens issued or refreshed along the way are
written to the token store beside the configuration file
(see ``config.token_store_path``), where the next run picks them up.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Callable

from .account import OAuthTokens
from .config import Config, save_tokens, token_store_path
from .manager import ConnectionManager

logger = logging.getLogger("mailhub")


def build_manager(config: Config) -> ConnectionManager:
    return ConnectionManager(accounts=config.accounts, timeouts=config.timeouts)


def persist_tokens(
    config: Config, manager: ConnectionManager, snapshot: dict[str, OAuthTokens | None]
) -> bool:
    """Write tokens to the token store if any were issued or refreshed."""
    accounts = manager.list_accounts()
    if config.path is None or all(a.tokens == snapshot.get(a.id) for a in accounts):
        return False
    path = token_store_path(config.path)
    save_tokens(path, accounts)
    logger.info(f"Saved OAuth2 tokens to {path}")
    return True


@contextlib.asynccontextmanager
async def open_manager(config: Config) -> AsyncIterator[ConnectionManager]:
    """Manager whose sessions are torn down and whose new tokens are saved on exit."""
    snapshot = {account.id: account.tokens for account in config.accounts}
    async with build_manager(config) as manager:
        try:
            yield manager
        finally:
            persist_tokens(config, manager, snapshot)


def list_accounts_cmd(config: Config) -> None:
    """Print the configured accounts."""
    manager = build_manager(config)

    print(f"{'ID':<16} {'Email':<36} {'IMAP':<30} {'Auth':<8} {'Enabled':<7}")
    print("-" * 100)
    for account in manager.list_accounts():
        auth = account.imap.auth_method.value
        if account.uses_oauth() and account.tokens is None:
            auth += "*"
        enabled = "yes" if account.enabled else "no"
        print(
            f"{account.id:<16} {account.email:<36} "
            f"{account.imap.connection_url():<30} {auth:<8} {enabled:<7}"
        )
    print(f"\nTotal: {len(manager.registry)} accounts")


async def list_folders_cmd(config: Config, account_id: str) -> None:
    """List folders (or labels) of one account.

    Args:
        config: Application configuration
        account_id: Account to connect
    """
    async with open_manager(config) as manager:
        session = await manager.connect_imap(account_id)
        logger.debug(f"Listing folders over {session.kind}")
        for folder in sorted(await manager.list_folders(account_id)):
            print(folder)


async def list_messages_cmd(
    config: Config,
    account_id: str,
    folder: str | None = None,
    limit: int = 50,
) -> None:
    """List the most recent messages in a folder.

    Args:
        config: Application configuration
        account_id: Account to connect
        folder: Folder name, defaults to the account's default folder
        limit: Maximum messages to list
    """
    async with open_manager(config) as manager:
        account = manager.registry.require(account_id)
        folder = folder or account.default_folder
        await manager.connect_imap(account_id)

        messages = await manager.fetch_messages(account_id, folder, limit)

        print(f"{'ID':<18} {'Date':<17} {' ':<1} {'From':<28} {'Subject':<40}")
        print("-" * 108)
        for message in messages:
            unread = "*" if message.is_unread() else " "
            sender = message.sender_display()[:26]
            subject = message.subject[:38]
            print(f"{message.id:<18} {message.format_date():<17} {unread:<1} {sender:<28} {subject:<40}")

        print(f"\nTotal: {len(messages)} messages in {folder}")


async def read_message_cmd(config: Config, account_id: str, folder: str, message_id: str) -> None:
    """Print one message's body."""
    async with open_manager(config) as manager:
        await manager.connect_imap(account_id)
        body = await manager.fetch_message_body(account_id, folder, message_id)
        print(body)


async def authorize_cmd(
    config: Config,
    account_id: str,
    read_input: Callable[[str], str] = input,
) -> None:
    """Run the OAuth2 authorization-code flow for one account.

    Prints the authorization URL, then reads the code and the returned state
    from the user. The issued tokens are saved to the token store when the
    configuration was loaded from a file.
    """
    async with open_manager(config) as manager:
        url = await manager.begin_authorization(account_id)
        print("Open this URL in a browser and authorize access:\n")
        print(url)
        print()

        code = read_input("Authorization code: ").strip()
        state = read_input("State: ").strip()

        account = await manager.complete_authorization(account_id, code, state)
        tokens = account.tokens

        print(f"\nAuthorized {account.email}")
        print(f"  Access token:  {len(tokens.access_token)} chars")
        print(f"  Refresh token: {'yes' if tokens.refresh_token else 'no'}")
        if tokens.expires_in is not None:
            print(f"  Expires in:    {tokens.expires_in} seconds")

    if config.path is not None:
        print(f"  Saved to:      {token_store_path(config.path)}")
