"""CLI entry point for mailhub."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import load_config
from .errors import AuthorizationRequiredError, MailError
from .main import (
    authorize_cmd,
    list_accounts_cmd,
    list_folders_cmd,
    list_messages_cmd,
    read_message_cmd,
)

logger = logging.getLogger("mailhub")


def add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add common arguments to a parser."""
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=Path("config.toml"),
        help="Path to configuration file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailhub",
        description="Multi-account IMAP/SMTP/REST mail backend",
    )
    add_common_args(parser)
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("accounts", help="List configured accounts")

    folders_parser = subparsers.add_parser("folders", help="List folders of an account")
    folders_parser.add_argument("account", help="Account id")

    messages_parser = subparsers.add_parser("messages", help="List recent messages in a folder")
    messages_parser.add_argument("account", help="Account id")
    messages_parser.add_argument("folder", nargs="?", help="Folder name (default: account's default folder)")
    messages_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum messages to list (default: 50)",
    )

    read_parser = subparsers.add_parser("read", help="Read a message body")
    read_parser.add_argument("account", help="Account id")
    read_parser.add_argument("folder", help="Folder name")
    read_parser.add_argument("id", help="Message id (IMAP UID or REST message id)")

    authorize_parser = subparsers.add_parser("authorize", help="Run the OAuth2 authorization flow")
    authorize_parser.add_argument("account", help="Account id")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Show help if no command specified
    if not args.command:
        parser.print_help()
        sys.exit(0)

    if not args.config.exists():
        logger.error(f"Configuration file not found: {args.config}")
        sys.exit(1)

    try:
        config = load_config(args.config)

        if args.command == "accounts":
            list_accounts_cmd(config)
        elif args.command == "folders":
            asyncio.run(list_folders_cmd(config, args.account))
        elif args.command == "messages":
            asyncio.run(list_messages_cmd(config, args.account, args.folder, args.limit))
        elif args.command == "read":
            asyncio.run(read_message_cmd(config, args.account, args.folder, args.id))
        elif args.command == "authorize":
            asyncio.run(authorize_cmd(config, args.account))
    except AuthorizationRequiredError as e:
        logger.error(f"{e}")
        print(f"Authorize the account first: mailhub authorize {e.account_id}")
        sys.exit(1)
    except MailError as e:
        logger.error(f"{e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
