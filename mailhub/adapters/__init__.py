"""Protocol adapters.

Each adapter owns one live backend session for one account and speaks the
canonical message model:
- ImapAdapter: folders, fetch, flags, move and delete over IMAP
- SmtpAdapter: sending over SMTP
- RestAdapter: folders and fetch over the provider's REST mailbox API

The connection manager decides which adapter serves an account.
"""

from .base import FolderReader, MailSession, MessageMutator, MessageSender, bounded
from .imap import ImapAdapter
from .rest import RestAdapter, supports_account
from .smtp import SmtpAdapter

__all__ = [
    "FolderReader",
    "ImapAdapter",
    "MailSession",
    "MessageMutator",
    "MessageSender",
    "RestAdapter",
    "SmtpAdapter",
    "bounded",
    "supports_account",
]
