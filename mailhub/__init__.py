"""Multi-account mail backend: IMAP, SMTP and REST mailbox sessions behind one API."""

__version__ = "0.1.0"
