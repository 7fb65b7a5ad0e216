"""Canonical message model shared by every adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import formataddr, parseaddr
from enum import Enum


class Flag(Enum):
    SEEN = "Seen"
    ANSWERED = "Answered"
    FLAGGED = "Flagged"
    DELETED = "Deleted"
    DRAFT = "Draft"
    RECENT = "Recent"


@dataclass(frozen=True)
class CustomFlag:
    """A backend keyword with no standard meaning."""

    name: str


# Flags are stored in a set, so both kinds must be hashable
MessageFlag = Flag | CustomFlag


@dataclass(frozen=True)
class Address:
    email: str
    name: str | None = None

    @classmethod
    def parse(cls, text: str) -> "Address":
        """Parse a single RFC 5322 address such as ``"Jane <jane@x.org>"``."""
        name, addr = parseaddr(text)
        return cls(email=addr or text.strip(), name=name or None)

    def display_name(self) -> str:
        return self.name or self.email

    def formatted(self) -> str:
        return formataddr((self.name or "", self.email))


@dataclass(frozen=True)
class MessagePart:
    content_type: str
    content: str
    encoding: str | None = None


@dataclass(frozen=True)
class MessageBody:
    """Message body: plain text, HTML, or a list of typed parts.

    Exactly one of ``text``/``html``/``parts`` is meaningful, selected by
    ``kind`` ("plain", "html" or "multipart").
    """

    kind: str
    text: str = ""
    parts: tuple[MessagePart, ...] = ()

    @classmethod
    def plain(cls, content: str) -> "MessageBody":
        return cls(kind="plain", text=content)

    @classmethod
    def html(cls, content: str) -> "MessageBody":
        return cls(kind="html", text=content)

    @classmethod
    def multipart(cls, parts: list[MessagePart] | tuple[MessagePart, ...]) -> "MessageBody":
        return cls(kind="multipart", parts=tuple(parts))

    @property
    def is_html(self) -> bool:
        return self.kind == "html"

    def display_content(self) -> str:
        """Text suitable for a terminal view."""
        if self.kind == "plain":
            return self.text
        if self.kind == "html":
            content = self.text
            for tag, replacement in (
                ("<br>", "\n"),
                ("<br/>", "\n"),
                ("<p>", ""),
                ("</p>", "\n"),
                ("<div>", ""),
                ("</div>", "\n"),
            ):
                content = content.replace(tag, replacement)
            return content
        return "\n".join(
            part.content for part in self.parts if part.content_type.startswith("text/")
        )

    def outgoing_text(self) -> str:
        """Body text used when sending: text/plain preferred over other text parts."""
        if self.kind in ("plain", "html"):
            return self.text
        for part in self.parts:
            if part.content_type.startswith("text/plain"):
                return part.content
        for part in self.parts:
            if part.content_type.startswith("text/"):
                return part.content
        return ""

    def size(self) -> int:
        if self.kind == "multipart":
            return sum(len(part.content) for part in self.parts)
        return len(self.text)


@dataclass
class Attachment:
    filename: str
    content_type: str
    size: int
    data: bytes = field(default=b"", repr=False)

    @classmethod
    def from_bytes(cls, filename: str, content_type: str, data: bytes) -> "Attachment":
        return cls(filename=filename, content_type=content_type, size=len(data), data=data)

    def is_image(self) -> bool:
        return self.content_type.startswith("image/")

    def is_text(self) -> bool:
        return self.content_type.startswith("text/")

    def format_size(self) -> str:
        if self.size < 1024:
            return f"{self.size} B"
        if self.size < 1024 * 1024:
            return f"{self.size / 1024:.1f} KB"
        return f"{self.size / (1024 * 1024):.1f} MB"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """Protocol-independent email.

    ``id`` is the backend-native identifier (IMAP UID or REST message id) and
    is only comparable within one account and folder. Local mutations such as
    ``mark_as_read`` are an optimistic echo; the adapter owns the backend state.
    """

    id: str
    account_id: str
    folder: str
    subject: str = ""
    from_: list[Address] = field(default_factory=list)
    to: list[Address] = field(default_factory=list)
    cc: list[Address] = field(default_factory=list)
    bcc: list[Address] = field(default_factory=list)
    body: MessageBody = field(default_factory=lambda: MessageBody.plain(""))
    date: datetime = field(default_factory=_now)
    flags: set[MessageFlag] = field(default_factory=set)
    attachments: list[Attachment] = field(default_factory=list)

    def __post_init__(self):
        self.flags = set(self.flags)

    def is_unread(self) -> bool:
        return Flag.SEEN not in self.flags

    def is_flagged(self) -> bool:
        return Flag.FLAGGED in self.flags

    def has_attachments(self) -> bool:
        return bool(self.attachments)

    def mark_as_read(self) -> None:
        self.flags.add(Flag.SEEN)

    def mark_as_unread(self) -> None:
        self.flags.discard(Flag.SEEN)

    def toggle_flagged(self) -> None:
        if Flag.FLAGGED in self.flags:
            self.flags.discard(Flag.FLAGGED)
        else:
            self.flags.add(Flag.FLAGGED)

    def sender_display(self) -> str:
        if not self.from_:
            return "Unknown Sender"
        return self.from_[0].display_name()

    def recipients_display(self) -> str:
        if not self.to:
            return "No Recipients"
        return ", ".join(addr.display_name() for addr in self.to)

    def format_date(self) -> str:
        return self.date.strftime("%Y-%m-%d %H:%M")

    def add_attachment(self, attachment: Attachment) -> None:
        self.attachments.append(attachment)

    def remove_attachment(self, filename: str) -> None:
        self.attachments = [a for a in self.attachments if a.filename != filename]

    def size(self) -> int:
        return self.body.size() + sum(a.size for a in self.attachments)
