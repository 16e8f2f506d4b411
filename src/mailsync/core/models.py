"""Frozen dataclasses for the mailsync domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parseaddr
from enum import Enum


class Flag(str, Enum):
    """System flags tracked for each message."""

    ANSWERED = "\\Answered"
    FLAGGED = "\\Flagged"
    SEEN = "\\Seen"


class AttributeKind(str, Enum):
    """FETCH attribute kinds understood by the correlator."""

    UID = "UID"
    MODSEQ = "MODSEQ"
    DATE = "INTERNALDATE"
    FLAGS = "FLAGS"
    ENVELOPE = "ENVELOPE"
    RFC822 = "RFC822"


class FetchProfile(Enum):
    """Attribute sets requested together; each kind counts toward completion."""

    FULL = (
        AttributeKind.UID,
        AttributeKind.MODSEQ,
        AttributeKind.DATE,
        AttributeKind.FLAGS,
        AttributeKind.RFC822,
    )
    METADATA = (
        AttributeKind.UID,
        AttributeKind.MODSEQ,
        AttributeKind.FLAGS,
        AttributeKind.ENVELOPE,
    )
    ENVELOPE = (
        AttributeKind.UID,
        AttributeKind.MODSEQ,
        AttributeKind.ENVELOPE,
    )

    @property
    def kinds(self) -> frozenset[AttributeKind]:
        return frozenset(self.value)

    @property
    def total(self) -> int:
        """Number of countable fragments that complete a record."""
        return len(self.value)

    def fetch_items(self) -> str:
        """Render the profile as a parenthesised FETCH item list."""
        return "(" + " ".join(kind.value for kind in self.value) + ")"


# ---------------------------------------------------------------------------
# Fragments: one typed value received for a sequence number
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Address:
    """One envelope address structure, fields as sent by the server."""

    name: bytes | None = None
    mailbox: bytes | None = None
    host: bytes | None = None


@dataclass(frozen=True)
class UniqueId:
    uid: int

    kind = AttributeKind.UID


@dataclass(frozen=True)
class ChangeVersion:
    value: int

    kind = AttributeKind.MODSEQ


@dataclass(frozen=True)
class MessageDate:
    """Internal or header date, either raw text or already parsed."""

    value: str | datetime

    kind = AttributeKind.DATE


@dataclass(frozen=True)
class FlagSet:
    tokens: tuple[str | bytes, ...] = ()

    kind = AttributeKind.FLAGS


@dataclass(frozen=True)
class EnvelopeData:
    """Advisory envelope fields; decoded permissively on completion."""

    date: bytes | None = None
    subject: bytes | None = None
    message_id: bytes | None = None
    sender: tuple[Address, ...] = ()

    kind = AttributeKind.ENVELOPE


@dataclass(frozen=True)
class RawContent:
    data: bytes

    kind = AttributeKind.RFC822


Fragment = UniqueId | ChangeVersion | MessageDate | FlagSet | EnvelopeData | RawContent


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageMetadata:
    """A completed record assembled from all fragments of one message.

    ``seq`` is the session-local position and is never used as identity;
    ``uid`` is stable within one mailbox generation.
    """

    seq: int
    uid: int
    change_version: int
    flags: frozenset[Flag] = field(default_factory=frozenset)
    message_id: str | None = None
    date: datetime | None = None
    subject: str | None = None
    sender: str | None = None
    raw: bytes | None = None

    @property
    def unread(self) -> bool:
        return Flag.SEEN not in self.flags

    @property
    def sender_name(self) -> str:
        """Display name of the sender, falling back to the full sender text."""
        if not self.sender or not self.sender.strip():
            return "(no sender)"
        name, _ = parseaddr(self.sender)
        return name.strip() or self.sender.strip()


@dataclass(frozen=True)
class PersistedRow:
    """A stored message row, possibly created without uid/change_version."""

    id: int
    message_id: str | None = None
    date: datetime | None = None
    subject: str | None = None
    sender: str | None = None
    uid: int | None = None
    change_version: int | None = None


class MatchOutcome(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchResult:
    """Decision for one record against the unkeyed rows."""

    outcome: MatchOutcome
    record: MessageMetadata
    row: PersistedRow | None = None
    candidates: tuple[PersistedRow, ...] = ()
    rule: str = ""


@dataclass
class ReconcileReport:
    """Mutable tally of a reconciliation pass."""

    matched: list[MatchResult] = field(default_factory=list)
    unmatched: list[MatchResult] = field(default_factory=list)
    ambiguous: list[MatchResult] = field(default_factory=list)
    write_failures: int = 0


@dataclass
class SyncProgress:
    """Mutable progress tracker for pipeline status reporting."""

    responses_received: int = 0
    records_completed: int = 0
    messages_stored: int = 0
    messages_failed: int = 0
    messages_malformed: int = 0
    messages_matched: int = 0
    messages_unmatched: int = 0
    messages_ambiguous: int = 0
    current_stage: str = "idle"
