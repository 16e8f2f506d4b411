"""mailsync - Retrieve IMAP message metadata and reconcile it with stored messages."""

from mailsync.core.correlator import FetchResponseCorrelator
from mailsync.core.dates import DateTimeNormalizer, normalize
from mailsync.core.flags import FlagVocabulary
from mailsync.core.matcher import CrossStoreMatcher
from mailsync.core.models import (
    FetchProfile,
    Flag,
    MatchOutcome,
    MatchResult,
    MessageMetadata,
    PersistedRow,
    SyncProgress,
)
from mailsync.pipeline.syncer import MailSync

__all__ = [
    "CrossStoreMatcher",
    "DateTimeNormalizer",
    "FetchProfile",
    "FetchResponseCorrelator",
    "Flag",
    "FlagVocabulary",
    "MailSync",
    "MatchOutcome",
    "MatchResult",
    "MessageMetadata",
    "PersistedRow",
    "SyncProgress",
    "normalize",
]
