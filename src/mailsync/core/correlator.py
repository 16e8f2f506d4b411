"""Reassembly of multi-part FETCH responses into complete message records."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import assert_never

from mailsync.core.dates import DateTimeNormalizer, parse_internal_date
from mailsync.core.exceptions import MalformedResponseError
from mailsync.core.flags import FlagVocabulary
from mailsync.core.models import (
    ChangeVersion,
    EnvelopeData,
    FetchProfile,
    FlagSet,
    Fragment,
    MessageDate,
    MessageMetadata,
    RawContent,
    UniqueId,
)
from mailsync.core.text import decode_text, format_address

logger = logging.getLogger(__name__)


@dataclass
class PartialRecord:
    """Fragments buffered for one sequence number until it completes."""

    count: int = 0
    fragments: list[Fragment] = field(default_factory=list)


class FetchResponseCorrelator:
    """Assembles MessageMetadata from interleaved FETCH fragments.

    One instance per session. Fragments for different sequence numbers may
    arrive in any order; a record is emitted the moment its countable
    fragment count reaches the profile total, and its buffer is dropped at
    that point. Output order follows completion, not sequence numbers.

    Completed sequence numbers are kept for the life of the session so that
    fragments arriving after completion are detected instead of starting a
    new buffer.
    """

    def __init__(
        self,
        profile: FetchProfile = FetchProfile.FULL,
        *,
        vocabulary: FlagVocabulary | None = None,
        normalizer: DateTimeNormalizer | None = None,
    ) -> None:
        self._profile = profile
        self._countable = profile.kinds
        self._vocabulary = vocabulary or FlagVocabulary()
        self._normalizer = normalizer or DateTimeNormalizer()
        self._pending: dict[int, PartialRecord] = {}
        self._completed: set[int] = set()
        self.anomalies = 0

    @property
    def profile(self) -> FetchProfile:
        return self._profile

    @property
    def vocabulary(self) -> FlagVocabulary:
        return self._vocabulary

    @property
    def pending_count(self) -> int:
        """Number of sequence numbers with buffered, incomplete state."""
        return len(self._pending)

    def push(self, seq: int, fragment: Fragment) -> MessageMetadata | None:
        """Add one fragment; return the record if it completed.

        Raises:
            MalformedResponseError: The record completed without a UID or
                MODSEQ. Its buffer is evicted all the same.
        """
        return self.push_many(seq, (fragment,))

    def push_many(self, seq: int, fragments: Iterable[Fragment]) -> MessageMetadata | None:
        """Add the fragments of one FETCH response for ``seq``."""
        fragments = list(fragments)
        if seq in self._completed:
            self.anomalies += 1
            logger.warning(
                "Ignoring %d fragment(s) for message %d received after completion",
                len(fragments), seq,
            )
            return None

        partial = self._pending.setdefault(seq, PartialRecord())
        for fragment in fragments:
            if fragment.kind in self._countable:
                partial.count += 1
            partial.fragments.append(fragment)

        if partial.count < self._profile.total:
            return None

        del self._pending[seq]
        self._completed.add(seq)
        return self._assemble(seq, partial.fragments)

    def feed(
        self,
        events: Iterable[tuple[int, Iterable[Fragment]]],
        on_malformed: Callable[[MalformedResponseError], None] | None = None,
    ) -> Iterator[MessageMetadata]:
        """Yield completed records from a stream of ``(seq, fragments)`` events.

        Records come out as soon as they complete, so the consumer's pace
        bounds how far the stream is read ahead. Malformed records are logged,
        passed to ``on_malformed``, and skipped; the stream continues.
        """
        for seq, fragments in events:
            try:
                record = self.push_many(seq, fragments)
            except MalformedResponseError as e:
                logger.error("%s", e)
                if on_malformed:
                    on_malformed(e)
                continue
            if record is not None:
                yield record

    def discard_pending(self) -> int:
        """Drop every incomplete buffer. Returns how many were dropped."""
        dropped = len(self._pending)
        if dropped:
            logger.info("Discarding %d incomplete message(s)", dropped)
        self._pending.clear()
        return dropped

    def _assemble(self, seq: int, fragments: list[Fragment]) -> MessageMetadata:
        uid: int | None = None
        change_version: int | None = None
        date: datetime | None = None
        envelope: EnvelopeData | None = None
        tokens: list[str | bytes] = []
        raw: bytes | None = None

        for fragment in fragments:
            if isinstance(fragment, UniqueId):
                uid = fragment.uid
            elif isinstance(fragment, ChangeVersion):
                change_version = fragment.value
            elif isinstance(fragment, MessageDate):
                date = self._parse_date(seq, fragment.value)
            elif isinstance(fragment, FlagSet):
                tokens.extend(fragment.tokens)
            elif isinstance(fragment, EnvelopeData):
                envelope = fragment
            elif isinstance(fragment, RawContent):
                raw = fragment.data
            else:
                assert_never(fragment)

        missing = []
        if uid is None:
            missing.append("UID")
        if change_version is None:
            missing.append("MODSEQ")
        if uid is None or change_version is None:
            raise MalformedResponseError(seq, missing)

        message_id = subject = sender = None
        if envelope is not None:
            message_id = decode_text(envelope.message_id)
            subject = decode_text(envelope.subject)
            if envelope.sender:
                sender = format_address(envelope.sender[0])
            if date is None and envelope.date is not None:
                date = self._parse_date(seq, decode_text(envelope.date) or "")

        return MessageMetadata(
            seq=seq,
            uid=uid,
            change_version=change_version,
            flags=self._vocabulary.classify_all(tokens),
            message_id=message_id,
            date=date,
            subject=subject,
            sender=sender,
            raw=raw,
        )

    def _parse_date(self, seq: int, value: str | datetime) -> datetime | None:
        if isinstance(value, datetime):
            return value
        parsed = parse_internal_date(value) or self._normalizer.normalize(value)
        if parsed is None:
            logger.warning("Failed to parse date %r for message %d", value, seq)
        return parsed
