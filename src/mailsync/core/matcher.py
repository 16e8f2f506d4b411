"""Matching fetched records against stored rows that lack a uid."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from email.utils import parseaddr
from typing import Any, Protocol

from mailsync.core.models import (
    MatchOutcome,
    MatchResult,
    MessageMetadata,
    PersistedRow,
    ReconcileReport,
)

logger = logging.getLogger(__name__)

# Message-ids with this suffix belong to ephemeral chat messages and are reused
CHAT_ID_SUFFIX = "chat@gmail.com>"

# Longest subject some stores keep; longer subjects arrive truncated here
MAX_SUBJECT_LENGTH = 998


class UidWriter(Protocol):
    def assign_uid(self, row_id: int, uid: int, change_version: int) -> bool: ...


def usable_message_id(message_id: str | None) -> bool:
    if not message_id:
        return False
    return not message_id.endswith(CHAT_ID_SUFFIX)


def subjects_match(a: str | None, b: str | None) -> bool:
    """Compare subjects, treating a truncated subject as equal to its original."""
    if a is None or b is None:
        return a is b
    if a == b:
        return True
    shorter, longer = (a, b) if len(a) < len(b) else (b, a)
    return len(shorter) == MAX_SUBJECT_LENGTH and longer.startswith(shorter)


def mailbox_address(sender: str | None) -> str | None:
    """Extract ``local@host`` from ``Name <local@host>`` or a bare address."""
    if not sender:
        return None
    _, address = parseaddr(sender)
    return address.lower() or None


class CrossStoreMatcher:
    """Decides which unkeyed row, if any, a fetched record corresponds to.

    Rules, first decisive one wins:
    1. exact message-id (chat ids never match);
    2. same normalized date, then same subject, then same sender address;
    3. one candidate matches, none is unmatched, several are ambiguous.
    An ambiguous record is never resolved by picking one of the candidates.
    """

    def __init__(self, rows: Iterable[PersistedRow], writer: UidWriter | None = None) -> None:
        self._rows: dict[int, PersistedRow] = {}
        self._by_message_id: dict[str, list[int]] = defaultdict(list)
        self._by_date: dict[datetime, list[int]] = defaultdict(list)
        self._writer = writer

        for row in rows:
            if row.uid is not None:
                continue
            self._rows[row.id] = row
            if row.message_id:
                self._by_message_id[row.message_id].append(row.id)
            if row.date is not None:
                self._by_date[row.date].append(row.id)

    @property
    def remaining(self) -> list[PersistedRow]:
        """Rows not matched so far."""
        return list(self._rows.values())

    def match(self, record: MessageMetadata) -> MatchResult:
        """Decide without writing anything."""
        if usable_message_id(record.message_id):
            by_id = self._lookup(self._by_message_id, record.message_id)
            if len(by_id) == 1:
                return MatchResult(
                    MatchOutcome.MATCHED, record, row=by_id[0], candidates=tuple(by_id),
                    rule="message-id",
                )
            if by_id:
                return self._decide(record, self._composite(record, by_id), "message-id+composite")

        if record.date is None:
            return self._decide(record, [], "composite")
        rows = self._lookup(self._by_date, record.date)
        if usable_message_id(record.message_id):
            # A row with its own, different message-id is another message
            rows = [row for row in rows if not usable_message_id(row.message_id)]
        return self._decide(record, self._composite(record, rows), "composite")

    def _lookup(self, index: dict[Any, list[int]], key: Any) -> list[PersistedRow]:
        return [self._rows[row_id] for row_id in index.get(key, ()) if row_id in self._rows]

    def apply(self, record: MessageMetadata) -> MatchResult:
        """Match a single record and backfill the row when it is unambiguous."""
        result = self.match(record)
        if result.outcome is MatchOutcome.MATCHED:
            self._write(result)
        else:
            self._log(result)
        return result

    def reconcile(self, records: Iterable[MessageMetadata]) -> ReconcileReport:
        """Match a batch of records.

        A row chosen by more than one record is ambiguous for all of them.
        """
        report = ReconcileReport()
        decided = [self.match(record) for record in records]

        claims: dict[int, list[MatchResult]] = defaultdict(list)
        for result in decided:
            if result.row is not None:
                claims[result.row.id].append(result)

        for result in decided:
            if result.row is not None and len(claims[result.row.id]) > 1:
                result = MatchResult(
                    MatchOutcome.AMBIGUOUS, result.record,
                    candidates=(result.row,), rule="claimed-by-several",
                )

            if result.outcome is MatchOutcome.MATCHED:
                if self._write(result):
                    report.matched.append(result)
                else:
                    report.write_failures += 1
            elif result.outcome is MatchOutcome.AMBIGUOUS:
                self._log(result)
                report.ambiguous.append(result)
            else:
                self._log(result)
                report.unmatched.append(result)

        logger.info(
            "Reconciled %d records: %d matched, %d unmatched, %d ambiguous",
            len(decided), len(report.matched), len(report.unmatched), len(report.ambiguous),
        )
        return report

    @staticmethod
    def _composite(record: MessageMetadata, rows: list[PersistedRow]) -> list[PersistedRow]:
        if record.date is None:
            return []
        candidates = [row for row in rows if row.date is not None and row.date == record.date]
        if record.subject is not None:
            candidates = [row for row in candidates if subjects_match(record.subject, row.subject)]
        address = mailbox_address(record.sender)
        if address is not None:
            candidates = [row for row in candidates if mailbox_address(row.sender) == address]
        return candidates

    @staticmethod
    def _decide(record: MessageMetadata, candidates: list[PersistedRow], rule: str) -> MatchResult:
        if not candidates:
            return MatchResult(MatchOutcome.UNMATCHED, record, rule=rule)
        if len(candidates) == 1:
            return MatchResult(
                MatchOutcome.MATCHED, record, row=candidates[0], candidates=tuple(candidates),
                rule=rule,
            )
        return MatchResult(MatchOutcome.AMBIGUOUS, record, candidates=tuple(candidates), rule=rule)

    def _write(self, result: MatchResult) -> bool:
        row = result.row
        if row is None or row.id not in self._rows:
            return False
        record = result.record
        if self._writer is not None and not self._writer.assign_uid(
            row.id, record.uid, record.change_version
        ):
            logger.error("Failed to assign uid %d to row %d", record.uid, row.id)
            return False
        del self._rows[row.id]
        logger.debug("Matched uid %d to row %d by %s", record.uid, row.id, result.rule)
        return True

    @staticmethod
    def _log(result: MatchResult) -> None:
        record = result.record
        if result.outcome is MatchOutcome.AMBIGUOUS:
            logger.warning(
                "Ambiguous match for uid %d (%s): %d candidates, rows %s",
                record.uid, result.rule, len(result.candidates),
                [row.id for row in result.candidates],
            )
        else:
            logger.info(
                "No match for uid %d (date %s, message-id %s)",
                record.uid, record.date, record.message_id,
            )
