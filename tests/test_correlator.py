"""Tests for FetchResponseCorrelator."""

from __future__ import annotations

import logging
import random
from datetime import UTC, datetime

import pytest

from conftest import envelope_fragments, full_fragments
from mailsync.core.correlator import FetchResponseCorrelator
from mailsync.core.exceptions import MalformedResponseError
from mailsync.core.flags import FlagVocabulary
from mailsync.core.models import (
    ChangeVersion,
    EnvelopeData,
    FetchProfile,
    Flag,
    FlagSet,
    MessageDate,
    RawContent,
    UniqueId,
)


class TestCompletion:
    """Records are emitted exactly when every countable fragment arrived."""

    def test_single_record(self) -> None:
        correlator = FetchResponseCorrelator()
        fragments = full_fragments(3)
        for fragment in fragments[:-1]:
            assert correlator.push(3, fragment) is None

        record = correlator.push(3, fragments[-1])
        assert record is not None
        assert record.seq == 3
        assert record.uid == 3
        assert record.change_version == 1003
        assert record.flags == frozenset({Flag.SEEN})
        assert record.date == datetime(1996, 7, 17, 9, 44, 25, tzinfo=UTC)
        assert record.raw == b"raw 3"
        assert correlator.pending_count == 0

    def test_incomplete_record_never_emitted(self) -> None:
        correlator = FetchResponseCorrelator()
        results = [correlator.push(1, f) for f in full_fragments(1)[:4]]
        assert results == [None] * 4
        assert correlator.pending_count == 1

        assert correlator.discard_pending() == 1
        assert correlator.pending_count == 0

    def test_push_many_completes_in_one_response(self) -> None:
        correlator = FetchResponseCorrelator()
        record = correlator.push_many(9, full_fragments(9))
        assert record is not None
        assert record.uid == 9

    @pytest.mark.parametrize("seed", range(20))
    def test_interleaved_fragments(self, seed: int) -> None:
        pairs = [(seq, fragment) for seq in range(1, 7) for fragment in full_fragments(seq)]
        random.Random(seed).shuffle(pairs)

        correlator = FetchResponseCorrelator()
        records = []
        for seq, fragment in pairs:
            record = correlator.push(seq, fragment)
            if record is not None:
                records.append(record)

        assert sorted(r.seq for r in records) == [1, 2, 3, 4, 5, 6]
        for record in records:
            assert record.uid == record.seq
            assert record.change_version == 1000 + record.seq
            assert record.raw == b"raw %d" % record.seq
        assert correlator.pending_count == 0

    def test_output_follows_completion_order(self) -> None:
        correlator = FetchResponseCorrelator()
        first, second = full_fragments(1), full_fragments(2)
        emitted = []
        for fragment in first[:4]:
            correlator.push(1, fragment)
        for fragment in second:
            record = correlator.push(2, fragment)
            if record:
                emitted.append(record.seq)
        emitted.append(correlator.push(1, first[4]).seq)
        assert emitted == [2, 1]

    def test_non_countable_fragment_does_not_complete(self) -> None:
        correlator = FetchResponseCorrelator(FetchProfile.FULL)
        fragments = full_fragments(4)
        for fragment in fragments[:4]:
            correlator.push(4, fragment)
        extra = EnvelopeData(message_id=b"<x@example.com>")
        assert correlator.push(4, extra) is None

        record = correlator.push(4, fragments[4])
        assert record.message_id == "<x@example.com>"


class TestAnomalies:
    def test_fragment_after_completion_ignored(self, caplog: pytest.LogCaptureFixture) -> None:
        correlator = FetchResponseCorrelator()
        correlator.push_many(5, full_fragments(5))

        with caplog.at_level(logging.WARNING):
            assert correlator.push(5, UniqueId(5)) is None
        assert correlator.anomalies == 1
        assert correlator.pending_count == 0
        assert "after completion" in caplog.text

    def test_missing_uid_raises_and_evicts(self) -> None:
        correlator = FetchResponseCorrelator()
        fragments = [
            ChangeVersion(1),
            MessageDate("17-Jul-1996 02:44:25 -0700"),
            FlagSet(()),
            RawContent(b"x"),
            ChangeVersion(2),
        ]
        with pytest.raises(MalformedResponseError) as exc_info:
            correlator.push_many(8, fragments)

        assert exc_info.value.seq == 8
        assert exc_info.value.missing == ["UID"]
        assert correlator.pending_count == 0
        assert correlator.push(8, UniqueId(8)) is None
        assert correlator.anomalies == 1

    def test_missing_uid_and_change_version(self) -> None:
        correlator = FetchResponseCorrelator(FetchProfile.ENVELOPE)
        with pytest.raises(MalformedResponseError, match="missing UID, MODSEQ"):
            correlator.push_many(2, [EnvelopeData(), EnvelopeData(), EnvelopeData()])


class TestFeed:
    def test_yields_completed_and_skips_malformed(self) -> None:
        malformed = []
        events = [
            (1, full_fragments(1)[:2]),
            (2, [ChangeVersion(1), ChangeVersion(2), ChangeVersion(3), ChangeVersion(4), ChangeVersion(5)]),
            (1, full_fragments(1)[2:]),
            (3, full_fragments(3)),
        ]
        correlator = FetchResponseCorrelator()

        records = list(correlator.feed(events, on_malformed=malformed.append))

        assert [r.uid for r in records] == [1, 3]
        assert len(malformed) == 1
        assert malformed[0].seq == 2

    def test_feed_without_callback(self) -> None:
        events = [(2, [EnvelopeData()] * 3), (4, envelope_fragments(4))]
        correlator = FetchResponseCorrelator(FetchProfile.ENVELOPE)
        assert [r.uid for r in correlator.feed(events)] == [4]

    def test_feed_is_lazy(self) -> None:
        consumed = []

        def events():
            for seq in (1, 2):
                consumed.append(seq)
                yield seq, full_fragments(seq)

        iterator = FetchResponseCorrelator().feed(events())
        assert next(iterator).uid == 1
        assert consumed == [1]


class TestAssembly:
    def test_flags_filtered(self) -> None:
        vocabulary = FlagVocabulary()
        correlator = FetchResponseCorrelator(FetchProfile.METADATA, vocabulary=vocabulary)
        record = correlator.push_many(
            1,
            [
                UniqueId(1),
                ChangeVersion(2),
                FlagSet((b"\\Seen", b"Junk", b"\\Draft", b"\\Flagged")),
                EnvelopeData(),
            ],
        )
        assert record.flags == frozenset({Flag.SEEN, Flag.FLAGGED})
        assert vocabulary.unknown_tokens["\\Draft"] == 1

    def test_envelope_fields_decoded(self) -> None:
        correlator = FetchResponseCorrelator(FetchProfile.ENVELOPE)
        record = correlator.push_many(
            7,
            envelope_fragments(
                7, message_id=b"<a@example.com>", subject=b"=?utf-8?q?Caf=C3=A9?="
            ),
        )
        assert record.message_id == "<a@example.com>"
        assert record.subject == "Café"
        assert record.sender == "Alice <alice@example.com>"
        assert record.sender_name == "Alice"
        assert record.date == datetime(2001, 7, 4, 12, tzinfo=UTC)

    def test_invalid_utf8_replaced(self) -> None:
        correlator = FetchResponseCorrelator(FetchProfile.ENVELOPE)
        record = correlator.push_many(1, envelope_fragments(1, subject=b"bad \xff byte"))
        assert record.subject == "bad � byte"

    def test_missing_envelope_fields(self) -> None:
        correlator = FetchResponseCorrelator(FetchProfile.ENVELOPE)
        record = correlator.push_many(1, [UniqueId(1), ChangeVersion(1), EnvelopeData()])
        assert record.message_id is None
        assert record.subject is None
        assert record.sender is None
        assert record.date is None
        assert record.sender_name == "(no sender)"

    def test_unparsable_date_kept_as_none(self, caplog: pytest.LogCaptureFixture) -> None:
        correlator = FetchResponseCorrelator()
        fragments = full_fragments(1)
        fragments[2] = MessageDate("bogus")
        with caplog.at_level(logging.WARNING):
            record = correlator.push_many(1, fragments)
        assert record.date is None
        assert "bogus" in caplog.text

    def test_parsed_date_passes_through(self) -> None:
        when = datetime(2020, 1, 1, tzinfo=UTC)
        fragments = full_fragments(1)
        fragments[2] = MessageDate(when)
        record = FetchResponseCorrelator().push_many(1, fragments)
        assert record.date == when

    def test_internal_date_preferred_over_envelope(self) -> None:
        correlator = FetchResponseCorrelator()
        fragments = full_fragments(1) + [EnvelopeData(date=b"Wed, 4 Jul 2001 12:00:00 GMT")]
        record = correlator.push_many(1, fragments)
        assert record.date == datetime(1996, 7, 17, 9, 44, 25, tzinfo=UTC)

    def test_no_raw_content_with_metadata_profile(self) -> None:
        correlator = FetchResponseCorrelator(FetchProfile.METADATA)
        record = correlator.push_many(
            1, [UniqueId(1), ChangeVersion(1), FlagSet(()), EnvelopeData()]
        )
        assert record.raw is None
        assert record.unread
