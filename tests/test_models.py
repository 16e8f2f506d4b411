"""Unit tests for mailsync.core.models dataclasses."""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from mailsync.core.models import (
    AttributeKind,
    FetchProfile,
    Flag,
    MessageMetadata,
    RawContent,
    SyncProgress,
    UniqueId,
)

# ---------------------------------------------------------------------------
# FetchProfile
# ---------------------------------------------------------------------------


class TestFetchProfile:
    """Each profile knows its countable kinds and FETCH item list."""

    @pytest.mark.parametrize(
        ("profile", "total"),
        [(FetchProfile.FULL, 5), (FetchProfile.METADATA, 4), (FetchProfile.ENVELOPE, 3)],
    )
    def test_total(self, profile: FetchProfile, total: int) -> None:
        assert profile.total == total

    def test_fetch_items(self) -> None:
        assert FetchProfile.FULL.fetch_items() == "(UID MODSEQ INTERNALDATE FLAGS RFC822)"

    def test_kinds(self) -> None:
        assert AttributeKind.ENVELOPE in FetchProfile.METADATA.kinds
        assert AttributeKind.RFC822 not in FetchProfile.METADATA.kinds


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------


class TestFragments:
    def test_kind(self) -> None:
        assert UniqueId(1).kind is AttributeKind.UID
        assert RawContent(b"").kind is AttributeKind.RFC822

    def test_frozen(self) -> None:
        fragment = UniqueId(1)
        with pytest.raises(FrozenInstanceError):
            fragment.uid = 2  # type: ignore[misc]


# ---------------------------------------------------------------------------
# MessageMetadata
# ---------------------------------------------------------------------------


class TestMessageMetadata:
    def test_unread(self) -> None:
        assert MessageMetadata(seq=1, uid=1, change_version=1).unread
        assert not MessageMetadata(
            seq=1, uid=1, change_version=1, flags=frozenset({Flag.SEEN})
        ).unread

    @pytest.mark.parametrize(
        ("sender", "expected"),
        [
            ("Alice <alice@example.com>", "Alice"),
            ('"Doe, John" <john@x.com>', "Doe, John"),
            ("<alice@example.com>", "<alice@example.com>"),
            ("alice@example.com", "alice@example.com"),
            ("   ", "(no sender)"),
            (None, "(no sender)"),
        ],
    )
    def test_sender_name(self, sender: str | None, expected: str) -> None:
        record = MessageMetadata(seq=1, uid=1, change_version=1, sender=sender)
        assert record.sender_name == expected

    def test_equality(self) -> None:
        a = MessageMetadata(seq=1, uid=2, change_version=3)
        b = MessageMetadata(seq=1, uid=2, change_version=3)
        assert a == b


class TestSyncProgress:
    def test_defaults(self) -> None:
        progress = SyncProgress()
        assert progress.current_stage == "idle"
        assert progress.messages_stored == 0

    def test_mutable(self) -> None:
        progress = SyncProgress()
        progress.messages_stored += 1
        assert progress.messages_stored == 1
