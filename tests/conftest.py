"""Shared fixtures for mailsync tests."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from mailsync.config.settings import MailSyncSettings
from mailsync.core.models import (
    Address,
    ChangeVersion,
    EnvelopeData,
    Flag,
    FlagSet,
    Fragment,
    MessageDate,
    MessageMetadata,
    RawContent,
    UniqueId,
)

RAW_MESSAGE = (
    b"Date: Wed, 4 Jul 2001 12:00:00 GMT\r\n"
    b"Subject: =?utf-8?q?Caf=C3=A9?=\r\n"
    b"Message-ID: <cafe@example.com>\r\n"
    b"From: Alice <alice@example.com>\r\n"
    b"\r\n"
    b"Hello.\r\n"
)


def full_fragments(uid: int) -> list[Fragment]:
    """The five countable fragments of a FULL profile FETCH."""
    return [
        UniqueId(uid),
        ChangeVersion(1000 + uid),
        MessageDate("17-Jul-1996 02:44:25 -0700"),
        FlagSet((b"\\Seen",)),
        RawContent(b"raw %d" % uid),
    ]


def envelope_fragments(
    uid: int,
    *,
    message_id: bytes | None = None,
    date: bytes | None = b"Wed, 4 Jul 2001 12:00:00 GMT",
    subject: bytes | None = b"Hello",
) -> list[Fragment]:
    """The three countable fragments of an ENVELOPE profile FETCH."""
    return [
        UniqueId(uid),
        ChangeVersion(1000 + uid),
        EnvelopeData(
            date=date,
            subject=subject,
            message_id=message_id,
            sender=(Address(b"Alice", b"alice", b"example.com"),),
        ),
    ]


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def tmp_settings(tmp_path: Path) -> MailSyncSettings:
    """Settings pointing to temporary directories."""
    return MailSyncSettings(
        imap_server="imap.example.com",
        account="user@example.com",
        password="secret",
        credentials_path=tmp_path / "creds" / "client_secret.json",
        token_path=tmp_path / "creds" / "token.json",
        database_path=tmp_path / "data" / "test.db",
        batch_size=50,
    )


@pytest.fixture
def sample_record() -> MessageMetadata:
    """A completed record as produced by the correlator."""
    return MessageMetadata(
        seq=1,
        uid=42,
        change_version=7,
        flags=frozenset({Flag.SEEN, Flag.ANSWERED}),
        message_id="<hello@example.com>",
        date=datetime(2001, 7, 4, 12, 0, 0, tzinfo=UTC),
        subject="Hello",
        sender="Alice <alice@example.com>",
        raw=b"raw message",
    )
