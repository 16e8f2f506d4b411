"""Tests for MailSyncSettings."""

from __future__ import annotations

from pathlib import Path

import pytest

from mailsync.config.settings import MailSyncSettings


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.chdir(tmp_path)
        settings = MailSyncSettings()
        assert settings.imap_server == "imap.gmail.com"
        assert settings.imap_port == 993
        assert settings.mailbox == "[Gmail]/All Mail"
        assert settings.auth_method == "password"

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("MAILSYNC_BATCH_SIZE", "25")
        monkeypatch.setenv("MAILSYNC_MAILBOX", "INBOX")
        settings = MailSyncSettings()
        assert settings.batch_size == 25
        assert settings.mailbox == "INBOX"

    def test_env_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("MAILSYNC_ACCOUNT=me@example.com\n")
        assert MailSyncSettings().account == "me@example.com"

    def test_ensure_directories(self, tmp_settings: MailSyncSettings) -> None:
        tmp_settings.ensure_directories()
        assert tmp_settings.database_path.parent.is_dir()
        assert tmp_settings.credentials_path.parent.is_dir()
