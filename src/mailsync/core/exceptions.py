"""Custom exceptions for mailsync."""


class MailSyncError(Exception):
    """Base exception for all mailsync errors."""


class AuthenticationError(MailSyncError):
    """Failed to authenticate with the IMAP server."""


class TransportError(MailSyncError):
    """The IMAP session failed; the current retrieval is aborted."""


class MalformedResponseError(MailSyncError):
    """A completed FETCH record lacks a mandatory attribute."""

    def __init__(self, seq: int, missing: list[str]) -> None:
        self.seq = seq
        self.missing = missing
        super().__init__(f"Malformed response for message {seq}: missing {', '.join(missing)}")


class PersistenceError(MailSyncError):
    """Failed to write a record to the metadata store."""
