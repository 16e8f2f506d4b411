"""IMAP session wrapper: connection, login, EXAMINE, and fragment streaming."""

from __future__ import annotations

import imaplib
import logging
import random
import time
from collections.abc import Callable, Iterator
from typing import Any

from imapclient.exceptions import ProtocolError
from imapclient.response_parser import parse_response

from mailsync.core.auth import xoauth2_string
from mailsync.core.exceptions import AuthenticationError, TransportError
from mailsync.core.models import (
    Address,
    ChangeVersion,
    EnvelopeData,
    FetchProfile,
    FlagSet,
    Fragment,
    MessageDate,
    RawContent,
    UniqueId,
)

logger = logging.getLogger(__name__)

# Errors after which the connection is unusable
CONNECTION_ERRORS = (imaplib.IMAP4.abort, OSError)


def _quote(mailbox: str) -> str:
    escaped = mailbox.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _address(tokens: Any) -> Address:
    name, _route, mailbox, host = tokens
    return Address(name=name, mailbox=mailbox, host=host)


def envelope_from_tokens(tokens: tuple[Any, ...]) -> EnvelopeData:
    """Convert a parsed ENVELOPE list into EnvelopeData.

    The envelope is ``(date subject from sender reply-to to cc bcc
    in-reply-to message-id)``; the sender list falls back to from.
    """
    date, subject, from_, sender = tokens[0], tokens[1], tokens[2], tokens[3]
    message_id = tokens[9] if len(tokens) > 9 else None
    addresses = sender or from_ or ()
    return EnvelopeData(
        date=date,
        subject=subject,
        message_id=message_id,
        sender=tuple(_address(a) for a in addresses),
    )


def fragments_from_attributes(attributes: tuple[Any, ...]) -> list[Fragment]:
    """Convert the attribute/value pairs of one FETCH response into fragments."""
    fragments: list[Fragment] = []
    for i in range(0, len(attributes) - 1, 2):
        name = attributes[i]
        value = attributes[i + 1]
        key = name.upper() if isinstance(name, bytes) else str(name).encode().upper()

        if key == b"UID":
            fragments.append(UniqueId(int(value)))
        elif key == b"MODSEQ":
            # MODSEQ arrives parenthesised: (12345)
            fragments.append(ChangeVersion(int(value[0] if isinstance(value, tuple) else value)))
        elif key == b"INTERNALDATE":
            fragments.append(MessageDate(value.decode("ascii", errors="replace")))
        elif key == b"FLAGS":
            fragments.append(FlagSet(tuple(value or ())))
        elif key == b"ENVELOPE":
            fragments.append(envelope_from_tokens(value))
        elif key == b"RFC822" and value is not None:
            fragments.append(RawContent(value))
        else:
            logger.debug("Ignoring FETCH attribute %r", name)
    return fragments


class MailboxClient:
    """Thin wrapper around imaplib for one read-only retrieval session."""

    def __init__(
        self,
        host: str,
        port: int = 993,
        *,
        timeout_seconds: float = 60.0,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        imap_factory: Callable[..., imaplib.IMAP4] = imaplib.IMAP4_SSL,
    ) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._imap_factory = imap_factory
        self._conn: imaplib.IMAP4 | None = None

    @property
    def conn(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._conn

    def __enter__(self) -> MailboxClient:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def connect(self) -> None:
        """Open the connection, retrying with exponential backoff.

        Raises:
            TransportError: When retries are exhausted.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                self._conn = self._imap_factory(self._host, self._port, timeout=self._timeout)
                logger.info("Connected to %s:%d", self._host, self._port)
                return
            except CONNECTION_ERRORS as e:
                if attempt >= self._max_retries:
                    raise TransportError(
                        f"Failed to connect to {self._host} after {self._max_retries} retries: {e}"
                    ) from e
                sleep_time = random.uniform(0, min(backoff, self._max_backoff))
                logger.warning(
                    "Connection to %s failed (attempt %d/%d), sleeping %.2fs: %s",
                    self._host, attempt + 1, self._max_retries, sleep_time, e,
                )
                time.sleep(sleep_time)
                backoff = min(backoff * 2, self._max_backoff)

    def login(self, account: str, password: str) -> None:
        try:
            self.conn.login(account, password)
        except imaplib.IMAP4.error as e:
            raise AuthenticationError(f"Login failed for {account}: {e}") from e

    def oauth2_login(self, account: str, access_token: str) -> None:
        auth_string = xoauth2_string(account, access_token)
        try:
            self.conn.authenticate("XOAUTH2", lambda _: auth_string)
        except imaplib.IMAP4.error as e:
            raise AuthenticationError(f"XOAUTH2 login failed for {account}: {e}") from e

    def examine(self, mailbox: str) -> int:
        """Select ``mailbox`` read-only. Returns its EXISTS count."""
        typ, data = self._call(self.conn.select, _quote(mailbox), readonly=True)
        if typ != "OK":
            raise TransportError(f"EXAMINE {mailbox} failed: {data}")
        return int(data[0]) if data and data[0] else 0

    def search_uids_from(self, start_uid: int) -> list[int]:
        """UIDs greater than or equal to ``start_uid``, ascending."""
        typ, data = self._call(self.conn.uid, "SEARCH", None, f"UID {start_uid}:*")
        if typ != "OK":
            raise TransportError(f"UID SEARCH failed: {data}")
        uids = [int(token) for token in (data[0] or b"").split()]
        # "n:*" always includes the highest UID, even when it is below n
        return sorted(uid for uid in uids if uid >= start_uid)

    def iter_fetch(
        self, message_set: str, profile: FetchProfile, *, uid: bool = True
    ) -> Iterator[tuple[int, list[Fragment]]]:
        """Issue one FETCH and yield ``(seq, fragments)`` per response.

        Raises:
            TransportError: The command failed or the connection dropped.
        """
        items = profile.fetch_items()
        if uid:
            typ, data = self._call(self.conn.uid, "FETCH", message_set, items)
        else:
            typ, data = self._call(self.conn.fetch, message_set, items)
        if typ != "OK":
            raise TransportError(f"FETCH {message_set} failed: {data}")
        if not data or data == [None]:
            return

        try:
            parsed = parse_response(data)
        except (ProtocolError, ValueError) as e:
            raise TransportError(f"Unparsable FETCH response: {e}") from e

        for i in range(0, len(parsed) - 1, 2):
            seq, attributes = parsed[i], parsed[i + 1]
            if not isinstance(seq, int) or not isinstance(attributes, tuple):
                logger.warning("Skipping unexpected FETCH data: %r %r", seq, attributes)
                continue
            yield seq, fragments_from_attributes(attributes)

    def iter_uid_batches(
        self, uids: list[int], profile: FetchProfile, batch_size: int
    ) -> Iterator[tuple[int, list[Fragment]]]:
        """FETCH ``uids`` in chunks of ``batch_size``."""
        for start in range(0, len(uids), batch_size):
            chunk = uids[start : start + batch_size]
            logger.debug("Fetching %d UIDs from %d", len(chunk), chunk[0])
            yield from self.iter_fetch(",".join(str(u) for u in chunk), profile)

    def close(self) -> None:
        """Close the mailbox and log out, ignoring a dead connection."""
        if self._conn is None:
            return
        try:
            if self._conn.state == "SELECTED":
                self._conn.close()
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug("Error while closing IMAP session: %s", e)
        finally:
            self._conn = None

    def _call(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return method(*args, **kwargs)
        except CONNECTION_ERRORS as e:
            raise TransportError(f"IMAP connection lost: {e}") from e
        except imaplib.IMAP4.error as e:
            raise TransportError(f"IMAP command failed: {e}") from e
