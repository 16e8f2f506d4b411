"""Pipeline orchestrator: IMAP session → correlator → store / matcher."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator

from mailsync.config.settings import MailSyncSettings
from mailsync.core.auth import authenticate
from mailsync.core.correlator import FetchResponseCorrelator
from mailsync.core.dates import DateTimeNormalizer
from mailsync.core.exceptions import MalformedResponseError, PersistenceError, TransportError
from mailsync.core.flags import FlagVocabulary
from mailsync.core.imap_client import MailboxClient
from mailsync.core.matcher import CrossStoreMatcher
from mailsync.core.models import (
    FetchProfile,
    Fragment,
    MessageMetadata,
    ReconcileReport,
    SyncProgress,
)
from mailsync.storage.store import MetadataStore

logger = logging.getLogger(__name__)


class MailSync:
    """Orchestrates retrieval sessions against one mailbox.

    sync:      UID FETCH everything above the highest stored uid → upsert by uid
    refresh:   FETCH flags/MODSEQ/envelope for stored uids → upsert by uid
    reconcile: FETCH envelopes → match against stored rows lacking a uid
    """

    def __init__(
        self,
        settings: MailSyncSettings | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> None:
        self._settings = settings or MailSyncSettings()
        self._on_progress = on_progress
        self._progress = SyncProgress()
        self._normalizer = DateTimeNormalizer()
        self._vocabulary = FlagVocabulary()

        # Components initialized lazily
        self._client: MailboxClient | None = None
        self._store: MetadataStore | None = None

    @property
    def on_progress(self) -> Callable[[SyncProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[SyncProgress], None] | None) -> None:
        self._on_progress = callback

    @property
    def vocabulary(self) -> FlagVocabulary:
        return self._vocabulary

    def _ensure_store(self) -> MetadataStore:
        if self._store is None:
            self._settings.ensure_directories()
            self._store = MetadataStore(self._settings.database_path, self._normalizer)
            self._store.connect()
        return self._store

    def _ensure_initialized(self) -> tuple[MailboxClient, MetadataStore]:
        """Connect and log in if not already done."""
        store = self._ensure_store()

        if self._client is None:
            client = MailboxClient(
                self._settings.imap_server,
                self._settings.imap_port,
                timeout_seconds=self._settings.timeout_seconds,
                max_retries=self._settings.max_retries,
                initial_backoff_seconds=self._settings.initial_backoff_seconds,
                max_backoff_seconds=self._settings.max_backoff_seconds,
            )
            client.connect()
            if self._settings.auth_method == "oauth":
                creds = authenticate(self._settings.credentials_path, self._settings.token_path)
                client.oauth2_login(self._settings.account, creds.token)
            else:
                client.login(self._settings.account, self._settings.password)
            self._client = client

        return self._client, store

    def run_sync(self, *, batch_size: int | None = None) -> SyncProgress:
        """Fetch full messages with a uid above the highest stored one."""
        _, store = self._ensure_initialized()
        counts = store.count_messages()
        if counts["unkeyed"]:
            logger.warning(
                "%d stored rows have no uid yet; run reconcile first to avoid duplicates",
                counts["unkeyed"],
            )
        start_uid = store.max_uid() + 1
        logger.info("Starting from UID %d", start_uid)

        def store_record(record: MessageMetadata) -> None:
            self._store_record(store, record)

        return self._run_session(
            "sync", FetchProfile.FULL, start_uid, store_record, batch_size=batch_size
        )

    def run_refresh(self, *, batch_size: int | None = None) -> SyncProgress:
        """Refresh flags and change versions of messages already stored."""
        _, store = self._ensure_initialized()
        known = store.keyed_uids()

        def update_record(record: MessageMetadata) -> None:
            if record.uid in known:
                self._store_record(store, record)

        return self._run_session(
            "refresh", FetchProfile.METADATA, 1, update_record, batch_size=batch_size
        )

    def run_reconcile(self, *, batch_size: int | None = None) -> ReconcileReport:
        """Backfill uid/change_version on stored rows that lack them."""
        _, store = self._ensure_initialized()
        known = store.keyed_uids()
        records: list[MessageMetadata] = []

        def collect(record: MessageMetadata) -> None:
            if record.uid not in known:
                records.append(record)

        self._run_session("reconcile", FetchProfile.ENVELOPE, 1, collect, batch_size=batch_size)

        matcher = CrossStoreMatcher(store.get_unkeyed_rows(), writer=store)
        report = matcher.reconcile(records)
        self._progress.messages_matched = len(report.matched)
        self._progress.messages_unmatched = len(report.unmatched)
        self._progress.messages_ambiguous = len(report.ambiguous)
        self._progress.messages_failed += report.write_failures
        self._progress.current_stage = "complete"
        self._notify()
        return report

    def _run_session(
        self,
        stage: str,
        profile: FetchProfile,
        start_uid: int,
        consume: Callable[[MessageMetadata], None],
        *,
        batch_size: int | None = None,
    ) -> SyncProgress:
        """Run one retrieval: EXAMINE, UID SEARCH, batched FETCH, correlate."""
        client, store = self._ensure_initialized()
        mailbox = self._settings.mailbox
        effective_batch_size = batch_size or self._settings.batch_size

        run_id = store.start_run(mailbox, stage)
        self._progress = SyncProgress(current_stage=stage)
        self._notify()
        correlator = FetchResponseCorrelator(
            profile, vocabulary=self._vocabulary, normalizer=self._normalizer
        )

        try:
            exists = client.examine(mailbox)
            uids = client.search_uids_from(start_uid)
            logger.info("%s: %d messages in %s, %d to fetch", stage, exists, mailbox, len(uids))

            events = self._count_responses(
                client.iter_uid_batches(uids, profile, effective_batch_size)
            )
            for record in correlator.feed(events, on_malformed=self._on_malformed):
                self._progress.records_completed += 1
                consume(record)
                self._notify()

            self._progress.current_stage = "complete"
            self._notify()
        except TransportError as e:
            logger.error("%s aborted: %s", stage, e)
            self._progress.current_stage = f"error: {e}"
            self._notify()
            self._drop_client()
            raise
        finally:
            correlator.discard_pending()
            if correlator.anomalies:
                logger.warning("%d fragments arrived after their message completed",
                               correlator.anomalies)
            store.complete_run(
                run_id,
                records_completed=self._progress.records_completed,
                messages_stored=self._progress.messages_stored,
                messages_failed=self._progress.messages_failed,
                messages_malformed=self._progress.messages_malformed,
            )

        return self._progress

    def _count_responses(
        self, events: Iterable[tuple[int, list[Fragment]]]
    ) -> Iterator[tuple[int, list[Fragment]]]:
        for event in events:
            self._progress.responses_received += 1
            yield event

    def _on_malformed(self, error: MalformedResponseError) -> None:
        self._progress.messages_malformed += 1
        self._notify()

    def _store_record(self, store: MetadataStore, record: MessageMetadata) -> None:
        try:
            store.upsert_message(record)
        except PersistenceError as e:
            logger.error("%s", e)
            self._progress.messages_failed += 1
            return
        logger.debug("Stored message from %s (UID %d)", record.date, record.uid)
        self._progress.messages_stored += 1

    def get_status(self) -> dict[str, int]:
        """Count stored rows with and without a uid."""
        return self._ensure_store().count_messages()

    def recent_messages(self, limit: int = 100) -> list[MessageMetadata]:
        """Newest stored messages, for display."""
        return self._ensure_store().recent_messages(limit)

    def close(self) -> None:
        """Clean up resources."""
        self._drop_client()
        if self._store:
            self._store.close()
            self._store = None

    def _drop_client(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def _notify(self) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(self._progress)
