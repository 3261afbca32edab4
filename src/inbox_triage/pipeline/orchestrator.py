"""Pipeline orchestrator: connect → backfill → watch → (reconnect), plus the drain cycle.

Per record: unclassified index write → watermark advance → enqueue → classify
→ classified index update → notify.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict
from enum import Enum
from functools import partial
from typing import Any

from inbox_triage.classify.batcher import ClassificationBatcher
from inbox_triage.classify.oracle import OpenAIOracle
from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.auth import TokenProvider
from inbox_triage.core.exceptions import InboxTriageError, IndexingError
from inbox_triage.core.header_fetcher import HeaderFetcher
from inbox_triage.core.mail_session import MailSession, connect_session
from inbox_triage.core.models import (
    ClassificationMethod,
    ClassifiedRecord,
    DispatchReport,
    MailRecord,
    PipelineProgress,
)
from inbox_triage.notify.channels import channels_from_settings
from inbox_triage.notify.dispatcher import NotificationDispatcher
from inbox_triage.pipeline.feed import RecordFeed
from inbox_triage.pipeline.scheduler import DrainScheduler
from inbox_triage.storage.index import MessageIndex
from inbox_triage.storage.sync_state import SyncState

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    WATCHING = "watching"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class TriagePipeline:
    """Owns the mailbox session lifecycle and wires records through the pipeline.

    The watcher (``run_forever``) runs on the caller's thread; classification
    drains run on the scheduler's single worker thread. The watermark and
    queue in ``state`` are the only data shared between them.
    """

    def __init__(
        self,
        settings: InboxTriageSettings | None = None,
        *,
        index: MessageIndex | None = None,
        batcher: ClassificationBatcher | None = None,
        dispatcher: NotificationDispatcher | None = None,
        fetcher: HeaderFetcher | None = None,
        state: SyncState | None = None,
        feed: RecordFeed | None = None,
        session_factory: Callable[[], MailSession] | None = None,
        on_progress: Callable[[PipelineProgress], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or InboxTriageSettings()
        self._index = index
        self._batcher = batcher
        self._dispatcher = dispatcher
        self._fetcher = fetcher or HeaderFetcher(
            default_since_days=self._settings.backfill_days,
            chunk_size=self._settings.fetch_chunk_size,
        )
        self._sync = state or SyncState()
        self._feed = feed or RecordFeed()
        self._session_factory = session_factory
        self._on_progress = on_progress
        self._sleep = sleep

        self._state = PipelineState.DISCONNECTED
        self._progress = PipelineProgress()
        self._progress_lock = threading.Lock()
        self._stop = threading.Event()
        self._scheduler = DrainScheduler(
            self.process_next_batch,
            retry_delay=self._settings.drain_retry_delay_seconds,
        )

    @property
    def on_progress(self) -> Callable[[PipelineProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[PipelineProgress], None] | None) -> None:
        self._on_progress = callback

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def sync_state(self) -> SyncState:
        return self._sync

    @property
    def feed(self) -> RecordFeed:
        return self._feed

    @property
    def scheduler(self) -> DrainScheduler:
        return self._scheduler

    def _ensure_initialized(
        self,
    ) -> tuple[
        MessageIndex, ClassificationBatcher, NotificationDispatcher, Callable[[], MailSession]
    ]:
        """Initialize components not injected by the caller."""
        if self._index is None:
            self._settings.ensure_directories()
            self._index = MessageIndex(self._settings.database_path)
            self._index.connect()

        if self._batcher is None:
            oracle = OpenAIOracle.from_settings(self._settings)
            self._batcher = ClassificationBatcher.from_settings(self._settings, oracle)

        if self._dispatcher is None:
            self._dispatcher = NotificationDispatcher(
                channels_from_settings(self._settings),
                delay_seconds=self._settings.notification_delay_seconds,
            )

        if self._session_factory is None:
            tokens = None
            if not self._settings.imap_password:
                tokens = TokenProvider(
                    self._settings.credentials_path, self._settings.token_path
                )
            self._session_factory = partial(connect_session, self._settings, tokens)

        return self._index, self._batcher, self._dispatcher, self._session_factory

    # -- session lifecycle ----------------------------------------------------

    def connect(self) -> MailSession:
        """Open a session and select the target folder read-only."""
        _, _, _, session_factory = self._ensure_initialized()
        self._set_state(PipelineState.CONNECTING)
        session = session_factory()
        try:
            session.open_folder(self._settings.folder, readonly=True)
        except Exception:
            session.close()
            raise
        return session

    def backfill(self, session: MailSession) -> int:
        """Initial fetch for a new session.

        The first session of the process selects by date window. After a
        reconnect the watermark is already set, so only newer UIDs are fetched.
        """
        self._set_state(PipelineState.BACKFILLING)
        watermark = self._sync.watermark.last_seen_uid
        if watermark > 0:
            logger.info("Catching up above UID %d after reconnect", watermark)
            records = self._fetcher.fetch(session, uid_floor=watermark)
        else:
            records = self._fetcher.fetch(session, since_days=self._settings.backfill_days)
        ingested = self.ingest(records)
        logger.info("Backfill complete: %d fetched, %d ingested", len(records), ingested)
        return ingested

    def on_new_mail(self, session: MailSession, count: int) -> int:
        """Handle a new-mail event: fetch everything above the watermark."""
        logger.info("%d new message(s) reported", count)
        return self._fetch_above_watermark(session)

    def _fetch_above_watermark(self, session: MailSession) -> int:
        watermark = self._sync.watermark.last_seen_uid
        if watermark == 0:
            # Nothing ingested yet; stay inside the backfill window instead of UID 1:*.
            records = self._fetcher.fetch(session, since_days=self._settings.backfill_days)
        else:
            logger.debug("Fetching above UID %d", watermark)
            records = self._fetcher.fetch(session, uid_floor=watermark)
        return self.ingest(records)

    def watch(self, session: MailSession) -> None:
        """Wait for new mail until stopped or the session drops.

        Mail that arrived after the backfill SEARCH is announced before IDLE
        starts, so one incremental fetch runs first.

        Raises:
            SessionError: When the session ends or IDLE fails.
        """
        self._set_state(PipelineState.WATCHING)
        self._fetch_above_watermark(session)
        while not self._stop.is_set():
            count = session.wait_for_mail(self._settings.idle_renewal_seconds)
            if count > 0:
                self.on_new_mail(session, count)

    def run_forever(self) -> None:
        """Connect, backfill and watch; reconnect after any connection fault."""
        self._stop.clear()
        while not self._stop.is_set():
            session: MailSession | None = None
            try:
                session = self.connect()
                self.backfill(session)
                self.watch(session)
            except (InboxTriageError, OSError) as e:
                logger.error("Mailbox session failed: %s", e)
            finally:
                if session is not None:
                    session.close()

            if self._stop.is_set():
                break
            self._set_state(PipelineState.RECONNECTING)
            logger.info("Reconnecting in %.1fs", self._settings.reconnect_delay_seconds)
            self._stop.wait(self._settings.reconnect_delay_seconds)

        self._set_state(PipelineState.STOPPED)

    def stop(self, timeout: float | None = None) -> None:
        """Ask the watcher to exit and shut down the drain worker."""
        self._stop.set()
        self._scheduler.shutdown(timeout)

    def close(self) -> None:
        """Stop and release resources."""
        self.stop()
        if self._dispatcher:
            self._dispatcher.close()
        if self._index:
            self._index.close()

    # -- ingestion and draining -----------------------------------------------

    def ingest(self, records: Sequence[MailRecord]) -> int:
        """Index, watermark and enqueue fetched records; returns how many were queued.

        Records are handled in ascending UID order. A record at or below the
        watermark was already processed and is skipped. A failed index write
        is logged and the record is neither watermarked nor queued.
        """
        index, _, _, _ = self._ensure_initialized()
        watermark = self._sync.watermark
        queued = 0

        self._bump(records_fetched=len(records))
        for record in sorted(records, key=lambda r: r.uid):
            if record.uid <= watermark.last_seen_uid:
                logger.debug("Skipping UID %d at or below watermark", record.uid)
                continue
            try:
                index.upsert(record)
            except IndexingError as e:
                logger.error("Failed to index UID %d: %s", record.uid, e)
                self._bump(index_failures=1)
                continue

            watermark.advance(record.uid)
            if self._sync.queue.enqueue(record):
                queued += 1
            self._bump(records_indexed=1)
            self._feed.publish(record.to_document())

        with self._progress_lock:
            self._progress.last_seen_uid = watermark.last_seen_uid
        self._notify()

        if queued:
            self._scheduler.trigger()
        return queued

    def process_next_batch(self) -> bool:
        """One drain step: classify a batch from the queue head and write the results.

        Returns:
            True if a batch was processed, False if the queue was empty.

        Raises:
            Exception: Whatever failed; the batch is put back at the queue head first.
        """
        index, batcher, dispatcher, _ = self._ensure_initialized()
        batch = self._sync.queue.drain(batcher.batch_size)
        if not batch:
            return False

        try:
            classified = batcher.classify_batch(batch)
            result = index.bulk_upsert(classified, partial=True)
        except Exception:
            logger.warning("Batch of %d failed; requeued at front", len(batch))
            self._sync.queue.requeue_front(batch)
            raise

        indexed = set(result.succeeded)
        for item in classified:
            if item.uid in indexed:
                self._feed.publish(item.to_document())
        self._record_classified(classified)
        self._record_dispatch(dispatcher.dispatch(classified))

        if len(self._sync.queue) and self._settings.inter_batch_delay_seconds > 0:
            self._sleep(self._settings.inter_batch_delay_seconds)
        return True

    def wait_for_drain(self, timeout: float | None = None) -> bool:
        """Block until the queue drain worker is idle."""
        return self._scheduler.wait_until_idle(timeout)

    def run_once(self, since_days: int | None = None) -> PipelineProgress:
        """Fetch a date window, classify it, index it in bulk and notify, then disconnect."""
        index, batcher, dispatcher, _ = self._ensure_initialized()
        days = self._settings.backfill_days if since_days is None else since_days

        session = self.connect()
        try:
            self._set_state(PipelineState.BACKFILLING)
            records = self._fetcher.fetch(session, since_days=days)
        finally:
            session.close()
            self._set_state(PipelineState.DISCONNECTED)

        self._bump(records_fetched=len(records))
        if not records:
            logger.info("No messages in the last %d days", days)
            return self.progress

        classified = batcher.classify_all(sorted(records, key=lambda r: r.uid))
        result = index.bulk_upsert(classified, partial=False)
        indexed = set(result.succeeded)
        for item in classified:
            if item.uid in indexed:
                self._sync.watermark.advance(item.uid)
                self._feed.publish(item.to_document())

        self._bump(records_indexed=len(indexed), index_failures=len(result.failed))
        with self._progress_lock:
            self._progress.last_seen_uid = self._sync.watermark.last_seen_uid
        self._record_classified(classified)
        self._record_dispatch(dispatcher.dispatch(classified))
        return self.progress

    # -- progress ---------------------------------------------------------------

    @property
    def progress(self) -> PipelineProgress:
        with self._progress_lock:
            return PipelineProgress(**asdict(self._progress))

    def status(self) -> dict[str, Any]:
        """Progress counters plus queue depth and drain state."""
        return {
            **asdict(self.progress),
            "queue_length": len(self._sync.queue),
            "drain_state": self._scheduler.state.value,
        }

    def _set_state(self, state: PipelineState) -> None:
        self._state = state
        with self._progress_lock:
            self._progress.state = state.value
        logger.info("Pipeline state: %s", state.value)
        self._notify()

    def _bump(self, **increments: int) -> None:
        with self._progress_lock:
            for name, amount in increments.items():
                setattr(self._progress, name, getattr(self._progress, name) + amount)

    def _record_classified(self, classified: Sequence[ClassifiedRecord]) -> None:
        oracle = sum(1 for c in classified if c.method is ClassificationMethod.ORACLE)
        self._bump(
            records_classified=len(classified),
            oracle_classified=oracle,
            rule_classified=len(classified) - oracle,
        )
        self._notify()

    def _record_dispatch(self, reports: Sequence[DispatchReport]) -> None:
        sent = sum(1 for r in reports for res in r.results if res.success)
        failed = sum(1 for r in reports for res in r.results if not res.success)
        if sent or failed:
            self._bump(notifications_sent=sent, notifications_failed=failed)
            self._notify()

    def _notify(self) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(self.progress)
