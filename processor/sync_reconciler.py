"""Sync reconciler driving fetch, normalize, extract and upsert."""
import logging
import time
import uuid
from typing import Optional

from processor.errors import (
    CalendarSyncError,
    FetchError,
    MalformedCalendarError,
    PersistenceError,
)
from processor.event_processor import EventProcessor
from processor.models import (
    CALENDAR_UPDATED,
    EVENT_CREATED,
    EVENT_UPDATED,
    RUN_FAILED,
    SYNC_FAILED,
    SYNC_SYNCED,
    SyncReport,
    SyncRun,
    utc_now_iso,
)
from scraper.ical_parser import parse_calendar
from storage.base import EventStore, HistoryStore

logger = logging.getLogger(__name__)


class SyncReconciler:
    """Reconciles an iCal feed against the event store.

    Each event is committed independently; one failing event never aborts
    the run. Only fetch and whole-document parse failures are fatal.
    """

    def __init__(
        self,
        feed_client,
        event_store: EventStore,
        history_store: HistoryStore,
        processor: Optional[EventProcessor] = None,
        parse_errors_as_failures: bool = True
    ):
        """
        Initialize the reconciler.

        Args:
            feed_client: ICalFeedClient used to download the calendar
            event_store: EventStore receiving upserts
            history_store: HistoryStore receiving the SyncRun record
            processor: EventProcessor (default: a new instance)
            parse_errors_as_failures: Count skipped VEVENTs in ``failed``
        """
        self.feed_client = feed_client
        self.event_store = event_store
        self.history_store = history_store
        self.processor = processor or EventProcessor()
        self.parse_errors_as_failures = parse_errors_as_failures

    def sync(self, calendar_url: str, deadline: Optional[float] = None) -> SyncReport:
        """
        Fetch the calendar at calendar_url and reconcile it.

        Args:
            calendar_url: iCal feed URL
            deadline: time.monotonic() value after which no new event starts

        Returns:
            SyncReport

        Raises:
            ConfigurationError: If calendar_url is empty
            FetchError: If the feed cannot be downloaded
            MalformedCalendarError: If the feed cannot be parsed
        """
        started_at = utc_now_iso()
        try:
            ics_text = self.feed_client.fetch(calendar_url)
        except FetchError as e:
            self._record_fatal(calendar_url, started_at, e)
            raise
        return self.sync_document(ics_text, source=calendar_url,
                                  deadline=deadline, started_at=started_at)

    def sync_document(
        self,
        ics_text: str,
        source: str,
        deadline: Optional[float] = None,
        started_at: Optional[str] = None
    ) -> SyncReport:
        """
        Reconcile an already downloaded or uploaded iCal document.

        Args:
            ics_text: Raw iCal document
            source: Label stored in the sync history (URL or upload name)
            deadline: time.monotonic() value after which no new event starts
            started_at: Run start timestamp (default: now)

        Returns:
            SyncReport

        Raises:
            MalformedCalendarError: If the document cannot be parsed
            PersistenceError: If the stored events cannot be read
        """
        report = SyncReport(
            run_id=str(uuid.uuid4()),
            source=source,
            started_at=started_at or utc_now_iso()
        )
        logger.info("Starting calendar sync", extra={'run_id': report.run_id, 'source': source})

        try:
            parsed = parse_calendar(ics_text)
        except MalformedCalendarError as e:
            self._record_fatal(source, report.started_at, e)
            raise

        for error in parsed.errors:
            report.parse_errors += 1
            report.add_error(error.uid, error)
            if self.parse_errors_as_failures:
                report.failed += 1

        try:
            existing_events = self.event_store.fetch_events()
        except PersistenceError as e:
            self._record_fatal(source, report.started_at, e)
            raise

        for index, raw_event in enumerate(parsed.events):
            if deadline is not None and time.monotonic() >= deadline:
                report.timed_out = True
                logger.warning(
                    f"Run deadline reached; abandoning "
                    f"{len(parsed.events) - index} remaining events"
                )
                break
            self._sync_event(raw_event, existing_events, report)

        if report.added or report.updated:
            report.changes.append((CALENDAR_UPDATED, {
                'run_id': report.run_id,
                'source': source,
                'added': report.added,
                'updated': report.updated,
                'processed': report.processed,
            }))

        report.completed_at = utc_now_iso()
        self._append_run(report.to_sync_run())

        logger.info(
            f"Sync complete: {report.added} added, {report.updated} updated, "
            f"{report.unchanged} unchanged, {report.failed} failed",
            extra={'run_id': report.run_id, 'status': report.status}
        )
        return report

    def _sync_event(self, raw_event, existing_events, report: SyncReport) -> None:
        """Build and upsert one event, recording any failure on the report."""
        event_id = raw_event.uid
        try:
            event = self.processor.build_event(raw_event)
        except Exception as e:
            self._record_event_failure(report, event_id, e)
            return

        stored = existing_events.get(event_id)
        if stored is not None and not self.processor.events_differ(event, stored):
            report.unchanged += 1
            report.processed += 1
            return

        event.sync_status = SYNC_SYNCED
        try:
            created = self.event_store.upsert_event(event)
        except Exception as e:
            # One bad event must not abort the run
            event.sync_status = SYNC_FAILED
            self._record_event_failure(report, event_id, e)
            return

        report.processed += 1
        if created:
            report.added += 1
            report.changes.append((EVENT_CREATED, event.to_dict()))
        else:
            report.updated += 1
            report.changes.append((EVENT_UPDATED, event.to_dict()))
        existing_events[event_id] = event

    @staticmethod
    def _record_event_failure(report: SyncReport, event_id: str, error: Exception) -> None:
        logger.warning(
            f"Failed to sync event '{event_id}': {error}",
            extra={'event_id': event_id, 'error_type': type(error).__name__}
        )
        report.failed += 1
        report.add_error(event_id, error)

    def _record_fatal(self, source: str, started_at: str, error: CalendarSyncError) -> None:
        self._append_run(SyncRun(
            run_id=str(uuid.uuid4()),
            status=RUN_FAILED,
            source=source,
            started_at=started_at,
            completed_at=utc_now_iso(),
            error_message=str(error)
        ))

    def _append_run(self, run: SyncRun) -> None:
        try:
            self.history_store.append_sync_run(run)
        except PersistenceError as e:
            logger.error(f"Failed to record sync run {run.run_id}: {e}")
