"""Event processor turning parsed iCal events into stored calendar events."""
import logging
from dataclasses import replace
from typing import Optional

from processor import tracking
from processor.models import CalendarEvent, RawEvent, SYNC_PENDING, utc_now_iso

logger = logging.getLogger(__name__)


class EventProcessor:
    """Builds CalendarEvent records from RawEvent records."""

    MAX_TITLE_LENGTH = 500
    MAX_DESCRIPTION_LENGTH = 10000

    # Fields that change on every write and are ignored when diffing
    VOLATILE_FIELDS = ('last_modified', 'sync_status')

    def build_event(self, raw: RawEvent, now: Optional[str] = None) -> CalendarEvent:
        """
        Build a CalendarEvent from a parsed VEVENT.

        Tracking details are extracted from the untruncated title and
        description. If the event ends before it starts, the end is moved to
        the start.

        Args:
            raw: Parsed event
            now: Timestamp to store as last_modified (default: current time)

        Returns:
            CalendarEvent with sync_status 'pending'
        """
        info = tracking.extract(raw.summary, raw.description)

        end_date, end_time = raw.end_date, raw.end_time
        if raw.end_at < raw.start_at:
            logger.warning(
                f"Event '{raw.uid}' ends before it starts; using start as end",
                extra={
                    'event_id': raw.uid,
                    'start': raw.start_at.isoformat(),
                    'end': raw.end_at.isoformat()
                }
            )
            end_date, end_time = raw.start_date, raw.start_time

        return CalendarEvent(
            event_id=raw.uid,
            title=raw.summary[:self.MAX_TITLE_LENGTH],
            description=raw.description[:self.MAX_DESCRIPTION_LENGTH],
            location=raw.location,
            start_date=raw.start_date,
            start_time=raw.start_time,
            end_date=end_date,
            end_time=end_time,
            status=raw.status,
            organizer=raw.organizer,
            tracking=None if info.is_empty else info,
            sync_status=SYNC_PENDING,
            last_modified=now or utc_now_iso()
        )

    def events_differ(self, event1: CalendarEvent, event2: CalendarEvent) -> bool:
        """
        Compare two CalendarEvent objects to determine if they differ.

        Compares all fields except last_modified and sync_status.

        Args:
            event1: First CalendarEvent
            event2: Second CalendarEvent

        Returns:
            True if events differ, False otherwise
        """
        blank = {name: None for name in self.VOLATILE_FIELDS}
        return replace(event1, **blank) != replace(event2, **blank)
