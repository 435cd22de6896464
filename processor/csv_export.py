"""CSV export of stored calendar events."""
import csv
import io
from typing import Iterable, Optional

from processor.models import CalendarEvent

CSV_HEADERS = [
    'Summary',
    'Start Date',
    'End Date',
    'Location',
    'Description',
    'Status',
    'Carrier',
    'Tracking Number',
]


def format_timestamp(day: str, clock: Optional[str]) -> str:
    """Format as 'YYYY-MM-DD HH:MM:SS', or just the date for all-day values."""
    return f"{day} {clock}" if clock else day


def export_events_csv(events: Iterable[CalendarEvent]) -> str:
    """
    Render events as CSV sorted by start.

    Fields are quoted per RFC 4180 where needed and rows end with CRLF.

    Args:
        events: Events to export

    Returns:
        CSV document including the header row
    """
    output = io.StringIO()
    writer = csv.writer(output, lineterminator='\r\n')
    writer.writerow(CSV_HEADERS)

    for event in sorted(events, key=lambda e: (e.start_at, e.event_id)):
        tracking = event.tracking
        writer.writerow([
            event.title,
            format_timestamp(event.start_date, event.start_time),
            format_timestamp(event.end_date, event.end_time),
            event.location or '',
            event.description or '',
            event.status,
            (tracking.carrier or '') if tracking else '',
            tracking.tracking_number if tracking else '',
        ])

    return output.getvalue()
