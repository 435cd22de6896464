"""Normalizer turning raw iCal documents into RawEvent records."""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple

from icalendar import Calendar

from processor.errors import EventParseError, MalformedCalendarError
from processor.models import (
    RawEvent,
    STATUS_CANCELLED,
    STATUS_IN_TRANSIT,
    STATUS_PENDING,
)

logger = logging.getLogger(__name__)

# Source calendar STATUS (lower-cased) -> delivery status.
# Values not listed here pass through lower-cased.
STATUS_MAP = {
    'tentative': STATUS_PENDING,
    'confirmed': STATUS_IN_TRANSIT,
    'cancelled': STATUS_CANCELLED,
}


@dataclass
class ParseResult:
    """Events parsed from a document plus the VEVENTs that were skipped."""
    events: List[RawEvent] = field(default_factory=list)
    errors: List[EventParseError] = field(default_factory=list)


def normalize_status(status: Optional[str]) -> str:
    """
    Map a source calendar status onto a delivery status.

    Args:
        status: STATUS property value, may be None or empty

    Returns:
        Mapped status, the lower-cased input when unmapped, or 'pending'
    """
    value = (status or '').strip().lower()
    if not value:
        return STATUS_PENDING
    return STATUS_MAP.get(value, value)


def parse_calendar(ics_text: str) -> ParseResult:
    """
    Parse an iCal document into RawEvent records.

    Only VEVENT components are kept. A VEVENT that cannot be normalized is
    recorded in ``ParseResult.errors`` and skipped.

    Args:
        ics_text: Raw iCal document

    Returns:
        ParseResult with the parsed events and per-event errors

    Raises:
        MalformedCalendarError: If the document itself cannot be parsed
    """
    if not ics_text or not ics_text.strip():
        raise MalformedCalendarError("Calendar document is empty")

    try:
        calendar = Calendar.from_ical(ics_text.lstrip('\ufeff').strip())
    except (ValueError, IndexError, KeyError) as e:
        raise MalformedCalendarError(f"Unparseable calendar document: {e}") from e

    if calendar.name != 'VCALENDAR':
        raise MalformedCalendarError(
            f"Expected a VCALENDAR document, found {calendar.name}"
        )

    result = ParseResult()
    for component in calendar.walk('VEVENT'):
        try:
            result.events.append(_parse_vevent(component))
        except EventParseError as e:
            logger.warning(str(e))
            result.errors.append(e)
        except ValueError as e:
            error = EventParseError(_text(component, 'UID'), f"unreadable property: {e}")
            logger.warning(str(error))
            result.errors.append(error)

    logger.info(
        f"Parsed {len(result.events)} events, skipped {len(result.errors)} "
        f"malformed events"
    )
    return result


def _parse_vevent(component) -> RawEvent:
    """
    Convert a single VEVENT component.

    Args:
        component: icalendar Event component

    Returns:
        RawEvent

    Raises:
        EventParseError: If UID, start or end cannot be determined
    """
    uid = _text(component, 'UID')
    if not uid:
        raise EventParseError('', 'missing UID')

    start_value = _date_value(component, 'DTSTART')
    if start_value is None:
        raise EventParseError(uid, 'missing or invalid DTSTART')

    end_value = _date_value(component, 'DTEND')
    if end_value is None:
        duration = _property_dt(component, 'DURATION')
        if not isinstance(duration, timedelta):
            raise EventParseError(uid, 'missing DTEND and DURATION')
        end_value = start_value + duration

    recurrence_id = _date_value(component, 'RECURRENCE-ID')
    if recurrence_id is None and component.get('RECURRENCE-ID') is not None:
        raise EventParseError(uid, 'invalid RECURRENCE-ID')
    if recurrence_id is not None:
        uid = f"{uid}#{_recurrence_stamp(recurrence_id)}"

    start_date, start_time = _split_utc(start_value)
    end_date, end_time = _split_utc(end_value)

    return RawEvent(
        uid=uid,
        summary=_text(component, 'SUMMARY'),
        description=_text(component, 'DESCRIPTION'),
        location=_text(component, 'LOCATION'),
        start_date=start_date,
        start_time=start_time,
        end_date=end_date,
        end_time=end_time,
        status=normalize_status(_text(component, 'STATUS')),
        organizer=_organizer(component),
    )


def _text(component, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ''
    return str(value).strip()


def _property_dt(component, name: str):
    """Return the decoded value of a property, or None if absent or unparseable."""
    try:
        return getattr(component.get(name), 'dt', None)
    except ValueError:
        # Newer icalendar releases raise on access to a broken value
        return None


def _date_value(component, name: str):
    value = _property_dt(component, name)
    if isinstance(value, (date, datetime)):
        return value
    return None


def _to_utc(value: datetime) -> datetime:
    # Floating times carry no zone; they are read as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _split_utc(value) -> Tuple[str, Optional[str]]:
    """
    Split a date or datetime into ISO date and time-of-day strings.

    Date-only values return None for the time so all-day events are never
    confused with events at midnight.
    """
    if isinstance(value, datetime):
        utc_value = _to_utc(value)
        return utc_value.date().isoformat(), utc_value.strftime('%H:%M:%S')
    return value.isoformat(), None


def _recurrence_stamp(value) -> str:
    if isinstance(value, datetime):
        return _to_utc(value).strftime('%Y%m%dT%H%M%SZ')
    return value.strftime('%Y%m%d')


def _organizer(component) -> Optional[str]:
    organizer = _text(component, 'ORGANIZER')
    if not organizer:
        return None
    if organizer.lower().startswith('mailto:'):
        organizer = organizer[len('mailto:'):]
    return organizer
