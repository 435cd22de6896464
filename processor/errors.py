"""Exception types raised by the calendar sync and webhook pipeline."""
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(CalendarSyncError):
    """Required configuration is missing or invalid."""


class FetchError(CalendarSyncError):
    """Calendar source was unreachable or returned a non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedCalendarError(CalendarSyncError):
    """The iCal document as a whole could not be parsed."""


class EventParseError(CalendarSyncError):
    """A single VEVENT block was malformed and has been skipped."""

    def __init__(self, uid: str, reason: str):
        super().__init__(f"Event '{uid or '<no uid>'}' skipped: {reason}")
        self.uid = uid
        self.reason = reason


class PersistenceError(CalendarSyncError):
    """A storage read or write failed."""


class DeliveryError(CalendarSyncError):
    """A webhook delivery attempt failed."""

    def __init__(
        self,
        message: str,
        response_status: Optional[int] = None,
        response_body: Optional[str] = None
    ):
        super().__init__(message)
        self.response_status = response_status
        self.response_body = response_body


class ValidationError(CalendarSyncError):
    """An API request payload failed validation."""
