"""Data models for calendar sync and webhook delivery."""
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

# Delivery status values stored on CalendarEvent.status
STATUS_PENDING = 'pending'
STATUS_IN_TRANSIT = 'in_transit'
STATUS_DELIVERED = 'delivered'
STATUS_CANCELLED = 'cancelled'

# CalendarEvent.sync_status values
SYNC_PENDING = 'pending'
SYNC_SYNCED = 'synced'
SYNC_FAILED = 'failed'

# SyncRun / SyncReport status values
RUN_SUCCESS = 'success'
RUN_PARTIAL = 'partial'
RUN_FAILED = 'failed'

# WebhookExecution status values
EXECUTION_PENDING = 'pending'
EXECUTION_SUCCESS = 'success'
EXECUTION_FAILED = 'failed'
EXECUTION_RETRYING = 'retrying'

# Domain event types a webhook can subscribe to
CALENDAR_CREATED = 'calendar.created'
CALENDAR_UPDATED = 'calendar.updated'
CALENDAR_DELETED = 'calendar.deleted'
EVENT_CREATED = 'event.created'
EVENT_UPDATED = 'event.updated'
EVENT_DELETED = 'event.deleted'

# Permissions an API key can be granted
PERMISSION_READ = 'read'
PERMISSION_WRITE = 'write'


def utc_now_iso() -> str:
    """Current UTC time as a fixed-width ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')


def _to_utc_datetime(day: str, clock: Optional[str]) -> datetime:
    """Combine a date string and optional time string into a UTC datetime."""
    parsed_day = date.fromisoformat(day)
    parsed_clock = time.fromisoformat(clock) if clock else time(0, 0)
    return datetime.combine(parsed_day, parsed_clock, tzinfo=timezone.utc)


@dataclass
class RawEvent:
    """VEVENT fields as read from the iCal document, before tracking extraction.

    ``start_time``/``end_time`` are ``None`` for date-only (all-day) values.
    """
    uid: str
    summary: str
    description: str
    location: str
    start_date: str
    start_time: Optional[str]
    end_date: str
    end_time: Optional[str]
    status: str
    organizer: Optional[str] = None

    @property
    def all_day(self) -> bool:
        return self.start_time is None

    @property
    def start_at(self) -> datetime:
        return _to_utc_datetime(self.start_date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return _to_utc_datetime(self.end_date, self.end_time)


@dataclass
class TrackingInfo:
    """Shipment tracking data found in an event's title and description."""
    carrier: Optional[str] = None
    tracking_number: str = ''
    tracking_link: str = ''
    state_code: str = ''

    @property
    def is_empty(self) -> bool:
        return not (
            self.carrier or self.tracking_number or
            self.tracking_link or self.state_code
        )


@dataclass
class CalendarEvent:
    """Normalized event as persisted by the event store."""
    event_id: str
    title: str
    description: str
    location: str
    start_date: str
    start_time: Optional[str]
    end_date: str
    end_time: Optional[str]
    status: str
    organizer: Optional[str] = None
    tracking: Optional[TrackingInfo] = None
    sync_status: str = SYNC_PENDING
    last_modified: Optional[str] = None

    @property
    def all_day(self) -> bool:
        return self.start_time is None

    @property
    def start_at(self) -> datetime:
        return _to_utc_datetime(self.start_date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return _to_utc_datetime(self.end_date, self.end_time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Webhook:
    """Outbound webhook subscription."""
    webhook_id: str
    name: str
    url: str
    events: List[str]
    active: bool = True
    secret: Optional[str] = None
    description: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    retry_count: int = 3
    timeout_ms: int = 10000
    failure_count: int = 0
    created_at: Optional[str] = None
    last_triggered: Optional[str] = None

    def subscribes_to(self, event_type: str) -> bool:
        return self.active and bool(self.events) and event_type in self.events

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_secret:
            data['secret'] = '********' if self.secret else None
        return data


@dataclass
class WebhookExecution:
    """One delivery attempt of a webhook. Never updated once written."""
    execution_id: str
    webhook_id: str
    event_type: str
    status: str
    retry_count: int
    executed_at: str
    duration_ms: int = 0
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncRun:
    """History record of one sync run."""
    run_id: str
    status: str
    source: str
    started_at: str
    completed_at: str
    events_added: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_failed: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncReport:
    """Result of a sync run, returned even when some events failed."""
    run_id: str
    source: str
    started_at: str
    completed_at: Optional[str] = None
    processed: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    parse_errors: int = 0
    timed_out: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)
    changes: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.failed > 0:
            return RUN_PARTIAL if self.processed > 0 else RUN_FAILED
        if self.timed_out:
            return RUN_PARTIAL
        return RUN_SUCCESS

    def add_error(self, event_id: str, error: Exception) -> None:
        self.errors.append({
            'event_id': event_id,
            'error': str(error),
            'error_type': type(error).__name__,
        })

    def to_sync_run(self) -> SyncRun:
        first_error = self.errors[0]['error'] if self.errors else None
        return SyncRun(
            run_id=self.run_id,
            status=self.status,
            source=self.source,
            started_at=self.started_at,
            completed_at=self.completed_at or utc_now_iso(),
            events_added=self.added,
            events_updated=self.updated,
            events_failed=self.failed,
            error_message=first_error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'source': self.source,
            'status': self.status,
            'processed': self.processed,
            'added': self.added,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'failed': self.failed,
            'parse_errors': self.parse_errors,
            'timed_out': self.timed_out,
            'errors': list(self.errors),
            'started_at': self.started_at,
            'completed_at': self.completed_at,
        }


@dataclass
class DeliveryReport:
    """Outcome of delivering one domain event to one webhook."""
    webhook_id: str
    event_type: str
    status: str
    attempts: int = 0
    response_status: Optional[int] = None
    error_message: Optional[str] = None
    persistence_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ApiKey:
    """Issued API key. Only the sha256 hash of the key is stored."""
    key_id: str
    name: str
    key_hash: str
    permissions: List[str]
    is_active: bool = True
    created_at: Optional[str] = None
    expires_at: Optional[str] = None
    last_used_at: Optional[str] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return datetime.fromisoformat(self.expires_at) > now

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        del data['key_hash']
        return data
