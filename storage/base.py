"""Storage interfaces consumed by the reconciler and the webhook dispatcher.

Implementations raise PersistenceError for any storage failure.
"""
from typing import Dict, List, Optional, Protocol

from processor.models import ApiKey, CalendarEvent, SyncRun, Webhook, WebhookExecution


class EventStore(Protocol):
    """Persistence for calendar events, keyed by event_id."""

    def upsert_event(self, event: CalendarEvent) -> bool:
        """Insert or replace an event. Returns True if the row was new."""
        ...

    def fetch_events(self) -> Dict[str, CalendarEvent]:
        """Return all stored events keyed by event_id."""
        ...


class WebhookStore(Protocol):
    """Persistence for webhook subscriptions."""

    def list_webhooks(self) -> List[Webhook]:
        ...

    def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        ...

    def put_webhook(self, webhook: Webhook) -> None:
        ...

    def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a webhook. Returns False if it did not exist."""
        ...

    def get_active_webhooks(self, event_type: str) -> List[Webhook]:
        """Return active webhooks subscribed to event_type."""
        ...

    def increment_failure_count(self, webhook_id: str) -> None:
        ...

    def mark_triggered(self, webhook_id: str, triggered_at: str) -> None:
        ...


class HistoryStore(Protocol):
    """Append-only log of sync runs and webhook executions."""

    def append_sync_run(self, run: SyncRun) -> None:
        ...

    def append_execution(self, execution: WebhookExecution) -> None:
        ...

    def list_executions(self, webhook_id: str, limit: int = 20) -> List[WebhookExecution]:
        """Return executions for a webhook, most recent first."""
        ...

    def list_sync_runs(self, limit: int = 20) -> List[SyncRun]:
        """Return sync runs, most recent first."""
        ...


class ApiKeyStore(Protocol):
    """Persistence for issued API keys. Plaintext keys are never stored."""

    def list_api_keys(self) -> List[ApiKey]:
        """Return all keys, newest first."""
        ...

    def put_api_key(self, api_key: ApiKey) -> None:
        ...

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        ...

    def find_api_key(self, key_hash: str) -> Optional[ApiKey]:
        """Return the key with the given sha256 hash, if any."""
        ...

    def delete_api_key(self, key_id: str) -> bool:
        """Delete a key. Returns False if it did not exist."""
        ...

    def mark_api_key_used(self, key_id: str, used_at: str) -> None:
        ...
