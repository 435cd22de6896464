"""In-memory implementation of the event, webhook, history and API key stores."""
import copy
import threading
from typing import Dict, List, Optional

from processor.models import ApiKey, CalendarEvent, SyncRun, Webhook, WebhookExecution


class InMemoryStore:
    """Process-local store implementing every storage protocol.

    Objects are copied on the way in and out so callers cannot mutate stored
    state. A lock guards writes because webhook fan-out runs on threads.
    """

    def __init__(self):
        self.events: Dict[str, CalendarEvent] = {}
        self.webhooks: Dict[str, Webhook] = {}
        self.executions: List[WebhookExecution] = []
        self.sync_runs: List[SyncRun] = []
        self.api_keys: Dict[str, ApiKey] = {}
        self._lock = threading.Lock()

    # Events

    def upsert_event(self, event: CalendarEvent) -> bool:
        with self._lock:
            created = event.event_id not in self.events
            self.events[event.event_id] = copy.deepcopy(event)
        return created

    def fetch_events(self) -> Dict[str, CalendarEvent]:
        with self._lock:
            return copy.deepcopy(self.events)

    # Webhooks

    def list_webhooks(self) -> List[Webhook]:
        with self._lock:
            webhooks = copy.deepcopy(list(self.webhooks.values()))
        return sorted(webhooks, key=lambda w: w.created_at or '', reverse=True)

    def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        with self._lock:
            return copy.deepcopy(self.webhooks.get(webhook_id))

    def put_webhook(self, webhook: Webhook) -> None:
        with self._lock:
            self.webhooks[webhook.webhook_id] = copy.deepcopy(webhook)

    def delete_webhook(self, webhook_id: str) -> bool:
        with self._lock:
            return self.webhooks.pop(webhook_id, None) is not None

    def get_active_webhooks(self, event_type: str) -> List[Webhook]:
        with self._lock:
            return [
                copy.deepcopy(webhook) for webhook in self.webhooks.values()
                if webhook.subscribes_to(event_type)
            ]

    def increment_failure_count(self, webhook_id: str) -> None:
        with self._lock:
            webhook = self.webhooks.get(webhook_id)
            if webhook is not None:
                webhook.failure_count += 1

    def mark_triggered(self, webhook_id: str, triggered_at: str) -> None:
        with self._lock:
            webhook = self.webhooks.get(webhook_id)
            if webhook is not None:
                webhook.last_triggered = triggered_at

    # History

    def append_sync_run(self, run: SyncRun) -> None:
        with self._lock:
            self.sync_runs.append(copy.deepcopy(run))

    def append_execution(self, execution: WebhookExecution) -> None:
        with self._lock:
            self.executions.append(copy.deepcopy(execution))

    def list_executions(self, webhook_id: str, limit: int = 20) -> List[WebhookExecution]:
        with self._lock:
            matching = [e for e in self.executions if e.webhook_id == webhook_id]
        return copy.deepcopy(list(reversed(matching))[:limit])

    def list_sync_runs(self, limit: int = 20) -> List[SyncRun]:
        with self._lock:
            return copy.deepcopy(list(reversed(self.sync_runs))[:limit])

    # API keys

    def list_api_keys(self) -> List[ApiKey]:
        with self._lock:
            api_keys = copy.deepcopy(list(self.api_keys.values()))
        return sorted(api_keys, key=lambda k: k.created_at or '', reverse=True)

    def put_api_key(self, api_key: ApiKey) -> None:
        with self._lock:
            self.api_keys[api_key.key_id] = copy.deepcopy(api_key)

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._lock:
            return copy.deepcopy(self.api_keys.get(key_id))

    def find_api_key(self, key_hash: str) -> Optional[ApiKey]:
        with self._lock:
            for api_key in self.api_keys.values():
                if api_key.key_hash == key_hash:
                    return copy.deepcopy(api_key)
        return None

    def delete_api_key(self, key_id: str) -> bool:
        with self._lock:
            return self.api_keys.pop(key_id, None) is not None

    def mark_api_key_used(self, key_id: str, used_at: str) -> None:
        with self._lock:
            api_key = self.api_keys.get(key_id)
            if api_key is not None:
                api_key.last_used_at = used_at
