"""Webhook dispatcher delivering domain events to subscribed webhooks."""
import json
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, as_completed
from typing import Any, Dict, List, Optional, Tuple

import requests

from notifier.signing import sign_payload
from processor.errors import ConfigurationError, DeliveryError, PersistenceError
from processor.models import (
    DeliveryReport,
    EXECUTION_FAILED,
    EXECUTION_PENDING,
    EXECUTION_RETRYING,
    EXECUTION_SUCCESS,
    Webhook,
    WebhookExecution,
    utc_now_iso,
)
from storage.base import HistoryStore, WebhookStore

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """Delivers domain events to webhooks with retry and execution history.

    Every attempt is appended to the history store. Each subscriber is
    delivered independently, so a failing webhook never affects the others.
    """

    USER_AGENT = 'delivery-calendar-sync-webhooks/1.0'
    SIGNATURE_HEADER = 'X-Webhook-Signature'
    EVENT_HEADER = 'X-Webhook-Event'
    DELIVERY_HEADER = 'X-Webhook-Delivery'
    MAX_RESPONSE_BODY = 1000

    def __init__(
        self,
        webhook_store: WebhookStore,
        history_store: HistoryStore,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_workers: int = 5,
        require_signing: bool = False
    ):
        """
        Initialize the dispatcher.

        Args:
            webhook_store: WebhookStore used to resolve subscribers
            history_store: HistoryStore receiving execution records
            base_delay: Backoff delay before the first retry, in seconds
            max_delay: Upper bound for any backoff delay, in seconds
            max_workers: Maximum number of concurrent deliveries
            require_signing: Refuse to dispatch to webhooks without a secret
        """
        self.webhook_store = webhook_store
        self.history_store = history_store
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_workers = max(1, max_workers)
        self.require_signing = require_signing

    def dispatch(
        self,
        event_type: str,
        payload: Dict[str, Any],
        deadline: Optional[float] = None
    ) -> List[DeliveryReport]:
        """
        Deliver an event to every active webhook subscribed to it.

        Args:
            event_type: Domain event type, e.g. 'calendar.updated'
            payload: JSON-serializable event payload
            deadline: time.monotonic() value after which no new attempt starts

        Returns:
            One DeliveryReport per subscriber

        Raises:
            ConfigurationError: If signing is required and a subscriber has
                no secret; nothing is delivered in that case
        """
        subscribers = [
            webhook for webhook in self.webhook_store.get_active_webhooks(event_type)
            if webhook.subscribes_to(event_type)
        ]
        if not subscribers:
            logger.info(f"No active webhooks subscribed to {event_type}")
            return []

        if self.require_signing:
            unsigned = [webhook.webhook_id for webhook in subscribers if not webhook.secret]
            if unsigned:
                raise ConfigurationError(
                    f"Webhook signing is required but no secret is set for: "
                    f"{', '.join(unsigned)}"
                )

        logger.info(f"Dispatching {event_type} to {len(subscribers)} webhooks")
        body = self._build_body(event_type, payload)

        reports = {}
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(subscribers)))
        futures = {
            executor.submit(self.deliver, webhook, event_type, body, deadline): webhook
            for webhook in subscribers
        }
        try:
            for future in as_completed(futures, timeout=self._remaining(deadline)):
                webhook = futures[future]
                try:
                    reports[webhook.webhook_id] = future.result()
                except Exception as e:
                    logger.error(
                        f"Unexpected error delivering to webhook {webhook.webhook_id}: {e}",
                        exc_info=True
                    )
                    reports[webhook.webhook_id] = DeliveryReport(
                        webhook_id=webhook.webhook_id,
                        event_type=event_type,
                        status=EXECUTION_FAILED,
                        error_message=str(e)
                    )
        except FuturesTimeoutError:
            logger.warning(
                f"Run deadline reached with "
                f"{len(subscribers) - len(reports)} deliveries of {event_type} in flight"
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        # Deliveries still running at the deadline are reported as pending
        return [
            reports.get(webhook.webhook_id) or DeliveryReport(
                webhook_id=webhook.webhook_id,
                event_type=event_type,
                status=EXECUTION_PENDING,
                error_message='Abandoned at run deadline'
            )
            for webhook in subscribers
        ]

    def deliver(
        self,
        webhook: Webhook,
        event_type: str,
        body: bytes,
        deadline: Optional[float] = None
    ) -> DeliveryReport:
        """
        Deliver a prepared body to one webhook, retrying on failure.

        Makes at most 1 + webhook.retry_count attempts. Each attempt is
        recorded as a WebhookExecution.

        Args:
            webhook: Target webhook
            event_type: Domain event type
            body: Serialized JSON body
            deadline: time.monotonic() value after which no retry starts

        Returns:
            DeliveryReport with the final status
        """
        report = DeliveryReport(
            webhook_id=webhook.webhook_id,
            event_type=event_type,
            status=EXECUTION_PENDING
        )
        headers = self._build_headers(webhook, event_type, body)
        max_attempts = 1 + max(0, webhook.retry_count)

        for attempt in range(max_attempts):
            started = time.monotonic()
            executed_at = utc_now_iso()
            try:
                response_status, response_body = self._post(webhook, body, headers)
                error = None
            except DeliveryError as e:
                response_status = e.response_status
                response_body = e.response_body
                error = e
            duration_ms = int((time.monotonic() - started) * 1000)

            report.attempts = attempt + 1
            report.response_status = response_status

            if error is None:
                report.status = EXECUTION_SUCCESS
                report.error_message = None
                self._record(report, webhook, event_type, EXECUTION_SUCCESS, attempt,
                             executed_at, duration_ms, response_status, response_body, None)
                self._store_call(report, self.webhook_store.mark_triggered,
                                 webhook.webhook_id, executed_at)
                logger.info(
                    f"Delivered {event_type} to webhook {webhook.webhook_id} "
                    f"(attempt {attempt + 1}/{max_attempts})"
                )
                return report

            report.error_message = str(error)
            delay = self.backoff_delay(attempt)
            last_attempt = attempt == max_attempts - 1
            out_of_time = (
                not last_attempt and deadline is not None and
                time.monotonic() + delay >= deadline
            )
            if out_of_time:
                report.error_message = f"{error}; retries abandoned at run deadline"

            status = EXECUTION_FAILED if last_attempt or out_of_time else EXECUTION_RETRYING
            self._record(report, webhook, event_type, status, attempt,
                         executed_at, duration_ms, response_status, response_body,
                         report.error_message)

            if status == EXECUTION_FAILED:
                break

            logger.warning(
                f"Delivery to webhook {webhook.webhook_id} failed "
                f"(attempt {attempt + 1}/{max_attempts}): {error}. "
                f"Retrying in {delay} seconds..."
            )
            time.sleep(delay)

        report.status = EXECUTION_FAILED
        logger.error(
            f"Delivery of {event_type} to webhook {webhook.webhook_id} failed after "
            f"{report.attempts} attempts: {report.error_message}"
        )
        self._store_call(report, self.webhook_store.increment_failure_count,
                         webhook.webhook_id)
        return report

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff delay after the given zero-based attempt."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def _post(self, webhook: Webhook, body: bytes, headers: Dict[str, str]) -> Tuple[int, str]:
        """
        Send one POST request.

        Returns:
            Tuple of (response status, truncated response body)

        Raises:
            DeliveryError: On timeout, network error or non-2xx response
        """
        try:
            response = requests.post(
                webhook.url,
                data=body,
                headers=headers,
                timeout=webhook.timeout_ms / 1000
            )
        except requests.Timeout as e:
            raise DeliveryError(f"Timed out after {webhook.timeout_ms} ms: {e}") from e
        except requests.RequestException as e:
            raise DeliveryError(f"Request failed: {e}") from e

        response_body = response.text[:self.MAX_RESPONSE_BODY]
        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"Webhook responded with HTTP {response.status_code}",
                response_status=response.status_code,
                response_body=response_body
            )
        return response.status_code, response_body

    def _build_body(self, event_type: str, payload: Dict[str, Any]) -> bytes:
        envelope = {
            'event': event_type,
            'payload': payload,
            'timestamp': utc_now_iso()
        }
        return json.dumps(envelope, default=str).encode('utf-8')

    def _build_headers(self, webhook: Webhook, event_type: str, body: bytes) -> Dict[str, str]:
        headers = dict(webhook.headers)
        headers.update({
            'Content-Type': 'application/json',
            'User-Agent': self.USER_AGENT,
            self.EVENT_HEADER: event_type,
            self.DELIVERY_HEADER: str(uuid.uuid4()),
        })
        if webhook.secret:
            headers[self.SIGNATURE_HEADER] = sign_payload(webhook.secret, body)
        return headers

    def _record(
        self,
        report: DeliveryReport,
        webhook: Webhook,
        event_type: str,
        status: str,
        attempt: int,
        executed_at: str,
        duration_ms: int,
        response_status: Optional[int],
        response_body: Optional[str],
        error_message: Optional[str]
    ) -> None:
        execution = WebhookExecution(
            execution_id=str(uuid.uuid4()),
            webhook_id=webhook.webhook_id,
            event_type=event_type,
            status=status,
            retry_count=attempt,
            executed_at=executed_at,
            duration_ms=duration_ms,
            response_status=response_status,
            response_body=response_body,
            error_message=error_message
        )
        self._store_call(report, self.history_store.append_execution, execution)

    @staticmethod
    def _store_call(report: DeliveryReport, method, *args) -> None:
        """Run a storage call; failures are logged and kept on the report."""
        try:
            method(*args)
        except PersistenceError as e:
            logger.error(f"History write failed for webhook {report.webhook_id}: {e}")
            report.persistence_errors.append(str(e))

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())
