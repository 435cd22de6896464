"""Unit tests for WebhookDispatcher."""
import json
import threading
import time
from unittest.mock import Mock, patch

import pytest
import requests
import responses

from notifier.signing import verify_signature
from notifier.webhook_dispatcher import WebhookDispatcher
from processor.errors import ConfigurationError, PersistenceError
from processor.models import (
    CALENDAR_UPDATED,
    EVENT_CREATED,
    EXECUTION_FAILED,
    EXECUTION_PENDING,
    EXECUTION_RETRYING,
    EXECUTION_SUCCESS,
    Webhook,
)

HOOK_URL = 'https://hooks.example.com/calendar'
OTHER_URL = 'https://other.example.com/calendar'


def make_webhook(webhook_id='wh-1', url=HOOK_URL, **kwargs):
    defaults = {
        'name': f'Hook {webhook_id}',
        'events': [CALENDAR_UPDATED],
        'retry_count': 3,
        'created_at': '2024-01-01T00:00:00.000000+00:00',
    }
    defaults.update(kwargs)
    return Webhook(webhook_id=webhook_id, url=url, **defaults)


@pytest.fixture
def dispatcher(memory_store):
    return WebhookDispatcher(memory_store, memory_store, base_delay=1, max_delay=30)


class TestWebhookDispatcher:
    """Test cases for WebhookDispatcher class."""

    @responses.activate
    def test_dispatch_success(self, dispatcher, memory_store):
        """Test a subscribed webhook receives the event envelope."""
        memory_store.put_webhook(make_webhook())
        responses.add(responses.POST, HOOK_URL, json={'ok': True}, status=200)

        reports = dispatcher.dispatch(CALENDAR_UPDATED, {'added': 2})

        assert len(reports) == 1
        assert reports[0].status == EXECUTION_SUCCESS
        assert reports[0].attempts == 1
        assert reports[0].response_status == 200

        request = responses.calls[0].request
        body = json.loads(request.body)
        assert body['event'] == CALENDAR_UPDATED
        assert body['payload'] == {'added': 2}
        assert 'timestamp' in body
        assert request.headers['Content-Type'] == 'application/json'
        assert request.headers['X-Webhook-Event'] == CALENDAR_UPDATED
        assert 'X-Webhook-Signature' not in request.headers

        executions = memory_store.list_executions('wh-1')
        assert [e.status for e in executions] == [EXECUTION_SUCCESS]
        assert executions[0].response_status == 200
        assert memory_store.get_webhook('wh-1').last_triggered == executions[0].executed_at

    @responses.activate
    def test_dispatch_skips_unsubscribed_and_inactive(self, dispatcher, memory_store):
        """Test only active webhooks subscribed to the event are called."""
        memory_store.put_webhook(make_webhook('wh-1', events=[EVENT_CREATED]))
        memory_store.put_webhook(make_webhook('wh-2', active=False))

        reports = dispatcher.dispatch(CALENDAR_UPDATED, {})

        assert reports == []
        assert len(responses.calls) == 0

    @responses.activate
    @patch('notifier.webhook_dispatcher.time.sleep')
    def test_deliver_retry_bound(self, mock_sleep, dispatcher, memory_store):
        """Test a webhook that always fails gets 1 + retry_count attempts."""
        memory_store.put_webhook(make_webhook(retry_count=3))
        responses.add(responses.POST, HOOK_URL, body='upstream down', status=500)

        reports = dispatcher.dispatch(CALENDAR_UPDATED, {})

        assert len(responses.calls) == 4
        assert reports[0].status == EXECUTION_FAILED
        assert reports[0].attempts == 4
        assert reports[0].response_status == 500

        executions = list(reversed(memory_store.list_executions('wh-1')))
        assert [e.status for e in executions] == [
            EXECUTION_RETRYING, EXECUTION_RETRYING, EXECUTION_RETRYING, EXECUTION_FAILED
        ]
        assert [e.retry_count for e in executions] == [0, 1, 2, 3]
        assert executions[-1].response_body == 'upstream down'
        assert memory_store.get_webhook('wh-1').failure_count == 1
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2, 4]

    @responses.activate
    @patch('notifier.webhook_dispatcher.time.sleep')
    def test_deliver_recovers_after_retry(self, mock_sleep, dispatcher, memory_store):
        """Test a transient failure followed by success ends as success."""
        memory_store.put_webhook(make_webhook())
        responses.add(responses.POST, HOOK_URL, status=502)
        responses.add(responses.POST, HOOK_URL, status=204)

        reports = dispatcher.dispatch(CALENDAR_UPDATED, {})

        assert reports[0].status == EXECUTION_SUCCESS
        assert reports[0].attempts == 2
        assert memory_store.get_webhook('wh-1').failure_count == 0
        statuses = [e.status for e in memory_store.list_executions('wh-1')]
        assert statuses == [EXECUTION_SUCCESS, EXECUTION_RETRYING]

    @responses.activate
    @patch('notifier.webhook_dispatcher.time.sleep')
    def test_dispatch_fan_out_independent(self, mock_sleep, dispatcher, memory_store):
        """Test a failing subscriber does not affect another."""
        memory_store.put_webhook(make_webhook('wh-good', url=HOOK_URL))
        memory_store.put_webhook(make_webhook('wh-bad', url=OTHER_URL, retry_count=1))
        responses.add(responses.POST, HOOK_URL, status=200)
        responses.add(responses.POST, OTHER_URL, status=500)

        reports = {r.webhook_id: r for r in dispatcher.dispatch(CALENDAR_UPDATED, {})}

        assert reports['wh-good'].status == EXECUTION_SUCCESS
        assert reports['wh-bad'].status == EXECUTION_FAILED
        assert reports['wh-bad'].attempts == 2
        assert memory_store.get_webhook('wh-good').failure_count == 0
        assert memory_store.get_webhook('wh-bad').failure_count == 1

    @responses.activate
    def test_signature_verifies_against_body(self, dispatcher, memory_store):
        """Test the signature header matches the exact bytes sent."""
        memory_store.put_webhook(make_webhook(secret='s3cret'))
        responses.add(responses.POST, HOOK_URL, status=200)

        dispatcher.dispatch(CALENDAR_UPDATED, {'added': 1})

        request = responses.calls[0].request
        signature = request.headers['X-Webhook-Signature']
        assert signature.startswith('sha256=')
        assert verify_signature('s3cret', request.body, signature)
        assert not verify_signature('other', request.body, signature)

    @responses.activate
    def test_custom_headers_sent(self, dispatcher, memory_store):
        """Test user-defined headers are merged into the request."""
        memory_store.put_webhook(make_webhook(headers={'X-Tenant': 'north'}))
        responses.add(responses.POST, HOOK_URL, status=200)

        dispatcher.dispatch(CALENDAR_UPDATED, {})

        assert responses.calls[0].request.headers['X-Tenant'] == 'north'

    @responses.activate
    def test_deliver_timeout_recorded(self, dispatcher, memory_store):
        """Test a request timeout is a failed attempt with an error message."""
        memory_store.put_webhook(make_webhook(retry_count=0, timeout_ms=500))
        responses.add(responses.POST, HOOK_URL, body=requests.Timeout('read timed out'))

        reports = dispatcher.dispatch(CALENDAR_UPDATED, {})

        assert reports[0].status == EXECUTION_FAILED
        execution = memory_store.list_executions('wh-1')[0]
        assert execution.status == EXECUTION_FAILED
        assert execution.response_status is None
        assert 'Timed out after 500 ms' in execution.error_message

    @responses.activate
    def test_require_signing_rejects_unsigned(self, memory_store):
        """Test nothing is sent when signing is required and a secret is missing."""
        dispatcher = WebhookDispatcher(memory_store, memory_store, require_signing=True)
        memory_store.put_webhook(make_webhook('wh-signed', secret='abc'))
        memory_store.put_webhook(make_webhook('wh-unsigned', url=OTHER_URL))

        with pytest.raises(ConfigurationError) as exc_info:
            dispatcher.dispatch(CALENDAR_UPDATED, {})

        assert 'wh-unsigned' in str(exc_info.value)
        assert len(responses.calls) == 0

    @responses.activate
    @patch('notifier.webhook_dispatcher.time.sleep')
    def test_deliver_stops_retrying_at_deadline(self, mock_sleep, dispatcher, memory_store):
        """Test no retry starts when its backoff would pass the deadline."""
        memory_store.put_webhook(make_webhook(retry_count=3))
        responses.add(responses.POST, HOOK_URL, status=500)

        reports = dispatcher.dispatch(CALENDAR_UPDATED, {}, deadline=time.monotonic() + 0.5)

        assert len(responses.calls) == 1
        assert reports[0].status == EXECUTION_FAILED
        assert 'deadline' in reports[0].error_message
        mock_sleep.assert_not_called()
        assert [e.status for e in memory_store.list_executions('wh-1')] == [EXECUTION_FAILED]

    def test_dispatch_reports_pending_at_deadline(self, dispatcher, memory_store):
        """Test deliveries still running at the deadline are reported as pending."""
        memory_store.put_webhook(make_webhook())
        release = threading.Event()

        def slow_deliver(webhook, event_type, body, deadline=None):
            release.wait(5)
            return Mock(webhook_id=webhook.webhook_id, status=EXECUTION_SUCCESS)

        try:
            with patch.object(dispatcher, 'deliver', side_effect=slow_deliver):
                reports = dispatcher.dispatch(
                    CALENDAR_UPDATED, {}, deadline=time.monotonic() + 0.1
                )
        finally:
            release.set()

        assert reports[0].status == EXECUTION_PENDING
        assert 'deadline' in reports[0].error_message

    @responses.activate
    def test_history_failure_does_not_stop_delivery(self, memory_store):
        """Test an execution write failure is kept on the report."""
        history_store = Mock()
        history_store.append_execution.side_effect = PersistenceError('table missing')
        dispatcher = WebhookDispatcher(memory_store, history_store)
        memory_store.put_webhook(make_webhook())
        responses.add(responses.POST, HOOK_URL, status=200)

        reports = dispatcher.dispatch(CALENDAR_UPDATED, {})

        assert reports[0].status == EXECUTION_SUCCESS
        assert reports[0].persistence_errors == ['table missing']

    @pytest.mark.parametrize('attempt,expected', [(0, 1), (1, 2), (3, 8), (10, 30)])
    def test_backoff_delay(self, dispatcher, attempt, expected):
        """Test backoff doubles and is capped at max_delay."""
        assert dispatcher.backoff_delay(attempt) == expected
