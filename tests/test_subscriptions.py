"""Unit tests for webhook validation and signing helpers."""
import pytest

from notifier.signing import sign_payload, verify_signature
from notifier.subscriptions import apply_webhook_update, build_webhook
from processor.errors import ValidationError
from processor.models import CALENDAR_UPDATED, EVENT_CREATED


@pytest.fixture
def webhook_data():
    return {
        'name': 'Dispatch board',
        'url': 'https://hooks.example.com/calendar',
        'events': [CALENDAR_UPDATED, EVENT_CREATED],
        'secret': 's3cret',
        'headers': {'X-Tenant': 'north'},
    }


class TestBuildWebhook:
    """Test cases for build_webhook."""

    def test_build_webhook_defaults(self, webhook_data):
        webhook = build_webhook(webhook_data)

        assert webhook.webhook_id
        assert webhook.created_at
        assert webhook.active is True
        assert webhook.retry_count == 3
        assert webhook.timeout_ms == 10000
        assert webhook.failure_count == 0
        assert webhook.headers == {'X-Tenant': 'north'}

    def test_build_webhook_ignores_counters(self, webhook_data):
        """Test clients cannot set failure_count on create."""
        webhook_data['failure_count'] = 99

        assert build_webhook(webhook_data).failure_count == 0

    @pytest.mark.parametrize('field_name,value', [
        ('name', ''),
        ('url', 'ftp://hooks.example.com'),
        ('url', 'not a url'),
        ('events', []),
        ('events', ['calendar.exploded']),
        ('events', 'calendar.updated'),
        ('active', 'yes'),
        ('secret', 12345),
        ('retry_count', -1),
        ('retry_count', 11),
        ('retry_count', True),
        ('timeout_ms', 0),
        ('timeout_ms', 120000),
        ('headers', {'X-Count': 1}),
    ])
    def test_build_webhook_rejects_invalid(self, webhook_data, field_name, value):
        webhook_data[field_name] = value

        with pytest.raises(ValidationError):
            build_webhook(webhook_data)

    def test_build_webhook_rejects_non_object(self):
        with pytest.raises(ValidationError):
            build_webhook(['not', 'an', 'object'])

    def test_build_webhook_error_names_field(self, webhook_data):
        webhook_data['timeout_ms'] = 0

        with pytest.raises(ValidationError, match='timeout_ms'):
            build_webhook(webhook_data)

    def test_build_webhook_strips_name(self, webhook_data):
        webhook_data['name'] = '  Dispatch board  '

        assert build_webhook(webhook_data).name == 'Dispatch board'


class TestApplyWebhookUpdate:
    """Test cases for apply_webhook_update."""

    def test_partial_update(self, webhook_data):
        webhook = build_webhook(webhook_data)

        updated = apply_webhook_update(webhook, {'name': 'Renamed', 'active': False})

        assert updated.name == 'Renamed'
        assert updated.active is False
        assert updated.url == webhook.url
        assert updated.webhook_id == webhook.webhook_id
        assert updated.created_at == webhook.created_at

    def test_update_cannot_change_identity(self, webhook_data):
        webhook = build_webhook(webhook_data)

        updated = apply_webhook_update(webhook, {'webhook_id': 'other', 'failure_count': 5})

        assert updated.webhook_id == webhook.webhook_id
        assert updated.failure_count == 0

    def test_update_clears_secret(self, webhook_data):
        webhook = build_webhook(webhook_data)

        assert apply_webhook_update(webhook, {'secret': ''}).secret is None

    def test_update_validates(self, webhook_data):
        webhook = build_webhook(webhook_data)

        with pytest.raises(ValidationError):
            apply_webhook_update(webhook, {'url': 'mailto:ops@example.com'})

    def test_update_rejects_null_required_field(self, webhook_data):
        webhook = build_webhook(webhook_data)

        with pytest.raises(ValidationError):
            apply_webhook_update(webhook, {'name': None})


class TestSigning:
    """Test cases for HMAC signing."""

    def test_sign_payload_known_value(self):
        """Test against a digest computed independently."""
        assert sign_payload('key', b'The quick brown fox jumps over the lazy dog') == (
            'sha256=f7bc83f430538424b13298e6aa6fb143ef4d59a14946175997479dbc2d1a3cd8'
        )

    def test_verify_signature_without_prefix(self):
        signature = sign_payload('key', b'{}')

        assert verify_signature('key', b'{}', signature[len('sha256='):])

    @pytest.mark.parametrize('secret,body,signature', [
        ('key', b'{}', 'sha256=deadbeef'),
        ('key', b'{"tampered": true}', None),
        ('', b'{}', 'sha256=00'),
        ('key', b'{}', 'sha256=\u00e9'),
    ])
    def test_verify_signature_rejects(self, secret, body, signature):
        if signature is None:
            signature = sign_payload('key', b'{}')

        assert not verify_signature(secret, body, signature)
