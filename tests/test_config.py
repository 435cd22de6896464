"""Unit tests for environment configuration."""
import pytest

from config import AppConfig
from processor.errors import ConfigurationError


class TestAppConfig:
    """Test cases for AppConfig.from_env."""

    def test_defaults(self):
        config = AppConfig.from_env({})

        assert config.calendar_url is None
        assert config.events_table == 'calendar-events'
        assert config.webhooks_table == 'webhooks'
        assert config.executions_table == 'webhook-executions'
        assert config.sync_runs_table == 'sync-runs'
        assert config.api_keys_table == 'api-keys'
        assert config.timeout_seconds == 30
        assert config.fetch_max_retries == 3
        assert config.sync_secret is None
        assert config.parse_errors_as_failures is True
        assert config.require_webhook_signing is False
        assert config.webhook_max_workers == 5
        assert config.run_safety_margin_ms == 2000

    def test_overrides(self):
        config = AppConfig.from_env({
            'CALENDAR_URL': 'https://calendar.example.com/feed.ics',
            'EVENTS_TABLE': 'prod-events',
            'API_KEYS_TABLE': 'prod-api-keys',
            'TIMEOUT_SECONDS': '10',
            'SYNC_SECRET': 'token',
            'PARSE_ERRORS_AS_FAILURES': 'false',
            'REQUIRE_WEBHOOK_SIGNING': 'YES',
            'WEBHOOK_BASE_DELAY_SECONDS': '0.5',
        })

        assert config.require_calendar_url() == 'https://calendar.example.com/feed.ics'
        assert config.events_table == 'prod-events'
        assert config.api_keys_table == 'prod-api-keys'
        assert config.timeout_seconds == 10
        assert config.sync_secret == 'token'
        assert config.parse_errors_as_failures is False
        assert config.require_webhook_signing is True
        assert config.webhook_base_delay_seconds == 0.5

    def test_require_calendar_url_missing(self):
        config = AppConfig.from_env({'CALENDAR_URL': ''})

        with pytest.raises(ConfigurationError, match='CALENDAR_URL'):
            config.require_calendar_url()

    @pytest.mark.parametrize('name,value', [
        ('TIMEOUT_SECONDS', 'thirty'),
        ('TIMEOUT_SECONDS', '0'),
        ('WEBHOOK_MAX_WORKERS', '0'),
        ('WEBHOOK_MAX_DELAY_SECONDS', '-1'),
        ('PARSE_ERRORS_AS_FAILURES', 'maybe'),
    ])
    def test_malformed_values(self, name, value):
        with pytest.raises(ConfigurationError, match=name):
            AppConfig.from_env({name: value})
