"""Configuration loaded from Lambda environment variables."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from processor.errors import ConfigurationError

TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


@dataclass
class AppConfig:
    """Runtime settings for the sync function."""
    calendar_url: Optional[str] = None
    events_table: str = 'calendar-events'
    webhooks_table: str = 'webhooks'
    executions_table: str = 'webhook-executions'
    sync_runs_table: str = 'sync-runs'
    api_keys_table: str = 'api-keys'
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    fetch_max_retries: int = 3
    sync_secret: Optional[str] = None
    parse_errors_as_failures: bool = True
    require_webhook_signing: bool = False
    webhook_base_delay_seconds: float = 1.0
    webhook_max_delay_seconds: float = 30.0
    webhook_max_workers: int = 5
    run_safety_margin_ms: int = 2000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            AppConfig

        Raises:
            ConfigurationError: If a numeric or boolean value is malformed
        """
        env = os.environ if environ is None else environ
        return cls(
            calendar_url=env.get('CALENDAR_URL') or None,
            events_table=env.get('EVENTS_TABLE', 'calendar-events'),
            webhooks_table=env.get('WEBHOOKS_TABLE', 'webhooks'),
            executions_table=env.get('EXECUTIONS_TABLE', 'webhook-executions'),
            sync_runs_table=env.get('SYNC_RUNS_TABLE', 'sync-runs'),
            api_keys_table=env.get('API_KEYS_TABLE', 'api-keys'),
            log_level=env.get('LOG_LEVEL', 'INFO'),
            timeout_seconds=_int(env, 'TIMEOUT_SECONDS', 30, minimum=1),
            fetch_max_retries=_int(env, 'FETCH_MAX_RETRIES', 3, minimum=1),
            sync_secret=env.get('SYNC_SECRET') or None,
            parse_errors_as_failures=_bool(env, 'PARSE_ERRORS_AS_FAILURES', True),
            require_webhook_signing=_bool(env, 'REQUIRE_WEBHOOK_SIGNING', False),
            webhook_base_delay_seconds=_float(env, 'WEBHOOK_BASE_DELAY_SECONDS', 1.0),
            webhook_max_delay_seconds=_float(env, 'WEBHOOK_MAX_DELAY_SECONDS', 30.0),
            webhook_max_workers=_int(env, 'WEBHOOK_MAX_WORKERS', 5, minimum=1),
            run_safety_margin_ms=_int(env, 'RUN_SAFETY_MARGIN_MS', 2000)
        )

    def require_calendar_url(self) -> str:
        """Return the calendar URL or raise ConfigurationError if unset."""
        if not self.calendar_url:
            raise ConfigurationError('CALENDAR_URL environment variable is not set')
        return self.calendar_url


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    lowered = raw.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")
