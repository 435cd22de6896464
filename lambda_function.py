"""AWS Lambda handler for delivery calendar sync and webhook notifications."""
import base64
import hmac
import json
import logging
import os
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from requests_toolbelt.multipart.decoder import (
    ImproperBodyPartContentException,
    MultipartDecoder,
    NonMultipartContentTypeException,
)

from config import AppConfig
from notifier.subscriptions import apply_webhook_update, build_webhook
from notifier.webhook_dispatcher import WebhookDispatcher
from processor.api_keys import API_KEY_PREFIX, hash_api_key, issue_api_key, key_allows
from processor.csv_export import export_events_csv
from processor.errors import (
    ConfigurationError,
    FetchError,
    MalformedCalendarError,
    PersistenceError,
    ValidationError,
)
from processor.event_processor import EventProcessor
from processor.models import (
    EXECUTION_FAILED,
    EXECUTION_PENDING,
    EXECUTION_SUCCESS,
    PERMISSION_READ,
    PERMISSION_WRITE,
    RUN_FAILED,
    ApiKey,
    SyncReport,
    utc_now_iso,
)
from processor.sync_reconciler import SyncReconciler
from scraper.ical_feed import ICalFeedClient, decode_upload
from storage.api_key_store import DynamoDBApiKeyStore
from storage.base import ApiKeyStore, EventStore, HistoryStore, WebhookStore
from storage.dynamodb_manager import DynamoDBManager
from storage.history_store import DynamoDBHistoryStore
from storage.webhook_store import DynamoDBWebhookStore

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_LOG_ATTRS = set(
    logging.LogRecord('', 0, '', 0, '', None, None).__dict__
) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any ``extra`` fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Collaborators wired together for one invocation."""
    config: AppConfig
    event_store: EventStore
    webhook_store: WebhookStore
    history_store: HistoryStore
    api_key_store: ApiKeyStore
    reconciler: SyncReconciler
    dispatcher: WebhookDispatcher


@dataclass
class ApiRequest:
    """HTTP request decoded from an API Gateway event (REST or HTTP API)."""
    method: str
    path: str
    headers: Dict[str, str]
    query: Dict[str, str]
    body: bytes


def build_components(config: AppConfig) -> Components:
    """
    Instantiate storage, reconciler and dispatcher from configuration.

    Args:
        config: Application configuration

    Returns:
        Components
    """
    event_store = DynamoDBManager(table_name=config.events_table)
    webhook_store = DynamoDBWebhookStore(table_name=config.webhooks_table)
    history_store = DynamoDBHistoryStore(
        executions_table=config.executions_table,
        sync_runs_table=config.sync_runs_table
    )
    api_key_store = DynamoDBApiKeyStore(table_name=config.api_keys_table)
    reconciler = SyncReconciler(
        feed_client=ICalFeedClient(
            timeout=config.timeout_seconds,
            max_retries=config.fetch_max_retries
        ),
        event_store=event_store,
        history_store=history_store,
        processor=EventProcessor(),
        parse_errors_as_failures=config.parse_errors_as_failures
    )
    dispatcher = WebhookDispatcher(
        webhook_store=webhook_store,
        history_store=history_store,
        base_delay=config.webhook_base_delay_seconds,
        max_delay=config.webhook_max_delay_seconds,
        max_workers=config.webhook_max_workers,
        require_signing=config.require_webhook_signing
    )
    return Components(
        config=config,
        event_store=event_store,
        webhook_store=webhook_store,
        history_store=history_store,
        api_key_store=api_key_store,
        reconciler=reconciler,
        dispatcher=dispatcher
    )


def json_response(status_code: int, body: Any, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    response_headers = {'Content-Type': 'application/json'}
    response_headers.update(headers or {})
    return {
        'statusCode': status_code,
        'headers': response_headers,
        'body': json.dumps(body, default=str)
    }


def error_response(status_code: int, message: str, error: Optional[Exception] = None, **extra) -> Dict[str, Any]:
    body = {
        'success': False,
        'message': message,
        'timestamp': utc_now_iso()
    }
    if error is not None:
        body['error'] = str(error)
        body['error_type'] = type(error).__name__
    body.update(extra)
    return json_response(status_code, body)


def parse_request(event: Dict[str, Any]) -> Optional[ApiRequest]:
    """
    Decode an API Gateway event.

    Args:
        event: Lambda event payload

    Returns:
        ApiRequest, or None for non-HTTP (scheduled) invocations

    Raises:
        ValidationError: If a base64-encoded body cannot be decoded
    """
    if not isinstance(event, dict):
        return None

    method = event.get('httpMethod')
    path = event.get('path')
    http = event.get('requestContext', {}).get('http') if isinstance(event.get('requestContext'), dict) else None
    if not method and isinstance(http, dict):
        method = http.get('method')
        path = event.get('rawPath') or http.get('path')
    if not method:
        return None

    raw_body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        try:
            body = base64.b64decode(raw_body, validate=True)
        except ValueError as e:
            raise ValidationError(f"Request body is not valid base64: {e}") from e
    else:
        body = raw_body.encode('utf-8') if isinstance(raw_body, str) else bytes(raw_body)

    return ApiRequest(
        method=method.upper(),
        path=path or '/',
        headers={k.lower(): v for k, v in (event.get('headers') or {}).items()},
        query=dict(event.get('queryStringParameters') or {}),
        body=body
    )


def bearer_token(request: ApiRequest) -> Optional[str]:
    header = request.headers.get('authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def authenticate(
    request: ApiRequest,
    secret: Optional[str],
    api_key_store: ApiKeyStore
) -> Tuple[bool, Optional[ApiKey]]:
    """
    Check the bearer token against the shared secret and issued API keys.

    Without a configured secret every request is accepted.

    Args:
        request: Decoded request
        secret: SYNC_SECRET value, if configured
        api_key_store: Store used to look up API keys by hash

    Returns:
        Tuple of (authenticated, matching ApiKey or None when the shared
        secret was presented)
    """
    if not secret:
        return True, None

    token = bearer_token(request)
    if token is None:
        return False, None
    if hmac.compare_digest(token.encode('utf-8'), secret.encode('utf-8')):
        return True, None
    if not token.startswith(API_KEY_PREFIX):
        return False, None

    api_key = api_key_store.find_api_key(hash_api_key(token))
    if api_key is None or not api_key.is_usable():
        return False, None
    return True, api_key


def record_key_use(api_key_store: ApiKeyStore, api_key: ApiKey) -> None:
    try:
        api_key_store.mark_api_key_used(api_key.key_id, utc_now_iso())
    except PersistenceError as e:
        logger.warning(f"Could not record use of API key {api_key.key_id}: {e}")


def compute_deadline(context: Any, safety_margin_ms: int) -> Optional[float]:
    """
    Derive a time.monotonic() deadline from the Lambda context.

    Returns:
        Deadline, or None if the context does not report remaining time
    """
    get_remaining = getattr(context, 'get_remaining_time_in_millis', None)
    if get_remaining is None:
        return None
    remaining_ms = get_remaining()
    if not isinstance(remaining_ms, (int, float)):
        return None
    return time.monotonic() + max(0, remaining_ms - safety_margin_ms) / 1000


def publish_changes(
    dispatcher: WebhookDispatcher,
    report: SyncReport,
    deadline: Optional[float] = None
) -> Dict[str, Any]:
    """
    Dispatch the domain events collected during a sync.

    Args:
        dispatcher: WebhookDispatcher
        report: Completed SyncReport
        deadline: Run deadline

    Returns:
        Summary of delivery outcomes
    """
    summary = {'events': 0, 'deliveries': 0, 'succeeded': 0, 'failed': 0, 'pending': 0}
    for event_type, payload in report.changes:
        try:
            deliveries = dispatcher.dispatch(event_type, payload, deadline=deadline)
        except (ConfigurationError, PersistenceError) as e:
            logger.error(
                f"Failed to dispatch {event_type}: {e}",
                extra={'error_type': type(e).__name__}
            )
            summary['error'] = str(e)
            break

        summary['events'] += 1
        summary['deliveries'] += len(deliveries)
        for delivery in deliveries:
            if delivery.status == EXECUTION_SUCCESS:
                summary['succeeded'] += 1
            elif delivery.status == EXECUTION_FAILED:
                summary['failed'] += 1
            elif delivery.status == EXECUTION_PENDING:
                summary['pending'] += 1
    return summary


def sync_response(
    components: Components,
    report: SyncReport,
    start_time: float,
    deadline: Optional[float]
) -> Dict[str, Any]:
    """Publish changes and build the HTTP response for a finished sync."""
    notifications = publish_changes(components.dispatcher, report, deadline)
    duration = time.time() - start_time
    success = report.status != RUN_FAILED

    logger.info(
        "Lambda execution completed successfully" if success else "Lambda execution completed with failures",
        extra={
            'duration_seconds': round(duration, 2),
            'events_added': report.added,
            'events_updated': report.updated,
            'events_failed': report.failed,
            'sync_status': report.status
        }
    )

    return json_response(200 if success else 500, {
        'success': success,
        'message': 'Sync completed successfully' if success else 'Sync failed for every event',
        'status': report.status,
        'processed': report.processed,
        'errors': report.errors,
        'timestamp': utc_now_iso(),
        'statistics': {
            'events_added': report.added,
            'events_updated': report.updated,
            'events_unchanged': report.unchanged,
            'events_failed': report.failed,
            'parse_errors': report.parse_errors,
            'timed_out': report.timed_out,
            'duration_seconds': round(duration, 2)
        },
        'notifications': notifications
    })


def handle_sync(request: Optional[ApiRequest], components: Components, context: Any) -> Dict[str, Any]:
    """Fetch the configured calendar URL and reconcile it."""
    start_time = time.time()
    deadline = compute_deadline(context, components.config.run_safety_margin_ms)
    calendar_url = components.config.require_calendar_url()

    try:
        logger.info("Fetching events from calendar")
        report = components.reconciler.sync(calendar_url, deadline=deadline)
    except FetchError as e:
        logger.error(
            f"Failed to fetch events from calendar after retries: {e}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return error_response(500, 'Failed to fetch calendar events', e,
                              duration_seconds=round(time.time() - start_time, 2))
    except MalformedCalendarError as e:
        logger.error(f"Calendar document could not be parsed: {e}", exc_info=True)
        return error_response(500, 'Failed to parse calendar', e,
                              duration_seconds=round(time.time() - start_time, 2))
    except PersistenceError as e:
        logger.error(f"Error reading stored events: {e}", exc_info=True)
        return error_response(500, 'Failed to sync events with storage', e,
                              note='Previously stored events are unchanged',
                              duration_seconds=round(time.time() - start_time, 2))

    return sync_response(components, report, start_time, deadline)


def handle_upload(request: ApiRequest, components: Components, context: Any) -> Dict[str, Any]:
    """Reconcile an uploaded .ics file through the same pipeline."""
    start_time = time.time()
    deadline = compute_deadline(context, components.config.run_safety_margin_ms)

    try:
        upload = extract_upload(request)
    except ValidationError as e:
        return error_response(400, 'Invalid upload', e)
    if upload is None:
        return error_response(400, 'No file provided')

    filename, content = upload
    try:
        report = components.reconciler.sync_document(
            decode_upload(content), source=f"upload:{filename}", deadline=deadline
        )
    except MalformedCalendarError as e:
        logger.warning(f"Uploaded calendar {filename} could not be parsed: {e}")
        return error_response(400, 'Failed to process file', e)
    except PersistenceError as e:
        logger.error(f"Error reading stored events: {e}", exc_info=True)
        return error_response(500, 'Failed to sync events with storage', e)

    return sync_response(components, report, start_time, deadline)


def extract_upload(request: ApiRequest) -> Optional[Tuple[str, bytes]]:
    """
    Find the uploaded calendar file in a request.

    Accepts a multipart form with a ``file`` field or a raw calendar body.

    Returns:
        Tuple of (filename, content), or None if no file was sent

    Raises:
        ValidationError: If the multipart body is malformed
    """
    if not request.body:
        return None

    content_type = request.headers.get('content-type', '')
    if not content_type.lower().startswith('multipart/form-data'):
        return 'upload.ics', request.body

    try:
        decoder = MultipartDecoder(request.body, content_type)
    except (ImproperBodyPartContentException, NonMultipartContentTypeException) as e:
        raise ValidationError(f"Malformed multipart body: {e}") from e

    for part in decoder.parts:
        disposition = part.headers.get(b'Content-Disposition', b'').decode('utf-8', 'replace')
        field_name = re.search(r'(?:^|;)\s*name="([^"]*)"', disposition)
        if field_name and field_name.group(1) == 'file':
            filename = re.search(r'filename="([^"]*)"', disposition)
            if not part.content:
                return None
            return (filename.group(1) if filename else 'upload.ics'), part.content
    return None


def handle_export(request: ApiRequest, components: Components, context: Any) -> Dict[str, Any]:
    """Return all stored events as a CSV attachment."""
    events = components.event_store.fetch_events()
    return {
        'statusCode': 200,
        'headers': {
            'Content-Type': 'text/csv; charset=utf-8',
            'Content-Disposition': 'attachment; filename=events.csv'
        },
        'body': export_events_csv(events.values())
    }


def handle_sync_history(request: ApiRequest, components: Components, context: Any) -> Dict[str, Any]:
    limit = query_limit(request)
    runs = components.history_store.list_sync_runs(limit)
    return json_response(200, [run.to_dict() for run in runs])


def handle_list_webhooks(request: ApiRequest, components: Components, context: Any) -> Dict[str, Any]:
    webhooks = components.webhook_store.list_webhooks()
    return json_response(200, [webhook.to_dict() for webhook in webhooks])


def handle_create_webhook(request: ApiRequest, components: Components, context: Any) -> Dict[str, Any]:
    webhook = build_webhook(json_body(request))
    components.webhook_store.put_webhook(webhook)
    logger.info(f"Created webhook {webhook.webhook_id}", extra={'events': webhook.events})
    return json_response(201, webhook.to_dict())


def handle_update_webhook(request: ApiRequest, components: Components, context: Any,
                          webhook_id: str) -> Dict[str, Any]:
    webhook = components.webhook_store.get_webhook(webhook_id)
    if webhook is None:
        return error_response(404, f"Webhook {webhook_id} not found")
    updated = apply_webhook_update(webhook, json_body(request))
    components.webhook_store.put_webhook(updated)
    return json_response(200, updated.to_dict())


def handle_toggle_webhook(request: ApiRequest, components: Components, context: Any,
                          webhook_id: str) -> Dict[str, Any]:
    data = json_body(request)
    active = data.get('active', data.get('isActive'))
    if not isinstance(active, bool):
        raise ValidationError("active must be a boolean")
    webhook = components.webhook_store.get_webhook(webhook_id)
    if webhook is None:
        return error_response(404, f"Webhook {webhook_id} not found")
    updated = apply_webhook_update(webhook, {'active': active})
    components.webhook_store.put_webhook(updated)
    return json_response(200, updated.to_dict())


def handle_delete_webhook(request: ApiRequest, components: Components, context: Any,
                          webhook_id: str) -> Dict[str, Any]:
    if not components.webhook_store.delete_webhook(webhook_id):
        return error_response(404, f"Webhook {webhook_id} not found")
    return json_response(200, {'success': True})


def handle_list_executions(request: ApiRequest, components: Components, context: Any,
                           webhook_id: str) -> Dict[str, Any]:
    limit = query_limit(request)
    executions = components.history_store.list_executions(webhook_id, limit)
    return json_response(200, [execution.to_dict() for execution in executions])


def handle_list_api_keys(request: ApiRequest, components: Components, context: Any) -> Dict[str, Any]:
    api_keys = components.api_key_store.list_api_keys()
    return json_response(200, [api_key.to_dict() for api_key in api_keys])


def handle_create_api_key(request: ApiRequest, components: Components, context: Any) -> Dict[str, Any]:
    """Issue a key. The plaintext key is returned once and never stored."""
    key, api_key = issue_api_key(json_body(request))
    components.api_key_store.put_api_key(api_key)
    logger.info(f"Issued API key {api_key.key_id}", extra={'permissions': api_key.permissions})
    return json_response(201, {'key': key, **api_key.to_dict()})


def handle_toggle_api_key(request: ApiRequest, components: Components, context: Any,
                          key_id: str) -> Dict[str, Any]:
    data = json_body(request)
    is_active = data.get('is_active', data.get('active'))
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean")
    api_key = components.api_key_store.get_api_key(key_id)
    if api_key is None:
        return error_response(404, f"API key {key_id} not found")
    updated = replace(api_key, is_active=is_active)
    components.api_key_store.put_api_key(updated)
    return json_response(200, updated.to_dict())


def handle_delete_api_key(request: ApiRequest, components: Components, context: Any,
                          key_id: str) -> Dict[str, Any]:
    if not components.api_key_store.delete_api_key(key_id):
        return error_response(404, f"API key {key_id} not found")
    logger.info(f"Deleted API key {key_id}")
    return json_response(200, {'success': True})


def json_body(request: ApiRequest) -> Dict[str, Any]:
    try:
        data = json.loads(request.body or b'{}')
    except ValueError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def query_limit(request: ApiRequest, default: int = 20, maximum: int = 100) -> int:
    raw = request.query.get('limit')
    if raw is None:
        return default
    try:
        limit = int(raw)
    except ValueError:
        raise ValidationError(f"limit must be an integer, got {raw!r}") from None
    return max(1, min(limit, maximum))


_WEBHOOK = r'/webhooks/(?P<webhook_id>[^/]+)'
_API_KEY = r'/settings/api-keys/(?P<key_id>[^/]+)'

# Only the shared secret may manage API keys
PERMISSION_ADMIN = 'admin'

ROUTES: List[Tuple[str, re.Pattern, Callable[..., Dict[str, Any]], str]] = [
    ('GET', re.compile(r'^/sync/?$'), handle_sync, PERMISSION_WRITE),
    ('POST', re.compile(r'^/sync/?$'), handle_sync, PERMISSION_WRITE),
    ('GET', re.compile(r'^/sync/history/?$'), handle_sync_history, PERMISSION_READ),
    ('POST', re.compile(r'^/calendar/upload/?$'), handle_upload, PERMISSION_WRITE),
    ('GET', re.compile(r'^/events/export/?$'), handle_export, PERMISSION_READ),
    ('GET', re.compile(r'^/webhooks/?$'), handle_list_webhooks, PERMISSION_READ),
    ('POST', re.compile(r'^/webhooks/?$'), handle_create_webhook, PERMISSION_WRITE),
    ('PUT', re.compile(rf'^{_WEBHOOK}/?$'), handle_update_webhook, PERMISSION_WRITE),
    ('DELETE', re.compile(rf'^{_WEBHOOK}/?$'), handle_delete_webhook, PERMISSION_WRITE),
    ('PATCH', re.compile(rf'^{_WEBHOOK}/toggle/?$'), handle_toggle_webhook, PERMISSION_WRITE),
    ('GET', re.compile(rf'^{_WEBHOOK}/executions/?$'), handle_list_executions, PERMISSION_READ),
    ('GET', re.compile(r'^/settings/api-keys/?$'), handle_list_api_keys, PERMISSION_ADMIN),
    ('POST', re.compile(r'^/settings/api-keys/?$'), handle_create_api_key, PERMISSION_ADMIN),
    ('PATCH', re.compile(rf'^{_API_KEY}/?$'), handle_toggle_api_key, PERMISSION_ADMIN),
    ('DELETE', re.compile(rf'^{_API_KEY}/?$'), handle_delete_api_key, PERMISSION_ADMIN),
]


def match_route(
    request: ApiRequest
) -> Tuple[Optional[Callable[..., Dict[str, Any]]], Dict[str, str], bool, Optional[str]]:
    """
    Find the handler for a request.

    Returns:
        Tuple of (handler or None, path parameters, whether the path exists,
        permission the route requires)
    """
    path_exists = False
    for method, pattern, route_handler, permission in ROUTES:
        match = pattern.match(request.path)
        if not match:
            continue
        path_exists = True
        if method == request.method:
            return route_handler, match.groupdict(), True, permission
    return None, {}, path_exists, None


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    Scheduled (EventBridge) invocations run a calendar sync; API Gateway
    invocations are routed by method and path.

    Args:
        event: EventBridge or API Gateway event payload
        context: Lambda context object

    Returns:
        API Gateway style response dict with statusCode and body
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    start_time = time.time()
    try:
        request = parse_request(event)
    except ValidationError as e:
        logger.warning(f"Rejected undecodable request: {e}")
        return error_response(400, 'Invalid request', e)

    logger.info(
        "Lambda execution started",
        extra={
            'trigger': 'http' if request else 'schedule',
            'method': request.method if request else None,
            'path': request.path if request else None
        }
    )

    try:
        config = AppConfig.from_env()

        components = build_components(config)

        if request is None:
            return handle_sync(None, components, context)

        authenticated, api_key = authenticate(request, config.sync_secret, components.api_key_store)
        if not authenticated:
            logger.warning("Rejected request with missing or invalid bearer token")
            return json_response(401, {'success': False, 'message': 'Unauthorized'})

        route_handler, params, path_exists, permission = match_route(request)
        if route_handler is None:
            if path_exists:
                return error_response(405, f"Method {request.method} not allowed")
            return error_response(404, f"No route for {request.path}")

        if api_key is not None:
            if not key_allows(api_key, permission):
                logger.warning(
                    f"API key {api_key.key_id} lacks {permission} permission",
                    extra={'path': request.path}
                )
                return error_response(403, 'Forbidden')
            record_key_use(components.api_key_store, api_key)

        return route_handler(request, components, context, **params)

    except ValidationError as e:
        logger.warning(f"Rejected invalid request: {e}")
        return error_response(400, 'Invalid request', e)

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}", extra={'error_type': type(e).__name__})
        return error_response(500, 'Configuration error', e)

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {e}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return error_response(500, 'Request failed', e,
                              duration_seconds=round(duration, 2))
