"""Validation of webhook create and update requests."""
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    Field,
    HttpUrl,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError as SchemaValidationError,
    constr,
)

from processor.errors import ValidationError
from processor.models import (
    CALENDAR_CREATED,
    CALENDAR_DELETED,
    CALENDAR_UPDATED,
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_UPDATED,
    Webhook,
    utc_now_iso,
)

MAX_RETRY_COUNT = 10
MAX_TIMEOUT_MS = 60000

UPDATABLE_FIELDS = (
    'name', 'url', 'events', 'active', 'secret', 'description',
    'headers', 'retry_count', 'timeout_ms',
)

EventType = Literal[
    CALENDAR_CREATED, CALENDAR_UPDATED, CALENDAR_DELETED,
    EVENT_CREATED, EVENT_UPDATED, EVENT_DELETED,
]


class WebhookSettings(BaseModel):
    """Client-settable webhook fields. Unknown keys are ignored."""
    name: constr(strip_whitespace=True, min_length=1)
    url: HttpUrl
    events: List[EventType] = Field(min_length=1)
    active: StrictBool = True
    secret: Optional[StrictStr] = None
    description: Optional[StrictStr] = None
    headers: Dict[StrictStr, StrictStr] = Field(default_factory=dict)
    retry_count: StrictInt = Field(3, ge=0, le=MAX_RETRY_COUNT)
    timeout_ms: StrictInt = Field(10000, ge=1, le=MAX_TIMEOUT_MS)


def build_webhook(data: Dict[str, Any], webhook_id: Optional[str] = None) -> Webhook:
    """
    Create a Webhook from a request payload.

    Args:
        data: Decoded JSON request body
        webhook_id: Identifier to use (default: a new UUID)

    Returns:
        Validated Webhook

    Raises:
        ValidationError: If any field is invalid
    """
    settings = _validate(data)
    return Webhook(
        webhook_id=webhook_id or str(uuid.uuid4()),
        created_at=utc_now_iso(),
        **_settings_fields(settings)
    )


def apply_webhook_update(webhook: Webhook, data: Dict[str, Any]) -> Webhook:
    """
    Apply a partial update to an existing webhook.

    The merged result is validated as a whole. Counters, identifiers and
    timestamps cannot be changed by an update.

    Raises:
        ValidationError: If the updated webhook is invalid
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    merged = {name: getattr(webhook, name) for name in UPDATABLE_FIELDS}
    merged.update({name: data[name] for name in UPDATABLE_FIELDS if name in data})
    return replace(webhook, **_settings_fields(_validate(merged)))


def _validate(data: Any) -> WebhookSettings:
    try:
        return WebhookSettings.model_validate(data)
    except SchemaValidationError as e:
        first = e.errors()[0]
        location = '.'.join(str(part) for part in first['loc']) or 'body'
        raise ValidationError(f"{location}: {first['msg']}") from e


def _settings_fields(settings: WebhookSettings) -> Dict[str, Any]:
    fields = settings.model_dump()
    fields['url'] = str(settings.url)
    # An empty secret disables signing
    fields['secret'] = settings.secret or None
    return fields
