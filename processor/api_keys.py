"""Issuing and checking API keys for the HTTP routes."""
import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import (
    BaseModel,
    Field,
    StrictInt,
    ValidationError as SchemaValidationError,
    constr,
)

from processor.errors import ValidationError
from processor.models import PERMISSION_READ, PERMISSION_WRITE, ApiKey

API_KEY_PREFIX = 'ical_'
MAX_EXPIRY_DAYS = 3650


class ApiKeyRequest(BaseModel):
    """Body of an API key creation request."""
    name: constr(strip_whitespace=True, min_length=1)
    permissions: List[Literal[PERMISSION_READ, PERMISSION_WRITE]] = Field(
        default_factory=lambda: [PERMISSION_READ], min_length=1
    )
    expires_in: Optional[StrictInt] = Field(None, ge=1, le=MAX_EXPIRY_DAYS)


def generate_api_key() -> str:
    """Return a new random key, e.g. "ical_Zq3...". Shown to the caller once."""
    return API_KEY_PREFIX + secrets.token_urlsafe(24)


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode('utf-8')).hexdigest()


def issue_api_key(data: Dict[str, Any], now: Optional[datetime] = None) -> Tuple[str, ApiKey]:
    """
    Create an API key from a request payload.

    Args:
        data: Decoded JSON request body with ``name``, ``permissions`` and
            ``expires_in`` (days, optional)
        now: Issue time (default: current UTC time)

    Returns:
        Tuple of (plaintext key, ApiKey record holding only its hash)

    Raises:
        ValidationError: If the payload is invalid
    """
    try:
        request = ApiKeyRequest.model_validate(data)
    except SchemaValidationError as e:
        first = e.errors()[0]
        location = '.'.join(str(part) for part in first['loc']) or 'body'
        raise ValidationError(f"{location}: {first['msg']}") from e

    now = now or datetime.now(timezone.utc)
    expires_at = None
    if request.expires_in is not None:
        expires_at = (now + timedelta(days=request.expires_in)).isoformat(timespec='microseconds')

    key = generate_api_key()
    api_key = ApiKey(
        key_id=str(uuid.uuid4()),
        name=request.name,
        key_hash=hash_api_key(key),
        # Deduplicated, order kept
        permissions=list(dict.fromkeys(request.permissions)),
        created_at=now.isoformat(timespec='microseconds'),
        expires_at=expires_at
    )
    return key, api_key


def key_allows(api_key: Optional[ApiKey], permission: str, now: Optional[datetime] = None) -> bool:
    """True if the key is active, unexpired and granted the permission."""
    if api_key is None or not api_key.is_usable(now):
        return False
    return permission in api_key.permissions
