"""Unit tests for API key issuing and checks."""
from datetime import datetime, timedelta, timezone

import pytest

from processor.api_keys import (
    API_KEY_PREFIX,
    hash_api_key,
    issue_api_key,
    key_allows,
)
from processor.errors import ValidationError
from processor.models import PERMISSION_READ, PERMISSION_WRITE

ISSUED_AT = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestIssueApiKey:
    """Test cases for issue_api_key."""

    def test_issue_stores_only_hash(self):
        key, api_key = issue_api_key({'name': 'Reporting', 'permissions': [PERMISSION_READ]})

        assert key.startswith(API_KEY_PREFIX)
        assert len(key) == len(API_KEY_PREFIX) + 32
        assert api_key.key_hash == hash_api_key(key)
        assert key not in api_key.to_dict().values()
        assert 'key_hash' not in api_key.to_dict()

    def test_issue_defaults(self):
        _, api_key = issue_api_key({'name': 'Reporting'})

        assert api_key.permissions == [PERMISSION_READ]
        assert api_key.is_active is True
        assert api_key.expires_at is None

    def test_issue_with_expiry(self):
        _, api_key = issue_api_key({'name': 'Reporting', 'expires_in': 30}, now=ISSUED_AT)

        assert datetime.fromisoformat(api_key.expires_at) == ISSUED_AT + timedelta(days=30)
        assert api_key.is_usable(ISSUED_AT + timedelta(days=29))
        assert not api_key.is_usable(ISSUED_AT + timedelta(days=31))

    def test_issue_generates_distinct_keys(self):
        first, _ = issue_api_key({'name': 'a'})
        second, _ = issue_api_key({'name': 'b'})

        assert first != second

    @pytest.mark.parametrize('data', [
        {},
        {'name': '   '},
        {'name': 'x', 'permissions': []},
        {'name': 'x', 'permissions': ['admin']},
        {'name': 'x', 'expires_in': 0},
        {'name': 'x', 'expires_in': '30'},
        ['not', 'an', 'object'],
    ])
    def test_issue_rejects_invalid(self, data):
        with pytest.raises(ValidationError):
            issue_api_key(data)


class TestKeyAllows:
    """Test cases for key_allows."""

    def test_permission_granted(self):
        _, api_key = issue_api_key({'name': 'x', 'permissions': [PERMISSION_READ, PERMISSION_WRITE]})

        assert key_allows(api_key, PERMISSION_WRITE)

    def test_permission_missing(self):
        _, api_key = issue_api_key({'name': 'x', 'permissions': [PERMISSION_READ]})

        assert not key_allows(api_key, PERMISSION_WRITE)
        assert not key_allows(api_key, 'admin')

    def test_inactive_key(self):
        _, api_key = issue_api_key({'name': 'x'})
        api_key.is_active = False

        assert not key_allows(api_key, PERMISSION_READ)

    def test_missing_key(self):
        assert not key_allows(None, PERMISSION_READ)
