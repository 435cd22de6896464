"""Shared fixtures for the calendar sync tests."""
import os

import pytest

from storage.memory_store import InMemoryStore


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real AWS credentials."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


def make_vevent(
    uid='event-1@example.com',
    summary='CA123456 UPS Package',
    description='Tracking Number: 1Z999AA10123456784\\nhttps://ups.com/track?n=1Z999AA10123456784',
    dtstart='DTSTART:20240115T100000Z',
    dtend='DTEND:20240115T110000Z',
    status='CONFIRMED',
    extra_lines=()
):
    """Build one VEVENT block. Pass None to omit a property."""
    lines = ['BEGIN:VEVENT']
    if uid is not None:
        lines.append(f'UID:{uid}')
    if summary is not None:
        lines.append(f'SUMMARY:{summary}')
    if description is not None:
        lines.append(f'DESCRIPTION:{description}')
    if dtstart is not None:
        lines.append(dtstart)
    if dtend is not None:
        lines.append(dtend)
    if status is not None:
        lines.append(f'STATUS:{status}')
    lines.extend(extra_lines)
    lines.append('END:VEVENT')
    return '\r\n'.join(lines)


def make_calendar(*vevents):
    """Wrap VEVENT blocks in a VCALENDAR document."""
    lines = [
        'BEGIN:VCALENDAR',
        'VERSION:2.0',
        'PRODID:-//Example Corp//Deliveries//EN',
    ]
    lines.extend(vevents)
    lines.append('END:VCALENDAR')
    return '\r\n'.join(lines) + '\r\n'


@pytest.fixture
def memory_store():
    """Fresh in-memory event, webhook and history store."""
    return InMemoryStore()


@pytest.fixture
def sample_ics():
    """Calendar with two delivery events."""
    return make_calendar(
        make_vevent(),
        make_vevent(
            uid='event-2@example.com',
            summary='TX55555 FedEx Freight',
            description='Tracking Number: 7712345678',
            dtstart='DTSTART:20240116T140000Z',
            dtend='DTEND:20240116T160000Z',
            status='TENTATIVE'
        )
    )
