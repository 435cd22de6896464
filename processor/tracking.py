"""Extraction of shipment tracking details from event text.

Every function here is pure and total: a missing pattern yields an empty
value, never an exception.
"""
import re
from typing import Optional

from processor.models import TrackingInfo

# Scan order matters: the first carrier found in the title wins.
CARRIERS = ('UPS', 'FedEx', 'USPS')

TRACKING_NUMBER_PATTERN = re.compile(r'Tracking Number:\s*(\S+)', re.IGNORECASE)
TRACKING_LINK_PATTERN = re.compile(r'https?://\S+', re.IGNORECASE)
STATE_CODE_PATTERN = re.compile(r'^([A-Z]{2})\d')


def detect_carrier(title: Optional[str]) -> Optional[str]:
    """
    Detect the shipping carrier named in a title.

    Args:
        title: Event title

    Returns:
        Carrier name from CARRIERS, or None if no carrier is mentioned
    """
    lowered = (title or '').lower()
    for carrier in CARRIERS:
        if carrier.lower() in lowered:
            return carrier
    return None


def find_tracking_number(description: Optional[str]) -> str:
    """Return the value after 'Tracking Number:' or an empty string."""
    match = TRACKING_NUMBER_PATTERN.search(description or '')
    return match.group(1) if match else ''


def find_tracking_link(description: Optional[str]) -> str:
    """Return the first http(s) URL in the description or an empty string."""
    match = TRACKING_LINK_PATTERN.search(description or '')
    return match.group(0) if match else ''


def find_state_code(title: Optional[str]) -> str:
    """
    Return the two-letter state prefix of a title such as "CA12345 delivery".

    Args:
        title: Event title

    Returns:
        Uppercase state code, or an empty string
    """
    match = STATE_CODE_PATTERN.match(title or '')
    return match.group(1) if match else ''


def extract(title: Optional[str], description: Optional[str]) -> TrackingInfo:
    """
    Extract carrier, tracking number, tracking link and state code.

    Args:
        title: Event title (SUMMARY)
        description: Event description

    Returns:
        TrackingInfo with empty fields for anything not found
    """
    return TrackingInfo(
        carrier=detect_carrier(title),
        tracking_number=find_tracking_number(description),
        tracking_link=find_tracking_link(description),
        state_code=find_state_code(title),
    )
