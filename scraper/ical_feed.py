"""HTTP client for iCal calendar feeds."""
import logging
import time

import requests

from processor.errors import ConfigurationError, FetchError

logger = logging.getLogger(__name__)


class ICalFeedClient:
    """Fetches raw iCal documents from a calendar URL."""

    USER_AGENT = 'delivery-calendar-sync/1.0'

    def __init__(self, timeout: int = 30, max_retries: int = 3, base_delay: float = 1):
        """
        Initialize the feed client.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Total number of fetch attempts (default: 3)
            base_delay: Initial backoff delay in seconds (default: 1)
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay

    def fetch(self, calendar_url: str) -> str:
        """
        Fetch the iCal document at calendar_url with retry logic.

        Args:
            calendar_url: http(s) or webcal URL of the feed

        Returns:
            iCal document text

        Raises:
            ConfigurationError: If no URL is given
            FetchError: If all retry attempts fail
        """
        if not calendar_url or not calendar_url.strip():
            raise ConfigurationError("Calendar URL is not configured")

        url = self._normalize_url(calendar_url.strip())
        last_error = None
        status_code = None

        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Fetching calendar feed (attempt {attempt + 1}/{self.max_retries})"
                )
                response = requests.get(
                    url,
                    headers={
                        'Accept': 'text/calendar, */*',
                        'User-Agent': self.USER_AGENT,
                    },
                    timeout=self.timeout
                )
                response.raise_for_status()
                return response.text

            except requests.RequestException as e:
                last_error = e
                response = getattr(e, 'response', None)
                status_code = response.status_code if response is not None else None
                if attempt < self.max_retries - 1:
                    # Calculate exponential backoff delay
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )

        raise FetchError(
            f"Failed to fetch calendar data: {last_error}",
            status_code=status_code
        )

    @staticmethod
    def _normalize_url(url: str) -> str:
        """Rewrite webcal:// URLs to https://."""
        if url.lower().startswith('webcal://'):
            return 'https://' + url[len('webcal://'):]
        return url


def decode_upload(content: bytes) -> str:
    """
    Decode an uploaded .ics file.

    Args:
        content: Raw file bytes

    Returns:
        Document text; UTF-8 (with or without BOM), falling back to latin-1
    """
    try:
        return content.decode('utf-8-sig')
    except UnicodeDecodeError:
        logger.warning("Uploaded calendar is not valid UTF-8, decoding as latin-1")
        return content.decode('latin-1')
