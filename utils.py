#!/usr/bin/env python3
"""
Utility classes and functions for the feed campaign engine.

Shared helpers used by the fetcher, the ingestion pipeline and the renderer:
retry backoff, URL validation, HTML to plain text conversion and transcoding
of characters outside the Basic Multilingual Plane.
"""

from asyncio import sleep
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime, format_datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import re

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

logger = get_logger("utils")

ASTRAL_PATTERN = re.compile('[\U00010000-\U0010FFFF]')


def validate_url(url: str) -> bool:
    """Validate if a string looks like an http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given (0-based) retry attempt."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def normalize_http_date(date_value: Optional[str]) -> Optional[str]:
    """Normalize an HTTP date string to RFC 7231 format (GMT)."""
    if not date_value:
        return None
    try:
        dt = parsedate_to_datetime(date_value)
        if not dt:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return format_datetime(dt.astimezone(timezone.utc), usegmt=True)
    except (TypeError, ValueError, OverflowError) as exc:
        logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
        return None


def convert_to_entities(text: Optional[str]) -> str:
    """Replace code points above U+FFFF with numeric character references.

    Keeps item content storable in databases limited to 3-byte UTF-8.
    """
    if not text:
        return text or ''
    return ASTRAL_PATTERN.sub(lambda m: f"&#{ord(m.group(0))};", text)


def resolve_timezone(name: Optional[str]):
    """Return a tzinfo for `name`, falling back to UTC."""
    if not name or name.upper() == 'UTC':
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Unknown time zone '{name}', using UTC: {e}")
        return timezone.utc


def format_timestamp(timestamp: Optional[int], date_format: str = "%d %B %Y %H:%M", tz=None) -> str:
    """Format an epoch timestamp for display in the given time zone."""
    if timestamp in (None, ''):
        return ''
    try:
        dt = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return ''
    return dt.astimezone(tz or timezone.utc).strftime(date_format)


def html_to_text(html_content: str) -> str:
    """Convert an HTML fragment to readable plain text (Markdown flavoured).

    Line wrapping is disabled so URLs are never split across lines.
    """
    if not html_content:
        return ""
    try:
        soup = BeautifulSoup(html_content, 'html.parser')
        for tag in soup(["script", "style", "head"]):
            tag.decompose()
        # In-page anchors carry no text and only add noise
        for anchor in soup.find_all('a'):
            if not anchor.get_text(strip=True) and not anchor.find('img'):
                anchor.decompose()
        text = md(str(soup), heading_style="ATX", wrap_width=0)
    except (ValueError, TypeError) as e:
        logger.error(f"Error converting HTML to text: {e}")
        return html_content
    # Collapse the blank lines markdownify leaves between block elements
    return re.sub(r'\n{3,}', '\n\n', text).strip()
