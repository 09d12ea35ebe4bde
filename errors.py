#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FetchError(Exception):
    """Raised when a feed cannot be retrieved.

    Covers unexpected HTTP statuses, transport failures, timeouts and bodies
    larger than the configured limit.

    Attributes:
        url: The feed URL that failed.
        status: HTTP status code when the server answered, else None.
    """

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class FeedParseError(Exception):
    """Raised when a downloaded body is not a usable RSS/Atom document."""


class StoreError(Exception):
    """Raised when a database operation fails.

    Attributes:
        operation: Name of the DatabaseQueue operation that failed.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


__all__ = ["FetchError", "FeedParseError", "StoreError"]
