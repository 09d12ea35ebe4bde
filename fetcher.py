#!/usr/bin/env python3
"""
Conditional HTTP fetcher for RSS/Atom feeds.

Issues GET requests carrying the cache validators stored for a feed
(If-None-Match / If-Modified-Since) so unchanged feeds are answered with a
cheap 304, retries transport failures with exponential backoff and caps the
size of the downloaded body.
"""

from asyncio import TimeoutError
from dataclasses import dataclass
from typing import List, Optional

from aiohttp import ClientSession, ClientTimeout, ClientError

from config import config, get_logger
from errors import FetchError
from telemetry import init_telemetry, trace_span
from utils import RetryHelper, normalize_http_date

logger = get_logger("fetcher")
init_telemetry("feed-campaigns-fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class FetchResult:
    """Outcome of a conditional fetch.

    When ``modified`` is False the server answered 304 and ``body`` is empty;
    ``etag`` and ``last_modified`` then echo the validators that were sent.
    """

    url: str
    modified: bool
    body: bytes = b''
    etag: str = ''
    last_modified: str = ''
    encoding: Optional[str] = None
    content_type: str = ''
    status: int = 0


class ConditionalFetcher:
    """Fetch feeds with conditional GET, retries and a body size limit.

    Use as an async context manager, or pass an existing ``ClientSession``
    whose lifetime the caller manages.
    """

    def __init__(self, session: Optional[ClientSession] = None, max_body_size: Optional[int] = None) -> None:
        self.session = session
        self._owns_session = session is None
        self.max_body_size = max_body_size or config.MAX_BODY_SIZE
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)

    async def __aenter__(self) -> "ConditionalFetcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self.session is None:
            self.session = ClientSession(headers={'User-Agent': config.USER_AGENT})
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    def _prepare_request_headers(self, etag: str, last_modified: str) -> dict:
        """Prepare HTTP headers for a conditional request."""
        headers = {'User-Agent': config.USER_AGENT}

        if etag:
            # Servers should quote ETags, but tolerate stored unquoted values
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag
            logger.debug(f"Using If-None-Match: {etag}")

        if last_modified:
            normalized = normalize_http_date(last_modified)
            if normalized:
                headers['If-Modified-Since'] = normalized
                logger.debug(f"Using If-Modified-Since: {normalized}")
            else:
                logger.warning(f"Invalid Last-Modified value, not sending header (stored value: {last_modified})")

        return headers

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag='', last_modified='': {
            "http.url": url,
            "feed.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, url: str, etag: str = '', last_modified: str = '') -> FetchResult:
        """Fetch `url`, honouring the cache validators from the previous fetch.

        Raises:
            FetchError: on a non-200/304 status, an oversized body, or when
                every retry of a transport failure or timeout is exhausted.
        """
        if self.session is None:
            await self.start()
        etag = etag or ''
        last_modified = last_modified or ''
        headers = self._prepare_request_headers(etag, last_modified)
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        max_retries = self.retry_helper.max_retries

        for attempt in range(max_retries + 1):
            try:
                async with self.session.get(
                    url,
                    headers=headers,
                    timeout=timeout,
                    max_redirects=config.MAX_REDIRECTS,
                ) as response:
                    if response.status == HTTP_NOT_MODIFIED:
                        logger.info(f"Feed {url} not modified since last fetch")
                        return FetchResult(
                            url=str(response.url),
                            modified=False,
                            etag=etag,
                            last_modified=last_modified,
                            status=response.status,
                        )

                    if response.status != HTTP_OK:
                        raise FetchError(
                            f"Feed failed to load, got response code {response.status}",
                            url=url,
                            status=response.status,
                        )

                    body = await self._read_body(response, url)
                    return FetchResult(
                        url=str(response.url),
                        modified=True,
                        body=body,
                        etag=response.headers.get('ETag', ''),
                        last_modified=response.headers.get('Last-Modified', ''),
                        encoding=response.charset,
                        content_type=response.content_type or '',
                        status=response.status,
                    )

            except TimeoutError as e:
                logger.warning(
                    "Timeout fetching %s (attempt %d/%d, timeout=%ss)",
                    url,
                    attempt + 1,
                    max_retries + 1,
                    config.HTTP_TIMEOUT,
                )
                if attempt < max_retries:
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchError(f"Timed out after {config.HTTP_TIMEOUT}s fetching {url}", url=url) from e
            except ClientError as e:
                detail = self._format_client_error(e)
                if attempt < max_retries:
                    logger.warning(
                        "Retry %d/%d for %s due to error: %s",
                        attempt + 1,
                        max_retries,
                        url,
                        detail,
                    )
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchError(f"Failed to fetch after {max_retries} retries ({detail})", url=url) from e

        # Only reachable with a negative retry count
        raise FetchError(f"No fetch attempt was made for {url}", url=url)

    async def _read_body(self, response, url: str) -> bytes:
        """Read the response body in chunks, enforcing the size limit."""
        limit = self.max_body_size
        declared = response.content_length
        if declared is not None and declared > limit:
            raise FetchError(
                f"Feed body too large: {declared} bytes (limit: {limit} bytes)",
                url=url,
                status=response.status,
            )

        chunks: List[bytes] = []
        total = 0
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            total += len(chunk)
            if total > limit:
                raise FetchError(
                    f"Feed body too large: more than {limit} bytes",
                    url=url,
                    status=response.status,
                )
            chunks.append(chunk)
        return b''.join(chunks)

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
