#!/usr/bin/env python3
"""
Feed ingestion pipeline.

For every feed referenced by an active campaign: conditionally fetch it,
parse it, insert the entries not seen before and store their property bags,
then remember the new cache validators. Each feed is processed in isolation
so one broken feed never stops the others.
"""

from dataclasses import dataclass, field
from time import time
from typing import Callable, Dict, Iterable, List, Optional

from config import config, get_logger
from errors import FetchError, FeedParseError, StoreError
from feed_parser import ElementSpec, FeedEntry, parse_element_specs, parse_feed
from fetcher import ConditionalFetcher
from models import DatabaseQueue
from telemetry import init_telemetry, trace_span
from utils import convert_to_entities

logger = get_logger("ingestion")
init_telemetry("feed-campaigns-ingestion")

STATUS_NOT_MODIFIED = 'not_modified'
STATUS_UPDATED = 'updated'
STATUS_FAILED = 'failed'


@dataclass
class FeedReport:
    feed_id: int
    url: str
    status: str
    item_count: int = 0
    new_item_count: int = 0
    error: Optional[str] = None


@dataclass
class IngestionReport:
    feeds: List[FeedReport] = field(default_factory=list)
    lines: List[str] = field(default_factory=list)

    @property
    def new_item_count(self) -> int:
        return sum(feed.new_item_count for feed in self.feeds)

    @property
    def failed(self) -> List[FeedReport]:
        return [feed for feed in self.feeds if feed.status == STATUS_FAILED]


class IngestionPipeline:
    """Fetch, parse, deduplicate and persist the items of all active feeds."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: ConditionalFetcher,
        custom_elements: Optional[Iterable[str]] = None,
        use_summary: Optional[bool] = None,
        transcode: Optional[bool] = None,
    ) -> None:
        self.db = db
        self.fetcher = fetcher
        lines = config.CUSTOM_ELEMENTS if custom_elements is None else custom_elements
        self.custom_elements: List[ElementSpec] = parse_element_specs(lines)
        self.use_summary = config.CONTENT_USE_SUMMARY if use_summary is None else use_summary
        self.transcode = config.TRANSCODE_ASTRAL_CHARS if transcode is None else transcode

    def _emit(self, report: IngestionReport, output: Optional[Callable[[str], None]], line: str) -> None:
        report.lines.append(line)
        logger.info(line)
        if output:
            output(line)

    def _encode(self, value: str) -> str:
        return convert_to_entities(value) if self.transcode else (value or '')

    def build_properties(self, entry: FeedEntry) -> Dict[str, str]:
        """Build the property bag stored for a new item."""
        properties = {
            'title': entry.title,
            'url': entry.link,
            'language': entry.language,
            'author': entry.author,
            'enclosure_url': entry.enclosure_url,
            'enclosure_type': entry.enclosure_type,
            'content': self._encode(entry.effective_content(self.use_summary)),
            'rtl': '1' if entry.rtl else '',
        }
        for spec in self.custom_elements:
            value = entry.value(spec)
            if value is not None:
                properties[spec.text] = self._encode(value)
        return properties

    @trace_span("ingestion.run", tracer_name="ingestion")
    async def run(self, now: Optional[int] = None, output: Optional[Callable[[str], None]] = None) -> IngestionReport:
        """Process every active feed once.

        Args:
            now: Ingestion time as epoch seconds (defaults to the current time)
            output: Optional callable receiving each progress line

        Raises:
            StoreError: when the database fails outside a single item's scope.
        """
        report = IngestionReport()
        current = int(now if now is not None else time())
        feeds = await self.db.execute('active_feeds')

        if not feeds:
            self._emit(report, output, "There are no active feeds to fetch")
            return report

        for feed in feeds:
            report.feeds.append(await self.ingest_feed(feed, current, report, output))

        logger.info(
            f"Ingestion finished: {len(report.feeds)} feeds, {report.new_item_count} new items, "
            f"{len(report.failed)} failures"
        )
        return report

    @trace_span(
        "ingestion.feed",
        tracer_name="ingestion",
        attr_from_args=lambda self, feed, now, report, output=None: {
            "feed.id": int(feed['id']),
            "feed.url": feed['url'],
        },
    )
    async def ingest_feed(self, feed: Dict, now: int, report: IngestionReport,
                          output: Optional[Callable[[str], None]] = None) -> FeedReport:
        feed_id = feed['id']
        url = feed['url']
        feed_report = FeedReport(feed_id=feed_id, url=url, status=STATUS_FAILED)

        self._emit(report, output, f"Fetching {url}")
        try:
            result = await self.fetcher.fetch(url, feed.get('etag') or '', feed.get('last_modified') or '')
            if not result.modified:
                self._emit(report, output, "Not modified")
                feed_report.status = STATUS_NOT_MODIFIED
                return feed_report

            parsed = parse_feed(result.body, encoding=result.encoding,
                                content_type=result.content_type, url=result.url)
            await self._store_entries(feed_id, url, parsed.entries, now, feed_report, report, output)

            # Validators only move forward once every entry has been handled
            await self.db.execute(
                'update_feed_headers',
                feed_id=feed_id,
                etag=result.etag,
                last_modified=result.last_modified,
                title=parsed.title or None,
            )

            line = f"{feed_report.item_count} items, {feed_report.new_item_count} new items"
            self._emit(report, output, line)
            if feed_report.new_item_count > 0:
                await self.db.execute('log_event', message=f"Feed {url} {line}", now=now)
            feed_report.status = STATUS_UPDATED
        except StoreError:
            raise
        except (FetchError, FeedParseError) as e:
            feed_report.error = str(e)
            logger.warning(f"Feed {url} failed: {e}")
            self._emit(report, output, str(e))
        except Exception as e:
            feed_report.error = str(e) or e.__class__.__name__
            logger.exception(f"Unexpected error processing feed {url}: {e}")
            self._emit(report, output, feed_report.error)
        return feed_report

    async def _store_entries(self, feed_id: int, url: str, entries: List[FeedEntry], now: int,
                             feed_report: FeedReport, report: IngestionReport,
                             output: Optional[Callable[[str], None]]) -> None:
        for entry in entries:
            feed_report.item_count += 1
            if not entry.id:
                logger.warning(f"Skipping entry without an identifier in feed {url}")
                continue
            try:
                if entry.published is None:
                    logger.info(f"Entry {entry.id} in feed {url} has no usable date, using ingestion time")
                    published = now
                else:
                    published = int(entry.published.timestamp())
                item_id = await self.db.execute(
                    'add_item', feed_id=feed_id, uid=entry.id, published=published, added=now
                )
            except Exception as e:
                await self._item_failed(entry, url, e, now, report, output)
                continue
            if not item_id:
                continue
            feed_report.new_item_count += 1

            # The item row exists now, so a bad field only costs its bag
            try:
                properties = self.build_properties(entry)
            except Exception as e:
                await self._item_failed(entry, url, e, now, report, output)
                properties = {'title': entry.title, 'url': entry.link}
            await self.db.execute('add_item_data', item_id=item_id, properties=properties)

    async def _item_failed(self, entry: FeedEntry, url: str, error: Exception, now: int,
                           report: IngestionReport, output: Optional[Callable[[str], None]]) -> None:
        logger.warning(f"Item {entry.id} of feed {url} failed: {error}")
        message = f"Unable to add item {entry.title} for feed {url}"
        await self.db.execute('log_event', message=message, now=now)
        self._emit(report, output, message)
