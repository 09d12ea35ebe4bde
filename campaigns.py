#!/usr/bin/env python3
"""
Campaign lifecycle hooks.

The message sending pipeline lives outside this package; it calls these hooks
at fixed points of a campaign's life: validation before queueing, the start of
a send, each queue pass, test sends and previews, and the end of a send.
``sync_campaigns`` loads campaign definitions from campaigns.yaml.
"""

import re
from datetime import date, datetime, timezone
from time import time
from typing import Any, Dict, List, Optional, Tuple

from config import config, get_logger
from errors import FeedParseError, FetchError
from feed_parser import ParsedFeed, parse_feed
from fetcher import ConditionalFetcher
from models import DatabaseQueue, ITEM_DATE_FIELDS
from renderer import RenderResult, render_campaign, substitute
from repeater import RepeatScheduler, TickOutcome
from selector import ItemSelector, LATEST_FIRST, OLDEST_FIRST
from telemetry import trace_span

logger = get_logger("campaigns")

# Campaign fields carried over when a campaign is copied
COPY_FIELDS = ('rss_feed', 'rss_order', 'rss_template', 'item_select_field')

_ORDER_NAMES = {
    'oldest': OLDEST_FIRST,
    'oldest_first': OLDEST_FIRST,
    'latest': LATEST_FIRST,
    'latest_first': LATEST_FIRST,
    'newest': LATEST_FIRST,
}


def is_feed_campaign(campaign: Optional[Dict[str, Any]]) -> bool:
    return bool(campaign) and bool(campaign.get('rss_feed'))


class CampaignHooks:
    """Entry points the sending pipeline calls for feed campaigns."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: ConditionalFetcher,
        selector: Optional[ItemSelector] = None,
        repeater: Optional[RepeatScheduler] = None,
    ) -> None:
        self.db = db
        self.fetcher = fetcher
        self.selector = selector or ItemSelector(db)
        self.repeater = repeater or RepeatScheduler(db, self.selector)

    async def probe_feed(self, url: str) -> ParsedFeed:
        """Download and parse a feed without storing anything."""
        result = await self.fetcher.fetch(url)
        return parse_feed(result.body, encoding=result.encoding, content_type=result.content_type, url=result.url)

    @trace_span(
        "campaigns.validate",
        tracer_name="campaigns",
        attr_from_args=lambda self, campaign: {"feed.url": (campaign or {}).get('rss_feed') or ''},
    )
    async def validate_campaign(self, campaign: Dict[str, Any]) -> str:
        """Check a campaign before it is queued.

        Returns:
            An empty string when the campaign may be queued, otherwise the
            message explaining why not.
        """
        if not is_feed_campaign(campaign):
            return ''
        url = campaign['rss_feed']
        if not re.match(r'^http', url, re.IGNORECASE):
            return f"Invalid URL {url} for RSS feed"

        if not await self.db.execute('feed_exists', url=url):
            try:
                await self.probe_feed(url)
            except (FetchError, FeedParseError) as e:
                logger.warning(f"Feed validation failed for {url}: {e}")
                return f"Failed to fetch URL {url} {e}"
            await self.db.execute('add_feed', url=url)
            logger.info(f"Registered new feed {url}")

        if '[rss]' not in (campaign.get('message') or '').lower():
            return "Must have [RSS] placeholder in an RSS message"

        if int(campaign.get('repeat_interval') or 0) <= 0:
            return "Repeat interval must be selected for an RSS campaign"
        return ''

    async def on_campaign_start(self, campaign: Dict[str, Any]) -> Optional[RenderResult]:
        """Render the live selection for a campaign about to be sent."""
        if not is_feed_campaign(campaign):
            return None
        items = await self.selector.select_for_campaign(campaign, windowed=True)
        return render_campaign(campaign, items)

    async def on_queue_tick(self, now: Optional[int] = None) -> List[TickOutcome]:
        return await self.repeater.tick(now)

    async def on_before_send(self, campaign: Dict[str, Any], now: Optional[int] = None) -> Optional[RenderResult]:
        """Render a test send, falling back to older or sample items."""
        if not is_feed_campaign(campaign):
            return None
        items, warning = await self.selector.select_for_test(campaign, now=now)
        if warning:
            logger.info(f"Campaign {campaign.get('id')}: {warning}")
        return render_campaign(campaign, items, warning)

    async def preview(self, campaign: Dict[str, Any], now: Optional[int] = None) -> Optional[RenderResult]:
        """Render a campaign for viewing: drafts as a test send, others live."""
        if campaign.get('status') == 'draft':
            return await self.on_before_send(campaign, now=now)
        return await self.on_campaign_start(campaign)

    async def on_campaign_finished(self, campaign_id: int, campaign: Dict[str, Any],
                                   result: Optional[RenderResult]) -> None:
        """Store the content and subject actually sent for this repetition."""
        if not is_feed_campaign(campaign) or result is None:
            return
        message = campaign.get('message') or ''
        new_message = substitute(message, result) if '[rss]' in message.lower() else None
        await self.db.execute(
            'set_campaign_content',
            campaign_id=campaign_id,
            message=new_message,
            subject=result.subject,
        )

    def parse_outgoing_html(self, content: str, result: Optional[RenderResult]) -> str:
        return substitute(content, result)

    def parse_outgoing_text(self, content: str, result: Optional[RenderResult]) -> str:
        return substitute(content, result, text=True)

    @staticmethod
    def copy_fields(campaign: Dict[str, Any]) -> Dict[str, Any]:
        """The feed fields a copy of the campaign inherits."""
        return {name: campaign[name] for name in COPY_FIELDS if name in campaign}


def _to_epoch(value: Any, default: Optional[int] = None) -> Optional[int]:
    """Convert a YAML timestamp (datetime, date, ISO string or epoch) to epoch seconds."""
    if value in (None, ''):
        return default
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def campaign_fields(definition: Dict[str, Any], now: Optional[int] = None) -> Dict[str, Any]:
    """Map a campaigns.yaml definition to campaign table columns.

    Raises:
        ValueError: on an unknown order, date field or timestamp.
    """
    current = int(now if now is not None else time())
    order = definition.get('order', OLDEST_FIRST)
    if isinstance(order, str):
        if order.strip().lower() not in _ORDER_NAMES:
            raise ValueError(f"Unknown item order '{order}'")
        order = _ORDER_NAMES[order.strip().lower()]
    elif int(order) not in (OLDEST_FIRST, LATEST_FIRST):
        raise ValueError(f"Unknown item order '{order}'")

    select_field = definition.get('select_field', 'published')
    if select_field not in ITEM_DATE_FIELDS:
        raise ValueError(f"Unknown item select field '{select_field}'")

    return {
        'rss_feed': str(definition['feed']).strip(),
        'subject': str(definition.get('subject', '')),
        'message': str(definition.get('message', '')),
        'status': str(definition.get('status', 'draft')),
        'embargo': _to_epoch(definition.get('embargo'), current),
        'repeat_interval': int(definition.get('repeat_interval', 0) or 0),
        'repeat_until': _to_epoch(definition.get('repeat_until'), 0),
        'rss_order': int(order),
        'rss_template': str(definition.get('template', '') or ''),
        'item_select_field': select_field,
    }


async def sync_campaigns(db: DatabaseQueue, hooks: Optional[CampaignHooks] = None,
                         definitions: Optional[Dict[str, Dict[str, Any]]] = None,
                         now: Optional[int] = None) -> List[Tuple[str, str]]:
    """Insert campaigns from configuration that are not stored yet.

    Existing campaigns (matched by name) are left untouched. When ``hooks``
    is given, each new campaign is validated first and rejected on error.

    Returns:
        A list of ``(name, outcome)`` pairs.
    """
    definitions = config.CAMPAIGNS if definitions is None else definitions
    results = []
    for name, definition in definitions.items():
        try:
            fields = campaign_fields(definition, now)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Skipping campaign '{name}': {e}")
            results.append((name, f"invalid: {e}"))
            continue

        if await db.execute('get_campaign_by_name', name=name):
            results.append((name, 'exists'))
            continue

        if hooks is not None:
            problem = await hooks.validate_campaign(fields)
            if problem:
                logger.warning(f"Campaign '{name}' rejected: {problem}")
                results.append((name, f"rejected: {problem}"))
                continue

        campaign_id = await db.execute('add_campaign', name=name, **fields)
        logger.info(f"Added campaign '{name}' with id {campaign_id}")
        results.append((name, 'added'))
    return results
