#!/usr/bin/env python3
"""
Item selection for outgoing campaigns.

Chooses the bounded, ordered subset of stored feed items a campaign message
includes: the newest items inside the campaign's current repeat window, put
back in chronological order. Test sends fall back to older items, then to a
fixed set of sample items, so a preview always has something to show.
"""

from time import time
from typing import Any, Dict, List, Optional, Tuple

from config import config, get_logger
from models import DatabaseQueue
from telemetry import trace_span

logger = get_logger("selector")

OLDEST_FIRST = 1
LATEST_FIRST = 2

WARNING_OLDER_ITEMS = (
    "There are no feed items that will be included in the first campaign. "
    "A test message will include only items with earlier published dates."
)
WARNING_SAMPLE_ITEMS = "There are no feed items. A test message will include the sample items."

_SAMPLES = (
    (10000, 'These are just some sample entries for the test RSS message',
     '<p>The phpList manual is available online, or you can download it to your favourite device.</p>',
     'https://www.phplist.org/manual/'),
    (8000, 'Adding your first Subscribers ',
     '<p>phpList Manual chapter explaining how to add subscribers.</p>',
     'https://www.phplist.org/manual/ch006_adding-your-first-subscribers.xhtml'),
    (6000, 'Composing your first campaign',
     '<p>How to write your first campaign in phpList.</p>',
     'https://www.phplist.org/manual/ch007_sending-your-first-campaign.xhtml'),
    (4000, 'Sending a campaign',
     '<p>The phpList manual pages, explaining how to send your campaign.</p>',
     'https://www.phplist.org/manual/ch008_your-first-campaign.xhtml'),
    (0, 'Campaign Statistics',
     '<p>Once you have sent your campaign, just sit back and watch the statistics grow.</p>',
     'https://www.phplist.org/manual/ch009_basic-campaign-statistics.xhtml'),
)


def sample_items(now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Placeholder items for previews of campaigns whose feed has no items yet."""
    current = int(now if now is not None else time())
    items = []
    for index, (age, title, content, url) in enumerate(_SAMPLES, start=1):
        items.append({
            'id': -index,
            'published': current - age,
            'added': current,
            'title': title,
            'content': content,
            'url': url,
            'language': '',
            'author': '',
            'enclosure_url': '',
            'enclosure_type': '',
            'rtl': '',
        })
    return items


def campaign_window(campaign: Dict[str, Any]) -> Tuple[int, int]:
    """The live selection window ``[embargo - repeat_interval, embargo)``."""
    embargo = int(campaign['embargo'])
    interval = int(campaign.get('repeat_interval') or 0) * 60
    return embargo - interval, embargo


class ItemSelector:
    """Read-only selection of stored items for a campaign."""

    def __init__(self, db: DatabaseQueue, max_count: Optional[int] = None) -> None:
        self.db = db
        self.max_count = max_count or config.RSS_MAXIMUM

    @trace_span(
        "selector.select",
        tracer_name="selector",
        attr_from_args=lambda self, feed_url, window=None, max_count=None, order=OLDEST_FIRST, date_field='published': {
            "feed.url": feed_url,
            "selection.windowed": window is not None,
        },
    )
    async def select(
        self,
        feed_url: str,
        window: Optional[Tuple[int, int]] = None,
        max_count: Optional[int] = None,
        order: int = OLDEST_FIRST,
        date_field: str = 'published',
    ) -> List[Dict[str, Any]]:
        """Select at most ``max_count`` items of a feed.

        The newest items qualify; they are returned oldest first, or newest
        first when ``order`` is LATEST_FIRST.
        """
        limit = self.max_count if max_count is None else max_count
        window_start, window_end = window if window is not None else (None, None)
        items = await self.db.execute(
            'query_feed_items',
            feed_url=feed_url,
            limit=limit,
            window_start=window_start,
            window_end=window_end,
            date_field=date_field,
        )
        if int(order or OLDEST_FIRST) == LATEST_FIRST:
            items.reverse()
        return items

    async def select_for_campaign(self, campaign: Dict[str, Any], windowed: bool = True) -> List[Dict[str, Any]]:
        """Items a campaign would include, in the campaign's display order."""
        return await self.select(
            campaign['rss_feed'],
            window=campaign_window(campaign) if windowed else None,
            max_count=self.max_count,
            order=campaign.get('rss_order') or OLDEST_FIRST,
            date_field=campaign.get('item_select_field') or 'published',
        )

    async def select_for_test(self, campaign: Dict[str, Any], now: Optional[int] = None) -> Tuple[List[Dict[str, Any]], str]:
        """Items for a test send or preview, with a warning when falling back."""
        items = await self.select_for_campaign(campaign, windowed=True)
        if items:
            return items, ''

        items = await self.select_for_campaign(campaign, windowed=False)
        if items:
            logger.info(f"Campaign {campaign.get('id')} has no items in its window, previewing older items")
            return items, WARNING_OLDER_ITEMS

        logger.info(f"Campaign {campaign.get('id')} has no feed items, previewing sample items")
        items = sample_items(now)[-self.max_count:]
        if int(campaign.get('rss_order') or OLDEST_FIRST) == LATEST_FIRST:
            items.reverse()
        return items, WARNING_SAMPLE_ITEMS
