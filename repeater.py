#!/usr/bin/env python3
"""
Re-embargo of repeating campaigns.

Runs before each queue pass. A due campaign whose current window holds fewer
than ``RSS_MINIMUM`` items is pushed forward by whole repeat intervals, or
marked as sent once its repeat period is over, so no campaign goes out with
too little fresh content.
"""

from dataclasses import dataclass
from time import time
from typing import List, Optional

from config import config, get_logger
from errors import StoreError
from models import DatabaseQueue
from selector import ItemSelector
from telemetry import init_telemetry, trace_span

logger = get_logger("repeater")
init_telemetry("feed-campaigns-repeater")

OUTCOME_NOOP = 'no-op'
OUTCOME_ADVANCED = 'advanced'
OUTCOME_FINISHED = 'finished'
OUTCOME_ERROR = 'error'


@dataclass
class TickOutcome:
    campaign_id: int
    outcome: str
    item_count: int = 0
    embargo: Optional[int] = None
    error: Optional[str] = None


class RepeatScheduler:
    def __init__(self, db: DatabaseQueue, selector: ItemSelector, minimum: Optional[int] = None) -> None:
        self.db = db
        self.selector = selector
        self.minimum = minimum or config.RSS_MINIMUM

    @trace_span("repeater.tick", tracer_name="repeater")
    async def tick(self, now: Optional[int] = None) -> List[TickOutcome]:
        """Evaluate every due campaign once.

        A bad campaign row is logged and reported as an ``error`` outcome and
        the remaining campaigns are still evaluated.

        Raises:
            StoreError: when the database fails; the whole pass is abandoned.
        """
        current = int(now if now is not None else time())
        campaigns = await self.db.execute('ready_campaigns', now=current)
        outcomes = []
        for campaign in campaigns:
            try:
                outcomes.append(await self._evaluate(campaign, current))
            except StoreError:
                raise
            except (ValueError, KeyError) as e:
                logger.error(f"Re-embargo check failed for campaign {campaign['id']}: {e}")
                outcomes.append(TickOutcome(campaign_id=campaign['id'], outcome=OUTCOME_ERROR, error=str(e)))
        return outcomes

    async def _evaluate(self, campaign: dict, now: int) -> TickOutcome:
        campaign_id = campaign['id']
        items = await self.selector.select_for_campaign(campaign, windowed=True)
        if len(items) >= self.minimum:
            return TickOutcome(campaign_id=campaign_id, outcome=OUTCOME_NOOP, item_count=len(items))

        count = await self.db.execute('re_embargo_campaign', campaign_id=campaign_id, now=now)
        if count > 0:
            updated = await self.db.execute('get_campaign', campaign_id=campaign_id)
            embargo = updated['embargo'] if updated else None
            logger.info(f"Campaign {campaign_id} has {len(items)} items, embargo advanced to {embargo}")
            await self.db.execute('log_event', message=f"Embargo advanced for campaign {campaign_id}", now=now)
            return TickOutcome(campaign_id=campaign_id, outcome=OUTCOME_ADVANCED, item_count=len(items), embargo=embargo)

        # Zero rows means the repeat period is over, or another pass already finished it
        if await self.db.execute('set_campaign_sent', campaign_id=campaign_id):
            await self.db.execute(
                'log_event',
                message=f"Campaign {campaign_id} marked as sent because it has finished repeating",
                now=now,
            )
            logger.info(f"Campaign {campaign_id} finished repeating")
        return TickOutcome(campaign_id=campaign_id, outcome=OUTCOME_FINISHED, item_count=len(items))
