#!/usr/bin/env python3
"""
Feed Campaign Orchestrator

Command-line entry point for the feed campaign engine:

- fetch: ingest new items from every feed used by an active campaign
- tick: run the re-embargo pass over due campaigns
- purge / reset-feeds / feeds: feed and item housekeeping
- preview / validate / sync-campaigns: campaign tooling
- scheduled: run fetch and tick forever on their configured intervals
- status / schedule-status: diagnostics
"""

import asyncio
import sys
import time
import sqlite3
import argparse
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from campaigns import CampaignHooks, sync_campaigns
from config import config, get_logger
from errors import FeedParseError, FetchError, StoreError
from fetcher import ConditionalFetcher
from ingestion import IngestionPipeline
from models import DatabaseQueue, INACTIVE_STATUSES
from repeater import RepeatScheduler
from scheduler import create_scheduler
from selector import ItemSelector
from telemetry import init_telemetry, trace_span
from utils import format_timestamp, truncate_string, validate_url

logger = get_logger("orchestrator")
init_telemetry("feed-campaigns-orchestrator")


class CampaignOrchestrator:
    """Runs the engine's jobs and admin commands against the configured database."""

    def __init__(self, database_path: Optional[str] = None) -> None:
        self.database_path = database_path or config.DATABASE_PATH

    @asynccontextmanager
    async def _services(self):
        db = DatabaseQueue(self.database_path)
        await db.start()
        fetcher = ConditionalFetcher()
        await fetcher.start()
        try:
            yield db, fetcher
        finally:
            await fetcher.close()
            await db.stop()

    @trace_span("run_fetch", tracer_name="orchestrator")
    async def run_fetch(self, output=None) -> bool:
        """Run the ingestion pipeline, then expire old items if configured."""
        logger.info("📡 Running feed ingestion")
        start_time = time.time()
        try:
            async with self._services() as (db, fetcher):
                pipeline = IngestionPipeline(db, fetcher)
                report = await pipeline.run(output=output)
                if config.ITEM_EXPIRATION_DAYS > 0:
                    deleted = await db.execute('delete_items', days=config.ITEM_EXPIRATION_DAYS)
                    logger.info(f"🧹 Expired {deleted} items older than {config.ITEM_EXPIRATION_DAYS} days")
        except StoreError as e:
            logger.error(f"❌ Feed ingestion failed: {e}")
            return False
        logger.info(
            f"✅ Ingestion completed in {time.time() - start_time:.1f}s "
            f"({report.new_item_count} new items, {len(report.failed)} failed feeds)"
        )
        return True

    @trace_span("run_tick", tracer_name="orchestrator")
    async def run_tick(self, output=None) -> bool:
        """Run the re-embargo pass over due campaigns."""
        logger.info("⏱️ Running queue tick")
        try:
            async with self._services() as (db, fetcher):
                repeater = RepeatScheduler(db, ItemSelector(db))
                outcomes = await repeater.tick()
        except StoreError as e:
            logger.error(f"❌ Queue tick failed: {e}")
            return False
        for outcome in outcomes:
            line = f"Campaign {outcome.campaign_id}: {outcome.outcome} ({outcome.item_count} items)"
            if outcome.error:
                line += f" {outcome.error}"
            logger.info(line)
            if output:
                output(line)
        return all(outcome.outcome != 'error' for outcome in outcomes)

    async def run_purge(self, days: int, unused_feeds: bool = False) -> bool:
        try:
            async with self._services() as (db, fetcher):
                deleted = await db.execute('delete_items', days=days)
                print(f"{deleted} items deleted")
                if unused_feeds:
                    feeds = await db.execute('delete_unused_feeds')
                    print(f"{feeds} unused feeds deleted")
        except (StoreError, ValueError) as e:
            logger.error(f"❌ Purge failed: {e}")
            return False
        return True

    async def reset_feeds(self) -> bool:
        try:
            async with self._services() as (db, fetcher):
                count = await db.execute('reset_all_feeds')
                print(f"{count} feeds reset")
        except StoreError as e:
            logger.error(f"❌ Reset failed: {e}")
            return False
        return True

    async def list_feeds(self) -> bool:
        async with self._services() as (db, fetcher):
            feeds = await db.execute('list_feeds')
        if not feeds:
            print("No feeds")
            return True
        print(f"{'ID':>4}  {'Items':>6}  {'Active':>6}  {'Sent':>4}  {'Last fetched':<17}  URL")
        for feed in feeds:
            fetched = format_timestamp(feed['last_fetched'], "%Y-%m-%d %H:%M") if feed['last_fetched'] else 'never'
            print(
                f"{feed['id']:>4}  {feed['item_count']:>6}  {feed['active_campaigns']:>6}  "
                f"{feed['sent_campaigns']:>4}  {fetched:<17}  {feed['url']}"
            )
        return True

    async def preview(self, campaign_ref: str, text: bool = False) -> bool:
        """Print a campaign rendered as a draft preview or live send."""
        async with self._services() as (db, fetcher):
            if campaign_ref.isdigit():
                campaign = await db.execute('get_campaign', campaign_id=int(campaign_ref))
            else:
                campaign = await db.execute('get_campaign_by_name', name=campaign_ref)
            if not campaign:
                print(f"Campaign {campaign_ref} not found")
                return False
            hooks = CampaignHooks(db, fetcher)
            result = await hooks.preview(campaign)
        if result is None:
            print(f"Campaign {campaign_ref} does not use a feed")
            return False
        if result.warning:
            print(f"⚠️ {result.warning}")
        print(f"Subject: {result.subject}")
        print()
        message = campaign.get('message') or ''
        print(hooks.parse_outgoing_text(message, result) if text else hooks.parse_outgoing_html(message, result))
        return True

    async def validate(self, url: str) -> bool:
        """Probe a feed URL the way campaign validation does."""
        if not validate_url(url):
            print(f"Invalid URL {url} for RSS feed")
            return False
        async with self._services() as (db, fetcher):
            hooks = CampaignHooks(db, fetcher)
            try:
                parsed = await hooks.probe_feed(url)
            except (FetchError, FeedParseError) as e:
                print(f"Failed to fetch URL {url} {e}")
                return False
        print(f"✅ {parsed.title or url}: {len(parsed.entries)} entries ({parsed.version or 'unknown format'})")
        for entry in parsed.entries[:5]:
            print(f"   - {truncate_string(entry.title, 80)}")
        return True

    async def sync_campaigns(self) -> bool:
        async with self._services() as (db, fetcher):
            results = await sync_campaigns(db, CampaignHooks(db, fetcher))
        if not results:
            print(f"No campaigns defined in {config.CAMPAIGNS_CONFIG_PATH}")
        for name, outcome in results:
            print(f"{name}: {outcome}")
        return all(outcome in ('added', 'exists') for _, outcome in results)

    def check_status(self) -> dict:
        """Collect database statistics for the status command."""
        logger.info("📊 Checking system status")
        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {},
        }
        db_path = Path(self.database_path)
        if not db_path.exists():
            status['checks']['database'] = {'status': 'missing', 'message': 'Database file not found'}
            status['overall_status'] = 'issues_detected'
            return status

        try:
            conn = sqlite3.connect(db_path)
            try:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) FROM feeds")
                total_feeds = cursor.fetchone()[0]
                cursor.execute("SELECT COUNT(*) FROM items")
                total_items = cursor.fetchone()[0]
                cursor.execute("SELECT COUNT(*) FROM campaigns")
                total_campaigns = cursor.fetchone()[0]
                cursor.execute(
                    f"SELECT COUNT(*) FROM campaigns WHERE rss_feed != '' "
                    f"AND status NOT IN ({','.join('?' for _ in INACTIVE_STATUSES)})",
                    INACTIVE_STATUSES,
                )
                active_campaigns = cursor.fetchone()[0]
                cursor.execute("SELECT entered, message FROM event_log ORDER BY id DESC LIMIT 5")
                events = cursor.fetchall()
            finally:
                conn.close()
            status['checks']['database'] = {
                'status': 'ok',
                'total_feeds': total_feeds,
                'total_items': total_items,
                'total_campaigns': total_campaigns,
                'active_campaigns': active_campaigns,
                'recent_events': [(entered, message) for entered, message in events],
            }
        except sqlite3.Error as e:
            status['checks']['database'] = {'status': 'error', 'message': str(e)}

        status['overall_status'] = 'healthy' if status['checks']['database']['status'] == 'ok' else 'issues_detected'
        return status

    def print_status(self, status: dict):
        print("\n📊 Feed Campaign Engine Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")
        db = status['checks']['database']
        if db['status'] != 'ok':
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")
            return
        print("\n💾 Database:")
        print(f"   📡 Feeds: {db['total_feeds']}")
        print(f"   📰 Items: {db['total_items']}")
        print(f"   ✉️ Campaigns: {db['total_campaigns']} ({db['active_campaigns']} active)")
        if db['recent_events']:
            print("\n📝 Recent events:")
            for entered, message in db['recent_events']:
                print(f"   {format_timestamp(entered, '%Y-%m-%d %H:%M')} {message}")


async def run_scheduled_mode():
    """Run fetch and tick forever on their configured intervals."""
    orchestrator = CampaignOrchestrator()
    scheduler = create_scheduler()
    logger.info(f"🕐 Starting scheduled mode ({config.get_config_summary()})")
    await scheduler.run_scheduled_pipeline(orchestrator)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Campaign Orchestrator')
    parser.add_argument('mode', choices=[
        'fetch', 'tick', 'purge', 'reset-feeds', 'feeds', 'preview', 'validate',
        'sync-campaigns', 'scheduled', 'status', 'schedule-status',
    ], help='Operation mode')
    parser.add_argument('target', nargs='?',
                        help='Campaign name or id (preview) or feed URL (validate)')
    parser.add_argument('--days', type=int, default=None,
                        help='Purge items published more than this many days ago')
    parser.add_argument('--unused-feeds', action='store_true',
                        help='When purging, also delete feeds no campaign uses')
    parser.add_argument('--text', action='store_true',
                        help='Preview the plain text version instead of HTML')
    parser.add_argument('--database', type=str,
                        help='SQLite database path (default: DATABASE_PATH)')

    args = parser.parse_args()
    orchestrator = CampaignOrchestrator(args.database)

    try:
        if args.mode == 'fetch':
            success = asyncio.run(orchestrator.run_fetch(output=print))
        elif args.mode == 'tick':
            success = asyncio.run(orchestrator.run_tick(output=print))
        elif args.mode == 'purge':
            if args.days is None or args.days < 0:
                parser.error("purge requires --days N with N >= 0")
            success = asyncio.run(orchestrator.run_purge(args.days, unused_feeds=args.unused_feeds))
        elif args.mode == 'reset-feeds':
            success = asyncio.run(orchestrator.reset_feeds())
        elif args.mode == 'feeds':
            success = asyncio.run(orchestrator.list_feeds())
        elif args.mode == 'preview':
            if not args.target:
                parser.error("preview requires a campaign name or id")
            success = asyncio.run(orchestrator.preview(args.target, text=args.text))
        elif args.mode == 'validate':
            if not args.target:
                parser.error("validate requires a feed URL")
            success = asyncio.run(orchestrator.validate(args.target))
        elif args.mode == 'sync-campaigns':
            success = asyncio.run(orchestrator.sync_campaigns())
        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled_mode())
            success = True
        elif args.mode == 'status':
            orchestrator.print_status(orchestrator.check_status())
            success = True
        else:
            create_scheduler().print_schedule_status()
            success = True
        sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except StoreError as e:
        logger.error(f"💥 Database error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
