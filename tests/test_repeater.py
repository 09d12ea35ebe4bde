import pytest

from errors import StoreError
from models import DatabaseQueue
from repeater import RepeatScheduler, OUTCOME_ADVANCED, OUTCOME_ERROR, OUTCOME_FINISHED, OUTCOME_NOOP
from selector import ItemSelector

T = 1_700_000_000
HOUR = 3600
FEED = 'https://example.com/feed.xml'


async def setup_campaign(db, **fields):
    await db.execute('add_feed', url=FEED)
    values = {
        'rss_feed': FEED,
        'message': '[RSS]',
        'status': 'submitted',
        'embargo': T,
        'repeat_interval': 60,
        'repeat_until': T + 240 * HOUR,
    }
    values.update(fields)
    return await db.execute('add_campaign', name='digest', **values)


@pytest.mark.asyncio
async def test_embargo_advances_past_now_in_whole_intervals(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        campaign_id = await setup_campaign(db)
        repeater = RepeatScheduler(db, ItemSelector(db), minimum=1)
        now = T + int(2.5 * HOUR)

        outcomes = await repeater.tick(now=now)

        assert [o.outcome for o in outcomes] == [OUTCOME_ADVANCED]
        campaign = await db.execute('get_campaign', campaign_id=campaign_id)
        assert campaign['embargo'] > now
        assert (campaign['embargo'] - T) % HOUR == 0
        assert campaign['embargo'] == T + 3 * HOUR
        events = await db.execute('recent_events')
        assert events[0]['message'] == f"Embargo advanced for campaign {campaign_id}"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_finished_campaign_is_marked_sent_once(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        campaign_id = await setup_campaign(db, repeat_until=T + HOUR)
        repeater = RepeatScheduler(db, ItemSelector(db), minimum=1)
        now = T + 2 * HOUR

        outcomes = await repeater.tick(now=now)

        assert [o.outcome for o in outcomes] == [OUTCOME_FINISHED]
        campaign = await db.execute('get_campaign', campaign_id=campaign_id)
        assert campaign['status'] == 'sent'
        assert campaign['embargo'] == T
        events = await db.execute('recent_events')
        assert events[0]['message'] == (
            f"Campaign {campaign_id} marked as sent because it has finished repeating"
        )

        # A sent campaign is no longer evaluated
        assert await repeater.tick(now=now + HOUR) == []
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_enough_items_leaves_campaign_alone(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        campaign_id = await setup_campaign(db)
        feed = await db.execute('get_feed_by_url', url=FEED)
        for offset in (50, 40):
            item_id = await db.execute('add_item', feed_id=feed['id'], uid=f'u{offset}',
                                       published=T - offset * 60, added=T)
            await db.execute('add_item_data', item_id=item_id, properties={'title': f'Item {offset}'})
        repeater = RepeatScheduler(db, ItemSelector(db), minimum=2)

        outcomes = await repeater.tick(now=T + 60)

        assert [(o.outcome, o.item_count) for o in outcomes] == [(OUTCOME_NOOP, 2)]
        campaign = await db.execute('get_campaign', campaign_id=campaign_id)
        assert campaign['embargo'] == T
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_campaigns_not_yet_due_are_skipped(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await setup_campaign(db, embargo=T + HOUR)
        repeater = RepeatScheduler(db, ItemSelector(db), minimum=1)

        assert await repeater.tick(now=T) == []
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_storage_failure_aborts_the_pass(tmp_path, monkeypatch):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await setup_campaign(db)
        selector = ItemSelector(db)

        async def lost_database(campaign, windowed=True):
            raise StoreError("database is locked", operation='query_feed_items')

        monkeypatch.setattr(selector, "select_for_campaign", lost_database)

        with pytest.raises(StoreError):
            await RepeatScheduler(db, selector, minimum=1).tick(now=T + HOUR)
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_bad_campaign_row_is_reported_and_skipped(tmp_path, monkeypatch):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        campaign_id = await setup_campaign(db)
        selector = ItemSelector(db)

        async def bad_row(campaign, windowed=True):
            raise ValueError("Unsupported item date field: sent")

        monkeypatch.setattr(selector, "select_for_campaign", bad_row)

        outcomes = await RepeatScheduler(db, selector, minimum=1).tick(now=T + HOUR)

        assert [(o.campaign_id, o.outcome) for o in outcomes] == [(campaign_id, OUTCOME_ERROR)]
        assert outcomes[0].error == "Unsupported item date field: sent"
    finally:
        await db.stop()
