import pytest

from models import DatabaseQueue
from selector import (
    ItemSelector,
    LATEST_FIRST,
    OLDEST_FIRST,
    WARNING_OLDER_ITEMS,
    WARNING_SAMPLE_ITEMS,
    campaign_window,
    sample_items,
)

T = 1_700_000_000
FEED = 'https://example.com/feed.xml'


async def store_items(db, published_times):
    feed_id = await db.execute('add_feed', url=FEED)
    for published in published_times:
        item_id = await db.execute('add_item', feed_id=feed_id, uid=f'uid-{published}',
                                   published=published, added=T)
        await db.execute('add_item_data', item_id=item_id, properties={'title': f'Item {published}'})


def campaign(**fields):
    values = {
        'id': 1,
        'rss_feed': FEED,
        'embargo': T,
        'repeat_interval': 60,
        'rss_order': OLDEST_FIRST,
        'item_select_field': 'published',
        'subject': '',
    }
    values.update(fields)
    return values


def test_campaign_window_spans_one_interval():
    assert campaign_window(campaign()) == (T - 3600, T)


@pytest.mark.asyncio
async def test_select_takes_newest_items_in_window_ascending(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await store_items(db, [100, 200, 300, 400, 500, 600, 700, 800, 900, 1000])
        selector = ItemSelector(db)

        items = await selector.select(FEED, window=(250, 850), max_count=3)

        assert [item['published'] for item in items] == [600, 700, 800]
        assert items[0]['title'] == 'Item 600'
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_select_latest_first_reverses(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await store_items(db, [100, 200, 300, 400])
        selector = ItemSelector(db)

        items = await selector.select(FEED, max_count=3, order=LATEST_FIRST)

        assert [item['published'] for item in items] == [400, 300, 200]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_select_window_end_is_exclusive(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await store_items(db, [T - 3600, T - 1, T])
        selector = ItemSelector(db)

        items = await selector.select_for_campaign(campaign())

        assert [item['published'] for item in items] == [T - 3600, T - 1]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_select_for_test_uses_live_window_first(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await store_items(db, [T - 60])
        selector = ItemSelector(db)

        items, warning = await selector.select_for_test(campaign())

        assert len(items) == 1
        assert warning == ''
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_select_for_test_falls_back_to_older_items(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await store_items(db, [T - 10 * 86400, T - 9 * 86400])
        selector = ItemSelector(db)

        items, warning = await selector.select_for_test(campaign())

        assert [item['published'] for item in items] == [T - 10 * 86400, T - 9 * 86400]
        assert warning == WARNING_OLDER_ITEMS
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_select_for_test_falls_back_to_samples(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('add_feed', url=FEED)
        selector = ItemSelector(db)

        items, warning = await selector.select_for_test(campaign(), now=T)

        assert warning == WARNING_SAMPLE_ITEMS
        assert len(items) == 5
        assert items[-1]['title'] == 'Campaign Statistics'
        assert await db.execute('count_items') == 0
    finally:
        await db.stop()


def test_sample_items_are_spaced_before_now():
    items = sample_items(T)

    assert [T - item['published'] for item in items] == [10000, 8000, 6000, 4000, 0]
    assert items[0]['url'] == 'https://www.phplist.org/manual/'
