from datetime import datetime, timezone
from email.utils import format_datetime

import pytest

import ingestion
from errors import FetchError
from fetcher import FetchResult
from ingestion import IngestionPipeline, STATUS_FAILED, STATUS_NOT_MODIFIED, STATUS_UPDATED
from models import DatabaseQueue

T = 1_700_000_000
DAY = 24 * 3600
FEED_A = 'https://a.example/feed.xml'
FEED_B = 'https://b.example/feed.xml'


def rss_item(uid, title, published=None, summary='', content='', extra=''):
    parts = [f'<guid isPermaLink="false">{uid}</guid>', f'<title>{title}</title>',
             f'<link>https://example.com/{uid}</link>']
    if published is not None:
        stamp = format_datetime(datetime.fromtimestamp(published, timezone.utc), usegmt=True)
        parts.append(f'<pubDate>{stamp}</pubDate>')
    if summary:
        parts.append(f'<description><![CDATA[{summary}]]></description>')
    if content:
        parts.append(f'<content:encoded><![CDATA[{content}]]></content:encoded>')
    parts.append(extra)
    return f"<item>{''.join(parts)}</item>"


def rss(*items):
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/" '
        'xmlns:media="http://search.yahoo.com/mrss/" xmlns:ex="http://example.com/ns">'
        '<channel><title>Example</title><link>https://example.com/</link><description>Example feed</description>'
        f"{''.join(items)}</channel></rss>"
    ).encode('utf-8')


def ok(url, body, etag='"e1"'):
    return FetchResult(url=url, modified=True, body=body, etag=etag,
                       last_modified='Tue, 14 Nov 2023 22:13:20 GMT',
                       encoding='utf-8', content_type='application/rss+xml', status=200)


class FakeFetcher:
    """Returns canned results (or raises canned errors) per URL."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def fetch(self, url, etag='', last_modified=''):
        self.calls.append((url, etag, last_modified))
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


async def activate(db, url, name=None):
    await db.execute('add_feed', url=url)
    await db.execute('add_campaign', name=name or url, rss_feed=url, message='[RSS]',
                     status='submitted', embargo=T, repeat_interval=60, repeat_until=T + 30 * DAY)


async def stored_items(db, url):
    return await db.execute('query_feed_items', feed_url=url, limit=100)


@pytest.mark.asyncio
async def test_no_active_feeds(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('add_feed', url=FEED_A)
        fetcher = FakeFetcher({})
        lines = []

        report = await IngestionPipeline(db, fetcher, custom_elements=[]).run(now=T, output=lines.append)

        assert lines == ["There are no active feeds to fetch"]
        assert report.feeds == []
        assert fetcher.calls == []
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_second_run_only_adds_new_items(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        first_body = rss(
            rss_item('a', 'A', T - 3 * DAY),
            rss_item('b', 'B', T - 2 * DAY),
            rss_item('c', 'C', T - 1 * DAY),
        )
        fetcher = FakeFetcher({FEED_A: ok(FEED_A, first_body)})
        pipeline = IngestionPipeline(db, fetcher, custom_elements=[])

        first = await pipeline.run(now=T)
        assert first.feeds[0].new_item_count == 3

        fetcher.responses[FEED_A] = ok(FEED_A, rss(
            rss_item('a', 'A', T - 3 * DAY),
            rss_item('b', 'B', T - 2 * DAY),
            rss_item('c', 'C', T - 1 * DAY),
            rss_item('d', 'D', T),
        ), etag='"e2"')
        second = await pipeline.run(now=T + 60)

        assert second.feeds[0].status == STATUS_UPDATED
        assert second.feeds[0].item_count == 4
        assert second.feeds[0].new_item_count == 1
        assert "4 items, 1 new items" in second.lines
        items = await stored_items(db, FEED_A)
        assert [item['title'] for item in items] == ['A', 'B', 'C', 'D']
        assert items[-1]['published'] == T
        feed = await db.execute('get_feed_by_url', url=FEED_A)
        assert feed['etag'] == '"e2"'
        events = await db.execute('recent_events')
        assert events[0]['message'] == f"Feed {FEED_A} 4 items, 1 new items"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_rerunning_same_document_adds_nothing(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        body = rss(rss_item('a', 'A', T - DAY), rss_item('b', 'B', T))
        pipeline = IngestionPipeline(db, FakeFetcher({FEED_A: ok(FEED_A, body)}), custom_elements=[])

        await pipeline.run(now=T)
        data_before = await stored_items(db, FEED_A)
        report = await pipeline.run(now=T + 3600)

        assert report.new_item_count == 0
        assert await db.execute('count_items') == 2
        assert await stored_items(db, FEED_A) == data_before
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_not_modified_skips_parsing(tmp_path, monkeypatch):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        feed = await db.execute('get_feed_by_url', url=FEED_A)
        await db.execute('update_feed_headers', feed_id=feed['id'], etag='"v1"',
                         last_modified='Tue, 14 Nov 2023 22:13:20 GMT')

        def fail_parse(*args, **kwargs):
            raise AssertionError("parse_feed must not run for a 304")

        monkeypatch.setattr(ingestion, "parse_feed", fail_parse)
        fetcher = FakeFetcher({FEED_A: FetchResult(url=FEED_A, modified=False, etag='"v1"',
                                                   last_modified='Tue, 14 Nov 2023 22:13:20 GMT', status=304)})
        lines = []

        report = await IngestionPipeline(db, fetcher, custom_elements=[]).run(now=T, output=lines.append)

        assert report.feeds[0].status == STATUS_NOT_MODIFIED
        assert lines == [f"Fetching {FEED_A}", "Not modified"]
        assert fetcher.calls == [(FEED_A, '"v1"', 'Tue, 14 Nov 2023 22:13:20 GMT')]
        assert await db.execute('count_items') == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failing_feed_does_not_stop_others(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        await activate(db, FEED_B)
        fetcher = FakeFetcher({
            FEED_A: FetchError("Feed failed to load, got response code 500", url=FEED_A, status=500),
            FEED_B: ok(FEED_B, rss(rss_item('b1', 'B1', T - 60))),
        })

        report = await IngestionPipeline(db, fetcher, custom_elements=[]).run(now=T)

        assert [feed.status for feed in report.feeds] == [STATUS_FAILED, STATUS_UPDATED]
        assert report.feeds[0].error == "Feed failed to load, got response code 500"
        assert "Feed failed to load, got response code 500" in report.lines
        assert [item['title'] for item in await stored_items(db, FEED_B)] == ['B1']
        feed_a = await db.execute('get_feed_by_url', url=FEED_A)
        assert feed_a['etag'] == ''
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_unparseable_feed_keeps_old_validators(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        fetcher = FakeFetcher({FEED_A: ok(FEED_A, b'this is not a feed at all')})

        report = await IngestionPipeline(db, fetcher, custom_elements=[]).run(now=T)

        assert report.feeds[0].status == STATUS_FAILED
        feed = await db.execute('get_feed_by_url', url=FEED_A)
        assert feed['etag'] == ''
        assert feed['last_modified'] == ''
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_content_preference(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        await activate(db, FEED_B)
        item = rss_item('x', 'X', T, summary='<p>Short summary</p>', content='<p>Full article</p>')
        fetcher = FakeFetcher({FEED_A: ok(FEED_A, rss(item)), FEED_B: ok(FEED_B, rss(item))})

        await IngestionPipeline(db, fetcher, custom_elements=[], use_summary=True).run(now=T)

        summary_item = (await stored_items(db, FEED_A))[0]
        assert 'Short summary' in summary_item['content']
        assert 'Full article' not in summary_item['content']

        await db.execute('reset_all_feeds')
        await IngestionPipeline(db, fetcher, custom_elements=[], use_summary=False).run(now=T)

        full_item = (await stored_items(db, FEED_A))[0]
        assert 'Full article' in full_item['content']
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_custom_elements_are_stored(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        extra = '<media:thumbnail url="https://example.com/a.jpg" /><ex:rating>5</ex:rating>'
        fetcher = FakeFetcher({FEED_A: ok(FEED_A, rss(rss_item('x', 'X', T, summary='s', extra=extra)))})
        pipeline = IngestionPipeline(
            db, fetcher, custom_elements=['media:thumbnail@url', 'ex:rating', 'ex:missing', ':broken'],
        )

        await pipeline.run(now=T)

        item = (await stored_items(db, FEED_A))[0]
        assert item['media:thumbnail@url'] == 'https://example.com/a.jpg'
        assert item['ex:rating'] == '5'
        assert 'ex:missing' not in item
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_undated_item_uses_ingestion_time(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        fetcher = FakeFetcher({FEED_A: ok(FEED_A, rss(rss_item('nodate', 'No date')))})

        await IngestionPipeline(db, fetcher, custom_elements=[]).run(now=T)

        item = (await stored_items(db, FEED_A))[0]
        assert item['published'] == T
        assert item['added'] == T
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_astral_characters_are_transcoded(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        fetcher = FakeFetcher({FEED_A: ok(FEED_A, rss(rss_item('e', 'Emoji', T, summary='<p>Hi \U0001F600</p>')))})

        await IngestionPipeline(db, fetcher, custom_elements=[], transcode=True).run(now=T)

        item = (await stored_items(db, FEED_A))[0]
        assert '&#128512;' in item['content']
        assert '\U0001F600' not in item['content']
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failing_item_fields_keep_the_item(tmp_path, monkeypatch):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        rating = '<ex:rating>5</ex:rating>'
        body = rss(
            rss_item('a', 'A', T - 3 * DAY, extra=rating),
            rss_item('b', 'B', T - 2 * DAY, extra=rating),
            rss_item('c', 'C', T - 1 * DAY, extra=rating),
        )
        original_value = ingestion.FeedEntry.value

        def value(self, spec):
            if self.id == 'b':
                raise RuntimeError("broken element")
            return original_value(self, spec)

        monkeypatch.setattr(ingestion.FeedEntry, "value", value)
        lines = []

        report = await IngestionPipeline(db, FakeFetcher({FEED_A: ok(FEED_A, body)}),
                                         custom_elements=['ex:rating']).run(now=T, output=lines.append)

        message = f"Unable to add item B for feed {FEED_A}"
        assert message in lines
        assert "3 items, 3 new items" in lines
        assert report.feeds[0].status == STATUS_UPDATED
        items = await stored_items(db, FEED_A)
        assert [item['title'] for item in items] == ['A', 'B', 'C']
        assert items[1]['url'] == 'https://example.com/b'
        assert 'ex:rating' not in items[1]
        assert items[2]['ex:rating'] == '5'
        events = [event['message'] for event in await db.execute('recent_events')]
        assert message in events
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failing_item_insert_does_not_stop_the_feed(tmp_path, monkeypatch):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await activate(db, FEED_A)
        body = rss(rss_item('a', 'A', T - 2 * DAY), rss_item('b', 'B', T - DAY), rss_item('c', 'C', T))
        execute = db.execute

        async def flaky_execute(operation, **params):
            if operation == 'add_item' and params.get('uid') == 'b':
                raise ValueError("rejected row")
            return await execute(operation, **params)

        monkeypatch.setattr(db, "execute", flaky_execute)
        lines = []

        report = await IngestionPipeline(db, FakeFetcher({FEED_A: ok(FEED_A, body)}),
                                         custom_elements=[]).run(now=T, output=lines.append)

        assert f"Unable to add item B for feed {FEED_A}" in lines
        assert report.feeds[0].new_item_count == 2
        assert [item['title'] for item in await stored_items(db, FEED_A)] == ['A', 'C']
    finally:
        await db.stop()
