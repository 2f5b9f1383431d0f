from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import FetcherSettings, SchedulerSettings, UserAgentSettings
from models import DatabaseQueue
from poller import FeedPoller, stored_feed_hints

NOW = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
WEEK = 7 * 24 * 3600

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel>
  <title>Polled</title>
  <link>https://example.com/</link>
  <ttl>180</ttl>
  <item><guid>one</guid><title>One</title><description>First</description></item>
  <item><guid>two</guid><title>Two</title><description>Second</description></item>
</channel></rss>
"""


def build_feed_server():
    state = {"mode": "ok", "requests": []}

    async def feed(request):
        state["requests"].append(dict(request.headers))
        mode = state["mode"]
        if mode == "ok":
            if request.headers.get("If-None-Match") == '"v1"':
                return web.Response(status=304)
            return web.Response(text=RSS, content_type="application/rss+xml", headers={"ETag": '"v1"'})
        if mode == "error":
            return web.Response(status=500)
        if mode == "gone":
            return web.Response(status=410)
        if mode == "throttled":
            return web.Response(status=429, headers={"Retry-After": "86400"})
        if mode == "garbage":
            return web.Response(text="<html><body>oops</body></html>", content_type="text/html")
        raise AssertionError(mode)

    async def old(request):
        raise web.HTTPMovedPermanently(location="/feed")

    async def page(request):
        return web.Response(
            text='<!DOCTYPE html><html><head><link rel="alternate" type="application/rss+xml" href="/feed">'
                 "</head><body>Blog</body></html>",
            content_type="text/html",
        )

    app = web.Application()
    app.router.add_get("/feed", feed)
    app.router.add_get("/old", old)
    app.router.add_get("/page", page)
    return app, state


async def setup(tmp_path, url, fetcher_settings=None):
    db = DatabaseQueue(str(tmp_path / "poller.db"))
    await db.start()
    feed_id = await db.execute('register_feed', url=url, slug='polled')
    poller = FeedPoller(
        db,
        fetcher_settings or FetcherSettings(timeout_seconds=5.0),
        SchedulerSettings(),
        UserAgentSettings(),
        rand=lambda: 0.0,
        clock=lambda: NOW,
    )
    return db, feed_id, poller


@pytest.mark.asyncio
async def test_successful_poll_stores_entries_and_schedule(tmp_path):
    app, state = build_feed_server()
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/feed")))
        try:
            result = await poller.poll_feed(feed_id)

            assert result.ok
            assert result.entries.new_count == 2
            assert result.schedule.reason == "ttl"
            assert result.schedule.next_fetch_at == NOW + timedelta(minutes=180)
            feed = await db.execute('get_feed', feed_id=feed_id)
            assert feed['etag'] == '"v1"'
            assert feed['title'] == "Polled"
            assert feed['ttl_minutes'] == 180
            assert feed['next_fetch_at'] == int((NOW + timedelta(minutes=180)).timestamp())
            assert state["requests"][0]["User-Agent"].startswith("FeedIngest/")
            assert f"feed:{feed_id}" in state["requests"][0]["User-Agent"]
        finally:
            await db.stop()


@pytest.mark.asyncio
async def test_not_modified_after_failures_resets_count_and_keeps_validators(tmp_path):
    app, state = build_feed_server()
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/feed")))
        try:
            await poller.poll_feed(feed_id)

            state["mode"] = "error"
            for expected_failures in (1, 2, 3):
                result = await poller.poll_feed(feed_id)
                assert not result.ok
                feed = await db.execute('get_feed', feed_id=feed_id)
                assert feed['consecutive_failures'] == expected_failures
            assert result.schedule.reason == "failure_backoff"
            assert result.schedule.interval_seconds == 7200

            state["mode"] = "ok"
            result = await poller.poll_feed(feed_id)

            assert result.ok
            assert state["requests"][-1]["If-None-Match"] == '"v1"'
            feed = await db.execute('get_feed', feed_id=feed_id)
            assert feed['consecutive_failures'] == 0
            assert feed['last_error'] is None
            assert feed['etag'] == '"v1"'
            # Hints saved from the last full parse still drive the interval
            assert result.schedule.reason == "ttl"
            assert await db.execute('count_entries', feed_id=feed_id) == 2
        finally:
            await db.stop()


@pytest.mark.asyncio
async def test_gone_feed_waits_a_week(tmp_path):
    app, state = build_feed_server()
    state["mode"] = "gone"
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/feed")))
        try:
            result = await poller.poll_feed(feed_id)

            assert result.schedule.reason == "permanent_failure"
            assert result.schedule.next_fetch_at == NOW + timedelta(seconds=WEEK)
            feed = await db.execute('get_feed', feed_id=feed_id)
            assert feed['consecutive_failures'] == 1
            assert "410" in feed['last_error']
        finally:
            await db.stop()


@pytest.mark.asyncio
async def test_retry_after_pushes_next_fetch_later(tmp_path):
    app, state = build_feed_server()
    state["mode"] = "throttled"
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/feed")))
        try:
            result = await poller.poll_feed(feed_id)

            assert result.schedule.next_fetch_at == NOW + timedelta(seconds=86400)
            assert result.schedule.reason == "failure_backoff"
        finally:
            await db.stop()


@pytest.mark.asyncio
async def test_unparseable_body_counts_as_failure(tmp_path):
    app, state = build_feed_server()
    state["mode"] = "garbage"
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/feed")))
        try:
            result = await poller.poll_feed(feed_id)

            assert not result.ok
            assert result.error.startswith("Parse error")
            assert await db.execute('count_entries', feed_id=feed_id) == 0
            feed = await db.execute('get_feed', feed_id=feed_id)
            assert feed['consecutive_failures'] == 1
        finally:
            await db.stop()


@pytest.mark.asyncio
async def test_permanent_redirect_updates_stored_url(tmp_path):
    app, _ = build_feed_server()
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/old")))
        try:
            result = await poller.poll_feed(feed_id)

            assert result.ok
            feed = await db.execute('get_feed', feed_id=feed_id)
            assert feed['url'] == str(server.make_url("/feed"))
        finally:
            await db.stop()


@pytest.mark.asyncio
async def test_push_delivery_processes_entries_without_rescheduling(tmp_path):
    db, feed_id, poller = await setup(tmp_path, "https://example.com/feed.xml")
    try:
        result = await poller.handle_push(feed_id, RSS.encode("utf-8"))

        assert result.new_count == 2
        feed = await db.execute('get_feed', feed_id=feed_id)
        assert feed['next_fetch_at'] == 0
        assert await poller.handle_push(feed_id, b"not a feed") is None
        assert await poller.handle_push(999, RSS.encode("utf-8")) is None
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_poll_due_only_polls_due_feeds(tmp_path):
    app, state = build_feed_server()
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/feed")))
        try:
            later = await db.execute('register_feed', url=str(server.make_url("/old")), slug='later')
            await db.execute('schedule_feed', feed_id=later, next_fetch_at=int(NOW.timestamp()) + 60)

            results = await poller.poll_due()

            assert [result.feed_id for result in results] == [feed_id]
            assert len(state["requests"]) == 1
        finally:
            await db.stop()


def test_stored_feed_hints():
    hints = stored_feed_hints({'ttl_minutes': 30, 'sy_update_period': 'daily', 'sy_update_frequency': None})
    assert hints.ttl_minutes == 30
    assert hints.syndication.period_seconds == 24 * 3600
    assert hints.syndication.update_frequency == 1

    assert stored_feed_hints({'sy_update_period': 'fortnightly'}).syndication is None


@pytest.mark.asyncio
async def test_stopping_at_permanent_redirect_moves_feed_and_refetches(tmp_path):
    app, state = build_feed_server()
    async with TestServer(app) as server:
        settings = FetcherSettings(timeout_seconds=5.0, follow_permanent_redirects=False)
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/old")), fetcher_settings=settings)
        try:
            result = await poller.poll_feed(feed_id)

            assert result.ok
            assert result.schedule.reason == "permanent_redirect"
            assert result.schedule.next_fetch_at == NOW
            assert state["requests"] == []
            feed = await db.execute('get_feed', feed_id=feed_id)
            assert feed['url'] == str(server.make_url("/feed"))

            result = await poller.poll_feed(feed_id)
            assert result.entries.new_count == 2
        finally:
            await db.stop()


@pytest.mark.asyncio
async def test_html_page_switches_to_advertised_feed(tmp_path):
    app, state = build_feed_server()
    async with TestServer(app) as server:
        db, feed_id, poller = await setup(tmp_path, str(server.make_url("/page")))
        try:
            result = await poller.poll_feed(feed_id)

            assert result.ok
            assert result.schedule.reason == "feed_discovered"
            assert result.schedule.next_fetch_at == NOW
            feed = await db.execute('get_feed', feed_id=feed_id)
            assert feed['url'] == str(server.make_url("/feed"))
            assert feed['consecutive_failures'] == 0
            assert feed['next_fetch_at'] == int(NOW.timestamp())

            result = await poller.poll_feed(feed_id)
            assert result.entries.new_count == 2
            assert len(state["requests"]) == 1
        finally:
            await db.stop()
