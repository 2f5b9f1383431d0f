import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import FetcherSettings
from fetcher import (
    ClientError, NetworkError, NotModified, PermanentRedirect, RateLimited,
    ServerError, Success, TooManyRedirects, build_request_headers, fetch_feed,
    fetch_with_retry, format_network_error, parse_retry_after, retry_delay,
    should_retry,
)

SETTINGS = FetcherSettings(timeout_seconds=2.0, max_redirects=3, max_response_bytes=1024)
FEED_BODY = b"<rss><channel><title>T</title></channel></rss>"


def build_app():
    seen = {}

    async def feed(request):
        seen["headers"] = dict(request.headers)
        if request.headers.get("If-None-Match") == '"v1"':
            return web.Response(status=304, headers={"ETag": '"v1"', "Cache-Control": "max-age=900"})
        return web.Response(
            body=FEED_BODY,
            content_type="application/rss+xml",
            headers={"ETag": '"v1"', "Cache-Control": "max-age=600"},
        )

    async def moved(request):
        raise web.HTTPMovedPermanently(location="/moved-again")

    async def moved_again(request):
        raise web.HTTPPermanentRedirect(location="/feed")

    async def temporary(request):
        raise web.HTTPFound(location="/feed")

    async def loop(request):
        raise web.HTTPFound(location="/loop")

    async def no_location(request):
        return web.Response(status=302)

    async def throttled(request):
        return web.Response(status=429, headers={"Retry-After": "120"})

    async def gone(request):
        return web.Response(status=410)

    async def missing(request):
        return web.Response(status=404)

    async def forbidden(request):
        return web.Response(status=403)

    async def broken(request):
        return web.Response(status=503, headers={"Retry-After": "30"})

    async def huge(request):
        return web.Response(body=b"x" * 4096)

    async def slow(request):
        await asyncio.sleep(1.0)
        return web.Response(body=FEED_BODY)

    app = web.Application()
    app.router.add_get("/feed", feed)
    app.router.add_get("/moved", moved)
    app.router.add_get("/moved-again", moved_again)
    app.router.add_get("/temporary", temporary)
    app.router.add_get("/loop", loop)
    app.router.add_get("/no-location", no_location)
    app.router.add_get("/throttled", throttled)
    app.router.add_get("/gone", gone)
    app.router.add_get("/missing", missing)
    app.router.add_get("/forbidden", forbidden)
    app.router.add_get("/broken", broken)
    app.router.add_get("/huge", huge)
    app.router.add_get("/slow", slow)
    return app, seen


async def fetch(server, path, **kwargs):
    kwargs.setdefault("settings", SETTINGS)
    return await fetch_feed(str(server.make_url(path)), user_agent="FeedIngest/test", **kwargs)


@pytest.mark.asyncio
async def test_success_carries_body_and_cache_headers():
    app, seen = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/feed")

    assert isinstance(outcome, Success)
    assert outcome.body == FEED_BODY
    assert outcome.content_type.startswith("application/rss+xml")
    assert outcome.cache_headers.etag == '"v1"'
    assert outcome.cache_headers.cache_control.max_age == 600
    assert outcome.redirect_chain == []
    assert outcome.canonical_url is None
    assert seen["headers"]["User-Agent"] == "FeedIngest/test"
    assert "If-None-Match" not in seen["headers"]


@pytest.mark.asyncio
async def test_conditional_request_returns_not_modified():
    app, seen = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/feed", etag="v1", last_modified="Wed, 21 Oct 2015 07:28:00 GMT")

    assert isinstance(outcome, NotModified)
    assert outcome.cache_headers.cache_control.max_age == 900
    assert seen["headers"]["If-None-Match"] == '"v1"'
    assert seen["headers"]["If-Modified-Since"] == "Wed, 21 Oct 2015 07:28:00 GMT"


@pytest.mark.asyncio
async def test_permanent_redirect_chain_sets_canonical_url():
    app, _ = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/moved")
        final_url = str(server.make_url("/feed"))

    assert isinstance(outcome, Success)
    assert [hop.kind for hop in outcome.redirect_chain] == ["permanent", "permanent"]
    assert outcome.final_url == final_url
    assert outcome.canonical_url == final_url


@pytest.mark.asyncio
async def test_temporary_hop_leaves_canonical_url_unset():
    app, _ = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/temporary")

    assert isinstance(outcome, Success)
    assert [hop.kind for hop in outcome.redirect_chain] == ["temporary"]
    assert outcome.canonical_url is None


@pytest.mark.asyncio
async def test_permanent_redirect_returned_when_not_following():
    app, _ = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/moved", follow_permanent=False)
        expected = str(server.make_url("/moved-again"))

    assert isinstance(outcome, PermanentRedirect)
    assert outcome.status_code == 301
    assert outcome.new_url == expected


@pytest.mark.asyncio
async def test_redirect_loop_is_bounded():
    app, _ = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/loop")

    assert isinstance(outcome, TooManyRedirects)
    assert len(outcome.redirect_chain) == SETTINGS.max_redirects + 1


@pytest.mark.asyncio
async def test_redirect_without_location_is_a_client_error():
    app, _ = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/no-location")

    assert isinstance(outcome, ClientError)
    assert outcome.permanent is False
    assert "Location" in outcome.message


@pytest.mark.asyncio
async def test_error_statuses_are_classified():
    app, _ = build_app()
    async with TestServer(app) as server:
        throttled = await fetch(server, "/throttled")
        gone = await fetch(server, "/gone")
        missing = await fetch(server, "/missing")
        forbidden = await fetch(server, "/forbidden")
        broken = await fetch(server, "/broken")

    assert isinstance(throttled, RateLimited)
    assert throttled.retry_after_seconds == 120

    assert isinstance(gone, ClientError) and gone.permanent and gone.status_code == 410
    assert isinstance(missing, ClientError) and missing.permanent and missing.status_code == 404
    assert isinstance(forbidden, ClientError) and not forbidden.permanent

    assert isinstance(broken, ServerError)
    assert broken.status_code == 503
    assert broken.retry_after_seconds == 30


@pytest.mark.asyncio
async def test_oversized_body_is_rejected():
    app, _ = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/huge")

    assert isinstance(outcome, ClientError)
    assert "exceeds" in outcome.message


@pytest.mark.asyncio
async def test_timeout_becomes_network_error():
    app, _ = build_app()
    async with TestServer(app) as server:
        outcome = await fetch(server, "/slow", settings=FetcherSettings(timeout_seconds=0.2))

    assert isinstance(outcome, NetworkError)
    assert outcome.timed_out is True


@pytest.mark.asyncio
async def test_connection_refused_becomes_network_error():
    app, _ = build_app()
    async with TestServer(app) as server:
        url = str(server.make_url("/feed"))

    outcome = await fetch_feed(url, settings=SETTINGS, user_agent="FeedIngest/test")

    assert isinstance(outcome, NetworkError)
    assert outcome.timed_out is False


@pytest.mark.asyncio
async def test_unsupported_scheme_is_rejected_without_request():
    outcome = await fetch_feed("ftp://example.com/feed", settings=SETTINGS, user_agent="x")

    assert isinstance(outcome, ClientError)
    assert outcome.permanent is True


@pytest.mark.asyncio
async def test_fetch_with_retry_stops_on_permanent_error():
    app, _ = build_app()
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    async with TestServer(app) as server:
        transient = await fetch_with_retry(
            str(server.make_url("/broken")), max_attempts=3, sleep=fake_sleep,
            settings=SETTINGS, user_agent="x",
        )
        permanent = await fetch_with_retry(
            str(server.make_url("/gone")), max_attempts=3, sleep=fake_sleep,
            settings=SETTINGS, user_agent="x",
        )

    assert isinstance(transient, ServerError)
    assert isinstance(permanent, ClientError)
    assert sleeps == [30, 30]


def test_build_request_headers_quotes_bare_etag():
    assert build_request_headers("ua", etag="abc")["If-None-Match"] == '"abc"'
    assert build_request_headers("ua", etag='W/"abc"')["If-None-Match"] == 'W/"abc"'
    headers = build_request_headers("ua", last_modified="garbage")
    assert "If-Modified-Since" not in headers
    assert headers["User-Agent"] == "ua"


def test_parse_retry_after():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    assert parse_retry_after("120") == 120
    assert parse_retry_after(format_datetime(now + timedelta(seconds=90), usegmt=True), now=now) == 90
    assert parse_retry_after(format_datetime(now - timedelta(hours=1), usegmt=True), now=now) == 0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None


def test_should_retry_and_delay():
    assert should_retry(ServerError(status_code=500, message="x"))
    assert should_retry(RateLimited())
    assert should_retry(NetworkError(timed_out=True, message="x"))
    assert should_retry(ClientError(status_code=403, permanent=False, message="x"))
    assert not should_retry(ClientError(status_code=404, permanent=True, message="x"))

    assert retry_delay(RateLimited(retry_after_seconds=0), 0) == 1
    assert retry_delay(RateLimited(retry_after_seconds=99999), 0) == 3600
    assert [retry_delay(NetworkError(True, "x"), n) for n in range(6)] == [30, 60, 120, 240, 480, 480]


def test_format_network_error_categories():
    refused = aiohttp.ClientOSError(111, "Connect call failed")
    assert format_network_error(ConnectionRefusedError(111, "refused")) == "Connection refused"
    assert format_network_error(aiohttp.ServerDisconnectedError()) == "Connection closed unexpectedly"
    assert format_network_error(refused) == "Connection refused"
    assert format_network_error(RuntimeError("boom")) == "Network error: RuntimeError"
