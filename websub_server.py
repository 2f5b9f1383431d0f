#!/usr/bin/env python3
"""
Inbound WebSub callback endpoint.

``GET  /websub/callback/{feed_id}`` answers hub verification challenges.
``POST /websub/callback/{feed_id}`` accepts content deliveries, checks the
HMAC signature and hands valid payloads to the poller.
"""

from typing import Optional

from aiohttp import web

from config import get_logger

logger = get_logger("websub_server")

# Deliveries larger than this are refused before reading
MAX_DELIVERY_BYTES = 10 * 1024 * 1024

MANAGER_KEY = web.AppKey("push_manager", object)
POLLER_KEY = web.AppKey("poller", object)


def _feed_id(request: web.Request) -> Optional[int]:
    try:
        return int(request.match_info["feed_id"])
    except (KeyError, ValueError):
        return None


async def handle_verification(request: web.Request) -> web.Response:
    feed_id = _feed_id(request)
    if feed_id is None:
        return web.Response(status=404, text="Unknown feed")

    manager = request.app[MANAGER_KEY]
    params = request.rel_url.query
    challenge = await manager.handle_verification(feed_id, params)
    if challenge is not None:
        return web.Response(status=200, text=challenge, content_type="text/plain")
    if (params.get("hub.mode") or "").lower() == "denied":
        return web.Response(status=200, text="")
    return web.Response(status=404, text="Verification refused")


async def handle_delivery(request: web.Request) -> web.Response:
    feed_id = _feed_id(request)
    if feed_id is None:
        return web.Response(status=404, text="Unknown feed")
    if request.content_length is not None and request.content_length > MAX_DELIVERY_BYTES:
        return web.Response(status=413, text="Payload too large")

    body = await request.read()
    manager = request.app[MANAGER_KEY]
    signature = request.headers.get("X-Hub-Signature")
    if not await manager.accept_delivery(feed_id, body, signature):
        # Invalid signatures are acknowledged and dropped
        return web.Response(status=202, text="Ignored")

    result = await request.app[POLLER_KEY].handle_push(feed_id, body)
    if result is not None:
        logger.info(f"Push for feed {feed_id}: {result.new_count} new, {result.updated_count} updated")
    return web.Response(status=202, text="Accepted")


def create_app(push_manager, poller) -> web.Application:
    app = web.Application(client_max_size=MAX_DELIVERY_BYTES)
    app[MANAGER_KEY] = push_manager
    app[POLLER_KEY] = poller
    app.router.add_get("/websub/callback/{feed_id}", handle_verification)
    app.router.add_post("/websub/callback/{feed_id}", handle_delivery)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start serving ``app``; call ``runner.cleanup()`` to stop."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"WebSub callback server listening on {host}:{port}")
    return runner
