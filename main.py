#!/usr/bin/env python3
"""
Feed ingestion entry point.

Commands:
    add <url> [--slug SLUG]   register a feed
    once [--feed ID|SLUG]     poll due feeds (or one feed) a single time
    run                       poll continuously and serve WebSub callbacks
    serve                     serve WebSub callbacks only
    status                    show per-feed schedule and failure state
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from models import DatabaseQueue
from poller import FeedPoller, PollResult
from telemetry import init_telemetry, trace_span
from user_agent import build_user_agent
from websub import PushSubscriptionManager
from websub_server import create_app, start_server

logger = get_logger("main")
init_telemetry("feed-ingest")


class IngestOrchestrator:
    """Wires the store, poller and push manager together for CLI commands."""

    def __init__(self, db_path: Optional[str] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.session: Optional[ClientSession] = None
        self.push_manager: Optional[PushSubscriptionManager] = None
        self.poller: Optional[FeedPoller] = None

    async def start(self) -> None:
        logger.debug(f"Configuration: {config.get_config_summary()}")
        await self.db.start()
        self.session = ClientSession()
        self.push_manager = PushSubscriptionManager(
            self.db,
            config.websub_settings(),
            user_agent=build_user_agent(config.user_agent_settings()),
            session=self.session,
        )
        self.poller = FeedPoller(
            self.db,
            fetcher_settings=config.fetcher_settings(),
            scheduler_settings=config.scheduler_settings(),
            user_agent_settings=config.user_agent_settings(),
            push_manager=self.push_manager,
            concurrency=config.FETCH_CONCURRENCY,
            session=self.session,
        )
        await self.seed_feeds()

    async def stop(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        await self.db.stop()

    async def seed_feeds(self) -> int:
        """Register the feeds listed in feeds.yaml."""
        registered = 0
        for slug, url in config.FEED_SOURCES.items():
            if await self.db.execute('register_feed', url=url, slug=slug) is not None:
                registered += 1
        if registered:
            logger.info(f"Registered {registered} feeds from configuration")
        return registered

    async def add_feed(self, url: str, slug: Optional[str] = None, readability: bool = False) -> Optional[int]:
        feed_id = await self.db.execute('register_feed', url=url, slug=slug, readability=readability)
        if feed_id is None:
            logger.error(f"Could not register feed {url}")
        else:
            logger.info(f"Feed {url} registered with id {feed_id}")
        return feed_id

    async def resolve_feed(self, ref: str) -> Optional[int]:
        if ref.isdigit():
            return int(ref)
        return await self.db.execute('get_feed_id', slug=ref)

    @trace_span("main.run_once", tracer_name="main")
    async def run_once(self, feed_ref: Optional[str] = None) -> List[PollResult]:
        if feed_ref:
            feed_id = await self.resolve_feed(feed_ref)
            if feed_id is None:
                logger.error(f"Unknown feed: {feed_ref}")
                return []
            result = await self.poller.poll_feed(feed_id)
            return [result] if result else []
        results = await self.poller.poll_due()
        await self.poller.run_push_maintenance()
        return results

    async def serve(self, stop: asyncio.Event, poll: bool) -> None:
        runner = await start_server(
            create_app(self.push_manager, self.poller),
            config.WEBSUB_LISTEN_HOST,
            config.WEBSUB_LISTEN_PORT,
        )
        try:
            if poll:
                await self.poller.run_forever(poll_interval=config.POLL_INTERVAL_SECONDS, stop=stop)
            else:
                await stop.wait()
        finally:
            await runner.cleanup()

    async def status(self) -> List[Dict[str, Any]]:
        return await self.db.execute('list_feeds')


def _format_timestamp(value: Optional[int]) -> str:
    if not value:
        return "never"
    return datetime.fromtimestamp(value, timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def print_status(feeds: List[Dict[str, Any]]) -> None:
    if not feeds:
        print("No feeds registered")
        return
    for feed in feeds:
        name = feed['slug'] or feed['title'] or feed['url']
        print(f"📰 [{feed['id']}] {name}")
        print(f"   🔗 {feed['url']}")
        print(f"   ⏰ next fetch: {_format_timestamp(feed['next_fetch_at'])} ({feed['schedule_reason'] or 'new'})")
        print(f"   📥 last fetched: {_format_timestamp(feed['last_fetched'])}, entries: {feed['entry_count']}")
        print(f"   📡 websub: {feed['websub_state']}")
        if feed['consecutive_failures']:
            print(f"   ❌ {feed['consecutive_failures']} consecutive failures: {feed['last_error']}")


def print_results(results: List[PollResult]) -> None:
    for result in results:
        if result.error:
            print(f"❌ feed {result.feed_id}: {result.error}")
        elif result.entries is not None:
            entries = result.entries
            print(f"✅ feed {result.feed_id}: {entries.new_count} new, {entries.updated_count} updated, "
                  f"{entries.unchanged_count} unchanged")
        else:
            print(f"✅ feed {result.feed_id}: {type(result.outcome).__name__}")


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; KeyboardInterrupt still works
            pass


async def run_command(args: argparse.Namespace) -> int:
    orchestrator = IngestOrchestrator(args.db)
    await orchestrator.start()
    try:
        if args.command == 'add':
            feed_id = await orchestrator.add_feed(args.url, slug=args.slug, readability=args.readability)
            if feed_id is None:
                return 1
            print(f"✅ registered feed {feed_id}")
            return 0

        if args.command == 'once':
            results = await orchestrator.run_once(args.feed)
            print_results(results)
            return 0 if all(result.ok for result in results) else 1

        if args.command == 'status':
            print_status(await orchestrator.status())
            return 0

        stop = asyncio.Event()
        _install_signal_handlers(stop)
        await orchestrator.serve(stop, poll=args.command == 'run')
        return 0
    finally:
        await orchestrator.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed ingestion service')
    parser.add_argument('--db', type=str, help='SQLite database path (defaults to DATABASE_PATH)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    add_parser = subparsers.add_parser('add', help='Register a feed URL')
    add_parser.add_argument('url', help='Feed URL')
    add_parser.add_argument('--slug', help='Short name for the feed')
    add_parser.add_argument('--readability', action='store_true',
                            help='Extract main content with readability for this feed')

    once_parser = subparsers.add_parser('once', help='Poll due feeds once')
    once_parser.add_argument('--feed', help='Poll only this feed (id or slug), due or not')

    subparsers.add_parser('run', help='Poll continuously and serve WebSub callbacks')
    subparsers.add_parser('serve', help='Serve WebSub callbacks only')
    subparsers.add_parser('status', help='Show feed status')
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
