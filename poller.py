#!/usr/bin/env python3
"""
Feed polling orchestration.

One cycle per feed: fetch, parse, process entries, reschedule. Cycles for
the same feed never overlap (a per-feed lock also covers push deliveries),
and a process-wide semaphore bounds how many feeds are mid-fetch at once.
A feed URL that turns out to be an HTML page is moved to the feed the page
advertises.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from sqlite3 import Error as SQLiteError
from typing import Any, Callable, Dict, List, Optional

from aiohttp import ClientSession

from cache_headers import CacheHeaders, parse_cache_control
from config import FetcherSettings, SchedulerSettings, UserAgentSettings, get_logger
from entry_processor import ProcessEntriesResult, process_entries
from discovery import discover_feeds, looks_like_html
from errors import FeedParseError, UnknownFeedFormatError
from feed_parser import parse_feed
from feed_types import ParsedFeed, SyndicationHints, SYNDICATION_PERIODS
from fetcher import (
    ClientError, FetchOutcome, NotModified, PermanentRedirect, Success,
    describe_outcome, fetch_feed,
)
from scheduling import (
    FeedHints, SchedulingInput, SchedulingResult, calculate_next_fetch,
    permanent_failure_schedule,
)
from telemetry import trace_span
from user_agent import build_user_agent

logger = get_logger("poller")

REASON_PERMANENT_REDIRECT = "permanent_redirect"
REASON_FEED_DISCOVERED = "feed_discovered"
RENEWAL_CHECK_SECONDS = 60 * 60


@dataclass
class PollResult:
    feed_id: int
    outcome: Optional[FetchOutcome]
    schedule: Optional[SchedulingResult] = None
    entries: Optional[ProcessEntriesResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def stored_feed_hints(feed: Dict[str, Any]) -> FeedHints:
    """Rebuild scheduling hints from the columns saved on the last parse."""
    syndication = None
    period = feed.get('sy_update_period')
    if period in SYNDICATION_PERIODS:
        syndication = SyndicationHints(period, feed.get('sy_update_frequency') or 1)
    return FeedHints(ttl_minutes=feed.get('ttl_minutes'), syndication=syndication)


def feed_metadata(parsed: ParsedFeed) -> Dict[str, Any]:
    return {
        'title': parsed.title,
        'description': parsed.description,
        'site_url': parsed.site_url,
        'icon_url': parsed.icon_url,
        'hub_url': parsed.hub_url,
        'self_url': parsed.self_url,
        'ttl_minutes': parsed.ttl_minutes,
        'sy_update_period': parsed.syndication.update_period if parsed.syndication else None,
        'sy_update_frequency': parsed.syndication.update_frequency if parsed.syndication else None,
    }


class FeedPoller:
    """Runs poll cycles against a DatabaseQueue store.

    Args:
        store: DatabaseQueue-like object exposing ``execute(operation, **params)``
        fetcher_settings: Timeout, redirect and size limits for fetches
        scheduler_settings: Interval bounds for rescheduling
        user_agent_settings: Identity for the User-Agent header
        push_manager: Optional PushSubscriptionManager
        concurrency: Maximum feeds fetched at the same time
        session: Optional shared aiohttp session
        rand: Jitter source
        clock: Returns an aware UTC datetime
    """

    def __init__(
        self,
        store,
        fetcher_settings: FetcherSettings,
        scheduler_settings: SchedulerSettings,
        user_agent_settings: UserAgentSettings,
        push_manager=None,
        concurrency: int = 10,
        session: Optional[ClientSession] = None,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.fetcher_settings = fetcher_settings
        self.scheduler_settings = scheduler_settings
        self.user_agent_settings = user_agent_settings
        self.push_manager = push_manager
        self.session = session
        self.rand = rand
        self.clock = clock
        self._semaphore = asyncio.Semaphore(concurrency)
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, feed_id: int) -> asyncio.Lock:
        lock = self._locks.get(feed_id)
        if lock is None:
            lock = self._locks[feed_id] = asyncio.Lock()
        return lock

    async def _push_active(self, feed_id: int) -> bool:
        if self.push_manager is None:
            return False
        return await self.push_manager.is_push_active(feed_id)

    async def _fetch(self, feed: Dict[str, Any]) -> FetchOutcome:
        user_agent = build_user_agent(
            self.user_agent_settings,
            feed_id=str(feed['id']),
            subscriber_count=feed.get('subscriber_count'),
        )
        async with self._semaphore:
            return await fetch_feed(
                feed['url'],
                settings=self.fetcher_settings,
                user_agent=user_agent,
                etag=feed.get('etag'),
                last_modified=feed.get('last_modified'),
                session=self.session,
                feed_context=f"feed:{feed['id']}",
                follow_permanent=self.fetcher_settings.follow_permanent_redirects,
            )

    @trace_span(
        "poller.poll_feed",
        tracer_name="poller",
        attr_from_args=lambda self, feed_id: {"feed.id": feed_id},
    )
    async def poll_feed(self, feed_id: int) -> Optional[PollResult]:
        """Run one full fetch/parse/process/reschedule cycle for a feed.

        Returns:
            PollResult, or None if the feed does not exist.
        """
        async with self._lock_for(feed_id):
            feed = await self.store.execute('get_feed', feed_id=feed_id)
            if not feed:
                logger.warning(f"Feed {feed_id} not found")
                return None
            outcome = await self._fetch(feed)
            return await self._apply_outcome(feed, outcome)

    async def _apply_outcome(self, feed: Dict[str, Any], outcome: FetchOutcome) -> PollResult:
        feed_id = feed['id']
        now = self.clock()

        if isinstance(outcome, Success):
            return await self._handle_success(feed, outcome, now)

        if isinstance(outcome, NotModified):
            cache = outcome.cache_headers
            raw_cache_control = cache.raw_cache_control or feed.get('cache_control')
            schedule = calculate_next_fetch(
                SchedulingInput(
                    cache_control=parse_cache_control(raw_cache_control),
                    feed_hints=stored_feed_hints(feed),
                    push_active=await self._push_active(feed_id),
                    reference_time=now,
                ),
                self.scheduler_settings,
                rand=self.rand,
            )
            await self._record_success(feed_id, now, schedule, cache, raw_cache_control)
            return PollResult(feed_id=feed_id, outcome=outcome, schedule=schedule)

        if isinstance(outcome, PermanentRedirect):
            result = await self._move_feed(feed, outcome, outcome.new_url, now, REASON_PERMANENT_REDIRECT)
            if result is not None:
                return result
            return await self._record_failure(feed, outcome, now, f"Could not move feed to {outcome.new_url}")

        return await self._record_failure(feed, outcome, now, describe_outcome(outcome))

    async def _move_feed(
        self,
        feed: Dict[str, Any],
        outcome: FetchOutcome,
        new_url: str,
        now: datetime,
        reason: str,
    ) -> Optional[PollResult]:
        """Point a feed at ``new_url`` and make it due immediately."""
        feed_id = feed['id']
        if not await self.store.execute('update_feed_url', feed_id=feed_id, url=new_url):
            return None
        logger.info(f"Feed {feed_id} moved to {new_url} ({reason}); fetching again")
        await self.store.execute('schedule_feed', feed_id=feed_id, next_fetch_at=_epoch(now))
        return PollResult(feed_id=feed_id, outcome=outcome, schedule=SchedulingResult(now, 0, reason))

    async def _follow_discovered_feed(self, feed: Dict[str, Any], outcome: Success, now: datetime) -> Optional[PollResult]:
        """Switch a feed whose URL serves an HTML page to the feed that page advertises."""
        if not looks_like_html(outcome.body):
            return None
        for discovered in discover_feeds(outcome.body, outcome.final_url):
            if discovered.url in (feed['url'], outcome.final_url):
                continue
            return await self._move_feed(feed, outcome, discovered.url, now, REASON_FEED_DISCOVERED)
        return None

    async def _handle_success(self, feed: Dict[str, Any], outcome: Success, now: datetime) -> PollResult:
        feed_id = feed['id']
        feed_url = feed['url']

        canonical = outcome.canonical_url
        if canonical and canonical != feed_url:
            if await self.store.execute('update_feed_url', feed_id=feed_id, url=canonical):
                logger.info(f"Feed {feed_id} canonical URL updated: {feed_url} -> {canonical}")
                feed_url = canonical

        try:
            parsed = parse_feed(outcome.body)
        except UnknownFeedFormatError as e:
            moved = await self._follow_discovered_feed(feed, outcome, now)
            if moved is not None:
                return moved
            logger.warning(f"Feed {feed_id} returned an unparseable document: {e}")
            return await self._record_failure(feed, outcome, now, f"Parse error: {e}")
        except FeedParseError as e:
            logger.warning(f"Feed {feed_id} returned an unparseable document: {e}")
            return await self._record_failure(feed, outcome, now, f"Parse error: {e}")

        try:
            entries = await process_entries(
                self.store,
                feed_id,
                parsed,
                feed_url=outcome.final_url,
                fetched_at=now,
                readability=bool(feed.get('readability')),
            )
        except SQLiteError as e:
            logger.error(f"Storing entries for feed {feed_id} failed: {e}")
            return await self._record_failure(feed, outcome, now, f"Storage error: {e}")

        if self.push_manager is not None:
            await self.push_manager.sync_feed_hub(feed_id, parsed.hub_url, parsed.self_url or feed_url)

        schedule = calculate_next_fetch(
            SchedulingInput(
                cache_control=outcome.cache_headers.cache_control,
                feed_hints=FeedHints(ttl_minutes=parsed.ttl_minutes, syndication=parsed.syndication),
                push_active=await self._push_active(feed_id),
                reference_time=now,
            ),
            self.scheduler_settings,
            rand=self.rand,
        )
        await self._record_success(
            feed_id, now, schedule, outcome.cache_headers,
            outcome.cache_headers.raw_cache_control, metadata=feed_metadata(parsed),
        )
        return PollResult(feed_id=feed_id, outcome=outcome, schedule=schedule, entries=entries)

    async def _record_success(
        self,
        feed_id: int,
        now: datetime,
        schedule: SchedulingResult,
        cache: CacheHeaders,
        raw_cache_control: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.store.execute(
            'record_fetch_success',
            feed_id=feed_id,
            fetched_at=_epoch(now),
            next_fetch_at=_epoch(schedule.next_fetch_at),
            schedule_reason=schedule.reason,
            etag=cache.etag,
            last_modified=cache.last_modified,
            cache_control=raw_cache_control,
            metadata=metadata,
        )
        logger.debug(f"Feed {feed_id} next fetch at {schedule.next_fetch_at.isoformat()} ({schedule.reason})")

    async def _record_failure(
        self,
        feed: Dict[str, Any],
        outcome: FetchOutcome,
        now: datetime,
        error: str,
    ) -> PollResult:
        feed_id = feed['id']
        failures = (feed.get('consecutive_failures') or 0) + 1

        if isinstance(outcome, ClientError) and outcome.permanent:
            schedule = permanent_failure_schedule(now, self.scheduler_settings, rand=self.rand)
        else:
            schedule = calculate_next_fetch(
                SchedulingInput(
                    consecutive_failures=failures,
                    push_active=await self._push_active(feed_id),
                    reference_time=now,
                ),
                self.scheduler_settings,
                rand=self.rand,
            )
            retry_after = getattr(outcome, 'retry_after_seconds', None)
            if retry_after and now + timedelta(seconds=retry_after) > schedule.next_fetch_at:
                schedule = SchedulingResult(
                    next_fetch_at=now + timedelta(seconds=retry_after),
                    interval_seconds=schedule.interval_seconds,
                    reason=schedule.reason,
                    jitter_seconds=schedule.jitter_seconds,
                )

        await self.store.execute(
            'record_fetch_failure',
            feed_id=feed_id,
            fetched_at=_epoch(now),
            next_fetch_at=_epoch(schedule.next_fetch_at),
            schedule_reason=schedule.reason,
            consecutive_failures=failures,
            error=error,
        )
        logger.warning(f"Feed {feed_id} failed ({failures} in a row): {error}; retry at {schedule.next_fetch_at.isoformat()}")
        return PollResult(feed_id=feed_id, outcome=outcome, schedule=schedule, error=error)

    @trace_span(
        "poller.handle_push",
        tracer_name="poller",
        attr_from_args=lambda self, feed_id, body: {"feed.id": feed_id, "push.bytes": len(body or b"")},
    )
    async def handle_push(self, feed_id: int, body: bytes) -> Optional[ProcessEntriesResult]:
        """Process a hub-delivered feed document as if it had just been fetched.

        Shares the per-feed lock with poll_feed so both never process entries
        for the same feed at once. The poll schedule is left untouched.
        """
        async with self._lock_for(feed_id):
            feed = await self.store.execute('get_feed', feed_id=feed_id)
            if not feed:
                logger.warning(f"Push delivery for unknown feed {feed_id}")
                return None
            try:
                parsed = parse_feed(body)
            except FeedParseError as e:
                logger.warning(f"Ignoring unparseable push delivery for feed {feed_id}: {e}")
                return None
            return await process_entries(
                self.store,
                feed_id,
                parsed,
                feed_url=feed['url'],
                fetched_at=self.clock(),
                readability=bool(feed.get('readability')),
            )

    async def poll_due(self, limit: Optional[int] = None) -> List[PollResult]:
        """Poll every feed whose next fetch time has passed."""
        due = await self.store.execute('list_due_feeds', now=_epoch(self.clock()), limit=limit)
        if not due:
            return []
        logger.info(f"Polling {len(due)} due feeds")
        results = await asyncio.gather(*(self.poll_feed(feed['id']) for feed in due), return_exceptions=True)
        completed = []
        for feed, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Poll cycle for feed {feed['id']} crashed: {result}")
            elif result is not None:
                completed.append(result)
        return completed

    async def run_push_maintenance(self) -> None:
        """Expire unverified requests and renew leases nearing expiry."""
        if self.push_manager is None:
            return
        await self.push_manager.expire_stale_requests()
        await self.push_manager.renew_expiring()

    async def _poll_loop(self, stop: asyncio.Event, interval: float) -> None:
        while not stop.is_set():
            try:
                await self.poll_due()
            except Exception as e:
                logger.error(f"Error polling due feeds: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _maintenance_loop(self, stop: asyncio.Event, interval: float) -> None:
        while not stop.is_set():
            try:
                await self.run_push_maintenance()
            except Exception as e:
                logger.error(f"Error during WebSub maintenance: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run_forever(
        self,
        poll_interval: float = 30.0,
        maintenance_interval: float = RENEWAL_CHECK_SECONDS,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """Poll due feeds and run WebSub maintenance until ``stop`` is set."""
        stop = stop or asyncio.Event()
        logger.info(f"Poller running (check every {poll_interval}s)")
        tasks = [self._poll_loop(stop, poll_interval)]
        if self.push_manager is not None:
            tasks.append(self._maintenance_loop(stop, maintenance_interval))
        await asyncio.gather(*tasks)
        logger.info("Poller stopped")
