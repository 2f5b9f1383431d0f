#!/usr/bin/env python3
"""
Adaptive next-fetch scheduling.

Given the latest cache directives, the feed's self-declared refresh hints,
the push subscription state and the failure history, decide when a feed
should next be polled. The function is pure: the clock and the random
source are injectable so results are reproducible in tests.
"""

import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from cache_headers import CacheControl, effective_max_age
from config import SchedulerSettings, get_logger
from feed_types import SyndicationHints
from telemetry import trace_span

logger = get_logger("scheduling")

REASON_FAILURE_BACKOFF = "failure_backoff"
REASON_CACHE_CONTROL = "cache_control"
REASON_TTL = "ttl"
REASON_SYNDICATION = "syndication"
REASON_WEBSUB_BACKUP = "websub_backup"
REASON_DEFAULT = "default"
REASON_PERMANENT_FAILURE = "permanent_failure"

DEFAULT_SETTINGS = SchedulerSettings()


@dataclass(frozen=True)
class FeedHints:
    ttl_minutes: Optional[int] = None
    syndication: Optional[SyndicationHints] = None


@dataclass(frozen=True)
class SchedulingInput:
    cache_control: Optional[CacheControl] = None
    feed_hints: Optional[FeedHints] = None
    consecutive_failures: int = 0
    push_active: bool = False
    reference_time: Optional[datetime] = None


@dataclass(frozen=True)
class SchedulingResult:
    next_fetch_at: datetime
    interval_seconds: int
    reason: str
    jitter_seconds: int = 0


def failure_backoff_seconds(consecutive_failures: int, settings: SchedulerSettings = DEFAULT_SETTINGS) -> int:
    """Exponential backoff: base * 2^(n-1), with n capped; the cap always yields the maximum interval."""
    if consecutive_failures >= settings.failure_max_exponent:
        return settings.max_interval
    interval = settings.failure_base * (2 ** (consecutive_failures - 1))
    return min(interval, settings.max_interval)


def _base_interval(inp: SchedulingInput, settings: SchedulerSettings) -> Tuple[int, str]:
    max_age = effective_max_age(inp.cache_control)
    if max_age is not None:
        return max_age, REASON_CACHE_CONTROL

    hints = inp.feed_hints or FeedHints()
    if hints.ttl_minutes is not None and hints.ttl_minutes > 0:
        return hints.ttl_minutes * 60, REASON_TTL

    if hints.syndication is not None:
        period = hints.syndication.period_seconds
        return period // max(1, hints.syndication.update_frequency), REASON_SYNDICATION

    if inp.push_active:
        return settings.push_backup_interval, REASON_WEBSUB_BACKUP

    return settings.default_interval, REASON_DEFAULT


def _clamp(interval: int, source: str, push_active: bool, settings: SchedulerSettings) -> Tuple[int, str]:
    if push_active:
        minimum = settings.push_backup_interval
    elif source == REASON_CACHE_CONTROL:
        minimum = settings.cache_min_interval
    else:
        minimum = settings.min_interval

    reason = source
    if interval < minimum:
        interval, reason = minimum, f"{source}_clamped_min"
    elif interval > settings.max_interval:
        interval, reason = settings.max_interval, f"{source}_clamped_max"

    if push_active:
        reason = REASON_WEBSUB_BACKUP
    return interval, reason


def jitter_seconds(interval: int, draw: float, settings: SchedulerSettings = DEFAULT_SETTINGS) -> int:
    """Additive jitter: up to jitter_fraction of the interval, capped, scaled by ``draw``."""
    return int(math.floor(min(interval * settings.jitter_fraction, settings.max_jitter) * draw))


@trace_span(
    "calculate_next_fetch",
    tracer_name="scheduler",
    attr_from_args=lambda inp, *args, **kwargs: {
        "schedule.failures": inp.consecutive_failures,
        "schedule.push_active": inp.push_active,
    },
)
def calculate_next_fetch(
    inp: SchedulingInput,
    settings: SchedulerSettings = DEFAULT_SETTINGS,
    rand: Callable[[], float] = random.random,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> SchedulingResult:
    """Compute the next poll time for a feed.

    The first applicable rule wins: failure backoff, then cache max-age,
    feed TTL, syndication period, push backup cadence, and finally the
    configured default. Non-failure intervals are clamped to
    [minimum, max_interval] where the minimum depends on the source.
    Jitter is added on top and never subtracts.

    Args:
        inp: Signals for this feed
        settings: Interval bounds
        rand: Uniform [0, 1) source for jitter
        clock: Used only when inp.reference_time is None

    Returns:
        SchedulingResult with interval_seconds excluding jitter.
    """
    reference = inp.reference_time or clock()

    if inp.consecutive_failures > 0:
        interval = failure_backoff_seconds(inp.consecutive_failures, settings)
        reason = REASON_FAILURE_BACKOFF
    else:
        base, source = _base_interval(inp, settings)
        interval, reason = _clamp(base, source, inp.push_active, settings)

    jitter = jitter_seconds(interval, rand(), settings)
    next_fetch_at = reference + timedelta(seconds=interval + jitter)
    logger.debug(f"Next fetch in {interval}s (+{jitter}s jitter), reason={reason}")
    return SchedulingResult(
        next_fetch_at=next_fetch_at,
        interval_seconds=interval,
        reason=reason,
        jitter_seconds=jitter,
    )


def permanent_failure_schedule(
    reference_time: datetime,
    settings: SchedulerSettings = DEFAULT_SETTINGS,
    rand: Callable[[], float] = random.random,
) -> SchedulingResult:
    """Schedule for a feed that answered 404/410: retry only at the maximum interval."""
    interval = settings.max_interval
    jitter = jitter_seconds(interval, rand(), settings)
    return SchedulingResult(
        next_fetch_at=reference_time + timedelta(seconds=interval + jitter),
        interval_seconds=interval,
        reason=REASON_PERMANENT_FAILURE,
        jitter_seconds=jitter,
    )
