#!/usr/bin/env python3
"""Normalized feed model shared by every format parser."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

SYNDICATION_PERIODS = {
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
    "yearly": 365 * 24 * 60 * 60,
}


@dataclass(frozen=True)
class SyndicationHints:
    """Syndication-namespace refresh cadence (``sy:updatePeriod``/``sy:updateFrequency``)."""
    update_period: str
    update_frequency: int = 1

    @property
    def period_seconds(self) -> int:
        return SYNDICATION_PERIODS[self.update_period]


@dataclass
class ParsedEntry:
    guid: Optional[str] = None
    link: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    pub_date: Optional[datetime] = None


@dataclass
class ParsedFeed:
    title: str
    description: Optional[str] = None
    site_url: Optional[str] = None
    icon_url: Optional[str] = None
    items: List[ParsedEntry] = field(default_factory=list)
    hub_url: Optional[str] = None
    self_url: Optional[str] = None
    ttl_minutes: Optional[int] = None
    syndication: Optional[SyndicationHints] = None
