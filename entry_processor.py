#!/usr/bin/env python3
"""
Entry processing: identity, change detection and content cleanup.

Each raw item from a parsed feed gets a stable GUID and a content hash.
Entries are then classified against what the store already holds as new,
updated (same GUID, different hash) or unchanged, and all new and updated
rows are written in one transaction.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from config import get_logger
from content_cleaner import (
    CleanupRule, apply_cleanup_rules, extract_main_content, rewrite_relative_urls,
    strip_html, truncate_text,
)
from errors import GuidDerivationError
from feed_types import ParsedEntry, ParsedFeed
from telemetry import trace_span

logger = get_logger("entry_processor")

STATUS_NEW = "new"
STATUS_UPDATED = "updated"
STATUS_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class CleanedEntry:
    content_original: Optional[str]
    content_cleaned: Optional[str]
    summary: str


@dataclass
class ProcessedEntry:
    """A storable entry row derived from one ParsedEntry."""
    guid: str
    content_hash: str
    url: Optional[str]
    title: Optional[str]
    author: Optional[str]
    content_original: Optional[str]
    content_cleaned: Optional[str]
    summary: str
    published_at: Optional[datetime]
    status: str = STATUS_NEW

    def to_row(self) -> Dict[str, Any]:
        return {
            "guid": self.guid,
            "content_hash": self.content_hash,
            "url": self.url,
            "title": self.title,
            "author": self.author,
            "content_original": self.content_original,
            "content_cleaned": self.content_cleaned,
            "summary": self.summary,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }


@dataclass
class ProcessEntriesResult:
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    skipped_count: int = 0
    entries: List[ProcessedEntry] = field(default_factory=list)


def _present(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def derive_guid(entry: ParsedEntry) -> str:
    """Derive a stable identity for an entry.

    Uses the feed-declared GUID, then the permalink, then a SHA-256 over
    title, link and publication date.

    Raises:
        GuidDerivationError: if the entry has none of those fields
    """
    guid = _present(entry.guid)
    if guid:
        return guid
    link = _present(entry.link)
    if link:
        return link

    title = _present(entry.title)
    published = entry.pub_date.isoformat() if entry.pub_date else None
    if not (title or published):
        raise GuidDerivationError("Cannot derive GUID: entry has no guid, link, title or date")
    digest = hashlib.sha256(
        "\n".join([title or "", link or "", published or ""]).encode("utf-8")
    ).hexdigest()
    return f"sha256:{digest}"


def content_hash(entry: ParsedEntry) -> str:
    """SHA-256 over the title and the original body, used to spot silent edits."""
    body = entry.content if entry.content is not None else (entry.summary or "")
    return hashlib.sha256(f"{entry.title or ''}\n{body}".encode("utf-8")).hexdigest()


def has_distinct_summary(entry: ParsedEntry) -> bool:
    """True when the source shipped a summary that is not just a copy of the content."""
    content = _present(entry.content)
    summary = _present(entry.summary)
    return bool(content and summary and content != summary)


def clean_entry_content(
    entry: ParsedEntry,
    entry_url: Optional[str] = None,
    feed_url: Optional[str] = None,
    rules: Optional[Iterable[CleanupRule]] = None,
    readability: bool = False,
) -> CleanedEntry:
    """Clean an entry body and build its display summary.

    ``content_cleaned`` is None unless cleanup actually changed the text.
    """
    original = entry.content if entry.content is not None else entry.summary
    if not original:
        return CleanedEntry(content_original=None, content_cleaned=None, summary="")

    working = rewrite_relative_urls(original, entry_url)
    working = apply_cleanup_rules(working, feed_url, rules)
    if readability:
        extracted = extract_main_content(working, entry_url)
        if extracted:
            working = extracted
    cleaned = working if working != original else None

    if has_distinct_summary(entry):
        summary_source = apply_cleanup_rules(entry.summary, feed_url, rules)
    else:
        summary_source = cleaned if cleaned is not None else original

    return CleanedEntry(
        content_original=original,
        content_cleaned=cleaned,
        summary=truncate_text(strip_html(summary_source)),
    )


def build_processed_entry(
    entry: ParsedEntry,
    feed_url: Optional[str] = None,
    rules: Optional[Iterable[CleanupRule]] = None,
    readability: bool = False,
) -> ProcessedEntry:
    """Compute identity, hash and cleaned content for one raw item."""
    guid = derive_guid(entry)
    cleaned = clean_entry_content(
        entry, entry_url=entry.link, feed_url=feed_url, rules=rules, readability=readability
    )
    return ProcessedEntry(
        guid=guid,
        content_hash=content_hash(entry),
        url=entry.link,
        title=entry.title,
        author=entry.author,
        content_original=cleaned.content_original,
        content_cleaned=cleaned.content_cleaned,
        summary=cleaned.summary,
        published_at=entry.pub_date,
    )


@trace_span(
    "process_entries",
    tracer_name="entries",
    attr_from_args=lambda store, feed_id, feed, *args, **kwargs: {
        "feed.id": feed_id,
        "feed.items": len(feed.items),
    },
)
async def process_entries(
    store,
    feed_id: int,
    feed: ParsedFeed,
    feed_url: Optional[str] = None,
    fetched_at: Optional[datetime] = None,
    readability: bool = False,
    rules: Optional[Iterable[CleanupRule]] = None,
) -> ProcessEntriesResult:
    """Classify and persist every item of ``feed`` for ``feed_id``.

    Items without any usable identity are logged and skipped. Duplicate
    GUIDs within one document keep the first occurrence. New and updated
    rows are committed by a single ``upsert_entries`` call so a cycle never
    leaves half its entries written.

    Args:
        store: DatabaseQueue-like object exposing ``execute(operation, **params)``
        feed_id: Feed the entries belong to
        feed: Parsed document
        feed_url: Used to pick feed-specific cleanup rules
        fetched_at: Timestamp recorded on new rows

    Returns:
        ProcessEntriesResult with per-status counts and the processed entries.
    """
    fetched_at = fetched_at or datetime.now(timezone.utc)
    result = ProcessEntriesResult()
    processed: Dict[str, ProcessedEntry] = {}

    for item in feed.items:
        try:
            entry = build_processed_entry(item, feed_url=feed_url, rules=rules, readability=readability)
        except GuidDerivationError as e:
            logger.warning(f"Skipping entry in feed {feed_id}: {e}")
            result.skipped_count += 1
            continue
        if entry.guid in processed:
            logger.debug(f"Duplicate GUID {entry.guid} in feed {feed_id}, keeping first occurrence")
            continue
        processed[entry.guid] = entry

    if not processed:
        return result

    existing = await store.execute('get_entry_hashes', feed_id=feed_id, guids=list(processed))
    changed: List[ProcessedEntry] = []
    for guid, entry in processed.items():
        previous_hash = existing.get(guid)
        if previous_hash is None:
            entry.status = STATUS_NEW
            result.new_count += 1
            changed.append(entry)
        elif previous_hash != entry.content_hash:
            entry.status = STATUS_UPDATED
            result.updated_count += 1
            changed.append(entry)
        else:
            entry.status = STATUS_UNCHANGED
            result.unchanged_count += 1
        result.entries.append(entry)

    if changed:
        await store.execute(
            'upsert_entries',
            feed_id=feed_id,
            entries=[entry.to_row() for entry in changed],
            fetched_at=fetched_at.isoformat(),
        )

    logger.info(
        f"Feed {feed_id}: {result.new_count} new, {result.updated_count} updated, "
        f"{result.unchanged_count} unchanged, {result.skipped_count} skipped"
    )
    return result
