#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class FeedParseError(Exception):
    """Raised when a fetched body cannot be turned into a ParsedFeed.

    Attributes:
        feed_type: The detected format ("rss", "atom", "json") if known.
        details: Optional diagnostic payload.
    """

    def __init__(self, message: str, feed_type: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.feed_type = feed_type
        self.details = details or {}


class UnknownFeedFormatError(FeedParseError):
    """Raised when content sniffing cannot recognise RSS, Atom or JSON Feed."""

    def __init__(self, message: str = "Unknown feed format"):
        super().__init__(message, feed_type="unknown")


class GuidDerivationError(ValueError):
    """Raised when an entry has no guid, link, title or date to identify it."""


class WebSubError(Exception):
    """Raised for hub protocol failures (bad hub response, missing callback base)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


__all__ = ["FeedParseError", "UnknownFeedFormatError", "GuidDerivationError", "WebSubError"]
