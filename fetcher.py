#!/usr/bin/env python3
"""
Feed fetcher: conditional GET with manual redirect handling.

Every request ends in exactly one FetchOutcome variant. Callers decide retry
and scheduling from the variant alone; HTTP and transport failures are never
raised out of fetch_feed.
"""

import asyncio
import errno
import math
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime, format_datetime
from typing import List, Optional, Union
from urllib.parse import urljoin, urlparse

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError as AioHttpClientError

from cache_headers import CacheHeaders, parse_cache_headers
from config import FetcherSettings, get_logger
from telemetry import trace_span

logger = get_logger("fetcher")

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304
HTTP_TOO_MANY_REQUESTS = 429
PERMANENT_REDIRECT_CODES = (301, 308)
GONE_CODES = (404, 410)

MIN_RETRY_AFTER_SECONDS = 1
MAX_RETRY_AFTER_SECONDS = 3600
BACKOFF_BASE_SECONDS = 30
MAX_BACKOFF_SECONDS = 480

READ_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class RedirectHop:
    url: str
    kind: str  # "permanent" | "temporary"

    @property
    def permanent(self) -> bool:
        return self.kind == "permanent"


@dataclass(frozen=True)
class Success:
    body: bytes
    content_type: Optional[str]
    final_url: str
    cache_headers: CacheHeaders
    redirect_chain: List[RedirectHop] = field(default_factory=list)
    status_code: int = HTTP_OK

    @property
    def canonical_url(self) -> Optional[str]:
        """The URL to persist as canonical, set only when every hop was permanent."""
        if self.redirect_chain and all(hop.permanent for hop in self.redirect_chain):
            return self.final_url
        return None


@dataclass(frozen=True)
class NotModified:
    cache_headers: CacheHeaders
    redirect_chain: List[RedirectHop] = field(default_factory=list)
    status_code: int = HTTP_NOT_MODIFIED


@dataclass(frozen=True)
class PermanentRedirect:
    status_code: int
    new_url: str
    redirect_chain: List[RedirectHop] = field(default_factory=list)


@dataclass(frozen=True)
class ClientError:
    status_code: int
    permanent: bool
    message: str
    redirect_chain: List[RedirectHop] = field(default_factory=list)


@dataclass(frozen=True)
class ServerError:
    status_code: int
    message: str
    retry_after_seconds: Optional[int] = None
    redirect_chain: List[RedirectHop] = field(default_factory=list)


@dataclass(frozen=True)
class RateLimited:
    retry_after_seconds: Optional[int] = None
    redirect_chain: List[RedirectHop] = field(default_factory=list)
    status_code: int = HTTP_TOO_MANY_REQUESTS


@dataclass(frozen=True)
class NetworkError:
    timed_out: bool
    message: str
    redirect_chain: List[RedirectHop] = field(default_factory=list)


@dataclass(frozen=True)
class TooManyRedirects:
    last_url: str
    redirect_chain: List[RedirectHop] = field(default_factory=list)


FetchOutcome = Union[
    Success, NotModified, PermanentRedirect, ClientError,
    ServerError, RateLimited, NetworkError, TooManyRedirects,
]


def normalize_http_date(date_value: Optional[str]) -> Optional[str]:
    """Normalize HTTP date strings to RFC 7231 format (GMT)."""
    if not date_value:
        return None
    try:
        dt = parsedate_to_datetime(date_value)
    except (TypeError, ValueError, IndexError, OverflowError) as exc:
        logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


def build_request_headers(user_agent: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> dict:
    """Build headers for a conditional feed request."""
    headers = {
        "User-Agent": user_agent,
        "Accept": ACCEPT_HEADER,
    }
    if etag:
        # Quote bare ETags; weak and strong quoted forms pass through
        if not (etag.startswith('"') or etag.startswith('W/"')):
            etag = f'"{etag}"'
        headers["If-None-Match"] = etag
    if last_modified:
        normalized = normalize_http_date(last_modified)
        if normalized:
            headers["If-Modified-Since"] = normalized
        else:
            logger.warning(f"Invalid Last-Modified value, not sending If-Modified-Since: {last_modified}")
    return headers


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds or an HTTP date. Dates in the past clamp to 0.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0, math.ceil((when - now).total_seconds()))


def _find_os_error(error: BaseException) -> Optional[OSError]:
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        os_error = getattr(current, "os_error", None)
        if isinstance(os_error, OSError):
            return os_error
        if isinstance(current, OSError) and current.errno is not None:
            return current
        current = current.__cause__ or current.__context__
    return None


def _describe_certificate_error(error: BaseException) -> str:
    detail = " ".join(
        str(part) for part in (
            getattr(error, "verify_message", None),
            getattr(getattr(error, "certificate_error", None), "verify_message", None),
            error,
        ) if part
    ).lower()
    if "expired" in detail:
        return "SSL certificate has expired"
    if "self-signed" in detail or "self signed" in detail:
        return "SSL certificate is self-signed"
    return "SSL certificate verification failed"


def format_network_error(error: BaseException) -> str:
    """Translate a transport exception into a short human-readable category.

    Raw library messages are not surfaced; unknown failures fall back to
    "Network error: <ExceptionType>".
    """
    host = getattr(error, "host", None)

    if isinstance(error, aiohttp.ServerDisconnectedError):
        return "Connection closed unexpectedly"
    if isinstance(error, (aiohttp.ClientConnectorCertificateError, ssl.SSLCertVerificationError)):
        return _describe_certificate_error(error)
    if isinstance(error, (aiohttp.ClientSSLError, ssl.SSLError)):
        os_error = _find_os_error(error)
        if isinstance(os_error, ssl.SSLCertVerificationError):
            return _describe_certificate_error(os_error)
        reason = getattr(os_error, "reason", None) or getattr(error, "reason", None) or str(os_error or error)
        return f"SSL/TLS error: {reason}"

    os_error = _find_os_error(error)
    if isinstance(os_error, socket.gaierror):
        if os_error.errno == socket.EAI_AGAIN:
            return "DNS lookup timed out"
        return f"Domain not found: {host}" if host else "Domain not found"

    code = getattr(os_error, "errno", None)
    if code == errno.ECONNREFUSED:
        return "Connection refused"
    if code == errno.ETIMEDOUT:
        return "Connection timed out"
    if code in (errno.ECONNRESET, errno.EPIPE):
        return "Connection reset by server"
    if code == errno.EHOSTUNREACH:
        return "Host unreachable"
    if code == errno.ENETUNREACH:
        return "Network unreachable"

    message = str(error).lower()
    if "name or service not known" in message or "nodename nor servname" in message:
        return f"Domain not found: {host}" if host else "Domain not found"
    if "connection reset" in message:
        return "Connection reset by server"
    if isinstance(error, (aiohttp.ClientPayloadError, aiohttp.ClientOSError, ConnectionError)):
        return "Connection closed unexpectedly"
    return f"Network error: {error.__class__.__name__}"


def should_retry(outcome: FetchOutcome) -> bool:
    """Whether an outcome is transient and worth retrying."""
    if isinstance(outcome, (ServerError, RateLimited, NetworkError)):
        return True
    if isinstance(outcome, ClientError):
        return not outcome.permanent
    return False


def retry_delay(outcome: FetchOutcome, attempt: int) -> int:
    """Seconds to wait before retry number ``attempt`` (0-based).

    A server-provided Retry-After is honoured within [1, 3600] seconds;
    otherwise exponential backoff of 30s * 2^attempt, capped at 8 minutes.
    """
    retry_after = getattr(outcome, "retry_after_seconds", None)
    if retry_after is not None:
        return min(MAX_RETRY_AFTER_SECONDS, max(MIN_RETRY_AFTER_SECONDS, int(retry_after)))
    return min(MAX_BACKOFF_SECONDS, BACKOFF_BASE_SECONDS * (2 ** max(0, attempt)))


async def _read_bounded(response: aiohttp.ClientResponse, max_bytes: int) -> Optional[bytes]:
    declared = response.content_length
    if declared is not None and declared > max_bytes:
        return None
    chunks = []
    total = 0
    async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
        total += len(chunk)
        if total > max_bytes:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


async def _classify_response(
    response: aiohttp.ClientResponse,
    url: str,
    chain: List[RedirectHop],
    settings: FetcherSettings,
) -> FetchOutcome:
    status = response.status
    reason = response.reason or ""

    if status == HTTP_NOT_MODIFIED:
        return NotModified(cache_headers=parse_cache_headers(response.headers), redirect_chain=chain)

    if status == HTTP_OK:
        body = await _read_bounded(response, settings.max_response_bytes)
        if body is None:
            logger.warning(f"Response from {url} exceeds {settings.max_response_bytes} bytes")
            return ClientError(
                status_code=status,
                permanent=False,
                message=f"Response body exceeds {settings.max_response_bytes} bytes",
                redirect_chain=chain,
            )
        return Success(
            body=body,
            content_type=response.headers.get("Content-Type"),
            final_url=url,
            cache_headers=parse_cache_headers(response.headers),
            redirect_chain=chain,
        )

    if status == HTTP_TOO_MANY_REQUESTS:
        return RateLimited(
            retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            redirect_chain=chain,
        )

    if 400 <= status < 500:
        return ClientError(
            status_code=status,
            permanent=status in GONE_CODES,
            message=f"HTTP {status} {reason}".strip(),
            redirect_chain=chain,
        )

    if 500 <= status < 600:
        return ServerError(
            status_code=status,
            message=f"HTTP {status} {reason}".strip(),
            retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            redirect_chain=chain,
        )

    return ClientError(
        status_code=status,
        permanent=False,
        message=f"Unexpected HTTP status {status}",
        redirect_chain=chain,
    )


async def _fetch_with_session(
    session: ClientSession,
    url: str,
    headers: dict,
    settings: FetcherSettings,
    follow_permanent: bool,
) -> FetchOutcome:
    chain: List[RedirectHop] = []
    current = url
    timeout = ClientTimeout(total=settings.timeout_seconds)

    for redirect_count in range(settings.max_redirects + 1):
        try:
            async with session.get(current, headers=headers, allow_redirects=False, timeout=timeout) as response:
                status = response.status
                if 300 <= status < 400 and status != HTTP_NOT_MODIFIED:
                    location = response.headers.get("Location")
                    if not location:
                        logger.warning(f"Redirect {status} from {current} without Location header")
                        return ClientError(
                            status_code=status,
                            permanent=False,
                            message="Redirect without Location header",
                            redirect_chain=chain,
                        )
                    next_url = urljoin(current, location.strip())
                    kind = "permanent" if status in PERMANENT_REDIRECT_CODES else "temporary"
                    hop = RedirectHop(url=next_url, kind=kind)
                    if kind == "permanent" and not follow_permanent:
                        return PermanentRedirect(status_code=status, new_url=next_url, redirect_chain=chain + [hop])
                    chain.append(hop)
                    logger.debug(f"Following {kind} redirect {status}: {current} -> {next_url}")
                    if redirect_count == settings.max_redirects:
                        logger.warning(f"Too many redirects fetching {url} (last: {next_url})")
                        return TooManyRedirects(last_url=next_url, redirect_chain=chain)
                    current = next_url
                    continue
                return await _classify_response(response, current, chain, settings)
        except (asyncio.TimeoutError, TimeoutError):
            return NetworkError(timed_out=True, message="Request timed out", redirect_chain=chain)
        except (AioHttpClientError, OSError, ValueError) as e:
            return NetworkError(timed_out=False, message=format_network_error(e), redirect_chain=chain)

    # Only reached when max_redirects is negative
    return TooManyRedirects(last_url=current, redirect_chain=chain)


@trace_span(
    "fetch_feed",
    tracer_name="fetcher",
    attr_from_args=lambda url, **kwargs: {
        "http.url": url,
        "feed.context": kwargs.get("feed_context") or "",
    },
)
async def fetch_feed(
    url: str,
    *,
    settings: FetcherSettings,
    user_agent: str,
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
    session: Optional[ClientSession] = None,
    feed_context: Optional[str] = None,
    follow_permanent: bool = True,
) -> FetchOutcome:
    """Fetch a feed URL with conditional headers and classify the result.

    Args:
        url: Feed URL
        settings: Timeout, redirect limit and body size bound
        user_agent: Fully built User-Agent header value
        etag: Stored ETag for If-None-Match
        last_modified: Stored Last-Modified for If-Modified-Since
        session: Shared aiohttp session; a private one is created when omitted
        feed_context: Identifier used only for logs and spans
        follow_permanent: When False, stop at the first 301/308 and return
            PermanentRedirect so the caller can update the stored URL first

    Returns:
        Exactly one FetchOutcome variant.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ClientError(status_code=0, permanent=True, message=f"Unsupported feed URL: {url}")

    headers = build_request_headers(user_agent, etag=etag, last_modified=last_modified)
    if session is not None:
        outcome = await _fetch_with_session(session, url, headers, settings, follow_permanent)
    else:
        async with ClientSession() as own_session:
            outcome = await _fetch_with_session(own_session, url, headers, settings, follow_permanent)

    label = feed_context or url
    if isinstance(outcome, (Success, NotModified)):
        logger.debug(f"Fetched {label}: {type(outcome).__name__}")
    else:
        logger.info(f"Fetch of {label} ended with {type(outcome).__name__}: {describe_outcome(outcome)}")
    return outcome


async def fetch_with_retry(url: str, *, max_attempts: int = 1, sleep=asyncio.sleep, **kwargs) -> FetchOutcome:
    """Call fetch_feed up to ``max_attempts`` times, sleeping retry_delay between transient failures."""
    attempt = 0
    while True:
        outcome = await fetch_feed(url, **kwargs)
        attempt += 1
        if attempt >= max_attempts or not should_retry(outcome):
            return outcome
        delay = retry_delay(outcome, attempt - 1)
        logger.info(f"Retrying {url} in {delay}s after {type(outcome).__name__} (attempt {attempt}/{max_attempts})")
        await sleep(delay)


def describe_outcome(outcome: FetchOutcome) -> str:
    """One-line description of an outcome, used for logs and stored last_error."""
    if isinstance(outcome, Success):
        return f"HTTP {outcome.status_code} ({len(outcome.body)} bytes)"
    if isinstance(outcome, NotModified):
        return "Not modified"
    if isinstance(outcome, PermanentRedirect):
        return f"Permanent redirect ({outcome.status_code}) to {outcome.new_url}"
    if isinstance(outcome, RateLimited):
        if outcome.retry_after_seconds is not None:
            return f"Rate limited (retry after {outcome.retry_after_seconds}s)"
        return "Rate limited"
    if isinstance(outcome, TooManyRedirects):
        return f"Too many redirects (last: {outcome.last_url})"
    if isinstance(outcome, NetworkError):
        return outcome.message
    return getattr(outcome, "message", type(outcome).__name__)
