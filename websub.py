#!/usr/bin/env python3
"""
WebSub (PubSubHubbub) subscription management.

Push is only ever a backstop: every state here falls back to polling, and
hub or signature problems are logged and swallowed at the manager boundary
instead of failing the feed. Subscription state lives in the store's
``websub_subscriptions`` table.

States:
    none -> requested -> verified -> active -> renewing -> active | expired
"""

import asyncio
import hashlib
import hmac
import ipaddress
import secrets
from time import time
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from config import WebSubSettings, get_logger
from errors import WebSubError
from telemetry import trace_span

logger = get_logger("websub")

STATE_NONE = "none"
STATE_REQUESTED = "requested"
STATE_VERIFIED = "verified"
STATE_ACTIVE = "active"
STATE_RENEWING = "renewing"
STATE_EXPIRED = "expired"

# States in which the hub may legitimately deliver content
DELIVERY_STATES = (STATE_VERIFIED, STATE_ACTIVE, STATE_RENEWING)
PUSH_ACTIVE_STATES = (STATE_ACTIVE, STATE_RENEWING)

HUB_ACCEPTED_CODES = (202, 204)
CALLBACK_PATH = "/websub/callback/{feed_id}"

SIGNATURE_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}

_LOCAL_HOSTNAMES = ("localhost", "localhost.localdomain")
_LOCAL_SUFFIXES = (".local", ".localhost", ".internal")


def _is_private_host(hostname: str) -> bool:
    host = hostname.strip("[]").lower()
    if host in _LOCAL_HOSTNAMES or host.endswith(_LOCAL_SUFFIXES):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_private or address.is_loopback or address.is_link_local
        or address.is_unspecified or address.is_reserved
    )


def can_use_websub(settings: WebSubSettings) -> bool:
    """True when push is enabled and hubs can reach our callback base URL."""
    if not settings.enabled or not settings.callback_base_url:
        return False
    parsed = urlparse(settings.callback_base_url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    return not _is_private_host(parsed.hostname)


def callback_url(settings: WebSubSettings, feed_id: int) -> str:
    return settings.callback_base_url.rstrip("/") + CALLBACK_PATH.format(feed_id=feed_id)


def generate_secret() -> str:
    """32 random bytes, hex encoded, used as the per-subscription HMAC key."""
    return secrets.token_hex(32)


def verify_signature(secret: Optional[str], body: bytes, signature_header: Optional[str]) -> bool:
    """Check an ``X-Hub-Signature: <algo>=<hexdigest>`` header against ``body``.

    Subscriptions without a secret accept unsigned deliveries. When a secret
    is set, a missing, malformed or mismatching signature is rejected.
    """
    if not secret:
        return True
    if not signature_header or "=" not in signature_header:
        return False
    algorithm, _, received = signature_header.strip().partition("=")
    digest = SIGNATURE_ALGORITHMS.get(algorithm.strip().lower())
    if digest is None:
        logger.warning(f"Unsupported WebSub signature algorithm: {algorithm}")
        return False
    expected = hmac.new(secret.encode("utf-8"), body, digest).hexdigest()
    return hmac.compare_digest(expected, received.strip().lower())


def _parse_lease(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        lease = int(str(value).strip())
    except ValueError:
        return None
    return lease if lease > 0 else None


class PushSubscriptionManager:
    """Drives the subscription lifecycle for feeds that advertise a hub.

    Args:
        store: DatabaseQueue-like object exposing ``execute(operation, **params)``
        settings: WebSub toggles and timing
        user_agent: User-Agent sent on hub requests
        session: Optional shared aiohttp session
        clock: Returns the current time as epoch seconds
    """

    def __init__(
        self,
        store,
        settings: WebSubSettings,
        user_agent: str = "",
        session: Optional[ClientSession] = None,
        clock: Callable[[], float] = time,
    ):
        self.store = store
        self.settings = settings
        self.user_agent = user_agent
        self.session = session
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    @property
    def available(self) -> bool:
        return can_use_websub(self.settings)

    def callback_url(self, feed_id: int) -> str:
        return callback_url(self.settings, feed_id)

    async def _post_to_hub(self, hub_url: str, form: Dict[str, str]) -> int:
        headers = {"User-Agent": self.user_agent} if self.user_agent else {}
        timeout = ClientTimeout(total=self.settings.hub_timeout_seconds)

        async def _post(session: ClientSession) -> int:
            async with session.post(hub_url, data=form, headers=headers, timeout=timeout) as response:
                if response.status in HUB_ACCEPTED_CODES:
                    return response.status
                text = await response.text(errors="replace")
                raise WebSubError(f"Hub returned {response.status}: {text[:200]}", status=response.status)

        try:
            if self.session is not None:
                return await _post(self.session)
            async with ClientSession() as session:
                return await _post(session)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise WebSubError(f"Hub request failed: {e.__class__.__name__}: {e}") from e

    @trace_span(
        "websub.subscribe",
        tracer_name="websub",
        attr_from_args=lambda self, feed_id, hub_url, topic_url: {"feed.id": feed_id, "websub.hub": hub_url},
    )
    async def subscribe(self, feed_id: int, hub_url: str, topic_url: str) -> bool:
        """Send a subscribe request; the hub confirms later via the callback.

        Re-subscribing an active subscription is a renewal and keeps the
        existing secret so in-flight deliveries still validate. A failed
        renewal moves the subscription to ``expired``.

        Returns:
            True when the hub accepted the request.
        """
        if not self.available:
            logger.debug(f"WebSub unavailable, not subscribing feed {feed_id}")
            return False

        existing = await self.store.execute('get_subscription', feed_id=feed_id)
        renewing = bool(
            existing
            and existing['state'] in PUSH_ACTIVE_STATES
            and existing['hub_url'] == hub_url
            and existing['topic_url'] == topic_url
        )
        secret = existing['secret'] if renewing and existing.get('secret') else generate_secret()
        callback = self.callback_url(feed_id)

        await self.store.execute(
            'save_subscription',
            feed_id=feed_id,
            hub_url=hub_url,
            topic_url=topic_url,
            callback_url=callback,
            secret=secret,
            state=STATE_RENEWING if renewing else STATE_REQUESTED,
            requested_at=self._now(),
            last_error=None,
        )

        try:
            status = await self._post_to_hub(hub_url, {
                "hub.mode": "subscribe",
                "hub.topic": topic_url,
                "hub.callback": callback,
                "hub.secret": secret,
                "hub.verify": "async",
            })
        except WebSubError as e:
            failed_state = STATE_EXPIRED if renewing else STATE_NONE
            logger.warning(f"WebSub subscribe for feed {feed_id} at {hub_url} failed: {e}")
            await self.store.execute('save_subscription', feed_id=feed_id, state=failed_state, last_error=str(e))
            return False

        logger.info(f"WebSub {'renewal' if renewing else 'subscription'} for feed {feed_id} accepted by {hub_url} ({status})")
        return True

    async def unsubscribe(self, feed_id: int) -> bool:
        """Ask the hub to stop deliveries. Local state drops to ``none`` immediately."""
        existing = await self.store.execute('get_subscription', feed_id=feed_id)
        if not existing or existing['state'] == STATE_NONE:
            return False

        await self.store.execute(
            'save_subscription', feed_id=feed_id, state=STATE_NONE, expires_at=None, lease_seconds=None,
        )
        if not self.available:
            return True
        try:
            await self._post_to_hub(existing['hub_url'], {
                "hub.mode": "unsubscribe",
                "hub.topic": existing['topic_url'],
                "hub.callback": existing.get('callback_url') or self.callback_url(feed_id),
                "hub.verify": "async",
            })
        except WebSubError as e:
            logger.warning(f"WebSub unsubscribe for feed {feed_id} failed: {e}")
            await self.store.execute('save_subscription', feed_id=feed_id, last_error=str(e))
            return False
        return True

    async def handle_verification(self, feed_id: int, params: Mapping[str, Any]) -> Optional[str]:
        """Validate a hub verification request.

        Args:
            feed_id: Feed from the callback path
            params: Query parameters (``hub.mode``, ``hub.topic``, ``hub.challenge``,
                ``hub.lease_seconds``, ``hub.reason``)

        Returns:
            The challenge to echo back, or None if the request must be refused.
            Denial notices also return None after the state is updated.
        """
        mode = (params.get("hub.mode") or "").strip().lower()
        topic = params.get("hub.topic")
        challenge = params.get("hub.challenge")
        subscription = await self.store.execute('get_subscription', feed_id=feed_id)

        if mode == "denied":
            if subscription and (not topic or topic == subscription['topic_url']):
                reason = params.get("hub.reason") or "denied by hub"
                logger.warning(f"WebSub subscription for feed {feed_id} denied: {reason}")
                await self.store.execute(
                    'save_subscription', feed_id=feed_id, state=STATE_NONE, last_error=f"Denied: {reason}",
                )
            return None

        if not mode or not topic or not challenge:
            logger.warning(f"WebSub verification for feed {feed_id} missing required parameters")
            return None
        if not subscription:
            logger.warning(f"WebSub verification for unknown subscription (feed {feed_id})")
            return None
        if subscription['topic_url'] != topic:
            logger.warning(
                f"WebSub verification topic mismatch for feed {feed_id}: "
                f"expected {subscription['topic_url']}, got {topic}"
            )
            return None

        now = self._now()
        if mode == "subscribe":
            if subscription['state'] not in (STATE_REQUESTED, STATE_RENEWING, STATE_VERIFIED, STATE_ACTIVE):
                logger.warning(f"Unexpected WebSub subscribe verification for feed {feed_id} in state {subscription['state']}")
                return None
            lease = _parse_lease(params.get("hub.lease_seconds"))
            await self.store.execute(
                'save_subscription', feed_id=feed_id, state=STATE_VERIFIED,
                verified_at=now, lease_seconds=lease, last_error=None,
            )
            if lease:
                await self.store.execute(
                    'save_subscription', feed_id=feed_id, state=STATE_ACTIVE, expires_at=now + lease,
                )
            logger.info(f"WebSub subscription for feed {feed_id} verified (lease={lease})")
            return challenge

        if mode == "unsubscribe":
            if subscription['state'] != STATE_NONE:
                logger.warning(f"Refusing unrequested WebSub unsubscribe for feed {feed_id}")
                return None
            logger.info(f"WebSub unsubscribe for feed {feed_id} confirmed")
            return challenge

        logger.warning(f"Unsupported WebSub mode for feed {feed_id}: {mode}")
        return None

    async def accept_delivery(self, feed_id: int, body: bytes, signature_header: Optional[str]) -> bool:
        """Whether a content delivery should be processed as a fetch result."""
        subscription = await self.store.execute('get_subscription', feed_id=feed_id)
        if not subscription or subscription['state'] not in DELIVERY_STATES:
            logger.warning(f"WebSub delivery for feed {feed_id} without an active subscription")
            return False
        if not verify_signature(subscription.get('secret'), body, signature_header):
            logger.warning(f"Dropping WebSub delivery for feed {feed_id}: invalid signature")
            return False
        return True

    async def is_push_active(self, feed_id: int) -> bool:
        subscription = await self.store.execute('get_subscription', feed_id=feed_id)
        if not subscription or subscription['state'] not in PUSH_ACTIVE_STATES:
            return False
        expires_at = subscription.get('expires_at')
        return expires_at is None or expires_at > self._now()

    async def deactivate(self, feed_id: int, reason: str = "Feed no longer advertises a hub") -> bool:
        subscription = await self.store.execute('get_subscription', feed_id=feed_id)
        if not subscription or subscription['state'] == STATE_NONE:
            return False
        logger.info(f"Deactivating WebSub for feed {feed_id}: {reason}")
        await self.store.execute(
            'save_subscription', feed_id=feed_id, state=STATE_NONE,
            expires_at=None, lease_seconds=None, last_error=reason,
        )
        return True

    async def sync_feed_hub(self, feed_id: int, hub_url: Optional[str], topic_url: str) -> None:
        """Reconcile the subscription with the hub a freshly parsed feed advertises."""
        subscription = await self.store.execute('get_subscription', feed_id=feed_id)
        if not hub_url:
            if subscription:
                await self.deactivate(feed_id)
            return
        if not self.available:
            return

        if subscription:
            same_target = subscription['hub_url'] == hub_url and subscription['topic_url'] == topic_url
            if same_target and subscription['state'] in (STATE_REQUESTED,) + DELIVERY_STATES:
                return
            requested_at = subscription.get('requested_at') or 0
            if (
                same_target
                and subscription['state'] in (STATE_NONE, STATE_EXPIRED)
                and self._now() - requested_at < self.settings.renewal_threshold_seconds
            ):
                # Recently refused or lapsed; let polling carry the feed for now
                return
        await self.subscribe(feed_id, hub_url, topic_url)

    async def renew_expiring(self) -> int:
        """Renew leases ending within the renewal threshold.

        Renewals whose lease lapsed without a fresh verification are marked
        ``expired``.

        Returns:
            Number of renewal requests the hubs accepted.
        """
        if not self.available:
            return 0
        now = self._now()

        lapsed = await self.store.execute(
            'list_expiring_subscriptions', before=now, states=(STATE_RENEWING,),
        )
        for subscription in lapsed:
            logger.warning(f"WebSub renewal for feed {subscription['feed_id']} was never verified; expiring")
            await self.store.execute(
                'save_subscription', feed_id=subscription['feed_id'], state=STATE_EXPIRED,
                last_error="Renewal not verified before lease expiry",
            )

        expiring = await self.store.execute(
            'list_expiring_subscriptions', before=now + self.settings.renewal_threshold_seconds,
        )
        renewed = 0
        for subscription in expiring:
            if await self.subscribe(subscription['feed_id'], subscription['hub_url'], subscription['topic_url']):
                renewed += 1
        if expiring:
            logger.info(f"WebSub renewal: {renewed}/{len(expiring)} accepted")
        return renewed

    async def expire_stale_requests(self) -> int:
        """Revert requests the hub never verified within the window back to ``none``."""
        cutoff = self._now() - self.settings.verify_window_seconds
        stale = await self.store.execute('list_stale_requested_subscriptions', older_than=cutoff)
        for subscription in stale:
            logger.info(f"WebSub request for feed {subscription['feed_id']} was not verified in time")
            await self.store.execute(
                'save_subscription', feed_id=subscription['feed_id'], state=STATE_NONE,
                last_error="Verification not received within window",
            )
        return len(stale)
