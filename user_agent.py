#!/usr/bin/env python3
"""
User-Agent header construction for outbound requests.

Format::

    AppName/VERSION[-COMMIT] [feed:ID] (+APP_URL; REPO_URL[; EMAIL][; N subscribers])

Feed origins use the comment section for abuse triage, so the contact URL is
always present and prefixed with ``+``.
"""

from typing import Optional

from config import UserAgentSettings


def build_user_agent(
    settings: UserAgentSettings,
    feed_id: Optional[str] = None,
    subscriber_count: Optional[int] = None,
) -> str:
    """Build the User-Agent string.

    Args:
        settings: Application identity
        feed_id: Optional feed identifier rendered as ``feed:<id>`` for debugging
        subscriber_count: Optional number of subscribers to report to the publisher

    Returns:
        The formatted header value.
    """
    ua = f"{settings.app_name}/{settings.app_version}"
    if settings.commit_sha:
        ua += f"-{settings.commit_sha}"
    if feed_id:
        ua += f" feed:{feed_id}"

    parts = [f"+{settings.app_url}", settings.repo_url]
    if settings.contact_email:
        parts.append(settings.contact_email)
    if subscriber_count is not None and subscriber_count >= 0:
        parts.append("1 subscriber" if subscriber_count == 1 else f"{subscriber_count} subscribers")

    return f"{ua} ({'; '.join(parts)})"
