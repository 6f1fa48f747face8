"""
PostHog analytics client for server-side event tracking.

This module provides a singleton PostHog client used to report flash offer
push outcomes. Analytics is best-effort: capture failures are logged and
never propagate to the push operation.
"""

import os
from functools import lru_cache
from typing import Any

from posthog import Posthog

from flashpush.core.logging import get_logger

logger = get_logger(__name__)


# Event name constants for type safety
class Events:
    # Delivery
    PUSH_SENT = "flash_offer_push_sent"
    PUSH_FAILED = "flash_offer_push_failed"

    # Limits
    RATE_LIMIT_HIT = "flash_offer_rate_limit_hit"


@lru_cache(maxsize=1)
def get_posthog_client() -> Posthog | None:
    """
    Get or create the singleton PostHog client.

    Returns None if POSTHOG_API_KEY is not configured.
    """
    api_key = os.getenv("POSTHOG_API_KEY")
    host = os.getenv("POSTHOG_HOST", "https://us.i.posthog.com")

    if not api_key:
        logger.bind(hint="Set POSTHOG_API_KEY to enable analytics").warning(
            "posthog_not_configured"
        )
        return None

    client = Posthog(
        api_key=api_key,
        host=host,
        debug=os.getenv("DEBUG", "false").lower() == "true",
    )

    logger.bind(host=host).info("posthog_initialized")
    return client


def capture(
    distinct_id: str,
    event: str,
    properties: dict[str, Any] | None = None,
) -> None:
    """
    Capture an event.

    Args:
        distinct_id: Venue ID for push events
        event: Event name (use Events constants)
        properties: Additional event properties
    """
    client = get_posthog_client()
    if client is None:
        return

    try:
        client.capture(
            distinct_id=distinct_id,
            event=event,
            properties=properties or {},
        )
    except Exception as e:
        logger.bind(event=event, error=str(e)).error("posthog_capture_failed")


def track_push_sent(
    venue_id: str,
    offer_id: str,
    recipient_count: int,
    failed_count: int,
    timestamp: str,
) -> None:
    """Track the single delivered transition of an offer."""
    capture(
        distinct_id=str(venue_id),
        event=Events.PUSH_SENT,
        properties={
            "offer_id": str(offer_id),
            "recipient_count": recipient_count,
            "failed_count": failed_count,
            "timestamp": timestamp,
        },
    )


def track_push_failed(venue_id: str, offer_id: str, code: str) -> None:
    """Track a push operation that ended in a failure code."""
    capture(
        distinct_id=str(venue_id),
        event=Events.PUSH_FAILED,
        properties={"offer_id": str(offer_id), "code": code},
    )


def track_rate_limit_hit(venue_id: str, current_count: int, limit: int) -> None:
    capture(
        distinct_id=str(venue_id),
        event=Events.RATE_LIMIT_HIT,
        properties={"current_count": current_count, "limit": limit},
    )


def shutdown() -> None:
    """Flush any pending events and shutdown the client."""
    client = get_posthog_client()
    if client is not None:
        client.shutdown()
