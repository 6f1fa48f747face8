"""Notification payload for a flash offer push."""

from dataclasses import dataclass, field
from typing import Any

from flashpush.models.offer import FlashOffer

ANDROID_CHANNEL_ID = "flash_offers"
PAYLOAD_TYPE = "flash_offer"
HIGHLIGHT_SEPARATOR = " · "


class PayloadError(ValueError):
    """Offer data cannot produce a valid notification."""


@dataclass(frozen=True)
class NotificationPayload:
    """Platform-neutral notification plus Android/APNs delivery hints.

    All ``data`` values are strings, as the gateway requires.
    """

    title: str
    body: str
    data: dict[str, str]
    android: dict[str, Any] = field(default_factory=dict)
    apns: dict[str, Any] = field(default_factory=dict)


def _highlights(offer: FlashOffer) -> list[str]:
    parts = []
    if offer.value_cap:
        parts.append(offer.value_cap.strip())
    remaining = offer.remaining_claims
    if remaining is not None:
        parts.append(f"Only {remaining} left")
    return parts


def build_payload(offer: FlashOffer, venue_name: str) -> NotificationPayload:
    """
    Build the notification for an offer. Pure and deterministic.

    Raises:
        PayloadError: If the offer lacks an id, venue id or title, or the
            venue name is empty
    """
    if offer.id is None or offer.venue_id is None:
        raise PayloadError("Offer is missing its id or venue id")
    if not offer.title or not offer.title.strip():
        raise PayloadError("Offer has no title")
    if not venue_name or not venue_name.strip():
        raise PayloadError("Venue name is empty")

    venue_name = venue_name.strip()
    description = (offer.description or "").strip()
    lead = description or f"A limited-time offer is live at {venue_name}. Claim it before it's gone!"
    body = HIGHLIGHT_SEPARATOR.join([lead, *_highlights(offer)])

    return NotificationPayload(
        title=f"🔥 {offer.title.strip()} at {venue_name}",
        body=body,
        data={
            "offer_id": str(offer.id),
            "venue_id": str(offer.venue_id),
            "type": PAYLOAD_TYPE,
        },
        android={
            "priority": "high",
            "channel_id": ANDROID_CHANNEL_ID,
            "sound": "default",
        },
        apns={
            "headers": {"apns-priority": "10"},
            "aps": {"sound": "default", "content-available": 1},
        },
    )
