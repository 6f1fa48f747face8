"""
Exactly-once completion of a flash offer push.

Two conditional UPDATEs guard the offer. claim_dispatch stamps
push_claimed_at before anything is sent, so only one run dispatches at a
time. mark_delivered then flips push_sent. In both cases the caller whose
UPDATE matches the row wins and every other caller sees rowcount 0. Only
the winner of mark_delivered records analytics.
"""

import uuid
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flashpush.core.datetime_utils import utc_now
from flashpush.core.logging import get_logger
from flashpush.models.analytics import FlashOfferEvent, OfferEventType
from flashpush.models.offer import FlashOffer
from flashpush.services import posthog_client
from flashpush.services.delivery import DeliveryError

logger = get_logger(__name__)


async def claim_dispatch(
    db: AsyncSession,
    offer_id: uuid.UUID,
    ttl_seconds: float,
    now: datetime | None = None,
) -> bool:
    """Claim an undelivered offer for dispatch and commit the claim.

    A claim older than ttl_seconds belongs to a run that never finished and
    may be taken over.

    Returns:
        True if this call holds the claim
    """
    now = now or utc_now()
    result = await db.execute(
        update(FlashOffer)
        .where(
            FlashOffer.id == offer_id,
            FlashOffer.push_sent.is_(False),
            or_(
                FlashOffer.push_claimed_at.is_(None),
                FlashOffer.push_claimed_at < now - timedelta(seconds=ttl_seconds),
            ),
        )
        .values(push_claimed_at=now)
    )
    await db.commit()
    return result.rowcount == 1


async def release_dispatch_claim(db: AsyncSession, offer_id: uuid.UUID) -> None:
    """Drop the claim on an offer that was not delivered, so it can be pushed again."""
    await db.execute(
        update(FlashOffer)
        .where(FlashOffer.id == offer_id, FlashOffer.push_sent.is_(False))
        .values(push_claimed_at=None)
    )
    await db.commit()


async def mark_delivered(
    db: AsyncSession,
    offer_id: uuid.UUID,
    now: datetime | None = None,
) -> bool:
    """Set push_sent on the offer if it is not set yet.

    Returns:
        True if this call performed the transition
    """
    now = now or utc_now()
    result = await db.execute(
        update(FlashOffer)
        .where(FlashOffer.id == offer_id, FlashOffer.push_sent.is_(False))
        .values(push_sent=True, push_sent_at=now, updated_at=now)
    )
    return result.rowcount == 1


def _log_failures(offer_id: uuid.UUID, errors: Sequence[DeliveryError]) -> None:
    if not errors:
        return
    reasons = Counter(e.error for e in errors)
    logger.bind(offer_id=str(offer_id), failed=len(errors), **dict(reasons)).warning(
        "offer_push_failures"
    )
    for error in errors:
        logger.bind(offer_id=str(offer_id), token=error.token, reason=error.error).debug(
            "offer_push_failure"
        )


async def _store_event(
    db: AsyncSession,
    offer_id: uuid.UUID,
    event_type: OfferEventType,
    metadata: dict[str, Any],
) -> bool:
    try:
        db.add(FlashOfferEvent(offer_id=offer_id, event_type=event_type, metadata_json=metadata))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.bind(offer_id=str(offer_id), event_type=event_type.value, error=str(e)).error(
            "analytics_event_failed"
        )
        return False
    return True


async def finalize(
    db: AsyncSession,
    offer_id: uuid.UUID,
    venue_id: uuid.UUID,
    sent_count: int,
    failed_count: int,
    errors: Sequence[DeliveryError] = (),
    now: datetime | None = None,
) -> bool:
    """
    Mark the offer delivered and record analytics on the winning transition.

    The transition is committed before analytics are written, so an
    analytics failure never undoes it.

    Returns:
        True if the offer had already been delivered by another invocation
    """
    now = now or utc_now()
    won = await mark_delivered(db, offer_id, now=now)
    await db.commit()

    _log_failures(offer_id, errors)

    if not won:
        logger.bind(offer_id=str(offer_id)).info("offer_already_delivered")
        return True

    event = {
        "offerId": str(offer_id),
        "recipientCount": sent_count,
        "failedCount": failed_count,
        "timestamp": now.isoformat() + "Z",
    }
    await _store_event(db, offer_id, OfferEventType.PUSH_SENT, event)
    posthog_client.track_push_sent(
        venue_id=str(venue_id),
        offer_id=str(offer_id),
        recipient_count=sent_count,
        failed_count=failed_count,
        timestamp=event["timestamp"],
    )

    logger.bind(offer_id=str(offer_id), sent=sent_count, failed=failed_count).info(
        "offer_marked_delivered"
    )
    return False


async def record_push_failed(
    db: AsyncSession,
    offer_id: uuid.UUID,
    venue_id: uuid.UUID,
    code: str,
    message: str,
) -> None:
    """Store a push_failed analytics event for an operation that ended in failure."""
    await _store_event(
        db,
        offer_id,
        OfferEventType.PUSH_FAILED,
        {
            "offerId": str(offer_id),
            "code": code,
            "error": message,
            "timestamp": utc_now().isoformat() + "Z",
        },
    )
    posthog_client.track_push_failed(venue_id=str(venue_id), offer_id=str(offer_id), code=code)
