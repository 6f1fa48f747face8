"""
Rolling 24-hour rate limit ledger.

Two independent limits share one append-only table:

- venue_send: how many offers a venue may push per trailing 24h, by tier
- user_receive: how many flash offer pushes a user may receive per trailing 24h

Each send or receipt inserts one row with count=1. Checks sum the rows
created inside the window. Rows are never updated, so concurrent writers
never contend on a shared counter.

Usage:
    check = await check_sender_quota(db, venue.id, venue.subscription_tier)
    if not check.allowed:
        ...
    eligible = await check_recipient_quota(db, [r.user_id for r in recipients])
"""

import math
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from flashpush.config import FlashOffersConfig, get_config
from flashpush.core.datetime_utils import get_cutoff, utc_now
from flashpush.core.logging import get_logger
from flashpush.models.rate_limit import RateLimitCounter, SubjectType
from flashpush.services.monitoring import MetricType, MonitoringService, get_monitoring

logger = get_logger(__name__)

# Keeps IN (...) lists well under driver parameter limits
QUERY_CHUNK_SIZE = 1000


@dataclass
class QuotaCheck:
    """Result of a sender quota check. limit=None means unlimited."""

    allowed: bool
    current_count: int
    limit: int | None
    resets_at: datetime | None = None

    def retry_after_seconds(self, now: datetime | None = None) -> int:
        """Seconds until the oldest in-window send ages out (at least 1)."""
        if self.resets_at is None:
            return 0
        remaining = (self.resets_at - (now or utc_now())).total_seconds()
        return max(1, math.ceil(remaining))


def _window_hours(config: FlashOffersConfig) -> int:
    return config.counter_ttl_hours


async def check_sender_quota(
    db: AsyncSession,
    venue_id: uuid.UUID,
    tier: str | None,
    now: datetime | None = None,
    config: FlashOffersConfig | None = None,
    monitoring: MonitoringService | None = None,
) -> QuotaCheck:
    """
    Check whether a venue may push another offer.

    Args:
        db: Database session
        venue_id: Sending venue
        tier: Venue subscription tier; unknown tiers use the default tier
        now: Reference instant (naive UTC), defaults to utc_now()

    Returns:
        QuotaCheck. Rejected when current_count >= limit.
    """
    config = config or get_config().flash_offers
    now = now or utc_now()
    limit = config.limit_for_tier(tier)

    cutoff = get_cutoff(hours=_window_hours(config), now=now)
    result = await db.execute(
        select(
            func.coalesce(func.sum(RateLimitCounter.count), 0),
            func.min(RateLimitCounter.created_at),
        ).where(
            RateLimitCounter.subject_type == SubjectType.VENUE_SEND,
            RateLimitCounter.subject_id == venue_id,
            RateLimitCounter.created_at > cutoff,
        )
    )
    current_count, oldest = result.one()
    current_count = int(current_count or 0)

    if limit is None:
        return QuotaCheck(allowed=True, current_count=current_count, limit=None)

    window = timedelta(hours=_window_hours(config))
    resets_at = (oldest + window) if oldest is not None else now + window
    allowed = current_count < limit

    if not allowed:
        logger.bind(
            subject_id=str(venue_id),
            subject_type=SubjectType.VENUE_SEND.value,
            count=current_count,
            limit=limit,
            tier=tier,
        ).warning("rate_limit_violation")
        (monitoring or get_monitoring()).record_metric(
            MetricType.RATE_LIMIT_VIOLATIONS,
            1,
            subject_type=SubjectType.VENUE_SEND.value,
        )

    return QuotaCheck(
        allowed=allowed,
        current_count=current_count,
        limit=limit,
        resets_at=resets_at,
    )


async def check_recipient_quota(
    db: AsyncSession,
    user_ids: Sequence[uuid.UUID],
    now: datetime | None = None,
    config: FlashOffersConfig | None = None,
    monitoring: MonitoringService | None = None,
) -> list[uuid.UUID]:
    """
    Filter out users who already received the daily cap of flash offers.

    Counts are fetched with one grouped query per chunk of user ids.
    Excluded users are dropped silently; input order is preserved.
    """
    if not user_ids:
        return []

    config = config or get_config().flash_offers
    cutoff = get_cutoff(hours=_window_hours(config), now=now or utc_now())
    cap = config.recipient_daily_cap

    counts: dict[uuid.UUID, int] = {}
    unique_ids = list(dict.fromkeys(user_ids))
    for start in range(0, len(unique_ids), QUERY_CHUNK_SIZE):
        chunk = unique_ids[start : start + QUERY_CHUNK_SIZE]
        result = await db.execute(
            select(RateLimitCounter.subject_id, func.sum(RateLimitCounter.count))
            .where(
                RateLimitCounter.subject_type == SubjectType.USER_RECEIVE,
                RateLimitCounter.subject_id.in_(chunk),
                RateLimitCounter.created_at > cutoff,
            )
            .group_by(RateLimitCounter.subject_id)
        )
        for subject_id, total in result.all():
            counts[subject_id] = int(total or 0)

    eligible = [uid for uid in unique_ids if counts.get(uid, 0) < cap]
    excluded = len(unique_ids) - len(eligible)

    if excluded:
        logger.bind(
            subject_type=SubjectType.USER_RECEIVE.value,
            excluded=excluded,
            limit=cap,
        ).info("recipients_over_daily_cap")
        (monitoring or get_monitoring()).record_metric(
            MetricType.RATE_LIMIT_VIOLATIONS,
            excluded,
            subject_type=SubjectType.USER_RECEIVE.value,
        )

    return eligible


def _counter_row(
    subject_id: uuid.UUID,
    subject_type: SubjectType,
    now: datetime,
    ttl_hours: int,
) -> dict:
    return {
        "id": uuid.uuid4(),
        "subject_id": subject_id,
        "subject_type": subject_type,
        "count": 1,
        "created_at": now,
        "expires_at": now + timedelta(hours=ttl_hours),
    }


async def record_sender_send(
    db: AsyncSession,
    venue_id: uuid.UUID,
    now: datetime | None = None,
    config: FlashOffersConfig | None = None,
) -> None:
    """Append one venue_send counter row."""
    config = config or get_config().flash_offers
    await db.execute(
        insert(RateLimitCounter),
        [_counter_row(venue_id, SubjectType.VENUE_SEND, now or utc_now(), config.counter_ttl_hours)],
    )


async def record_recipient_receive(
    db: AsyncSession,
    user_ids: Sequence[uuid.UUID],
    now: datetime | None = None,
    config: FlashOffersConfig | None = None,
) -> int:
    """Append one user_receive row per user in a single bulk insert.

    Returns:
        Number of rows inserted
    """
    if not user_ids:
        return 0

    config = config or get_config().flash_offers
    now = now or utc_now()
    rows = [
        _counter_row(uid, SubjectType.USER_RECEIVE, now, config.counter_ttl_hours)
        for uid in dict.fromkeys(user_ids)
    ]
    await db.execute(insert(RateLimitCounter), rows)
    return len(rows)


async def purge_expired_counters(db: AsyncSession, now: datetime | None = None) -> int:
    """Delete counter rows whose expiry has passed.

    Returns:
        Number of rows deleted
    """
    result = await db.execute(
        delete(RateLimitCounter)
        .where(RateLimitCounter.expires_at <= (now or utc_now()))
        .execution_options(synchronize_session=False)
    )
    deleted = result.rowcount or 0
    logger.bind(deleted=deleted).info("rate_limit_counters_purged")
    return deleted
