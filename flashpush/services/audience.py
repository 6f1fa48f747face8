"""
Audience resolution for flash offer pushes.

Two stages:

1. resolve(): geospatial candidates. A bounding-box prefilter in SQL, then
   exact haversine distance <= radius. Optionally restricted to users who
   favorited the venue.
2. apply_preference_filters(): per-recipient opt-outs (disabled, quiet
   hours, max distance, no device, OS permission).

The reach preview endpoint calls resolve() too, so preview and dispatch
always agree on who the candidates are.
"""

import enum
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, time

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from flashpush.core.datetime_utils import is_in_quiet_hours
from flashpush.core.geo import GeoPoint, bounding_box, distance_meters
from flashpush.core.logging import get_logger
from flashpush.models.offer import FlashOffer
from flashpush.models.user import NotificationPreferences, User
from flashpush.models.venue import Favorite, Venue

logger = get_logger(__name__)


class ExclusionReason(str, enum.Enum):
    DISABLED = "disabled"
    QUIET_HOURS = "quiet_hours"
    BEYOND_MAX_DISTANCE = "beyond_max_distance"
    NO_ACTIVE_DEVICE = "no_active_device"
    NO_OS_PERMISSION = "no_os_permission"


@dataclass
class EffectivePreferences:
    """Notification preferences with defaults applied for users without a row."""

    flash_offers_enabled: bool = True
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    timezone: str = "UTC"
    max_distance_meters: float | None = None
    os_permission_granted: bool = True

    @classmethod
    def from_row(cls, row: NotificationPreferences | None) -> "EffectivePreferences":
        if row is None:
            return cls()
        return cls(
            flash_offers_enabled=row.flash_offers_enabled,
            quiet_hours_start=row.quiet_hours_start,
            quiet_hours_end=row.quiet_hours_end,
            timezone=row.timezone or "UTC",
            max_distance_meters=row.max_distance_meters,
            os_permission_granted=row.os_permission_granted,
        )


@dataclass
class Recipient:
    """A candidate user with everything the filters need."""

    user_id: uuid.UUID
    distance_meters: float
    tokens: list[str] = field(default_factory=list)
    preferences: EffectivePreferences = field(default_factory=EffectivePreferences)


def apply_favorites_join(stmt: Select, venue_id: uuid.UUID) -> Select:
    """Restrict a User query to users who favorited the venue."""
    return stmt.join(Favorite, Favorite.user_id == User.id).where(Favorite.venue_id == venue_id)


def candidate_query(
    venue_id: uuid.UUID,
    center: GeoPoint,
    radius_meters: float,
    favorites_only: bool = False,
) -> Select:
    """Build the SQL prefilter for users near a point."""
    stmt = select(User).where(User.latitude.is_not(None), User.longitude.is_not(None))

    box = bounding_box(center, radius_meters)
    if box is not None:
        min_lat, max_lat, min_lon, max_lon = box
        stmt = stmt.where(
            User.latitude.between(min_lat, max_lat),
            User.longitude.between(min_lon, max_lon),
        )

    if favorites_only:
        stmt = apply_favorites_join(stmt, venue_id)

    return stmt


async def resolve(
    db: AsyncSession,
    venue_id: uuid.UUID,
    center: GeoPoint,
    radius_meters: float,
    favorites_only: bool = False,
) -> list[Recipient]:
    """
    Find users within radius_meters of center.

    Args:
        db: Database session
        venue_id: Venue used for the favorites join
        center: Venue position
        radius_meters: Targeting radius (inclusive)
        favorites_only: Only users who favorited the venue

    Returns:
        Recipients unique by user id, nearest first
    """
    result = await db.execute(candidate_query(venue_id, center, radius_meters, favorites_only))

    recipients: dict[uuid.UUID, Recipient] = {}
    for user in result.scalars().unique():
        if user.id in recipients:
            continue
        distance = distance_meters(center, GeoPoint(user.latitude, user.longitude))
        if distance > radius_meters:
            continue
        recipients[user.id] = Recipient(
            user_id=user.id,
            distance_meters=distance,
            tokens=user.active_tokens,
            preferences=EffectivePreferences.from_row(user.preferences),
        )

    return sorted(recipients.values(), key=lambda r: r.distance_meters)


def exclusion_reasons(recipient: Recipient, instant: datetime) -> list[ExclusionReason]:
    """All reasons a recipient should not be notified at this instant."""
    prefs = recipient.preferences
    reasons = []

    if not prefs.flash_offers_enabled:
        reasons.append(ExclusionReason.DISABLED)
    if is_in_quiet_hours(prefs.quiet_hours_start, prefs.quiet_hours_end, prefs.timezone, instant):
        reasons.append(ExclusionReason.QUIET_HOURS)
    if prefs.max_distance_meters is not None and recipient.distance_meters > prefs.max_distance_meters:
        reasons.append(ExclusionReason.BEYOND_MAX_DISTANCE)
    if not recipient.tokens:
        reasons.append(ExclusionReason.NO_ACTIVE_DEVICE)
    if not prefs.os_permission_granted:
        reasons.append(ExclusionReason.NO_OS_PERMISSION)

    return reasons


def apply_preference_filters(recipients: list[Recipient], instant: datetime) -> list[Recipient]:
    """Keep recipients with no exclusion reason at the given instant (naive UTC)."""
    kept = []
    excluded: Counter[str] = Counter()

    for recipient in recipients:
        reasons = exclusion_reasons(recipient, instant)
        if reasons:
            excluded.update(r.value for r in reasons)
        else:
            kept.append(recipient)

    if excluded:
        logger.bind(kept=len(kept), total=len(recipients), **dict(excluded)).info(
            "audience_preferences_filtered"
        )

    return kept


async def resolve_audience(
    db: AsyncSession,
    offer: FlashOffer,
    venue: Venue,
    instant: datetime,
) -> list[Recipient]:
    """Geospatial resolution followed by preference filtering for an offer."""
    if not venue.has_location:
        raise ValueError("Venue has no location")

    candidates = await resolve(
        db,
        venue.id,
        GeoPoint(venue.latitude, venue.longitude),
        offer.radius_meters,
        favorites_only=offer.target_favorites_only,
    )
    return apply_preference_filters(candidates, instant)
