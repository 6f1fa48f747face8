from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Enum, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flashpush.core.geo import METERS_PER_MILE
from flashpush.models.base import Base, TimestampMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from flashpush.models.venue import Venue


class OfferStatus(str, enum.Enum):
    """Flash offer lifecycle status (maintained by claim logic and expiry jobs)."""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FULL = "full"


class FlashOffer(Base, TimestampMixin, UpdatedAtMixin):
    """A time-limited, claim-limited promotion pushed to nearby users.

    ``push_sent`` is the single-use delivered flag. It only ever goes from
    False to True, through the conditional update in the completion tracker.
    """

    __tablename__ = "flash_offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    venue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("venues.id", ondelete="CASCADE"), index=True
    )

    # Offer details
    title: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text, default="")
    value_cap: Mapped[str | None] = mapped_column(String(50))

    # Claim limits
    max_claims: Mapped[int | None] = mapped_column(Integer)
    claimed_count: Mapped[int] = mapped_column(Integer, default=0)

    # Time constraints
    start_time: Mapped[datetime | None] = mapped_column()
    end_time: Mapped[datetime | None] = mapped_column()

    # Targeting
    radius_meters: Mapped[float] = mapped_column(Float, default=METERS_PER_MILE)
    target_favorites_only: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[OfferStatus] = mapped_column(
        Enum(
            OfferStatus,
            values_callable=lambda e: [x.value for x in e],
            name="offerstatus",
            native_enum=False,
        ),
        default=OfferStatus.ACTIVE,
    )

    # Notification tracking
    push_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    push_sent_at: Mapped[datetime | None] = mapped_column(default=None)
    # Set by the run currently dispatching; stale after claim_ttl_seconds
    push_claimed_at: Mapped[datetime | None] = mapped_column(default=None)

    # Relationships
    venue: Mapped[Venue] = relationship(back_populates="offers", lazy="noload")

    @property
    def remaining_claims(self) -> int | None:
        if self.max_claims is None:
            return None
        return max(self.max_claims - (self.claimed_count or 0), 0)

    def __repr__(self) -> str:
        return f"<FlashOffer {self.id} status={self.status.value} push_sent={self.push_sent}>"
