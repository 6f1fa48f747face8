from __future__ import annotations

import enum
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Float, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flashpush.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from flashpush.models.offer import FlashOffer


class SubscriptionTier(str, enum.Enum):
    """Venue subscription tier, which sets the daily push quota."""

    FREE = "free"
    CORE = "core"
    PRO = "pro"
    REVENUE = "revenue"


class Venue(Base, TimestampMixin):
    """A venue that owns flash offers."""

    __tablename__ = "venues"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255))
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    # Plain string so unknown tiers fall back to the default quota instead of failing to load
    subscription_tier: Mapped[str] = mapped_column(String(20), default=SubscriptionTier.FREE.value)

    # Relationships
    offers: Mapped[list[FlashOffer]] = relationship(back_populates="venue", lazy="noload")

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def __repr__(self) -> str:
        return f"<Venue {self.name} tier={self.subscription_tier}>"


class Favorite(Base, TimestampMixin):
    """A user's favorited venue. Drives favorites-only targeting."""

    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "venue_id", name="uq_favorite_user_venue"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    venue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("venues.id", ondelete="CASCADE"), index=True
    )

    def __repr__(self) -> str:
        return f"<Favorite user={self.user_id} venue={self.venue_id}>"
