from __future__ import annotations

import uuid
from datetime import datetime, time

from sqlalchemy import Boolean, Float, ForeignKey, String, Time, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flashpush.models.base import Base, TimestampMixin, UpdatedAtMixin


class User(Base, TimestampMixin):
    """A potential recipient of flash offer notifications."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)

    # Last known position, reported by the client
    latitude: Mapped[float | None] = mapped_column(Float, index=True)
    longitude: Mapped[float | None] = mapped_column(Float, index=True)
    location_updated_at: Mapped[datetime | None] = mapped_column(default=None)

    # Relationships
    device_tokens: Mapped[list[DeviceToken]] = relationship(
        back_populates="user", lazy="selectin"
    )
    preferences: Mapped[NotificationPreferences | None] = relationship(
        back_populates="user", lazy="selectin", uselist=False
    )

    @property
    def active_tokens(self) -> list[str]:
        return [t.token for t in self.device_tokens if t.is_active]

    def __repr__(self) -> str:
        return f"<User {self.id}>"


class DeviceToken(Base, TimestampMixin, UpdatedAtMixin):
    """Push gateway registration token for one app installation.

    Deactivation is monotonic: once the gateway reports a token invalid it is
    marked inactive and never reactivated. A fresh registration creates a new row.
    """

    __tablename__ = "device_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    token: Mapped[str] = mapped_column(String(512), unique=True, index=True)
    platform: Mapped[str] = mapped_column(String(10), default="android")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(default=None)

    # Relationships
    user: Mapped[User] = relationship(back_populates="device_tokens", lazy="noload")

    def __repr__(self) -> str:
        return f"<DeviceToken {self.platform} active={self.is_active}>"


class NotificationPreferences(Base, TimestampMixin, UpdatedAtMixin):
    """Per-user flash offer notification preferences.

    Users without a row get the defaults: enabled, no quiet hours, no
    distance limit, OS permission granted.
    """

    __tablename__ = "notification_preferences"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    flash_offers_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    quiet_hours_start: Mapped[time | None] = mapped_column(Time, default=None)
    quiet_hours_end: Mapped[time | None] = mapped_column(Time, default=None)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    max_distance_meters: Mapped[float | None] = mapped_column(Float, default=None)
    os_permission_granted: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    user: Mapped[User] = relationship(back_populates="preferences", lazy="noload")

    def __repr__(self) -> str:
        return f"<NotificationPreferences user={self.user_id}>"
