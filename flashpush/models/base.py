from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from flashpush.core.datetime_utils import utc_now


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map: dict[type, Any] = {}


class TimestampMixin:
    """Mixin that adds created_at timestamp to models."""

    created_at: Mapped[datetime] = mapped_column(default=func.now())


class UpdatedAtMixin:
    """Mixin that adds an updated_at timestamp refreshed on every ORM update."""

    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)
