import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, Index, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from flashpush.core.datetime_utils import utc_now
from flashpush.models.base import Base


class SubjectType(str, enum.Enum):
    """What a rate limit counter row counts."""

    VENUE_SEND = "venue_send"
    USER_RECEIVE = "user_receive"


class RateLimitCounter(Base):
    """One append-only counter row per send or receipt.

    Rows are never updated in place. The trailing-24h count is a SUM over
    rows created inside the window, and expired rows are purged periodically.
    """

    __tablename__ = "flash_offer_rate_limits"
    __table_args__ = (
        Index("ix_rate_limits_subject_window", "subject_type", "subject_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    subject_type: Mapped[SubjectType] = mapped_column(
        Enum(
            SubjectType,
            values_callable=lambda e: [x.value for x in e],
            name="ratelimitsubject",
            native_enum=False,
        )
    )
    count: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(index=True)

    def __repr__(self) -> str:
        return f"<RateLimitCounter {self.subject_type.value} {self.subject_id}>"
