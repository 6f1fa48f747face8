import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Enum, ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from flashpush.core.datetime_utils import utc_now
from flashpush.models.base import Base


class OfferEventType(str, enum.Enum):
    PUSH_SENT = "push_sent"
    PUSH_FAILED = "push_failed"


class FlashOfferEvent(Base):
    """Analytics event recorded for a flash offer push."""

    __tablename__ = "flash_offer_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    offer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("flash_offers.id", ondelete="CASCADE"), index=True
    )
    event_type: Mapped[OfferEventType] = mapped_column(
        Enum(
            OfferEventType,
            values_callable=lambda e: [x.value for x in e],
            name="offereventtype",
            native_enum=False,
        )
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, index=True)

    def __repr__(self) -> str:
        return f"<FlashOfferEvent {self.event_type.value} offer={self.offer_id}>"
