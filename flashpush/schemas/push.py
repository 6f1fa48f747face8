from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PushRequest(CamelModel):
    """Request body for sending a flash offer push."""

    # Validated as a UUID by the push service so the error carries a clear message
    offer_id: Any = None
    dry_run: bool = False


class DeliveryErrorItem(BaseModel):
    """A device that could not be notified."""

    token: str
    error: str


class BatchPlan(CamelModel):
    """Batches a dry run would have sent."""

    batch_count: int
    batch_sizes: list[int]


class PushResponse(CamelModel):
    """Successful push result."""

    success: bool = True
    targeted_user_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    errors: list[DeliveryErrorItem] = Field(default_factory=list)
    dry_run: bool | None = None
    batch_plan: BatchPlan | None = None
    skipped_count: int | None = None
    message: str | None = None


class ErrorResponse(BaseModel):
    """Failure body shared by every endpoint."""

    success: bool = False
    error: str
    code: str
    details: dict[str, Any] | None = None


class ReachResponse(CamelModel):
    """Candidate audience size for a venue at a given radius."""

    venue_id: str
    candidate_count: int
