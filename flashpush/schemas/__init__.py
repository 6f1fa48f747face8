from flashpush.schemas.push import (
    BatchPlan,
    DeliveryErrorItem,
    ErrorResponse,
    PushRequest,
    PushResponse,
    ReachResponse,
)

__all__ = [
    "BatchPlan",
    "DeliveryErrorItem",
    "ErrorResponse",
    "PushRequest",
    "PushResponse",
    "ReachResponse",
]
