from flashpush.models.analytics import FlashOfferEvent, OfferEventType
from flashpush.models.base import Base
from flashpush.models.offer import FlashOffer, OfferStatus
from flashpush.models.rate_limit import RateLimitCounter, SubjectType
from flashpush.models.user import DeviceToken, NotificationPreferences, User
from flashpush.models.venue import Favorite, SubscriptionTier, Venue

__all__ = [
    "Base",
    "DeviceToken",
    "Favorite",
    "FlashOffer",
    "FlashOfferEvent",
    "NotificationPreferences",
    "OfferEventType",
    "OfferStatus",
    "RateLimitCounter",
    "SubjectType",
    "SubscriptionTier",
    "User",
    "Venue",
]
