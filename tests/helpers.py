"""Shared test helpers: tokens, coordinates and a recording push gateway."""

import math
from datetime import datetime, timedelta

from jose import jwt

from flashpush.config import get_settings
from flashpush.core.geo import EARTH_RADIUS_METERS, GeoPoint
from flashpush.services.push_gateway import SendOutcome

# Venue location used by most tests (lower Manhattan)
VENUE_POINT = GeoPoint(40.7128, -74.0060)


def offset_point(origin: GeoPoint, north_m: float = 0.0, east_m: float = 0.0) -> GeoPoint:
    """Point displaced from origin by the given meters (small distances)."""
    d_lat = math.degrees(north_m / EARTH_RADIUS_METERS)
    d_lon = math.degrees(east_m / (EARTH_RADIUS_METERS * math.cos(math.radians(origin.latitude))))
    return GeoPoint(origin.latitude + d_lat, origin.longitude + d_lon)


def make_token(
    sub: str | None = "venue-owner-1",
    expires_in: int = 3600,
    secret: str | None = None,
    audience: str = "authenticated",
) -> str:
    """Mint a JWT the service will accept (or reject, with bad arguments)."""
    settings = get_settings()
    claims = {
        "aud": audience,
        "exp": int((datetime.now() + timedelta(seconds=expires_in)).timestamp()),
        "role": "authenticated",
    }
    if sub is not None:
        claims["sub"] = sub
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


class FakeGateway:
    """Push gateway double that records every multicast call.

    Tokens listed in ``errors`` fail with the given FCM code. Batches whose
    index is in ``raise_on_calls`` raise instead of returning outcomes.
    """

    def __init__(
        self,
        errors: dict[str, str] | None = None,
        raise_on_calls: set[int] | None = None,
        exception: Exception | None = None,
    ) -> None:
        self.errors = errors or {}
        self.raise_on_calls = raise_on_calls or set()
        self.exception = exception or RuntimeError("gateway unavailable")
        self.calls: list[list[str]] = []

    async def send_multicast(self, tokens, payload):
        index = len(self.calls)
        self.calls.append(list(tokens))
        if index in self.raise_on_calls:
            raise self.exception
        return [
            SendOutcome(token=t, success=False, error_code=self.errors[t])
            if t in self.errors
            else SendOutcome(token=t, success=True, message_id=f"msg-{t}")
            for t in tokens
        ]

    @property
    def sent_tokens(self) -> list[str]:
        return [t for call in self.calls for t in call]
