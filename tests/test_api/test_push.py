"""Tests for the push and reach endpoints."""

import uuid

import pytest

from flashpush.models import SubjectType
from tests.helpers import make_token

pytestmark = pytest.mark.asyncio

PUSH_URL = "/api/flash-offers/push"


class TestPushEndpoint:
    """Tests for POST /api/flash-offers/push."""

    async def test_success(self, client, auth_headers, gateway, offer_factory, user_factory):
        """Should return camelCase counts on success."""
        offer = await offer_factory()
        await user_factory(tokens=2)

        response = await client.post(PUSH_URL, json={"offerId": str(offer.id)}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "targetedUserCount": 1,
            "sentCount": 2,
            "failedCount": 0,
            "errors": [],
        }
        assert len(gateway.sent_tokens) == 2

    async def test_idempotent(self, client, auth_headers, gateway, offer_factory, user_factory):
        offer = await offer_factory()
        await user_factory()

        first = await client.post(PUSH_URL, json={"offerId": str(offer.id)}, headers=auth_headers)
        second = await client.post(PUSH_URL, json={"offerId": str(offer.id)}, headers=auth_headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["sentCount"] == 0
        assert second.json()["message"] == "Push notification already sent for this offer"
        assert len(gateway.calls) == 1

    async def test_missing_credentials(self, client, offer_factory):
        offer = await offer_factory()

        response = await client.post(PUSH_URL, json={"offerId": str(offer.id)})

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "UNAUTHORIZED"
        assert body["error"]

    async def test_expired_token(self, client, offer_factory):
        offer = await offer_factory()
        headers = {"Authorization": f"Bearer {make_token(expires_in=-10)}"}

        response = await client.post(PUSH_URL, json={"offerId": str(offer.id)}, headers=headers)

        assert response.status_code == 401

    @pytest.mark.parametrize("payload", [{}, {"offerId": "abc"}, {"offerId": 123}])
    async def test_invalid_offer_id(self, client, auth_headers, payload):
        response = await client.post(PUSH_URL, json=payload, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"

    async def test_malformed_body(self, client, auth_headers):
        """Should map body validation failures to INVALID_REQUEST."""
        response = await client.post(
            PUSH_URL,
            content="not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"

    @pytest.mark.parametrize("payload", [{}, {"offerId": "abc"}])
    async def test_unauthenticated_invalid_body_is_unauthorized(self, client, payload):
        """Should check credentials before reporting a bad body."""
        response = await client.post(PUSH_URL, json=payload)

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    async def test_unauthenticated_malformed_json_is_unauthorized(self, client):
        response = await client.post(
            PUSH_URL,
            content="not json",
            headers={"Authorization": "Bearer not-a-jwt", "Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    async def test_offer_not_found(self, client, auth_headers):
        response = await client.post(
            PUSH_URL, json={"offerId": str(uuid.uuid4())}, headers=auth_headers
        )

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "Flash offer not found",
            "code": "OFFER_NOT_FOUND",
        }

    async def test_rate_limited(
        self, client, auth_headers, venue_factory, offer_factory, counter_factory
    ):
        """Should return 429 with details and a Retry-After header."""
        venue = await venue_factory(tier="free")
        await counter_factory(venue.id, SubjectType.VENUE_SEND, count=3)
        offer = await offer_factory(venue=venue)

        response = await client.post(PUSH_URL, json={"offerId": str(offer.id)}, headers=auth_headers)

        assert response.status_code == 429
        body = response.json()
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["details"]["currentCount"] == 3
        assert body["details"]["limit"] == 3
        assert int(response.headers["Retry-After"]) > 0

    async def test_dry_run(self, client, auth_headers, gateway, offer_factory, user_factory):
        offer = await offer_factory()
        await user_factory(tokens=3)

        response = await client.post(
            PUSH_URL,
            json={"offerId": str(offer.id), "dryRun": True},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["dryRun"] is True
        assert body["sentCount"] == 0
        assert body["batchPlan"] == {"batchCount": 1, "batchSizes": [3]}
        assert gateway.calls == []

    async def test_error_body_never_carries_credentials(self, client, offer_factory):
        """Should not echo the caller's token back in a failure."""
        offer = await offer_factory()
        token = make_token(secret="wrong-secret")

        response = await client.post(
            PUSH_URL,
            json={"offerId": str(offer.id)},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401
        assert token not in response.text


class TestReachEndpoint:
    """Tests for GET /api/venues/{venue_id}/reach."""

    async def test_counts_candidates(self, client, auth_headers, venue_factory, user_factory):
        venue = await venue_factory()
        await user_factory(distance_m=100)
        await user_factory(distance_m=1000)
        await user_factory(distance_m=3000)

        response = await client.get(f"/api/venues/{venue.id}/reach", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"venueId": str(venue.id), "candidateCount": 2}

    async def test_custom_radius_and_favorites(
        self, client, auth_headers, venue_factory, user_factory
    ):
        venue = await venue_factory()
        await user_factory(distance_m=100, favorite_of=venue)
        await user_factory(distance_m=100)
        await user_factory(distance_m=3000, favorite_of=venue)

        response = await client.get(
            f"/api/venues/{venue.id}/reach",
            params={"radius_meters": 5000, "favorites_only": "true"},
            headers=auth_headers,
        )

        assert response.json()["candidateCount"] == 2

    async def test_requires_auth(self, client, venue_factory):
        venue = await venue_factory()

        response = await client.get(f"/api/venues/{venue.id}/reach")

        assert response.status_code == 401

    async def test_unknown_venue(self, client, auth_headers):
        response = await client.get(f"/api/venues/{uuid.uuid4()}/reach", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["code"] == "VENUE_NOT_FOUND"

    async def test_invalid_radius(self, client, auth_headers, venue_factory):
        venue = await venue_factory()

        response = await client.get(
            f"/api/venues/{venue.id}/reach",
            params={"radius_meters": -5},
            headers=auth_headers,
        )

        assert response.status_code == 400
