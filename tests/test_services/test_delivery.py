"""Tests for batched delivery through the push gateway."""

import uuid

import pytest
from firebase_admin import exceptions, messaging
from sqlalchemy import select

from flashpush.models import DeviceToken
from flashpush.services.delivery import (
    DeliveryBatcher,
    DeliveryReport,
    ErrorCategory,
    batch_plan,
    categorize_error,
    deactivate_tokens,
    split_into_batches,
)
from flashpush.services.payload import NotificationPayload
from flashpush.services.push_gateway import error_code_for_exception
from tests.helpers import FakeGateway

PAYLOAD = NotificationPayload(title="🔥 Deal at Pub", body="Now", data={"type": "flash_offer"})


def _tokens(n: int) -> list[str]:
    return [f"token-{i:05d}" for i in range(n)]


class TestBatching:
    """Tests for batch splitting."""

    def test_split_1200_tokens(self):
        """Should produce 500/500/200 batches."""
        batches = split_into_batches(_tokens(1200))
        assert [len(b) for b in batches] == [500, 500, 200]

    def test_split_preserves_every_token_once(self):
        tokens = _tokens(1001)
        batches = split_into_batches(tokens)
        assert [t for b in batches for t in b] == tokens

    def test_split_empty(self):
        assert split_into_batches([]) == []

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            split_into_batches(_tokens(3), size=0)

    def test_batch_plan(self):
        assert batch_plan(1200) == [500, 500, 200]
        assert batch_plan(500) == [500]
        assert batch_plan(0) == []


class TestCategorizeError:
    """Tests for categorize_error."""

    @pytest.mark.parametrize(
        "code,category",
        [
            ("UNREGISTERED", ErrorCategory.INVALID_TOKEN),
            ("INVALID_ARGUMENT", ErrorCategory.INVALID_TOKEN),
            ("SENDER_ID_MISMATCH", ErrorCategory.INVALID_TOKEN),
            ("QUOTA_EXCEEDED", ErrorCategory.QUOTA_EXCEEDED),
            ("INTERNAL", ErrorCategory.SERVER_ERROR),
            ("UNAVAILABLE", ErrorCategory.SERVER_ERROR),
            ("messaging/registration-token-not-registered", ErrorCategory.INVALID_TOKEN),
            ("messaging/message-rate-exceeded", ErrorCategory.QUOTA_EXCEEDED),
            ("messaging/server-unavailable", ErrorCategory.SERVER_ERROR),
            ("SOMETHING_NEW", ErrorCategory.UNKNOWN),
            (None, ErrorCategory.UNKNOWN),
        ],
    )
    def test_mapping(self, code, category):
        assert categorize_error(code) == category

    def test_case_insensitive_v1_codes(self):
        assert categorize_error("unregistered") == ErrorCategory.INVALID_TOKEN


class TestErrorCodeForException:
    """Tests for mapping firebase-admin exceptions to FCM codes."""

    def test_messaging_errors(self):
        assert error_code_for_exception(messaging.UnregisteredError("gone")) == "UNREGISTERED"
        assert error_code_for_exception(messaging.QuotaExceededError("slow down")) == "QUOTA_EXCEEDED"

    def test_generic_firebase_errors(self):
        assert error_code_for_exception(exceptions.UnavailableError("down")) == "UNAVAILABLE"
        assert error_code_for_exception(exceptions.InvalidArgumentError("bad")) == "INVALID_ARGUMENT"

    def test_other_exceptions(self):
        assert error_code_for_exception(RuntimeError("boom")) == "UNKNOWN"


class TestDeliveryReport:
    def test_quota_dominated(self):
        """Should be True only when quota errors are more than half of failures."""
        report = DeliveryReport()
        report.add_failure("a", ErrorCategory.QUOTA_EXCEEDED)
        report.add_failure("b", ErrorCategory.SERVER_ERROR)
        assert report.quota_dominated is False

        report.add_failure("c", ErrorCategory.QUOTA_EXCEEDED)
        assert report.quota_dominated is True

    def test_failure_without_deactivation(self):
        report = DeliveryReport()
        report.add_failure("a", ErrorCategory.INVALID_TOKEN, deactivate=False)
        assert report.failure_count == 1
        assert report.invalid_tokens == []

    def test_no_failures_not_quota_dominated(self):
        assert DeliveryReport(success_count=10).quota_dominated is False

    def test_failure_rate(self):
        report = DeliveryReport(success_count=8)
        report.add_failure("a", ErrorCategory.INVALID_TOKEN)
        report.add_failure("b", ErrorCategory.INVALID_TOKEN)
        assert report.failure_rate == pytest.approx(0.2)
        assert report.invalid_tokens == ["a", "b"]


class TestDeliveryBatcher:
    """Tests for DeliveryBatcher.send_all."""

    async def test_every_token_sent_once(self):
        gateway = FakeGateway()
        tokens = _tokens(1200)

        report = await DeliveryBatcher(gateway).send_all(tokens, PAYLOAD)

        assert sorted(len(c) for c in gateway.calls) == [200, 500, 500]
        assert sorted(gateway.sent_tokens) == tokens
        assert report.success_count == 1200
        assert report.failure_count == 0
        assert report.batch_count == 3

    async def test_empty_token_list(self):
        gateway = FakeGateway()

        report = await DeliveryBatcher(gateway).send_all([], PAYLOAD)

        assert gateway.calls == []
        assert report.success_count == 0

    async def test_per_token_failures(self):
        tokens = _tokens(10)
        gateway = FakeGateway(errors={tokens[0]: "UNREGISTERED", tokens[1]: "INTERNAL"})

        report = await DeliveryBatcher(gateway).send_all(tokens, PAYLOAD)

        assert report.success_count == 8
        assert report.failure_count == 2
        assert {e.token: e.error for e in report.errors} == {
            tokens[0]: "invalid_token",
            tokens[1]: "server_error",
        }
        assert report.invalid_tokens == [tokens[0]]

    async def test_batch_exception_fails_only_that_batch(self):
        """Should mark every token of a failing batch failed and keep the others."""
        gateway = FakeGateway(raise_on_calls={0})

        report = await DeliveryBatcher(gateway, batch_size=5, max_concurrent_batches=1).send_all(
            _tokens(12), PAYLOAD
        )

        assert report.failure_count == 5
        assert report.success_count == 7
        assert all(e.error == "unknown" for e in report.errors)

    async def test_batch_exception_categorized(self):
        gateway = FakeGateway(
            raise_on_calls={0}, exception=messaging.QuotaExceededError("too many")
        )

        report = await DeliveryBatcher(gateway).send_all(_tokens(3), PAYLOAD)

        assert report.quota_exceeded_count == 3
        assert report.quota_dominated is True

    async def test_batch_size_capped_at_500(self):
        gateway = FakeGateway()

        await DeliveryBatcher(gateway, batch_size=1000).send_all(_tokens(600), PAYLOAD)

        assert max(len(c) for c in gateway.calls) == 500

    async def test_batches_past_deadline_are_skipped(self):
        """Should not start batches once the deadline has passed."""
        ticks = iter(range(100))
        gateway = FakeGateway()
        batcher = DeliveryBatcher(
            gateway,
            batch_size=2,
            max_concurrent_batches=1,
            clock=lambda: next(ticks),
        )

        # Clock reads 0, 1, 2, ... one per batch; deadline 2 allows two batches
        report = await batcher.send_all(_tokens(8), PAYLOAD, deadline=2)

        assert len(gateway.calls) == 2
        assert report.success_count == 4
        assert report.skipped_count == 4

    async def test_invalid_tokens_deactivated(self, db_session, user_factory):
        """Should deactivate tokens the gateway reports invalid."""
        tokens = ["good-1", "bad-1", "bad-2"]
        await user_factory(tokens=tokens)
        gateway = FakeGateway(errors={"bad-1": "UNREGISTERED", "bad-2": "INVALID_ARGUMENT"})

        report = await DeliveryBatcher(gateway, db=db_session).send_all(tokens, PAYLOAD)

        assert report.deactivated_count == 2
        rows = await db_session.execute(select(DeviceToken.token, DeviceToken.is_active))
        assert dict(rows.all()) == {"good-1": True, "bad-1": False, "bad-2": False}

    async def test_rejected_batch_does_not_deactivate(self, db_session, user_factory):
        """Should never deactivate tokens when the whole request was rejected."""
        tokens = ["live-1", "live-2", "live-3"]
        await user_factory(tokens=tokens)
        gateway = FakeGateway(
            raise_on_calls={0}, exception=exceptions.InvalidArgumentError("bad payload")
        )

        report = await DeliveryBatcher(gateway, db=db_session).send_all(tokens, PAYLOAD)

        assert report.failure_count == 3
        assert {e.error for e in report.errors} == {"invalid_token"}
        assert report.invalid_tokens == []
        assert report.deactivated_count == 0
        rows = await db_session.execute(select(DeviceToken.token, DeviceToken.is_active))
        assert dict(rows.all()) == {"live-1": True, "live-2": True, "live-3": True}

    async def test_server_errors_do_not_deactivate(self, db_session, user_factory):
        await user_factory(tokens=["flaky-1"])
        gateway = FakeGateway(errors={"flaky-1": "UNAVAILABLE"})

        report = await DeliveryBatcher(gateway, db=db_session).send_all(["flaky-1"], PAYLOAD)

        assert report.deactivated_count == 0
        is_active = await db_session.scalar(
            select(DeviceToken.is_active).where(DeviceToken.token == "flaky-1")
        )
        assert is_active is True


class TestDeactivateTokens:
    async def test_already_inactive_untouched(self, db_session, user_factory):
        """Should never count or touch tokens that are already inactive."""
        await user_factory(tokens=["live"], inactive_tokens=["dead"])

        deactivated = await deactivate_tokens(db_session, ["live", "dead", f"unknown-{uuid.uuid4()}"])

        assert deactivated == 1

    async def test_empty(self, db_session):
        assert await deactivate_tokens(db_session, []) == 0
