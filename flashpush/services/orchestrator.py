"""
Flash offer push orchestration.

One call to FlashOfferPushService.run() takes an offer from "created" to
"delivered": authenticate, check the venue's quota, resolve and filter the
audience, build the payload, dispatch in batches, then finalize exactly once.

States: authenticating -> quota_checking -> resolving_audience -> building
-> dispatching -> finalizing -> done, with failed reachable from any of them.

Every failure surfaces as a FlashPushError with a caller-facing code and a
non-empty message.
"""

import enum
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flashpush.config import AppConfig, get_config
from flashpush.core.datetime_utils import utc_now
from flashpush.core.errors import ErrorCode, FlashPushError
from flashpush.core.logging import get_logger
from flashpush.core.retry import retry_with_backoff, storage_read_retry
from flashpush.core.security import AuthenticationError, Caller, parse_offer_id, verify_access_token
from flashpush.models.offer import FlashOffer, OfferStatus
from flashpush.models.venue import Venue
from flashpush.services import posthog_client
from flashpush.services.audience import Recipient, resolve_audience
from flashpush.services.completion import (
    claim_dispatch,
    finalize,
    record_push_failed,
    release_dispatch_claim,
)
from flashpush.services.delivery import DeliveryBatcher, DeliveryError, DeliveryReport, batch_plan
from flashpush.services.monitoring import MetricType, MonitoringService, get_monitoring
from flashpush.services.payload import PayloadError, build_payload
from flashpush.services.push_gateway import GatewayInitError, PushGateway, get_push_gateway
from flashpush.services.rate_limit import (
    check_recipient_quota,
    check_sender_quota,
    record_recipient_receive,
    record_sender_send,
)

logger = get_logger(__name__)

T = TypeVar("T")

UNPUSHABLE_STATUSES = {OfferStatus.EXPIRED, OfferStatus.CANCELLED}


class DeliveryState(str, enum.Enum):
    AUTHENTICATING = "authenticating"
    QUOTA_CHECKING = "quota_checking"
    RESOLVING_AUDIENCE = "resolving_audience"
    BUILDING = "building"
    DISPATCHING = "dispatching"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PushResult:
    """Successful outcome of a push operation."""

    targeted_user_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    errors: list[DeliveryError] = field(default_factory=list)
    dry_run: bool = False
    batch_sizes: list[int] | None = None
    message: str | None = None
    skipped_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "targetedUserCount": self.targeted_user_count,
            "sentCount": self.sent_count,
            "failedCount": self.failed_count,
            "errors": [e.to_dict() for e in self.errors],
        }
        if self.dry_run:
            body["dryRun"] = True
        if self.batch_sizes is not None:
            body["batchPlan"] = {
                "batchCount": len(self.batch_sizes),
                "batchSizes": self.batch_sizes,
            }
        if self.skipped_count:
            body["skippedCount"] = self.skipped_count
        if self.message:
            body["message"] = self.message
        return body


class FlashOfferPushService:
    """Runs the push operation for one offer on one database session."""

    def __init__(
        self,
        db: AsyncSession,
        config: AppConfig | None = None,
        gateway_factory: Callable[[], PushGateway] = get_push_gateway,
        monitoring: MonitoringService | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.config = config or get_config()
        self.gateway_factory = gateway_factory
        self.monitoring = monitoring or get_monitoring()
        self.clock = clock
        self.state = DeliveryState.AUTHENTICATING
        # (offer_id, venue_id) once the offer is loaded
        self.offer_key: tuple[uuid.UUID, uuid.UUID] | None = None

    def _transition(self, state: DeliveryState, offer_id: uuid.UUID | None = None) -> None:
        self.state = state
        logger.bind(state=state.value, offer_id=str(offer_id) if offer_id else None).debug(
            "offer_push_state"
        )

    async def _read(self, fn: Callable[[], Awaitable[T]], operation: str, failure: str) -> T:
        """Run a storage read, retried once, mapping exhaustion to DATABASE_ERROR."""

        async def attempt() -> T:
            try:
                return await fn()
            except SQLAlchemyError:
                await self.db.rollback()
                raise

        try:
            return await retry_with_backoff(
                attempt,
                storage_read_retry(self.config.flash_offers.storage_retry_delay_seconds),
                operation_name=operation,
            )
        except SQLAlchemyError as e:
            raise FlashPushError(ErrorCode.DATABASE_ERROR, failure) from e

    def _authenticate(self, credentials: str | None) -> Caller:
        try:
            return verify_access_token(credentials)
        except AuthenticationError as e:
            raise FlashPushError(ErrorCode.UNAUTHORIZED, str(e)) from e

    def _init_gateway(self) -> PushGateway:
        try:
            return self.gateway_factory()
        except GatewayInitError as e:
            raise FlashPushError(
                ErrorCode.FIREBASE_INIT_FAILED, "Failed to initialize push notification service"
            ) from e

    async def _load_offer_and_venue(self, raw_offer_id: Any) -> tuple[FlashOffer, Venue]:
        try:
            offer_id = parse_offer_id(raw_offer_id)
        except ValueError as e:
            raise FlashPushError(ErrorCode.INVALID_REQUEST, str(e)) from e

        offer = await self._read(
            lambda: self.db.get(FlashOffer, offer_id, populate_existing=True),
            "get_offer",
            "Database error while fetching offer details",
        )
        if offer is None:
            raise FlashPushError(ErrorCode.OFFER_NOT_FOUND, "Flash offer not found")

        venue = await self._read(
            lambda: self.db.get(Venue, offer.venue_id, populate_existing=True),
            "get_venue",
            "Database error while fetching venue details",
        )
        if venue is None:
            raise FlashPushError(ErrorCode.VENUE_NOT_FOUND, "Venue not found")

        return offer, venue

    async def _check_sender_quota(self, venue: Venue, now: datetime) -> None:
        quota = await self._read(
            lambda: check_sender_quota(
                self.db,
                venue.id,
                venue.subscription_tier,
                now=now,
                config=self.config.flash_offers,
                monitoring=self.monitoring,
            ),
            "check_sender_quota",
            "Database error while checking rate limits",
        )
        if quota.allowed:
            return

        posthog_client.track_rate_limit_hit(str(venue.id), quota.current_count, quota.limit)
        raise FlashPushError(
            ErrorCode.RATE_LIMIT_EXCEEDED,
            f"Rate limit exceeded. You have sent {quota.current_count} of {quota.limit} "
            "allowed offers in the last 24 hours.",
            details={
                "currentCount": quota.current_count,
                "limit": quota.limit,
                "resetsAt": quota.resets_at.isoformat() + "Z" if quota.resets_at else None,
                "retryAfterSeconds": quota.retry_after_seconds(now),
            },
        )

    async def _resolve_recipients(
        self, offer: FlashOffer, venue: Venue, now: datetime
    ) -> list[Recipient]:
        if not venue.has_location:
            raise FlashPushError(ErrorCode.INVALID_REQUEST, "Venue location not available")

        recipients = await self._read(
            lambda: resolve_audience(self.db, offer, venue, now),
            "resolve_audience",
            "Database error while fetching targeted users",
        )
        eligible = set(
            await self._read(
                lambda: check_recipient_quota(
                    self.db,
                    [r.user_id for r in recipients],
                    now=now,
                    config=self.config.flash_offers,
                    monitoring=self.monitoring,
                ),
                "check_recipient_quota",
                "Database error while checking user rate limits",
            )
        )
        return [r for r in recipients if r.user_id in eligible]

    async def _claim(self, offer_id: uuid.UUID) -> bool:
        try:
            return await claim_dispatch(
                self.db, offer_id, self.config.flash_offers.claim_ttl_seconds
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise FlashPushError(
                ErrorCode.DATABASE_ERROR, "Database error while claiming offer for delivery"
            ) from e

    async def _release_claim(self, offer_id: uuid.UUID) -> None:
        try:
            await release_dispatch_claim(self.db, offer_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.bind(offer_id=str(offer_id), error=str(e)).error("offer_claim_release_failed")

    async def _finalize(
        self, offer_id: uuid.UUID, venue_id: uuid.UUID, report: DeliveryReport
    ) -> bool:
        try:
            return await finalize(
                self.db,
                offer_id,
                venue_id,
                sent_count=report.success_count,
                failed_count=report.failure_count,
                errors=report.errors,
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise FlashPushError(
                ErrorCode.DATABASE_ERROR, "Database error while marking offer delivered"
            ) from e

    async def _record_counters(self, venue_id: uuid.UUID, user_ids: list[uuid.UUID], now: datetime) -> None:
        """Append send/receive counters. Failures are logged, never fatal."""
        try:
            await record_sender_send(self.db, venue_id, now=now, config=self.config.flash_offers)
            await record_recipient_receive(self.db, user_ids, now=now, config=self.config.flash_offers)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.bind(venue_id=str(venue_id), error=str(e)).error("rate_limit_record_failed")

    async def run(
        self,
        raw_offer_id: Any,
        credentials: str | None,
        dry_run: bool = False,
    ) -> PushResult:
        """
        Push an offer to its audience.

        Args:
            raw_offer_id: Offer id as received from the caller
            credentials: Bearer token (without the "Bearer " prefix)
            dry_run: Resolve and plan without sending, recording or finalizing

        Returns:
            PushResult on success

        Raises:
            FlashPushError: On any failure
        """
        started = self.clock()
        self._transition(DeliveryState.AUTHENTICATING)

        try:
            result = await self._run(raw_offer_id, credentials, dry_run, started)
        except FlashPushError as e:
            self._fail(e, started)
            if self.offer_key is not None and not dry_run:
                offer_id, venue_id = self.offer_key
                await record_push_failed(self.db, offer_id, venue_id, e.code.value, e.message)
            raise
        except Exception as e:
            error = FlashPushError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")
            logger.bind(error_type=type(e).__name__, error=str(e)).exception("offer_push_unexpected_error")
            self._fail(error, started)
            raise error from e

        elapsed_ms = (self.clock() - started) * 1000
        self.monitoring.record_metric(MetricType.ERROR_RATE, 0)
        self.monitoring.record_metric(MetricType.EXECUTION_TIME, elapsed_ms)
        return result

    def _fail(self, error: FlashPushError, started: float) -> None:
        self._transition(DeliveryState.FAILED)
        elapsed_ms = (self.clock() - started) * 1000
        self.monitoring.record_metric(MetricType.ERROR_RATE, 1, code=error.code.value)
        self.monitoring.record_metric(MetricType.EXECUTION_TIME, elapsed_ms)
        logger.bind(code=error.code.value, elapsed_ms=round(elapsed_ms)).warning("offer_push_failed")

    async def _run(
        self,
        raw_offer_id: Any,
        credentials: str | None,
        dry_run: bool,
        started: float,
    ) -> PushResult:
        settings = self.config.flash_offers

        caller = self._authenticate(credentials)
        offer, venue = await self._load_offer_and_venue(raw_offer_id)
        offer_id, venue_id = offer.id, venue.id
        self.offer_key = (offer_id, venue_id)
        log = logger.bind(offer_id=str(offer_id), venue_id=str(venue_id), dry_run=dry_run)
        log.bind(caller=caller.user_id).info("offer_push_started")

        if offer.status in UNPUSHABLE_STATUSES:
            raise FlashPushError(
                ErrorCode.INVALID_REQUEST,
                f"Offer is {offer.status.value} and cannot be pushed",
            )

        if offer.push_sent and not dry_run:
            log.info("offer_push_already_sent")
            self._transition(DeliveryState.DONE, offer_id)
            return PushResult(message="Push notification already sent for this offer")

        gateway = None if dry_run else self._init_gateway()
        now = utc_now()

        self._transition(DeliveryState.QUOTA_CHECKING, offer_id)
        await self._check_sender_quota(venue, now)

        self._transition(DeliveryState.RESOLVING_AUDIENCE, offer_id)
        recipients = await self._resolve_recipients(offer, venue, now)
        tokens = list(dict.fromkeys(token for r in recipients for token in r.tokens))
        log.bind(recipients=len(recipients), devices=len(tokens)).info("offer_audience_resolved")

        self._transition(DeliveryState.BUILDING, offer_id)
        try:
            payload = build_payload(offer, venue.name)
        except PayloadError as e:
            raise FlashPushError(ErrorCode.INVALID_REQUEST, str(e)) from e

        if dry_run:
            self._transition(DeliveryState.DONE, offer_id)
            return PushResult(
                targeted_user_count=len(recipients),
                dry_run=True,
                batch_sizes=batch_plan(len(tokens), settings.batch_size),
            )

        self._transition(DeliveryState.DISPATCHING, offer_id)
        if not await self._claim(offer_id):
            log.info("offer_push_in_progress")
            self._transition(DeliveryState.DONE, offer_id)
            return PushResult(message="Push notification is already being sent for this offer")

        await self._record_counters(venue_id, [r.user_id for r in recipients], now)

        batcher = DeliveryBatcher(
            gateway,
            db=self.db,
            batch_size=settings.batch_size,
            max_concurrent_batches=settings.max_concurrent_batches,
            clock=self.clock,
        )
        report = await batcher.send_all(tokens, payload, deadline=started + settings.budget_seconds)

        if report.success_count + report.failure_count:
            self.monitoring.record_metric(
                MetricType.FCM_FAILURE_RATE,
                report.failure_rate,
                offer_id=str(offer_id),
            )

        if report.quota_dominated:
            log.bind(
                quota_exceeded=report.quota_exceeded_count,
                failed=report.failure_count,
            ).error("offer_push_gateway_quota_exceeded")
            await self._release_claim(offer_id)
            raise FlashPushError(
                ErrorCode.FCM_QUOTA_EXCEEDED,
                "FCM quota exceeded. Please try again later.",
                details={
                    "successCount": report.success_count,
                    "failureCount": report.failure_count,
                },
            )

        self._transition(DeliveryState.FINALIZING, offer_id)
        previously_delivered = await self._finalize(offer_id, venue_id, report)

        elapsed = self.clock() - started
        if elapsed > settings.warn_seconds:
            log.bind(elapsed_seconds=round(elapsed, 2)).warning("offer_push_slow")

        self._transition(DeliveryState.DONE, offer_id)
        log.bind(
            sent=report.success_count,
            failed=report.failure_count,
            skipped=report.skipped_count,
            elapsed_ms=round(elapsed * 1000),
        ).info("offer_push_completed")

        return PushResult(
            targeted_user_count=len(recipients),
            sent_count=report.success_count,
            failed_count=report.failure_count,
            errors=report.errors,
            skipped_count=report.skipped_count,
            message="Offer was already delivered by a concurrent request"
            if previously_delivered
            else None,
        )
