"""
Batched, bounded-concurrency delivery through the push gateway.

Tokens are split into batches of at most 500 (the gateway's multicast
limit). Up to max_concurrent_batches run at once. A batch that raises marks
all of its tokens failed and never affects its siblings. Nothing is retried.
A batch-level error never deactivates tokens.

Tokens the gateway reports as invalid are deactivated after all batches
finish, in one update that only ever flips is_active from true to false.
"""

import asyncio
import enum
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flashpush.core.datetime_utils import utc_now
from flashpush.core.logging import get_logger
from flashpush.models.user import DeviceToken
from flashpush.services.payload import NotificationPayload
from flashpush.services.push_gateway import PushGateway, SendOutcome, error_code_for_exception

logger = get_logger(__name__)

MAX_BATCH_SIZE = 500
DEFAULT_MAX_CONCURRENT_BATCHES = 10


class ErrorCategory(str, enum.Enum):
    INVALID_TOKEN = "invalid_token"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


_CATEGORY_BY_CODE: dict[str, ErrorCategory] = {
    # FCM v1
    "UNREGISTERED": ErrorCategory.INVALID_TOKEN,
    "INVALID_ARGUMENT": ErrorCategory.INVALID_TOKEN,
    "SENDER_ID_MISMATCH": ErrorCategory.INVALID_TOKEN,
    "QUOTA_EXCEEDED": ErrorCategory.QUOTA_EXCEEDED,
    "RESOURCE_EXHAUSTED": ErrorCategory.QUOTA_EXCEEDED,
    "INTERNAL": ErrorCategory.SERVER_ERROR,
    "UNAVAILABLE": ErrorCategory.SERVER_ERROR,
    # Legacy
    "messaging/invalid-registration-token": ErrorCategory.INVALID_TOKEN,
    "messaging/registration-token-not-registered": ErrorCategory.INVALID_TOKEN,
    "messaging/invalid-argument": ErrorCategory.INVALID_TOKEN,
    "messaging/mismatched-credential": ErrorCategory.INVALID_TOKEN,
    "messaging/quota-exceeded": ErrorCategory.QUOTA_EXCEEDED,
    "messaging/too-many-requests": ErrorCategory.QUOTA_EXCEEDED,
    "messaging/message-rate-exceeded": ErrorCategory.QUOTA_EXCEEDED,
    "messaging/internal-error": ErrorCategory.SERVER_ERROR,
    "messaging/server-unavailable": ErrorCategory.SERVER_ERROR,
    "messaging/unavailable": ErrorCategory.SERVER_ERROR,
}


def categorize_error(code: str | None) -> ErrorCategory:
    """Map an FCM v1 or legacy error code to a delivery error category."""
    if not code:
        return ErrorCategory.UNKNOWN
    return _CATEGORY_BY_CODE.get(code, _CATEGORY_BY_CODE.get(code.upper(), ErrorCategory.UNKNOWN))


def split_into_batches(tokens: Sequence[str], size: int = MAX_BATCH_SIZE) -> list[list[str]]:
    """Split tokens into ceil(N/size) batches of at most size each."""
    if size < 1:
        raise ValueError("Batch size must be positive")
    return [list(tokens[i : i + size]) for i in range(0, len(tokens), size)]


def batch_plan(token_count: int, size: int = MAX_BATCH_SIZE) -> list[int]:
    """Batch sizes a send of token_count tokens would use."""
    batches = math.ceil(token_count / size) if token_count else 0
    return [min(size, token_count - i * size) for i in range(batches)]


def _mask(token: str) -> str:
    return f"{token[:8]}..." if len(token) > 8 else token


@dataclass
class DeliveryError:
    token: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"token": self.token, "error": self.error}


@dataclass
class DeliveryReport:
    """Aggregated result of a send_all call."""

    success_count: int = 0
    failure_count: int = 0
    errors: list[DeliveryError] = field(default_factory=list)
    quota_exceeded_count: int = 0
    invalid_tokens: list[str] = field(default_factory=list)
    skipped_count: int = 0
    batch_count: int = 0
    deactivated_count: int = 0

    @property
    def quota_dominated(self) -> bool:
        """True when more than half of the failures are gateway quota errors."""
        return self.failure_count > 0 and self.quota_exceeded_count * 2 > self.failure_count

    @property
    def failure_rate(self) -> float:
        attempted = self.success_count + self.failure_count
        return self.failure_count / attempted if attempted else 0.0

    def add_failure(self, token: str, category: ErrorCategory, deactivate: bool = True) -> None:
        """Count a failed token. Only per-token gateway verdicts may deactivate it."""
        self.failure_count += 1
        self.errors.append(DeliveryError(token=token, error=category.value))
        if category == ErrorCategory.QUOTA_EXCEEDED:
            self.quota_exceeded_count += 1
        elif category == ErrorCategory.INVALID_TOKEN and deactivate:
            self.invalid_tokens.append(token)


async def deactivate_tokens(db: AsyncSession, tokens: Sequence[str]) -> int:
    """Mark tokens inactive. Already-inactive tokens are left untouched.

    Returns:
        Number of tokens deactivated by this call
    """
    if not tokens:
        return 0

    result = await db.execute(
        update(DeviceToken)
        .where(DeviceToken.token.in_(list(tokens)), DeviceToken.is_active.is_(True))
        .values(is_active=False, deactivated_at=utc_now(), updated_at=utc_now())
    )
    return result.rowcount or 0


class DeliveryBatcher:
    """Sends one payload to many tokens in concurrent batches."""

    def __init__(
        self,
        gateway: PushGateway,
        db: AsyncSession | None = None,
        batch_size: int = MAX_BATCH_SIZE,
        max_concurrent_batches: int = DEFAULT_MAX_CONCURRENT_BATCHES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.clock = clock
        self.db = db
        self.batch_size = min(batch_size, MAX_BATCH_SIZE)
        self.max_concurrent_batches = max_concurrent_batches

    async def _send_batch(
        self,
        index: int,
        batch: list[str],
        payload: NotificationPayload,
        semaphore: asyncio.Semaphore,
        deadline: float | None,
    ) -> tuple[list[SendOutcome] | None, ErrorCategory | None]:
        async with semaphore:
            if deadline is not None and self.clock() >= deadline:
                return None, None

            try:
                outcomes = await self.gateway.send_multicast(batch, payload)
            except Exception as e:
                category = categorize_error(error_code_for_exception(e))
                logger.bind(
                    batch=index,
                    size=len(batch),
                    category=category.value,
                    error=str(e),
                ).error("push_batch_failed")
                return [], category

            logger.bind(
                batch=index,
                size=len(batch),
                succeeded=sum(1 for o in outcomes if o.success),
            ).debug("push_batch_sent")
            return outcomes, None

    async def send_all(
        self,
        tokens: Sequence[str],
        payload: NotificationPayload,
        deadline: float | None = None,
    ) -> DeliveryReport:
        """
        Send the payload to every token.

        Args:
            tokens: Device tokens, unique
            payload: Notification to send
            deadline: clock value after which no new batch starts

        Returns:
            DeliveryReport with per-token failures and skipped counts
        """
        batches = split_into_batches(tokens, self.batch_size)
        report = DeliveryReport(batch_count=len(batches))
        if not batches:
            return report

        semaphore = asyncio.Semaphore(self.max_concurrent_batches)
        results = await asyncio.gather(
            *(
                self._send_batch(i, batch, payload, semaphore, deadline)
                for i, batch in enumerate(batches)
            )
        )

        for batch, (outcomes, batch_error) in zip(batches, results, strict=True):
            if outcomes is None:
                report.skipped_count += len(batch)
                continue
            if batch_error is not None:
                # A rejected request says nothing about the individual tokens
                for token in batch:
                    report.add_failure(token, batch_error, deactivate=False)
                continue
            for outcome in outcomes:
                if outcome.success:
                    report.success_count += 1
                    continue
                category = categorize_error(outcome.error_code)
                report.add_failure(outcome.token, category)
                if category != ErrorCategory.INVALID_TOKEN:
                    logger.bind(
                        device=_mask(outcome.token),
                        error_code=outcome.error_code,
                        category=category.value,
                    ).warning("push_delivery_failed")

        if report.skipped_count:
            logger.bind(skipped=report.skipped_count).warning("push_batches_skipped_deadline")

        if report.invalid_tokens and self.db is not None:
            try:
                report.deactivated_count = await deactivate_tokens(self.db, report.invalid_tokens)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.bind(invalid=len(report.invalid_tokens), error=str(e)).error(
                    "device_token_deactivation_failed"
                )
            else:
                logger.bind(deactivated=report.deactivated_count).info("device_tokens_deactivated")

        return report
