"""Error taxonomy for the push operation.

Services raise FlashPushError. The API layer turns it into the
``{success: false, error, code, details?}`` body with the status mapped here.
"""

import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    """Failure codes returned to callers."""

    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_REQUEST = "INVALID_REQUEST"
    OFFER_NOT_FOUND = "OFFER_NOT_FOUND"
    VENUE_NOT_FOUND = "VENUE_NOT_FOUND"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    PUSH_ALREADY_SENT = "PUSH_ALREADY_SENT"
    FIREBASE_INIT_FAILED = "FIREBASE_INIT_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    FCM_QUOTA_EXCEEDED = "FCM_QUOTA_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.OFFER_NOT_FOUND: 404,
    ErrorCode.VENUE_NOT_FOUND: 404,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.PUSH_ALREADY_SENT: 409,
    ErrorCode.FIREBASE_INIT_FAILED: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.FCM_QUOTA_EXCEEDED: 429,
    ErrorCode.INTERNAL_ERROR: 500,
}


class FlashPushError(Exception):
    """A failure that ends the push operation with a caller-facing code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not message:
            raise ValueError("FlashPushError requires a human-readable message")
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.code]

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code.value,
        }
        if self.details:
            body["details"] = self.details
        return body
