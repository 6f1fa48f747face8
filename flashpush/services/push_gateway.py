"""
Push gateway adapter.

The delivery batcher talks to a PushGateway. FirebaseGateway sends through
firebase-admin's multicast API. Tests substitute their own implementation.

Error codes reported in SendOutcome are FCM v1 codes (UNREGISTERED,
INVALID_ARGUMENT, SENDER_ID_MISMATCH, QUOTA_EXCEEDED, INTERNAL, UNAVAILABLE).
"""

import asyncio
import functools
import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from flashpush.config import get_settings
from flashpush.core.logging import get_logger
from flashpush.services.payload import NotificationPayload

logger = get_logger(__name__)

FIREBASE_APP_NAME = "flashpush"

# Most specific first: messaging errors subclass the generic FirebaseError types
_EXCEPTION_CODES: list[tuple[type[Exception], str]] = [
    (messaging.UnregisteredError, "UNREGISTERED"),
    (messaging.SenderIdMismatchError, "SENDER_ID_MISMATCH"),
    (messaging.QuotaExceededError, "QUOTA_EXCEEDED"),
    (messaging.ThirdPartyAuthError, "THIRD_PARTY_AUTH_ERROR"),
    (exceptions.InvalidArgumentError, "INVALID_ARGUMENT"),
    (exceptions.ResourceExhaustedError, "QUOTA_EXCEEDED"),
    (exceptions.InternalError, "INTERNAL"),
    (exceptions.UnavailableError, "UNAVAILABLE"),
]


class GatewayInitError(Exception):
    """Gateway credentials are missing or unusable."""


@dataclass
class SendOutcome:
    """Per-token result of one multicast send."""

    token: str
    success: bool
    error_code: str | None = None
    message_id: str | None = None


class PushGateway(Protocol):
    """Protocol for push notification gateways."""

    async def send_multicast(
        self, tokens: list[str], payload: NotificationPayload
    ) -> list[SendOutcome]:
        """Send one payload to up to 500 tokens. Outcomes align with tokens."""
        ...


def error_code_for_exception(exc: BaseException) -> str:
    """Map a firebase-admin exception to its FCM error code."""
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    if isinstance(exc, exceptions.FirebaseError) and exc.code:
        return str(exc.code).upper()
    return "UNKNOWN"


def build_message(tokens: list[str], payload: NotificationPayload) -> messaging.MulticastMessage:
    """Translate a NotificationPayload into a firebase-admin multicast message."""
    aps = payload.apns.get("aps", {})
    return messaging.MulticastMessage(
        tokens=tokens,
        notification=messaging.Notification(title=payload.title, body=payload.body),
        data=payload.data,
        android=messaging.AndroidConfig(
            priority=payload.android.get("priority", "high"),
            notification=messaging.AndroidNotification(
                channel_id=payload.android.get("channel_id"),
                sound=payload.android.get("sound"),
            ),
        ),
        apns=messaging.APNSConfig(
            headers=payload.apns.get("headers"),
            payload=messaging.APNSPayload(
                aps=messaging.Aps(
                    sound=aps.get("sound"),
                    content_available=bool(aps.get("content-available")),
                )
            ),
        ),
    )


class FirebaseGateway:
    """Firebase Cloud Messaging gateway."""

    def __init__(self, app: firebase_admin.App) -> None:
        self._app = app

    @classmethod
    def from_service_account(cls, service_account_json: str) -> "FirebaseGateway":
        """
        Initialise the Firebase app from a service account JSON string.

        Raises:
            GatewayInitError: If the credentials are missing or invalid
        """
        try:
            return cls(firebase_admin.get_app(FIREBASE_APP_NAME))
        except ValueError:
            pass

        if not service_account_json:
            raise GatewayInitError("Firebase service account is not configured")

        try:
            info = json.loads(service_account_json)
            cred = credentials.Certificate(info)
            app = firebase_admin.initialize_app(cred, name=FIREBASE_APP_NAME)
        except (ValueError, TypeError) as e:
            # Never log the credential payload itself
            logger.bind(error_type=type(e).__name__).error("firebase_init_failed")
            raise GatewayInitError("Failed to initialize Firebase credentials") from e

        logger.bind(project_id=info.get("project_id")).info("firebase_initialized")
        return cls(app)

    async def send_multicast(
        self, tokens: list[str], payload: NotificationPayload
    ) -> list[SendOutcome]:
        message = build_message(tokens, payload)

        # firebase-admin is synchronous; keep the event loop free
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            functools.partial(messaging.send_each_for_multicast, message, app=self._app),
        )

        outcomes = []
        for token, item in zip(tokens, response.responses, strict=True):
            if item.success:
                outcomes.append(SendOutcome(token=token, success=True, message_id=item.message_id))
            else:
                outcomes.append(
                    SendOutcome(
                        token=token,
                        success=False,
                        error_code=error_code_for_exception(item.exception),
                    )
                )
        return outcomes


@lru_cache(maxsize=1)
def get_push_gateway() -> PushGateway:
    """Get the process-wide Firebase gateway.

    Raises:
        GatewayInitError: If the configured credentials cannot be loaded
    """
    return FirebaseGateway.from_service_account(get_settings().firebase_service_account)
