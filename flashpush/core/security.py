"""Caller authentication and credential hygiene.

Verifies bearer JWTs, validates offer identifiers, and scrubs secrets from
anything that leaves the process (log records, response bodies).
"""

import re
import uuid
from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt

from flashpush.config import get_settings

REDACTED = "[REDACTED]"

_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9\-_.=]+", re.IGNORECASE)
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+")
_PEM_RE = re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL)
_JSON_SECRET_RE = re.compile(r'"(private_key|private_key_id|client_email)"\s*:\s*"[^"]*"', re.IGNORECASE)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]")

# Keys whose values are always dropped. Device tokens are addressing data, not credentials.
SENSITIVE_KEY_PARTS = (
    "password",
    "secret",
    "private_key",
    "service_account",
    "api_key",
    "apikey",
    "authorization",
    "access_token",
    "refresh_token",
    "id_token",
    "jwt",
    "credential",
)


class AuthenticationError(Exception):
    """Raised when a caller's identity assertion cannot be verified."""


@dataclass
class Caller:
    """Authenticated caller extracted from a verified JWT."""

    user_id: str
    role: str | None = None


def verify_access_token(token: str | None) -> Caller:
    """
    Verify a bearer JWT and return the caller it identifies.

    Args:
        token: Raw JWT (without the "Bearer " prefix)

    Returns:
        Caller with the token's subject

    Raises:
        AuthenticationError: If the token is missing, malformed, expired,
            signed with the wrong key, or has no subject
    """
    if not token:
        raise AuthenticationError("Missing authorization token")

    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience or None,
            options={"verify_aud": bool(settings.jwt_audience)},
        )
    except JWTError as err:
        raise AuthenticationError("Invalid or expired authorization token") from err

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Authorization token has no subject")

    return Caller(user_id=str(subject), role=payload.get("role"))


def sanitize_user_input(value: str, max_length: int = 1000) -> str:
    """Trim, truncate and strip control characters from user input."""
    cleaned = value.strip()[:max_length]
    return _CONTROL_CHARS_RE.sub("", cleaned)


def parse_offer_id(raw: Any) -> uuid.UUID:
    """
    Validate an offer id supplied by a caller.

    Raises:
        ValueError: With a caller-facing message when the id is missing or not a UUID
    """
    if raw is None or raw == "":
        raise ValueError("Offer ID is required")
    if not isinstance(raw, str):
        raise ValueError("Offer ID must be a string")

    cleaned = sanitize_user_input(raw, max_length=100)
    try:
        return uuid.UUID(cleaned)
    except ValueError as err:
        raise ValueError("Invalid offer ID format. Expected UUID.") from err


def sanitize_string(value: str) -> str:
    """Redact bearer tokens, JWTs, private keys and service-account fields."""
    value = _PEM_RE.sub(REDACTED, value)
    value = _BEARER_RE.sub(f"Bearer {REDACTED}", value)
    value = _JWT_RE.sub(REDACTED, value)
    return _JSON_SECRET_RE.sub(lambda m: f'"{m.group(1)}": "{REDACTED}"', value)


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def sanitize_object(obj: Any) -> Any:
    """Recursively redact sensitive values from dicts, lists and strings."""
    if isinstance(obj, str):
        return sanitize_string(obj)
    if isinstance(obj, dict):
        return {
            key: REDACTED if _is_sensitive_key(str(key)) else sanitize_object(value)
            for key, value in obj.items()
        }
    if isinstance(obj, list | tuple):
        return [sanitize_object(item) for item in obj]
    return obj


def contains_credentials(text: str) -> bool:
    """Check whether text still carries something that looks like a credential."""
    return sanitize_string(text) != text
