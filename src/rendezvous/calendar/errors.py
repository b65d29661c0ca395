"""Typed errors raised across the calendar engine boundaries."""

from __future__ import annotations

import enum
import re
from typing import Any

import httpx

from rendezvous.calendar.models import Provider

_MAX_ERROR_LENGTH = 200


class ProviderErrorKind(enum.StrEnum):
    AUTH_EXPIRED = "auth_expired"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    NETWORK_TIMEOUT = "network_timeout"
    UNKNOWN = "unknown"


class CalendarSyncError(RuntimeError):
    """Base error for the calendar engine."""


class ProviderError(CalendarSyncError):
    """A provider fetch failed; recorded against that provider only."""

    kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN

    def __init__(self, provider: Provider | str, message: str) -> None:
        self.provider = Provider(provider)
        self.message = sanitize_error_message(message)
        super().__init__(f"{self.provider.value}: {self.message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "kind": self.kind.value,
            "error": self.message,
            "error_type": type(self).__name__,
        }


class AuthExpiredError(ProviderError):
    """Credential is missing, revoked, or could not be refreshed; user must re-authenticate."""

    kind = ProviderErrorKind.AUTH_EXPIRED


class PermissionDeniedError(ProviderError):
    kind = ProviderErrorKind.PERMISSION_DENIED


class RateLimitedError(ProviderError):
    kind = ProviderErrorKind.RATE_LIMITED

    def __init__(
        self, provider: Provider | str, message: str, *, retry_after: float | None = None
    ) -> None:
        super().__init__(provider, message)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        return payload


class NetworkTimeoutError(ProviderError):
    kind = ProviderErrorKind.NETWORK_TIMEOUT


class ProviderUnavailableError(ProviderError):
    """Any other provider failure (5xx, malformed payloads, unexpected errors)."""

    kind = ProviderErrorKind.UNKNOWN


class ParseError(CalendarSyncError):
    """A single raw event could not be normalized; the event is skipped."""

    def __init__(
        self, provider: Provider | str, message: str, *, provider_event_id: str | None = None
    ) -> None:
        self.provider = Provider(provider)
        self.provider_event_id = provider_event_id
        super().__init__(message)


class SettingsNotFoundError(CalendarSyncError):
    """The user has no calendar settings record."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No calendar settings found for user {user_id!r}")


# ---------------------------------------------------------------------------
# Message sanitization
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|token|code"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact, collapse whitespace, and truncate a message that crosses a boundary."""
    return " ".join(redact_credential_values(message).split())[:_MAX_ERROR_LENGTH]


def safe_response_error_message(response: httpx.Response) -> str:
    """Extract a short error message from a provider error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error_payload}: {description}")
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _google_error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return set()
    errors = payload["error"].get("errors")
    if not isinstance(errors, list):
        return set()
    return {
        item["reason"]
        for item in errors
        if isinstance(item, dict) and isinstance(item.get("reason"), str)
    }


_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


def error_for_response(provider: Provider, response: httpx.Response) -> ProviderError:
    """Map a non-2xx provider response onto the typed error taxonomy."""
    message = f"request failed ({response.status_code}): {safe_response_error_message(response)}"
    status = response.status_code
    if status == 401:
        return AuthExpiredError(provider, message)
    if status == 429 or (status == 403 and _google_error_reasons(response) & _RATE_LIMIT_REASONS):
        return RateLimitedError(
            provider,
            message,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 403:
        return PermissionDeniedError(provider, message)
    if status in (408, 504):
        return NetworkTimeoutError(provider, message)
    return ProviderUnavailableError(provider, message)
