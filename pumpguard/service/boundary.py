"""Translation of provider failures into the typed error taxonomy.

This is the only module that inspects raw error text. The identity provider
and profile store adapters call ``translate_response`` for non-2xx HTTP
replies; ``translate_error`` handles anything else that escapes a remote
call (transport failures, foreign exceptions raised by injected callables).
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from pumpguard.service.errors import (
    AuthError,
    InvalidCredentialsError,
    RateLimitedError,
    ServiceUnavailableError,
    TransientBackendError,
    UnauthenticatedError,
    UnconfirmedIdentityError,
    UnknownAuthError,
    WeakPasswordError,
)

# Markers of the post-handshake race: the edge answers 404 until the new
# credential has propagated ("cpt1::" prefixes the edge's request ids).
TRANSIENT_TOKENS = ("404", "NOT_FOUND", "cpt1::")

NETWORK_ERROR_MESSAGE = "Network error. Please check your internet connection and try again."
SAME_PASSWORD_MESSAGE = "New password must be different from your current password."


def _contains(haystack: str, *needles: str) -> bool:
    lowered = haystack.lower()
    return any(needle.lower() in lowered for needle in needles)


def extract_message(payload: Any) -> str:
    """Pull the human-readable message out of a GoTrue/PostgREST error body."""
    if isinstance(payload, dict):
        for key in ("msg", "message", "error_description", "error", "hint"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(payload, str):
        return payload
    return ""


def classify_message(
    message: str,
    *,
    status: Optional[int] = None,
    code: Optional[str] = None,
) -> AuthError:
    code = (code or "").lower()
    text = message or ""

    if status == 404 or any(token in text for token in TRANSIENT_TOKENS):
        return TransientBackendError(text or None, status_code=status)
    if code == "invalid_credentials" or _contains(text, "invalid login credentials"):
        return InvalidCredentialsError(status_code=status)
    if code == "email_not_confirmed" or _contains(text, "email not confirmed"):
        return UnconfirmedIdentityError(status_code=status)
    if (
        status == 429
        or "rate_limit" in code
        or _contains(text, "rate limit", "too many requests")
    ):
        return RateLimitedError(status_code=status)
    if code == "same_password" or _contains(text, "password should be different"):
        return WeakPasswordError(SAME_PASSWORD_MESSAGE, status_code=status)
    if code == "weak_password" or _contains(text, "weak_password", "password should be"):
        return WeakPasswordError(status_code=status)
    if (
        status in (401, 403)
        or code in ("otp_expired", "bad_jwt", "session_not_found", "refresh_token_not_found")
        or _contains(text, "jwt expired", "invalid refresh token", "refresh token not found")
    ):
        return UnauthenticatedError(text or None, status_code=status)
    if status is not None and status >= 500:
        return ServiceUnavailableError(status_code=status, detail={"original_message": text})
    return UnknownAuthError(text or None, status_code=status, original_message=text)


def translate_response(response: httpx.Response) -> AuthError:
    try:
        payload = response.json()
    except ValueError:
        payload = response.text
    code = None
    if isinstance(payload, dict):
        raw_code = payload.get("error_code") or payload.get("code")
        code = raw_code if isinstance(raw_code, str) else None
    return classify_message(extract_message(payload), status=response.status_code, code=code)


def translate_error(exc: BaseException) -> AuthError:
    if isinstance(exc, AuthError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return translate_response(exc.response)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ServiceUnavailableError(NETWORK_ERROR_MESSAGE, detail={"original_message": str(exc)})
    return classify_message(str(exc))


def is_transient(exc: BaseException) -> bool:
    return isinstance(translate_error(exc), TransientBackendError)


__all__ = [
    "NETWORK_ERROR_MESSAGE",
    "SAME_PASSWORD_MESSAGE",
    "TRANSIENT_TOKENS",
    "classify_message",
    "extract_message",
    "is_transient",
    "translate_error",
    "translate_response",
]
