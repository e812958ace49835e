from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for session lifecycle failures.

    Each subclass carries a stable ``error_code`` and a user-facing default
    message. Provider errors are translated into these classes at the
    boundary adapter; nothing past that boundary inspects raw messages.

    - invalid_credentials
    - incorrect_credential
    - unconfirmed_identity
    - rate_limited
    - weak_password
    - admin_restricted
    - transient_backend (absorbed by RetryableCall)
    - service_unavailable
    - unauthenticated
    - validation_error
    - unknown
    """

    error_code: str = "unknown"
    default_message: str = "An unexpected error occurred. Please try again."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}
        self.status_code = status_code


class InvalidCredentialsError(AuthError):
    error_code = "invalid_credentials"
    default_message = "Invalid email or password. Please check your credentials."


class IncorrectCredentialError(InvalidCredentialsError):
    """The current password supplied for a change-password did not match."""

    error_code = "incorrect_credential"
    default_message = "Current password is incorrect."


class UnconfirmedIdentityError(AuthError):
    error_code = "unconfirmed_identity"
    default_message = "Please verify your email address before logging in."


class RateLimitedError(AuthError):
    error_code = "rate_limited"
    default_message = "Too many attempts. Please try again in 15 minutes."


class WeakPasswordError(AuthError):
    error_code = "weak_password"
    default_message = "Password is too weak. Please choose a stronger password."


class AdminRestrictedError(AuthError):
    error_code = "admin_restricted"
    default_message = (
        "Admin password cannot be reset through this form. "
        "Please contact system administrator."
    )


class TransientBackendError(AuthError):
    """Credential exchange race: the fresh token is not yet visible to reads."""

    error_code = "transient_backend"
    default_message = "The service is catching up. Please retry."


class ServiceUnavailableError(AuthError):
    error_code = "service_unavailable"
    default_message = "The service is temporarily unavailable. Please try again later."


class UnauthenticatedError(AuthError):
    error_code = "unauthenticated"
    default_message = "You must be logged in to do that."


class ValidationError(AuthError):
    error_code = "validation_error"
    default_message = "The submitted data is invalid."


class UnknownAuthError(AuthError):
    """Fallback; keeps the provider's own message in ``detail``."""

    error_code = "unknown"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
        original_message: Optional[str] = None,
    ) -> None:
        detail = dict(detail or {})
        if original_message is not None:
            detail.setdefault("original_message", original_message)
        super().__init__(message, detail=detail, status_code=status_code)

    @property
    def original_message(self) -> Optional[str]:
        return self.detail.get("original_message")


__all__ = [
    "AuthError",
    "InvalidCredentialsError",
    "IncorrectCredentialError",
    "UnconfirmedIdentityError",
    "RateLimitedError",
    "WeakPasswordError",
    "AdminRestrictedError",
    "TransientBackendError",
    "ServiceUnavailableError",
    "UnauthenticatedError",
    "ValidationError",
    "UnknownAuthError",
]
