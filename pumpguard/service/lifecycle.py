from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, Optional

from pumpguard.config import DEFAULT_ADMIN_EMAIL_PATTERNS
from pumpguard.logging import (
    get_logger,
    hash_identity,
    sanitize_error_message,
    set_correlation_id,
)
from pumpguard.service.boundary import NETWORK_ERROR_MESSAGE, SAME_PASSWORD_MESSAGE
from pumpguard.service.coordinator import AuthEventCoordinator
from pumpguard.service.errors import (
    AdminRestrictedError,
    AuthError,
    IncorrectCredentialError,
    InvalidCredentialsError,
    RateLimitedError,
    ServiceUnavailableError,
    UnauthenticatedError,
    UnconfirmedIdentityError,
    UnknownAuthError,
    ValidationError,
    WeakPasswordError,
)
from pumpguard.service.guards import ManualLogoutFlag
from pumpguard.service.identity import IdentityProvider
from pumpguard.service.password_policy import PasswordPolicy
from pumpguard.service.profiles import ProfileLoader
from pumpguard.service.rate_limiter import RateLimiter, rate_key
from pumpguard.service.refresh import RefreshLedger
from pumpguard.service.ui import Navigator, Notifier
from pumpguard.storage.models import (
    OperationResult,
    ProviderSession,
    SessionRecord,
    UserProfile,
    utc_now_iso,
)
from pumpguard.storage.session_store import OfflineIdentityHints, SessionStore

logger = get_logger(__name__)

EMAIL_SHAPE = re.compile(r"\S+@\S+\.\S+")
PHONE_SHAPE = re.compile(r"^[\d\s\-\+\(\)]{10,20}$")
MIN_NAME_LENGTH = 2

SUPPORT_CONTACT = "support@pumpguard.app"
UNEXPECTED_MESSAGE = f"An unexpected error occurred. Please try again or contact {SUPPORT_CONTACT}"
INVALID_RESET_LINK_MESSAGE = (
    "Invalid or expired reset link. The link may have been used already or has expired. "
    "Please request a new password reset."
)
GENERIC_RESET_MESSAGE = (
    "If an account exists with this email, you will receive reset instructions shortly."
)


class SessionPhase(str, Enum):
    """What the host UI may render.

    Protected views render only in ``AUTHENTICATED``. ``LOGGING_OUT`` is
    entered the moment logout starts and is left only by a successful login,
    so nothing authenticated is painted between logout intent and the hard
    navigation to the login surface.
    """

    LOADING = "loading"
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    LOGGING_OUT = "logging_out"


@dataclass(frozen=True)
class AuthState:
    phase: SessionPhase
    user: Optional[UserProfile]
    is_authenticated: bool
    is_loading: bool
    is_data_loading: bool
    is_data_stale: bool
    error: Optional[str]


def _ok(message: str) -> OperationResult:
    return OperationResult(success=True, message=message)


def _fail(message: str, error_code: str = "unknown") -> OperationResult:
    return OperationResult(success=False, message=message, error_code=error_code)


def _fail_from(exc: AuthError, fallback: str) -> OperationResult:
    if isinstance(exc, UnknownAuthError):
        # Raw provider text; strip anything that looks like internals
        message = sanitize_error_message(exc.message) if exc.message else fallback
        return _fail(message, exc.error_code)
    return _fail(exc.message or fallback, exc.error_code)


class SessionLifecycleAPI:
    """Public session surface used by the dashboard.

    ``login`` raises ``AuthError`` subclasses for the caller to catch; every
    other operation returns an ``OperationResult`` and never raises.
    """

    def __init__(
        self,
        store: SessionStore,
        identity: IdentityProvider,
        loader: ProfileLoader,
        coordinator: AuthEventCoordinator,
        rate_limiter: RateLimiter,
        manual_logout: ManualLogoutFlag,
        hints: OfflineIdentityHints,
        ledger: RefreshLedger,
        navigator: Navigator,
        notifier: Notifier,
        *,
        policy: Optional[PasswordPolicy] = None,
        admin_email_patterns: Iterable[str] = DEFAULT_ADMIN_EMAIL_PATTERNS,
        login_path: str = "/login",
        reset_redirect_url: str = "https://app.pumpguard.com/auth/reset-password",
        admin_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.identity = identity
        self.loader = loader
        self.coordinator = coordinator
        self.rate_limiter = rate_limiter
        self.manual_logout = manual_logout
        self.hints = hints
        self.ledger = ledger
        self.navigator = navigator
        self.notifier = notifier
        self.policy = policy or PasswordPolicy()
        self.admin_patterns = [re.compile(p, re.IGNORECASE) for p in admin_email_patterns]
        self.login_path = login_path
        self.reset_redirect_url = reset_redirect_url
        self.admin_delay = admin_delay
        self._sleep = sleep

        self.error: Optional[str] = None
        self.is_data_loading = False
        self.is_data_stale = False
        self._login_in_flight = False
        self._refresh_in_flight = False
        self._logging_out = False

    # ---- read model -------------------------------------------------

    @property
    def user(self) -> Optional[UserProfile]:
        if self._logging_out:
            return None
        return self.store.user

    @property
    def is_authenticated(self) -> bool:
        record = self.store.get()
        return bool(record and record.is_authenticated and not self._logging_out)

    @property
    def is_loading(self) -> bool:
        return self.coordinator.is_loading or self._login_in_flight

    @property
    def phase(self) -> SessionPhase:
        if self._logging_out:
            return SessionPhase.LOGGING_OUT
        if self.coordinator.is_loading:
            return SessionPhase.LOADING
        if self.is_authenticated:
            return SessionPhase.AUTHENTICATED
        return SessionPhase.ANONYMOUS

    def snapshot(self) -> AuthState:
        return AuthState(
            phase=self.phase,
            user=self.user,
            is_authenticated=self.is_authenticated,
            is_loading=self.is_loading,
            is_data_loading=self.is_data_loading,
            is_data_stale=self.is_data_stale,
            error=self.error,
        )

    def clear_error(self) -> None:
        self.error = None

    def is_admin_email(self, email: Optional[str]) -> bool:
        if not email:
            return False
        candidate = email.strip().lower()
        return any(pattern.search(candidate) for pattern in self.admin_patterns)

    # ---- login / logout ---------------------------------------------

    async def login(self, email: str, password: str) -> SessionRecord:
        set_correlation_id()
        self.clear_error()
        identity = (email or "").strip().lower()
        limiter_key = rate_key("login", identity)
        self._login_in_flight = True
        try:
            if not self.rate_limiter.check(limiter_key):
                raise RateLimitedError("Too many login attempts. Please try again in 15 minutes.")

            logger.info("login_attempt", email_hash=hash_identity(identity))
            try:
                session = await self.identity.authenticate(identity, password)
            except (InvalidCredentialsError, UnconfirmedIdentityError):
                raise
            except AuthError as exc:
                raise UnknownAuthError(
                    sanitize_error_message(exc.message),
                    status_code=exc.status_code,
                    original_message=exc.detail.get("original_message", exc.message),
                ) from exc

            try:
                user = await self.loader.load(session.user_id, session=session)
            except ValueError as exc:
                raise UnknownAuthError(
                    "Your profile could not be loaded. Please try again.",
                    original_message=str(exc),
                ) from exc

            record = SessionRecord.new(user, version=self.store.version)
            self.store.set(record)
            self._logging_out = False
            self.hints.remember(record, identity)
            self.rate_limiter.clear(limiter_key)
            logger.info("login_success", user_id=user.id, role=user.role)
            self.notifier.notify("Login Successful", f"Welcome back, {user.display_name}!")
            return record
        except AuthError as exc:
            logger.warning(
                "login_failed",
                email_hash=hash_identity(identity),
                error_code=exc.error_code,
            )
            self.error = exc.message
            raise
        finally:
            self._login_in_flight = False

    async def logout(self) -> None:
        """Tear the session down and hard-navigate to the login surface.

        The manual-logout flag goes up before any other step so the
        provider's SIGNED_OUT notification is recognised as ours.
        """
        set_correlation_id()
        self.manual_logout.set()
        self._logging_out = True
        record = self.store.get()
        email = record.user.email if record else None
        email = email or self.hints.email()

        self.store.set(None)
        self.hints.clear()
        self.ledger.clear()
        if email:
            self.rate_limiter.clear_identity(email)

        try:
            await self.identity.sign_out()
        except Exception as exc:
            logger.warning("logout_sign_out_failed", error=str(exc), error_type=type(exc).__name__)

        logger.info("logout_complete", user_id=record.user.id if record else None)
        self.notifier.notify("Logged Out", "You have been successfully logged out.", duration=2.0)
        self.navigator.navigate(self.login_path, hard=True)

    # ---- password flows ---------------------------------------------

    async def forgot_password(self, email: str) -> OperationResult:
        set_correlation_id()
        identity = (email or "").strip().lower()
        if not identity or not EMAIL_SHAPE.search(identity):
            return _fail("Please enter a valid email address.", ValidationError.error_code)

        limiter_key = rate_key("forgot_password", identity)
        if not self.rate_limiter.check(limiter_key):
            return _fail(
                "Too many password reset attempts. Please try again in 15 minutes.",
                RateLimitedError.error_code,
            )

        if self.is_admin_email(identity):
            # Privileged accounts are reset out-of-band; answer like the normal flow
            logger.info("forgot_password_admin_suppressed", email_hash=hash_identity(identity))
            await self._sleep(self.admin_delay)
            return _ok(GENERIC_RESET_MESSAGE)

        try:
            await self.identity.request_password_reset(identity, self.reset_redirect_url)
        except UnconfirmedIdentityError as exc:
            return _fail(
                "Please confirm your email address before resetting password.", exc.error_code
            )
        except RateLimitedError as exc:
            return _fail("Too many reset attempts. Please try again later.", exc.error_code)
        except ServiceUnavailableError as exc:
            if exc.status_code is None:
                return _fail(NETWORK_ERROR_MESSAGE, exc.error_code)
            logger.error("forgot_password_service_down", status_code=exc.status_code)
            return _fail(
                "Password reset service is temporarily unavailable. "
                f"Please contact {SUPPORT_CONTACT}",
                exc.error_code,
            )
        except AuthError as exc:
            logger.warning("forgot_password_failed", error_code=exc.error_code)
            return _fail_from(exc, "Failed to send reset instructions. Please try again later.")
        except Exception as exc:
            logger.error("forgot_password_unexpected", error=str(exc), error_type=type(exc).__name__)
            return _fail(UNEXPECTED_MESSAGE)

        self.rate_limiter.clear(limiter_key)
        logger.info("forgot_password_sent", email_hash=hash_identity(identity))
        return _ok(
            "Password reset instructions have been sent to your email. "
            "Please check your inbox and spam folder."
        )

    async def _resolve_reset_session(
        self, token: Optional[str]
    ) -> ProviderSession | OperationResult:
        if token:
            try:
                return await self.identity.verify_recovery_token(token)
            except AuthError as exc:
                logger.warning("reset_token_rejected", error_code=exc.error_code)
                return _fail(INVALID_RESET_LINK_MESSAGE, UnauthenticatedError.error_code)
        try:
            ambient = await self.identity.get_ambient_session()
        except AuthError as exc:
            logger.error("reset_session_error", error_code=exc.error_code)
            return _fail("Session error. Please try the reset link again.", exc.error_code)
        if ambient is None:
            return _fail(INVALID_RESET_LINK_MESSAGE, UnauthenticatedError.error_code)
        return ambient

    async def _forced_sign_out(self) -> None:
        self.manual_logout.set()
        self.store.set(None)
        try:
            await self.identity.sign_out()
        except Exception as exc:
            logger.warning("forced_sign_out_failed", error=str(exc), error_type=type(exc).__name__)

    async def _stamp_password_change(self, user_id: str) -> None:
        now = utc_now_iso()
        try:
            await self.loader.write(user_id, {"password_changed_at": now, "updated_at": now})
        except Exception as exc:
            logger.warning("password_timestamp_failed", user_id=user_id, error=str(exc))

    async def reset_password(
        self, new_password: str, token: Optional[str] = None
    ) -> OperationResult:
        """Set a new password from a recovery token or the link's ambient session."""
        set_correlation_id()
        check = self.policy.validate(new_password)
        if not check.valid:
            return _fail(check.reason or WeakPasswordError.default_message, WeakPasswordError.error_code)

        try:
            resolved = await self._resolve_reset_session(token)
            if isinstance(resolved, OperationResult):
                return resolved
            session = resolved

            subject = (session.email or session.user_id).strip().lower()
            limiter_key = rate_key("password_reset", subject)
            if not self.rate_limiter.check(limiter_key):
                return _fail(
                    "Too many password reset attempts. Please try again in 15 minutes.",
                    RateLimitedError.error_code,
                )

            if self.is_admin_email(session.email):
                logger.warning("reset_password_admin_refused", user_id=session.user_id)
                await self._forced_sign_out()
                restricted = AdminRestrictedError()
                return _fail(restricted.message, restricted.error_code)

            try:
                await self.identity.update_credential(new_password)
            except WeakPasswordError as exc:
                return _fail(exc.message, exc.error_code)
            except UnauthenticatedError as exc:
                return _fail(
                    "Reset link has expired. Please request a new password reset.",
                    exc.error_code,
                )
            except AuthError as exc:
                logger.error("reset_password_update_failed", error_code=exc.error_code)
                return _fail_from(exc, "Failed to update password. Please try again.")

            await self._stamp_password_change(session.user_id)
            await self._forced_sign_out()
            self.rate_limiter.clear(limiter_key)
            logger.info("reset_password_success", user_id=session.user_id)
            return _ok(
                "Password has been reset successfully! "
                "You can now log in with your new password."
            )
        except Exception as exc:
            logger.error("reset_password_unexpected", error=str(exc), error_type=type(exc).__name__)
            return _fail(UNEXPECTED_MESSAGE)

    async def change_password(self, current_password: str, new_password: str) -> OperationResult:
        set_correlation_id()
        record = self.store.get()
        if record is None or not record.user.email:
            return _fail(
                "You must be logged in to change your password.",
                UnauthenticatedError.error_code,
            )
        check = self.policy.validate(new_password)
        if not check.valid:
            return _fail(check.reason or WeakPasswordError.default_message, WeakPasswordError.error_code)
        if current_password == new_password:
            return _fail(SAME_PASSWORD_MESSAGE, WeakPasswordError.error_code)

        user = record.user
        try:
            try:
                await self.identity.authenticate(user.email, current_password)
            except InvalidCredentialsError as exc:
                incorrect = IncorrectCredentialError(status_code=exc.status_code)
                return _fail(incorrect.message, incorrect.error_code)
            except AuthError as exc:
                return _fail_from(exc, "Authentication failed. Please try again.")

            try:
                await self.identity.update_credential(new_password)
            except AuthError as exc:
                logger.error("change_password_update_failed", error_code=exc.error_code)
                return _fail_from(exc, "Failed to change password. Please try again.")

            await self._stamp_password_change(user.id)
            logger.info("change_password_success", user_id=user.id)
            self.notifier.notify("Password Changed", "Your password has been updated successfully.")
            await self.refresh_data()
            return _ok("Password changed successfully!")
        except Exception as exc:
            logger.error("change_password_unexpected", error=str(exc), error_type=type(exc).__name__)
            self.notifier.notify(
                "Error", "Failed to change password. Please try again.", variant="destructive"
            )
            return _fail(str(exc) or "An unexpected error occurred. Please try again.")

    # ---- profile -----------------------------------------------------

    async def update_profile(
        self,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> OperationResult:
        """Write the supplied profile fields; ``phone=""`` clears the number."""
        set_correlation_id()
        record = self.store.get()
        if record is None:
            return _fail(
                "You must be logged in to update your profile.",
                UnauthenticatedError.error_code,
            )

        updates: Dict[str, Optional[str]] = {}
        new_name = name if name is not None else full_name
        if new_name is not None:
            trimmed = new_name.strip()
            if len(trimmed) < MIN_NAME_LENGTH:
                return _fail("Name must be at least 2 characters long.", ValidationError.error_code)
            updates["full_name"] = trimmed
        if phone is not None:
            trimmed_phone = phone.strip()
            if trimmed_phone and not PHONE_SHAPE.match(trimmed_phone):
                return _fail("Please enter a valid phone number.", ValidationError.error_code)
            updates["phone"] = trimmed_phone or None
        if not updates:
            return _fail("No changes to update.", ValidationError.error_code)
        updates["updated_at"] = utc_now_iso()

        try:
            await self.loader.write(record.user.id, updates)
        except Exception as exc:
            logger.error("update_profile_failed", user_id=record.user.id, error=str(exc))
            self.notifier.notify("Error", "Failed to update profile.", variant="destructive")
            if isinstance(exc, AuthError):
                return _fail_from(exc, "Failed to update profile. Please try again.")
            return _fail("Failed to update profile. Please try again.")

        await self.refresh_data()
        self.notifier.notify("Profile Updated", "Your profile has been updated successfully.")
        return _ok("Profile updated successfully!")

    async def refresh_data(self) -> bool:
        """Re-read the profile; returns False when no fetch was issued.

        Overlapping calls are collapsed by a single-flight flag. The record
        is replaced only when the fetched profile differs from the cached
        one; otherwise only ``last_active_at`` moves. Failures mark the data
        stale and never end the session.
        """
        if self._refresh_in_flight:
            logger.debug("refresh_data_in_flight")
            return False
        record = self.store.get()
        if record is None:
            return False

        self._refresh_in_flight = True
        self.is_data_loading = True
        try:
            fresh = await self.loader.load(record.user.id)
        except Exception as exc:
            logger.warning(
                "refresh_data_failed",
                user_id=record.user.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.is_data_stale = True
        else:

            def _merge(current: Optional[SessionRecord]) -> Optional[SessionRecord]:
                if current is None or current.user.id != fresh.id:
                    return current
                if _profile_json(current.user) != _profile_json(fresh):
                    return current.with_user(fresh)
                return current.touched()

            if self.store.get() is not None:
                self.store.update(_merge)
            self.is_data_stale = False
        finally:
            self._refresh_in_flight = False
            self.is_data_loading = False
        return True


def _profile_json(profile: UserProfile) -> str:
    return json.dumps(profile.to_dict(), sort_keys=True, default=str)


__all__ = [
    "AuthState",
    "SessionLifecycleAPI",
    "SessionPhase",
]
