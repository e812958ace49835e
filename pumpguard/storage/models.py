from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

SESSION_VERSION = "2.0.0"
SESSION_KEY = "pumpguard-session-v2"

USER_ROLES = frozenset(
    {"admin", "npa", "omc", "dealer", "station_manager", "attendant", "supervisor"}
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class UserProfile:
    """Denormalized profile row joined with the provider's identity."""

    id: str
    email: Optional[str] = None
    full_name: str = ""
    role: str = "attendant"
    phone: Optional[str] = None
    station_id: Optional[str] = None
    omc_id: Optional[str] = None
    dealer_id: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[str] = None
    password_changed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Columns this client does not model explicitly
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or self.id

    @classmethod
    def from_row(cls, row: Dict[str, Any], *, email: Optional[str] = None) -> "UserProfile":
        if not isinstance(row, dict) or not row.get("id"):
            raise ValueError("profile row must be a mapping with an id")
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {k: v for k, v in row.items() if k in known}
        extra = {k: v for k, v in row.items() if k not in known and k != "extra"}
        if isinstance(row.get("extra"), dict):
            extra = {**row["extra"], **extra}
        values["id"] = str(values["id"])
        if values.get("role") is None:
            values.pop("role", None)
        elif values["role"] not in USER_ROLES:
            raise ValueError(f"unknown profile role {values['role']!r}")
        if email:
            values["email"] = email
        return cls(**values, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SessionRecord:
    """The cached answer to "who is logged in" for this browsing session."""

    user: UserProfile
    logged_in_at: str
    last_active_at: str
    is_authenticated: bool = True
    version: str = SESSION_VERSION

    @classmethod
    def new(cls, user: UserProfile, *, version: str = SESSION_VERSION) -> "SessionRecord":
        now = utc_now_iso()
        return cls(
            user=user,
            logged_in_at=now,
            last_active_at=now,
            is_authenticated=True,
            version=version,
        )

    def touched(self) -> "SessionRecord":
        return replace(self, last_active_at=utc_now_iso())

    def with_user(self, user: UserProfile) -> "SessionRecord":
        return replace(self, user=user, last_active_at=utc_now_iso(), is_authenticated=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict(),
            "loggedInAt": self.logged_in_at,
            "lastActiveAt": self.last_active_at,
            "isAuthenticated": self.is_authenticated,
            "version": self.version,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("session record must be a JSON object")
        return cls(
            user=UserProfile.from_row(data["user"]),
            logged_in_at=data["loggedInAt"],
            last_active_at=data["lastActiveAt"],
            is_authenticated=bool(data.get("isAuthenticated", True)),
            version=str(data.get("version", "")),
        )


@dataclass(frozen=True)
class ProviderSession:
    """Session as issued by the identity provider."""

    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None


class AuthEventKind(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass(frozen=True)
class AuthEvent:
    # Plain string so unrecognized kinds from the provider still arrive
    kind: str
    session: Optional[ProviderSession] = None


@dataclass(frozen=True)
class OperationResult:
    success: bool
    message: str
    error_code: Optional[str] = None


__all__ = [
    "SESSION_KEY",
    "SESSION_VERSION",
    "USER_ROLES",
    "AuthEvent",
    "AuthEventKind",
    "OperationResult",
    "ProviderSession",
    "SessionRecord",
    "UserProfile",
    "utc_now_iso",
]
