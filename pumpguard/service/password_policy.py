from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

MIN_PASSWORD_LENGTH = 8
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "12345678", "123456789", "password123",
        "admin", "admin123", "qwerty", "letmein", "welcome",
        "monkey", "dragon", "baseball", "football", "jesus",
        "master", "hello", "freedom", "whatever", "qazwsx",
        # Variants that satisfy every composition rule but are still guessed first
        "password1!", "password123!", "p@ssw0rd", "p@ssword1", "welcome1!",
        "welcome123!", "admin@123", "admin123!", "qwerty123!", "letmein1!",
        "pumpguard1!", "pumpguard123!",
    }
)


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    reason: Optional[str] = None
    rule: Optional[str] = None


_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

# (rule name, predicate that passes, rejection reason); evaluated in order
_RULES: list[tuple[str, Callable[[str], bool], str]] = [
    (
        "min_length",
        lambda pw: len(pw) >= MIN_PASSWORD_LENGTH,
        f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
    ),
    (
        "uppercase",
        lambda pw: re.search(r"[A-Z]", pw) is not None,
        "Password must contain at least one uppercase letter",
    ),
    (
        "lowercase",
        lambda pw: re.search(r"[a-z]", pw) is not None,
        "Password must contain at least one lowercase letter",
    ),
    (
        "digit",
        lambda pw: re.search(r"[0-9]", pw) is not None,
        "Password must contain at least one number",
    ),
    (
        "special",
        lambda pw: _SPECIAL_RE.search(pw) is not None,
        "Password must contain at least one special character",
    ),
    (
        "common",
        lambda pw: pw.lower() not in COMMON_PASSWORDS,
        "Password is too common. Please choose a stronger password.",
    ),
]


class PasswordPolicy:
    """Stateless strength check; the first failing rule wins."""

    rules = tuple(name for name, _, _ in _RULES)

    def validate(self, password: Optional[str]) -> PasswordCheck:
        candidate = password or ""
        for name, passes, reason in _RULES:
            if not passes(candidate):
                return PasswordCheck(valid=False, reason=reason, rule=name)
        return PasswordCheck(valid=True)


__all__ = [
    "COMMON_PASSWORDS",
    "MIN_PASSWORD_LENGTH",
    "SPECIAL_CHARACTERS",
    "PasswordCheck",
    "PasswordPolicy",
]
