"""
Identity domain constants and simple helpers.

Why:
- Centralize allowed roles and the password policy to avoid drift between the
  accounts service and the web layer.
"""

from __future__ import annotations

import re

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({"student", "admin"})
DEFAULT_ROLE = "student"

PASSWORD_MIN_LENGTH = 8
_SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


def normalize_role(value: object) -> str:
    role = str(value or "").strip().lower()
    return role if role in ALLOWED_ROLES else DEFAULT_ROLE


def validate_password(password: str) -> bool:
    """Return True when the password meets the account policy.

    Policy: at least 8 characters with upper- and lowercase letters, a digit
    and a special character.
    """
    password = password or ""
    return (
        len(password) >= PASSWORD_MIN_LENGTH
        and re.search(r"[A-Z]", password) is not None
        and re.search(r"[a-z]", password) is not None
        and re.search(r"\d", password) is not None
        and _SPECIAL_RE.search(password) is not None
    )


__all__ = ["ALLOWED_ROLES", "DEFAULT_ROLE", "normalize_role", "validate_password"]
