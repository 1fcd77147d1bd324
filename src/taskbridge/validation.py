# src/taskbridge/validation.py

"""Field validators shared by every entity write. All raise ValidationError."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from enum import StrEnum
from typing import Any

from .errors import ValidationError

TASK_NAME_MAX = 200
TASK_DESCRIPTION_MAX = 2000
PROJECT_NAME_MAX = 100
PROJECT_DESCRIPTION_MAX = 1000
USER_NAME_MAX = 100
USERNAME_MIN = 3
USERNAME_MAX = 50
EMAIL_MAX = 255
ROLE_MAX = 32

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def reject_unknown(data: Mapping[str, Any], allowed: Iterable[str], what: str) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValidationError(f"{what}: unexpected field(s) {', '.join(unknown)}")


def text(
    value: Any,
    field: str,
    *,
    min_len: int = 0,
    max_len: int = 1000,
) -> str:
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    s = value.strip()
    if len(s) < min_len:
        raise ValidationError(f"{field} is required" if min_len == 1 else f"{field} is too short")
    if len(s) > max_len:
        raise ValidationError(f"{field} must be at most {max_len} characters")
    return s


def optional_ref(value: Any, field: str) -> str | None:
    """Foreign-key-shaped field: None/'' mean 'unset'."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string id")
    s = value.strip()
    return s or None


def username(value: Any) -> str:
    s = text(value, "username", min_len=1, max_len=USERNAME_MAX)
    if len(s) < USERNAME_MIN or not USERNAME_RE.match(s):
        raise ValidationError(
            f"username must be {USERNAME_MIN}-{USERNAME_MAX} characters of letters, digits, _ or -"
        )
    return s.lower()


def email(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError("email must be a string")
    s = value.strip()
    if len(s) > EMAIL_MAX or not EMAIL_RE.match(s):
        raise ValidationError("email is not a valid address")
    return s


def color(value: Any) -> str:
    if not isinstance(value, str) or not HEX_COLOR_RE.match(value.strip()):
        raise ValidationError("invalid color; use 6-digit hex like #f06a6a")
    return value.strip().lower()


def due_date(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError("date must be an ISO date string")
    s = value.strip()
    try:
        if len(s) == 10:
            date.fromisoformat(s)
        else:
            datetime.fromisoformat(s)
    except ValueError as exc:
        raise ValidationError("invalid date format") from exc
    return s


def timestamp(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO timestamp")
    try:
        datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field} is not an ISO timestamp") from exc
    return value


def choice(value: Any, enum_cls: type[StrEnum], field: str) -> StrEnum:
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"invalid {field}; must be one of: {allowed}") from exc


def flag(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if value in (0, 1):
        return bool(value)
    raise ValidationError(f"{field} must be a boolean")


def role(value: Any) -> str:
    return text(value, "role", min_len=1, max_len=ROLE_MAX).lower()
