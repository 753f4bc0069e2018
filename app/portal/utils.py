from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from flask import request

from app.portal.errors import ApiError

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def slugify(title: str) -> str:
    """Lowercase; runs of non-alphanumerics become one hyphen; no edge hyphens."""
    return _NON_ALNUM.sub("-", (title or "").lower()).strip("-")


def is_valid_email(value: str | None) -> bool:
    return isinstance(value, str) and bool(_EMAIL.match(value.strip()))


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    return date.fromisoformat(s[:10])


def parse_datetime(s: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = (dt - dt.utcoffset()).replace(tzinfo=None)
    return dt


def parse_hours(value: Any, field: str = "hours") -> float | None:
    if value is None or value == "":
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} must be a number", 400)
    if hours < 0:
        raise ApiError(f"{field} cannot be negative", 400)
    return hours




def parse_id(value: Any, field: str) -> int | None:
    """Optional integer id from a JSON body; anything else is a 400."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ApiError(f"{field} must be an integer id", 400)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} must be an integer id", 400)


def text_field(payload: dict[str, Any], key: str) -> str:
    """Stripped string value; missing or non-string values read as empty."""
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ""
