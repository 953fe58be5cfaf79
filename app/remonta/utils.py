from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from flask import request

_AU_MOBILE_RE = re.compile(r"^(?:04\d{8}|614\d{8}|\+614\d{8})$")


def json_body() -> dict[str, Any]:
    """Request JSON as a dict; anything else (missing body, list, bad JSON) becomes {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def clean_str(value: Any, *, max_len: int | None = None) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if max_len is not None:
        s = s[:max_len]
    return s


def normalize_email(value: Any) -> str:
    return (str(value or "")).strip().lower()


def _strip_phone(value: str) -> str:
    return re.sub(r"[\s\-()]", "", value or "")


def is_valid_au_mobile(value: str | None) -> bool:
    """Australian mobiles only: 04XXXXXXXX, 614XXXXXXXX or +614XXXXXXXX (spaces/dashes ignored)."""
    return bool(_AU_MOBILE_RE.match(_strip_phone(value or "")))


def normalize_au_mobile(value: str) -> str:
    """Canonical local form (04XXXXXXXX). Raises ValueError for non-Australian mobiles."""
    raw = _strip_phone(value)
    if not _AU_MOBILE_RE.match(raw):
        raise ValueError("Please enter a valid Australian mobile number (e.g. 0412 345 678).")
    if raw.startswith("+61"):
        return "0" + raw[3:]
    if raw.startswith("61"):
        return "0" + raw[2:]
    return raw


def to_e164_au(value: str) -> str:
    """+614XXXXXXXX form for SMS providers."""
    return "+61" + normalize_au_mobile(value)[1:]


def password_problems(password: str) -> list[str]:
    problems: list[str] = []
    if len(password or "") < 8:
        problems.append("Password must be at least 8 characters.")
    if not re.search(r"[A-Z]", password or ""):
        problems.append("Password must contain an uppercase letter.")
    if not re.search(r"[a-z]", password or ""):
        problems.append("Password must contain a lowercase letter.")
    if not re.search(r"\d", password or ""):
        problems.append("Password must contain a number.")
    return problems


def parse_iso_date(s: Any) -> date | None:
    if s is None or s == "":
        return None
    if not isinstance(s, str):
        raise ValueError("Dates must be YYYY-MM-DD strings.")
    s = s.strip()
    if not s:
        return None
    # Accept full ISO timestamps from JS clients as well as YYYY-MM-DD.
    if "T" in s:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    return date.fromisoformat(s)


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def as_str_list(value: Any) -> list[str]:
    """Coerce a JSON list / comma-separated string into a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        return []
    return [str(v).strip() for v in items if v is not None and str(v).strip()]


def query_int(name: str, default: int, *, minimum: int = 1, maximum: int | None = None) -> int:
    raw = (request.args.get(name) or "").strip()
    try:
        v = int(raw) if raw else default
    except ValueError:
        v = default
    v = max(minimum, v)
    if maximum is not None:
        v = min(maximum, v)
    return v
