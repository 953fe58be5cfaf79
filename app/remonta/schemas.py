"""
Shared pydantic plumbing for JSON request bodies.

Clients send camelCase keys; models accept either camelCase or snake_case.
"""
from __future__ import annotations

from flask import jsonify
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from app.remonta.utils import is_valid_au_mobile, normalize_au_mobile, password_problems


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


def check_au_mobile(value: str) -> str:
    if not is_valid_au_mobile(value):
        raise ValueError("Please enter a valid Australian mobile number (e.g. 0412 345 678).")
    return normalize_au_mobile(value)


def check_password(value: str) -> str:
    problems = password_problems(value)
    if problems:
        raise ValueError(" ".join(problems))
    return value


def validation_error_details(exc: ValidationError) -> dict[str, str]:
    details: dict[str, str] = {}
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc") or ()) or "body"
        msg = str(err.get("msg") or "Invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        details.setdefault(field, msg)
    return details


def validation_failed(exc: ValidationError):
    return jsonify({"error": "Validation failed", "details": validation_error_details(exc)}), 400

