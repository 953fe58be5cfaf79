from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any

from flask import jsonify, make_response

from app.remonta.audit import client_ip


@dataclass(frozen=True)
class RateLimit:
    name: str
    limit: int
    window_seconds: int


# Sliding windows, per client IP.
PUBLIC_API = RateLimit("public", 100, 60)
STRICT_API = RateLimit("strict", 30, 60)
DB_WRITE = RateLimit("db_write", 20, 60)
WEBHOOK = RateLimit("webhook", 10, 60)
LOGIN = RateLimit("login", 5, 300)

_hits: dict[tuple[str, str], list[datetime]] = {}
_windows: dict[str, int] = {}
_lock = threading.Lock()
_last_sweep = datetime.min

SWEEP_INTERVAL = timedelta(seconds=60)


def _sweep(now: datetime) -> None:
    """Drop buckets whose hits have all aged out so idle clients don't accumulate."""
    for k in list(_hits):
        cutoff = now - timedelta(seconds=_windows.get(k[0], 0))
        bucket = [t for t in _hits[k] if t > cutoff]
        if bucket:
            _hits[k] = bucket
        else:
            del _hits[k]


def check(rule: RateLimit, key: str) -> tuple[bool, int]:
    """
    Record a hit and return (allowed, remaining). Rejected hits are not recorded.
    """
    global _last_sweep
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=rule.window_seconds)
    with _lock:
        _windows[rule.name] = rule.window_seconds
        if now - _last_sweep >= SWEEP_INTERVAL:
            _sweep(now)
            _last_sweep = now
        bucket = [t for t in _hits.get((rule.name, key), ()) if t > cutoff]
        if len(bucket) >= rule.limit:
            _hits[(rule.name, key)] = bucket
            return False, 0
        bucket.append(now)
        _hits[(rule.name, key)] = bucket
        return True, rule.limit - len(bucket)


def tracked_keys() -> int:
    with _lock:
        return len(_hits)


def reset(rule: RateLimit | None = None, key: str | None = None) -> None:
    with _lock:
        if rule is None:
            _hits.clear()
            return
        for k in list(_hits):
            if k[0] == rule.name and (key is None or k[1] == key):
                del _hits[k]


def rate_limited(rule: RateLimit) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            allowed, remaining = check(rule, client_ip() or "unknown")
            if not allowed:
                resp = make_response(jsonify({"error": "Too many requests. Please try again later."}), 429)
                resp.headers["Retry-After"] = str(rule.window_seconds)
                resp.headers["X-RateLimit-Limit"] = str(rule.limit)
                resp.headers["X-RateLimit-Remaining"] = "0"
                return resp
            resp = make_response(fn(*args, **kwargs))
            resp.headers["X-RateLimit-Limit"] = str(rule.limit)
            resp.headers["X-RateLimit-Remaining"] = str(remaining)
            return resp

        return wrapped

    return decorator
