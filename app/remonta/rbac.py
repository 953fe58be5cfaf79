from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.remonta.models import User


def _current_user() -> User | None:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        return None
    return user


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def user_has_role(user: User | None, *role_keys: str) -> bool:
    if not user or not user.is_active:
        return False
    return any(r.key in role_keys for r in user.roles)


def _unauthenticated():
    return jsonify({"error": "Unauthorized"}), 401


def _forbidden(message: str = "Forbidden"):
    return jsonify({"error": message}), 403


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if _current_user() is None:
            return _unauthenticated()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = _current_user()
            # Unauthenticated -> 401 (JSON API, no login redirect)
            if user is None:
                return _unauthenticated()
            # Authenticated but unauthorized -> 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return _forbidden()
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_role(*role_keys: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = _current_user()
            if user is None:
                return _unauthenticated()
            if not user_has_role(user, *role_keys):
                return _forbidden(f"Requires role: {', '.join(role_keys)}")
            return fn(*args, **kwargs)

        return wrapped

    return decorator
