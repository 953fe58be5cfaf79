from __future__ import annotations

import uuid
from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.remonta import ratelimit
from app.remonta.audit import client_ip, record_event
from app.remonta.db import db_session
from app.remonta.models import User
from app.remonta.modules.accounts import service as accounts
from app.remonta.modules.notifications import email as mailer
from app.remonta.rbac import require_login
from app.remonta.security import ensure_csrf_token
from app.remonta.utils import json_body, normalize_email, password_problems

bp = Blueprint("auth", __name__)

DASHBOARD_PATHS = {
    "admin": "/admin",
    "coordinator": "/dashboard/coordinator",
    "client": "/dashboard/client",
    "worker": "/dashboard/worker",
}


def dashboard_path(user: User) -> str:
    keys = set(user.role_keys)
    for role, path in DASHBOARD_PATHS.items():
        if role in keys:
            return path
    return "/"


def user_payload(user: User) -> dict:
    out = {
        "id": user.id,
        "email": user.email,
        "roles": user.role_keys,
        "status": user.status,
        "emailVerified": user.email_verified_at is not None,
        "dashboard": dashboard_path(user),
    }
    impersonator_id = session.get("impersonator_id")
    if impersonator_id:
        out["impersonatedBy"] = impersonator_id
    return out


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    While an admin impersonates someone, g.current_user is the target and g.real_user the admin.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    g.real_user = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.clear()
            g.current_user = None
            return
        g.current_user = user
        impersonator_id = session.get("impersonator_id")
        if impersonator_id:
            admin = s.get(User, int(impersonator_id))
            if not admin or not admin.is_active or "admin" not in admin.role_keys:
                # Impersonation ends if the admin behind it lost access.
                session["user_id"] = impersonator_id
                session.pop("impersonator_id", None)
                g.current_user = admin if admin and admin.is_active else None
                return
            g.real_user = admin
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.clear()
        g.current_user = None


@bp.get("/csrf")
def csrf_token():
    return jsonify({"csrfToken": ensure_csrf_token()})


@bp.post("/login")
def login_post():
    data = json_body()
    email = normalize_email(data.get("email"))
    password = str(data.get("password") or "")
    ip = client_ip() or "unknown"

    allowed, _ = ratelimit.check(ratelimit.LOGIN, ip)
    if not allowed:
        resp = jsonify({"error": "Too many login attempts. Please wait 5 minutes."})
        resp.headers["Retry-After"] = str(ratelimit.LOGIN.window_seconds)
        return resp, 429

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return jsonify({"error": "Invalid email or password"}), 401

        session.clear()
        session["user_id"] = user.id
        ensure_csrf_token()
        ratelimit.reset(ratelimit.LOGIN, ip)
        user.last_login_at = datetime.utcnow()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return jsonify({"success": True, "user": user_payload(user)})
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "real_user", None) or getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return jsonify({"success": True})


@bp.get("/me")
@require_login
def me():
    return jsonify({"user": user_payload(g.current_user)})


@bp.post("/forgot-password")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def forgot_password():
    email = normalize_email(json_body().get("email"))
    # Same response whether or not the account exists.
    ok = jsonify({"success": True, "message": "If an account exists for that email, a reset link has been sent."})
    if not email:
        return ok
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user and user.is_active:
        token = accounts.issue_token(s, user, "password_reset")
        record_event(s, actor=user, action="auth.password_reset_requested", entity_type="User", entity_id=str(user.id))
        s.commit()
        mailer.send_password_reset(user.email, token)
    return ok


def _consume_token_and_set_password(purpose: str, action: str):
    data = json_body()
    raw = str(data.get("token") or "").strip()
    password = str(data.get("password") or "")
    if not raw:
        return jsonify({"error": "Token is required"}), 400
    problems = password_problems(password)
    if problems:
        return jsonify({"error": "Validation failed", "details": {"password": " ".join(problems)}}), 400

    s = db_session()
    tok = accounts.find_valid_token(s, raw, purpose)
    if tok is None:
        return jsonify({"error": "This link is invalid or has expired."}), 400
    user = s.get(User, tok.user_id)
    if user is None:
        return jsonify({"error": "This link is invalid or has expired."}), 400
    user.password_hash = generate_password_hash(password)
    tok.used_at = datetime.utcnow()
    if purpose == "password_setup" and user.email_verified_at is None:
        # The link was delivered to this address.
        user.email_verified_at = datetime.utcnow()
    record_event(s, actor=user, action=action, entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"success": True})


@bp.post("/reset-password")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def reset_password():
    return _consume_token_and_set_password("password_reset", "auth.password_reset")


@bp.post("/setup-password")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def setup_password():
    return _consume_token_and_set_password("password_setup", "auth.password_setup")


@bp.post("/verify-email")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def verify_email():
    data = json_body()
    email = normalize_email(data.get("email"))
    code = str(data.get("code") or "").strip()
    if not email or not code:
        return jsonify({"error": "Email and code are required"}), 400
    s = db_session()
    ok, error = accounts.check_code(s, "email", email, code)
    if not ok:
        s.commit()  # persist the attempt counter
        return jsonify({"error": error}), 400
    user = s.query(User).filter(User.email == email).one_or_none()
    newly_verified = user is not None and user.email_verified_at is None
    if newly_verified:
        user.email_verified_at = datetime.utcnow()
        record_event(s, actor=user, action="auth.email_verified", entity_type="User", entity_id=str(user.id))
    s.commit()
    if newly_verified:
        role = user.role_keys[0] if user.role_keys else "worker"
        mailer.send_welcome(user.email, first_name=accounts.first_name_for(s, user), role=role)
    return jsonify({"success": True, "verified": True})


@bp.post("/resend-verification")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def resend_verification():
    email = normalize_email(json_body().get("email"))
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none() if email else None
    if user is not None and user.email_verified_at is None:
        code = accounts.issue_code(s, "email", user.email)
        s.commit()
        mailer.send_verification_code(user.email, code)
    return jsonify({"success": True})
