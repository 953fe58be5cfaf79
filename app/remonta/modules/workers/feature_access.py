"""
Worker feature gating by verification status.

BASIC features are always available to a logged-in worker, VERIFIED ones need an
approved verification, PREMIUM ones are reserved for subscriptions (never granted yet).
"""
from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.remonta.db import db_session
from app.remonta.modules.workers.models import WorkerProfile

BASIC = "BASIC"
VERIFIED = "VERIFIED"
PREMIUM = "PREMIUM"

FEATURE_REQUIREMENTS: dict[str, str] = {
    "view_dashboard": BASIC,
    "edit_profile": BASIC,
    "upload_documents": BASIC,
    "view_verification_status": BASIC,
    "search_clients": VERIFIED,
    "view_client_requests": VERIFIED,
    "accept_bookings": VERIFIED,
    "message_clients": VERIFIED,
    "public_profile": VERIFIED,
    "receive_notifications": VERIFIED,
    "priority_listings": PREMIUM,
    "advanced_search": PREMIUM,
    "analytics": PREMIUM,
}

_STATUS_MESSAGES: dict[str, tuple[str, str | None]] = {
    "NOT_STARTED": (
        "You haven't started the verification process yet. Upload your documents to get started.",
        "Upload required documents (Police Check, WWCC, NDIS Screening)",
    ),
    "IN_PROGRESS": (
        "Your documents are being prepared. Submit them for admin review when ready.",
        "Submit your documents for admin review",
    ),
    "PENDING_REVIEW": (
        "Your documents are under review. We'll notify you once the review is complete.",
        None,
    ),
    "APPROVED": ("Your profile is verified. All features are unlocked.", None),
    "REJECTED": (
        "Your verification was not approved. Review the notes and re-upload the affected documents.",
        "Re-upload rejected documents and submit again",
    ),
}


def can_access_feature(profile: WorkerProfile | None, feature: str) -> bool:
    level = FEATURE_REQUIREMENTS.get(feature)
    if level is None or profile is None:
        return False
    if level == BASIC:
        return True
    if level == VERIFIED:
        return profile.verification_status == "APPROVED"
    return False


def accessible_features(profile: WorkerProfile | None) -> list[str]:
    if profile is None:
        return []
    return [name for name in FEATURE_REQUIREMENTS if can_access_feature(profile, name)]


def verification_status_message(profile: WorkerProfile | None) -> dict[str, Any]:
    if profile is None:
        return {"status": "NOT_FOUND", "message": "Worker profile not found", "canAccessAdvancedFeatures": False}
    message, next_step = _STATUS_MESSAGES.get(profile.verification_status, ("Unknown verification status.", None))
    out: dict[str, Any] = {
        "status": profile.verification_status,
        "message": message,
        "canAccessAdvancedFeatures": profile.verification_status == "APPROVED",
    }
    if next_step:
        out["nextStep"] = next_step
    if profile.verification_notes and profile.verification_status == "REJECTED":
        out["notes"] = profile.verification_notes
    return out


def require_feature(feature: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = getattr(g, "current_user", None)
            if not user:
                return jsonify({"error": "Unauthorized"}), 401
            profile = db_session().query(WorkerProfile).filter(WorkerProfile.user_id == user.id).one_or_none()
            if not can_access_feature(profile, feature):
                level = FEATURE_REQUIREMENTS.get(feature)
                if level == VERIFIED:
                    msg = "This feature requires admin verification. Please complete your verification process."
                elif level == PREMIUM:
                    msg = "This feature requires a premium subscription."
                else:
                    msg = "Access denied to this feature"
                return jsonify({"error": msg, "feature": feature}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
