from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import func

from app.remonta import ratelimit
from app.remonta.db import db_session
from app.remonta.geocoding import geocode_address, parse_location
from app.remonta.modules.clients import service as clients
from app.remonta.modules.clients.models import CoordinatorProfile, Participant, ServiceRequest
from app.remonta.modules.jobs.models import JobApplication
from app.remonta.modules.workers.feature_access import accessible_features, verification_status_message
from app.remonta.modules.workers.service import get_profile_for_user, serialize_profile, setup_progress
from app.remonta.rbac import require_role

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer probes. No DB access, minimal overhead.
    """
    return "ok", 200


def _owner_summary(role: str) -> dict:
    s = db_session()
    user = g.current_user
    profile = clients.owner_profile(s, user)
    by_status = dict(
        s.query(ServiceRequest.status, func.count(ServiceRequest.id))
        .filter(ServiceRequest.requester_user_id == user.id)
        .group_by(ServiceRequest.status)
        .all()
    )
    recent = clients.list_service_requests(s, user)[:5]
    out = {
        "role": role,
        "section": request.view_args.get("section") or None,
        "profile": None,
        "participants": s.query(func.count(Participant.id)).filter(Participant.owner_user_id == user.id).scalar() or 0,
        "serviceRequests": {k: int(v) for k, v in by_status.items()},
        "recentRequests": [clients.serialize_service_request(r) for r in recent],
    }
    if profile is not None:
        out["profile"] = {
            "firstName": profile.first_name,
            "lastName": profile.last_name,
            "mobile": profile.mobile,
        }
        if isinstance(profile, CoordinatorProfile):
            out["profile"]["organization"] = profile.organization
            out["profile"]["clientTypes"] = profile.client_types or []
    return out


@bp.get("/dashboard/worker", defaults={"section": ""})
@bp.get("/dashboard/worker/<path:section>")
@require_role("worker")
def dashboard_worker(section: str):
    s = db_session()
    profile = get_profile_for_user(s, g.current_user.id)
    if profile is None:
        return jsonify({"error": "Worker profile not found"}), 404
    applications = dict(
        s.query(JobApplication.status, func.count(JobApplication.id))
        .filter(JobApplication.worker_user_id == g.current_user.id)
        .group_by(JobApplication.status)
        .all()
    )
    return jsonify(
        {
            "role": "worker",
            "section": section or None,
            "profile": serialize_profile(profile),
            "verification": verification_status_message(profile),
            "features": accessible_features(profile),
            "setupProgress": setup_progress(s, profile),
            "applications": {k: int(v) for k, v in applications.items()},
        }
    )


@bp.get("/dashboard/client", defaults={"section": ""})
@bp.get("/dashboard/client/<path:section>")
@require_role("client")
def dashboard_client(section: str):
    return jsonify(_owner_summary("client"))


@bp.get("/dashboard/coordinator", defaults={"section": ""})
@bp.get("/dashboard/coordinator/<path:section>")
@require_role("coordinator")
def dashboard_coordinator(section: str):
    return jsonify(_owner_summary("coordinator"))


@bp.get("/api/geocode")
@ratelimit.rate_limited(ratelimit.PUBLIC_API)
def geocode():
    address = (request.args.get("address") or "").strip()
    if not address:
        return jsonify({"error": "address is required"}), 400
    result = geocode_address(address, api_key=current_app.config.get("GEOMAP_API", ""))
    if result is None:
        return jsonify({"error": "Location not found"}), 404
    parsed = parse_location(address)
    return jsonify(
        {
            "latitude": result.latitude,
            "longitude": result.longitude,
            "formattedAddress": result.formatted_address,
            "city": parsed.city,
            "state": parsed.state,
            "postalCode": parsed.postal_code,
        }
    )
