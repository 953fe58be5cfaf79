from __future__ import annotations

import io
import json
from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, g, jsonify, request, send_file, session
from sqlalchemy import func, or_, text

from app.remonta.audit import record_event
from app.remonta.auth import user_payload
from app.remonta.db import db_session
from app.remonta.models import AuditEvent, Role, User
from app.remonta.modules.accounts import service as accounts
from app.remonta.modules.compliance import service as compliance
from app.remonta.modules.notifications import email as mailer
from app.remonta.modules.task_queue.queue import queue_stats
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.modules.workers.profile_pdf import pdf_filename, render_profile_pdf
from app.remonta.modules.workers.service import serialize_profile
from app.remonta.modules.zoho_sync.service import last_run, serialize_run
from app.remonta.modules.zoho_sync.zoho_client import zoho_configured
from app.remonta.rbac import require_permission
from app.remonta.storage import StorageError, storage_from_config
from app.remonta.utils import iso, json_body, query_int

bp = Blueprint("admin", __name__)

USER_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED")


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _serialize_user(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "roles": u.role_keys,
        "status": u.status,
        "isActive": u.is_active,
        "emailVerified": u.email_verified_at is not None,
        "lastLoginAt": iso(u.last_login_at),
        "createdAt": iso(u.created_at),
    }


def _serialize_event(ev: AuditEvent) -> dict:
    try:
        metadata = json.loads(ev.metadata_json) if ev.metadata_json else None
    except ValueError:
        metadata = ev.metadata_json
    return {
        "id": ev.id,
        "createdAt": iso(ev.created_at),
        "requestId": ev.request_id,
        "actorUserId": ev.actor_user_id,
        "actorEmail": ev.actor_user_email,
        "action": ev.action,
        "entityType": ev.entity_type,
        "entityId": ev.entity_id,
        "reason": ev.reason,
        "metadata": metadata,
        "clientIp": ev.client_ip,
    }


@bp.get("/api/admin/")
@require_permission("admin.view")
def index():
    s = db_session()
    cfg = current_app.config
    status = {
        "env": cfg.get("ENV", "development"),
        "dbConnected": False,
        "dbError": None,
        "storageBackend": None,
        "storageConfigured": False,
        "storageError": None,
        "zohoReady": zoho_configured(cfg),
        "zohoError": None if zoho_configured(cfg) else "Missing API credentials",
        "lastJobsSync": None,
        "lastContractorsSync": None,
    }

    # DB connectivity (lightweight)
    try:
        s.execute(text("SELECT 1"))
        status["dbConnected"] = True
    except Exception as e:
        s.rollback()
        status["dbError"] = str(e)

    # Storage config (no network calls)
    backend = (cfg.get("STORAGE_BACKEND") or "local").strip().lower()
    status["storageBackend"] = backend
    if backend == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not cfg.get(k)]
        status["storageConfigured"] = not missing
        if missing:
            status["storageError"] = f"Missing: {', '.join(missing)}"
    else:
        status["storageConfigured"] = True

    if status["dbConnected"]:
        jobs_run = last_run(s, "jobs")
        contractors_run = last_run(s, "contractors")
        status["lastJobsSync"] = serialize_run(jobs_run) if jobs_run else None
        status["lastContractorsSync"] = serialize_run(contractors_run) if contractors_run else None
        status["verification"] = compliance.verification_stats(s)
        status["queue"] = queue_stats(s)
        status["users"] = s.query(func.count(User.id)).scalar() or 0
    return jsonify(status)


@bp.get("/api/admin/users")
@require_permission("admin.users")
def users_list():
    s = db_session()
    role = (request.args.get("role") or "").strip().lower()
    status = (request.args.get("status") or "").strip().upper()
    search = (request.args.get("search") or "").strip().lower()
    limit = query_int("limit", 50, minimum=1, maximum=200)
    offset = query_int("offset", 0, minimum=0)

    q = s.query(User)
    if role:
        q = q.filter(User.roles.any(Role.key == role))
    if status:
        if status not in USER_STATUSES:
            return jsonify({"error": f"Unknown status: {status}"}), 400
        q = q.filter(User.status == status)
    if search:
        q = q.filter(User.email.like(f"%{search}%"))
    total = q.count()
    rows = q.order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit).all()
    return jsonify({"users": [_serialize_user(u) for u in rows], "total": total, "limit": limit, "offset": offset})


def _workers_query(s):
    return s.query(WorkerProfile).join(User, User.id == WorkerProfile.user_id)


@bp.get("/api/admin/contractors")
@require_permission("admin.users")
def contractors_list():
    s = db_session()
    search = (request.args.get("search") or "").strip().lower()
    status = (request.args.get("status") or "").strip().upper()
    q = _workers_query(s).filter(User.status == "ACTIVE")
    if status:
        if status not in compliance.VERIFICATION_STATUSES:
            return jsonify({"error": f"Unknown verification status: {status}"}), 400
        q = q.filter(WorkerProfile.verification_status == status)
    try:
        ids = compliance.filter_profile_ids(
            s,
            submission=(request.args.get("documents") or "").strip().lower() or None,
            document_status=(request.args.get("documentStatus") or "").strip().upper() or None,
            requirement_type=(request.args.get("requirementType") or "").strip() or None,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if ids is not None:
        q = q.filter(WorkerProfile.id.in_(ids))
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                func.lower(WorkerProfile.first_name).like(like),
                func.lower(WorkerProfile.last_name).like(like),
                User.email.like(like),
            )
        )
    rows = q.order_by(WorkerProfile.created_at.desc(), WorkerProfile.id.desc()).all()
    return jsonify({"contractors": [compliance.worker_summary(s, p) for p in rows], "total": len(rows)})


@bp.get("/api/admin/contractors/inactive")
@require_permission("admin.users")
def contractors_inactive():
    s = db_session()
    rows = _workers_query(s).filter(User.status != "ACTIVE").order_by(WorkerProfile.updated_at.desc()).all()
    out = []
    for p in rows:
        summary = compliance.worker_summary(s, p)
        summary["accountStatus"] = p.user.status if p.user else None
        out.append(summary)
    return jsonify({"contractors": out, "total": len(out)})


@bp.get("/api/admin/contractors/<int:worker_id>")
@require_permission("admin.users")
def contractor_detail(worker_id: int):
    s = db_session()
    profile = s.get(WorkerProfile, worker_id)
    if profile is None:
        return jsonify({"error": "Worker not found"}), 404
    return jsonify(
        {
            "profile": serialize_profile(profile),
            "summary": compliance.worker_summary(s, profile),
            "account": _serialize_user(profile.user) if profile.user else None,
            "documents": compliance.overlay_requirements(s, profile),
        }
    )


@bp.get("/api/admin/contractors/<int:worker_id>/pdf")
@require_permission("admin.users")
def contractor_pdf(worker_id: int):
    s = db_session()
    profile = s.get(WorkerProfile, worker_id)
    if profile is None:
        return jsonify({"error": "Worker not found"}), 404

    photo = None
    if profile.photos:
        try:
            with storage_from_config(current_app.config).open(profile.photos[0]) as fobj:
                photo = fobj.read()
        except StorageError as e:
            current_app.logger.warning("Profile photo unavailable for PDF (worker_id=%s): %s", worker_id, e)

    pdf = render_profile_pdf(
        profile,
        photo=photo,
        contact_email=current_app.config.get("CONTACT_EMAIL") or "",
        website=current_app.config.get("APP_URL") or "",
    )
    record_event(s, actor=g.current_user, action="admin.profile_pdf", entity_type="WorkerProfile", entity_id=str(profile.id))
    s.commit()
    return send_file(
        io.BytesIO(pdf),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=pdf_filename(profile),
    )


@bp.patch("/api/admin/contractors/<int:worker_id>/status")
@require_permission("admin.users")
def contractor_status(worker_id: int):
    s = db_session()
    profile = s.get(WorkerProfile, worker_id)
    if profile is None or profile.user is None:
        return jsonify({"error": "Worker not found"}), 404
    new_status = str(json_body().get("status") or "").strip().upper()
    if new_status not in USER_STATUSES:
        return jsonify({"error": f"status must be one of {', '.join(USER_STATUSES)}"}), 400

    user = profile.user
    old_status = user.status
    user.status = new_status
    user.is_active = new_status == "ACTIVE"
    if new_status != "ACTIVE" and profile.is_published:
        # Inactive accounts never show in search.
        profile.is_published = False
    record_event(
        s,
        actor=g.current_user,
        action="admin.worker_status",
        entity_type="User",
        entity_id=str(user.id),
        reason=(json_body().get("reason") or None),
        metadata={"from": old_status, "to": new_status, "worker_profile_id": profile.id},
    )
    s.commit()
    return jsonify({"success": True, "account": _serialize_user(user), "isPublished": profile.is_published})


@bp.post("/api/admin/users/<int:user_id>/setup-link")
@require_permission("admin.users")
def user_setup_link(user_id: int):
    """Email a password-setup link to an account created on the user's behalf."""
    s = db_session()
    user = s.get(User, user_id)
    if user is None or not user.is_active:
        return jsonify({"error": "User not found"}), 404
    token = accounts.issue_token(s, user, "password_setup")
    record_event(s, actor=g.current_user, action="admin.password_setup_sent", entity_type="User", entity_id=str(user.id))
    s.commit()
    sent = mailer.send_password_setup(user.email, token, first_name=accounts.first_name_for(s, user))
    return jsonify({"success": True, "emailSent": sent})


@bp.post("/api/admin/impersonate")
@require_permission("admin.impersonate")
def impersonate_start():
    s = db_session()
    admin = g.current_user
    try:
        target_id = int(json_body().get("userId"))
    except (TypeError, ValueError):
        return jsonify({"error": "userId is required"}), 400
    target = s.get(User, target_id)
    if target is None or not target.is_active:
        return jsonify({"error": "User not found"}), 404
    if target.id == admin.id or "admin" in target.role_keys:
        return jsonify({"error": "Administrators cannot be impersonated"}), 403

    session["impersonator_id"] = admin.id
    session["user_id"] = target.id
    record_event(
        s,
        actor=admin,
        action="admin.impersonate_start",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"target_email": target.email},
    )
    s.commit()
    return jsonify({"success": True, "user": user_payload(target)})


@bp.post("/api/admin/impersonate/stop")
def impersonate_stop():
    admin = getattr(g, "real_user", None)
    if not session.get("impersonator_id") or admin is None:
        return jsonify({"error": "Not impersonating"}), 400
    s = db_session()
    target = getattr(g, "current_user", None)
    session["user_id"] = admin.id
    session.pop("impersonator_id", None)
    record_event(
        s,
        actor=admin,
        action="admin.impersonate_stop",
        entity_type="User",
        entity_id=str(target.id) if target else None,
    )
    s.commit()
    return jsonify({"success": True, "user": user_payload(admin)})


@bp.get("/api/admin/audit")
@require_permission("admin.audit")
def audit_list():
    """
    Recent audit events (newest first) with simple filters:
    action (contains), actor_email (contains), entity_type, date range (YYYY-MM-DD, inclusive).
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    raw_from = (request.args.get("date_from") or "").strip()
    raw_to = (request.args.get("date_to") or "").strip()
    date_from = _parse_date(raw_from)
    date_to = _parse_date(raw_to)
    if (raw_from and not date_from) or (raw_to and not date_to):
        return jsonify({"error": "date_from/date_to must be YYYY-MM-DD"}), 400
    limit = query_int("limit", 200, minimum=1, maximum=1000)

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
    return jsonify({"events": [_serialize_event(e) for e in events], "total": len(events)})
