from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.remonta.db import db_session
from app.remonta.modules.compliance import service as compliance
from app.remonta.modules.compliance.models import VerificationRequirement
from app.remonta.modules.notifications import email as mailer
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.rbac import require_permission
from app.remonta.storage import storage_from_config
from app.remonta.utils import json_body, parse_iso_date

bp = Blueprint("compliance_admin", __name__)


def _reviewer():
    # During impersonation the admin, not the impersonated user, is the reviewer.
    return getattr(g, "real_user", None) or g.current_user


def _worker_or_404(worker_id: int):
    profile = db_session().get(WorkerProfile, worker_id)
    if profile is None:
        return None, (jsonify({"error": "Worker not found"}), 404)
    return profile, None


def _doc_or_404(worker_id: int, doc_id: int):
    req = db_session().get(VerificationRequirement, doc_id)
    if req is None or req.worker_profile_id != worker_id:
        return None, (jsonify({"error": "Document not found"}), 404)
    return req, None


def _notify_document(req: VerificationRequirement, approved: bool) -> None:
    profile = req.worker_profile
    if profile is None or profile.user is None:
        return
    mailer.send_document_decision(
        profile.user.email,
        first_name=profile.first_name,
        document_name=req.requirement_name,
        approved=approved,
        reason=req.rejection_reason,
    )


@bp.get("/api/admin/contractors/<int:worker_id>/compliance")
@require_permission("admin.compliance")
def worker_compliance(worker_id: int):
    profile, err = _worker_or_404(worker_id)
    if err:
        return err
    s = db_session()
    return jsonify(
        {
            "worker": compliance.worker_summary(s, profile),
            "requirements": compliance.overlay_requirements(s, profile),
        }
    )


@bp.post("/api/admin/contractors/<int:worker_id>/compliance/<int:doc_id>/approve")
@require_permission("admin.compliance")
def document_approve(worker_id: int, doc_id: int):
    req, err = _doc_or_404(worker_id, doc_id)
    if err:
        return err
    s = db_session()
    try:
        changed = compliance.approve_document(s, req, reviewer=_reviewer())
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    s.commit()
    if changed:
        _notify_document(req, approved=True)
    return jsonify({"success": True, "changed": changed, "requirement": compliance.serialize_requirement(req)})


@bp.post("/api/admin/contractors/<int:worker_id>/compliance/<int:doc_id>/reject")
@require_permission("admin.compliance")
def document_reject(worker_id: int, doc_id: int):
    req, err = _doc_or_404(worker_id, doc_id)
    if err:
        return err
    s = db_session()
    try:
        changed = compliance.reject_document(s, req, reviewer=_reviewer(), reason=json_body().get("reason"))
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    s.commit()
    if changed:
        _notify_document(req, approved=False)
    return jsonify({"success": True, "changed": changed, "requirement": compliance.serialize_requirement(req)})


@bp.post("/api/admin/contractors/<int:worker_id>/compliance/<int:doc_id>/reset")
@require_permission("admin.compliance")
def document_reset(worker_id: int, doc_id: int):
    req, err = _doc_or_404(worker_id, doc_id)
    if err:
        return err
    s = db_session()
    compliance.reset_document(s, storage_from_config(current_app.config), req, reviewer=_reviewer())
    s.commit()
    return jsonify({"success": True, "requirement": compliance.serialize_requirement(req)})


@bp.post("/api/admin/contractors/<int:worker_id>/compliance/<int:doc_id>/update-expiry")
@require_permission("admin.compliance")
def document_update_expiry(worker_id: int, doc_id: int):
    req, err = _doc_or_404(worker_id, doc_id)
    if err:
        return err
    body = json_body()
    try:
        expiry = parse_iso_date(body.get("expiryDate") or body.get("expiry_date"))
    except ValueError:
        return jsonify({"error": "expiryDate must be YYYY-MM-DD"}), 400
    s = db_session()
    try:
        compliance.update_expiry(s, req, expiry, reviewer=_reviewer())
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    s.commit()
    return jsonify({"success": True, "requirement": compliance.serialize_requirement(req)})


@bp.get("/api/admin/verification")
@require_permission("admin.compliance")
def verification_list():
    s = db_session()
    status = (request.args.get("status") or "PENDING_REVIEW").strip().upper()
    if status == "ALL":
        status = ""
    elif status not in compliance.VERIFICATION_STATUSES:
        return jsonify({"error": f"Unknown status: {status}"}), 400
    workers = compliance.workers_by_status(s, status or None)
    return jsonify(
        {
            "workers": [compliance.worker_summary(s, p) for p in workers],
            "stats": compliance.verification_stats(s),
        }
    )


@bp.post("/api/admin/verification/<int:worker_id>/approve")
@require_permission("admin.compliance")
def verification_approve(worker_id: int):
    profile, err = _worker_or_404(worker_id)
    if err:
        return err
    s = db_session()
    notes = json_body().get("notes")
    count = compliance.approve_worker(s, profile, reviewer=_reviewer(), notes=notes)
    s.commit()
    if profile.user:
        mailer.send_verification_decision(
            profile.user.email, first_name=profile.first_name, approved=True, notes=profile.verification_notes
        )
    return jsonify({"success": True, "verificationStatus": profile.verification_status, "documentsApproved": count})


@bp.post("/api/admin/verification/<int:worker_id>/reject")
@require_permission("admin.compliance")
def verification_reject(worker_id: int):
    profile, err = _worker_or_404(worker_id)
    if err:
        return err
    s = db_session()
    try:
        count = compliance.reject_worker(s, profile, reviewer=_reviewer(), notes=json_body().get("notes"))
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    s.commit()
    if profile.user:
        mailer.send_verification_decision(
            profile.user.email, first_name=profile.first_name, approved=False, notes=profile.verification_notes
        )
    return jsonify({"success": True, "verificationStatus": profile.verification_status, "documentsRejected": count})


@bp.get("/api/admin/filters")
@require_permission("admin.compliance")
def admin_filters():
    return jsonify(compliance.filter_options(db_session()))


@bp.get("/api/admin/compliance/pending")
@require_permission("admin.compliance")
def compliance_pending():
    s = db_session()
    workers = compliance.workers_by_status(s, "PENDING_REVIEW")
    return jsonify({"workers": [compliance.worker_summary(s, p) for p in workers], "total": len(workers)})


@bp.get("/api/admin/compliance/compliant")
@require_permission("admin.compliance")
def compliance_compliant():
    s = db_session()
    workers = compliance.compliant_workers(s)
    return jsonify({"workers": [compliance.worker_summary(s, p) for p in workers], "total": len(workers)})


@bp.post("/api/admin/compliance/<int:worker_id>/publish")
@require_permission("admin.compliance")
def compliance_publish(worker_id: int):
    profile, err = _worker_or_404(worker_id)
    if err:
        return err
    published = json_body().get("published", True)
    s = db_session()
    try:
        compliance.set_published(s, profile, bool(published), reviewer=_reviewer())
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    s.commit()
    return jsonify({"success": True, "isPublished": profile.is_published})
