from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.remonta.audit import record_event
from app.remonta.db import db_session
from app.remonta.modules.compliance import service as compliance
from app.remonta.modules.compliance.catalog import VEHICLE_PHOTO_TYPE, get_requirement
from app.remonta.modules.compliance.models import VerificationRequirement
from app.remonta.modules.workers.service import get_profile_for_user
from app.remonta.rbac import require_login, require_role, user_has_permission
from app.remonta.storage import StorageError, storage_from_config
from app.remonta.utils import clean_str, parse_iso_date

bp = Blueprint("compliance", __name__)


def _profile_or_404():
    profile = get_profile_for_user(db_session(), g.current_user.id)
    if profile is None:
        return None, (jsonify({"error": "Worker profile not found"}), 404)
    return profile, None


@bp.get("/api/worker/compliance")
@require_role("worker")
def compliance_list():
    profile, err = _profile_or_404()
    if err:
        return err
    s = db_session()
    return jsonify(
        {
            "requirements": compliance.overlay_requirements(s, profile),
            "verificationStatus": profile.verification_status,
            "missingRequired": compliance.missing_required_documents(s, profile),
        }
    )


@bp.get("/api/worker/compliance/<requirement_type>")
@require_role("worker")
def compliance_get(requirement_type: str):
    profile, err = _profile_or_404()
    if err:
        return err
    spec = get_requirement(requirement_type)
    stored = compliance.requirements_for_profile(db_session(), profile).get(requirement_type)
    if spec is None and stored is None:
        return jsonify({"error": "Unknown requirement type"}), 404
    return jsonify({"requirement": compliance.serialize_requirement(stored, spec)})


@bp.post("/api/worker/compliance/<requirement_type>")
@require_role("worker")
def compliance_upload(requirement_type: str):
    profile, err = _profile_or_404()
    if err:
        return err
    f = request.files.get("file")
    if not f or not f.filename:
        return jsonify({"error": "No file uploaded"}), 400
    try:
        expiry = parse_iso_date(request.form.get("expiry_date") or request.form.get("expiryDate"))
    except ValueError:
        return jsonify({"error": "expiry_date must be YYYY-MM-DD"}), 400

    upload = compliance.UploadedFile(
        filename=f.filename,
        content_type=(f.mimetype or "").lower(),
        data=f.read(),
    )
    s = db_session()
    storage = storage_from_config(current_app.config)
    try:
        req = compliance.upload_document(
            s,
            storage,
            profile,
            requirement_type,
            upload,
            actor=g.current_user,
            expiry_date=expiry,
            document_number=clean_str(request.form.get("document_number") or request.form.get("documentNumber"), max_len=128),
            service_title=clean_str(request.form.get("service_title") or request.form.get("serviceTitle"), max_len=128),
        )
        s.commit()
    except LookupError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    except StorageError as e:
        s.rollback()
        current_app.logger.error("Compliance upload storage failure (profile_id=%s): %s", profile.id, e)
        return jsonify({"error": "Failed to store document"}), 502
    return jsonify({"success": True, "requirement": compliance.serialize_requirement(req)}), 201


@bp.delete("/api/worker/compliance/<requirement_type>")
@require_role("worker")
def compliance_delete(requirement_type: str):
    profile, err = _profile_or_404()
    if err:
        return err
    s = db_session()
    try:
        compliance.delete_document(s, storage_from_config(current_app.config), profile, requirement_type, actor=g.current_user)
        s.commit()
    except LookupError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    return jsonify({"success": True})


@bp.get("/api/worker/requirements")
@require_role("worker")
def worker_requirements():
    profile, err = _profile_or_404()
    if err:
        return err
    service_title = (request.args.get("serviceTitle") or request.args.get("service_title") or "").strip() or None
    return jsonify(compliance.requirements_grouped(db_session(), profile, service_title))


def _vehicle_photo_url(req: VerificationRequirement | None) -> str | None:
    return f"/api/compliance/documents/{req.id}/download" if req is not None else None


@bp.post("/api/upload/vehicle-photo")
@require_role("worker")
def vehicle_photo_upload():
    profile, err = _profile_or_404()
    if err:
        return err
    f = request.files.get("file")
    if not f or not f.filename:
        return jsonify({"error": "No file uploaded"}), 400
    upload = compliance.UploadedFile(filename=f.filename, content_type=(f.mimetype or "").lower(), data=f.read())
    s = db_session()
    try:
        req = compliance.upload_vehicle_photo(s, storage_from_config(current_app.config), profile, upload, actor=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    except StorageError as e:
        s.rollback()
        current_app.logger.error("Vehicle photo storage failure (profile_id=%s): %s", profile.id, e)
        return jsonify({"error": "Failed to store photo"}), 502
    return (
        jsonify({"success": True, "photoUrl": _vehicle_photo_url(req), "requirement": compliance.serialize_requirement(req)}),
        201,
    )


@bp.get("/api/worker/vehicle-photo")
@require_role("worker")
def vehicle_photo_get():
    profile, err = _profile_or_404()
    if err:
        return err
    return jsonify({"photoUrl": _vehicle_photo_url(compliance.vehicle_photo(db_session(), profile))})


@bp.delete("/api/worker/vehicle-photo")
@require_role("worker")
def vehicle_photo_delete():
    profile, err = _profile_or_404()
    if err:
        return err
    s = db_session()
    if compliance.vehicle_photo(s, profile) is None:
        return jsonify({"success": True})
    try:
        compliance.delete_document(
            s, storage_from_config(current_app.config), profile, VEHICLE_PHOTO_TYPE, actor=g.current_user
        )
        s.commit()
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    return jsonify({"success": True})


@bp.post("/api/worker/verification/submit")
@require_role("worker")
def verification_submit():
    profile, err = _profile_or_404()
    if err:
        return err
    s = db_session()
    try:
        compliance.submit_verification(s, profile, actor=g.current_user)
        s.commit()
    except compliance.MissingDocumentsError as e:
        s.rollback()
        return jsonify({"error": str(e), "missing": e.missing}), 400
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    return jsonify({"success": True, "verificationStatus": profile.verification_status})


@bp.get("/api/compliance/documents/<int:doc_id>/download")
@require_login
def document_download(doc_id: int):
    s = db_session()
    user = g.current_user
    req = s.get(VerificationRequirement, doc_id)
    if req is None or not req.storage_key:
        return jsonify({"error": "Document not found"}), 404
    is_owner = req.worker_profile is not None and req.worker_profile.user_id == user.id
    if not is_owner and not user_has_permission(user, "compliance.download"):
        return jsonify({"error": "Forbidden"}), 403

    try:
        fobj = storage_from_config(current_app.config).open(req.storage_key)
    except StorageError:
        return jsonify({"error": "Document file is missing from storage"}), 404

    record_event(
        s,
        actor=getattr(g, "real_user", None) or user,
        action="compliance.document_download",
        entity_type="VerificationRequirement",
        entity_id=str(req.id),
        metadata={"requirement_type": req.requirement_type, "worker_profile_id": req.worker_profile_id},
    )
    s.commit()
    return send_file(
        fobj,
        mimetype=req.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=req.filename or f"{req.requirement_type}.bin",
    )
