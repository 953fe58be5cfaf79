from __future__ import annotations

import mimetypes

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.remonta import ratelimit
from app.remonta.audit import record_event
from app.remonta.db import db_session
from app.remonta.modules.workers.feature_access import accessible_features, verification_status_message
from app.remonta.modules.workers.models import Category, WorkerProfile
from app.remonta.modules.workers.search import filters_from_args, search_workers
from app.remonta.modules.workers.service import (
    apply_step,
    get_profile_for_user,
    replace_worker_services,
    serialize_categories,
    serialize_profile,
    serialize_services,
    setup_progress,
)
from app.remonta.rbac import require_role, user_has_role
from app.remonta.storage import StorageError, build_key, delete_quietly, file_digest_and_size, storage_from_config
from app.remonta.utils import json_body

bp = Blueprint("workers", __name__)

PHOTO_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/heic", "image/heif"})
MAX_PHOTO_BYTES = 10 * 1024 * 1024
MAX_PHOTOS = 6


def _my_profile() -> WorkerProfile | None:
    return get_profile_for_user(db_session(), g.current_user.id)


def _profile_not_found():
    return jsonify({"error": "Worker profile not found"}), 404


@bp.get("/api/worker/profile")
@require_role("worker")
def profile_get():
    profile = _my_profile()
    if profile is None:
        return _profile_not_found()
    return jsonify(
        {
            "profile": serialize_profile(profile),
            "verification": verification_status_message(profile),
            "features": accessible_features(profile),
        }
    )


def _apply_and_commit(profile: WorkerProfile, step: str, data: dict):
    s = db_session()
    try:
        changed = apply_step(profile, step, data, geocode_api_key=current_app.config.get("GEOMAP_API", ""))
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    record_event(
        s,
        actor=g.current_user,
        action="worker.profile_update",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
        metadata={"step": step, "fields": changed},
    )
    s.commit()
    return jsonify({"success": True, "step": step, "updated": changed, "profile": serialize_profile(profile)})


@bp.patch("/api/worker/profile/update-name")
@require_role("worker")
def profile_update_name():
    profile = _my_profile()
    if profile is None:
        return _profile_not_found()
    return _apply_and_commit(profile, "name", json_body())


@bp.patch("/api/worker/profile/update-step")
@require_role("worker")
def profile_update_step():
    profile = _my_profile()
    if profile is None:
        return _profile_not_found()
    body = json_body()
    step = str(body.get("step") or "").strip()
    if not step:
        return jsonify({"error": "step is required"}), 400
    data = body.get("data")
    if not isinstance(data, dict):
        data = {k: v for k, v in body.items() if k != "step"}
    return _apply_and_commit(profile, step, data)


@bp.post("/api/upload/worker-photo")
@require_role("worker")
def upload_worker_photo():
    profile = _my_profile()
    if profile is None:
        return _profile_not_found()
    f = request.files.get("photo") or request.files.get("file")
    if not f or not f.filename:
        return jsonify({"error": "No photo uploaded"}), 400
    content_type = (f.mimetype or "").lower()
    if content_type not in PHOTO_CONTENT_TYPES:
        return jsonify({"error": "Photo must be a JPEG, PNG, WebP or HEIC image"}), 400
    data = f.read()
    if not data:
        return jsonify({"error": "Uploaded photo is empty"}), 400
    if len(data) > MAX_PHOTO_BYTES:
        return jsonify({"error": "Photo must be 10MB or smaller"}), 400
    replace = (request.form.get("replace") or "1").strip() != "0"
    if not replace and len(profile.photos or []) >= MAX_PHOTOS:
        return jsonify({"error": f"A maximum of {MAX_PHOTOS} photos is allowed"}), 400

    sha256, size = file_digest_and_size(data)
    key = build_key("workers", str(profile.id), "photos", filename=f.filename)
    storage = storage_from_config(current_app.config)
    try:
        storage.put_bytes(key, data, content_type=content_type)
    except Exception as e:
        current_app.logger.error("Photo upload failed (profile_id=%s): %s", profile.id, e)
        return jsonify({"error": "Failed to store photo"}), 502

    s = db_session()
    old = list(profile.photos or [])
    if replace:
        profile.photos = [key] + old[1:]
        if old:
            delete_quietly(storage, old[0])
    else:
        profile.photos = old + [key]
    record_event(
        s,
        actor=g.current_user,
        action="worker.photo_upload",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
        metadata={"storage_key": key, "sha256": sha256, "size_bytes": size},
    )
    s.commit()
    return jsonify({"success": True, "key": key, "photos": profile.photos}), 201


@bp.get("/api/workers/<int:user_id>/photo")
def worker_photo(user_id: int):
    """Primary photo. Public for published profiles; otherwise the owner or an admin."""
    profile = get_profile_for_user(db_session(), user_id)
    if profile is None or not profile.photos:
        return jsonify({"error": "Photo not found"}), 404
    user = getattr(g, "current_user", None)
    if not profile.is_published and not (user and (user.id == user_id or user_has_role(user, "admin"))):
        return jsonify({"error": "Photo not found"}), 404
    try:
        fobj = storage_from_config(current_app.config).open(profile.photos[0])
    except StorageError:
        return jsonify({"error": "Photo not found"}), 404
    key = profile.photos[0]
    mimetype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return send_file(fobj, mimetype=mimetype, download_name=key.rsplit("/", 1)[-1])


@bp.get("/api/worker/setup-progress")
@require_role("worker")
def worker_setup_progress():
    profile = _my_profile()
    if profile is None:
        return _profile_not_found()
    return jsonify(setup_progress(db_session(), profile))


@bp.get("/api/worker/feature-access")
@require_role("worker")
def worker_feature_access():
    profile = _my_profile()
    return jsonify({"verification": verification_status_message(profile), "features": accessible_features(profile)})


@bp.get("/api/categories")
def categories_list():
    s = db_session()
    cats = s.query(Category).order_by(Category.sort_order.asc(), Category.name.asc()).all()
    return jsonify({"categories": serialize_categories(cats)})


@bp.get("/api/worker/services")
@require_role("worker")
def worker_services_get():
    profile = _my_profile()
    if profile is None:
        return _profile_not_found()
    return jsonify({"services": serialize_services(profile)})


@bp.put("/api/worker/services")
@require_role("worker")
def worker_services_put():
    profile = _my_profile()
    if profile is None:
        return _profile_not_found()
    body = json_body()
    selections = body.get("services", body.get("serviceSelections"))
    if not isinstance(selections, list):
        return jsonify({"error": "services must be a list of {categoryId, subcategoryId}"}), 400
    s = db_session()
    try:
        replace_worker_services(s, profile, selections)
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    record_event(
        s,
        actor=g.current_user,
        action="worker.services_update",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
        metadata={"count": len(profile.worker_services)},
    )
    s.commit()
    return jsonify({"success": True, "services": serialize_services(profile)})


@bp.get("/api/workers/search")
@ratelimit.rate_limited(ratelimit.PUBLIC_API)
def workers_search():
    filters = filters_from_args(request.args, geocode_api_key=current_app.config.get("GEOMAP_API", ""))
    return jsonify(search_workers(db_session(), filters))


@bp.get("/api/worker/profile/<int:user_id>")
def worker_public_profile(user_id: int):
    profile = get_profile_for_user(db_session(), user_id)
    if profile is None or not profile.is_published:
        return jsonify({"error": "Worker not found"}), 404
    return jsonify({"profile": serialize_profile(profile, private=False)})
