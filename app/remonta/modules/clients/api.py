from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from pydantic import ValidationError

from app.remonta.db import db_session
from app.remonta.modules.clients import service as clients
from app.remonta.modules.clients.schemas import (
    ParticipantCreate,
    ParticipantUpdate,
    ServiceRequestCreate,
    ServiceRequestStatus,
    ServiceRequestUpdate,
)
from app.remonta.modules.workers.search import filters_from_args, search_workers
from app.remonta.rbac import require_permission
from app.remonta.schemas import validation_failed
from app.remonta.utils import json_body

bp = Blueprint("clients", __name__)


def _participant_not_found():
    return jsonify({"error": "Participant not found"}), 404


def _request_not_found():
    return jsonify({"error": "Service request not found"}), 404


@bp.get("/api/client/participants")
@require_permission("participants.manage")
def participants_list():
    rows = clients.list_participants(db_session(), g.current_user)
    return jsonify({"participants": [clients.serialize_participant(p) for p in rows], "total": len(rows)})


@bp.post("/api/client/participants")
@require_permission("participants.manage")
def participants_create():
    try:
        data = ParticipantCreate.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)
    s = db_session()
    p = clients.create_participant(s, g.current_user, data)
    s.commit()
    return jsonify({"success": True, "participant": clients.serialize_participant(p)}), 201


@bp.get("/api/client/participants/<int:participant_id>")
@require_permission("participants.manage")
def participants_get(participant_id: int):
    p = clients.get_participant(db_session(), g.current_user, participant_id)
    if p is None:
        return _participant_not_found()
    out = clients.serialize_participant(p)
    out["serviceRequests"] = [clients.serialize_service_request(r) for r in p.service_requests]
    return jsonify({"participant": out})


@bp.patch("/api/client/participants/<int:participant_id>")
@require_permission("participants.manage")
def participants_update(participant_id: int):
    s = db_session()
    p = clients.get_participant(s, g.current_user, participant_id)
    if p is None:
        return _participant_not_found()
    try:
        data = ParticipantUpdate.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)
    changed = clients.update_participant(s, g.current_user, p, data)
    s.commit()
    return jsonify({"success": True, "updated": changed, "participant": clients.serialize_participant(p)})


@bp.delete("/api/client/participants/<int:participant_id>")
@require_permission("participants.manage")
def participants_delete(participant_id: int):
    s = db_session()
    p = clients.get_participant(s, g.current_user, participant_id)
    if p is None:
        return _participant_not_found()
    clients.delete_participant(s, g.current_user, p)
    s.commit()
    return jsonify({"success": True})


@bp.get("/api/client/service-request")
@require_permission("service_requests.manage")
def service_requests_list():
    status = (request.args.get("status") or "").strip().upper() or None
    if status and status not in {st.value for st in ServiceRequestStatus}:
        return jsonify({"error": f"Unknown status: {status}"}), 400
    rows = clients.list_service_requests(db_session(), g.current_user, status=status)
    return jsonify({"serviceRequests": [clients.serialize_service_request(r) for r in rows], "total": len(rows)})


@bp.post("/api/client/service-request")
@require_permission("service_requests.manage")
def service_requests_create():
    try:
        data = ServiceRequestCreate.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)
    s = db_session()
    try:
        r = clients.create_service_request(s, g.current_user, data)
    except LookupError:
        s.rollback()
        return _participant_not_found()
    s.commit()
    return jsonify({"success": True, "serviceRequest": clients.serialize_service_request(r)}), 201


@bp.get("/api/client/service-request/<int:request_id>")
@require_permission("service_requests.manage")
def service_requests_get(request_id: int):
    r = clients.get_service_request(db_session(), g.current_user, request_id)
    if r is None:
        return _request_not_found()
    return jsonify({"serviceRequest": clients.serialize_service_request(r)})


@bp.patch("/api/client/service-request/<int:request_id>")
@require_permission("service_requests.manage")
def service_requests_update(request_id: int):
    s = db_session()
    r = clients.get_service_request(s, g.current_user, request_id)
    if r is None:
        return _request_not_found()
    try:
        data = ServiceRequestUpdate.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)
    try:
        changed = clients.update_service_request(s, g.current_user, r, data)
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400
    s.commit()
    return jsonify({"success": True, "updated": changed, "serviceRequest": clients.serialize_service_request(r)})


@bp.delete("/api/client/service-request/<int:request_id>")
@require_permission("service_requests.manage")
def service_requests_delete(request_id: int):
    s = db_session()
    r = clients.get_service_request(s, g.current_user, request_id)
    if r is None:
        return _request_not_found()
    clients.delete_service_request(s, g.current_user, r)
    s.commit()
    return jsonify({"success": True})


@bp.get("/api/client/workers")
@require_permission("workers.search")
def client_workers_search():
    filters = filters_from_args(request.args, geocode_api_key=current_app.config.get("GEOMAP_API", ""))
    return jsonify(search_workers(db_session(), filters))
