from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.remonta.audit import record_event
from app.remonta.db import db_session
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.modules.zoho_sync import service as zoho_sync
from app.remonta.modules.zoho_sync.zoho_client import ZohoError, client_from_config, zoho_configured
from app.remonta.rbac import require_permission

bp = Blueprint("zoho_admin", __name__)


def _zoho_failed(e: ZohoError):
    current_app.logger.error("Zoho request failed: %s", e)
    return jsonify({"error": "Zoho request failed", "details": str(e)}), 502


@bp.post("/api/zoho/submit-contractor/<int:worker_id>")
@require_permission("admin.zoho")
def submit_contractor(worker_id: int):
    s = db_session()
    profile = s.get(WorkerProfile, worker_id)
    if profile is None:
        return jsonify({"error": "Worker not found"}), 404
    if profile.zoho_contact_id and not request.args.get("force"):
        return jsonify({"error": "Worker already exists in Zoho", "zohoId": profile.zoho_contact_id}), 409
    try:
        zoho_id = zoho_sync.submit_worker(s, client_from_config(current_app.config), profile, actor=g.current_user)
    except ZohoError as e:
        s.rollback()
        return _zoho_failed(e)
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 502
    s.commit()
    return jsonify({"success": True, "zohoId": zoho_id}), 201


@bp.get("/api/zoho/fields/<module>")
@require_permission("admin.zoho")
def module_fields(module: str):
    try:
        fields = client_from_config(current_app.config).get_fields(module)
    except ZohoError as e:
        return _zoho_failed(e)
    out = [
        {
            "apiName": f.get("api_name"),
            "label": f.get("field_label"),
            "dataType": f.get("data_type"),
            "required": bool(f.get("system_mandatory")),
        }
        for f in fields
    ]
    return jsonify({"module": module, "fields": out, "total": len(out)})


@bp.get("/api/zoho/modules")
@require_permission("admin.zoho")
def modules_list():
    try:
        modules = client_from_config(current_app.config).get_modules()
    except ZohoError as e:
        return _zoho_failed(e)
    out = [
        {"apiName": m.get("api_name"), "label": m.get("plural_label") or m.get("module_name")}
        for m in modules
        if m.get("api_supported", True)
    ]
    return jsonify({"modules": out, "total": len(out)})


@bp.get("/api/zoho/auth-url")
@require_permission("admin.zoho")
def auth_url():
    cfg = current_app.config
    if not (cfg.get("ZOHO_CLIENT_ID") and cfg.get("ZOHO_REDIRECT_URI")):
        return jsonify({"error": "ZOHO_CLIENT_ID and ZOHO_REDIRECT_URI must be configured"}), 400
    return jsonify({"authUrl": client_from_config(cfg).authorization_url(), "configured": zoho_configured(cfg)})


@bp.get("/api/zoho/callback")
@require_permission("admin.zoho")
def oauth_callback():
    """
    Exchanges the OAuth code for a refresh token. The token is returned once so an
    operator can put it in ZOHO_REFRESH_TOKEN; it is never stored or logged.
    """
    code = (request.args.get("code") or "").strip()
    if not code:
        return jsonify({"error": request.args.get("error") or "Missing code"}), 400
    try:
        tokens = client_from_config(current_app.config).exchange_code(code)
    except ZohoError as e:
        return _zoho_failed(e)
    s = db_session()
    record_event(s, actor=g.current_user, action="zoho.oauth_authorized", entity_type="Zoho")
    s.commit()
    return jsonify(
        {
            "success": True,
            "refreshToken": tokens.get("refresh_token"),
            "expiresIn": tokens.get("expires_in"),
            "message": "Set ZOHO_REFRESH_TOKEN to the refresh token and restart the app.",
        }
    )
