from __future__ import annotations

import json
import time
from typing import Any

from flask import Blueprint, current_app, jsonify, request, send_file

from app.remonta import ratelimit
from app.remonta.audit import record_event_safe
from app.remonta.db import db_session
from app.remonta.modules.jobs.models import Job
from app.remonta.modules.jobs.service import invalidate_jobs_cache
from app.remonta.modules.zoho_sync import service as zoho_sync
from app.remonta.modules.zoho_sync.models import Contractor
from app.remonta.modules.zoho_sync.zoho_client import ZohoError, client_from_config
from app.remonta.security import bearer_token, hmac_sha256_hex, secrets_match
from app.remonta.storage import StorageError, storage_from_config
from app.remonta.utils import iso

bp = Blueprint("zoho_sync", __name__)


def _sync_authorized() -> bool:
    expected = current_app.config.get("SYNC_API_SECRET")
    provided = request.headers.get("x-api-secret") or bearer_token(request)
    return secrets_match(provided, expected)


def _unauthorized():
    return jsonify({"success": False, "error": "Unauthorized"}), 401


def _split_ids(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(x).strip() for x in raw if str(x).strip()]
    text = str(raw).strip()
    if text.startswith("[") and text.endswith("]"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [str(x).strip() for x in parsed if str(x).strip()]
    return [x.strip() for x in text.split(",") if x.strip()]


def _webhook_payload() -> dict[str, Any]:
    """
    Zoho workflow rules can post JSON, form fields, or put the values in headers/query
    parameters depending on how the rule was configured. Normalise all of them.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form.to_dict() if request.form else {}

    def pick(*names: str) -> Any:
        for n in names:
            for source in (data, request.args, request.headers):
                v = source.get(n)
                if v not in (None, ""):
                    return v
        return None

    return {
        "module": pick("module") or "Contractors",
        "ids": _split_ids(pick("ids", "id")),
        "operation": pick("operation", "event") or "update",
        "token": pick("token"),
    }


def _webhook_authorized(payload: dict[str, Any]) -> bool:
    cfg = current_app.config
    provided = request.headers.get("x-webhook-secret") or bearer_token(request) or payload.get("token")
    if not secrets_match(provided, cfg.get("ZOHO_WEBHOOK_SECRET")):
        return False
    signing_secret = cfg.get("ZOHO_WEBHOOK_SIGNATURE_SECRET")
    if signing_secret:
        expected = hmac_sha256_hex(signing_secret, request.get_data(cache=True))
        return secrets_match(request.headers.get("x-zoho-signature"), expected)
    return True


@bp.get("/api/sync-jobs")
def sync_jobs_status():
    return jsonify(zoho_sync.sync_status(db_session(), "jobs"))


@bp.post("/api/sync-jobs")
def sync_jobs_post():
    if not _sync_authorized():
        return _unauthorized()
    if zoho_sync.is_syncing("jobs"):
        return jsonify({"success": False, "error": "Sync already in progress"}), 409

    s = db_session()
    started = time.time()
    try:
        run = zoho_sync.sync_jobs(s, client_from_config(current_app.config))
        s.commit()
    except zoho_sync.SyncInProgressError:
        s.rollback()
        return jsonify({"success": False, "error": "Sync already in progress"}), 409
    except ZohoError as e:
        s.rollback()
        current_app.logger.error("Zoho jobs sync failed: %s", e)
        zoho_sync.record_failed_run(s, "jobs", str(e), started=started)
        record_event_safe(s, actor=None, action="zoho.jobs_sync_failed", entity_type="ZohoSyncRun", reason=str(e)[:500])
        s.commit()
        return jsonify({"success": False, "error": str(e), "stats": zoho_sync.SyncStats().as_dict()}), 502
    invalidate_jobs_cache()

    return jsonify(
        {
            "success": True,
            "message": "Jobs synced successfully",
            "stats": {
                "created": run.created_count,
                "updated": run.updated_count,
                "deactivated": run.deactivated_count,
                "errors": run.error_count,
            },
            "syncTime": iso(run.ran_at),
            "duration": int((time.time() - started) * 1000),
            "totalJobs": s.query(Job).filter(Job.active.is_(True)).count(),
        }
    )


@bp.post("/api/sync-contractors")
def sync_contractors_post():
    if not _sync_authorized():
        return _unauthorized()
    s = db_session()
    started = time.time()
    try:
        run = zoho_sync.sync_contractors(
            s,
            client_from_config(current_app.config),
            storage=storage_from_config(current_app.config),
            geocode_api_key=current_app.config.get("GEOMAP_API", ""),
        )
        s.commit()
    except zoho_sync.SyncInProgressError:
        s.rollback()
        return jsonify({"success": False, "error": "Sync already in progress"}), 409
    except ZohoError as e:
        s.rollback()
        current_app.logger.error("Zoho contractor sync failed: %s", e)
        zoho_sync.record_failed_run(s, "contractors", str(e), started=started)
        record_event_safe(
            s, actor=None, action="zoho.contractors_sync_failed", entity_type="ZohoSyncRun", reason=str(e)[:500]
        )
        s.commit()
        return jsonify({"success": False, "error": str(e)}), 502
    return jsonify({"success": True, "message": run.message, "stats": zoho_sync.serialize_run(run)})


@bp.post("/api/webhooks/zoho-contractor")
@ratelimit.rate_limited(ratelimit.WEBHOOK)
def zoho_contractor_webhook():
    payload = _webhook_payload()
    if not _webhook_authorized(payload):
        current_app.logger.warning("Rejected Zoho webhook (bad secret or signature)")
        return _unauthorized()

    s = db_session()
    try:
        result = zoho_sync.handle_webhook(
            s,
            client_from_config(current_app.config),
            payload,
            storage=storage_from_config(current_app.config),
            geocode_api_key=current_app.config.get("GEOMAP_API", ""),
        )
        s.commit()
    except ValueError as e:
        s.rollback()
        return jsonify({"success": False, "error": str(e)}), 400
    except ZohoError as e:
        s.rollback()
        current_app.logger.error("Zoho webhook processing failed: %s", e)
        return jsonify({"success": False, "error": str(e)}), 502
    return jsonify({"success": result["errors"] == 0, **result})


@bp.get("/api/contractors")
@ratelimit.rate_limited(ratelimit.PUBLIC_API)
def contractors_list():
    state = (request.args.get("state") or "").strip() or None
    area = (request.args.get("area") or "").strip() or None
    rows = zoho_sync.list_contractors(db_session(), state=state, area=area)
    return jsonify({"contractors": [zoho_sync.serialize_contractor(c) for c in rows], "total": len(rows)})


@bp.get("/api/contractors/<int:contractor_id>/photo")
def contractor_photo(contractor_id: int):
    c = db_session().get(Contractor, contractor_id)
    if c is None or c.deleted_at is not None or not c.profile_image_key:
        return jsonify({"error": "Photo not found"}), 404
    try:
        fobj = storage_from_config(current_app.config).open(c.profile_image_key)
    except StorageError:
        return jsonify({"error": "Photo not found"}), 404
    return send_file(fobj, mimetype="image/jpeg", download_name=f"contractor-{c.id}.jpg")
