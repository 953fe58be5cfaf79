from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.remonta.db import db_session
from app.remonta.modules.task_queue import queue
from app.remonta.modules.task_queue.processor import WORKER_REGISTRATION, process_registrations
from app.remonta.rbac import require_permission
from app.remonta.security import bearer_token, secrets_match

bp = Blueprint("task_queue", __name__)


@bp.post("/api/workers/process-registrations")
def process_registrations_post():
    """Cron entry point: drain one batch of queued registrations."""
    if not secrets_match(bearer_token(request), current_app.config.get("CRON_SECRET")):
        return jsonify({"error": "Unauthorized"}), 401
    s = db_session()
    try:
        result = process_registrations(s)
        s.commit()
    except Exception:
        s.rollback()
        current_app.logger.exception("Registration batch failed")
        raise
    return jsonify({"success": True, **result, "stats": queue.queue_stats(s, WORKER_REGISTRATION)})


@bp.get("/api/admin/queue")
@require_permission("admin.queue")
def admin_queue_stats():
    s = db_session()
    name = (request.args.get("name") or "").strip() or None
    return jsonify(queue.queue_stats(s, name))
