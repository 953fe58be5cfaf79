from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.remonta import ratelimit
from app.remonta.db import db_session
from app.remonta.modules.jobs import service as jobs
from app.remonta.rbac import require_permission, require_role
from app.remonta.utils import json_body

bp = Blueprint("jobs", __name__)


def _job_id_from_body() -> int | None:
    raw = json_body().get("jobId", json_body().get("job_id"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@bp.get("/api/jobs")
@ratelimit.rate_limited(ratelimit.PUBLIC_API)
def jobs_list():
    state = (request.args.get("state") or "").strip() or None
    city = (request.args.get("city") or "").strip() or None
    items = jobs.list_active_jobs(db_session(), state=state, city=city)
    return jsonify({"jobs": items, "total": len(items)})


@bp.get("/api/worker/jobs")
@require_role("worker")
def worker_jobs():
    s = db_session()
    state = (request.args.get("state") or "").strip() or None
    city = (request.args.get("city") or "").strip() or None
    mine = jobs.applications_by_job(s, g.current_user)
    items = [dict(j, applicationStatus=mine.get(j["id"])) for j in jobs.list_active_jobs(s, state=state, city=city)]
    return jsonify({"jobs": items, "total": len(items)})


@bp.post("/api/worker/jobs/apply")
@require_permission("jobs.apply")
def job_apply():
    job_id = _job_id_from_body()
    if job_id is None:
        return jsonify({"error": "jobId is required"}), 400
    s = db_session()
    try:
        row, created = jobs.apply(s, g.current_user, job_id)
    except LookupError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 404
    except jobs.JobInactiveError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 410
    s.commit()
    return jsonify({"success": True, "application": jobs.serialize_application(row)}), (201 if created else 200)


@bp.patch("/api/worker/jobs/apply")
@require_permission("jobs.apply")
def job_withdraw():
    job_id = _job_id_from_body()
    if job_id is None:
        return jsonify({"error": "jobId is required"}), 400
    s = db_session()
    try:
        row = jobs.withdraw(s, g.current_user, job_id)
    except LookupError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 404
    except jobs.ApplicationStateError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 409
    s.commit()
    return jsonify({"success": True, "application": jobs.serialize_application(row)})


@bp.get("/api/worker/applications")
@require_role("worker")
def worker_applications():
    rows = jobs.applications_for_user(db_session(), g.current_user)
    return jsonify({"applications": [jobs.serialize_application(r) for r in rows], "total": len(rows)})
