from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from pydantic import ValidationError

from app.remonta import ratelimit
from app.remonta.db import db_session
from app.remonta.modules.accounts import service as accounts
from app.remonta.modules.accounts.schemas import (
    ClientRegistration,
    CoordinatorRegistration,
    WorkerDetails,
    WorkerRegistration,
)
from app.remonta.modules.notifications import email as mailer
from app.remonta.modules.notifications.sms import SmsError, send_sms
from app.remonta.modules.task_queue import queue
from app.remonta.modules.task_queue.processor import enqueue_worker_registration
from app.remonta.schemas import validation_failed
from app.remonta.utils import is_valid_au_mobile, json_body, normalize_au_mobile, to_e164_au

bp = Blueprint("accounts", __name__)


def _duplicate():
    return jsonify({"error": "An account with this email already exists"}), 409


def _after_signup(email: str, first_name: str, role: str, user_id: int) -> None:
    s = db_session()
    code = accounts.issue_code(s, "email", email)
    s.commit()
    mailer.send_verification_code(email, code, first_name=first_name)
    accounts.notify_registration_webhook(
        current_app.config.get("N8N_WEBHOOK_URL", ""),
        {"event": f"{role}.registered", "userId": user_id, "email": email, "source": "api"},
    )


@bp.post("/api/auth/register")
@ratelimit.rate_limited(ratelimit.DB_WRITE)
def register_worker():
    try:
        data = WorkerRegistration.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)

    s = db_session()
    if accounts.email_exists(s, data.email):
        return _duplicate()
    try:
        user = accounts.create_worker_account(
            s,
            data,
            password_hash=accounts.hash_password(data.password),
            geocode_api_key=current_app.config.get("GEOMAP_API", ""),
        )
        s.commit()
    except accounts.DuplicateEmailError:
        s.rollback()
        return _duplicate()
    except ValueError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 400

    _after_signup(user.email, data.first_name, "worker", user.id)
    return jsonify({"success": True, "userId": user.id, "email": user.email}), 201


@bp.post("/api/auth/register-async")
@ratelimit.rate_limited(ratelimit.DB_WRITE)
def register_worker_async():
    try:
        data = WorkerRegistration.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)

    s = db_session()
    if accounts.email_exists(s, data.email):
        return _duplicate()
    details = WorkerDetails.model_validate(data.model_dump(exclude={"password"}))
    job = enqueue_worker_registration(s, details, accounts.hash_password(data.password))
    s.commit()
    return jsonify({"success": True, "jobId": job.id, "status": job.state}), 202


@bp.get("/api/auth/registration-status/<job_id>")
def registration_status(job_id: str):
    s = db_session()
    job = queue.get_job(s, job_id)
    if job is None:
        return jsonify({"error": "Job not found"}), 404
    out = {
        "jobId": job.id,
        "state": job.state,
        "retryCount": job.retry_count,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }
    if job.state == "completed":
        out["result"] = job.output or {}
    elif job.state in ("failed", "retry"):
        out["error"] = job.last_error
    return jsonify(out)


@bp.post("/api/auth/register/client")
@ratelimit.rate_limited(ratelimit.DB_WRITE)
def register_client():
    try:
        data = ClientRegistration.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)

    s = db_session()
    try:
        user, participant = accounts.create_client_account(s, data)
        s.commit()
    except accounts.DuplicateEmailError:
        s.rollback()
        return _duplicate()

    _after_signup(user.email, data.first_name, "client", user.id)
    return jsonify({"success": True, "userId": user.id, "participantId": participant.id}), 201


@bp.post("/api/auth/register/coordinator")
@ratelimit.rate_limited(ratelimit.DB_WRITE)
def register_coordinator():
    try:
        data = CoordinatorRegistration.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)

    s = db_session()
    try:
        user = accounts.create_coordinator_account(s, data)
        s.commit()
    except accounts.DuplicateEmailError:
        s.rollback()
        return _duplicate()

    _after_signup(user.email, data.first_name, "coordinator", user.id)
    return jsonify({"success": True, "userId": user.id}), 201


@bp.post("/api/sms/send-verification")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def sms_send_verification():
    mobile = str(json_body().get("mobile") or json_body().get("phone") or "")
    if not is_valid_au_mobile(mobile):
        return jsonify({"error": "Please enter a valid Australian mobile number (e.g. 0412 345 678)."}), 400
    target = normalize_au_mobile(mobile)

    s = db_session()
    code = accounts.issue_code(s, "sms", target)
    s.commit()

    if current_app.config.get("SMS_DEV_MODE"):
        current_app.logger.info("SMS dev mode: verification code for %s issued without sending", target[:-3] + "***")
        return jsonify({"success": True, "devMode": True, "code": code})
    try:
        send_sms(current_app.config, to_e164_au(target), f"Your Remonta verification code is {code}. It expires in 10 minutes.")
    except SmsError as e:
        current_app.logger.error("SMS send failed: %s", e)
        return jsonify({"error": "Failed to send verification code. Please try again."}), 502
    return jsonify({"success": True})


@bp.post("/api/sms/verify-code")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def sms_verify_code():
    data = json_body()
    mobile = str(data.get("mobile") or data.get("phone") or "")
    code = str(data.get("code") or "").strip()
    if not is_valid_au_mobile(mobile) or not code:
        return jsonify({"error": "Mobile number and code are required"}), 400

    s = db_session()
    ok, error = accounts.check_code(s, "sms", normalize_au_mobile(mobile), code)
    s.commit()
    if not ok:
        return jsonify({"error": error, "verified": False}), 400
    return jsonify({"success": True, "verified": True})
