from __future__ import annotations

import logging
from typing import Any

from flask import current_app
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.remonta.modules.accounts import service as accounts
from app.remonta.modules.accounts.schemas import WorkerDetails
from app.remonta.modules.notifications import email as mailer
from app.remonta.modules.task_queue import queue
from app.remonta.modules.task_queue.models import BackgroundJob

logger = logging.getLogger(__name__)

WORKER_REGISTRATION = "worker-registration"


def enqueue_worker_registration(s: Session, details: WorkerDetails, password_hash: str) -> BackgroundJob:
    """
    Queue a validated registration. Only the password hash is persisted in the job payload.
    """
    return queue.send(
        s,
        WORKER_REGISTRATION,
        {"registration": details.model_dump(mode="json"), "passwordHash": password_hash},
        retry_limit=3,
        retry_delay=60,
        retry_backoff=True,
        expire_in_seconds=24 * 3600,
    )


def process_worker_registration(s: Session, job: BackgroundJob) -> dict[str, Any]:
    data = job.data or {}
    password_hash = data.get("passwordHash")
    if not password_hash:
        raise queue.PermanentJobError("Job payload is missing the password hash")
    try:
        details = WorkerDetails.model_validate(data.get("registration") or {})
    except ValidationError as e:
        raise queue.PermanentJobError(f"Invalid registration payload: {e.error_count()} error(s)") from e

    try:
        user = accounts.create_worker_account(
            s,
            details,
            password_hash=password_hash,
            geocode_api_key=current_app.config.get("GEOMAP_API", ""),
        )
    except ValueError as e:
        # Duplicate email or an unknown service category; retrying cannot fix either.
        raise queue.PermanentJobError(str(e)) from e

    code = accounts.issue_code(s, "email", user.email)
    mailer.send_verification_code(user.email, code, first_name=details.first_name)
    accounts.notify_registration_webhook(
        current_app.config.get("N8N_WEBHOOK_URL", ""),
        {"event": "worker.registered", "userId": user.id, "email": user.email, "source": "queue"},
    )
    logger.info("Processed queued registration job=%s user_id=%s", job.id, user.id)
    return {"userId": user.id, "email": user.email}


def process_registrations(s: Session, *, batch_size: int | None = None) -> dict[str, int]:
    size = batch_size or int(current_app.config.get("REGISTRATION_BATCH_SIZE") or 10)
    return queue.work(s, WORKER_REGISTRATION, process_worker_registration, batch_size=size)
