from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.remonta.audit import record_event
from app.remonta.cache import TTLCache
from app.remonta.models import User
from app.remonta.modules.jobs.models import Job, JobApplication
from app.remonta.utils import iso

# Unfiltered public list only; filtered queries always hit the database.
_jobs_cache = TTLCache(ttl_seconds=2 * 3600, max_entries=4)
_ALL_ACTIVE = "jobs:active"


class JobInactiveError(ValueError):
    pass


class ApplicationStateError(ValueError):
    pass


def invalidate_jobs_cache() -> None:
    _jobs_cache.clear()


def serialize_job(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "zohoId": job.zoho_id,
        "title": job.recruitment_title or job.service or "Support role",
        "recruitmentTitle": job.recruitment_title,
        "service": job.service,
        "description": job.description,
        "jobDescription": job.job_description,
        "city": job.city,
        "state": job.state,
        "postedAt": iso(job.posted_at),
        "active": job.active,
    }


def serialize_application(app_row: JobApplication) -> dict[str, Any]:
    return {
        "id": app_row.id,
        "jobId": app_row.job_id,
        "status": app_row.status,
        "appliedAt": iso(app_row.applied_at),
        "updatedAt": iso(app_row.updated_at),
        "job": serialize_job(app_row.job) if app_row.job else None,
    }


def list_active_jobs(s: Session, *, state: str | None = None, city: str | None = None) -> list[dict[str, Any]]:
    if not state and not city:
        cached = _jobs_cache.get(_ALL_ACTIVE)
        if cached is not None:
            return cached
    q = s.query(Job).filter(Job.active.is_(True))
    if state:
        q = q.filter(Job.state == state.strip().upper())
    if city:
        q = q.filter(Job.city.ilike(city.strip()))
    jobs = [serialize_job(j) for j in q.order_by(Job.posted_at.desc(), Job.id.desc()).all()]
    if not state and not city:
        _jobs_cache.set(_ALL_ACTIVE, jobs)
    return jobs


def applications_by_job(s: Session, user: User) -> dict[int, str]:
    rows = s.query(JobApplication.job_id, JobApplication.status).filter(JobApplication.worker_user_id == user.id).all()
    return {job_id: status for job_id, status in rows}


def apply(s: Session, user: User, job_id: int) -> tuple[JobApplication, bool]:
    """
    Idempotent apply. Returns (application, created). Re-applying after a withdrawal resets to PENDING.
    Raises LookupError for unknown jobs and JobInactiveError for closed ones.
    """
    job = s.get(Job, job_id)
    if job is None:
        raise LookupError("Job not found")
    if not job.active:
        raise JobInactiveError("This job is no longer accepting applications")

    row = (
        s.query(JobApplication)
        .filter(JobApplication.job_id == job.id, JobApplication.worker_user_id == user.id)
        .one_or_none()
    )
    created = row is None
    if row is None:
        row = JobApplication(job_id=job.id, worker_user_id=user.id, status="PENDING")
        s.add(row)
    elif row.status == "WITHDRAWN":
        row.status = "PENDING"
        row.applied_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="jobs.apply",
        entity_type="JobApplication",
        entity_id=str(row.id),
        metadata={"job_id": job.id, "created": created},
    )
    return row, created


def withdraw(s: Session, user: User, job_id: int) -> JobApplication:
    row = (
        s.query(JobApplication)
        .filter(JobApplication.job_id == job_id, JobApplication.worker_user_id == user.id)
        .one_or_none()
    )
    if row is None:
        raise LookupError("Application not found")
    if row.status == "WITHDRAWN":
        raise ApplicationStateError("Application already withdrawn")
    row.status = "WITHDRAWN"
    record_event(
        s,
        actor=user,
        action="jobs.withdraw",
        entity_type="JobApplication",
        entity_id=str(row.id),
        metadata={"job_id": job_id},
    )
    return row


def applications_for_user(s: Session, user: User) -> list[JobApplication]:
    return (
        s.query(JobApplication)
        .filter(JobApplication.worker_user_id == user.id)
        .order_by(JobApplication.applied_at.desc())
        .all()
    )
