"""
Database-backed job queue.

Jobs move created -> active -> completed. A failed attempt goes to "retry"
(ready again after retry_delay, doubled per attempt when retry_backoff is set)
until retry_limit is exhausted, then "failed". Handlers raise PermanentJobError
for failures that retrying cannot fix.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.remonta.modules.task_queue.models import BackgroundJob

logger = logging.getLogger(__name__)

READY_STATES = ("created", "retry")
OPEN_STATES = ("created", "retry", "active")
ALL_STATES = ("created", "retry", "active", "completed", "failed", "cancelled")


class PermanentJobError(Exception):
    """Raised by handlers for failures that must not be retried (e.g. duplicate email)."""


def send(
    s: Session,
    name: str,
    data: dict[str, Any] | None = None,
    *,
    priority: int = 0,
    retry_limit: int = 3,
    retry_delay: int = 60,
    retry_backoff: bool = True,
    expire_in_seconds: int = 24 * 3600,
    start_after: datetime | None = None,
) -> BackgroundJob:
    job = BackgroundJob(
        id=uuid.uuid4().hex,
        name=name,
        data=data or {},
        state="created",
        priority=priority,
        retry_limit=retry_limit,
        retry_delay=retry_delay,
        retry_backoff=retry_backoff,
        expire_in_seconds=expire_in_seconds,
        start_after=start_after or datetime.utcnow(),
    )
    s.add(job)
    s.flush()
    logger.info("Queued job %s (%s)", job.id, name)
    return job


def fetch(s: Session, name: str, *, batch_size: int = 1) -> list[BackgroundJob]:
    """
    Claim up to batch_size ready jobs (highest priority, then oldest) and mark them active.
    """
    now = datetime.utcnow()
    q = (
        s.query(BackgroundJob)
        .filter(BackgroundJob.name == name)
        .filter(BackgroundJob.state.in_(READY_STATES))
        .filter(BackgroundJob.start_after <= now)
        .order_by(BackgroundJob.priority.desc(), BackgroundJob.created_at.asc())
        .limit(batch_size)
    )
    bind = s.get_bind()
    if bind is not None and bind.dialect.name == "postgresql":
        # Concurrent workers skip rows another worker already claimed.
        q = q.with_for_update(skip_locked=True)
    jobs = q.all()
    for job in jobs:
        job.state = "active"
        job.started_at = now
    s.flush()
    return jobs


def complete(s: Session, job: BackgroundJob, output: dict[str, Any] | None = None) -> BackgroundJob:
    job.state = "completed"
    job.completed_at = datetime.utcnow()
    job.output = output
    s.flush()
    return job


def retry_delay_seconds(job: BackgroundJob) -> int:
    if job.retry_backoff:
        return job.retry_delay * (2 ** job.retry_count)
    return job.retry_delay


def fail(s: Session, job: BackgroundJob, error: str, *, permanent: bool = False) -> BackgroundJob:
    now = datetime.utcnow()
    job.last_error = error[:2000]
    if not permanent and job.retry_count < job.retry_limit:
        delay = retry_delay_seconds(job)
        job.retry_count += 1
        job.state = "retry"
        job.start_after = now + timedelta(seconds=delay)
        logger.warning("Job %s failed (attempt %s/%s), retrying in %ss: %s", job.id, job.retry_count, job.retry_limit, delay, error)
    else:
        job.state = "failed"
        job.completed_at = now
        job.output = {"error": error}
        logger.error("Job %s failed permanently: %s", job.id, error)
    s.flush()
    return job


def expire_stale(s: Session, *, name: str | None = None) -> int:
    """
    Active jobs running past their expire_in window are treated as failed attempts.
    """
    now = datetime.utcnow()
    q = s.query(BackgroundJob).filter(BackgroundJob.state == "active")
    if name:
        q = q.filter(BackgroundJob.name == name)
    expired = 0
    for job in q.all():
        started = job.started_at or job.created_at
        if started + timedelta(seconds=job.expire_in_seconds) < now:
            fail(s, job, "Job expired while active")
            expired += 1
    return expired


def cancel(s: Session, job_id: str) -> bool:
    job = s.get(BackgroundJob, job_id)
    if not job or job.state not in OPEN_STATES:
        return False
    job.state = "cancelled"
    job.completed_at = datetime.utcnow()
    s.flush()
    return True


def get_job(s: Session, job_id: str) -> BackgroundJob | None:
    return s.get(BackgroundJob, job_id)


def queue_stats(s: Session, name: str | None = None) -> dict[str, Any]:
    q = s.query(BackgroundJob.state, func.count(BackgroundJob.id))
    if name:
        q = q.filter(BackgroundJob.name == name)
    counts = {state: 0 for state in ALL_STATES}
    for state, n in q.group_by(BackgroundJob.state).all():
        counts[state] = int(n)

    oldest_q = s.query(func.min(BackgroundJob.created_at)).filter(
        or_(BackgroundJob.state == "created", BackgroundJob.state == "retry")
    )
    if name:
        oldest_q = oldest_q.filter(BackgroundJob.name == name)
    oldest = oldest_q.scalar()
    return {
        "name": name,
        "counts": counts,
        "total": sum(counts.values()),
        "oldest_pending_at": oldest.isoformat() if oldest else None,
    }


def work(
    s: Session,
    name: str,
    handler: Callable[[Session, BackgroundJob], dict[str, Any] | None],
    *,
    batch_size: int = 10,
) -> dict[str, int]:
    """
    Drain one batch. Each job's handler runs inside a savepoint so one bad job
    cannot roll back the others; the caller commits.
    """
    expire_stale(s, name=name)
    jobs = fetch(s, name, batch_size=batch_size)
    result = {"fetched": len(jobs), "completed": 0, "retried": 0, "failed": 0}
    for job in jobs:
        sp = s.begin_nested()
        try:
            output = handler(s, job)
            sp.commit()
        except PermanentJobError as e:
            sp.rollback()
            fail(s, job, str(e), permanent=True)
            result["failed"] += 1
            continue
        except Exception as e:
            sp.rollback()
            logger.exception("Job %s (%s) raised", job.id, name)
            fail(s, job, str(e) or e.__class__.__name__)
            result["retried" if job.state == "retry" else "failed"] += 1
            continue
        complete(s, job, output)
        result["completed"] += 1
    return result
