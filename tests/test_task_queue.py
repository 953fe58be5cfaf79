from datetime import datetime, timedelta

import pytest

from app.remonta import create_app
from app.remonta.db import session_scope
from app.remonta.models import Base
from app.remonta.modules.task_queue import queue
from app.remonta.modules.task_queue.models import BackgroundJob


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _boom(s, job):
    raise RuntimeError("smtp down")


def test_work_completes_jobs_in_priority_order(app):
    seen = []

    def handler(s, job):
        seen.append(job.data["n"])
        return {"n": job.data["n"]}

    with session_scope(app) as s:
        queue.send(s, "demo", {"n": 1})
        queue.send(s, "demo", {"n": 2}, priority=5)
        queue.send(s, "other", {"n": 3})

    with session_scope(app) as s:
        result = queue.work(s, "demo", handler, batch_size=10)

    assert result == {"fetched": 2, "completed": 2, "retried": 0, "failed": 0}
    assert seen == [2, 1]
    with session_scope(app) as s:
        stats = queue.queue_stats(s, "demo")
        assert stats["counts"]["completed"] == 2
        assert queue.queue_stats(s, "other")["counts"]["created"] == 1


def test_failed_attempt_is_retried_with_backoff(app):
    with session_scope(app) as s:
        job_id = queue.send(s, "demo", {}, retry_limit=2, retry_delay=60, retry_backoff=True).id

    before = datetime.utcnow()
    with session_scope(app) as s:
        result = queue.work(s, "demo", _boom)
    assert result["retried"] == 1

    with session_scope(app) as s:
        job = s.get(BackgroundJob, job_id)
        assert job.state == "retry"
        assert job.retry_count == 1
        assert job.last_error == "smtp down"
        assert job.start_after >= before + timedelta(seconds=59)
        # Second attempt doubles the delay.
        assert queue.retry_delay_seconds(job) == 120

    # Not ready yet, so nothing is fetched.
    with session_scope(app) as s:
        assert queue.work(s, "demo", _boom)["fetched"] == 0


def test_retries_exhausted_marks_failed(app):
    with session_scope(app) as s:
        job_id = queue.send(s, "demo", {}, retry_limit=1, retry_delay=0, retry_backoff=False).id

    with session_scope(app) as s:
        assert queue.work(s, "demo", _boom)["retried"] == 1
    with session_scope(app) as s:
        assert queue.work(s, "demo", _boom)["failed"] == 1

    with session_scope(app) as s:
        job = s.get(BackgroundJob, job_id)
        assert job.state == "failed"
        assert job.output == {"error": "smtp down"}
        assert job.completed_at is not None


def test_permanent_error_skips_retries(app):
    def handler(s, job):
        raise queue.PermanentJobError("duplicate email")

    with session_scope(app) as s:
        job_id = queue.send(s, "demo", {}, retry_limit=5).id
    with session_scope(app) as s:
        assert queue.work(s, "demo", handler)["failed"] == 1
    with session_scope(app) as s:
        job = s.get(BackgroundJob, job_id)
        assert job.state == "failed"
        assert job.retry_count == 0


def test_stale_active_jobs_expire(app):
    with session_scope(app) as s:
        job = queue.send(s, "demo", {}, expire_in_seconds=60)
        job.state = "active"
        job.started_at = datetime.utcnow() - timedelta(minutes=5)
        job_id = job.id

    with session_scope(app) as s:
        assert queue.expire_stale(s, name="demo") == 1
    with session_scope(app) as s:
        assert s.get(BackgroundJob, job_id).state == "retry"


def test_cancel_only_open_jobs(app):
    with session_scope(app) as s:
        job_id = queue.send(s, "demo", {}).id
    with session_scope(app) as s:
        assert queue.cancel(s, job_id) is True
    with session_scope(app) as s:
        assert queue.cancel(s, job_id) is False
        assert queue.get_job(s, job_id).state == "cancelled"
