from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.remonta import create_app, ratelimit
from app.remonta.db import session_scope
from app.remonta.models import Base, User
from app.remonta.modules.jobs.models import Job
from app.remonta.modules.jobs.service import invalidate_jobs_cache
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.seed import get_or_create_role, seed_all


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    ratelimit.reset()
    invalidate_jobs_cache()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_all(s)
        worker = User(email="worker@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        worker.roles.append(get_or_create_role(s, "worker"))
        client_user = User(email="client@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        client_user.roles.append(get_or_create_role(s, "client"))
        s.add_all([worker, client_user])
        s.flush()
        s.add(WorkerProfile(user_id=worker.id, first_name="Wanda", last_name="Worker", mobile="0412345678"))
        s.add_all(
            [
                Job(
                    zoho_id="L-1",
                    recruitment_title="Support Worker - Parramatta",
                    service="Support Worker",
                    city="Parramatta",
                    state="NSW",
                    posted_at=datetime(2026, 9, 1),
                    active=True,
                ),
                Job(zoho_id="L-2", recruitment_title="Cleaner - Geelong", city="Geelong", state="VIC", active=True),
                Job(zoho_id="L-3", recruitment_title="Closed role", state="NSW", active=False),
            ]
        )

    return app.test_client()


def _login(client, email, password="pw"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _job_id(client, zoho_id):
    with session_scope(client.application) as s:
        return s.query(Job).filter(Job.zoho_id == zoho_id).one().id


def test_public_jobs_list_only_active(client):
    r = client.get("/api/jobs")
    assert r.status_code == 200
    assert r.json["total"] == 2
    assert {j["zohoId"] for j in r.json["jobs"]} == {"L-1", "L-2"}

    r = client.get("/api/jobs?state=nsw")
    assert [j["zohoId"] for j in r.json["jobs"]] == ["L-1"]
    assert r.headers["X-RateLimit-Limit"] == "100"


def test_unfiltered_list_is_cached_until_invalidated(client):
    assert client.get("/api/jobs").json["total"] == 2
    with session_scope(client.application) as s:
        s.add(Job(zoho_id="L-4", recruitment_title="New role", active=True))
    assert client.get("/api/jobs").json["total"] == 2
    invalidate_jobs_cache()
    assert client.get("/api/jobs").json["total"] == 3


def test_apply_and_withdraw(client):
    _login(client, "worker@example.com")
    job_id = _job_id(client, "L-1")

    r = client.post("/api/worker/jobs/apply", json={"jobId": job_id})
    assert r.status_code == 201
    assert r.json["application"]["status"] == "PENDING"

    # Applying again is idempotent.
    r = client.post("/api/worker/jobs/apply", json={"jobId": job_id})
    assert r.status_code == 200

    r = client.get("/api/worker/jobs")
    by_id = {j["id"]: j for j in r.json["jobs"]}
    assert by_id[job_id]["applicationStatus"] == "PENDING"

    r = client.patch("/api/worker/jobs/apply", json={"jobId": job_id})
    assert r.status_code == 200
    assert r.json["application"]["status"] == "WITHDRAWN"

    r = client.patch("/api/worker/jobs/apply", json={"jobId": job_id})
    assert r.status_code == 409

    # Re-applying after withdrawal reopens the application.
    r = client.post("/api/worker/jobs/apply", json={"jobId": job_id})
    assert r.status_code == 200
    assert r.json["application"]["status"] == "PENDING"

    r = client.get("/api/worker/applications")
    assert r.json["total"] == 1


def test_apply_errors(client):
    _login(client, "worker@example.com")
    assert client.post("/api/worker/jobs/apply", json={}).status_code == 400
    assert client.post("/api/worker/jobs/apply", json={"jobId": 9999}).status_code == 404
    r = client.post("/api/worker/jobs/apply", json={"jobId": _job_id(client, "L-3")})
    assert r.status_code == 410
    assert client.patch("/api/worker/jobs/apply", json={"jobId": _job_id(client, "L-2")}).status_code == 404


def test_only_workers_can_apply(client):
    assert client.post("/api/worker/jobs/apply", json={"jobId": 1}).status_code == 401
    _login(client, "client@example.com")
    assert client.post("/api/worker/jobs/apply", json={"jobId": _job_id(client, "L-1")}).status_code == 403
