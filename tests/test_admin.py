from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

from app.remonta import create_app, ratelimit
from app.remonta.db import session_scope
from app.remonta.models import Base, User
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.modules.workers.profile_pdf import display_name, pdf_filename
from app.remonta.storage import LocalStorage
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
    for k in ("SMTP_HOST", "GEOMAP_API", "N8N_WEBHOOK_URL"):
        monkeypatch.setenv(k, "")
    ratelimit.reset()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_all(s)
        admin = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(get_or_create_role(s, "admin"))
        other_admin = User(email="admin2@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        other_admin.roles.append(get_or_create_role(s, "admin"))
        worker = User(email="worker@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        worker.roles.append(get_or_create_role(s, "worker"))
        s.add_all([admin, other_admin, worker])
        s.flush()
        s.add(
            WorkerProfile(
                user_id=worker.id,
                first_name="Wanda",
                last_name="Worker",
                mobile="0412345678",
                verification_status="APPROVED",
                is_published=True,
            )
        )

    return app.test_client()


def _login(client, email, password="pw"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _user_id(client, email):
    with session_scope(client.application) as s:
        return s.query(User).filter(User.email == email).one().id


def _worker_profile_id(client):
    with session_scope(client.application) as s:
        return s.query(WorkerProfile).one().id


def test_impersonation_round_trip(client):
    admin_id = _user_id(client, "admin@example.com")
    worker_id = _user_id(client, "worker@example.com")
    _login(client, "admin@example.com")

    r = client.post("/api/admin/impersonate", json={"userId": _user_id(client, "admin2@example.com")})
    assert r.status_code == 403
    assert client.post("/api/admin/impersonate", json={}).status_code == 400
    assert client.post("/api/admin/impersonate", json={"userId": 9999}).status_code == 404

    r = client.post("/api/admin/impersonate", json={"userId": worker_id})
    assert r.status_code == 200

    r = client.get("/api/auth/me")
    assert r.json["user"]["email"] == "worker@example.com"
    assert r.json["user"]["impersonatedBy"] == admin_id

    # Admin endpoints follow the impersonated user's permissions.
    assert client.get("/api/admin/users").status_code == 403
    assert client.get("/dashboard/worker").status_code == 200

    r = client.post("/api/admin/impersonate/stop")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@example.com"
    assert "impersonatedBy" not in client.get("/api/auth/me").json["user"]
    assert client.post("/api/admin/impersonate/stop").status_code == 400

    r = client.get("/api/admin/audit?action=impersonate")
    actions = {e["action"] for e in r.json["events"]}
    assert actions == {"admin.impersonate_start", "admin.impersonate_stop"}


def test_audit_filters(client):
    _login(client, "worker@example.com")
    client.post("/api/auth/logout")
    _login(client, "admin@example.com")

    r = client.get("/api/admin/audit?action=auth.login&actor_email=WORKER")
    assert r.status_code == 200
    assert r.json["total"] == 1
    assert r.json["events"][0]["actorEmail"] == "worker@example.com"

    assert client.get("/api/admin/audit?date_from=2026-13-01").status_code == 400
    r = client.get("/api/admin/audit?date_from=2000-01-01&date_to=2000-01-02")
    assert r.json["total"] == 0


def test_users_list_filters(client):
    _login(client, "admin@example.com")
    r = client.get("/api/admin/users")
    assert r.json["total"] == 3

    r = client.get("/api/admin/users?role=worker")
    assert [u["email"] for u in r.json["users"]] == ["worker@example.com"]

    assert client.get("/api/admin/users?status=bogus").status_code == 400


def test_contractor_status_unpublishes_inactive_workers(client):
    worker_id = _worker_profile_id(client)
    _login(client, "admin@example.com")

    r = client.patch(f"/api/admin/contractors/{worker_id}/status", json={"status": "nope"})
    assert r.status_code == 400

    r = client.patch(f"/api/admin/contractors/{worker_id}/status", json={"status": "suspended", "reason": "Expired check"})
    assert r.status_code == 200
    assert r.json["account"]["status"] == "SUSPENDED"
    assert r.json["isPublished"] is False

    assert client.get("/api/admin/contractors").json["total"] == 0
    r = client.get("/api/admin/contractors/inactive")
    assert r.json["contractors"][0]["accountStatus"] == "SUSPENDED"
    client.post("/api/auth/logout")

    assert _login(client, "worker@example.com").status_code == 401


def test_csrf_required_for_authenticated_writes(client):
    client.application.config["CSRF_ENABLED"] = True
    worker_id = _worker_profile_id(client)

    # Login itself is exempt.
    assert _login(client, "admin@example.com").status_code == 200

    r = client.patch(f"/api/admin/contractors/{worker_id}/status", json={"status": "INACTIVE"})
    assert r.status_code == 400
    assert r.json["error"] == "CSRF token missing or invalid."

    token = client.get("/api/auth/csrf").json["csrfToken"]
    r = client.patch(
        f"/api/admin/contractors/{worker_id}/status",
        json={"status": "INACTIVE"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 200


def test_setup_link_lets_user_choose_password(client, monkeypatch):
    from app.remonta.modules.notifications import email as mailer

    links = {}

    def _capture(email, token, *, first_name=None):
        links[email] = (token, first_name)
        return False

    monkeypatch.setattr(mailer, "send_password_setup", _capture)
    worker_user_id = _user_id(client, "worker@example.com")
    with session_scope(client.application) as s:
        s.get(User, worker_user_id).email_verified_at = None

    _login(client, "admin@example.com")
    assert client.post("/api/admin/users/9999/setup-link").status_code == 404
    r = client.post(f"/api/admin/users/{worker_user_id}/setup-link")
    assert r.status_code == 200
    assert r.json["emailSent"] is False
    token, first_name = links["worker@example.com"]
    assert first_name == "Wanda"
    client.post("/api/auth/logout")

    # Setup tokens only work on the setup endpoint.
    r = client.post("/api/auth/reset-password", json={"token": token, "password": "Chosen123"})
    assert r.status_code == 400
    r = client.post("/api/auth/setup-password", json={"token": token, "password": "Chosen123"})
    assert r.status_code == 200

    assert _login(client, "worker@example.com", "Chosen123").status_code == 200
    with session_scope(client.application) as s:
        assert s.get(User, worker_user_id).email_verified_at is not None


def test_contractor_pdf_export(client):
    worker_id = _worker_profile_id(client)
    # An unreadable photo is left out of the PDF rather than failing the export.
    LocalStorage(root=Path.cwd() / "storage").put_bytes("workers/photo.jpg", b"not really a jpeg")
    with session_scope(client.application) as s:
        profile = s.get(WorkerProfile, worker_id)
        profile.services = ["Support Worker"]
        profile.languages = ["English", "Greek"]
        profile.has_vehicle = "yes"
        profile.hobbies = "Bushwalking & gardening"
        profile.photos = ["workers/photo.jpg"]

    _login(client, "worker@example.com")
    assert client.get(f"/api/admin/contractors/{worker_id}/pdf").status_code == 403
    client.post("/api/auth/logout")

    _login(client, "admin@example.com")
    r = client.get(f"/api/admin/contractors/{worker_id}/pdf")
    assert r.status_code == 200
    assert r.mimetype == "application/pdf"
    assert r.data.startswith(b"%PDF")
    assert "Wanda_Worker_Profile.pdf" in r.headers["Content-Disposition"]

    assert client.get("/api/admin/contractors/9999/pdf").status_code == 404

    r = client.get("/api/admin/audit?action=admin.profile_pdf")
    assert r.status_code == 200
    assert r.json["total"] == 1


def test_pdf_names():
    profile = WorkerProfile(first_name="Mary Ann", last_name="Smith")
    assert display_name(profile) == "Mary Ann S."
    assert pdf_filename(profile) == "Mary_Ann_Smith_Profile.pdf"
    assert display_name(WorkerProfile(first_name="Cher", last_name="")) == "Cher"
