import pytest
from werkzeug.security import generate_password_hash

from app.remonta import create_app, ratelimit
from app.remonta.db import session_scope
from app.remonta.models import Base, User
from app.remonta.modules.clients.models import ClientProfile
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
    for k in ("SMTP_HOST", "GEOMAP_API", "N8N_WEBHOOK_URL", "ZOHO_CLIENT_ID", "ZOHO_CLIENT_SECRET", "ZOHO_REFRESH_TOKEN"):
        monkeypatch.setenv(k, "")
    ratelimit.reset()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_all(s)
        admin = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(get_or_create_role(s, "admin"))
        worker = User(email="worker@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        worker.roles.append(get_or_create_role(s, "worker"))
        client_user = User(email="client@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        client_user.roles.append(get_or_create_role(s, "client"))
        s.add_all([admin, worker, client_user])
        s.flush()
        s.add(WorkerProfile(user_id=worker.id, first_name="Wanda", last_name="Worker", mobile="0412345678"))
        s.add(ClientProfile(user_id=client_user.id, first_name="Cal", last_name="Client", mobile="0412345679"))

    return app.test_client()


def _login(client, email, password="pw"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_unknown_route_is_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["error"] == "Not found"


def test_login_me_logout(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json["error"] == "Unauthorized"

    r = _login(client, "ADMIN@example.com")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@example.com"
    assert r.json["user"]["dashboard"] == "/admin"

    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert "admin" in r.json["user"]["roles"]

    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_login_rejects_bad_password(client):
    r = _login(client, "admin@example.com", "wrong")
    assert r.status_code == 401
    assert r.json["error"] == "Invalid email or password"


def test_login_rate_limited_after_five_failures(client):
    for _ in range(5):
        assert _login(client, "admin@example.com", "wrong").status_code == 401
    r = _login(client, "admin@example.com", "pw")
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "300"


def test_inactive_user_cannot_login(client):
    app = client.application
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "worker@example.com").one()
        u.is_active = False
        u.status = "SUSPENDED"
    assert _login(client, "worker@example.com").status_code == 401


def test_dashboards_are_role_gated(client):
    assert client.get("/dashboard/worker").status_code == 401

    _login(client, "worker@example.com")
    r = client.get("/dashboard/worker/profile")
    assert r.status_code == 200
    assert r.json["section"] == "profile"
    assert r.json["profile"]["firstName"] == "Wanda"
    assert "setupProgress" in r.json
    assert client.get("/dashboard/client").status_code == 403
    assert client.get("/dashboard/coordinator").status_code == 403
    client.post("/api/auth/logout")

    _login(client, "client@example.com")
    r = client.get("/dashboard/client")
    assert r.status_code == 200
    assert r.json["profile"]["firstName"] == "Cal"
    assert r.json["participants"] == 0
    assert client.get("/dashboard/worker").status_code == 403


def test_admin_console_requires_permission(client):
    _login(client, "worker@example.com")
    assert client.get("/api/admin/").status_code == 403
    client.post("/api/auth/logout")

    _login(client, "admin@example.com")
    r = client.get("/api/admin/")
    assert r.status_code == 200
    assert r.json["dbConnected"] is True
    assert r.json["storageBackend"] == "local"
    assert r.json["zohoReady"] is False
    assert r.json["users"] == 3
