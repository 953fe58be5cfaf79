import pytest

from app.remonta import create_app, ratelimit
from app.remonta.db import session_scope
from app.remonta.models import AuditEvent, Base, User
from app.remonta.modules.clients.models import ClientProfile, Participant
from app.remonta.modules.notifications import email as mailer
from app.remonta.modules.task_queue.models import BackgroundJob
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.seed import seed_all


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    monkeypatch.setenv("SMS_DEV_MODE", "1")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    for k in ("SMTP_HOST", "GEOMAP_API", "N8N_WEBHOOK_URL"):
        monkeypatch.setenv(k, "")
    ratelimit.reset()

    sent_codes: dict[str, str] = {}

    def _capture_code(email, code, *, first_name=None):
        sent_codes[email] = code
        return False

    monkeypatch.setattr(mailer, "send_verification_code", _capture_code)

    app = create_app()
    app.sent_codes = sent_codes

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_all(s)

    return app.test_client()


def _worker_payload(**overrides):
    payload = {
        "email": "new.worker@example.com",
        "password": "Secret123",
        "firstName": "Nina",
        "lastName": "Nguyen",
        "mobile": "0412 345 678",
        "location": "Parramatta, NSW 2150",
        "languages": ["English", "Vietnamese"],
        "services": ["Support Worker"],
        "serviceSelections": [{"categoryId": "support-worker"}],
        "experience": "5 years in disability support",
        "consentProfileShare": True,
    }
    payload.update(overrides)
    return payload


def test_register_worker_creates_account_and_profile(client):
    r = client.post("/api/auth/register", json=_worker_payload())
    assert r.status_code == 201, r.json
    assert r.json["email"] == "new.worker@example.com"

    with session_scope(client.application) as s:
        user = s.query(User).filter(User.email == "new.worker@example.com").one()
        assert user.role_keys == ["worker"]
        assert user.email_verified_at is None
        profile = s.query(WorkerProfile).filter(WorkerProfile.user_id == user.id).one()
        assert profile.mobile == "0412345678"
        assert profile.state == "NSW"
        assert profile.postal_code == "2150"
        assert profile.verification_status == "NOT_STARTED"
        assert profile.is_published is False
        # No geocoding key configured: coordinates stay empty rather than failing the signup.
        assert profile.latitude is None
        assert s.query(AuditEvent).filter(AuditEvent.action == "account.register").count() == 1

    assert "new.worker@example.com" in client.application.sent_codes


def test_register_worker_rejects_non_australian_mobile(client):
    r = client.post("/api/auth/register", json=_worker_payload(mobile="+1 415 555 0100"))
    assert r.status_code == 400
    assert r.json["error"] == "Validation failed"
    assert "mobile" in r.json["details"]


def test_register_worker_rejects_weak_password(client):
    r = client.post("/api/auth/register", json=_worker_payload(password="short"))
    assert r.status_code == 400
    assert "password" in r.json["details"]


def test_register_duplicate_email_conflicts(client):
    assert client.post("/api/auth/register", json=_worker_payload()).status_code == 201
    r = client.post("/api/auth/register", json=_worker_payload(email="NEW.WORKER@example.com"))
    assert r.status_code == 409

    r = client.post("/api/auth/register-async", json=_worker_payload())
    assert r.status_code == 409


def test_verify_email_with_issued_code(client):
    client.post("/api/auth/register", json=_worker_payload())
    code = client.application.sent_codes["new.worker@example.com"]

    r = client.post("/api/auth/verify-email", json={"email": "new.worker@example.com", "code": "000000"})
    assert r.status_code == 400
    assert "attempt" in r.json["error"]

    r = client.post("/api/auth/verify-email", json={"email": "new.worker@example.com", "code": code})
    assert r.status_code == 200
    assert r.json["verified"] is True

    # Codes are single use.
    r = client.post("/api/auth/verify-email", json={"email": "new.worker@example.com", "code": code})
    assert r.status_code == 400

    with session_scope(client.application) as s:
        user = s.query(User).filter(User.email == "new.worker@example.com").one()
        assert user.email_verified_at is not None


def test_async_registration_is_queued_then_processed(client):
    r = client.post("/api/auth/register-async", json=_worker_payload())
    assert r.status_code == 202
    job_id = r.json["jobId"]
    assert r.json["status"] == "created"

    with session_scope(client.application) as s:
        job = s.get(BackgroundJob, job_id)
        assert "password" not in job.data["registration"]
        assert job.data["passwordHash"] != "Secret123"
        assert s.query(User).filter(User.email == "new.worker@example.com").count() == 0

    r = client.get(f"/api/auth/registration-status/{job_id}")
    assert r.json["state"] == "created"

    assert client.post("/api/workers/process-registrations").status_code == 401
    r = client.post("/api/workers/process-registrations", headers={"Authorization": "Bearer cron-secret"})
    assert r.status_code == 200
    assert r.json["completed"] == 1

    r = client.get(f"/api/auth/registration-status/{job_id}")
    assert r.json["state"] == "completed"
    assert r.json["result"]["email"] == "new.worker@example.com"

    # The queued password hash becomes the account password.
    r = client.post("/api/auth/login", json={"email": "new.worker@example.com", "password": "Secret123"})
    assert r.status_code == 200


def test_queued_duplicate_fails_permanently(client):
    r = client.post("/api/auth/register-async", json=_worker_payload())
    job_id = r.json["jobId"]
    assert client.post("/api/auth/register", json=_worker_payload()).status_code == 201

    r = client.post("/api/workers/process-registrations", headers={"Authorization": "Bearer cron-secret"})
    assert r.json["failed"] == 1
    r = client.get(f"/api/auth/registration-status/{job_id}")
    assert r.json["state"] == "failed"
    assert "already exists" in r.json["error"]


def test_registration_status_unknown_job(client):
    assert client.get("/api/auth/registration-status/nope").status_code == 404


def test_register_client_representative(client):
    payload = {
        "email": "parent@example.com",
        "password": "Secret123",
        "firstName": "Pat",
        "lastName": "Parent",
        "mobile": "0412000111",
        "isSelfManaged": False,
        "fundingType": "NDIS",
        "relationshipToClient": "PARENT",
        "clientFirstName": "Sam",
        "clientLastName": "Parent",
        "location": "Geelong VIC 3220",
        "servicesRequested": {"support-worker": {"categoryName": "Support Worker", "subCategories": []}},
        "consent": True,
    }
    r = client.post("/api/auth/register/client", json=payload)
    assert r.status_code == 201, r.json

    with session_scope(client.application) as s:
        profile = s.query(ClientProfile).one()
        assert profile.relationship_to_client == "PARENT"
        participant = s.query(Participant).one()
        assert participant.first_name == "Sam"
        assert participant.state == "VIC"
        assert participant.services_requested == ["Support Worker"]


def test_register_client_requires_representative_details(client):
    payload = {
        "email": "parent@example.com",
        "password": "Secret123",
        "firstName": "Pat",
        "lastName": "Parent",
        "mobile": "0412000111",
        "isSelfManaged": False,
        "fundingType": "NDIS",
        "location": "Geelong VIC 3220",
        "consent": True,
    }
    r = client.post("/api/auth/register/client", json=payload)
    assert r.status_code == 400


def test_register_coordinator_requires_consent(client):
    payload = {
        "email": "coord@example.com",
        "password": "Secret123",
        "firstName": "Cora",
        "lastName": "Ord",
        "mobile": "0412000222",
        "organization": "Care Co",
        "consent": False,
    }
    assert client.post("/api/auth/register/coordinator", json=payload).status_code == 400
    payload["consent"] = True
    assert client.post("/api/auth/register/coordinator", json=payload).status_code == 201


def test_sms_verification_dev_mode(client):
    r = client.post("/api/sms/send-verification", json={"mobile": "12345"})
    assert r.status_code == 400

    r = client.post("/api/sms/send-verification", json={"mobile": "0412 345 678"})
    assert r.status_code == 200
    assert r.json["devMode"] is True
    code = r.json["code"]

    r = client.post("/api/sms/verify-code", json={"mobile": "+61412345678", "code": code})
    assert r.status_code == 200
    assert r.json["verified"] is True


def test_password_reset_flow(client, monkeypatch):
    tokens = {}
    monkeypatch.setattr(mailer, "send_password_reset", lambda email, token: tokens.setdefault(email, token))
    client.post("/api/auth/register", json=_worker_payload())

    # Unknown accounts get the same answer and no token.
    r = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    assert r.status_code == 200
    assert tokens == {}

    client.post("/api/auth/forgot-password", json={"email": "New.Worker@example.com"})
    token = tokens["new.worker@example.com"]

    r = client.post("/api/auth/reset-password", json={"token": token, "password": "weak"})
    assert r.status_code == 400
    r = client.post("/api/auth/reset-password", json={"token": "not-a-token", "password": "Better456"})
    assert r.status_code == 400

    r = client.post("/api/auth/reset-password", json={"token": token, "password": "Better456"})
    assert r.status_code == 200
    # Tokens are single use.
    assert client.post("/api/auth/reset-password", json={"token": token, "password": "Other789A"}).status_code == 400

    assert client.post("/api/auth/login", json={"email": "new.worker@example.com", "password": "Secret123"}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "new.worker@example.com", "password": "Better456"}).status_code == 200


def test_resend_verification_issues_new_code(client):
    client.post("/api/auth/register", json=_worker_payload())
    r = client.post("/api/auth/resend-verification", json={"email": "new.worker@example.com"})
    assert r.status_code == 200
    code = client.application.sent_codes["new.worker@example.com"]

    r = client.post("/api/auth/verify-email", json={"email": "new.worker@example.com", "code": code})
    assert r.status_code == 200

    # Verified accounts are not sent another code.
    client.application.sent_codes.clear()
    client.post("/api/auth/resend-verification", json={"email": "new.worker@example.com"})
    assert client.application.sent_codes == {}


def test_welcome_email_sent_once_on_verification(client, monkeypatch):
    welcomed = []
    monkeypatch.setattr(mailer, "send_welcome", lambda email, *, first_name, role: welcomed.append((email, first_name, role)))
    client.post("/api/auth/register", json=_worker_payload())
    code = client.application.sent_codes["new.worker@example.com"]

    assert client.post("/api/auth/verify-email", json={"email": "new.worker@example.com", "code": code}).status_code == 200
    assert welcomed == [("new.worker@example.com", "Nina", "worker")]
