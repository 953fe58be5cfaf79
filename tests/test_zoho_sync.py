import json

import pytest
from werkzeug.security import generate_password_hash

from app.remonta import create_app, ratelimit
from app.remonta.db import session_scope
from app.remonta.models import Base, User
from app.remonta.modules.jobs.models import Job
from app.remonta.modules.jobs.service import invalidate_jobs_cache
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.modules.zoho_sync import admin as zoho_admin
from app.remonta.modules.zoho_sync import api as zoho_api
from app.remonta.modules.zoho_sync import service as zoho_service
from app.remonta.modules.zoho_sync.mapping import contractor_fields, parse_name, parse_zoho_bool
from app.remonta.modules.zoho_sync.models import Contractor, ZohoSyncRun
from app.remonta.modules.zoho_sync.zoho_client import ZohoError, clear_token_cache
from app.remonta.security import hmac_sha256_hex
from app.remonta.storage import LocalStorage, StorageError
from app.remonta.seed import get_or_create_role, seed_all


class FakeZoho:
    def __init__(self):
        self.leads = []
        self.records = {}
        self.photos = {}
        self.created = []
        self.fail = False
        self.photo_downloads = 0

    def _check(self):
        if self.fail:
            raise ZohoError("Zoho API 500: upstream unavailable")

    def get_leads_by_stage(self, stage):
        self._check()
        return list(self.leads)

    def list_records(self, module, **kwargs):
        self._check()
        return list(self.records.values())

    def get_record(self, module, record_id):
        self._check()
        return self.records.get(record_id)

    def download_photo(self, module, record_id):
        self.photo_downloads += 1
        return self.photos.get(record_id)

    def create_record(self, module, record):
        self._check()
        self.created.append((module, record))
        return {"id": "C-100"}


@pytest.fixture()
def fake_zoho(monkeypatch):
    fake = FakeZoho()
    monkeypatch.setattr(zoho_api, "client_from_config", lambda config: fake)
    monkeypatch.setattr(zoho_admin, "client_from_config", lambda config: fake)
    return fake


@pytest.fixture()
def client(tmp_path, monkeypatch, fake_zoho):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    monkeypatch.setenv("SYNC_API_SECRET", "sync-secret")
    monkeypatch.setenv("ZOHO_WEBHOOK_SECRET", "hook-secret")
    monkeypatch.setenv("ZOHO_WEBHOOK_SIGNATURE_SECRET", "")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    for k in ("SMTP_HOST", "GEOMAP_API", "N8N_WEBHOOK_URL"):
        monkeypatch.setenv(k, "")
    ratelimit.reset()
    clear_token_cache()
    invalidate_jobs_cache()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_all(s)
        admin = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(get_or_create_role(s, "admin"))
        worker = User(email="worker@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        worker.roles.append(get_or_create_role(s, "worker"))
        s.add_all([admin, worker])
        s.flush()
        s.add(
            WorkerProfile(
                user_id=worker.id,
                first_name="Wanda",
                last_name="Worker",
                mobile="0412345678",
                services=["Support Worker"],
            )
        )
        s.add(Job(zoho_id="OLD-1", recruitment_title="Stale role", active=True))

    return app.test_client()


def _sync_headers():
    return {"x-api-secret": "sync-secret"}


def _lead(zoho_id, title, state="NSW"):
    return {
        "id": zoho_id,
        "Lead_Status": "Recruitment End",
        "Recruitment_Title": title,
        "Service": "Support Worker",
        "City": "Parramatta",
        "State": state,
        "Created_Time": "2026-09-01T09:30:00+10:00",
    }


def test_sync_jobs_requires_secret(client):
    assert client.post("/api/sync-jobs").status_code == 401
    r = client.post("/api/sync-jobs", headers={"x-api-secret": "wrong"})
    assert r.status_code == 401
    assert r.json["success"] is False


def test_sync_jobs_upserts_and_deactivates(client, fake_zoho):
    fake_zoho.leads = [_lead("L-1", "Support Worker - Parramatta"), _lead("L-2", "Cleaner", state="VIC")]

    # Warm the cache so the sync has something to invalidate.
    assert client.get("/api/jobs").json["total"] == 1

    r = client.post("/api/sync-jobs", headers=_sync_headers())
    assert r.status_code == 200, r.json
    assert r.json["stats"] == {"created": 2, "updated": 0, "deactivated": 1, "errors": 0}
    assert r.json["totalJobs"] == 2

    r = client.get("/api/jobs")
    assert {j["zohoId"] for j in r.json["jobs"]} == {"L-1", "L-2"}

    with session_scope(client.application) as s:
        job = s.query(Job).filter(Job.zoho_id == "L-1").one()
        # Stored as naive UTC.
        assert job.posted_at.hour == 23
        assert s.query(Job).filter(Job.zoho_id == "OLD-1").one().active is False

    fake_zoho.leads = [_lead("L-1", "Support Worker - Parramatta (updated)")]
    r = client.post("/api/sync-jobs", headers=_sync_headers())
    assert r.json["stats"] == {"created": 0, "updated": 1, "deactivated": 1, "errors": 0}

    r = client.get("/api/sync-jobs")
    assert r.json["isSyncing"] is False
    assert r.json["stats"]["updated"] == 1


def test_sync_jobs_zoho_failure_changes_nothing(client, fake_zoho):
    fake_zoho.fail = True
    r = client.post("/api/sync-jobs", headers=_sync_headers())
    assert r.status_code == 502
    assert r.json["success"] is False
    with session_scope(client.application) as s:
        assert s.query(Job).filter(Job.zoho_id == "OLD-1").one().active is True
        run = s.query(ZohoSyncRun).one()
        assert run.kind == "jobs"
        assert run.error_count == 1

    r = client.get("/api/sync-jobs")
    assert r.json["lastSyncTime"] is not None
    assert "upstream unavailable" in r.json["message"]
    assert r.json["stats"]["errors"] == 1


def test_sync_contractors_zoho_failure_records_run(client, fake_zoho):
    fake_zoho.fail = True
    r = client.post("/api/sync-contractors", headers=_sync_headers())
    assert r.status_code == 502
    with session_scope(client.application) as s:
        run = s.query(ZohoSyncRun).filter(ZohoSyncRun.kind == "contractors").one()
        assert run.error_count == 1
        assert "upstream unavailable" in run.message


def test_sync_contractors_survives_photo_storage_failure(client, fake_zoho, monkeypatch):
    def _broken_put(self, key, data, *, content_type=None):
        raise StorageError("bucket unreachable")

    monkeypatch.setattr(LocalStorage, "put_bytes", _broken_put)
    fake_zoho.records = {
        "Z-1": {"id": "Z-1", "First_Name": "Ada", "Last_Name": "Lovelace", "State": "VIC", "Record_Image": "photo-id"},
        "Z-2": {"id": "Z-2", "First_Name": "Grace", "Last_Name": "Hopper", "State": "NSW"},
    }
    fake_zoho.photos = {"Z-1": b"\xff\xd8\xff fake jpeg"}

    r = client.post("/api/sync-contractors", headers=_sync_headers())
    assert r.status_code == 200, r.json
    assert r.json["stats"]["created"] == 2

    with session_scope(client.application) as s:
        ada = s.query(Contractor).filter(Contractor.zoho_id == "Z-1").one()
        assert ada.profile_image_key is None
    assert client.get("/api/contractors").json["total"] == 2


def test_sync_jobs_conflict_while_running(client):
    lock = zoho_service._sync_locks["jobs"]
    lock.acquire()
    try:
        r = client.post("/api/sync-jobs", headers=_sync_headers())
        assert r.status_code == 409
        assert client.get("/api/sync-jobs").json["isSyncing"] is True
    finally:
        lock.release()


def test_sync_contractors_soft_deletes_missing(client, fake_zoho):
    fake_zoho.records = {
        "Z-1": {
            "id": "Z-1",
            "First_Name": "Ada",
            "Last_Name": "Lovelace",
            "City": "Geelong",
            "State": "VIC",
            "Postal_Zip_Code": "3220",
            "Services_Offered": ["Support Worker"],
            "Do_you_drive_and_have_access_to_vehicle": ["Yes"],
            "Record_Image": "photo-id",
        },
        "Z-2": {"id": "Z-2", "Full_Name": "Hopper, Grace", "State": "NSW"},
        "Z-3": {"id": "Z-3"},
    }
    fake_zoho.photos = {"Z-1": b"\xff\xd8\xff fake jpeg"}

    assert client.post("/api/sync-contractors").status_code == 401
    r = client.post("/api/sync-contractors", headers={"Authorization": "Bearer sync-secret"})
    assert r.status_code == 200, r.json
    assert r.json["stats"]["created"] == 2
    assert r.json["stats"]["errors"] == 1

    r = client.get("/api/contractors?state=vic")
    assert r.json["total"] == 1
    ada = r.json["contractors"][0]
    assert ada["hasVehicleAccess"] is True
    assert ada["hasPhoto"] is True

    r = client.get(f"/api/contractors/{ada['id']}/photo")
    assert r.status_code == 200
    assert r.data == b"\xff\xd8\xff fake jpeg"

    # Second run: photo already stored, Z-2 has gone from Zoho.
    del fake_zoho.records["Z-2"]
    r = client.post("/api/sync-contractors", headers=_sync_headers())
    assert r.json["stats"]["deactivated"] == 1
    assert fake_zoho.photo_downloads == 1
    assert client.get("/api/contractors").json["total"] == 1


def test_webhook_upsert_and_delete(client, fake_zoho):
    fake_zoho.records = {"Z-9": {"id": "Z-9", "First_Name": "Linus", "Last_Name": "T", "State": "QLD"}}

    r = client.post("/api/webhooks/zoho-contractor", json={"ids": ["Z-9"], "operation": "insert"})
    assert r.status_code == 401

    r = client.post(
        "/api/webhooks/zoho-contractor",
        json={"ids": "Z-9,Z-missing", "operation": "update"},
        headers={"x-webhook-secret": "hook-secret"},
    )
    assert r.status_code == 200
    assert r.json["processed"] == 1
    assert r.json["errors"] == 1
    assert r.json["success"] is False

    # Form-encoded with the secret as a token field.
    r = client.post("/api/webhooks/zoho-contractor", data={"ids": "Z-9", "operation": "delete", "token": "hook-secret"})
    assert r.status_code == 200
    assert r.json["results"][0]["action"] == "deleted"
    with session_scope(client.application) as s:
        assert s.query(Contractor).filter(Contractor.zoho_id == "Z-9").one().deleted_at is not None

    r = client.post(
        "/api/webhooks/zoho-contractor",
        json={"ids": ["Z-9"], "operation": "merge"},
        headers={"x-webhook-secret": "hook-secret"},
    )
    assert r.status_code == 400


def test_webhook_signature_checked_when_configured(client, fake_zoho, monkeypatch):
    client.application.config["ZOHO_WEBHOOK_SIGNATURE_SECRET"] = "sign-me"
    fake_zoho.records = {"Z-5": {"id": "Z-5", "First_Name": "Mo", "Last_Name": "B"}}
    body = json.dumps({"ids": ["Z-5"], "operation": "insert"}).encode("utf-8")
    headers = {"x-webhook-secret": "hook-secret", "Content-Type": "application/json"}

    r = client.post("/api/webhooks/zoho-contractor", data=body, headers={**headers, "x-zoho-signature": "bad"})
    assert r.status_code == 401

    sig = hmac_sha256_hex("sign-me", body)
    r = client.post("/api/webhooks/zoho-contractor", data=body, headers={**headers, "x-zoho-signature": sig})
    assert r.status_code == 200
    assert r.json["processed"] == 1


def test_submit_worker_to_zoho(client, fake_zoho):
    with session_scope(client.application) as s:
        worker_id = s.query(WorkerProfile).one().id

    client.post("/api/auth/login", json={"email": "admin@example.com", "password": "pw"})
    r = client.post(f"/api/zoho/submit-contractor/{worker_id}")
    assert r.status_code == 201
    assert r.json["zohoId"] == "C-100"
    module, record = fake_zoho.created[0]
    assert module == "Contacts"
    assert record["Email"] == "worker@example.com"
    assert record["Title_Role"] == "Support Worker"

    assert client.post(f"/api/zoho/submit-contractor/{worker_id}").status_code == 409
    assert client.post("/api/zoho/submit-contractor/9999").status_code == 404


def test_parse_name_variants():
    assert parse_name({"First_Name": "Ada", "Last_Name": "Lovelace"}) == ("Ada", "Lovelace")
    assert parse_name({"Full_Name": "Hopper, Grace"}) == ("Grace", "Hopper")
    assert parse_name({"Name": "Grace Brewster Hopper"}) == ("Grace", "Brewster Hopper")
    assert parse_name({"First_Name": "Madonna"}) == ("Madonna", "N/A")
    assert parse_name({"Last_Name": "Prince"}) == ("N/A", "Prince")
    assert parse_name({"First_Name": "  "}) is None


def test_zoho_field_parsing():
    assert parse_zoho_bool(["Yes"]) is True
    assert parse_zoho_bool("no") is False
    assert parse_zoho_bool("maybe") is None
    fields = contractor_fields(
        {"id": "Z-1", "First_Name": "A", "Last_Name": "B", "Years_of_Experience": "250", "Email": "A@Example.com"}
    )
    assert fields["years_of_experience"] is None
    assert fields["email"] == "a@example.com"
    assert contractor_fields({"id": "Z-2"}) is None
