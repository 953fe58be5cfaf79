import io

import pytest
from werkzeug.security import generate_password_hash

from app.remonta import create_app, ratelimit
from app.remonta.db import session_scope
from app.remonta.models import Base, User
from app.remonta.modules.compliance.catalog import required_types
from app.remonta.modules.compliance.models import VerificationRequirement
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
        worker = User(email="worker@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        worker.roles.append(get_or_create_role(s, "worker"))
        other = User(email="other@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        other.roles.append(get_or_create_role(s, "worker"))
        s.add_all([admin, worker, other])
        s.flush()
        s.add(WorkerProfile(user_id=worker.id, first_name="Wanda", last_name="Worker", mobile="0412345678"))
        s.add(WorkerProfile(user_id=other.id, first_name="Otto", last_name="Other", mobile="0412345670"))

    return app.test_client()


def _login(client, email, password="pw"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _upload(client, requirement_type, filename="check.pdf", content_type="application/pdf", data=b"%PDF-1.4 test"):
    return client.post(
        f"/api/worker/compliance/{requirement_type}",
        data={"file": (io.BytesIO(data), filename, content_type), "expiry_date": "2030-01-31"},
        content_type="multipart/form-data",
    )


def _worker_profile_id(client, email="worker@example.com"):
    with session_scope(client.application) as s:
        user = s.query(User).filter(User.email == email).one()
        return s.query(WorkerProfile).filter(WorkerProfile.user_id == user.id).one().id


def test_upload_moves_worker_in_progress(client):
    _login(client, "worker@example.com")
    r = client.get("/api/worker/compliance")
    assert r.status_code == 200
    assert r.json["verificationStatus"] == "NOT_STARTED"
    assert set(r.json["missingRequired"]) == set(required_types())

    r = _upload(client, "police-check")
    assert r.status_code == 201, r.json
    assert r.json["requirement"]["status"] == "SUBMITTED"
    assert r.json["requirement"]["expiryDate"] == "2030-01-31"

    r = client.get("/api/worker/compliance/police-check")
    assert r.json["requirement"]["hasDocument"] is True
    assert client.get("/api/worker/compliance").json["verificationStatus"] == "IN_PROGRESS"


def test_upload_validation(client):
    _login(client, "worker@example.com")
    assert _upload(client, "not-a-real-requirement").status_code == 404
    r = _upload(client, "police-check", filename="script.exe", content_type="application/octet-stream")
    assert r.status_code == 400
    r = _upload(client, "police-check", data=b"")
    assert r.status_code == 400
    r = client.post("/api/worker/compliance/police-check", data={}, content_type="multipart/form-data")
    assert r.status_code == 400


def test_submit_requires_every_required_document(client):
    _login(client, "worker@example.com")
    _upload(client, "police-check")

    r = client.post("/api/worker/verification/submit")
    assert r.status_code == 400
    assert "police-check" not in r.json["missing"]
    assert "worker-screening-check" in r.json["missing"]

    for t in required_types():
        if t != "police-check":
            assert _upload(client, t).status_code == 201

    r = client.post("/api/worker/verification/submit")
    assert r.status_code == 200
    assert r.json["verificationStatus"] == "PENDING_REVIEW"

    r = client.post("/api/worker/verification/submit")
    assert r.status_code == 400


def test_admin_review_and_publish(client):
    _login(client, "worker@example.com")
    for t in required_types():
        _upload(client, t)
    client.post("/api/worker/verification/submit")
    client.post("/api/auth/logout")

    worker_id = _worker_profile_id(client)
    _login(client, "admin@example.com")

    r = client.get("/api/admin/verification?status=PENDING_REVIEW")
    assert r.status_code == 200

    # Publishing before approval is refused.
    r = client.post(f"/api/admin/compliance/{worker_id}/publish", json={"published": True})
    assert r.status_code == 400

    r = client.post(f"/api/admin/verification/{worker_id}/reject", json={})
    assert r.status_code == 400

    r = client.post(f"/api/admin/verification/{worker_id}/approve", json={"notes": "All good"})
    assert r.status_code == 200

    with session_scope(client.application) as s:
        profile = s.get(WorkerProfile, worker_id)
        assert profile.verification_status == "APPROVED"
        assert profile.is_published is True
        statuses = {r.status for r in s.query(VerificationRequirement).filter_by(worker_profile_id=worker_id)}
        assert statuses == {"APPROVED"}


def test_approved_document_is_immutable(client):
    _login(client, "worker@example.com")
    _upload(client, "police-check")
    client.post("/api/auth/logout")

    worker_id = _worker_profile_id(client)
    with session_scope(client.application) as s:
        doc_id = s.query(VerificationRequirement).filter_by(worker_profile_id=worker_id).one().id

    _login(client, "admin@example.com")
    r = client.post(f"/api/admin/contractors/{worker_id}/compliance/{doc_id}/reject", json={})
    assert r.status_code == 400
    r = client.post(f"/api/admin/contractors/{worker_id}/compliance/{doc_id}/approve")
    assert r.status_code == 200
    assert r.json["changed"] is True
    r = client.post(f"/api/admin/contractors/{worker_id}/compliance/{doc_id}/approve")
    assert r.json["changed"] is False
    client.post("/api/auth/logout")

    _login(client, "worker@example.com")
    assert _upload(client, "police-check").status_code == 400
    assert client.delete("/api/worker/compliance/police-check").status_code == 400


def test_document_download_is_owner_or_admin_only(client):
    _login(client, "worker@example.com")
    _upload(client, "police-check", data=b"%PDF-1.4 secret")
    client.post("/api/auth/logout")

    with session_scope(client.application) as s:
        doc_id = s.query(VerificationRequirement).one().id

    _login(client, "other@example.com")
    assert client.get(f"/api/compliance/documents/{doc_id}/download").status_code == 403
    client.post("/api/auth/logout")

    _login(client, "worker@example.com")
    r = client.get(f"/api/compliance/documents/{doc_id}/download")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 secret"
    client.post("/api/auth/logout")

    _login(client, "admin@example.com")
    assert client.get(f"/api/compliance/documents/{doc_id}/download").status_code == 200


def test_admin_reset_clears_document(client):
    _login(client, "worker@example.com")
    _upload(client, "police-check")
    client.post("/api/auth/logout")
    worker_id = _worker_profile_id(client)
    with session_scope(client.application) as s:
        doc_id = s.query(VerificationRequirement).one().id

    _login(client, "admin@example.com")
    r = client.post(f"/api/admin/contractors/{worker_id}/compliance/{doc_id}/reset")
    assert r.status_code == 200
    assert r.json["requirement"]["status"] == "PENDING"
    assert r.json["requirement"]["hasDocument"] is False

    r = client.post(
        f"/api/admin/contractors/{worker_id}/compliance/{doc_id}/update-expiry", json={"expiryDate": "31/01/2030"}
    )
    assert r.status_code == 400


def _single_doc(client):
    _login(client, "worker@example.com")
    _upload(client, "police-check")
    client.post("/api/auth/logout")
    worker_id = _worker_profile_id(client)
    with session_scope(client.application) as s:
        doc_id = s.query(VerificationRequirement).one().id
    _login(client, "admin@example.com")
    return f"/api/admin/contractors/{worker_id}/compliance/{doc_id}"


def test_reject_after_approval_and_repeat_reject(client):
    base = _single_doc(client)
    assert client.post(f"{base}/approve").status_code == 200

    r = client.post(f"{base}/reject", json={"reason": "Certificate expired"})
    assert r.status_code == 200
    assert r.json["changed"] is True
    assert r.json["requirement"]["status"] == "REJECTED"
    assert r.json["requirement"]["rejectionReason"] == "Certificate expired"
    assert r.json["requirement"]["approvedAt"] is None

    r = client.post(f"{base}/reject", json={"reason": "Still expired"})
    assert r.status_code == 200
    assert r.json["changed"] is False
    assert r.json["requirement"]["rejectionReason"] == "Certificate expired"

    # Rejected documents can be approved again.
    r = client.post(f"{base}/approve")
    assert r.json["changed"] is True
    assert r.json["requirement"]["status"] == "APPROVED"


def test_pending_document_cannot_be_reviewed(client):
    base = _single_doc(client)
    assert client.post(f"{base}/reset").status_code == 200

    r = client.post(f"{base}/approve")
    assert r.status_code == 400
    r = client.post(f"{base}/reject", json={"reason": "Nothing to review"})
    assert r.status_code == 400

    with session_scope(client.application) as s:
        assert s.query(VerificationRequirement).one().status == "PENDING"


def test_update_expiry(client):
    base = _single_doc(client)
    r = client.post(f"{base}/update-expiry", json={"expiryDate": "2031-06-30"})
    assert r.status_code == 200
    assert r.json["requirement"]["expiryDate"] == "2031-06-30"

    assert client.post(f"{base}/update-expiry", json={}).status_code == 400
    assert client.post(f"{base}/update-expiry", json={"expiryDate": 20310630}).status_code == 400

    with session_scope(client.application) as s:
        assert s.query(VerificationRequirement).one().expiry_date.isoformat() == "2031-06-30"


def _upload_vehicle(client, filename="licence.png", content_type="image/png", data=b"\x89PNG\r\n\x1a\nfake"):
    return client.post(
        "/api/upload/vehicle-photo",
        data={"file": (io.BytesIO(data), filename, content_type)},
        content_type="multipart/form-data",
    )


def test_vehicle_photo_lifecycle(client):
    _login(client, "worker@example.com")
    assert client.get("/api/worker/vehicle-photo").json == {"photoUrl": None}
    # Deleting a photo that was never uploaded is not an error.
    assert client.delete("/api/worker/vehicle-photo").status_code == 200

    r = _upload_vehicle(client, filename="licence.pdf", content_type="application/pdf", data=b"%PDF-1.4 test")
    assert r.status_code == 400

    r = _upload_vehicle(client)
    assert r.status_code == 201, r.json
    url = r.json["photoUrl"]
    assert url.startswith("/api/compliance/documents/")
    assert r.json["requirement"]["status"] == "SUBMITTED"
    assert client.get("/api/worker/vehicle-photo").json["photoUrl"] == url
    assert client.get(url).status_code == 200

    # The licence photo is optional and never blocks verification.
    assert "vehicle-drivers-license" not in client.get("/api/worker/compliance").json["missingRequired"]

    assert client.delete("/api/worker/vehicle-photo").status_code == 200
    assert client.get("/api/worker/vehicle-photo").json == {"photoUrl": None}
    with session_scope(client.application) as s:
        assert s.query(VerificationRequirement).count() == 0


def test_approved_vehicle_photo_cannot_be_deleted(client):
    _login(client, "worker@example.com")
    _upload_vehicle(client)
    client.post("/api/auth/logout")
    worker_id = _worker_profile_id(client)
    with session_scope(client.application) as s:
        doc_id = s.query(VerificationRequirement).one().id
    _login(client, "admin@example.com")
    assert client.post(f"/api/admin/contractors/{worker_id}/compliance/{doc_id}/approve").status_code == 200
    client.post("/api/auth/logout")

    _login(client, "worker@example.com")
    assert client.delete("/api/worker/vehicle-photo").status_code == 400
    assert _upload_vehicle(client).status_code == 400
    assert client.get("/api/worker/vehicle-photo").json["photoUrl"] is not None


def test_admin_filters_and_document_filtered_contractors(client):
    base = _single_doc(client)
    r = client.get("/api/admin/filters")
    assert r.status_code == 200
    assert r.json["documentStatuses"] == ["PENDING", "SUBMITTED", "APPROVED", "REJECTED"]
    assert "vehicle-drivers-license" in {t["type"] for t in r.json["requirementTypes"]}
    assert [c["value"] for c in r.json["documentCategories"]] == ["mandatory", "additional", "qualification"]
    assert {f["value"] for f in r.json["documentSubmissionFilters"]} == {
        "with_documents",
        "without_documents",
        "all_approved",
    }
    assert r.json["stats"] == {"totalWorkers": 2, "withDocuments": 1, "withoutDocuments": 1, "allApproved": 0}

    assert client.post(f"{base}/approve").status_code == 200
    assert client.get("/api/admin/filters").json["stats"]["allApproved"] == 1

    def names(query):
        r = client.get(f"/api/admin/contractors?{query}")
        assert r.status_code == 200, r.json
        return [c["name"] for c in r.json["contractors"]]

    assert names("documents=with_documents") == ["Wanda Worker"]
    assert names("documents=without_documents") == ["Otto Other"]
    assert names("documents=all_approved") == ["Wanda Worker"]
    assert names("documentStatus=approved&requirementType=police-check") == ["Wanda Worker"]
    assert names("documentStatus=submitted") == []
    assert client.get("/api/admin/contractors?documents=bogus").status_code == 400
    assert client.get("/api/admin/contractors?requirementType=nope").status_code == 400


def test_filters_are_admin_only(client):
    _login(client, "worker@example.com")
    assert client.get("/api/admin/filters").status_code == 403
