import pytest

from app.remonta import create_app, ratelimit
from app.remonta.modules.cms import api as cms_api
from app.remonta.modules.cms.sanity_client import SanityClient, SanityError
from app.remonta.modules.notifications import email as mailer


class FakeSanity:
    def __init__(self, results=None, error=None):
        self.results = results or {}
        self.error = error
        self.calls = []

    def query(self, groq, params=None):
        self.calls.append((groq, params))
        if self.error:
            raise self.error
        for marker, result in self.results.items():
            if marker in groq:
                return result
        return None


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
    monkeypatch.setenv("CONTACT_EMAIL", "inbox@example.com")
    ratelimit.reset()
    cms_api.clear_cache()

    app = create_app()
    return app.test_client()


def _use_sanity(monkeypatch, fake):
    monkeypatch.setattr(cms_api, "client_from_config", lambda config: fake)
    return fake


def test_articles_are_cached(client, monkeypatch):
    fake = _use_sanity(
        monkeypatch,
        FakeSanity({'_type == "article" && defined': [{"_id": "a1", "title": "Choosing a support worker", "slug": "choosing"}]}),
    )
    r = client.get("/api/articles?limit=5")
    assert r.status_code == 200
    assert r.json["total"] == 1
    assert r.json["articles"][0]["slug"] == "choosing"
    assert fake.calls[0][1] == {"limit": 5}

    client.get("/api/articles?limit=5")
    assert len(fake.calls) == 1


def test_article_detail_not_found(client, monkeypatch):
    _use_sanity(monkeypatch, FakeSanity({"slug.current == $slug": {"_id": "a1", "slug": "choosing", "body": []}}))
    r = client.get("/api/articles/choosing")
    assert r.status_code == 200
    assert r.json["article"]["slug"] == "choosing"

    _use_sanity(monkeypatch, FakeSanity())
    assert client.get("/api/articles/missing").status_code == 404


def test_cms_failure_is_502(client, monkeypatch):
    _use_sanity(monkeypatch, FakeSanity(error=SanityError("HTTP 500 from Sanity")))
    r = client.get("/api/featured-profiles")
    assert r.status_code == 502
    assert r.json["error"] == "Content is temporarily unavailable"


def test_unconfigured_sanity_raises():
    with pytest.raises(SanityError):
        SanityClient(project_id="").query("*[]")
    assert SanityClient(project_id="p1").base_url == "https://p1.apicdn.sanity.io/v2024-01-01"
    assert SanityClient(project_id="p1", token="t").base_url.startswith("https://p1.api.sanity.io/")


def _contact_payload(**overrides):
    payload = {
        "email": "visitor@example.com",
        "firstName": "Vi",
        "lastName": "Sitor",
        "subject": "Finding a worker",
        "description": "Do you have workers in Geelong?",
    }
    payload.update(overrides)
    return payload


def test_send_contact_without_smtp_still_succeeds(client):
    r = client.post("/api/send-contact", json=_contact_payload())
    assert r.status_code == 200
    assert r.json["success"] is True


def test_send_contact_delivers_to_inbox(client, monkeypatch):
    sent = []

    def _capture(to, subject, template, *, reply_to=None, **context):
        sent.append((to, subject, template, reply_to, context))
        return True

    monkeypatch.setattr(mailer, "send_email", _capture)
    r = client.post("/api/send-contact", json=_contact_payload())
    assert r.status_code == 200
    to, subject, template, reply_to, context = sent[0]
    assert to == "inbox@example.com"
    assert subject == "Contact form: Finding a worker"
    assert template == "contact"
    assert reply_to == "visitor@example.com"
    assert context["support_type"] == "Community Support"


def test_send_contact_validation(client):
    r = client.post("/api/send-contact", json=_contact_payload(email="not-an-email", description=""))
    assert r.status_code == 400
    assert "email" in r.json["details"]
    assert "description" in r.json["details"]


def test_send_feedback_smtp_failure(client, monkeypatch):
    def _fail(*args, **kwargs):
        raise mailer.EmailError("Failed to send email: connection refused")

    monkeypatch.setattr(mailer, "send_email", _fail)
    r = client.post(
        "/api/send-feedback", json={"firstName": "Fay", "email": "fay@example.com", "message": "Great service"}
    )
    assert r.status_code == 502
