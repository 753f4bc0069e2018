import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.mailer import ResendError
from app.portal.models import Base, User
from app.portal.modules.newsletter import routes as newsletter_routes
from app.portal.modules.newsletter.models import Newsletter, NewsletterSubscriber
from app.portal.modules.newsletter.routes import subscribe_limiter
from app.portal.modules.newsletter.service import send_newsletter, validate_newsletter


class FakeResend:
    def __init__(self, fail_batches=()):
        self.batches = []
        self.fail_batches = set(fail_batches)

    def send_batch(self, messages):
        self.batches.append(messages)
        if len(self.batches) in self.fail_batches:
            raise ResendError("HTTP 500 from Resend: upstream")
        return len(messages)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("NEWSLETTER_BATCH_SIZE", "2")
    monkeypatch.setenv("NEWSLETTER_BATCH_DELAY_SECONDS", "0")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "RESEND_API_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    login_limiter.reset()
    subscribe_limiter.reset()

    with session_scope(app) as s:
        s.add_all(
            [
                User(email="staff@example.com", name="Sam", password_hash=generate_password_hash("pw"), role="STAFF", is_active=True),
                User(email="cfo@example.com", name="Casey", password_hash=generate_password_hash("pw"), role="CFO", is_active=True),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email):
    r = client.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['token']}"}


def _subscribers(app, *emails, unsubscribed=()):
    with session_scope(app) as s:
        for e in emails:
            s.add(NewsletterSubscriber(email=e, subscribed=True))
        for e in unsubscribed:
            s.add(NewsletterSubscriber(email=e, subscribed=False))


def test_subscribe_flow(client, app):
    r = client.post("/api/newsletter/subscribe", json={"email": "reader@example.org", "company": "Spam LLC"})
    assert r.status_code == 400
    assert r.json["error"] == "Invalid submission"

    r = client.post("/api/newsletter/subscribe", json={"email": "nope"})
    assert r.status_code == 400
    assert r.json["error"] == "Valid email is required"

    r = client.post("/api/newsletter/subscribe", json={"email": " Reader@Example.org "})
    assert r.status_code == 200
    assert r.json == {"message": "Successfully subscribed to newsletter", "subscribed": True}

    r = client.post("/api/newsletter/subscribe", json={"email": "reader@example.org"})
    assert r.status_code == 400
    assert r.json["error"] == "You are already subscribed to our newsletter"

    r = client.get("/api/newsletter/unsubscribe?email=READER@example.org")
    assert r.status_code == 200
    assert r.json["subscribed"] is False
    assert client.get("/api/newsletter/unsubscribe").status_code == 400

    r = client.post("/api/newsletter/subscribe", json={"email": "reader@example.org"})
    assert r.status_code == 200

    with session_scope(app) as s:
        sub = s.query(NewsletterSubscriber).one()
        assert sub.email == "reader@example.org"
        assert sub.subscribed is True
        assert sub.unsubscribed_at is None


def test_subscribe_rate_limit(client):
    for i in range(5):
        client.post("/api/newsletter/subscribe", json={"email": f"r{i}@example.org"})
    r = client.post("/api/newsletter/subscribe", json={"email": "late@example.org"})
    assert r.status_code == 429


def test_validate_newsletter():
    assert validate_newsletter({"title": "Spring update", "content": "Ten chars at least"}) == []
    assert validate_newsletter({"title": "", "content": "short"}) == [
        "Title must be between 1 and 500 characters",
        "Content must be between 10 and 50000 characters",
    ]
    assert validate_newsletter({"title": "x", "content": "long enough body", "status": "SENT"}) == [
        "Invalid status. Must be one of: DRAFT, PUBLISHED"
    ]


def test_admin_create_and_list(client):
    staff = _login(client, "staff@example.com")
    r = client.post("/api/admin/newsletter", json={"title": "", "content": "x"}, headers=staff)
    assert r.status_code == 400

    for title in ("March", "April", "May"):
        r = client.post("/api/admin/newsletter", json={"title": title, "content": f"{title} news and notes"}, headers=staff)
        assert r.status_code == 201
        assert r.json["data"]["status"] == "DRAFT"
        assert r.json["data"]["slug"].startswith(title.lower() + "-")

    r = client.get("/api/admin/newsletter?page=2&limit=2", headers=staff)
    assert r.status_code == 200
    assert r.json["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(r.json["data"]) == 1

    cfo = _login(client, "cfo@example.com")
    assert client.get("/api/admin/newsletter", headers=cfo).status_code == 403


def test_send_newsletter_in_batches(app):
    _subscribers(app, "a@example.org", "b@example.org", "c@example.org", "d@example.org", "e@example.org", unsubscribed=("gone@example.org",))
    fake = FakeResend(fail_batches={2})
    pauses = []

    with session_scope(app) as s:
        nl = Newsletter(title="Issue 1", slug="issue-1", content="<p>Hello</p>", status="DRAFT")
        s.add(nl)
        s.flush()
        report = send_newsletter(s, nl, fake, app_url="https://studio.example", batch_size=2, delay_seconds=1.5, sleep=pauses.append)
        assert nl.status == "SENT"
        assert nl.sent_at is not None
        assert nl.published_at is not None
        assert nl.recipients_count == 3
        assert nl.failed_count == 2

    assert report.to_dict() == {"recipients": 5, "sent": 3, "failed": 2, "batches": 3}
    assert pauses == [1.5, 1.5]
    assert [len(b) for b in fake.batches] == [2, 2, 1]
    to, subject, html = fake.batches[0][0]
    assert (to, subject) == ("a@example.org", "Issue 1")
    assert "unsubscribe?email=a%40example.org" in html


def test_send_route(client, app, monkeypatch):
    _subscribers(app, "a@example.org", "b@example.org", "c@example.org")
    staff = _login(client, "staff@example.com")
    nl_id = client.post("/api/admin/newsletter", json={"title": "Fall", "content": "Fall news and notes"}, headers=staff).json["data"]["id"]

    r = client.post(f"/api/admin/newsletter/{nl_id}/send", headers=staff)
    assert r.status_code == 503
    assert r.json["error"] == "Email is not configured"

    fake = FakeResend()
    monkeypatch.setattr(newsletter_routes, "resend_from_config", lambda config: fake)

    r = client.post(f"/api/admin/newsletter/{nl_id}/send", headers=staff)
    assert r.status_code == 200
    assert r.json["report"] == {"recipients": 3, "sent": 3, "failed": 0, "batches": 2}
    assert r.json["data"]["status"] == "SENT"
    assert r.json["data"]["recipientsCount"] == 3

    r = client.post(f"/api/admin/newsletter/{nl_id}/send", headers=staff)
    assert r.status_code == 409
    assert len(fake.batches) == 2

    assert client.post("/api/admin/newsletter/999/send", headers=staff).status_code == 404


def test_subscribe_rejects_non_string_email(client):
    for email in (12345, ["a@example.org"], {"email": "a@example.org"}):
        r = client.post("/api/newsletter/subscribe", json={"email": email})
        assert r.status_code == 400
        assert r.json["error"] == "Valid email is required"


def test_batches_never_exceed_resend_limit(app):
    _subscribers(app, *[f"r{i}@example.org" for i in range(150)])
    fake = FakeResend()
    with session_scope(app) as s:
        nl = Newsletter(title="Big issue", slug="big-issue", content="<p>Hi</p>", status="DRAFT")
        s.add(nl)
        s.flush()
        report = send_newsletter(s, nl, fake, app_url="https://studio.example", batch_size=500, delay_seconds=0, sleep=lambda _: None)

    assert [len(b) for b in fake.batches] == [100, 50]
    assert report.sent == 150
