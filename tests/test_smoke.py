import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.models import Base, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    login_limiter.reset()

    with session_scope(app) as s:
        s.add(User(email="admin@example.com", name="Admin", password_hash=generate_password_hash("pw"), role="ADMIN", is_active=True))

    return app.test_client()


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
    assert r.json == {"error": "Not found"}


def test_login_and_admin_access(client):
    # Anonymous should be rejected
    r = client.get("/api/admin/projects")
    assert r.status_code == 401

    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "ADMIN"
    assert r.json["user"]["dashboardUrl"] == "/admin"

    # The session cookie alone is enough for reads
    r = client.get("/api/admin/projects")
    assert r.status_code == 200
    assert r.json["projects"] == []
