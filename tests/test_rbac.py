import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.models import Base, User
from app.portal.rbac import POLICIES, ROLES, dashboard_url, require_policy, role_display, user_has_permission


def test_policy_table_only_names_known_roles():
    for key, roles in POLICIES.items():
        assert roles <= set(ROLES), key


@pytest.mark.parametrize(
    "role,policy,allowed",
    [
        ("ADMIN", "admin.access", True),
        ("DESIGNER", "admin.access", True),
        ("CLIENT", "admin.access", False),
        ("CFO", "tasks.manage", False),
        ("DEV", "tasks.manage", True),
        ("CFO", "billing.manage", True),
        ("DEV", "billing.manage", False),
        ("STAFF", "content.manage", True),
        ("OUTREACH", "content.manage", False),
        ("BOARD", "board.access", True),
        ("STAFF", "board.access", False),
        ("ALUMNI", "community.access", True),
        ("CLIENT", "community.access", False),
    ],
)
def test_user_has_permission(role, policy, allowed):
    assert user_has_permission(role, policy) is allowed


def test_inactive_user_has_no_permissions():
    u = User(email="x@example.com", role="ADMIN", is_active=False)
    assert user_has_permission(u, "admin.access") is False
    assert user_has_permission(None, "admin.access") is False


def test_unknown_policy_is_an_error():
    with pytest.raises(KeyError):
        user_has_permission("ADMIN", "nope.nope")
    with pytest.raises(KeyError):
        require_policy("nope.nope")


def test_dashboard_and_labels():
    assert dashboard_url("CEO") == "/admin"
    assert dashboard_url("BOARD") == "/board"
    assert dashboard_url("COMMUNITY") == "/community"
    assert dashboard_url("CLIENT") == "/client"
    assert dashboard_url(None) == "/client"
    assert role_display("cfo") == "Chief Financial Officer"
    assert role_display("WHATEVER") == "User"


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    login_limiter.reset()

    with session_scope(app) as s:
        for role in ("CFO", "DEV", "CLIENT"):
            s.add(User(email=f"{role.lower()}@example.com", name=role, password_hash=generate_password_hash("pw"), role=role, is_active=True))
    return app.test_client()


def _login(client, email):
    r = client.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['token']}"}


def test_routes_enforce_policies(client):
    cfo = _login(client, "cfo@example.com")
    dev = _login(client, "dev@example.com")
    user = _login(client, "client@example.com")

    assert client.get("/api/admin/tasks/client", headers=cfo).status_code == 403
    assert client.get("/api/admin/tasks/client", headers=dev).status_code == 200
    assert client.get("/api/admin/invoices", headers=user).status_code == 403

    r = client.post("/api/admin/invoices", json={}, headers=dev)
    assert r.status_code == 403
    assert r.json["error"] == "Forbidden"

    r = client.post("/api/blog", json={"title": "x", "content": "y"}, headers=dev)
    assert r.status_code == 403
    assert r.json["error"] == "Unauthorized - Admin only"
