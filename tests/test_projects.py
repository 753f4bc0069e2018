import io
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.models import Base, Organization, OrganizationMember, SystemLog, User
from app.portal.modules.invoices.models import Invoice
from app.portal.modules.project_requests.models import ProjectRequest
from app.portal.modules.projects.models import Project, ProjectFile
from app.portal.modules.tasks.models import ClientTask


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    login_limiter.reset()

    with session_scope(app) as s:
        admin = User(email="admin@example.com", name="Admin", password_hash=generate_password_hash("pw"), role="ADMIN", is_active=True)
        owner = User(email="owner@acme.org", name="Olive", password_hash=generate_password_hash("pw"), role="CLIENT", is_active=True)
        other = User(email="other@beta.org", name="Otto", password_hash=generate_password_hash("pw"), role="CLIENT", is_active=True)
        acme = Organization(name="Acme", email="billing@acme.org")
        beta = Organization(name="Beta")
        s.add_all([admin, owner, other, acme, beta])
        s.flush()
        s.add_all(
            [
                OrganizationMember(organization_id=acme.id, user_id=owner.id, role="OWNER"),
                OrganizationMember(organization_id=beta.id, user_id=other.id, role="OWNER"),
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


def _org_id(app, name):
    with session_scope(app) as s:
        return s.query(Organization).filter(Organization.name == name).one().id


def test_create_validates_payload(client, app):
    admin = _login(client, "admin@example.com")
    r = client.post("/api/admin/projects", json={"organizationId": _org_id(app, "Acme")}, headers=admin)
    assert r.status_code == 400
    assert r.json["error"] == "name is required"

    r = client.post("/api/admin/projects", json={"name": "Site", "organizationId": 9999}, headers=admin)
    assert r.status_code == 404

    r = client.post(
        "/api/admin/projects",
        json={"name": "Site", "organizationId": _org_id(app, "Acme"), "status": "bogus"},
        headers=admin,
    )
    assert r.status_code == 400
    assert r.json["error"].startswith("Invalid status")


def test_clients_only_see_their_organization(client, app):
    admin = _login(client, "admin@example.com")
    r = client.post("/api/admin/projects", json={"name": "Acme Site", "organizationId": _org_id(app, "Acme")}, headers=admin)
    acme_id = r.json["project"]["id"]
    client.post("/api/admin/projects", json={"name": "Beta Site", "organizationId": _org_id(app, "Beta")}, headers=admin)

    owner = _login(client, "owner@acme.org")
    r = client.get("/api/client/projects", headers=owner)
    assert [p["name"] for p in r.json["projects"]] == ["Acme Site"]
    assert client.get(f"/api/client/projects/{acme_id}", headers=owner).status_code == 200

    other = _login(client, "other@beta.org")
    assert client.get(f"/api/client/projects/{acme_id}", headers=other).status_code == 404


def test_update_records_changes(client, app):
    admin = _login(client, "admin@example.com")
    pid = client.post("/api/admin/projects", json={"name": "Site", "organizationId": _org_id(app, "Acme")}, headers=admin).json["project"]["id"]
    r = client.patch(f"/api/admin/projects/{pid}", json={"status": "in_progress", "budgetCents": 500000}, headers=admin)
    assert r.status_code == 200
    assert r.json["project"]["status"] == "IN_PROGRESS"
    assert r.json["project"]["budgetCents"] == 500000

    with session_scope(app) as s:
        assert s.query(SystemLog).filter(SystemLog.action == "project.edit").count() == 1


def test_delete_cleans_up_related_rows(client, app):
    admin = _login(client, "admin@example.com")
    acme_id = _org_id(app, "Acme")
    pid = client.post("/api/admin/projects", json={"name": "Site", "organizationId": acme_id}, headers=admin).json["project"]["id"]

    r = client.post(
        f"/api/admin/projects/{pid}/files",
        data={"file": (io.BytesIO(b"logo bytes"), "logo.png")},
        headers=admin,
        content_type="multipart/form-data",
    )
    assert r.status_code == 201

    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == "owner@acme.org").one()
        s.add(Invoice(number="INV-202601-0001", organization_id=acme_id, project_id=pid, title="Build", status="SENT", subtotal_cents=100, tax_cents=0, total_cents=100))
        s.add(ClientTask(project_id=pid, title="Send logo", description="Upload your logo", assigned_to_user_id=owner.id))
        s.add(ProjectRequest(user_id=owner.id, organization_id=acme_id, title="New page", description="About us", status="SUBMITTED"))
        s.add(ProjectRequest(user_id=owner.id, organization_id=acme_id, title="Old page", description="Done", status="COMPLETED"))

    r = client.delete(f"/api/admin/projects/{pid}", headers=admin)
    assert r.status_code == 200
    summary = r.json["summary"]
    assert summary["files_deleted"] == 1
    assert summary["invoices_unlinked"] == 1
    assert summary["tasks_deleted"] == 1
    assert summary["requests_archived"] == 1

    with session_scope(app) as s:
        assert s.get(Project, pid) is None
        assert s.query(ProjectFile).count() == 0
        inv = s.query(Invoice).one()
        assert inv.project_id is None
        statuses = sorted(pr.status for pr in s.query(ProjectRequest).all())
        assert statuses == ["ARCHIVED", "COMPLETED"]

    assert client.delete(f"/api/admin/projects/{pid}", headers=admin).status_code == 404


def test_file_upload_requires_file(client, app):
    admin = _login(client, "admin@example.com")
    pid = client.post("/api/admin/projects", json={"name": "Site", "organizationId": _org_id(app, "Acme")}, headers=admin).json["project"]["id"]
    r = client.post(f"/api/admin/projects/{pid}/files", data={}, headers=admin, content_type="multipart/form-data")
    assert r.status_code == 400
    assert r.json["error"] == "File is required"


def test_delete_keeps_stored_files_until_commit(client, app, monkeypatch):
    admin = _login(client, "admin@example.com")
    pid = client.post("/api/admin/projects", json={"name": "Site", "organizationId": _org_id(app, "Acme")}, headers=admin).json["project"]["id"]
    r = client.post(
        f"/api/admin/projects/{pid}/files",
        data={"file": (io.BytesIO(b"brand kit"), "kit.zip")},
        headers=admin,
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    with session_scope(app) as s:
        stored = Path(app.config["LOCAL_STORAGE_ROOT"]) / s.query(ProjectFile).one().storage_key
    assert stored.exists()

    def failing_commit(self):
        raise OperationalError("COMMIT", {}, Exception("database went away"))

    with monkeypatch.context() as m:
        m.setattr(Session, "commit", failing_commit)
        r = client.delete(f"/api/admin/projects/{pid}", headers=admin)
    assert r.status_code == 500
    assert stored.exists()
    with session_scope(app) as s:
        assert s.get(Project, pid) is not None

    assert client.delete(f"/api/admin/projects/{pid}", headers=admin).status_code == 200
    assert not stored.exists()
