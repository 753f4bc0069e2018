import io
from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.models import Base, Notification, Organization, OrganizationMember, User
from app.portal.modules.projects.models import Project
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
        dev = User(email="dev@example.com", name="Dev", password_hash=generate_password_hash("pw"), role="DEV", is_active=True)
        owner = User(email="owner@acme.org", name="Olive", password_hash=generate_password_hash("pw"), role="CLIENT", is_active=True)
        stranger = User(email="stranger@example.com", name="Stranger", password_hash=generate_password_hash("pw"), role="CLIENT", is_active=True)
        acme = Organization(name="Acme")
        empty = Organization(name="Empty")
        s.add_all([dev, owner, stranger, acme, empty])
        s.flush()
        s.add(OrganizationMember(organization_id=acme.id, user_id=owner.id, role="OWNER"))
        s.add_all([Project(organization_id=acme.id, name="Acme Site"), Project(organization_id=empty.id, name="Orphan Site")])
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email):
    r = client.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['token']}"}


def _project_id(app, name):
    with session_scope(app) as s:
        return s.query(Project).filter(Project.name == name).one().id


def _create(client, headers, project_id, **extra):
    body = {"projectId": project_id, "title": "Send your logo", "description": "SVG preferred"}
    body.update(extra)
    return client.post("/api/admin/tasks/client", json=body, headers=headers)


def test_create_task_notifies_client(client, app):
    dev = _login(client, "dev@example.com")
    r = _create(client, dev, None)
    assert r.status_code == 400
    assert r.json["error"] == "Project ID, title, and description are required"

    r = _create(client, dev, _project_id(app, "Orphan Site"))
    assert r.status_code == 400
    assert r.json["error"] == "No client found for this project"

    r = _create(client, dev, _project_id(app, "Acme Site"), dueDate="2026-11-01", requiresUpload=True)
    assert r.status_code == 201
    task = r.json["task"]
    assert task["status"] == "pending"
    assert task["projectName"] == "Acme Site"
    assert task["dueDate"] == "2026-11-01"

    owner = _login(client, "owner@acme.org")
    r = client.get("/api/notifications", headers=owner)
    assert r.json["unreadCount"] == 1
    n = r.json["notifications"][0]
    assert n["type"] == "TASK_ASSIGNED"
    assert n["link"] == f"/client/tasks/{task['id']}"

    r = client.post(f"/api/notifications/{n['id']}/read", headers=owner)
    assert r.json["notification"]["read"] is True
    assert client.get("/api/notifications", headers=owner).json["unreadCount"] == 0

    stranger = _login(client, "stranger@example.com")
    assert client.post(f"/api/notifications/{n['id']}/read", headers=stranger).status_code == 404


def test_task_ordering_and_updates(client, app):
    dev = _login(client, "dev@example.com")
    pid = _project_id(app, "Acme Site")
    first = _create(client, dev, pid, title="First").json["task"]["id"]
    second = _create(client, dev, pid, title="Second").json["task"]["id"]

    r = client.patch("/api/admin/tasks/client", json={"taskId": first, "status": "completed"}, headers=dev)
    assert r.status_code == 200
    assert r.json["task"]["completedAt"]

    r = client.patch("/api/admin/tasks/client", json={"taskId": second, "status": "in_progress"}, headers=dev)
    assert r.json["task"]["status"] == "in_progress"

    # unknown statuses are ignored
    r = client.patch("/api/admin/tasks/client", json={"taskId": second, "status": "exploded"}, headers=dev)
    assert r.json["task"]["status"] == "in_progress"

    r = client.get(f"/api/admin/tasks/client?projectId={pid}", headers=dev)
    assert [t["title"] for t in r.json["tasks"]] == ["Second", "First"]

    r = client.patch("/api/admin/tasks/client", json={"taskId": first, "status": "pending"}, headers=dev)
    assert r.json["task"]["completedAt"] is None

    assert client.patch("/api/admin/tasks/client", json={}, headers=dev).status_code == 400
    assert client.delete("/api/admin/tasks/client?taskId=999", headers=dev).status_code == 404
    assert client.delete(f"/api/admin/tasks/client?taskId={second}", headers=dev).status_code == 200


def test_client_completes_task_with_upload(client, app):
    dev = _login(client, "dev@example.com")
    task_id = _create(client, dev, _project_id(app, "Acme Site"), requiresUpload=True).json["task"]["id"]

    owner = _login(client, "owner@acme.org")
    r = client.get("/api/client/tasks", headers=owner)
    assert [t["id"] for t in r.json["tasks"]] == [task_id]

    r = client.post(f"/api/client/tasks/{task_id}/complete", headers=owner)
    assert r.status_code == 400
    assert r.json["error"] == "This task requires a file upload"

    r = client.post(
        f"/api/client/tasks/{task_id}/complete",
        data={"file": (io.BytesIO(b"<svg/>"), "logo.svg")},
        headers=owner,
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    assert r.json["task"]["status"] == "completed"
    assert r.json["task"]["submissionFilename"] == "logo.svg"

    with session_scope(app) as s:
        key = s.get(ClientTask, task_id).submission_storage_key
    assert key.startswith(f"tasks/{task_id}/")
    assert (Path(app.config["LOCAL_STORAGE_ROOT"]) / key).read_bytes() == b"<svg/>"

    r = client.post(f"/api/client/tasks/{task_id}/complete", headers=owner)
    assert r.status_code == 400
    assert r.json["error"] == "Task is already completed"


def test_strangers_cannot_see_tasks(client, app):
    dev = _login(client, "dev@example.com")
    task_id = _create(client, dev, _project_id(app, "Acme Site")).json["task"]["id"]

    stranger = _login(client, "stranger@example.com")
    assert client.get("/api/client/tasks", headers=stranger).json["tasks"] == []
    assert client.post(f"/api/client/tasks/{task_id}/complete", headers=stranger).status_code == 404

    with session_scope(app) as s:
        assert s.query(Notification).count() == 1
