from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.mailer import EmailResult
from app.portal.models import Base, Organization, OrganizationMember, User
from app.portal.modules.invoices import service as invoice_service
from app.portal.modules.invoices.models import Invoice
from app.portal.modules.invoices.service import money, next_invoice_number, validate_items
from app.portal.modules.projects.models import Project


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "RESEND_API_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    login_limiter.reset()

    with session_scope(app) as s:
        cfo = User(email="cfo@example.com", name="Cass", password_hash=generate_password_hash("pw"), role="CFO", is_active=True)
        owner = User(email="owner@acme.org", name="Olive", password_hash=generate_password_hash("pw"), role="CLIENT", is_active=True)
        acme = Organization(name="Acme")
        s.add_all([cfo, owner, acme])
        s.flush()
        s.add(OrganizationMember(organization_id=acme.id, user_id=owner.id, role="OWNER"))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def outbox(monkeypatch):
    sent = []

    def fake_send(to, subject, html, text=None):
        sent.append({"to": to, "subject": subject, "html": html})
        return EmailResult(ok=True, id=f"em_{len(sent)}")

    monkeypatch.setattr(invoice_service, "send_email", fake_send)
    return sent


def _login(client, email):
    r = client.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['token']}"}


def _org_id(app):
    with session_scope(app) as s:
        return s.query(Organization).one().id


def _create(client, headers, org_id, **extra):
    body = {
        "organizationId": org_id,
        "title": "Website build",
        "items": [
            {"description": "Design", "quantity": 10, "rateCents": 7500},
            {"description": "Hosting setup", "quantity": 1.5, "rateCents": 3333},
        ],
        "taxRate": 8.25,
        "dueDate": "2026-12-01",
    }
    body.update(extra)
    return client.post("/api/admin/invoices", json=body, headers=headers)


def test_money_formatting():
    assert money(0) == "$0.00"
    assert money(123456) == "$1,234.56"


def test_validate_items_computes_amounts():
    items, errors = validate_items([{"description": "A", "quantity": 3, "rateCents": 1000, "amountCents": 1}])
    assert errors == []
    assert items[0]["amount_cents"] == 3000

    _, errors = validate_items([])
    assert errors == ["At least one line item is required"]
    _, errors = validate_items([{"description": "", "quantity": 0, "rateCents": -5}])
    assert errors == [
        "Item 1: description is required",
        "Item 1: quantity must be greater than 0",
        "Item 1: rateCents cannot be negative",
    ]


def test_invoice_numbers_restart_monthly(app):
    with session_scope(app) as s:
        org_id = s.query(Organization).one().id
        now = datetime(2026, 5, 3)
        assert next_invoice_number(s, now) == "INV-202605-0001"
        s.add(Invoice(number="INV-202605-0007", organization_id=org_id, title="x", subtotal_cents=0, tax_cents=0, total_cents=0))
        s.flush()
        assert next_invoice_number(s, now) == "INV-202605-0008"
        assert next_invoice_number(s, datetime(2026, 6, 1)) == "INV-202606-0001"


def test_create_invoice_totals_server_side(client, app):
    cfo = _login(client, "cfo@example.com")
    r = _create(client, cfo, _org_id(app))
    assert r.status_code == 201
    inv = r.json["invoice"]
    assert inv["status"] == "DRAFT"
    assert inv["number"].startswith("INV-")
    # 75000 + round(1.5 * 3333 = 4999.5) = 80000
    assert inv["subtotalCents"] == 80000
    assert inv["taxCents"] == 6600
    assert inv["totalCents"] == 86600
    assert [i["amountCents"] for i in inv["items"]] == [75000, 5000]


def test_create_invoice_validation(client, app):
    cfo = _login(client, "cfo@example.com")
    assert _create(client, cfo, None).status_code == 400
    assert _create(client, cfo, _org_id(app), items=[]).status_code == 400
    r = _create(client, cfo, _org_id(app), taxRate=150)
    assert r.status_code == 400
    assert r.json["error"] == "taxRate must be between 0 and 100"
    r = _create(client, cfo, _org_id(app), dueDate="next week")
    assert r.status_code == 400
    assert _create(client, cfo, 4242).status_code == 404


def test_send_and_pay_flow(client, app, outbox):
    cfo = _login(client, "cfo@example.com")
    inv_id = _create(client, cfo, _org_id(app)).json["invoice"]["id"]

    owner = _login(client, "owner@acme.org")
    assert client.get("/api/client/invoices", headers=owner).json["invoices"] == []

    r = client.post(f"/api/admin/invoices/{inv_id}/send", headers=cfo)
    assert r.status_code == 200
    assert r.json["invoice"]["status"] == "SENT"
    assert outbox[0]["to"] == "owner@acme.org"
    assert "$866.00" in outbox[0]["subject"]

    r = client.get("/api/client/invoices", headers=owner)
    assert [i["id"] for i in r.json["invoices"]] == [inv_id]

    r = client.post(f"/api/admin/invoices/{inv_id}/mark-paid", json={"reason": "check #1001"}, headers=cfo)
    assert r.status_code == 200
    assert r.json["invoice"]["status"] == "PAID"
    assert r.json["invoice"]["paidAt"]
    assert outbox[-1]["subject"].startswith("Payment received")

    r = client.post(f"/api/admin/invoices/{inv_id}/mark-paid", headers=cfo)
    assert r.json["alreadyPaid"] is True

    r = client.post(f"/api/admin/invoices/{inv_id}/send", headers=cfo)
    assert r.status_code == 400
    assert r.json["error"] == "Cannot send a paid invoice"


def test_send_reports_email_failure(client, app):
    cfo = _login(client, "cfo@example.com")
    inv_id = _create(client, cfo, _org_id(app)).json["invoice"]["id"]
    r = client.post(f"/api/admin/invoices/{inv_id}/send", headers=cfo)
    assert r.status_code == 502
    assert r.json["error"] == "Failed to send invoice: Email is not configured"
    with session_scope(app) as s:
        assert s.get(Invoice, inv_id).status == "DRAFT"


def test_update_invoice(client, app):
    cfo = _login(client, "cfo@example.com")
    inv_id = _create(client, cfo, _org_id(app)).json["invoice"]["id"]
    r = client.patch(f"/api/admin/invoices/{inv_id}", json={"status": "lost"}, headers=cfo)
    assert r.status_code == 400
    r = client.patch(f"/api/admin/invoices/{inv_id}", json={"status": "cancelled", "title": "Void"}, headers=cfo)
    assert r.json["invoice"]["status"] == "CANCELLED"
    assert r.json["invoice"]["title"] == "Void"
    r = client.get("/api/admin/invoices?status=CANCELLED", headers=cfo)
    assert len(r.json["invoices"]) == 1
    assert "items" not in r.json["invoices"][0]


@pytest.mark.parametrize("quantity", ["NaN", "sNaN", "Infinity", "-Infinity"])
def test_validate_items_rejects_non_finite_quantity(quantity):
    items, errors = validate_items([{"description": "Design", "quantity": quantity, "rateCents": 100}])
    assert items == []
    assert errors == ["Item 1: quantity and rateCents must be numbers"]


def test_create_invoice_rejects_non_finite_quantity(client, app):
    cfo = _login(client, "cfo@example.com")
    r = _create(client, cfo, _org_id(app), items=[{"description": "Design", "quantity": "Infinity", "rateCents": 100}])
    assert r.status_code == 400
    assert r.json["error"] == "Item 1: quantity and rateCents must be numbers"


def test_create_invoice_links_only_own_projects(client, app):
    with session_scope(app) as s:
        acme = s.query(Organization).one()
        beta = Organization(name="Beta")
        s.add(beta)
        s.flush()
        own, foreign = Project(organization_id=acme.id, name="Acme Site"), Project(organization_id=beta.id, name="Beta Site")
        s.add_all([own, foreign])
        s.flush()
        acme_id, own_id, foreign_id = acme.id, own.id, foreign.id

    cfo = _login(client, "cfo@example.com")
    for project_id in (foreign_id, 9999):
        r = _create(client, cfo, acme_id, projectId=project_id)
        assert r.status_code == 400
        assert r.json["error"] == "Project not found for this organization"

    r = _create(client, cfo, acme_id, projectId="site")
    assert r.status_code == 400
    assert r.json["error"] == "projectId must be an integer id"
    assert _create(client, cfo, "acme").status_code == 400

    r = _create(client, cfo, acme_id, projectId=own_id)
    assert r.status_code == 201
    assert r.json["invoice"]["projectId"] == own_id
    with session_scope(app) as s:
        assert s.query(Invoice).count() == 1


def test_invoice_email_escapes_client_text(client, app, outbox):
    cfo = _login(client, "cfo@example.com")
    inv_id = _create(
        client,
        cfo,
        _org_id(app),
        title="<script>alert(1)</script>",
        items=[{"description": "<b>Design</b>", "quantity": 1, "rateCents": 100}],
    ).json["invoice"]["id"]

    assert client.post(f"/api/admin/invoices/{inv_id}/send", headers=cfo).status_code == 200
    html = outbox[0]["html"]
    assert "<script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "&lt;b&gt;Design&lt;/b&gt;" in html
