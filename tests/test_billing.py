import hashlib
import hmac
import json
import time

import pytest
import stripe
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.models import Base, Organization, User
from app.portal.modules.billing import routes as billing_routes
from app.portal.modules.donations.models import Donation
from app.portal.modules.hours.models import HourPack, MaintenancePlan
from app.portal.modules.hours.service import create_plan
from app.portal.modules.invoices.models import Invoice
from app.portal.modules.projects.models import Project

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "RESEND_API_KEY",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    login_limiter.reset()

    with session_scope(app) as s:
        s.add(User(email="cfo@example.com", name="Cass", password_hash=generate_password_hash("pw"), role="CFO", is_active=True))
        org = Organization(name="Acme", email="billing@acme.org")
        s.add(org)
        s.flush()
        project = Project(organization_id=org.id, name="Acme Site")
        s.add(project)
        s.flush()
        create_plan(s, project.id, "ESSENTIALS")
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email):
    r = client.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['token']}"}


def _plan_id(app):
    with session_scope(app) as s:
        return s.query(MaintenancePlan).one().id


def _checkout(plan_id, **overrides):
    checkout = {
        "id": "cs_test_1",
        "payment_status": "paid",
        "payment_intent": "pi_test_1",
        "metadata": {"type": "hour-pack", "packId": "SMALL", "planId": str(plan_id)},
    }
    checkout.update(overrides)
    return checkout


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def test_process_requires_ids_and_payments(client, app):
    cfo = _login(client, "cfo@example.com")
    r = client.post("/api/admin/hour-packs/process", json={}, headers=cfo)
    assert r.status_code == 400
    assert r.json["error"] == "Either sessionId or paymentIntentId is required"

    r = client.post("/api/admin/hour-packs/process", json={"sessionId": "cs_test_1"}, headers=cfo)
    assert r.status_code == 503


def test_process_hour_pack_is_idempotent(client, app, monkeypatch):
    app.config["PAYMENTS_ENABLED"] = True
    plan_id = _plan_id(app)
    monkeypatch.setattr(billing_routes, "retrieve_checkout_session", lambda sid, pi: _checkout(plan_id))
    cfo = _login(client, "cfo@example.com")

    r = client.post("/api/admin/hour-packs/process", json={"sessionId": "cs_test_1"}, headers=cfo)
    assert r.status_code == 201
    assert r.json["hourPack"]["hours"] == 5
    assert r.json["hourPack"]["packType"] == "SMALL"

    r = client.post("/api/admin/hour-packs/process", json={"paymentIntentId": "pi_test_1"}, headers=cfo)
    assert r.status_code == 200
    assert r.json["message"] == "Hour pack already processed"

    with session_scope(app) as s:
        assert s.query(HourPack).count() == 1


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"metadata": {"type": "donation"}}, "This is not an hour pack purchase"),
        ({"payment_status": "unpaid"}, "Payment status is unpaid, not paid"),
        ({"metadata": {"type": "hour-pack", "packId": "SMALL"}}, "Missing required metadata (packId or planId)"),
        ({"metadata": {"type": "hour-pack", "packId": "GIANT", "planId": "1"}}, "Invalid pack ID: GIANT"),
    ],
)
def test_process_rejects_bad_checkouts(client, app, monkeypatch, overrides, message):
    app.config["PAYMENTS_ENABLED"] = True
    plan_id = _plan_id(app)
    monkeypatch.setattr(billing_routes, "retrieve_checkout_session", lambda sid, pi: _checkout(plan_id, **overrides))
    cfo = _login(client, "cfo@example.com")
    r = client.post("/api/admin/hour-packs/process", json={"sessionId": "cs_test_1"}, headers=cfo)
    assert r.status_code == 400
    assert r.json["error"] == message


def test_process_unknown_plan_and_stripe_errors(client, app, monkeypatch):
    app.config["PAYMENTS_ENABLED"] = True
    cfo = _login(client, "cfo@example.com")

    monkeypatch.setattr(billing_routes, "retrieve_checkout_session", lambda sid, pi: _checkout(999))
    assert client.post("/api/admin/hour-packs/process", json={"sessionId": "x"}, headers=cfo).status_code == 404

    monkeypatch.setattr(billing_routes, "retrieve_checkout_session", lambda sid, pi: None)
    assert client.post("/api/admin/hour-packs/process", json={"paymentIntentId": "pi_x"}, headers=cfo).status_code == 404

    def boom(sid, pi):
        raise stripe.StripeError("network down")

    monkeypatch.setattr(billing_routes, "retrieve_checkout_session", boom)
    assert client.post("/api/admin/hour-packs/process", json={"sessionId": "x"}, headers=cfo).status_code == 502


def test_webhook_rejects_bad_signature(client, app):
    app.config["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}).encode()
    r = client.post("/api/webhooks/stripe", data=payload, headers={"Stripe-Signature": "t=1,v1=deadbeef"})
    assert r.status_code == 400
    assert r.json["error"] == "Invalid signature"

    r = client.post("/api/webhooks/stripe", data=payload, headers=_signed(payload, "whsec_other"))
    assert r.status_code == 400


def test_webhook_marks_invoice_paid(client, app):
    app.config["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    with session_scope(app) as s:
        org_id = s.query(Organization).one().id
        inv = Invoice(number="INV-202601-0001", organization_id=org_id, title="Build", status="SENT", subtotal_cents=100, tax_cents=0, total_cents=100)
        s.add(inv)
        s.flush()
        inv_id = inv.id

    event = {"id": "evt_2", "type": "invoice.paid", "data": {"object": {"id": "in_123", "metadata": {"invoice_id": str(inv_id)}}}}
    payload = json.dumps(event).encode()
    r = client.post("/api/webhooks/stripe", data=payload, headers=_signed(payload))
    assert r.status_code == 200
    assert r.json["received"] is True

    # replay
    assert client.post("/api/webhooks/stripe", data=payload, headers=_signed(payload)).status_code == 200

    with session_scope(app) as s:
        inv = s.get(Invoice, inv_id)
        assert inv.status == "PAID"
        assert inv.paid_at is not None


def test_webhook_completes_donations_and_hour_packs(client, app):
    plan_id = _plan_id(app)
    with session_scope(app) as s:
        d = Donation(name="Dana", email="dana@example.com", amount_cents=2500, frequency="ONE_TIME", status="PENDING")
        s.add(d)
        s.flush()
        donation_id = d.id

    events = [
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_don_1", "metadata": {"donation_id": str(donation_id)}}}},
        {"type": "checkout.session.completed", "data": {"object": _checkout(plan_id)}},
        {"type": "checkout.session.completed", "data": {"object": _checkout(plan_id)}},
        {"type": "customer.created", "data": {"object": {"id": "cus_1"}}},
    ]
    for event in events:
        r = client.post("/api/webhooks/stripe", json=event)
        assert r.status_code == 200

    with session_scope(app) as s:
        d = s.get(Donation, donation_id)
        assert d.status == "COMPLETED"
        assert d.stripe_payment_intent_id == "pi_don_1"
        assert s.query(HourPack).count() == 1


def test_webhook_failed_payment_marks_donation_failed(client, app):
    with session_scope(app) as s:
        d = Donation(name="Dana", email="dana@example.com", amount_cents=2500, frequency="MONTHLY", status="PENDING")
        s.add(d)
        s.flush()
        donation_id = d.id
    event = {"type": "payment_intent.payment_failed", "data": {"object": {"id": "pi_don_2", "metadata": {"donation_id": str(donation_id)}}}}
    assert client.post("/api/webhooks/stripe", json=event).status_code == 200
    with session_scope(app) as s:
        assert s.get(Donation, donation_id).status == "FAILED"


def test_webhook_requires_secret_in_production(client, app):
    app.config["ENV"] = "production"
    r = client.post("/api/webhooks/stripe", json={"type": "invoice.paid", "data": {"object": {}}})
    assert r.status_code == 503


def test_webhook_rejects_garbage(client):
    r = client.post("/api/webhooks/stripe", data=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400


def test_webhook_tolerates_malformed_metadata_ids(client, app):
    with session_scope(app) as s:
        d = Donation(name="Dana", email="dana@example.com", amount_cents=2500, frequency="ONE_TIME", status="PENDING")
        s.add(d)
        s.flush()
        donation_id = d.id

    events = [
        {"type": "invoice.paid", "data": {"object": {"id": "in_x", "metadata": {"invoice_id": "INV-1"}}}},
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_x", "metadata": {"donation_id": "abc"}}}},
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_y", "metadata": {"donation_id": ["1"]}}}},
    ]
    for event in events:
        r = client.post("/api/webhooks/stripe", json=event)
        assert r.status_code == 200

    r = client.post(
        "/api/webhooks/stripe",
        json={"type": "checkout.session.completed", "data": {"object": _checkout("plan-one")}},
    )
    assert r.status_code == 404
    assert r.json["error"] == "Maintenance plan not found"

    with session_scope(app) as s:
        assert s.get(Donation, donation_id).status == "PENDING"
        assert s.query(HourPack).count() == 0
