from datetime import date, datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.auth import login_limiter
from app.portal.db import session_scope
from app.portal.mailer import EmailResult
from app.portal.models import Base, Organization, OrganizationMember, User
from app.portal.modules.hours import warnings as hour_warnings
from app.portal.modules.hours.models import MaintenanceLog, MaintenancePlan, OverageNotification, RolloverHours
from app.portal.modules.hours.service import (
    add_hour_pack,
    add_month,
    apply_completion_deduction,
    can_submit_change_request,
    close_billing_period,
    create_plan,
    deduct_hours,
    get_hours_balance,
)
from app.portal.modules.hours.tiers import format_hours
from app.portal.modules.hours.warnings import AT_2_HOURS, AT_80_PERCENT, check_and_send_warnings
from app.portal.modules.projects.models import Project

NOW = datetime(2026, 3, 10, 12, 0, 0)


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
        admin = User(email="admin@example.com", name="Admin", password_hash=generate_password_hash("pw"), role="ADMIN", is_active=True)
        owner = User(email="owner@acme.org", name="Olive", password_hash=generate_password_hash("pw"), role="CLIENT", is_active=True)
        outsider = User(email="nobody@example.com", name="Nobody", password_hash=generate_password_hash("pw"), role="CLIENT", is_active=True)
        org = Organization(name="Acme")
        s.add_all([admin, owner, outsider, org])
        s.flush()
        s.add(OrganizationMember(organization_id=org.id, user_id=owner.id, role="OWNER"))
        project = Project(organization_id=org.id, name="Acme Site", status="IN_PROGRESS")
        s.add(project)
        s.flush()
        create_plan(s, project.id, "ESSENTIALS", now=NOW)
    return app


def _plan_id(app):
    with session_scope(app) as s:
        return s.query(MaintenancePlan).one().id


def _login(client, email):
    r = client.post("/api/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['token']}"}


def test_add_month_clamps_day():
    assert add_month(datetime(2026, 1, 31)) == datetime(2026, 2, 28)
    assert add_month(datetime(2026, 12, 15)) == datetime(2027, 1, 15)


def test_format_hours():
    assert format_hours(-1) == "Unlimited"
    assert format_hours(1) == "1 hour"
    assert format_hours(2.5) == "2.5 hours"


def test_new_plan_balance(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        assert plan.current_period_end == datetime(2026, 4, 10, 12, 0, 0)
        b = get_hours_balance(s, plan.id, now=NOW)
    assert b.monthly_included == 8
    assert b.monthly_remaining == 8
    assert b.total_available == 8
    assert b.change_requests_remaining == 3
    assert not b.at_limit
    assert not b.is_overage


def test_deduction_order_rollover_monthly_then_packs(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        s.add(RolloverHours(plan_id=plan.id, hours=2, hours_remaining=2, source_month=NOW - timedelta(days=30), expires_at=NOW + timedelta(days=20)))
        never = add_hour_pack(s, plan, "PREMIUM", now=NOW)
        small = add_hour_pack(s, plan, "SMALL", now=NOW)
        s.flush()

        result = deduct_hours(s, plan.id, 11, "Homepage rebuild", now=NOW)
        assert result.success
        assert result.hours_deducted == 11
        assert result.source == "pack"
        assert result.source_id == small.id
        assert not result.is_overage

        assert plan.support_hours_used == 8
        assert s.query(RolloverHours).one().hours_remaining == 0
        assert small.hours_remaining == 4
        assert never.hours_remaining == 10
        assert result.remaining_hours == 14
        assert s.query(MaintenanceLog).count() == 1


def test_grace_overage_is_one_time(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        assert deduct_hours(s, plan.id, 8, "Month of work", now=NOW).success

        grace = deduct_hours(s, plan.id, 1, "Small fix", now=NOW)
        assert grace.success
        assert grace.is_overage
        assert grace.overage_hours == 1
        assert plan.grace_period_used is True
        assert plan.support_hours_used == 9

        b = get_hours_balance(s, plan.id, now=NOW)
        assert b.is_overage
        assert b.overage_hours == 1

        denied = deduct_hours(s, plan.id, 0.5, "Another fix", now=NOW)
        assert not denied.success
        assert denied.error == "Insufficient hours available"
        assert denied.hours_deducted == 0


def test_grace_does_not_cover_large_overage(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        result = deduct_hours(s, plan.id, 10, "Too much", now=NOW)
        assert not result.success
        assert plan.grace_period_used is False


def test_on_demand_plans_can_always_go_over(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        plan.on_demand_enabled = True
        result = deduct_hours(s, plan.id, 12, "Big push", now=NOW)
        assert result.success
        assert result.is_overage
        assert result.overage_hours == 4
        assert plan.grace_period_used is False


def test_unlimited_tier(app):
    with session_scope(app) as s:
        project = s.query(Project).one()
        s.query(MaintenancePlan).one().status = "CANCELLED"
        plan = create_plan(s, project.id, "COO", now=NOW)
        b = get_hours_balance(s, plan.id, now=NOW)
        assert b.is_unlimited
        assert b.total_available == -1
        result = deduct_hours(s, plan.id, 40, "Lots", now=NOW)
        assert result.success
        assert result.remaining_hours == -1
        assert can_submit_change_request(s, plan.id).allowed


def test_close_period_rolls_over_capped_and_expires_old(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        deduct_hours(s, plan.id, 2, "Some work", now=NOW)
        s.add(RolloverHours(plan_id=plan.id, hours=3, hours_remaining=3, source_month=NOW - timedelta(days=90), expires_at=NOW - timedelta(days=1)))
        s.flush()

        result = close_billing_period(s, plan.id, now=NOW)
        assert result.hours_rolled_over == 6
        assert result.hours_expired == 3
        assert plan.support_hours_used == 0
        assert plan.rollover_hours == 6
        assert plan.current_period_start == NOW

        # second close: 8 unused, but only 10 of the 16 cap is left
        later = add_month(NOW)
        result = close_billing_period(s, plan.id, now=later)
        assert result.hours_rolled_over == 8
        assert plan.rollover_hours == 14

        result = close_billing_period(s, plan.id, now=later + timedelta(days=1))
        assert result.hours_rolled_over == 2
        assert plan.rollover_hours == 16


def test_can_submit_change_request_limits(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        assert can_submit_change_request(s, plan.id).allowed

        plan.support_hours_used = 8
        s.flush()
        check = can_submit_change_request(s, plan.id)
        assert check.allowed
        assert check.requires_approval

        plan.grace_period_used = True
        s.flush()
        check = can_submit_change_request(s, plan.id)
        assert not check.allowed
        assert check.requires_payment
        assert check.reason == "Monthly hours limit reached"

        plan.support_hours_used = 0
        plan.change_requests_used = 3
        s.flush()
        check = can_submit_change_request(s, plan.id)
        assert not check.allowed
        assert check.reason == "Monthly change request limit reached"


def test_daily_limit_for_on_demand_plans(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        plan.on_demand_enabled = True
        plan.requests_today = 3
        plan.last_request_date = date(2026, 3, 10)
        s.flush()
        check = can_submit_change_request(s, plan.id, today=date(2026, 3, 10))
        assert not check.allowed
        assert check.reason == "Daily request limit (3) reached"
        assert can_submit_change_request(s, plan.id, today=date(2026, 3, 11)).allowed


def test_completion_deduction_guards(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        common = {"plan": plan, "description": "Done", "performed_by": "admin@example.com"}
        assert apply_completion_deduction(s, actual_hours=None, already_deducted=None, hours_source=None, **common) is None
        assert apply_completion_deduction(s, actual_hours=2, already_deducted=2, hours_source=None, **common) is None
        assert apply_completion_deduction(s, actual_hours=2, already_deducted=None, hours_source="COMPLIMENTARY", **common) is None
        assert apply_completion_deduction(s, actual_hours=2, already_deducted=None, hours_source=None, plan=None, description="x") is None

        result = apply_completion_deduction(s, actual_hours=2, already_deducted=None, hours_source=None, **common)
        assert result.success
        assert plan.support_hours_used == 2


def test_failed_completion_deduction_leaves_no_partial_state(app):
    with session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        plan.grace_period_used = True
        s.flush()
        result = apply_completion_deduction(s, plan=plan, actual_hours=20, already_deducted=None, hours_source=None, description="Huge")
        assert not result.success
        s.refresh(plan)
        assert plan.support_hours_used == 0
        assert s.query(MaintenanceLog).count() == 0


def test_warnings_are_sent_once_per_period(app):
    with app.app_context(), session_scope(app) as s:
        plan = s.query(MaintenancePlan).one()
        deduct_hours(s, plan.id, 7, "Work")
        sent = check_and_send_warnings(s, plan.id)
        assert sorted(sent) == [AT_2_HOURS, AT_80_PERCENT]
        assert check_and_send_warnings(s, plan.id) == []
        assert s.query(OverageNotification).count() == 2
        assert {n.email_to for n in s.query(OverageNotification)} == {"owner@acme.org"}


def test_log_hours_is_all_or_nothing(app):
    client = app.test_client()
    admin = _login(client, "admin@example.com")
    plan_id = _plan_id(app)
    with session_scope(app) as s:
        plan = s.get(MaintenancePlan, plan_id)
        plan.support_hours_used = 8
        plan.grace_period_used = True

    r = client.post(f"/api/admin/maintenance-plans/{plan_id}/log-hours", json={"hours": 2, "description": "Extra"}, headers=admin)
    assert r.status_code == 409
    assert r.json["result"]["success"] is False

    with session_scope(app) as s:
        assert s.get(MaintenancePlan, plan_id).support_hours_used == 8
        assert s.query(MaintenanceLog).count() == 0

    r = client.post(f"/api/admin/maintenance-plans/{plan_id}/log-hours", json={"description": "Extra"}, headers=admin)
    assert r.status_code == 400


def test_admin_plan_routes(app):
    client = app.test_client()
    admin = _login(client, "admin@example.com")
    plan_id = _plan_id(app)

    r = client.post(f"/api/admin/maintenance-plans/{plan_id}/hour-packs", json={"packId": "medium"}, headers=admin)
    assert r.status_code == 201
    assert r.json["hourPack"]["hours"] == 10

    r = client.post(f"/api/admin/maintenance-plans/{plan_id}/hour-packs", json={"packId": "HUGE"}, headers=admin)
    assert r.status_code == 400

    r = client.post(f"/api/admin/maintenance-plans/{plan_id}/log-hours", json={"hours": 3, "description": "Fixes"}, headers=admin)
    assert r.status_code == 200
    assert r.json["result"]["source"] == "monthly"

    r = client.get(f"/api/admin/maintenance-plans/{plan_id}", headers=admin)
    assert r.json["balance"]["monthlyUsed"] == 3
    assert r.json["balance"]["totalAvailable"] == 15
    assert r.json["balance"]["loggedHoursThisPeriod"] == 3

    with session_scope(app) as s:
        project_id = s.query(Project).one().id
    r = client.post("/api/admin/maintenance-plans", json={"projectId": project_id, "tier": "DIRECTOR"}, headers=admin)
    assert r.status_code == 409
    r = client.post("/api/admin/maintenance-plans", json={"projectId": project_id, "tier": "GOLD"}, headers=admin)
    assert r.status_code == 400

    r = client.post(f"/api/admin/maintenance-plans/{plan_id}/close-period", headers=admin)
    assert r.status_code == 200
    assert r.json["hoursRolledOver"] == 5
    assert r.json["plan"]["supportHoursUsed"] == 0


def test_client_hours_view(app):
    client = app.test_client()
    owner = _login(client, "owner@acme.org")
    r = client.get("/api/client/hours", headers=owner)
    assert r.status_code == 200
    assert r.json["tier"] == "ESSENTIALS"
    assert r.json["tierName"] == "Nonprofit Essentials"
    assert r.json["balance"]["monthlyIncluded"] == 8

    nobody = _login(client, "nobody@example.com")
    r = client.get("/api/client/hours", headers=nobody)
    assert r.status_code == 404
    assert r.json["error"] == "No active maintenance plan"


def test_plan_create_rejects_bad_project_id(app):
    client = app.test_client()
    admin = _login(client, "admin@example.com")
    r = client.post("/api/admin/maintenance-plans", json={"projectId": "acme-site", "tier": "DIRECTOR"}, headers=admin)
    assert r.status_code == 400
    assert r.json["error"] == "projectId must be an integer id"
    r = client.post("/api/admin/maintenance-plans", json={"projectId": 9999, "tier": "DIRECTOR"}, headers=admin)
    assert r.status_code == 404


def test_warning_email_escapes_names(app, monkeypatch):
    sent = []

    def fake_send(to, subject, html, text=None):
        sent.append((subject, html))
        return EmailResult(ok=True, id="em_1")

    monkeypatch.setattr(hour_warnings, "send_email", fake_send)
    with app.app_context(), session_scope(app) as s:
        s.query(Project).one().name = "<i>Acme</i> & Co"
        s.query(User).filter(User.email == "owner@acme.org").one().name = "<b>Olive</b>"
        plan = s.query(MaintenancePlan).one()
        deduct_hours(s, plan.id, 7, "Work")
        check_and_send_warnings(s, plan.id)

    assert sent
    for subject, html in sent:
        assert subject.endswith("<i>Acme</i> & Co")
        assert "<i>Acme</i>" not in html
        assert "&lt;i&gt;Acme&lt;/i&gt; &amp; Co" in html
        assert "Hi &lt;b&gt;Olive&lt;/b&gt;," in html
