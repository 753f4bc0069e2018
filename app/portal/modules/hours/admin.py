from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.portal.audit import record_event
from app.portal.db import db_session, get_or_404
from app.portal.errors import json_error
from app.portal.modules.hours.models import MaintenancePlan
from app.portal.modules.hours.service import (
    active_plan_for_project,
    add_hour_pack,
    close_billing_period,
    create_plan,
    deduct_hours,
    get_hours_balance,
)
from app.portal.modules.hours.tiers import HOUR_PACKS, TIERS, get_hour_pack, get_tier
from app.portal.modules.hours.warnings import send_warnings_best_effort
from app.portal.modules.projects.models import Project
from app.portal.rbac import require_policy
from app.portal.utils import clean_str, json_body, parse_hours, parse_id

bp = Blueprint("hours_admin", __name__)


@bp.post("/maintenance-plans")
@require_policy("billing.manage")
def plan_create():
    s = db_session()
    payload = json_body()
    project_id = payload.get("projectId")
    tier_id = (clean_str(payload.get("tier")) or "").upper()
    if not project_id or not tier_id:
        return json_error("projectId and tier are required", 400)
    if get_tier(tier_id) is None:
        return json_error(f"Invalid tier. Must be one of: {', '.join(TIERS)}", 400)
    project = get_or_404(s, Project, parse_id(project_id, "projectId"), "Project not found")
    if active_plan_for_project(s, project.id) is not None:
        return json_error("Project already has an active maintenance plan", 409)

    plan = create_plan(s, project.id, tier_id, on_demand_enabled=bool(payload.get("onDemandEnabled")))
    record_event(
        s,
        actor=g.current_user,
        action="maintenance_plan.create",
        entity_type="MaintenancePlan",
        entity_id=str(plan.id),
        metadata={"project_id": project.id, "tier": plan.tier},
    )
    s.commit()
    return jsonify({"plan": plan.to_dict()}), 201


@bp.get("/maintenance-plans/<int:plan_id>")
@require_policy("admin.access")
def plan_detail(plan_id: int):
    s = db_session()
    plan = get_or_404(s, MaintenancePlan, plan_id, "Maintenance plan not found")
    balance = get_hours_balance(s, plan.id)
    return jsonify(
        {
            "plan": plan.to_dict(),
            "balance": balance.to_dict() if balance else None,
            "hourPacks": [p.to_dict() for p in plan.hour_packs],
        }
    )


@bp.post("/maintenance-plans/<int:plan_id>/hour-packs")
@require_policy("billing.manage")
def plan_add_pack(plan_id: int):
    s = db_session()
    plan = get_or_404(s, MaintenancePlan, plan_id, "Maintenance plan not found")
    pack_id = (clean_str(json_body().get("packId")) or "").upper()
    if get_hour_pack(pack_id) is None:
        return json_error(f"Invalid packId. Must be one of: {', '.join(HOUR_PACKS)}", 400)
    pack = add_hour_pack(s, plan, pack_id)
    record_event(
        s,
        actor=g.current_user,
        action="hour_pack.add",
        entity_type="MaintenancePlan",
        entity_id=str(plan.id),
        metadata={"pack_id": pack.id, "pack_type": pack.pack_type, "hours": pack.hours},
    )
    s.commit()
    return jsonify({"hourPack": pack.to_dict()}), 201


@bp.post("/maintenance-plans/<int:plan_id>/log-hours")
@require_policy("admin.access")
def plan_log_hours(plan_id: int):
    s = db_session()
    plan = get_or_404(s, MaintenancePlan, plan_id, "Maintenance plan not found")
    payload = json_body()
    hours = parse_hours(payload.get("hours"))
    description = clean_str(payload.get("description"))
    if not hours or not description:
        return json_error("hours and description are required", 400)

    savepoint = s.begin_nested()
    result = deduct_hours(s, plan.id, hours, description, performed_by=g.current_user.email)
    if not result.success:
        savepoint.rollback()
        return json_error(result.error or "Insufficient hours available", 409, result=result.to_dict())
    savepoint.commit()
    record_event(
        s,
        actor=g.current_user,
        action="maintenance_plan.log_hours",
        entity_type="MaintenancePlan",
        entity_id=str(plan.id),
        metadata={"hours": hours, "source": result.source, "is_overage": result.is_overage},
    )
    send_warnings_best_effort(s, plan.id)
    s.commit()
    return jsonify({"result": result.to_dict()})


@bp.post("/maintenance-plans/<int:plan_id>/close-period")
@require_policy("billing.manage")
def plan_close_period(plan_id: int):
    s = db_session()
    plan = get_or_404(s, MaintenancePlan, plan_id, "Maintenance plan not found")
    result = close_billing_period(s, plan.id)
    record_event(
        s,
        actor=g.current_user,
        action="maintenance_plan.close_period",
        entity_type="MaintenancePlan",
        entity_id=str(plan.id),
        metadata={"hours_rolled_over": result.hours_rolled_over, "hours_expired": result.hours_expired},
    )
    s.commit()
    return jsonify(
        {
            "plan": plan.to_dict(),
            "hoursRolledOver": result.hours_rolled_over,
            "hoursExpired": result.hours_expired,
        }
    )
