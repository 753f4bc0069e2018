from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.hours.models import MaintenancePlan
from app.portal.modules.hours.service import get_hours_balance
from app.portal.modules.hours.tiers import get_tier
from app.portal.modules.projects.models import Project
from app.portal.modules.projects.service import user_organization_ids
from app.portal.rbac import require_login

bp = Blueprint("hours_client", __name__)


@bp.get("/hours")
@require_login
def my_hours():
    s = db_session()
    org_ids = user_organization_ids(s, g.current_user)
    if not org_ids:
        return json_error("No active maintenance plan", 404)

    q = (
        s.query(MaintenancePlan)
        .join(Project, Project.id == MaintenancePlan.project_id)
        .filter(Project.organization_id.in_(org_ids), MaintenancePlan.status == "ACTIVE")
    )
    project_id = request.args.get("projectId", type=int)
    if project_id:
        q = q.filter(MaintenancePlan.project_id == project_id)
    plan = q.order_by(MaintenancePlan.updated_at.desc()).first()
    if plan is None:
        return json_error("No active maintenance plan", 404)

    tier = get_tier(plan.tier)
    balance = get_hours_balance(s, plan.id)
    return jsonify(
        {
            "planId": plan.id,
            "projectId": plan.project_id,
            "tier": plan.tier,
            "tierName": tier.name if tier else plan.tier,
            "onDemandEnabled": plan.on_demand_enabled,
            "balance": balance.to_dict() if balance else None,
        }
    )
