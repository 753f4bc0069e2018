from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.change_requests.models import ChangeRequest
from app.portal.modules.change_requests.service import create_change_request, missing_create_fields, validate_enums
from app.portal.modules.hours.models import MaintenancePlan
from app.portal.modules.hours.service import can_submit_change_request, increment_daily_requests
from app.portal.modules.projects.models import Project
from app.portal.modules.projects.service import user_organization_ids
from app.portal.rbac import require_login
from app.portal.utils import json_body

bp = Blueprint("change_requests_client", __name__)


@bp.post("/change-requests")
@require_login
def change_request_create():
    s = db_session()
    org_ids = user_organization_ids(s, g.current_user)
    if not org_ids:
        return json_error("No active projects found. Please contact support.", 404)

    row = (
        s.query(Project, MaintenancePlan)
        .join(MaintenancePlan, MaintenancePlan.project_id == Project.id)
        .filter(
            Project.organization_id.in_(org_ids),
            Project.status.notin_(("COMPLETED", "CANCELLED")),
            MaintenancePlan.status == "ACTIVE",
        )
        .order_by(Project.updated_at.desc())
        .first()
    )
    if row is None:
        return json_error("No active project with a maintenance plan found. Please contact support.", 404)
    project, plan = row

    payload = json_body()
    missing = missing_create_fields(payload)
    if missing:
        return json_error(f"Missing required fields: {', '.join(missing)}", 400)
    errors = validate_enums({"category": payload.get("category"), "priority": payload.get("priority")})
    if errors:
        return json_error(errors[0], 400)

    check = can_submit_change_request(s, plan.id)
    if not check.allowed:
        return json_error(check.reason or "Change request not allowed", 403, check=check.to_dict())

    cr = create_change_request(s, project, plan, payload, g.current_user)
    increment_daily_requests(s, plan.id)
    s.commit()
    return jsonify({"success": True, "changeRequest": cr.to_dict(), "requiresApproval": check.requires_approval}), 201


@bp.get("/change-requests")
@require_login
def my_change_requests():
    s = db_session()
    org_ids = user_organization_ids(s, g.current_user)
    if not org_ids:
        return jsonify({"changeRequests": []})
    items = (
        s.query(ChangeRequest)
        .join(Project, Project.id == ChangeRequest.project_id)
        .filter(Project.organization_id.in_(org_ids))
        .order_by(ChangeRequest.created_at.desc())
        .all()
    )
    return jsonify({"changeRequests": [cr.to_dict() for cr in items]})
