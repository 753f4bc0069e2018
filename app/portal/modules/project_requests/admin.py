from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.portal.db import db_session, get_or_404
from app.portal.errors import json_error
from app.portal.modules.project_requests.models import ProjectRequest
from app.portal.modules.project_requests.service import update_project_request, validate_update_payload
from app.portal.modules.projects.models import Project
from app.portal.rbac import require_policy
from app.portal.utils import json_body, parse_id

bp = Blueprint("project_requests_admin", __name__)


@bp.get("/project-requests")
@require_policy("admin.access")
def requests_list():
    s = db_session()
    q = s.query(ProjectRequest)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(ProjectRequest.status == status)
    items = q.order_by(ProjectRequest.created_at.desc()).all()
    return jsonify({"requests": [pr.to_dict() for pr in items]})


@bp.patch("/project-requests/<int:request_id>")
@require_policy("admin.access")
def request_update(request_id: int):
    s = db_session()
    payload = json_body()
    errors = validate_update_payload(payload)
    if errors:
        return json_error(errors[0], 400)
    pr = get_or_404(s, ProjectRequest, request_id, "Project request not found")
    project_id = parse_id(payload.get("projectId"), "projectId")
    if project_id is not None:
        get_or_404(s, Project, project_id, "Project not found")
    deduction = update_project_request(s, pr, payload, g.current_user)
    s.commit()
    return jsonify({"success": True, "request": pr.to_dict(), "deduction": deduction})
