from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.project_requests.models import ProjectRequest
from app.portal.modules.project_requests.service import (
    create_project_request,
    notify_staff_of_request,
    validate_request_payload,
)
from app.portal.modules.projects.models import Project
from app.portal.modules.projects.service import user_organization_ids
from app.portal.rbac import require_login
from app.portal.utils import json_body, parse_id

bp = Blueprint("project_requests_client", __name__)


@bp.post("/requests")
@require_login
def request_create():
    s = db_session()
    payload = json_body()
    errors = validate_request_payload(payload)
    if errors:
        return json_error(errors[0], 400)

    org_ids = user_organization_ids(s, g.current_user)
    project_id = parse_id(payload.get("projectId"), "projectId")
    if project_id is not None:
        project = s.get(Project, project_id)
        if project is None or project.organization_id not in org_ids:
            return json_error("Project not found", 404)

    pr = create_project_request(s, payload, g.current_user, org_ids[0] if org_ids else None, project_id=project_id)
    s.commit()
    notify_staff_of_request(pr, g.current_user)
    return jsonify({"request": pr.to_dict()}), 201


@bp.get("/requests")
@require_login
def my_requests():
    s = db_session()
    items = (
        s.query(ProjectRequest)
        .filter(ProjectRequest.user_id == g.current_user.id)
        .order_by(ProjectRequest.created_at.desc())
        .all()
    )
    return jsonify({"requests": [pr.to_dict() for pr in items]})
