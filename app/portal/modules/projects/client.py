from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.projects.models import Project
from app.portal.modules.projects.service import user_organization_ids
from app.portal.rbac import require_login

bp = Blueprint("projects_client", __name__)


@bp.get("/projects")
@require_login
def my_projects():
    s = db_session()
    org_ids = user_organization_ids(s, g.current_user)
    if not org_ids:
        return jsonify({"projects": []})
    projects = (
        s.query(Project)
        .filter(Project.organization_id.in_(org_ids))
        .order_by(Project.updated_at.desc())
        .all()
    )
    return jsonify({"projects": [p.to_dict() for p in projects]})


@bp.get("/projects/<int:project_id>")
@require_login
def my_project_detail(project_id: int):
    s = db_session()
    project = s.get(Project, project_id)
    if project is None or project.organization_id not in user_organization_ids(s, g.current_user):
        return json_error("Project not found", 404)
    data = project.to_dict()
    data["files"] = [f.to_dict() for f in project.files]
    return jsonify({"project": data})
