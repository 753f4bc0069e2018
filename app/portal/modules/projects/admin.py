from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import func

from app.portal.db import db_session, get_or_404
from app.portal.errors import json_error
from app.portal.models import Organization
from app.portal.modules.projects.models import Project
from app.portal.modules.projects.service import (
    create_project,
    delete_project,
    remove_stored_files,
    update_project,
    upload_project_file,
    validate_project_payload,
)
from app.portal.rbac import require_policy
from app.portal.storage import storage_from_config
from app.portal.utils import json_body, parse_id

bp = Blueprint("projects_admin", __name__)

_MAX_FILE_BYTES = 10 * 1024 * 1024


@bp.get("/projects")
@require_policy("admin.access")
def projects_list():
    s = db_session()
    q = s.query(Project)
    status = (request.args.get("status") or "").strip().upper()
    search = (request.args.get("q") or "").strip()
    if status:
        q = q.filter(Project.status == status)
    if search:
        q = q.filter(Project.name.ilike(f"%{search}%"))
    projects = q.order_by(Project.updated_at.desc()).all()
    return jsonify({"projects": [p.to_dict() for p in projects]})


@bp.post("/projects")
@require_policy("admin.access")
def projects_create():
    s = db_session()
    payload = json_body()
    errors = validate_project_payload(payload)
    if errors:
        return json_error(errors[0], 400, details=errors)
    org = s.get(Organization, parse_id(payload["organizationId"], "organizationId"))
    if org is None:
        return json_error("Organization not found", 404)
    project = create_project(s, payload, g.current_user)
    s.commit()
    return jsonify({"project": project.to_dict()}), 201


@bp.get("/projects/<int:project_id>")
@require_policy("admin.access")
def project_detail(project_id: int):
    from app.portal.modules.change_requests.models import ChangeRequest
    from app.portal.modules.invoices.models import Invoice
    from app.portal.modules.tasks.models import ClientTask

    s = db_session()
    project = get_or_404(s, Project, project_id, "Project not found")

    def _count(model) -> int:
        return s.query(func.count(model.id)).filter(model.project_id == project.id).scalar() or 0

    data = project.to_dict()
    data["files"] = [f.to_dict() for f in project.files]
    data["counts"] = {
        "files": len(project.files),
        "invoices": _count(Invoice),
        "changeRequests": _count(ChangeRequest),
        "tasks": _count(ClientTask),
    }
    return jsonify({"project": data})


@bp.patch("/projects/<int:project_id>")
@require_policy("admin.access")
def project_update(project_id: int):
    s = db_session()
    project = get_or_404(s, Project, project_id, "Project not found")
    payload = json_body()
    errors = validate_project_payload(payload, partial=True)
    if errors:
        return json_error(errors[0], 400, details=errors)
    update_project(s, project, payload, g.current_user)
    s.commit()
    return jsonify({"project": project.to_dict()})


@bp.delete("/projects/<int:project_id>")
@require_policy("admin.access")
def project_delete(project_id: int):
    s = db_session()
    project = get_or_404(s, Project, project_id, "Project not found")
    name = project.name
    try:
        summary, storage_keys = delete_project(s, project, g.current_user)
        s.commit()
    except Exception:
        s.rollback()
        current_app.logger.exception("Project delete failed (project_id=%s request_id=%s)", project_id, g.request_id)
        return json_error("Failed to delete project", 500)
    remove_stored_files(storage_from_config(current_app.config), storage_keys, project_id)
    return jsonify({"success": True, "message": f"Project '{name}' deleted", "summary": summary})


@bp.post("/projects/<int:project_id>/files")
@require_policy("admin.access")
def project_file_upload(project_id: int):
    s = db_session()
    project = get_or_404(s, Project, project_id, "Project not found")
    f = request.files.get("file")
    if not f or not f.filename:
        return json_error("File is required", 400)
    file_bytes = f.read()
    if len(file_bytes) > _MAX_FILE_BYTES:
        return json_error("File too large (max 10MB)", 400)
    pf = upload_project_file(
        s,
        project,
        file_bytes,
        f.filename,
        f.mimetype,
        g.current_user,
        storage_from_config(current_app.config),
    )
    s.commit()
    return jsonify({"file": pf.to_dict()}), 201
