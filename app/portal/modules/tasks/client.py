from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.models import Notification
from app.portal.modules.projects.models import Project
from app.portal.modules.projects.service import user_organization_ids
from app.portal.modules.tasks.models import ClientTask
from app.portal.modules.tasks.service import complete_task, status_order
from app.portal.rbac import require_login
from app.portal.storage import storage_from_config

bp = Blueprint("tasks_client", __name__)
notifications_bp = Blueprint("notifications", __name__)

_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def _visible_task(s, task_id: int) -> ClientTask | None:
    task = s.get(ClientTask, task_id)
    if task is None:
        return None
    if task.assigned_to_user_id == g.current_user.id:
        return task
    project = s.get(Project, task.project_id)
    if project is not None and project.organization_id in user_organization_ids(s, g.current_user):
        return task
    return None


@bp.get("/tasks")
@require_login
def my_tasks():
    s = db_session()
    org_ids = user_organization_ids(s, g.current_user)
    if not org_ids:
        return jsonify({"tasks": []})
    tasks = (
        s.query(ClientTask)
        .join(Project, Project.id == ClientTask.project_id)
        .filter(Project.organization_id.in_(org_ids))
        .order_by(status_order(), ClientTask.due_date.asc(), ClientTask.created_at.desc())
        .all()
    )
    return jsonify({"tasks": [t.to_dict() for t in tasks]})


@bp.post("/tasks/<int:task_id>/complete")
@require_login
def task_complete(task_id: int):
    s = db_session()
    task = _visible_task(s, task_id)
    if task is None:
        return json_error("Task not found", 404)
    if task.status == "completed":
        return json_error("Task is already completed", 400)

    f = request.files.get("file")
    if task.requires_upload and (not f or not f.filename):
        return json_error("This task requires a file upload", 400)

    file_bytes = None
    if f and f.filename:
        file_bytes = f.read()
        if len(file_bytes) > _MAX_UPLOAD_BYTES:
            return json_error("File too large (max 10MB)", 400)

    complete_task(
        s,
        task,
        g.current_user,
        file_bytes=file_bytes,
        filename=f.filename if f else None,
        content_type=f.mimetype if f else None,
        storage=storage_from_config(current_app.config) if file_bytes is not None else None,
    )
    s.commit()
    return jsonify({"task": task.to_dict()})


@notifications_bp.get("")
@require_login
def notifications_list():
    s = db_session()
    items = (
        s.query(Notification)
        .filter(Notification.user_id == g.current_user.id)
        .order_by(Notification.created_at.desc())
        .limit(100)
        .all()
    )
    unread = sum(1 for n in items if not n.read)
    return jsonify({"notifications": [n.to_dict() for n in items], "unreadCount": unread})


@notifications_bp.post("/<int:notification_id>/read")
@require_login
def notification_read(notification_id: int):
    s = db_session()
    n = s.get(Notification, notification_id)
    if n is None or n.user_id != g.current_user.id:
        return json_error("Notification not found", 404)
    n.read = True
    s.commit()
    return jsonify({"notification": n.to_dict()})
