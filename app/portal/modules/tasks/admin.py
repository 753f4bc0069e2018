from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.projects.models import Project
from app.portal.modules.tasks.models import ClientTask
from app.portal.modules.tasks.service import create_task, project_client_user_id, status_order, update_task
from app.portal.rbac import require_policy
from app.portal.utils import clean_str, json_body, parse_id

bp = Blueprint("tasks_admin", __name__)


@bp.get("/tasks/client")
@require_policy("tasks.manage")
def client_tasks_list():
    s = db_session()
    q = s.query(ClientTask)
    project_id = request.args.get("projectId", type=int)
    status = (request.args.get("status") or "").strip()
    if project_id:
        q = q.filter(ClientTask.project_id == project_id)
    if status:
        q = q.filter(ClientTask.status == status)
    tasks = q.order_by(status_order(), ClientTask.due_date.asc(), ClientTask.created_at.desc()).all()
    return jsonify({"tasks": [t.to_dict() for t in tasks]})


@bp.post("/tasks/client")
@require_policy("tasks.manage")
def client_task_create():
    s = db_session()
    payload = json_body()
    if not payload.get("projectId") or not clean_str(payload.get("title")) or not clean_str(payload.get("description")):
        return json_error("Project ID, title, and description are required", 400)
    try:
        project = s.get(Project, int(payload["projectId"]))
    except (TypeError, ValueError):
        project = None
    if project is None:
        return json_error("Project not found", 404)
    client_user_id = project_client_user_id(project)
    if client_user_id is None:
        return json_error("No client found for this project", 400)
    task = create_task(s, project, payload, client_user_id, g.current_user)
    s.commit()
    return jsonify({"task": task.to_dict()}), 201


@bp.patch("/tasks/client")
@require_policy("tasks.manage")
def client_task_update():
    s = db_session()
    payload = json_body()
    task_id = payload.get("taskId")
    if not task_id:
        return json_error("Task ID is required", 400)
    task = s.get(ClientTask, parse_id(task_id, "taskId"))
    if task is None:
        return json_error("Task not found", 404)
    update_task(s, task, payload, g.current_user)
    s.commit()
    return jsonify({"task": task.to_dict()})


@bp.delete("/tasks/client")
@require_policy("tasks.manage")
def client_task_delete():
    s = db_session()
    task_id = request.args.get("taskId", type=int)
    if not task_id:
        return json_error("Task ID is required", 400)
    task = s.get(ClientTask, task_id)
    if task is None:
        return json_error("Task not found", 404)
    s.delete(task)
    s.commit()
    return jsonify({"success": True})
