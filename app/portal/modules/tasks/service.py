from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import case

from app.portal.audit import record_event
from app.portal.utils import clean_str, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import Notification, User
    from app.portal.modules.projects.models import Project
    from app.portal.modules.tasks.models import ClientTask
    from app.portal.storage import Storage

logger = logging.getLogger(__name__)

VALID_STATUSES = ("pending", "in_progress", "completed")


def status_order():
    """Sort key: pending first, then in_progress, completed last."""
    from app.portal.modules.tasks.models import ClientTask

    return case({"pending": 0, "in_progress": 1, "completed": 2}, value=ClientTask.status, else_=3)


def project_client_user_id(project: "Project") -> int | None:
    members = project.organization.members if project.organization else []
    return members[0].user_id if members else None


def create_notification(
    s: "Session",
    user_id: int,
    title: str,
    message: str,
    *,
    type: str = "INFO",
    link: str | None = None,
) -> "Notification | None":
    """Best-effort: a failed insert is logged and rolled back to a savepoint."""
    from app.portal.models import Notification

    sp = s.begin_nested()
    try:
        n = Notification(user_id=user_id, title=title, message=message, type=type, link=link)
        s.add(n)
        s.flush()
        sp.commit()
        return n
    except Exception as e:
        sp.rollback()
        logger.warning("Could not create notification for user %s: %s", user_id, e)
        return None


def create_task(s: "Session", project: "Project", payload: dict, client_user_id: int, user: "User") -> "ClientTask":
    from app.portal.modules.tasks.models import ClientTask

    now = datetime.utcnow()
    task = ClientTask(
        project_id=project.id,
        title=clean_str(payload.get("title")) or "",
        description=clean_str(payload.get("description")) or "",
        type=clean_str(payload.get("type")) or "general",
        status="pending",
        due_date=parse_date(payload.get("dueDate")),
        requires_upload=bool(payload.get("requiresUpload")),
        assigned_to_user_id=client_user_id,
        created_by_user_id=user.id,
        data=payload.get("data") if isinstance(payload.get("data"), dict) else None,
        created_at=now,
        updated_at=now,
    )
    s.add(task)
    s.flush()
    record_event(s, actor=user, action="task.create", entity_type="ClientTask", entity_id=str(task.id), metadata={"project_id": project.id})
    create_notification(
        s,
        client_user_id,
        f"New task: {task.title}",
        task.description[:200],
        type="TASK_ASSIGNED",
        link=f"/client/tasks/{task.id}",
    )
    return task


def update_task(s: "Session", task: "ClientTask", payload: dict, user: "User") -> "ClientTask":
    status = clean_str(payload.get("status"))
    if status in VALID_STATUSES:
        task.status = status
        task.completed_at = datetime.utcnow() if status == "completed" else None
    if clean_str(payload.get("title")):
        task.title = clean_str(payload.get("title"))
    if clean_str(payload.get("description")):
        task.description = clean_str(payload.get("description"))
    if "dueDate" in payload:
        task.due_date = parse_date(payload.get("dueDate"))
    if "requiresUpload" in payload:
        task.requires_upload = bool(payload.get("requiresUpload"))
    task.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="task.edit", entity_type="ClientTask", entity_id=str(task.id), metadata={"changes": payload})
    return task


def complete_task(
    s: "Session",
    task: "ClientTask",
    user: "User",
    *,
    file_bytes: bytes | None = None,
    filename: str | None = None,
    content_type: str | None = None,
    storage: "Storage | None" = None,
    data: dict | None = None,
) -> "ClientTask":
    from app.portal.storage import build_storage_key

    if file_bytes is not None and filename and storage is not None:
        key = build_storage_key("tasks", task.id, filename)
        storage.put_bytes(key, file_bytes, content_type=content_type)
        task.submission_storage_key = key
        task.submission_filename = key.rsplit("/", 1)[-1]
    if data:
        task.data = {**(task.data or {}), **data}
    now = datetime.utcnow()
    task.status = "completed"
    task.completed_at = now
    task.updated_at = now
    record_event(s, actor=user, action="task.complete", entity_type="ClientTask", entity_id=str(task.id))
    return task
