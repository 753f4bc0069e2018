from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from werkzeug.utils import secure_filename

from app.portal.audit import record_event
from app.portal.utils import clean_str, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.projects.models import Project, ProjectFile
    from app.portal.storage import Storage

logger = logging.getLogger(__name__)

VALID_STATUSES = ("LEAD", "PLANNING", "IN_PROGRESS", "REVIEW", "COMPLETED", "CANCELLED", "ON_HOLD")

# Project requests still in flight when their project is deleted get archived.
OPEN_REQUEST_STATUSES = ("DRAFT", "SUBMITTED", "REVIEWING", "NEEDS_INFO")


def user_organization_ids(s: "Session", user: "User") -> list[int]:
    from app.portal.models import OrganizationMember

    rows = s.execute(select(OrganizationMember.organization_id).where(OrganizationMember.user_id == user.id)).all()
    return [r[0] for r in rows]


def validate_project_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate project create/update payload. Returns list of errors."""
    errors = []
    if not partial:
        if not clean_str(payload.get("name")):
            errors.append("name is required")
        if payload.get("organizationId") in (None, ""):
            errors.append("organizationId is required")
    elif "name" in payload and not clean_str(payload.get("name")):
        errors.append("name cannot be empty")
    status = clean_str(payload.get("status"))
    if status and status.upper() not in VALID_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    budget = payload.get("budgetCents")
    if budget not in (None, ""):
        try:
            if int(budget) < 0:
                errors.append("budgetCents cannot be negative")
        except (OverflowError, TypeError, ValueError):
            errors.append("budgetCents must be an integer")
    for key in ("startDate", "endDate"):
        try:
            parse_date(payload.get(key))
        except ValueError:
            errors.append(f"{key} must be YYYY-MM-DD")
    return errors


def create_project(s: "Session", payload: dict, user: "User") -> "Project":
    from app.portal.modules.projects.models import Project

    now = datetime.utcnow()
    budget = payload.get("budgetCents")
    project = Project(
        organization_id=int(payload["organizationId"]),
        name=clean_str(payload.get("name")) or "",
        description=clean_str(payload.get("description")),
        status=(clean_str(payload.get("status")) or "LEAD").upper(),
        budget_cents=int(budget) if budget not in (None, "") else None,
        start_date=parse_date(payload.get("startDate")),
        end_date=parse_date(payload.get("endDate")),
        assignee_user_id=payload.get("assigneeId") or None,
        created_at=now,
        updated_at=now,
    )
    s.add(project)
    s.flush()
    record_event(
        s,
        actor=user,
        action="project.create",
        entity_type="Project",
        entity_id=str(project.id),
        metadata={"name": project.name, "organization_id": project.organization_id},
    )
    return project


def update_project(s: "Session", project: "Project", payload: dict, user: "User") -> "Project":
    changes = {}

    def _set(attr: str, new) -> None:
        old = getattr(project, attr)
        if new != old:
            changes[attr] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(project, attr, new)

    if "name" in payload:
        _set("name", clean_str(payload.get("name")))
    if "description" in payload:
        _set("description", clean_str(payload.get("description")))
    if clean_str(payload.get("status")):
        _set("status", clean_str(payload.get("status")).upper())
    if "budgetCents" in payload:
        budget = payload.get("budgetCents")
        _set("budget_cents", int(budget) if budget not in (None, "") else None)
    if "startDate" in payload:
        _set("start_date", parse_date(payload.get("startDate")))
    if "endDate" in payload:
        _set("end_date", parse_date(payload.get("endDate")))
    if "assigneeId" in payload:
        _set("assignee_user_id", payload.get("assigneeId") or None)

    project.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="project.edit",
        entity_type="Project",
        entity_id=str(project.id),
        metadata={"name": project.name, "changes": changes},
    )
    return project


def delete_project(s: "Session", project: "Project", user: "User") -> tuple[dict, list[str]]:
    """
    Delete a project and tidy up what points at it, all in the caller's transaction:
    file rows are removed, invoices are unlinked, client tasks are deleted and open
    project requests from the organization's members are archived.

    Returns (summary, storage_keys). The stored objects are left alone; pass the
    keys to remove_stored_files once the transaction has committed.
    """
    from app.portal.models import OrganizationMember
    from app.portal.modules.invoices.models import Invoice
    from app.portal.modules.project_requests.models import ProjectRequest
    from app.portal.modules.tasks.models import ClientTask

    project_id = project.id
    storage_keys = [f.storage_key for f in project.files]
    for f in list(project.files):
        s.delete(f)

    unlinked = s.execute(
        update(Invoice).where(Invoice.project_id == project_id).values(project_id=None)
    ).rowcount
    tasks_deleted = s.query(ClientTask).filter(ClientTask.project_id == project_id).delete(synchronize_session=False)

    member_ids = select(OrganizationMember.user_id).where(OrganizationMember.organization_id == project.organization_id)
    archived = s.execute(
        update(ProjectRequest)
        .where(ProjectRequest.user_id.in_(member_ids))
        .where(ProjectRequest.status.in_(OPEN_REQUEST_STATUSES))
        .values(status="ARCHIVED", updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount

    s.delete(project)
    s.flush()

    summary = {
        "name": project.name,
        "files_deleted": len(storage_keys),
        "invoices_unlinked": unlinked or 0,
        "tasks_deleted": tasks_deleted or 0,
        "requests_archived": archived or 0,
    }
    record_event(s, actor=user, action="project.delete", entity_type="Project", entity_id=str(project_id), metadata=summary)
    return summary, storage_keys


def remove_stored_files(storage: "Storage", storage_keys: list[str], project_id: int) -> int:
    """Best-effort removal of a deleted project's objects. Returns how many went."""
    removed = 0
    for key in storage_keys:
        try:
            storage.delete(key)
            removed += 1
        except Exception as e:
            logger.warning("Could not remove stored file %s for project %s: %s", key, project_id, e)
    return removed


def file_digest_and_size(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def upload_project_file(
    s: "Session",
    project: "Project",
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    user: "User",
    storage: "Storage",
) -> "ProjectFile":
    from app.portal.modules.projects.models import ProjectFile
    from app.portal.storage import build_storage_key

    sha256, size_bytes = file_digest_and_size(file_bytes)
    storage_key = build_storage_key("projects", project.id, filename)
    storage.put_bytes(storage_key, file_bytes, content_type=content_type)

    pf = ProjectFile(
        project_id=project.id,
        storage_key=storage_key,
        filename=secure_filename(filename) or "upload.bin",
        content_type=content_type,
        size_bytes=size_bytes,
        uploaded_by_user_id=user.id,
    )
    s.add(pf)
    s.flush()
    record_event(
        s,
        actor=user,
        action="project.file_upload",
        entity_type="Project",
        entity_id=str(project.id),
        metadata={"filename": pf.filename, "sha256": sha256, "size_bytes": size_bytes},
    )
    return pf
