from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from flask import current_app
from markupsafe import escape

from app.portal.audit import record_event
from app.portal.mailer import send_email
from app.portal.modules.hours.service import HOURS_SOURCES, active_plan_for_project, apply_completion_deduction
from app.portal.utils import clean_str, parse_hours, parse_id

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.project_requests.models import ProjectRequest

logger = logging.getLogger(__name__)

VALID_STATUSES = (
    "DRAFT",
    "SUBMITTED",
    "REVIEWING",
    "NEEDS_INFO",
    "APPROVED",
    "IN_PROGRESS",
    "COMPLETED",
    "REJECTED",
    "ARCHIVED",
)


def validate_request_payload(payload: dict) -> list[str]:
    errors = []
    if not clean_str(payload.get("title")) or not clean_str(payload.get("description")):
        errors.append("Title and description are required")
    services = payload.get("services")
    if services is not None and not isinstance(services, list):
        errors.append("services must be a list")
    return errors


def validate_update_payload(payload: dict) -> list[str]:
    errors = []
    status = (clean_str(payload.get("status")) or "").upper()
    if status and status not in VALID_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    source = clean_str(payload.get("hoursSource"))
    if source and source not in HOURS_SOURCES:
        errors.append(f"Invalid hoursSource. Must be one of: {', '.join(HOURS_SOURCES)}")
    return errors


def create_project_request(
    s: "Session",
    payload: dict,
    user: "User",
    organization_id: int | None,
    project_id: int | None = None,
) -> "ProjectRequest":
    from app.portal.modules.project_requests.models import ProjectRequest

    now = datetime.utcnow()
    pr = ProjectRequest(
        user_id=user.id,
        organization_id=organization_id,
        project_id=project_id,
        title=clean_str(payload.get("title")) or "",
        description=clean_str(payload.get("description")) or "",
        services=payload.get("services") or [],
        budget=clean_str(payload.get("budget")),
        timeline=clean_str(payload.get("timeline")),
        status="SUBMITTED",
        estimated_hours=parse_hours(payload.get("estimatedHours"), "estimatedHours"),
        created_at=now,
        updated_at=now,
    )
    s.add(pr)
    s.flush()
    record_event(s, actor=user, action="project_request.create", entity_type="ProjectRequest", entity_id=str(pr.id), metadata={"title": pr.title})
    return pr


def notify_staff_of_request(pr: "ProjectRequest", user: "User") -> None:
    """Best-effort heads-up to the staff inbox."""
    to = current_app.config.get("STAFF_NOTIFY_EMAIL")
    if not to:
        return
    result = send_email(
        to,
        f"New project request: {pr.title}",
        f"<p>{escape(user.name or user.email)} submitted a project request.</p>"
        f"<p><strong>{escape(pr.title)}</strong></p><p>{escape(pr.description or '')}</p>",
    )
    if not result.ok:
        logger.warning("Project request %s staff email failed: %s", pr.id, result.error)


def update_project_request(s: "Session", pr: "ProjectRequest", payload: dict, user: "User") -> dict | None:
    previously_deducted = pr.hours_deducted
    now = datetime.utcnow()

    status = clean_str(payload.get("status"))
    if status:
        pr.status = status.upper()
        if pr.status == "COMPLETED":
            pr.completed_at = now
        elif pr.status != "REJECTED":
            pr.completed_at = None
    if "estimatedHours" in payload:
        pr.estimated_hours = parse_hours(payload.get("estimatedHours"), "estimatedHours")
    if "actualHours" in payload:
        pr.actual_hours = parse_hours(payload.get("actualHours"), "actualHours")
    if "hoursSource" in payload:
        pr.hours_source = clean_str(payload.get("hoursSource"))
    if "projectId" in payload:
        pr.project_id = parse_id(payload.get("projectId"), "projectId")
    pr.updated_at = now

    deduction = None
    if pr.status == "COMPLETED" and pr.project_id:
        result = apply_completion_deduction(
            s,
            plan=active_plan_for_project(s, pr.project_id),
            actual_hours=pr.actual_hours,
            already_deducted=previously_deducted,
            hours_source=pr.hours_source,
            description=f"Project request: {pr.title[:100]}",
            performed_by=user.email,
        )
        if result is not None:
            deduction = result.to_dict()
            if result.success:
                pr.hours_deducted = result.hours_deducted
                if "hoursSource" not in payload:
                    pr.hours_source = result.source
            else:
                pr.hours_deducted = 0.0

    record_event(
        s,
        actor=user,
        action="project_request.update",
        entity_type="ProjectRequest",
        entity_id=str(pr.id),
        metadata={"changes": payload, "deduction": deduction},
    )
    return deduction
