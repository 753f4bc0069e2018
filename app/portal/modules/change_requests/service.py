from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import TYPE_CHECKING

from app.portal.audit import record_event
from app.portal.errors import ApiError
from app.portal.modules.hours.service import (
    HOURS_SOURCES,
    active_plan_for_project,
    apply_completion_deduction,
    get_hours_balance,
)
from app.portal.modules.hours.tiers import ON_DEMAND_HOURLY_RATE_CENTS
from app.portal.utils import clean_str, parse_hours

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.change_requests.models import ChangeRequest
    from app.portal.modules.hours.models import MaintenancePlan
    from app.portal.modules.projects.models import Project

logger = logging.getLogger(__name__)

VALID_STATUSES = ("pending", "approved", "in_progress", "completed", "rejected")
VALID_CATEGORIES = ("CONTENT", "BUG", "FEATURE", "DESIGN", "SEO", "SECURITY", "OTHER")
VALID_PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT", "EMERGENCY")
VALID_HOURS_SOURCES = HOURS_SOURCES

URGENCY_FEES_CENTS = {"HIGH": 5000, "URGENT": 10000}

# Estimates above this need the client's sign-off before work starts.
CLIENT_APPROVAL_HOURS = 2


def validate_enums(payload: dict) -> list[str]:
    """Allow-list checks for the enum-like fields; only fields present are checked."""
    errors = []
    status = payload.get("status")
    if status and status not in VALID_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    category = payload.get("category")
    if category and category not in VALID_CATEGORIES:
        errors.append(f"Invalid category. Must be one of: {', '.join(VALID_CATEGORIES)}")
    priority = payload.get("priority")
    if priority and priority not in VALID_PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(VALID_PRIORITIES)}")
    source = payload.get("hoursSource")
    if source and source not in VALID_HOURS_SOURCES:
        errors.append(f"Invalid hoursSource. Must be one of: {', '.join(VALID_HOURS_SOURCES)}")
    return errors


def missing_create_fields(payload: dict) -> list[str]:
    return [k for k in ("title", "description", "category", "priority") if not clean_str(payload.get(k))]


def create_change_request(
    s: "Session",
    project: "Project",
    plan: "MaintenancePlan",
    payload: dict,
    user: "User",
) -> "ChangeRequest":
    from app.portal.modules.change_requests.models import ChangeRequest

    priority = payload["priority"]
    estimated = parse_hours(payload.get("estimatedHours"), "estimatedHours")

    is_overage = False
    overage_cents = None
    balance = get_hours_balance(s, plan.id)
    if estimated and balance is not None and not balance.is_unlimited and estimated > balance.total_available:
        is_overage = True
        overage_cents = math.ceil((estimated - balance.total_available) * ON_DEMAND_HOURLY_RATE_CENTS)

    attachments = payload.get("attachments")
    now = datetime.utcnow()
    cr = ChangeRequest(
        project_id=project.id,
        plan_id=plan.id,
        requested_by_user_id=user.id,
        title=clean_str(payload.get("title")) or "",
        description=clean_str(payload.get("description")) or "",
        category=payload["category"],
        priority=priority,
        status="pending",
        estimated_hours=estimated,
        urgency_fee_cents=URGENCY_FEES_CENTS.get(priority, 0),
        is_overage=is_overage,
        overage_amount_cents=overage_cents,
        requires_client_approval=bool(estimated and estimated > CLIENT_APPROVAL_HOURS),
        attachments=attachments if isinstance(attachments, list) else [],
        created_at=now,
        updated_at=now,
    )
    s.add(cr)
    plan.change_requests_used = (plan.change_requests_used or 0) + 1
    s.flush()
    record_event(
        s,
        actor=user,
        action="change_request.create",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        metadata={"project_id": project.id, "category": cr.category, "priority": cr.priority, "estimated_hours": estimated},
    )
    return cr


def _number_or_none(value, field: str) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} must be a number", 400)


def update_change_request(s: "Session", cr: "ChangeRequest", payload: dict, user: "User") -> dict | None:
    """
    Apply an admin update. When the request ends up completed with actual hours
    and nothing deducted yet, hours come off the project's plan. Returns the
    deduction result (as a dict) when one was attempted.
    """
    previously_deducted = cr.hours_deducted
    now = datetime.utcnow()

    if "status" in payload and payload["status"] is not None:
        cr.status = payload["status"]
        if cr.status == "completed":
            cr.completed_at = now
        elif cr.status != "rejected":
            cr.completed_at = None
    if payload.get("category"):
        cr.category = payload["category"]
    if payload.get("priority"):
        cr.priority = payload["priority"]
    if "estimatedHours" in payload:
        cr.estimated_hours = _number_or_none(payload["estimatedHours"], "estimatedHours")
    if "actualHours" in payload:
        cr.actual_hours = _number_or_none(payload["actualHours"], "actualHours")
    if "hoursDeducted" in payload:
        cr.hours_deducted = _number_or_none(payload["hoursDeducted"], "hoursDeducted")
    if "hoursSource" in payload:
        cr.hours_source = payload["hoursSource"]
    if "urgencyFee" in payload:
        cr.urgency_fee_cents = int(_number_or_none(payload["urgencyFee"], "urgencyFee") or 0)
    if "isOverage" in payload:
        cr.is_overage = bool(payload["isOverage"])
    if "overageAmount" in payload:
        amount = _number_or_none(payload["overageAmount"], "overageAmount")
        cr.overage_amount_cents = int(amount) if amount is not None else None
    if "flaggedForReview" in payload:
        cr.flagged_for_review = bool(payload["flaggedForReview"])
    if "description" in payload and clean_str(payload["description"]):
        cr.description = clean_str(payload["description"])
    if "attachments" in payload:
        cr.attachments = payload["attachments"] if isinstance(payload["attachments"], list) else []
    cr.updated_at = now

    deduction = None
    if (cr.status or "").lower() == "completed":
        plan = None
        if cr.plan_id:
            from app.portal.modules.hours.models import MaintenancePlan

            plan = s.get(MaintenancePlan, cr.plan_id)
        if plan is None:
            plan = active_plan_for_project(s, cr.project_id)
        result = apply_completion_deduction(
            s,
            plan=plan,
            actual_hours=cr.actual_hours,
            already_deducted=previously_deducted,
            hours_source=cr.hours_source,
            description=f"Change request: {cr.title[:100]}",
            performed_by=user.email,
        )
        if result is not None:
            deduction = result.to_dict()
            if result.success:
                cr.hours_deducted = result.hours_deducted
                if "hoursSource" not in payload:
                    cr.hours_source = result.source
                cr.is_overage = result.is_overage
            else:
                cr.hours_deducted = 0.0

    record_event(
        s,
        actor=user,
        action="change_request.update",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        metadata={"changes": payload, "deduction": deduction},
    )
    return deduction
