"""
Usage warnings for maintenance plans.

Each warning goes to the organization owner at most once per (plan, level,
period). For the expiry warnings the period is the expiry date of the
rollover record or pack, so every expiring batch is announced once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from flask import current_app
from markupsafe import escape

from app.portal.mailer import send_email
from app.portal.models import OrganizationMember, User
from app.portal.modules.hours.models import MaintenancePlan, OverageNotification
from app.portal.modules.hours.service import HoursBalance, get_hours_balance
from app.portal.modules.hours.tiers import (
    EXPIRY_WARNING_DAYS,
    HOUR_PACKS,
    ON_DEMAND_HOURLY_RATE_CENTS,
    WARN_HOURS_REMAINING,
    WARN_USAGE_FRACTION,
    format_hours,
    format_price,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

AT_80_PERCENT = "AT_80_PERCENT"
AT_2_HOURS = "AT_2_HOURS"
AT_LIMIT = "AT_LIMIT"
FIRST_OVERAGE = "FIRST_OVERAGE"
ROLLOVER_EXPIRING = "ROLLOVER_EXPIRING"
PACK_EXPIRING = "PACK_EXPIRING"


def _owner(s: "Session", plan: MaintenancePlan) -> User | None:
    if plan.project is None:
        return None
    member = (
        s.query(OrganizationMember)
        .filter(
            OrganizationMember.organization_id == plan.project.organization_id,
            OrganizationMember.role == "OWNER",
        )
        .order_by(OrganizationMember.id.asc())
        .first()
    )
    return member.user if member else None


def _wrap(body: str) -> str:
    return f'<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">{body}<p style="color:#666">- The Studio Team</p></div>'


def _message(level: str, balance: HoursBalance, project_name: str, name: str, extra: dict | None = None) -> tuple[str, str]:
    app_url = current_app.config.get("APP_URL") or ""
    extra = extra or {}
    project_html, name = escape(project_name), escape(name)
    if level == AT_80_PERCENT:
        return (
            f"You've used 80% of your monthly hours - {project_name}",
            _wrap(
                f"<p>Hi {name},</p><p>You've used {format_hours(balance.monthly_used)} of your included hours for "
                f"<strong>{project_html}</strong>. {format_hours(balance.monthly_remaining)} remaining.</p>"
                f'<p><a href="{app_url}/client/hours">Manage hours</a></p>'
            ),
        )
    if level == AT_2_HOURS:
        return (
            f"Only {WARN_HOURS_REMAINING} hours remaining - {project_name}",
            _wrap(
                f"<p>Hi {name},</p><p>You have {format_hours(balance.monthly_remaining)} left for <strong>{project_html}</strong> "
                f"this month. A Quick Boost pack adds {HOUR_PACKS['SMALL'].hours} hours for "
                f"{format_price(HOUR_PACKS['SMALL'].cost_cents)}.</p>"
            ),
        )
    if level == AT_LIMIT:
        return (
            f"Monthly hours limit reached - {project_name}",
            _wrap(
                f"<p>Hi {name},</p><p>You've used all {format_hours(balance.monthly_included)} of included support hours for "
                f"<strong>{project_html}</strong>. New requests need an hour pack or on-demand billing "
                f"({format_price(ON_DEMAND_HOURLY_RATE_CENTS)}/hour).</p>"
            ),
        )
    if level == FIRST_OVERAGE:
        return (
            f"Overage hours used - {project_name}",
            _wrap(
                f"<p>Hi {name},</p><p>We completed your request for <strong>{project_html}</strong> using "
                f"{format_hours(balance.overage_hours)} of overage.</p>"
            ),
        )
    what = "rollover hours" if level == ROLLOVER_EXPIRING else "hour pack hours"
    return (
        f"{format_hours(extra.get('hours', 0))} expiring in {extra.get('daysUntilExpiry')} days - {project_name}",
        _wrap(
            f"<p>Hi {name},</p><p>{format_hours(extra.get('hours', 0))} of {what} for <strong>{project_html}</strong> "
            f"expire on {str(extra.get('expiresAt', ''))[:10]}.</p>"
        ),
    )


def _send_once(
    s: "Session",
    plan: MaintenancePlan,
    level: str,
    period_start: datetime,
    owner: User,
    balance: HoursBalance,
    extra: dict | None = None,
) -> bool:
    existing = (
        s.query(OverageNotification)
        .filter(
            OverageNotification.plan_id == plan.id,
            OverageNotification.warning_level == level,
            OverageNotification.period_start == period_start,
        )
        .first()
    )
    if existing is not None:
        return False
    subject, html = _message(level, balance, plan.project.name if plan.project else "Your Project", owner.name or "there", extra)
    result = send_email(owner.email, subject, html)
    if not result.ok:
        logger.info("Warning %s for plan %s not delivered: %s", level, plan.id, result.error)
    s.add(
        OverageNotification(
            plan_id=plan.id,
            warning_level=level,
            period_start=period_start,
            email_to=owner.email,
            hours_expiring=(extra or {}).get("hours"),
        )
    )
    s.flush()
    return True


def check_and_send_warnings(s: "Session", plan_id: int, now: datetime | None = None) -> list[str]:
    """Send whichever usage warnings are due; returns the levels sent."""
    now = now or datetime.utcnow()
    balance = get_hours_balance(s, plan_id, now=now)
    if balance is None or balance.is_unlimited:
        return []
    plan = s.get(MaintenancePlan, plan_id)
    owner = _owner(s, plan) if plan else None
    if plan is None or owner is None or not owner.email:
        return []

    sent: list[str] = []
    period_start = plan.current_period_start or plan.created_at

    usage = balance.monthly_used / balance.monthly_included if balance.monthly_included > 0 else 0.0
    if WARN_USAGE_FRACTION <= usage < 1 and _send_once(s, plan, AT_80_PERCENT, period_start, owner, balance):
        sent.append(AT_80_PERCENT)
    if 0 < balance.monthly_remaining <= WARN_HOURS_REMAINING and _send_once(s, plan, AT_2_HOURS, period_start, owner, balance):
        sent.append(AT_2_HOURS)
    if balance.at_limit and not balance.is_overage and _send_once(s, plan, AT_LIMIT, period_start, owner, balance):
        sent.append(AT_LIMIT)
    if balance.is_overage and balance.overage_hours > 0 and _send_once(s, plan, FIRST_OVERAGE, period_start, owner, balance):
        sent.append(FIRST_OVERAGE)

    for item in balance.rollover_expiring_soon:
        if item["daysUntilExpiry"] <= EXPIRY_WARNING_DAYS:
            expires = datetime.fromisoformat(item["expiresAt"])
            if _send_once(s, plan, ROLLOVER_EXPIRING, expires, owner, balance, item):
                sent.append(ROLLOVER_EXPIRING)
    for item in balance.pack_hours_expiring_soon:
        if item["daysUntilExpiry"] <= EXPIRY_WARNING_DAYS:
            expires = datetime.fromisoformat(item["expiresAt"])
            if _send_once(s, plan, PACK_EXPIRING, expires, owner, balance, item):
                sent.append(PACK_EXPIRING)
    return sent


def send_warnings_best_effort(s: "Session", plan_id: int) -> list[str]:
    savepoint = s.begin_nested()
    try:
        levels = check_and_send_warnings(s, plan_id)
    except Exception:
        savepoint.rollback()
        logger.exception("Usage warning check failed (plan_id=%s)", plan_id)
        return []
    savepoint.commit()
    return levels
