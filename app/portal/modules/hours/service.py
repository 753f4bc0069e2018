"""
Hours tracking for maintenance plans.

Balances come from three places: the monthly allowance of the plan's tier,
rollover records carried over from earlier periods, and purchased hour packs.
Deductions consume them oldest-expiry first (see ``deduct_hours``).
"""

from __future__ import annotations

import calendar
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.portal.modules.hours.models import HourPack, MaintenanceLog, MaintenancePlan, RolloverHours
from app.portal.modules.hours.tiers import (
    DEFAULT_CHANGE_REQUESTS_INCLUDED,
    EXPIRING_SOON_DAYS,
    GRACE_MAX_OVERAGE_HOURS,
    UNLIMITED,
    get_hour_pack,
    get_tier,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

COMPLIMENTARY = "COMPLIMENTARY"
HOURS_SOURCES = ("monthly", "rollover", "pack", "overage", COMPLIMENTARY)


def _r(hours: float) -> float:
    return round(hours, 2)


def add_month(dt: datetime) -> datetime:
    year = dt.year + dt.month // 12
    month = dt.month % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _days_until(when: datetime, now: datetime) -> int:
    return math.ceil((when - now).total_seconds() / 86400)


@dataclass
class HoursBalance:
    monthly_included: float
    monthly_used: float
    monthly_remaining: float
    rollover_total: float
    rollover_expiring_soon: list[dict] = field(default_factory=list)
    pack_hours_total: float = 0.0
    pack_hours_expiring_soon: list[dict] = field(default_factory=list)
    total_available: float = 0.0
    logged_hours_this_period: float = 0.0
    is_unlimited: bool = False
    at_limit: bool = False
    is_overage: bool = False
    overage_hours: float = 0.0
    change_requests_included: int = DEFAULT_CHANGE_REQUESTS_INCLUDED
    change_requests_used: int = 0
    change_requests_remaining: int = DEFAULT_CHANGE_REQUESTS_INCLUDED

    def to_dict(self) -> dict:
        return {
            "monthlyIncluded": self.monthly_included,
            "monthlyUsed": self.monthly_used,
            "monthlyRemaining": self.monthly_remaining,
            "rolloverTotal": self.rollover_total,
            "rolloverExpiringSoon": self.rollover_expiring_soon,
            "packHoursTotal": self.pack_hours_total,
            "packHoursExpiringSoon": self.pack_hours_expiring_soon,
            "totalAvailable": self.total_available,
            "loggedHoursThisPeriod": self.logged_hours_this_period,
            "isUnlimited": self.is_unlimited,
            "atLimit": self.at_limit,
            "isOverage": self.is_overage,
            "overageHours": self.overage_hours,
            "changeRequestsIncluded": self.change_requests_included,
            "changeRequestsUsed": self.change_requests_used,
            "changeRequestsRemaining": self.change_requests_remaining,
        }


@dataclass
class DeductionResult:
    success: bool
    hours_deducted: float
    source: str  # monthly | rollover | pack
    is_overage: bool
    overage_hours: float
    remaining_hours: float
    source_id: int | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "hoursDeducted": self.hours_deducted,
            "source": self.source,
            "sourceId": self.source_id,
            "isOverage": self.is_overage,
            "overageHours": self.overage_hours,
            "remainingHours": self.remaining_hours,
            "error": self.error,
        }


@dataclass
class RolloverResult:
    hours_rolled_over: float
    hours_expired: float


@dataclass
class SubmitCheck:
    allowed: bool
    hours_remaining: float
    requests_remaining: int
    reason: str | None = None
    requires_approval: bool = False
    requires_payment: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        return {
            "allowed": d["allowed"],
            "reason": d["reason"],
            "hoursRemaining": d["hours_remaining"],
            "requestsRemaining": d["requests_remaining"],
            "requiresApproval": d["requires_approval"],
            "requiresPayment": d["requires_payment"],
        }


def active_plan_for_project(s: "Session", project_id: int) -> MaintenancePlan | None:
    return (
        s.query(MaintenancePlan)
        .filter(MaintenancePlan.project_id == project_id, MaintenancePlan.status == "ACTIVE")
        .order_by(MaintenancePlan.id.desc())
        .first()
    )


def _live_rollover(s: "Session", plan_id: int) -> list[RolloverHours]:
    return (
        s.query(RolloverHours)
        .filter(
            RolloverHours.plan_id == plan_id,
            RolloverHours.is_expired.is_(False),
            RolloverHours.hours_remaining > 0,
        )
        .order_by(RolloverHours.expires_at.asc(), RolloverHours.id.asc())
        .all()
    )


def _live_packs(s: "Session", plan_id: int, now: datetime) -> list[HourPack]:
    packs = (
        s.query(HourPack)
        .filter(HourPack.plan_id == plan_id, HourPack.is_active.is_(True), HourPack.hours_remaining > 0)
        .all()
    )
    packs = [p for p in packs if p.never_expires or p.expires_at is None or p.expires_at > now]
    # expiring packs first (soonest expiry first), never-expire packs last
    return sorted(packs, key=lambda p: (p.never_expires, p.expires_at or datetime.max, p.id))


def get_hours_balance(s: "Session", plan_id: int, now: datetime | None = None) -> HoursBalance | None:
    plan = s.get(MaintenancePlan, plan_id)
    if plan is None:
        return None
    now = now or datetime.utcnow()
    tier = get_tier(plan.tier)
    is_unlimited = bool(tier and tier.is_unlimited)

    monthly_included = float(tier.support_hours_included if tier else 0)
    monthly_used = _r(plan.support_hours_used or 0.0)
    monthly_remaining = -1.0 if is_unlimited else _r(max(0.0, monthly_included - monthly_used))

    period_start = plan.current_period_start or plan.created_at
    logged = (
        s.query(func.coalesce(func.sum(MaintenanceLog.hours_spent), 0.0))
        .filter(
            MaintenanceLog.plan_id == plan.id,
            MaintenanceLog.billable.is_(True),
            MaintenanceLog.performed_at >= period_start,
        )
        .scalar()
    )

    rollovers = [r for r in _live_rollover(s, plan.id) if r.expires_at > now]
    rollover_total = _r(sum(r.hours_remaining for r in rollovers))
    rollover_expiring = []
    for r in rollovers:
        days = _days_until(r.expires_at, now)
        if days <= EXPIRING_SOON_DAYS:
            rollover_expiring.append({"id": r.id, "hours": r.hours_remaining, "expiresAt": r.expires_at.isoformat(), "daysUntilExpiry": days})

    packs = _live_packs(s, plan.id, now)
    pack_total = _r(sum(p.hours_remaining for p in packs))
    pack_expiring = []
    for p in packs:
        if p.never_expires or p.expires_at is None:
            continue
        days = _days_until(p.expires_at, now)
        if days <= EXPIRING_SOON_DAYS:
            pack_expiring.append({"packId": p.id, "packName": p.pack_type, "hours": p.hours_remaining, "expiresAt": p.expires_at.isoformat(), "daysUntilExpiry": days})

    total_available = -1.0 if is_unlimited else _r(monthly_remaining + rollover_total + pack_total)
    is_overage = not is_unlimited and monthly_used > monthly_included
    cr_included = tier.change_requests_included if tier else DEFAULT_CHANGE_REQUESTS_INCLUDED
    cr_used = plan.change_requests_used or 0

    return HoursBalance(
        monthly_included=-1.0 if is_unlimited else monthly_included,
        monthly_used=monthly_used,
        monthly_remaining=monthly_remaining,
        rollover_total=rollover_total,
        rollover_expiring_soon=rollover_expiring,
        pack_hours_total=pack_total,
        pack_hours_expiring_soon=pack_expiring,
        total_available=total_available,
        logged_hours_this_period=_r(float(logged or 0.0)),
        is_unlimited=is_unlimited,
        at_limit=not is_unlimited and total_available <= 0,
        is_overage=is_overage,
        overage_hours=_r(monthly_used - monthly_included) if is_overage else 0.0,
        change_requests_included=cr_included,
        change_requests_used=cr_used,
        change_requests_remaining=UNLIMITED if cr_included == UNLIMITED else max(0, cr_included - cr_used),
    )


def deduct_hours(
    s: "Session",
    plan_id: int,
    hours: float,
    description: str,
    performed_by: str | None = None,
    now: datetime | None = None,
) -> DeductionResult:
    """
    Deduct hours in FIFO order:
    1. rollover hours, oldest expiry first
    2. the monthly allowance
    3. expiring hour packs, soonest expiry first
    4. never-expire packs
    5. overage, when on-demand billing is on or the one-time grace still applies

    Always writes a MaintenanceLog row. Partial deductions are left in the
    session when the result is unsuccessful; callers that need all-or-nothing
    run this inside a savepoint.
    """
    plan = s.get(MaintenancePlan, plan_id)
    if plan is None:
        return DeductionResult(False, 0.0, "monthly", False, 0.0, 0.0, error="Plan not found")

    now = now or datetime.utcnow()
    tier = get_tier(plan.tier)

    if tier is not None and tier.is_unlimited:
        s.add(MaintenanceLog(plan_id=plan.id, hours_spent=hours, description=description, performed_by=performed_by, billable=True, overage=False, performed_at=now))
        plan.support_hours_used = _r((plan.support_hours_used or 0.0) + hours)
        plan.updated_at = now
        s.flush()
        return DeductionResult(True, hours, "monthly", False, 0.0, -1.0)

    remaining = float(hours)
    source = "monthly"
    source_id: int | None = None

    for rollover in _live_rollover(s, plan.id):
        if remaining <= 0:
            break
        if rollover.expires_at <= now:
            continue
        take = min(remaining, rollover.hours_remaining)
        rollover.hours_remaining = _r(rollover.hours_remaining - take)
        if rollover.hours_remaining <= 0:
            rollover.used_at = now
        remaining = _r(remaining - take)
        source, source_id = "rollover", rollover.id

    monthly_included = float(tier.support_hours_included if tier else 0)
    monthly_remaining = max(0.0, monthly_included - (plan.support_hours_used or 0.0))
    if remaining > 0 and monthly_remaining > 0:
        take = min(remaining, monthly_remaining)
        plan.support_hours_used = _r((plan.support_hours_used or 0.0) + take)
        remaining = _r(remaining - take)
        source, source_id = "monthly", None

    for pack in _live_packs(s, plan.id, now):
        if remaining <= 0:
            break
        take = min(remaining, pack.hours_remaining)
        pack.hours_remaining = _r(pack.hours_remaining - take)
        if pack.hours_remaining <= 0:
            pack.used_at = now
            pack.is_active = False
        remaining = _r(remaining - take)
        source, source_id = "pack", pack.id

    is_overage = remaining > 0
    overage_hours = remaining
    if is_overage and (plan.on_demand_enabled or (not plan.grace_period_used and overage_hours <= GRACE_MAX_OVERAGE_HOURS)):
        plan.support_hours_used = _r((plan.support_hours_used or 0.0) + overage_hours)
        if not plan.on_demand_enabled:
            plan.grace_period_used = True
        remaining = 0.0

    plan.updated_at = now
    s.add(
        MaintenanceLog(
            plan_id=plan.id,
            hours_spent=hours,
            description=description,
            performed_by=performed_by,
            billable=True,
            overage=is_overage,
            performed_at=now,
        )
    )
    s.flush()

    balance = get_hours_balance(s, plan.id, now=now)
    return DeductionResult(
        success=remaining == 0,
        hours_deducted=_r(hours - remaining),
        source=source,
        source_id=source_id,
        is_overage=is_overage,
        overage_hours=overage_hours if is_overage else 0.0,
        remaining_hours=balance.total_available if balance else 0.0,
        error="Insufficient hours available" if remaining > 0 else None,
    )


def apply_completion_deduction(
    s: "Session",
    *,
    plan: MaintenancePlan | None,
    actual_hours: float | None,
    already_deducted: float | None,
    hours_source: str | None,
    description: str,
    performed_by: str | None = None,
) -> DeductionResult | None:
    """
    Deduct hours for a request that just reached its completed status.

    Returns None when the guard says there is nothing to deduct (no plan, no
    hours, already deducted, or complimentary work). The deduction runs in a
    savepoint that is rolled back when it does not fully succeed; errors are
    logged and reported as an unsuccessful result, never raised.
    """
    if plan is None or not actual_hours or actual_hours <= 0:
        return None
    if already_deducted:
        return None
    if (hours_source or "").upper() == COMPLIMENTARY:
        return None

    savepoint = s.begin_nested()
    try:
        result = deduct_hours(s, plan.id, float(actual_hours), description, performed_by)
    except Exception as e:
        savepoint.rollback()
        logger.exception("Hour deduction failed (plan_id=%s)", plan.id)
        return DeductionResult(False, 0.0, "monthly", False, 0.0, 0.0, error=str(e))
    if result.success:
        savepoint.commit()
    else:
        savepoint.rollback()
        logger.warning("Hour deduction not applied (plan_id=%s): %s", plan.id, result.error)
    return result


def process_monthly_rollover(s: "Session", plan_id: int, now: datetime | None = None) -> RolloverResult:
    plan = s.get(MaintenancePlan, plan_id)
    if plan is None:
        return RolloverResult(0.0, 0.0)
    tier = get_tier(plan.tier)
    if not plan.rollover_enabled or tier is None or tier.is_unlimited:
        return RolloverResult(0.0, 0.0)

    now = now or datetime.utcnow()
    records = s.query(RolloverHours).filter(RolloverHours.plan_id == plan.id, RolloverHours.is_expired.is_(False)).all()

    hours_expired = 0.0
    current = 0.0
    for r in records:
        if r.expires_at < now:
            hours_expired += r.hours_remaining
            r.is_expired = True
            r.hours_remaining = 0.0
        else:
            current += r.hours_remaining

    unused = max(0.0, tier.support_hours_included - (plan.support_hours_used or 0.0))
    capacity = max(0.0, (plan.rollover_cap or 0.0) - current)
    to_roll = _r(min(unused, capacity))
    if to_roll > 0:
        s.add(
            RolloverHours(
                plan_id=plan.id,
                hours=to_roll,
                hours_remaining=to_roll,
                source_month=now,
                expires_at=now + timedelta(days=tier.rollover_expiry_days or 60),
            )
        )
    plan.rollover_hours = _r(current + to_roll)
    plan.updated_at = now
    s.flush()
    logger.info("Rollover for plan %s: rolled=%s expired=%s", plan.id, to_roll, hours_expired)
    return RolloverResult(hours_rolled_over=to_roll, hours_expired=_r(hours_expired))


def reset_billing_period(s: "Session", plan_id: int, now: datetime | None = None) -> MaintenancePlan | None:
    plan = s.get(MaintenancePlan, plan_id)
    if plan is None:
        return None
    now = now or datetime.utcnow()
    plan.support_hours_used = 0.0
    plan.change_requests_used = 0
    plan.requests_today = 0
    plan.current_period_start = now
    plan.current_period_end = add_month(now)
    plan.updated_at = now
    s.flush()
    return plan


def close_billing_period(s: "Session", plan_id: int, now: datetime | None = None) -> RolloverResult:
    """Roll unused hours over, then start the next period."""
    result = process_monthly_rollover(s, plan_id, now=now)
    reset_billing_period(s, plan_id, now=now)
    return result


def can_submit_change_request(s: "Session", plan_id: int, today: date | None = None) -> SubmitCheck:
    balance = get_hours_balance(s, plan_id)
    plan = s.get(MaintenancePlan, plan_id)
    if balance is None or plan is None:
        return SubmitCheck(False, 0.0, 0, reason="Plan not found")

    if balance.is_unlimited:
        return SubmitCheck(True, -1.0, UNLIMITED)

    if balance.change_requests_remaining <= 0 and not plan.on_demand_enabled:
        return SubmitCheck(
            False,
            balance.total_available,
            0,
            reason="Monthly change request limit reached",
            requires_payment=True,
        )

    if balance.at_limit and not plan.on_demand_enabled:
        if not plan.grace_period_used:
            return SubmitCheck(
                True,
                0.0,
                balance.change_requests_remaining,
                reason="One-time grace period will be used",
                requires_approval=True,
            )
        return SubmitCheck(
            False,
            0.0,
            balance.change_requests_remaining,
            reason="Monthly hours limit reached",
            requires_payment=True,
        )

    if plan.on_demand_enabled:
        today = today or date.today()
        requests_today = plan.requests_today if plan.last_request_date == today else 0
        if requests_today >= plan.daily_request_limit:
            return SubmitCheck(
                False,
                balance.total_available,
                balance.change_requests_remaining,
                reason=f"Daily request limit ({plan.daily_request_limit}) reached",
            )

    return SubmitCheck(True, balance.total_available, balance.change_requests_remaining)


def increment_daily_requests(s: "Session", plan_id: int, today: date | None = None) -> None:
    plan = s.get(MaintenancePlan, plan_id)
    if plan is None:
        return
    today = today or date.today()
    plan.requests_today = (plan.requests_today + 1) if plan.last_request_date == today else 1
    plan.last_request_date = today


def create_plan(s: "Session", project_id: int, tier_id: str, *, on_demand_enabled: bool = False, now: datetime | None = None) -> MaintenancePlan:
    tier = get_tier(tier_id)
    if tier is None:
        raise ValueError(f"Unknown tier: {tier_id}")
    now = now or datetime.utcnow()
    plan = MaintenancePlan(
        project_id=project_id,
        tier=tier.id,
        status="ACTIVE",
        rollover_enabled=tier.rollover_enabled,
        rollover_cap=float(tier.rollover_cap),
        on_demand_enabled=on_demand_enabled,
        current_period_start=now,
        current_period_end=add_month(now),
        created_at=now,
        updated_at=now,
    )
    s.add(plan)
    s.flush()
    return plan


def add_hour_pack(
    s: "Session",
    plan: MaintenancePlan,
    pack_id: str,
    *,
    stripe_payment_id: str | None = None,
    now: datetime | None = None,
) -> HourPack:
    pack_type = get_hour_pack(pack_id)
    if pack_type is None:
        raise ValueError(f"Unknown hour pack: {pack_id}")
    now = now or datetime.utcnow()
    pack = HourPack(
        plan_id=plan.id,
        pack_type=pack_type.id,
        hours=float(pack_type.hours),
        hours_remaining=float(pack_type.hours),
        cost_cents=pack_type.cost_cents,
        purchased_at=now,
        expires_at=None if pack_type.never_expires else now + timedelta(days=pack_type.expiry_days),
        never_expires=pack_type.never_expires,
        is_active=True,
        stripe_payment_id=stripe_payment_id,
    )
    s.add(pack)
    s.flush()
    return pack
