"""
Maintenance tier and hour-pack catalogue.

All prices are in cents; -1 means unlimited.
"""

from __future__ import annotations

from dataclasses import dataclass

UNLIMITED = -1


@dataclass(frozen=True)
class Tier:
    id: str
    name: str
    monthly_price_cents: int
    support_hours_included: int
    change_requests_included: int
    rollover_enabled: bool
    rollover_cap: int
    rollover_expiry_days: int

    @property
    def is_unlimited(self) -> bool:
        return self.support_hours_included == UNLIMITED


@dataclass(frozen=True)
class HourPackType:
    id: str
    name: str
    hours: int
    cost_cents: int
    expiry_days: int
    never_expires: bool


TIERS: dict[str, Tier] = {
    "ESSENTIALS": Tier(
        id="ESSENTIALS",
        name="Nonprofit Essentials",
        monthly_price_cents=50000,
        support_hours_included=8,
        change_requests_included=3,
        rollover_enabled=True,
        rollover_cap=16,
        rollover_expiry_days=60,
    ),
    "DIRECTOR": Tier(
        id="DIRECTOR",
        name="Digital Director Platform",
        monthly_price_cents=75000,
        support_hours_included=16,
        change_requests_included=5,
        rollover_enabled=True,
        rollover_cap=32,
        rollover_expiry_days=90,
    ),
    "COO": Tier(
        id="COO",
        name="Digital COO System",
        monthly_price_cents=200000,
        support_hours_included=UNLIMITED,
        change_requests_included=UNLIMITED,
        rollover_enabled=False,
        rollover_cap=0,
        rollover_expiry_days=0,
    ),
}

HOUR_PACKS: dict[str, HourPackType] = {
    "SMALL": HourPackType(id="SMALL", name="Quick Boost", hours=5, cost_cents=35000, expiry_days=60, never_expires=False),
    "MEDIUM": HourPackType(id="MEDIUM", name="Power Pack", hours=10, cost_cents=65000, expiry_days=90, never_expires=False),
    "LARGE": HourPackType(id="LARGE", name="Mega Pack", hours=20, cost_cents=120000, expiry_days=120, never_expires=False),
    "PREMIUM": HourPackType(id="PREMIUM", name="Never Expire Pack", hours=10, cost_cents=85000, expiry_days=0, never_expires=True),
}

# One-time overage allowance per plan.
GRACE_MAX_OVERAGE_HOURS = 1.0

ON_DEMAND_HOURLY_RATE_CENTS = 7500
DEFAULT_DAILY_REQUEST_LIMIT = 3
DEFAULT_CHANGE_REQUESTS_INCLUDED = 3

WARN_USAGE_FRACTION = 0.8
WARN_HOURS_REMAINING = 2
EXPIRY_WARNING_DAYS = 7
EXPIRING_SOON_DAYS = 30


def get_tier(tier_id: str | None) -> Tier | None:
    return TIERS.get((tier_id or "").upper())


def get_hour_pack(pack_id: str | None) -> HourPackType | None:
    return HOUR_PACKS.get((pack_id or "").upper())


def format_hours(hours: float) -> str:
    if hours == UNLIMITED:
        return "Unlimited"
    if hours == 1:
        return "1 hour"
    return f"{hours:g} hours"


def format_price(cents: int) -> str:
    return f"${cents / 100:,.0f}"
