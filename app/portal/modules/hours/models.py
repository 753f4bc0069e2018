from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base

if TYPE_CHECKING:
    from app.portal.modules.projects.models import Project


class MaintenancePlan(Base):
    __tablename__ = "maintenance_plans"
    __table_args__ = (Index("idx_maintenance_plans_project", "project_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)  # ESSENTIALS, DIRECTOR, COO
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="ACTIVE")  # ACTIVE, PAUSED, CANCELLED

    support_hours_used: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    change_requests_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    rollover_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    rollover_cap: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    rollover_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    on_demand_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grace_period_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    daily_request_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    requests_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_request_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    project: Mapped["Project"] = relationship(lazy="selectin")
    hour_packs: Mapped[list["HourPack"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="HourPack.id",
    )
    rollover_records: Mapped[list["RolloverHours"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="RolloverHours.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "tier": self.tier,
            "status": self.status,
            "supportHoursUsed": self.support_hours_used,
            "changeRequestsUsed": self.change_requests_used,
            "rolloverEnabled": self.rollover_enabled,
            "rolloverCap": self.rollover_cap,
            "onDemandEnabled": self.on_demand_enabled,
            "gracePeriodUsed": self.grace_period_used,
            "dailyRequestLimit": self.daily_request_limit,
            "currentPeriodStart": self.current_period_start.isoformat() if self.current_period_start else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
        }


class HourPack(Base):
    __tablename__ = "hour_packs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False)
    pack_type: Mapped[str] = mapped_column(String(32), nullable=False)
    hours: Mapped[float] = mapped_column(Float, nullable=False)
    hours_remaining: Mapped[float] = mapped_column(Float, nullable=False)
    cost_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    never_expires: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    stripe_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    plan: Mapped[MaintenancePlan] = relationship(back_populates="hour_packs")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "planId": self.plan_id,
            "packType": self.pack_type,
            "hours": self.hours,
            "hoursRemaining": self.hours_remaining,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "neverExpires": self.never_expires,
            "isActive": self.is_active,
        }


class RolloverHours(Base):
    __tablename__ = "rollover_hours"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False)
    hours: Mapped[float] = mapped_column(Float, nullable=False)
    hours_remaining: Mapped[float] = mapped_column(Float, nullable=False)
    source_month: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    is_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    plan: Mapped[MaintenancePlan] = relationship(back_populates="rollover_records")


class MaintenanceLog(Base):
    __tablename__ = "maintenance_logs"
    __table_args__ = (Index("idx_maintenance_logs_plan", "plan_id", "performed_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False)
    hours_spent: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    overage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class OverageNotification(Base):
    """One row per warning already sent, keyed by (plan, level, period)."""

    __tablename__ = "overage_notifications"
    __table_args__ = (Index("idx_overage_notifications_lookup", "plan_id", "warning_level", "period_start"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("maintenance_plans.id", ondelete="CASCADE"), nullable=False)
    warning_level: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    email_to: Mapped[str] = mapped_column(String(320), nullable=False)
    hours_expiring: Mapped[float | None] = mapped_column(Float, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
