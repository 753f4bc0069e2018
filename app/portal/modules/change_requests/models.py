from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base

if TYPE_CHECKING:
    from app.portal.modules.projects.models import Project


class ChangeRequest(Base):
    __tablename__ = "change_requests"
    __table_args__ = (
        Index("idx_change_requests_project", "project_id"),
        Index("idx_change_requests_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    plan_id: Mapped[int | None] = mapped_column(ForeignKey("maintenance_plans.id", ondelete="SET NULL"), nullable=True)
    requested_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="OTHER")
    priority: Mapped[str] = mapped_column(String(32), nullable=False, default="NORMAL")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")

    estimated_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    hours_deducted: Mapped[float | None] = mapped_column(Float, nullable=True)
    hours_source: Mapped[str | None] = mapped_column(String(32), nullable=True)

    urgency_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_overage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    overage_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requires_client_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flagged_for_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attachments: Mapped[list | None] = mapped_column(JSON, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    project: Mapped["Project"] = relationship(lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "projectName": self.project.name if self.project else None,
            "planId": self.plan_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "estimatedHours": self.estimated_hours,
            "actualHours": self.actual_hours,
            "hoursDeducted": self.hours_deducted,
            "hoursSource": self.hours_source,
            "urgencyFee": self.urgency_fee_cents,
            "isOverage": self.is_overage,
            "overageAmount": self.overage_amount_cents,
            "requiresClientApproval": self.requires_client_approval,
            "flaggedForReview": self.flagged_for_review,
            "attachments": self.attachments or [],
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "createdAt": self.created_at.isoformat(),
        }
