from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.portal.models import Base


class ProjectRequest(Base):
    __tablename__ = "project_requests"
    __table_args__ = (
        Index("idx_project_requests_user", "user_id"),
        Index("idx_project_requests_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    services: Mapped[list | None] = mapped_column(JSON, nullable=True)
    budget: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timeline: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="SUBMITTED")

    estimated_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    hours_deducted: Mapped[float | None] = mapped_column(Float, nullable=True)
    hours_source: Mapped[str | None] = mapped_column(String(32), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "organizationId": self.organization_id,
            "projectId": self.project_id,
            "title": self.title,
            "description": self.description,
            "services": self.services or [],
            "budget": self.budget,
            "timeline": self.timeline,
            "status": self.status,
            "estimatedHours": self.estimated_hours,
            "actualHours": self.actual_hours,
            "hoursDeducted": self.hours_deducted,
            "hoursSource": self.hours_source,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
