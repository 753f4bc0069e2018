from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base

if TYPE_CHECKING:
    from app.portal.modules.projects.models import Project


class ClientTask(Base):
    """Something the studio needs the client to do (send content, approve a design, ...)."""

    __tablename__ = "client_tasks"
    __table_args__ = (Index("idx_client_tasks_project", "project_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="general")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, in_progress, completed
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    requires_upload: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    submission_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    submission_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    project: Mapped["Project"] = relationship(lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "projectName": self.project.name if self.project else None,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "status": self.status,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "requiresUpload": self.requires_upload,
            "assignedToUserId": self.assigned_to_user_id,
            "createdByUserId": self.created_by_user_id,
            "data": self.data,
            "submissionFilename": self.submission_filename,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "createdAt": self.created_at.isoformat(),
        }
