from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


class Meeting(Base):
    __tablename__ = "meetings"
    __table_args__ = (Index("idx_meetings_start", "start_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    program: Mapped[str | None] = mapped_column(String(128), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    format: Mapped[str] = mapped_column(String(16), nullable=False, default="ONLINE")  # ONLINE, IN_PERSON
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    link: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    rsvps: Mapped[list["MeetingRsvp"]] = relationship(
        back_populates="meeting",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def going_count(self) -> int:
        return sum(1 for r in self.rsvps if r.status == "GOING")

    def to_dict(self, viewer_id: int | None = None) -> dict:
        d = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "program": self.program,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "format": self.format,
            "location": self.location,
            "link": self.link,
            "capacity": self.capacity,
            "rsvpCount": self.going_count,
        }
        if viewer_id is not None:
            d["isGoing"] = any(r.user_id == viewer_id and r.status == "GOING" for r in self.rsvps)
        return d


class MeetingRsvp(Base):
    __tablename__ = "meeting_rsvps"
    __table_args__ = (UniqueConstraint("meeting_id", "user_id", name="uq_meeting_rsvp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    meeting_id: Mapped[int] = mapped_column(ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="GOING")  # GOING, CANCELLED
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    meeting: Mapped[Meeting] = relationship(back_populates="rsvps")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "meetingId": self.meeting_id,
            "userId": self.user_id,
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
        }
