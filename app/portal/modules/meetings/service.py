from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from app.portal.audit import record_event
from app.portal.errors import ApiError
from app.portal.utils import clean_str, parse_datetime

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.meetings.models import Meeting, MeetingRsvp

FORMATS = ("ONLINE", "IN_PERSON")
MAX_CAPACITY = 1000


def validate_meeting(payload: dict) -> tuple[dict, list[str]]:
    """Returns (normalized fields, errors)."""
    errors: list[str] = []
    title = clean_str(payload.get("title")) or ""
    description = clean_str(payload.get("description")) or ""
    if not 1 <= len(title) <= 200:
        errors.append("Title must be between 1 and 200 characters")
    if not 1 <= len(description) <= 1000:
        errors.append("Description must be between 1 and 1000 characters")

    start = end = None
    try:
        start = parse_datetime(payload.get("startTime"))
        end = parse_datetime(payload.get("endTime"))
    except ValueError:
        errors.append("startTime and endTime must be ISO-8601 datetimes")
    else:
        if start is None or end is None:
            errors.append("startTime and endTime are required")
        elif end <= start:
            errors.append("End time must be after start time")

    fmt = (clean_str(payload.get("format")) or "ONLINE").upper()
    location = clean_str(payload.get("location"))
    link = clean_str(payload.get("link"))
    if fmt not in FORMATS:
        errors.append(f"Invalid format. Must be one of: {', '.join(FORMATS)}")
    elif fmt == "IN_PERSON" and not location:
        errors.append("Location is required for in-person meetings")
    elif fmt == "ONLINE" and not link:
        errors.append("Link is required for online meetings")

    capacity = payload.get("capacity")
    if capacity not in (None, ""):
        try:
            capacity = int(capacity)
        except (TypeError, ValueError):
            errors.append("Capacity must be a whole number")
        else:
            if not 1 <= capacity <= MAX_CAPACITY:
                errors.append(f"Capacity must be between 1 and {MAX_CAPACITY}")
    else:
        capacity = None

    fields = {
        "title": title,
        "description": description,
        "program": clean_str(payload.get("program")),
        "start_time": start,
        "end_time": end,
        "format": fmt,
        "location": location,
        "link": link,
        "capacity": capacity,
    }
    return fields, errors


def create_meeting(s: "Session", fields: dict, user: "User") -> "Meeting":
    from app.portal.modules.meetings.models import Meeting

    meeting = Meeting(**fields, created_by_user_id=user.id)
    s.add(meeting)
    s.flush()
    record_event(s, actor=user, action="meeting.create", entity_type="Meeting", entity_id=str(meeting.id))
    return meeting


def rsvp(s: "Session", meeting: "Meeting", user: "User", now: datetime | None = None) -> tuple["MeetingRsvp", bool]:
    """Returns (rsvp, created). An existing GOING rsvp is returned unchanged."""
    from app.portal.modules.meetings.models import MeetingRsvp

    now = now or datetime.utcnow()
    if meeting.start_time <= now:
        raise ApiError("Cannot RSVP to a past meeting", 400)
    existing = next((r for r in meeting.rsvps if r.user_id == user.id), None)
    if existing is not None and existing.status == "GOING":
        return existing, False
    if meeting.capacity is not None and meeting.going_count >= meeting.capacity:
        raise ApiError("Meeting is full", 409)
    if existing is not None:
        existing.status = "GOING"
        existing.created_at = now
        return existing, True
    r = MeetingRsvp(meeting_id=meeting.id, user_id=user.id, status="GOING", created_at=now)
    meeting.rsvps.append(r)
    s.flush()
    return r, True


def cancel_rsvp(meeting: "Meeting", user: "User") -> "MeetingRsvp | None":
    existing = next((r for r in meeting.rsvps if r.user_id == user.id), None)
    if existing is not None:
        existing.status = "CANCELLED"
    return existing
