from __future__ import annotations

from datetime import datetime

from flask import Blueprint, g, jsonify

from app.portal.db import db_session, get_or_404
from app.portal.errors import json_error
from app.portal.modules.meetings.models import Meeting
from app.portal.modules.meetings.service import cancel_rsvp, create_meeting, rsvp, validate_meeting
from app.portal.rbac import require_policy
from app.portal.utils import json_body

public_bp = Blueprint("meetings", __name__)
admin_bp = Blueprint("meetings_admin", __name__)


@admin_bp.post("/meetings")
@require_policy("content.manage")
def meeting_create():
    s = db_session()
    fields, errors = validate_meeting(json_body())
    if errors:
        return json_error(errors[0], 400, details=errors)
    meeting = create_meeting(s, fields, g.current_user)
    s.commit()
    return jsonify({"meeting": meeting.to_dict()}), 201


@public_bp.get("")
@require_policy("community.access")
def meetings_upcoming():
    s = db_session()
    meetings = (
        s.query(Meeting)
        .filter(Meeting.end_time >= datetime.utcnow())
        .order_by(Meeting.start_time.asc())
        .all()
    )
    return jsonify({"meetings": [m.to_dict(viewer_id=g.current_user.id) for m in meetings]})


@public_bp.post("/<int:meeting_id>/rsvp")
@require_policy("community.access")
def meeting_rsvp(meeting_id: int):
    s = db_session()
    meeting = get_or_404(s, Meeting, meeting_id, "Meeting not found")
    r, created = rsvp(s, meeting, g.current_user)
    s.commit()
    return jsonify({"rsvp": r.to_dict(), "meeting": meeting.to_dict(viewer_id=g.current_user.id)}), (201 if created else 200)


@public_bp.delete("/<int:meeting_id>/rsvp")
@require_policy("community.access")
def meeting_rsvp_cancel(meeting_id: int):
    s = db_session()
    meeting = get_or_404(s, Meeting, meeting_id, "Meeting not found")
    r = cancel_rsvp(meeting, g.current_user)
    if r is None:
        return json_error("RSVP not found", 404)
    s.commit()
    return jsonify({"rsvp": r.to_dict()})
