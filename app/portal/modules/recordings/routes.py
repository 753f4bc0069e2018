from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.portal.db import db_session, get_or_404
from app.portal.errors import json_error
from app.portal.modules.projects.models import Project
from app.portal.modules.recordings.models import Recording
from app.portal.modules.recordings.service import (
    ALLOWED_EXTENSIONS,
    TranscriptionError,
    ai_service_from_config,
    allowed_audio,
    process_recording,
    upload_recording,
)
from app.portal.rbac import require_policy
from app.portal.storage import storage_from_config
from app.portal.utils import clean_str, parse_id

bp = Blueprint("recordings_admin", __name__)


@bp.post("/recordings")
@require_policy("admin.access")
def recording_upload():
    s = db_session()
    f = request.files.get("file")
    if not f or not f.filename:
        return json_error("File is required", 400)
    if not allowed_audio(f.filename):
        return json_error(f"Unsupported file type. Allowed: {', '.join(ALLOWED_EXTENSIONS)}", 400)
    project_id = parse_id(request.form.get("projectId"), "projectId")
    if project_id is not None:
        get_or_404(s, Project, project_id, "Project not found")
    rec = upload_recording(
        s,
        title=clean_str(request.form.get("title")) or f.filename,
        file_bytes=f.read(),
        filename=f.filename,
        content_type=f.mimetype,
        project_id=project_id,
        user=g.current_user,
        storage=storage_from_config(current_app.config),
    )
    s.commit()
    return jsonify({"recording": rec.to_dict()}), 201


@bp.get("/recordings")
@require_policy("admin.access")
def recordings_list():
    s = db_session()
    q = s.query(Recording)
    project_id = request.args.get("projectId", type=int)
    if project_id:
        q = q.filter(Recording.project_id == project_id)
    items = q.order_by(Recording.created_at.desc()).all()
    return jsonify({"recordings": [r.to_dict() for r in items]})


@bp.get("/recordings/<int:recording_id>")
@require_policy("admin.access")
def recording_detail(recording_id: int):
    rec = get_or_404(db_session(), Recording, recording_id, "Recording not found")
    return jsonify({"recording": rec.to_dict(include_transcript=True)})


@bp.post("/recordings/<int:recording_id>/process")
@require_policy("admin.access")
def recording_process(recording_id: int):
    if not current_app.config.get("TRANSCRIPTION_ENABLED"):
        return json_error("Transcription is not configured", 503)
    s = db_session()
    rec = get_or_404(s, Recording, recording_id, "Recording not found")
    if rec.status == "PROCESSING":
        return json_error("Recording is already being processed", 409)
    try:
        ai = ai_service_from_config(current_app.config)
    except TranscriptionError as e:
        return json_error(str(e), 503)
    ok = process_recording(s, rec, ai, storage_from_config(current_app.config))
    if not ok:
        return json_error(rec.error_message or "Processing failed", 502, recording=rec.to_dict())
    return jsonify({"recording": rec.to_dict(include_transcript=True)})
