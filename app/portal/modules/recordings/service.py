from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from openai import OpenAI, OpenAIError
from werkzeug.utils import secure_filename

from app.portal.audit import record_event
from app.portal.storage import StorageError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.recordings.models import Recording
    from app.portal.storage import Storage

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = ("mp3", "m4a", "wav", "webm", "mp4", "ogg")
CATEGORIES = ("CLIENT_CALL", "INTERNAL", "DISCOVERY", "SUPPORT", "OTHER")

SUMMARY_PROMPT = """You summarise recorded meetings for a small web studio.

Given a transcript, reply with ONLY a JSON object of this shape:

{
  "summary": "<3-6 sentence plain-English summary>",
  "action_items": ["<short imperative task>", ...],
  "category": "<one of CLIENT_CALL, INTERNAL, DISCOVERY, SUPPORT, OTHER>"
}

Use an empty list when there are no action items."""


class TranscriptionError(RuntimeError):
    pass


def allowed_audio(filename: str | None) -> bool:
    if not filename or "." not in filename:
        return False
    return filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


class RecordingAIService:
    """Sync wrapper around OpenAI for transcribing and summarising one recording."""

    def __init__(self, api_key: str, transcribe_model: str, summary_model: str, timeout: float = 300.0) -> None:
        if not api_key:
            raise TranscriptionError("OpenAI API key is not configured")
        self.client = OpenAI(api_key=api_key, timeout=timeout)
        self.transcribe_model = transcribe_model
        self.summary_model = summary_model

    def transcribe(self, filename: str, audio: bytes) -> str:
        try:
            result = self.client.audio.transcriptions.create(model=self.transcribe_model, file=(filename, audio))
        except OpenAIError as exc:
            raise TranscriptionError(f"Transcription failed: {exc}") from exc
        text = getattr(result, "text", None)
        if not text:
            raise TranscriptionError("Empty transcript")
        return text

    def summarise(self, transcript: str) -> dict[str, Any]:
        try:
            response = self.client.chat.completions.create(
                model=self.summary_model,
                messages=[
                    {"role": "system", "content": SUMMARY_PROMPT},
                    {"role": "user", "content": transcript},
                ],
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            raise TranscriptionError(f"Summary failed: {exc}") from exc
        content = response.choices[0].message.content
        if not content:
            raise TranscriptionError("Empty response from OpenAI")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise TranscriptionError(f"Invalid JSON response: {exc}") from exc
        if not isinstance(data, dict):
            raise TranscriptionError("Unexpected summary shape")
        return data


def ai_service_from_config(config: dict) -> RecordingAIService:
    return RecordingAIService(
        api_key=(config.get("OPENAI_API_KEY") or "").strip(),
        transcribe_model=config.get("OPENAI_TRANSCRIBE_MODEL") or "whisper-1",
        summary_model=config.get("OPENAI_SUMMARY_MODEL") or "gpt-4o-mini",
    )


def upload_recording(
    s: "Session",
    *,
    title: str,
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    project_id: int | None,
    user: "User",
    storage: "Storage",
) -> "Recording":
    from app.portal.modules.recordings.models import Recording
    from app.portal.storage import build_storage_key

    rec = Recording(
        project_id=project_id,
        uploaded_by_user_id=user.id,
        title=title,
        storage_key="",
        filename=secure_filename(filename) or "recording",
        content_type=content_type,
        size_bytes=len(file_bytes),
        status="UPLOADED",
    )
    s.add(rec)
    s.flush()
    rec.storage_key = build_storage_key("recordings", rec.id, filename)
    storage.put_bytes(rec.storage_key, file_bytes, content_type=content_type)
    record_event(s, actor=user, action="recording.upload", entity_type="Recording", entity_id=str(rec.id), metadata={"filename": rec.filename, "size_bytes": rec.size_bytes})
    return rec


def process_recording(s: "Session", rec: "Recording", ai: RecordingAIService, storage: "Storage") -> bool:
    """
    Transcribe and summarise inline. The PROCESSING state is committed first so a
    crash mid-run is visible; any failure lands the row in FAILED.
    """
    rec.status = "PROCESSING"
    rec.error_message = None
    s.commit()

    try:
        audio = storage.read_bytes(rec.storage_key)
        transcript = ai.transcribe(rec.filename, audio)
        result = ai.summarise(transcript)
    except (TranscriptionError, StorageError) as e:
        logger.warning("Recording %s processing failed: %s", rec.id, e)
        rec.status = "FAILED"
        rec.error_message = str(e)
        s.commit()
        return False

    category = str(result.get("category") or "OTHER").upper()
    items = result.get("action_items") or []
    rec.transcript = transcript
    rec.summary = result.get("summary")
    rec.action_items = [str(i) for i in items] if isinstance(items, list) else []
    rec.category = category if category in CATEGORIES else "OTHER"
    rec.status = "COMPLETED"
    rec.processed_at = datetime.utcnow()
    s.commit()
    return True
