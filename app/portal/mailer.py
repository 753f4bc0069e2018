"""Transactional email through the Resend HTTP API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests
from flask import current_app

logger = logging.getLogger(__name__)


class ResendError(RuntimeError):
    pass


@dataclass(frozen=True)
class EmailResult:
    ok: bool
    id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ResendClient:
    api_key: str
    from_email: str
    base_url: str = "https://api.resend.com"
    timeout_seconds: int = 30

    def _post(self, path: str, payload: Any) -> Any:
        url = self.base_url.rstrip("/") + path
        try:
            resp = requests.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise ResendError(f"Resend request failed ({path}): {e}") from e
        if resp.status_code >= 400:
            raise ResendError(f"HTTP {resp.status_code} from Resend: {resp.text[:300]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ResendError(f"Invalid JSON from Resend ({path})") from e

    def _message(self, to: str | list[str], subject: str, html: str, text: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {
            "from": self.from_email,
            "to": [to] if isinstance(to, str) else list(to),
            "subject": subject,
            "html": html,
        }
        if text:
            msg["text"] = text
        return msg

    def send(self, to: str | list[str], subject: str, html: str, text: str | None = None) -> str | None:
        j = self._post("/emails", self._message(to, subject, html, text))
        return j.get("id") if isinstance(j, dict) else None

    def send_batch(self, messages: list[tuple[str, str, str]]) -> int:
        """Send up to 100 (to, subject, html) messages in one call; returns the count accepted."""
        payload = [self._message(to, subject, html) for to, subject, html in messages]
        j = self._post("/emails/batch", payload)
        data = j.get("data") if isinstance(j, dict) else None
        return len(data) if isinstance(data, list) else len(payload)


def resend_from_config(config: dict) -> ResendClient | None:
    api_key = (config.get("RESEND_API_KEY") or "").strip()
    if not api_key:
        return None
    return ResendClient(api_key=api_key, from_email=config.get("RESEND_FROM_EMAIL") or "noreply@example.com")


def send_email(to: str | list[str], subject: str, html: str, text: str | None = None) -> EmailResult:
    """
    Best-effort send. Never raises; a missing key or provider error is returned
    as an unsuccessful EmailResult and logged.
    """
    client = resend_from_config(current_app.config)
    if client is None:
        logger.info("Email disabled (no RESEND_API_KEY); skipped %r to %s", subject, to)
        return EmailResult(ok=False, error="Email is not configured")
    try:
        return EmailResult(ok=True, id=client.send(to, subject, html, text))
    except ResendError as e:
        logger.warning("Email send failed (%r to %s): %s", subject, to, e)
        return EmailResult(ok=False, error=str(e))
