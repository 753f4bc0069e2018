from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from urllib.parse import quote

from app.portal.audit import record_event
from app.portal.mailer import ResendClient, ResendError, send_email
from app.portal.utils import clean_str, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.newsletter.models import Newsletter, NewsletterSubscriber

logger = logging.getLogger(__name__)

AUTHOR_STATUSES = ("DRAFT", "PUBLISHED")
# Resend's ceiling for one /emails/batch call
MAX_BATCH_SIZE = 100


@dataclass
class SendReport:
    recipients: int = 0
    sent: int = 0
    failed: int = 0
    batches: int = 0

    def to_dict(self) -> dict:
        return {"recipients": self.recipients, "sent": self.sent, "failed": self.failed, "batches": self.batches}


def subscribe(s: "Session", email: str) -> tuple["NewsletterSubscriber", bool]:
    """Returns (subscriber, changed). changed is False for an address that is already subscribed."""
    from app.portal.modules.newsletter.models import NewsletterSubscriber

    email = email.strip().lower()
    now = datetime.utcnow()
    sub = s.query(NewsletterSubscriber).filter(NewsletterSubscriber.email == email).one_or_none()
    if sub is None:
        sub = NewsletterSubscriber(email=email, subscribed=True, subscribed_at=now)
        s.add(sub)
        s.flush()
        return sub, True
    if sub.subscribed:
        return sub, False
    sub.subscribed = True
    sub.subscribed_at = now
    sub.unsubscribed_at = None
    return sub, True


def unsubscribe(s: "Session", email: str) -> bool:
    from app.portal.modules.newsletter.models import NewsletterSubscriber

    sub = s.query(NewsletterSubscriber).filter(NewsletterSubscriber.email == email.strip().lower()).one_or_none()
    if sub is None or not sub.subscribed:
        return False
    sub.subscribed = False
    sub.unsubscribed_at = datetime.utcnow()
    return True


def unsubscribe_url(app_url: str, email: str) -> str:
    return f"{app_url}/api/newsletter/unsubscribe?email={quote(email)}"


def send_welcome_email(email: str, app_url: str) -> None:
    result = send_email(
        email,
        "Welcome to our newsletter",
        "<h2>Thank you for subscribing!</h2>"
        "<p>You'll hear from us about program updates, upcoming meetings and community news.</p>"
        f'<p><a href="{unsubscribe_url(app_url, email)}">Unsubscribe</a></p>',
    )
    if not result.ok:
        logger.warning("Welcome email to %s not sent: %s", email, result.error)


def validate_newsletter(payload: dict) -> list[str]:
    errors = []
    title = clean_str(payload.get("title")) or ""
    content = clean_str(payload.get("content")) or ""
    excerpt = clean_str(payload.get("excerpt")) or ""
    if not 1 <= len(title) <= 500:
        errors.append("Title must be between 1 and 500 characters")
    if not 10 <= len(content) <= 50000:
        errors.append("Content must be between 10 and 50000 characters")
    if len(excerpt) > 500:
        errors.append("Excerpt must be at most 500 characters")
    status = (clean_str(payload.get("status")) or "DRAFT").upper()
    if status not in AUTHOR_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(AUTHOR_STATUSES)}")
    return errors


def create_newsletter(s: "Session", payload: dict, user: "User") -> "Newsletter":
    from app.portal.modules.newsletter.models import Newsletter

    now = datetime.utcnow()
    title = clean_str(payload.get("title")) or ""
    status = (clean_str(payload.get("status")) or "DRAFT").upper()
    nl = Newsletter(
        title=title,
        slug=f"{slugify(title)}-{int(now.timestamp() * 1000)}",
        content=clean_str(payload.get("content")) or "",
        excerpt=clean_str(payload.get("excerpt")),
        status=status,
        author_user_id=user.id,
        published_at=now if status == "PUBLISHED" else None,
        created_at=now,
    )
    s.add(nl)
    s.flush()
    record_event(s, actor=user, action="newsletter.create", entity_type="Newsletter", entity_id=str(nl.id), metadata={"slug": nl.slug})
    return nl


def _chunks(items: list[str], size: int):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def send_newsletter(
    s: "Session",
    nl: "Newsletter",
    client: ResendClient,
    *,
    app_url: str,
    batch_size: int = 50,
    delay_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SendReport:
    """
    Deliver to every subscribed address, one batch at a time with a fixed pause
    between batches. A failed batch is counted and the run moves on.
    """
    from app.portal.modules.newsletter.models import NewsletterSubscriber

    emails = [
        e
        for (e,) in s.query(NewsletterSubscriber.email)
        .filter(NewsletterSubscriber.subscribed.is_(True))
        .order_by(NewsletterSubscriber.id)
        .all()
    ]
    report = SendReport(recipients=len(emails))
    subject = nl.title
    batch_size = min(MAX_BATCH_SIZE, max(1, batch_size))
    for idx, batch in enumerate(_chunks(emails, batch_size)):
        if idx:
            sleep(delay_seconds)
        messages = [
            (e, subject, f'{nl.content}<hr><p><a href="{unsubscribe_url(app_url, e)}">Unsubscribe</a></p>')
            for e in batch
        ]
        report.batches += 1
        try:
            report.sent += client.send_batch(messages)
        except ResendError as e:
            report.failed += len(batch)
            logger.warning("Newsletter %s batch %s failed (%s recipients): %s", nl.id, idx + 1, len(batch), e)

    now = datetime.utcnow()
    nl.status = "SENT"
    nl.sent_at = now
    if nl.published_at is None:
        nl.published_at = now
    nl.recipients_count = report.sent
    nl.failed_count = report.failed
    return report
