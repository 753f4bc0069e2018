from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.portal.audit import record_event
from app.portal.db import db_session, get_or_404
from app.portal.errors import json_error
from app.portal.mailer import resend_from_config
from app.portal.modules.newsletter.models import Newsletter
from app.portal.modules.newsletter.service import (
    create_newsletter,
    send_newsletter,
    send_welcome_email,
    subscribe,
    unsubscribe,
    validate_newsletter,
)
from app.portal.rbac import require_policy
from app.portal.security import RateLimiter, client_key
from app.portal.utils import is_valid_email, json_body, text_field

public_bp = Blueprint("newsletter", __name__)
admin_bp = Blueprint("newsletter_admin", __name__)

subscribe_limiter = RateLimiter(limit=5, window_seconds=3600)


@public_bp.post("/subscribe")
def newsletter_subscribe():
    if subscribe_limiter.hit(client_key(request)):
        return json_error("Too many requests. Please try again later.", 429)
    payload = json_body()
    # Honeypot: real visitors never see this field.
    if payload.get("company"):
        return json_error("Invalid submission", 400)
    email = text_field(payload, "email").lower()
    if not is_valid_email(email):
        return json_error("Valid email is required", 400)

    s = db_session()
    _, changed = subscribe(s, email)
    if not changed:
        return json_error("You are already subscribed to our newsletter", 400)
    s.commit()
    send_welcome_email(email, current_app.config["APP_URL"])
    return jsonify({"message": "Successfully subscribed to newsletter", "subscribed": True})


@public_bp.get("/unsubscribe")
def newsletter_unsubscribe():
    email = (request.args.get("email") or "").strip()
    if not is_valid_email(email):
        return json_error("Valid email is required", 400)
    s = db_session()
    unsubscribe(s, email)
    s.commit()
    return jsonify({"message": "You have been unsubscribed", "subscribed": False})


@admin_bp.get("/newsletter")
@require_policy("content.manage")
def newsletters_list():
    s = db_session()
    page = max(1, request.args.get("page", 1, type=int))
    limit = min(50, max(1, request.args.get("limit", 50, type=int)))
    total = s.query(Newsletter).count()
    items = s.query(Newsletter).order_by(Newsletter.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify(
        {
            "data": [n.to_dict() for n in items],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
        }
    )


@admin_bp.post("/newsletter")
@require_policy("content.manage")
def newsletter_create():
    s = db_session()
    payload = json_body()
    errors = validate_newsletter(payload)
    if errors:
        return json_error(errors[0], 400, details=errors)
    nl = create_newsletter(s, payload, g.current_user)
    s.commit()
    return jsonify({"success": True, "data": nl.to_dict()}), 201


@admin_bp.post("/newsletter/<int:newsletter_id>/send")
@require_policy("content.manage")
def newsletter_send(newsletter_id: int):
    s = db_session()
    nl = get_or_404(s, Newsletter, newsletter_id, "Newsletter not found")
    if nl.status == "SENT":
        return json_error("Newsletter has already been sent", 409)
    client = resend_from_config(current_app.config)
    if client is None:
        return json_error("Email is not configured", 503)

    report = send_newsletter(
        s,
        nl,
        client,
        app_url=current_app.config["APP_URL"],
        batch_size=current_app.config["NEWSLETTER_BATCH_SIZE"],
        delay_seconds=current_app.config["NEWSLETTER_BATCH_DELAY_SECONDS"],
    )
    record_event(s, actor=g.current_user, action="newsletter.send", entity_type="Newsletter", entity_id=str(nl.id), metadata=report.to_dict())
    s.commit()
    current_app.logger.info("Newsletter %s sent: %s", nl.id, report.to_dict())
    return jsonify({"success": True, "data": nl.to_dict(), "report": report.to_dict()})
