from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import func

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.donations.models import Donation
from app.portal.modules.donations.service import (
    PaymentError,
    create_donation,
    create_inquiry,
    create_payment_intent,
    notify_staff_of_inquiry,
    validate_contact,
    validate_donation,
)
from app.portal.rbac import current_user, require_policy
from app.portal.security import RateLimiter, client_key
from app.portal.utils import json_body

public_bp = Blueprint("donations", __name__)
admin_bp = Blueprint("donations_admin", __name__)

donation_limiter = RateLimiter(limit=10, window_seconds=60)
contact_limiter = RateLimiter(limit=5, window_seconds=60)


@public_bp.post("/donations")
def donation_create():
    if donation_limiter.hit(client_key(request)):
        return json_error("Too many requests. Please try again later.", 429)
    fields, errors = validate_donation(json_body())
    if errors:
        return json_error(errors[0], 400, details=errors)

    s = db_session()
    donation = create_donation(s, fields, current_user())
    client_secret = None
    if current_app.config.get("PAYMENTS_ENABLED"):
        try:
            client_secret = create_payment_intent(donation)
        except PaymentError as e:
            donation.status = "FAILED"
            s.commit()
            current_app.logger.warning("Donation %s payment setup failed (request_id=%s): %s", donation.id, g.request_id, e)
            return json_error("Payment processing failed. Please check your details and try again.", 500)
    s.commit()
    return (
        jsonify(
            {
                "success": True,
                "donationId": donation.id,
                "clientSecret": client_secret,
                "isRecurring": donation.frequency != "ONE_TIME",
            }
        ),
        201,
    )


@admin_bp.get("/donations")
@require_policy("billing.manage")
def donations_list():
    s = db_session()
    q = s.query(Donation)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Donation.status == status)
    donations = q.order_by(Donation.created_at.desc()).all()
    total = s.query(func.coalesce(func.sum(Donation.amount_cents), 0)).filter(Donation.status == "COMPLETED").scalar()
    return jsonify({"donations": [d.to_dict() for d in donations], "completedTotalCents": int(total or 0)})


@public_bp.post("/contact")
def contact_create():
    if contact_limiter.hit(client_key(request)):
        return json_error("Too many requests. Please try again later.", 429)
    fields, errors = validate_contact(json_body())
    if errors:
        return json_error(errors[0], 400, details=errors)
    s = db_session()
    inquiry = create_inquiry(s, fields)
    s.commit()
    notify_staff_of_inquiry(inquiry)
    return jsonify({"success": True, "inquiryId": inquiry.id}), 201
