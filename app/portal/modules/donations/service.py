from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

import stripe
from flask import current_app
from markupsafe import escape

from app.portal.mailer import send_email
from app.portal.utils import clean_str, is_valid_email

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.donations.models import ContactInquiry, Donation

logger = logging.getLogger(__name__)

FREQUENCIES = ("ONE_TIME", "MONTHLY", "YEARLY")
MIN_DONATION_DOLLARS = Decimal("1")
MAX_DONATION_DOLLARS = Decimal("1000000")

DEPARTMENTS = ("general", "programs", "volunteer", "donations", "partnerships", "media")


class PaymentError(RuntimeError):
    pass


def validate_donation(payload: dict) -> tuple[dict, list[str]]:
    errors = []
    name = clean_str(payload.get("name"))
    email = (clean_str(payload.get("email")) or "").lower()
    frequency = (clean_str(payload.get("frequency")) or "").upper()
    if not name:
        errors.append("Name is required")
    if not is_valid_email(email):
        errors.append("Valid email is required")
    if frequency not in FREQUENCIES:
        errors.append(f"Frequency must be one of: {', '.join(FREQUENCIES)}")
    amount_cents = 0
    try:
        amount = Decimal(str(payload.get("amount")))
        if not amount.is_finite():
            raise InvalidOperation
    except (InvalidOperation, ValueError):
        errors.append("Amount must be a number")
    else:
        if amount < MIN_DONATION_DOLLARS or amount > MAX_DONATION_DOLLARS:
            errors.append("Amount must be between $1 and $1,000,000")
        amount_cents = int((amount * 100).quantize(Decimal("1")))
    return {"name": name, "email": email, "frequency": frequency, "amount_cents": amount_cents}, errors


def create_donation(s: "Session", fields: dict, user: "User | None") -> "Donation":
    from app.portal.modules.donations.models import Donation

    donation = Donation(**fields, status="PENDING", user_id=user.id if user else None)
    s.add(donation)
    s.flush()
    return donation


def create_payment_intent(donation: "Donation") -> str:
    """Returns the client secret for the browser to confirm the payment."""
    extra = {}
    if donation.frequency != "ONE_TIME":
        # Card is kept on file so the recurring gift can be charged later.
        extra["setup_future_usage"] = "off_session"
    try:
        intent = stripe.PaymentIntent.create(
            amount=donation.amount_cents,
            currency="usd",
            receipt_email=donation.email,
            description=f"Donation ({donation.frequency.replace('_', '-').lower()})",
            metadata={"donation_id": str(donation.id), "frequency": donation.frequency},
            **extra,
        )
    except stripe.StripeError as e:
        raise PaymentError(str(e)) from e
    donation.stripe_payment_intent_id = intent["id"]
    return intent["client_secret"]


def validate_contact(payload: dict) -> tuple[dict, list[str]]:
    errors = []
    fields = {
        "name": clean_str(payload.get("name")),
        "email": (clean_str(payload.get("email")) or "").lower(),
        "phone": clean_str(payload.get("phone")),
        "department": (clean_str(payload.get("department")) or "general").lower(),
        "subject": clean_str(payload.get("subject")),
        "message": clean_str(payload.get("message")) or "",
    }
    if not fields["name"]:
        errors.append("Name is required")
    if not is_valid_email(fields["email"]):
        errors.append("Valid email is required")
    if not fields["subject"]:
        errors.append("Subject is required")
    if not 10 <= len(fields["message"]) <= 5000:
        errors.append("Message must be between 10 and 5000 characters")
    if fields["department"] not in DEPARTMENTS:
        errors.append(f"Department must be one of: {', '.join(DEPARTMENTS)}")
    return fields, errors


def create_inquiry(s: "Session", fields: dict) -> "ContactInquiry":
    from app.portal.modules.donations.models import ContactInquiry

    inquiry = ContactInquiry(**fields)
    s.add(inquiry)
    s.flush()
    return inquiry


def notify_staff_of_inquiry(inquiry: "ContactInquiry") -> None:
    to = current_app.config.get("STAFF_NOTIFY_EMAIL")
    if not to:
        return
    result = send_email(
        to,
        f"[{inquiry.department}] {inquiry.subject}",
        f"<p><strong>{escape(inquiry.name)}</strong> &lt;{escape(inquiry.email)}&gt; {escape(inquiry.phone or '')}</p>"
        f"<p>{escape(inquiry.message)}</p>",
    )
    if not result.ok:
        logger.warning("Contact inquiry %s staff email failed: %s", inquiry.id, result.error)
