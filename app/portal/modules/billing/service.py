from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

import stripe
from flask import Flask

from app.portal.audit import record_event
from app.portal.errors import ApiError
from app.portal.modules.hours.models import HourPack, MaintenancePlan
from app.portal.modules.hours.service import add_hour_pack
from app.portal.modules.hours.tiers import get_hour_pack

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User

logger = logging.getLogger(__name__)

HOUR_PACK_METADATA_TYPE = "hour-pack"


def _metadata_id(value: Any) -> int | None:
    """Local row id carried in Stripe metadata; junk reads as missing."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def init_stripe(app: Flask) -> None:
    key = (app.config.get("STRIPE_SECRET_KEY") or "").strip()
    if key:
        stripe.api_key = key
    else:
        app.logger.info("Stripe not configured; payment endpoints will report 503")


def as_plain(obj: Any) -> dict:
    """Stripe objects serialize to their JSON form; plain dicts pass through."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


def retrieve_checkout_session(session_id: str | None, payment_intent_id: str | None) -> dict | None:
    if session_id:
        return as_plain(stripe.checkout.Session.retrieve(session_id))
    listing = as_plain(stripe.checkout.Session.list(payment_intent=payment_intent_id, limit=1))
    data = listing.get("data") or []
    return as_plain(data[0]) if data else None


def fulfil_hour_pack(
    s: "Session",
    checkout: dict,
    *,
    actor: "User | None" = None,
) -> tuple[HourPack, bool]:
    """
    Credit the hour pack bought in a paid checkout session.
    Returns (pack, created); a payment intent already credited returns the existing pack.
    """
    metadata = checkout.get("metadata") or {}
    if metadata.get("type") != HOUR_PACK_METADATA_TYPE:
        raise ApiError("This is not an hour pack purchase", 400)
    payment_status = checkout.get("payment_status")
    if payment_status != "paid":
        raise ApiError(f"Payment status is {payment_status}, not paid", 400)

    payment_intent = checkout.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    if payment_intent:
        existing = s.query(HourPack).filter(HourPack.stripe_payment_id == payment_intent).one_or_none()
        if existing is not None:
            return existing, False

    pack_id = metadata.get("packId")
    plan_id = metadata.get("planId")
    if not pack_id or not plan_id:
        raise ApiError("Missing required metadata (packId or planId)", 400)
    if get_hour_pack(pack_id) is None:
        raise ApiError(f"Invalid pack ID: {pack_id}", 400)
    plan_pk = _metadata_id(plan_id)
    plan = s.get(MaintenancePlan, plan_pk) if plan_pk is not None else None
    if plan is None:
        raise ApiError("Maintenance plan not found", 404)

    pack = add_hour_pack(s, plan, pack_id, stripe_payment_id=payment_intent or None)
    record_event(
        s,
        actor=actor,
        action="hour_pack.purchase",
        entity_type="MaintenancePlan",
        entity_id=str(plan.id),
        metadata={"pack": pack_id, "payment_intent": payment_intent, "checkout_session": checkout.get("id")},
    )
    return pack, True


def _handle_checkout_completed(s: "Session", obj: dict) -> str:
    if (obj.get("metadata") or {}).get("type") != HOUR_PACK_METADATA_TYPE:
        return "ignored"
    pack, created = fulfil_hour_pack(s, obj)
    return f"hour_pack {'created' if created else 'duplicate'} id={pack.id}"


def _handle_invoice_paid(s: "Session", obj: dict) -> str:
    from app.portal.modules.invoices.models import Invoice
    from app.portal.modules.invoices.service import mark_invoice_paid

    inv = s.query(Invoice).filter(Invoice.stripe_invoice_id == obj.get("id")).one_or_none()
    local_id = _metadata_id((obj.get("metadata") or {}).get("invoice_id"))
    if inv is None and local_id is not None:
        inv = s.get(Invoice, local_id)
    if inv is None:
        return "invoice not found"
    if mark_invoice_paid(s, inv, reason="stripe invoice.paid"):
        return f"invoice {inv.number} paid"
    return f"invoice {inv.number} already paid"


def _handle_payment_intent(s: "Session", obj: dict, *, succeeded: bool) -> str:
    from app.portal.modules.donations.models import Donation

    raw_id = (obj.get("metadata") or {}).get("donation_id")
    if not raw_id:
        return "ignored"
    donation_id = _metadata_id(raw_id)
    donation = s.get(Donation, donation_id) if donation_id is not None else None
    if donation is None:
        return "donation not found"
    if donation.status == "COMPLETED":
        return f"donation {donation.id} already completed"
    if succeeded:
        donation.status = "COMPLETED"
        donation.completed_at = datetime.utcnow()
    else:
        donation.status = "FAILED"
    donation.stripe_payment_intent_id = obj.get("id") or donation.stripe_payment_intent_id
    return f"donation {donation.id} {donation.status.lower()}"


def handle_stripe_event(s: "Session", event: dict) -> str:
    """Dispatch a verified webhook event; every handler is safe to replay."""
    event_type = event.get("type")
    obj = ((event.get("data") or {}).get("object")) or {}
    if event_type == "checkout.session.completed":
        return _handle_checkout_completed(s, obj)
    if event_type == "invoice.paid":
        return _handle_invoice_paid(s, obj)
    if event_type == "payment_intent.succeeded":
        return _handle_payment_intent(s, obj, succeeded=True)
    if event_type == "payment_intent.payment_failed":
        return _handle_payment_intent(s, obj, succeeded=False)
    return "ignored"
