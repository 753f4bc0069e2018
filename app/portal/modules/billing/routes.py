from __future__ import annotations

import json

import stripe
from flask import Blueprint, current_app, g, jsonify, request

from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.billing.service import fulfil_hour_pack, handle_stripe_event, retrieve_checkout_session
from app.portal.rbac import require_policy
from app.portal.utils import clean_str, json_body

admin_bp = Blueprint("billing_admin", __name__)
webhooks_bp = Blueprint("webhooks", __name__)


@admin_bp.post("/hour-packs/process")
@require_policy("billing.manage")
def hour_pack_process():
    """Re-run fulfilment for a checkout whose webhook never landed."""
    payload = json_body()
    session_id = clean_str(payload.get("sessionId"))
    payment_intent_id = clean_str(payload.get("paymentIntentId"))
    if not session_id and not payment_intent_id:
        return json_error("Either sessionId or paymentIntentId is required", 400)
    if not current_app.config.get("PAYMENTS_ENABLED"):
        return json_error("Payments are not configured", 503)

    try:
        checkout = retrieve_checkout_session(session_id, payment_intent_id)
    except stripe.StripeError as e:
        current_app.logger.warning("Stripe lookup failed (request_id=%s): %s", g.request_id, e)
        return json_error("Could not retrieve the Stripe session", 502)
    if checkout is None:
        return json_error("No checkout session found for this payment intent", 404)

    s = db_session()
    pack, created = fulfil_hour_pack(s, checkout, actor=g.current_user)
    s.commit()
    if not created:
        return jsonify({"success": True, "message": "Hour pack already processed", "hourPack": pack.to_dict()})
    return jsonify({"success": True, "message": "Hour pack processed", "hourPack": pack.to_dict()}), 201


@webhooks_bp.post("/stripe")
def stripe_webhook():
    payload = request.get_data()
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret and (current_app.config.get("ENV") or "").lower() in ("prod", "production"):
        current_app.logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        return json_error("Webhook secret not configured", 503)
    if secret:
        try:
            stripe.Webhook.construct_event(payload, request.headers.get("Stripe-Signature", ""), secret)
        except (ValueError, stripe.SignatureVerificationError):
            return json_error("Invalid signature", 400)
    try:
        event = json.loads(payload)
    except ValueError:
        return json_error("Invalid payload", 400)
    if not isinstance(event, dict):
        return json_error("Invalid payload", 400)

    s = db_session()
    outcome = handle_stripe_event(s, event)
    s.commit()
    current_app.logger.info("Stripe webhook %s (%s): %s", event.get("type"), event.get("id"), outcome)
    return jsonify({"received": True})
