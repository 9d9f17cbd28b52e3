import json
import logging

import stripe
from flask import Blueprint, request, jsonify, current_app

from services.reconciliation import event_from_stripe, handle_webhook

log = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.get_data()

    if not endpoint_secret:
        # Still 200: the provider must never be pushed into a retry storm
        log.error("STRIPE_WEBHOOK_SECRET not configured, delivery dropped")
        return jsonify(received=False), 200

    try:
        stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except (ValueError, stripe.SignatureVerificationError):
        # Not a provider delivery
        return jsonify(error="Invalid webhook signature"), 400

    event = json.loads(payload)
    normalized = event_from_stripe(event)
    if normalized is None:
        log.debug("Ignoring Stripe event %s", event.get("type"))
        return jsonify(received=True), 200

    outcome = handle_webhook(normalized, raw_payload=event)
    return jsonify(received=True, outcome=outcome), 200
