import logging

import stripe
from flask import Blueprint, request, jsonify, current_app

from services.errors import InvalidTransition, PaymentProviderError, ProviderUnavailable, ValidationError
from services.quota import get_subscription
from services.slot_claim import get_booking
from utils.audit import log_event

log = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _configure_stripe():
    stripe.api_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not stripe.api_key:
        raise PaymentProviderError("Stripe secret key missing (STRIPE_SECRET_KEY)")
    stripe.default_http_client = stripe.RequestsClient(
        timeout=current_app.config.get("STRIPE_TIMEOUT_SECONDS", 10)
    )

    success_url = current_app.config.get("STRIPE_SUCCESS_URL")
    cancel_url = current_app.config.get("STRIPE_CANCEL_URL")
    if not success_url or not cancel_url:
        raise PaymentProviderError("Stripe success/cancel URLs not configured")
    return success_url, cancel_url


def _create_session(**params):
    try:
        return stripe.checkout.Session.create(**params)
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
        log.warning("Stripe unavailable: %s", exc)
        raise ProviderUnavailable()
    except stripe.StripeError as exc:
        log.error("Stripe rejected checkout session: %s", exc)
        raise PaymentProviderError()


def _booking_session(booking_id, success_url, cancel_url):
    booking = get_booking(booking_id)
    if booking.payment_method != "online":
        raise InvalidTransition("La reserva no se paga online")
    if booking.status != "pending" or booking.payment_status == "approved":
        raise InvalidTransition("La reserva ya no admite pagos")

    # Explicit entity metadata on every object Stripe will send back to us
    metadata = {"entity_type": "booking", "entity_id": str(booking.id)}
    currency = current_app.config.get("STRIPE_CURRENCY", "ars")

    session = _create_session(
        mode="payment",
        line_items=[{
            "price_data": {
                "currency": currency,
                "product_data": {"name": f"{booking.service_name} ({booking.booking_date.isoformat()} {booking.booking_time})"},
                "unit_amount": booking.total_cents,
            },
            "quantity": 1,
        }],
        customer_email=booking.customer_email,
        client_reference_id=str(booking.id),
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
    )
    return "booking", booking.id, session


def _subscription_session(subscription_id, success_url, cancel_url):
    sub = get_subscription(subscription_id)
    if sub.status == "cancelled":
        raise InvalidTransition("La suscripción está cancelada")
    if sub.provider_subscription_id and sub.status == "active":
        raise InvalidTransition("La suscripción ya tiene un pago recurrente activo")

    plan = sub.plan
    metadata = {"entity_type": "subscription", "entity_id": str(sub.id)}
    currency = current_app.config.get("STRIPE_CURRENCY", "ars")

    session = _create_session(
        mode="subscription",
        line_items=[{
            "price_data": {
                "currency": currency,
                "product_data": {"name": f"Suscripción {plan.name}"},
                "unit_amount": plan.price_cents,
                "recurring": {"interval": "month"},
            },
            "quantity": 1,
        }],
        customer_email=sub.customer_email,
        client_reference_id=str(sub.id),
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
        subscription_data={"metadata": metadata},
    )
    return "subscription", sub.id, session


@payments_bp.post("/start")
def start_payment():
    data = request.get_json(silent=True) or {}
    booking_id = data.get("booking_id")
    subscription_id = data.get("subscription_id")

    if bool(booking_id) == bool(subscription_id):
        raise ValidationError("Send exactly one of booking_id or subscription_id")

    try:
        entity_ref = int(booking_id or subscription_id)
    except (TypeError, ValueError):
        raise ValidationError("booking_id and subscription_id must be integers")

    success_url, cancel_url = _configure_stripe()

    if booking_id:
        entity, entity_id, session = _booking_session(entity_ref, success_url, cancel_url)
    else:
        entity, entity_id, session = _subscription_session(entity_ref, success_url, cancel_url)

    if not session["url"]:
        raise PaymentProviderError("Checkout session without URL")

    log_event("PAYMENT_SESSION_CREATED", actor="customer", entity=entity, entity_id=entity_id,
              metadata={"stripe_session_id": session["id"]})
    return jsonify(checkout_url=session["url"], session_id=session["id"]), 200
