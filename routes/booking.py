from flask import Blueprint, request, jsonify

from security.rate_limit import limit_booking_creation
from services.errors import NotFound
from services.slot_claim import validate_draft, claim_slot, get_booking, cancel_booking

booking_bp = Blueprint("booking", __name__)


def _message_for(booking):
    if booking.payment_method == "subscription":
        return "¡Reserva confirmada con tu suscripción!"
    if booking.payment_method == "transfer":
        return "¡Reserva recibida! Te enviamos las instrucciones de pago por email."
    if booking.payment_method == "online":
        return "¡Reserva recibida! Completá el pago para confirmarla."
    return "¡Reserva recibida! Te contactaremos para coordinar el pago."


# ---------- CUSTOMERS: book slot (DOUBLE-BOOKING SAFE) ----------
@booking_bp.post("/bookings")
@limit_booking_creation
def create_booking():
    data = request.get_json(silent=True) or {}
    draft = validate_draft(data)

    # SlotTaken / QuotaExhausted / OutcomeUnknown are rendered by the app error handler
    booking = claim_slot(draft.booking_date, draft.booking_time, draft)

    return jsonify(
        id=booking.id,
        status=booking.status,
        payment_status=booking.payment_status,
        payment_method=booking.payment_method,
        requires_payment=booking.payment_method in ("online", "transfer"),
        message=_message_for(booking),
    ), 201


# ---------- CUSTOMERS: view a booking ----------
@booking_bp.get("/bookings/<int:booking_id>")
def booking_detail(booking_id: int):
    email = (request.args.get("email") or "").strip().lower()
    booking = get_booking(booking_id)
    if not email or booking.customer_email != email:
        raise NotFound("Reserva no encontrada")
    return jsonify(booking.to_dict()), 200


# ---------- CUSTOMERS: cancel booking (policy window) ----------
@booking_bp.post("/bookings/<int:booking_id>/cancel")
def cancel(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None
    email = data.get("customer_email")

    booking = cancel_booking(booking_id, reason=reason, actor="customer", customer_email=email)
    return jsonify(message="Cancelled", status=booking.status), 200
