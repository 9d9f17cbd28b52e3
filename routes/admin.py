from flask import Blueprint, jsonify, request

from models.booking import Booking
from models.subscription import Subscription
from models.webhook_log import WebhookLog
from security.admin import require_admin
from services import availability
from services.errors import ValidationError
from services.quota import adjust_credits, get_subscription, renew_cycle, set_status
from services.slot_claim import cancel_booking, complete_booking, confirm_booking, mark_booking_paid
from utils.audit import log_event
from utils.timeutil import parse_date

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _date_arg(value):
    day = parse_date(value)
    if day is None:
        raise ValidationError("Invalid date. Use YYYY-MM-DD")
    return day


# ---------- bookings ----------
@admin_bp.get("/bookings")
@require_admin
def list_bookings():
    status = request.args.get("status")
    date_str = request.args.get("date")  # YYYY-MM-DD

    q = Booking.query
    if status:
        q = q.filter(Booking.status == status)
    if date_str:
        q = q.filter(Booking.booking_date == _date_arg(date_str))

    rows = q.order_by(Booking.booking_date.asc(), Booking.booking_time.asc()).limit(200).all()
    return jsonify([b.to_dict() for b in rows]), 200


@admin_bp.post("/bookings/<int:booking_id>/confirm")
@require_admin
def admin_confirm_booking(booking_id: int):
    booking = confirm_booking(booking_id)
    return jsonify(message="Confirmed", status=booking.status), 200


@admin_bp.post("/bookings/<int:booking_id>/mark-paid")
@require_admin
def admin_mark_paid(booking_id: int):
    invoice, created = mark_booking_paid(booking_id)
    return jsonify(invoice=invoice.to_dict(), duplicate=not created), 200


@admin_bp.post("/bookings/<int:booking_id>/complete")
@require_admin
def admin_complete_booking(booking_id: int):
    booking = complete_booking(booking_id)
    return jsonify(message="Completed", status=booking.status), 200


@admin_bp.post("/bookings/<int:booking_id>/cancel")
@require_admin
def admin_cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or "Admin cancellation"
    booking = cancel_booking(booking_id, reason=reason, actor="admin")
    return jsonify(message="Cancelled by admin", status=booking.status), 200


# ---------- subscriptions ----------
@admin_bp.get("/subscriptions")
@require_admin
def list_subscriptions():
    status = request.args.get("status")
    q = Subscription.query
    if status:
        q = q.filter(Subscription.status == status)
    rows = q.order_by(Subscription.created_at.desc()).limit(200).all()
    return jsonify([s.to_dict() for s in rows]), 200


@admin_bp.post("/subscriptions/<int:subscription_id>/status")
@require_admin
def admin_set_subscription_status(subscription_id: int):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip().lower()
    sub = set_status(subscription_id, status, reset_credits=bool(data.get("reset_credits")))
    log_event("ADMIN_SUBSCRIPTION_STATUS", actor="admin", entity="subscription", entity_id=subscription_id,
              metadata={"status": status})
    return jsonify(sub.to_dict()), 200


@admin_bp.post("/subscriptions/<int:subscription_id>/credits")
@require_admin
def admin_adjust_credits(subscription_id: int):
    data = request.get_json(silent=True) or {}
    old, new = adjust_credits(subscription_id, data.get("delta"), reason=data.get("reason"))
    log_event("ADMIN_SUBSCRIPTION_CREDITS", actor="admin", entity="subscription", entity_id=subscription_id,
              metadata={"old": old, "new": new})
    return jsonify(old_credits=old, new_credits=new, message=f"Créditos ajustados: {old} → {new}"), 200


@admin_bp.post("/subscriptions/<int:subscription_id>/cycle")
@require_admin
def admin_generate_cycle(subscription_id: int):
    renew_cycle(subscription_id)
    sub = get_subscription(subscription_id)
    log_event("ADMIN_SUBSCRIPTION_CYCLE", actor="admin", entity="subscription", entity_id=subscription_id)
    return jsonify(sub.to_dict()), 200


# ---------- availability ----------
@admin_bp.put("/availability/rules/<int:weekday>")
@require_admin
def admin_update_rule(weekday: int):
    data = request.get_json(silent=True) or {}
    rule = availability.upsert_weekly_rule(
        weekday,
        is_open=data.get("is_open", True),
        start_time=data.get("start_time"),
        end_time=data.get("end_time"),
        slot_interval_minutes=data.get("slot_interval_minutes"),
    )
    log_event("ADMIN_AVAILABILITY_RULE", actor="admin", entity="availability_rule", entity_id=weekday)
    return jsonify(rule.to_dict()), 200


@admin_bp.put("/availability/overrides/<date_str>")
@require_admin
def admin_upsert_override(date_str: str):
    data = request.get_json(silent=True) or {}
    override = availability.upsert_date_override(
        _date_arg(date_str),
        is_closed=data.get("is_closed", False),
        note=data.get("note"),
        surcharge_amount_cents=data.get("surcharge_amount_cents"),
        surcharge_percent=data.get("surcharge_percent"),
    )
    log_event("ADMIN_AVAILABILITY_OVERRIDE", actor="admin", entity="availability_override", entity_id=date_str)
    return jsonify(override.to_dict()), 200


@admin_bp.delete("/availability/overrides/<date_str>")
@require_admin
def admin_delete_override(date_str: str):
    availability.delete_date_override(_date_arg(date_str))
    log_event("ADMIN_AVAILABILITY_OVERRIDE_DELETE", actor="admin", entity="availability_override", entity_id=date_str)
    return jsonify(message="Date override deleted", date=date_str), 200


@admin_bp.put("/availability/overrides/<date_str>/slots/<time_str>")
@require_admin
def admin_upsert_slot_override(date_str: str, time_str: str):
    data = request.get_json(silent=True) or {}
    slot = availability.upsert_slot_override(_date_arg(date_str), time_str, is_open=data.get("is_open", False))
    return jsonify(slot.to_dict()), 200


@admin_bp.delete("/availability/overrides/<date_str>/slots/<time_str>")
@require_admin
def admin_delete_slot_override(date_str: str, time_str: str):
    availability.delete_slot_override(_date_arg(date_str), time_str)
    return jsonify(message="Slot override deleted", date=date_str, time=time_str), 200


# ---------- webhook deliveries ----------
@admin_bp.get("/webhooks")
@require_admin
def list_webhook_deliveries():
    q = WebhookLog.query
    if request.args.get("failed") == "true":
        q = q.filter(WebhookLog.processed.is_(False))
    rows = q.order_by(WebhookLog.received_at.desc()).limit(200).all()
    return jsonify([
        {
            "id": w.id,
            "event_id": w.event_id,
            "event_type": w.event_type,
            "provider_payment_id": w.provider_payment_id,
            "processed": w.processed,
            "error": w.error,
            "received_at": w.received_at.isoformat(),
        }
        for w in rows
    ]), 200
