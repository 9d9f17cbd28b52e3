"""
Slot claim service.

A slot is claimed by inserting the booking and letting the partial unique
index on (booking_date, booking_time) for non-cancelled rows decide who wins.
There is no "is it free?" read in front of the insert: two concurrent claims
for the same slot produce one row and one IntegrityError, which becomes
SlotTaken.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError

from models import db
from models.booking import Booking, PAYMENT_METHODS, ACTIVE_STATUSES
from models.invoice import Invoice
from services.availability import get_day_schedule
from services.errors import (
    BookingError, InvalidTransition, NotFound, OutcomeUnknown, SlotTaken, ValidationError,
)
from services.invoices import dispatch_invoice, issue_invoice_for_booking
from services.quota import consume_wash, get_subscription, restore_wash
from utils.audit import log_event
from utils.notify import emit_event
from utils.timeutil import local_now, normalize_time, parse_date, to_minutes

log = logging.getLogger(__name__)


@dataclass
class BookingDraft:
    customer_name: str
    customer_email: str
    customer_phone: str
    service_name: str
    address: str
    booking_date: date
    booking_time: str
    payment_method: str = "pay_later"
    car_type: Optional[str] = None
    notes: Optional[str] = None
    service_price_cents: int = 0
    car_type_extra_cents: int = 0
    addons: List[dict] = field(default_factory=list)
    subscription_id: Optional[int] = None

    @property
    def addons_total_cents(self) -> int:
        return sum(a["price_cents"] for a in self.addons)


def _cents(value, label, errors):
    if value in (None, ""):
        return 0
    try:
        cents = int(value)
    except (TypeError, ValueError):
        errors.append(f"{label} debe ser un entero")
        return 0
    if cents < 0:
        errors.append(f"{label} no puede ser negativo")
    return cents


def validate_draft(data: dict) -> BookingDraft:
    data = data or {}
    errors = []

    def text(key):
        return (data.get(key) or "").strip() if isinstance(data.get(key), str) else ""

    name = text("customer_name")
    email = text("customer_email").lower()
    phone = text("customer_phone")
    service = text("service_name")
    address = text("address")
    payment_method = text("payment_method") or "pay_later"

    if not name:
        errors.append("Nombre es requerido")
    if not email:
        errors.append("Email es requerido")
    elif "@" not in email:
        errors.append("Email inválido")
    if not phone:
        errors.append("Teléfono es requerido")
    if payment_method != "subscription" and not service:
        errors.append("Servicio es requerido")

    booking_date = parse_date(data.get("booking_date"))
    if not data.get("booking_date"):
        errors.append("Fecha es requerida")
    elif booking_date is None:
        errors.append("Fecha inválida, usá YYYY-MM-DD")

    booking_time = normalize_time(data.get("booking_time"))
    if not data.get("booking_time"):
        errors.append("Horario es requerido")
    elif booking_time is None:
        errors.append("Horario inválido, usá HH:MM")

    if not address:
        errors.append("Dirección es requerida")

    if payment_method not in PAYMENT_METHODS:
        errors.append(f"Medio de pago inválido: {payment_method}")

    subscription_id = data.get("subscription_id")
    if payment_method == "subscription" and not subscription_id:
        errors.append("subscription_id es requerido para reservas con suscripción")
    elif subscription_id:
        try:
            subscription_id = int(subscription_id)
        except (TypeError, ValueError):
            errors.append("subscription_id inválido")

    addons = []
    for raw in data.get("addons") or []:
        if not isinstance(raw, dict) or not raw.get("name"):
            errors.append("Adicional inválido")
            continue
        addons.append({
            "addon_id": raw.get("addon_id"),
            "name": str(raw["name"]),
            "price_cents": _cents(raw.get("price_cents"), "Precio del adicional", errors),
        })

    service_price = _cents(data.get("service_price_cents"), "Precio del servicio", errors)
    car_extra = _cents(data.get("car_type_extra_cents"), "Extra de vehículo", errors)

    if errors:
        raise ValidationError(errors=errors)

    return BookingDraft(
        customer_name=name,
        customer_email=email,
        customer_phone=phone,
        service_name=service,
        address=address,
        booking_date=booking_date,
        booking_time=booking_time,
        payment_method=payment_method,
        car_type=text("car_type") or None,
        notes=text("notes") or None,
        service_price_cents=service_price,
        car_type_extra_cents=car_extra,
        addons=addons,
        subscription_id=subscription_id or None,
    )


def _check_slot_bookable(booking_date: date, booking_time: str):
    now = local_now()
    if booking_date < now.date():
        raise ValidationError("No se puede reservar en una fecha pasada")

    slots, closed, override = get_day_schedule(booking_date)
    if closed:
        raise ValidationError((override.note if override and override.note else None) or "Ese día no hay horarios disponibles")
    if booking_time not in slots:
        raise ValidationError("Ese horario no existe para el día elegido")

    if booking_date == now.date() and to_minutes(booking_time) <= now.hour * 60 + now.minute:
        raise ValidationError("Ese horario ya pasó")


def claim_slot(booking_date: date, booking_time: str, draft: BookingDraft) -> Booking:
    """
    Reserve (booking_date, booking_time) for the draft.

    Raises SlotTaken if another non-cancelled booking holds the slot,
    QuotaExhausted/SubscriptionInactive for subscription drafts, and
    OutcomeUnknown when the store timed out (the caller must re-query).
    """
    _check_slot_bookable(booking_date, booking_time)

    booking = Booking(
        customer_name=draft.customer_name,
        customer_email=draft.customer_email,
        customer_phone=draft.customer_phone,
        address=draft.address,
        notes=draft.notes,
        service_name=draft.service_name,
        car_type=draft.car_type,
        booking_date=booking_date,
        booking_time=booking_time,
        service_price_cents=draft.service_price_cents,
        car_type_extra_cents=draft.car_type_extra_cents,
        addons=draft.addons,
        addons_total_cents=draft.addons_total_cents,
        payment_method=draft.payment_method,
        payment_status="pending",
        status="pending",
    )

    try:
        if draft.payment_method == "subscription":
            sub = get_subscription(draft.subscription_id)
            if sub.customer_email.lower() != draft.customer_email:
                raise NotFound("Suscripción no encontrada")

            # Same transaction as the insert: a lost slot race gives the wash back
            consume_wash(sub.id, booking_ref=f"{booking_date.isoformat()} {booking_time}", commit=False)

            booking.subscription_id = sub.id
            booking.service_name = draft.service_name or sub.plan.service_name
            booking.status = "confirmed"
            booking.payment_status = "approved"
            booking.confirmed_at = datetime.utcnow()

        db.session.add(booking)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        log.info("Slot %s %s already taken", booking_date.isoformat(), booking_time)
        log_event("BOOKING_FAIL_SLOT_TAKEN", actor="customer", entity="slot",
                  entity_id=f"{booking_date.isoformat()} {booking_time}")
        raise SlotTaken(booking_date, booking_time)
    except OperationalError as exc:
        db.session.rollback()
        log.error("Slot claim for %s %s timed out: %s", booking_date.isoformat(), booking_time, exc)
        raise OutcomeUnknown(date=booking_date.isoformat(), time=booking_time)
    except BookingError:
        db.session.rollback()
        raise

    log_event("BOOKING_CREATE", actor="customer", entity="booking", entity_id=booking.id,
              metadata={"date": booking_date.isoformat(), "time": booking_time,
                        "payment_method": booking.payment_method})
    emit_event(
        "booking.created",
        booking_id=booking.id,
        payment_method=booking.payment_method,
        is_subscription=booking.payment_method == "subscription",
    )
    return booking


def get_booking(booking_id) -> Booking:
    booking = db.session.get(Booking, booking_id) if booking_id else None
    if booking is None:
        raise NotFound("Reserva no encontrada")
    return booking


def cancel_in_transaction(booking: Booking, reason: str, payment_status=None) -> bool:
    """
    Move an active booking to cancelled inside the caller's transaction and,
    for subscription-funded bookings, give the wash back. Returns False when
    the booking was no longer active (someone else cancelled or completed it).
    """
    values = {
        Booking.status: "cancelled",
        Booking.cancelled_at: datetime.utcnow(),
        Booking.cancel_reason: (reason or "")[:120] or None,
    }
    if payment_status is not None:
        values[Booking.payment_status] = payment_status

    matched = (
        Booking.query
        .filter(Booking.id == booking.id, Booking.status.in_(ACTIVE_STATUSES))
        .update(values, synchronize_session=False)
    )
    if matched != 1:
        return False

    if booking.payment_method == "subscription" and booking.subscription_id:
        restore_wash(booking.subscription_id, booking_ref=booking.id, commit=False)
    return True


def cancel_booking(booking_id: int, reason=None, actor="customer", customer_email=None) -> Booking:
    booking = get_booking(booking_id)

    if actor == "customer":
        if not customer_email or booking.customer_email != customer_email.strip().lower():
            raise NotFound("Reserva no encontrada")
        cutoff_hours = current_app.config.get("CANCEL_CUTOFF_HOURS", 12)
        starts_at = datetime.combine(booking.booking_date, datetime.min.time()) + timedelta(
            minutes=to_minutes(booking.booking_time)
        )
        if (starts_at - local_now()).total_seconds() < cutoff_hours * 3600:
            raise InvalidTransition(f"No se puede cancelar con menos de {cutoff_hours} horas de anticipación")

    if not cancel_in_transaction(booking, reason or ("Cancelada por admin" if actor == "admin" else None)):
        db.session.rollback()
        raise InvalidTransition("La reserva no se puede cancelar")
    db.session.commit()
    db.session.refresh(booking)

    log_event("BOOKING_CANCEL", actor=actor, entity="booking", entity_id=booking.id, metadata={"reason": reason})
    emit_event("booking.cancelled", booking_id=booking.id, actor=actor)
    return booking


def _transition(booking_id: int, from_status: str, values: dict, action: str) -> Booking:
    matched = (
        Booking.query
        .filter(Booking.id == booking_id, Booking.status == from_status)
        .update(values, synchronize_session=False)
    )
    if matched != 1:
        db.session.rollback()
        get_booking(booking_id)
        raise InvalidTransition()
    db.session.commit()

    booking = get_booking(booking_id)
    db.session.refresh(booking)
    log_event(action, actor="admin", entity="booking", entity_id=booking_id)
    return booking


def confirm_booking(booking_id: int) -> Booking:
    """Manual confirmation (e.g. pay-later customer agreed by phone)."""
    return _transition(booking_id, "pending", {
        Booking.status: "confirmed",
        Booking.confirmed_at: datetime.utcnow(),
    }, "ADMIN_BOOKING_CONFIRM")


def complete_booking(booking_id: int) -> Booking:
    return _transition(booking_id, "confirmed", {
        Booking.status: "completed",
        Booking.completed_at: datetime.utcnow(),
    }, "ADMIN_BOOKING_COMPLETE")


def mark_booking_paid(booking_id: int):
    """
    Record a transfer / cash payment. Returns (invoice, created); calling it
    again returns the existing invoice.
    """
    booking = get_booking(booking_id)
    if booking.status == "cancelled":
        raise InvalidTransition("La reserva está cancelada")
    if booking.payment_method == "subscription":
        raise InvalidTransition("Las reservas con suscripción no se facturan por separado")

    existing = Invoice.query.filter_by(booking_id=booking.id).first()
    if existing is not None and booking.payment_status == "approved":
        return existing, False

    booking.payment_status = "approved"
    if booking.status == "pending":
        booking.status = "confirmed"
        booking.confirmed_at = datetime.utcnow()

    invoice = existing
    try:
        if invoice is None:
            invoice = issue_invoice_for_booking(booking)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return Invoice.query.filter_by(booking_id=booking_id).first(), False

    log_event("ADMIN_BOOKING_MARK_PAID", actor="admin", entity="booking", entity_id=booking.id,
              metadata={"invoice_id": invoice.id})
    if existing is None:
        dispatch_invoice(invoice)
    emit_event("payment.approved", booking_id=booking.id, invoice_id=invoice.id)
    return invoice, existing is None
