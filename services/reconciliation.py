"""
Payment reconciliation.

Provider callbacks are normalized into PaymentWebhookEvent and applied to the
booking or subscription they refer to. Deliveries can repeat and arrive out
of order, so:

- the provider payment id is the idempotency key (stored on the booking,
  unique on invoices, last_renewal_payment_id on subscriptions);
- a payment status never moves down the precedence ladder;
- writes are conditional UPDATEs on the status that was read.

handle_webhook never raises: the provider must always see success.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking
from models.invoice import Invoice
from models.subscription import Subscription, SubscriptionEvent
from models.webhook_log import WebhookLog
from services.errors import WebhookProcessingFailure
from services.invoices import dispatch_invoice, issue_invoice_for_booking, issue_invoice_for_subscription
from services.quota import renew_cycle
from services.slot_claim import cancel_in_transaction
from utils.audit import log_event
from utils.notify import emit_event

log = logging.getLogger(__name__)

# provider status -> (booking payment_status, booking status)
BOOKING_STATUS_MAP = {
    "approved": ("approved", "confirmed"),
    "pending": ("in_process", "pending"),
    "in_process": ("in_process", "pending"),
    "authorized": ("in_process", "pending"),
    "rejected": ("rejected", "cancelled"),
    "cancelled": ("rejected", "cancelled"),
    "refunded": ("refunded", "cancelled"),
    "charged_back": ("refunded", "cancelled"),
}

PAYMENT_STATUS_RANK = {
    "pending": 0,
    "in_process": 1,
    "rejected": 2,
    "approved": 3,
    "refunded": 4,
}

ENTITY_TYPES = ("booking", "subscription")


@dataclass
class PaymentWebhookEvent:
    provider_payment_id: Optional[str]
    provider_status: str
    kind: str = "payment"  # "payment" or "subscription" (status change of the subscription itself)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    external_reference: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    # Stripe invoice (in_...) and payment intent (pi_...) that a charge or invoice refers to
    provider_invoice_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None


# ---------- Stripe normalization ----------

CHECKOUT_STATUSES = {
    "checkout.session.async_payment_succeeded": "approved",
    "checkout.session.async_payment_failed": "rejected",
    "checkout.session.expired": "cancelled",
}

PAYMENT_INTENT_STATUSES = {
    "payment_intent.succeeded": "approved",
    "payment_intent.processing": "in_process",
    # payment_failed is not final: Checkout lets the customer retry the same intent
    "payment_intent.canceled": "cancelled",
}


def _invoice_subscription_id(obj):
    if obj.get("subscription"):
        return obj["subscription"]
    details = ((obj.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def _invoice_payment_intent(obj):
    if obj.get("payment_intent"):
        return obj["payment_intent"]
    for row in ((obj.get("payments") or {}).get("data") or []):
        intent = (row.get("payment") or {}).get("payment_intent")
        if intent:
            return intent
    return None


def _invoice_metadata(obj):
    details = obj.get("subscription_details") or ((obj.get("parent") or {}).get("subscription_details") or {})
    return details.get("metadata") or obj.get("metadata") or {}


def event_from_stripe(event: dict) -> Optional[PaymentWebhookEvent]:
    """Map a (verified) Stripe event payload to a PaymentWebhookEvent, or None if irrelevant."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    meta = obj.get("metadata") or {}
    common = {"event_id": event.get("id"), "event_type": event_type}

    if event_type == "checkout.session.completed" or event_type in CHECKOUT_STATUSES:
        if event_type == "checkout.session.completed":
            status = "approved" if obj.get("payment_status") in ("paid", "no_payment_required") else "pending"
        else:
            status = CHECKOUT_STATUSES[event_type]
        return PaymentWebhookEvent(
            provider_payment_id=obj.get("payment_intent") or obj.get("invoice") or obj.get("id"),
            provider_status=status,
            entity_type=meta.get("entity_type"),
            entity_id=meta.get("entity_id"),
            external_reference=obj.get("client_reference_id"),
            provider_subscription_id=obj.get("subscription"),
            **common,
        )

    if event_type in PAYMENT_INTENT_STATUSES:
        return PaymentWebhookEvent(
            provider_payment_id=obj.get("id"),
            provider_status=PAYMENT_INTENT_STATUSES[event_type],
            entity_type=meta.get("entity_type"),
            entity_id=meta.get("entity_id"),
            external_reference=meta.get("external_reference"),
            **common,
        )

    if event_type == "charge.refunded":
        if not obj.get("refunded"):
            log.info("Partial refund on %s ignored", obj.get("payment_intent"))
            return None
        return PaymentWebhookEvent(
            provider_payment_id=obj.get("payment_intent"),
            provider_status="refunded",
            entity_type=meta.get("entity_type"),
            entity_id=meta.get("entity_id"),
            provider_invoice_id=obj.get("invoice"),
            **common,
        )

    if event_type == "charge.dispute.created":
        return PaymentWebhookEvent(
            provider_payment_id=obj.get("payment_intent"),
            provider_status="charged_back",
            provider_invoice_id=obj.get("invoice"),
            **common,
        )

    if event_type in ("invoice.paid", "invoice.payment_failed"):
        invoice_meta = _invoice_metadata(obj)
        return PaymentWebhookEvent(
            provider_payment_id=obj.get("id"),
            provider_status="approved" if event_type == "invoice.paid" else "rejected",
            entity_type=invoice_meta.get("entity_type") or "subscription",
            entity_id=invoice_meta.get("entity_id"),
            provider_subscription_id=_invoice_subscription_id(obj),
            provider_invoice_id=obj.get("id"),
            payment_intent_id=_invoice_payment_intent(obj),
            **common,
        )

    if event_type in ("customer.subscription.deleted", "customer.subscription.paused"):
        return PaymentWebhookEvent(
            provider_payment_id=None,
            provider_status="cancelled" if event_type.endswith("deleted") else "paused",
            kind="subscription",
            entity_type="subscription",
            entity_id=meta.get("entity_id"),
            provider_subscription_id=obj.get("id"),
            **common,
        )

    return None


# ---------- target resolution ----------

def _get_by_id(model, raw_id):
    try:
        return db.session.get(model, int(raw_id))
    except (TypeError, ValueError):
        return None


def _subscription_by_invoice(event: PaymentWebhookEvent):
    """Refunds and disputes of a renewal only name the Stripe invoice or its payment intent."""
    clauses = []
    if event.provider_invoice_id:
        clauses.append(Invoice.provider_payment_id == event.provider_invoice_id)
    if event.provider_payment_id:
        clauses.append(Invoice.provider_payment_intent_id == event.provider_payment_id)
    if not clauses:
        return None
    invoice = Invoice.query.filter(Invoice.subscription_id.isnot(None), or_(*clauses)).first()
    if invoice is None:
        return None
    return db.session.get(Subscription, invoice.subscription_id)


def resolve_target(event: PaymentWebhookEvent):
    """
    Returns ("booking", Booking) / ("subscription", Subscription) / (None, None).

    Explicit metadata wins. Stored provider ids come next: booking payment ids,
    then subscription invoices (by Stripe invoice or payment intent), then the
    provider subscription id. The bare external reference is probed in
    bookings then subscriptions (first match wins); integer ids can collide
    across the two tables, so that path is logged.
    """
    if event.entity_type in ENTITY_TYPES and event.entity_id:
        model = Booking if event.entity_type == "booking" else Subscription
        target = _get_by_id(model, event.entity_id)
        if target is not None:
            return event.entity_type, target
        log.warning("Metadata points to missing %s %s", event.entity_type, event.entity_id)
        return None, None

    if event.provider_payment_id:
        booking = Booking.query.filter_by(provider_payment_id=event.provider_payment_id).first()
        if booking is not None:
            return "booking", booking

    sub = _subscription_by_invoice(event)
    if sub is not None:
        return "subscription", sub

    if event.provider_subscription_id:
        sub = Subscription.query.filter_by(provider_subscription_id=event.provider_subscription_id).first()
        if sub is not None:
            return "subscription", sub

    if event.external_reference:
        booking = _get_by_id(Booking, event.external_reference)
        if booking is not None:
            log.warning("Resolved external reference %s by probing bookings", event.external_reference)
            return "booking", booking
        sub = _get_by_id(Subscription, event.external_reference)
        if sub is not None:
            log.warning("Resolved external reference %s by probing subscriptions", event.external_reference)
            return "subscription", sub

    return None, None


# ---------- booking transitions ----------

def _is_duplicate_approval(booking: Booking, event: PaymentWebhookEvent, new_payment_status: str) -> bool:
    return (
        event.provider_payment_id is not None
        and booking.provider_payment_id == event.provider_payment_id
        and booking.payment_status == "approved"
        and new_payment_status != "refunded"
    )


def apply_to_booking(booking: Booking, event: PaymentWebhookEvent) -> str:
    mapped = BOOKING_STATUS_MAP.get(event.provider_status)
    if mapped is None:
        log.info("Unmapped provider status %s for booking %s", event.provider_status, booking.id)
        return "ignored"
    new_payment_status, new_status = mapped

    for _ in range(3):
        if _is_duplicate_approval(booking, event, new_payment_status):
            return "duplicate"

        current = booking.payment_status
        if PAYMENT_STATUS_RANK[new_payment_status] <= PAYMENT_STATUS_RANK.get(current, 0):
            log.info(
                "Booking %s: %s does not supersede %s, skipping",
                booking.id, new_payment_status, current,
            )
            return "stale"

        outcome = _write_booking_transition(booking, event, current, new_payment_status, new_status)
        if outcome is not None:
            return outcome

        # Lost a race with another delivery; look again
        db.session.rollback()
        db.session.refresh(booking)

    raise WebhookProcessingFailure(f"booking {booking.id}: could not apply {event.provider_status}")


def _write_booking_transition(booking, event, current, new_payment_status, new_status):
    """One transaction. Returns the outcome, or None if the row changed under us."""
    now = datetime.utcnow()
    payment_id = event.provider_payment_id
    guard = Booking.query.filter(Booking.id == booking.id, Booking.payment_status == current)

    if new_status == "cancelled":
        matched = guard.update({
            Booking.payment_status: new_payment_status,
            Booking.provider_payment_id: payment_id or booking.provider_payment_id,
            Booking.webhook_processed_at: now,
        }, synchronize_session=False)
        if matched != 1:
            return None
        if not cancel_in_transaction(booking, f"payment {event.provider_status}"):
            # Already cancelled, or completed and now refunded
            Booking.query.filter(Booking.id == booking.id, Booking.status != "cancelled").update(
                {Booking.status: "cancelled", Booking.cancelled_at: now}, synchronize_session=False
            )
        db.session.commit()
        log_event("PAYMENT_" + new_payment_status.upper(), actor="stripe", entity="booking",
                  entity_id=booking.id, metadata={"payment_id": payment_id})
        emit_event("booking.cancelled", booking_id=booking.id, actor="payment", reason=event.provider_status)
        return "cancelled"

    if new_status == "pending":
        matched = guard.update({
            Booking.payment_status: new_payment_status,
            Booking.provider_payment_id: payment_id or booking.provider_payment_id,
            Booking.webhook_processed_at: now,
        }, synchronize_session=False)
        if matched != 1:
            return None
        db.session.commit()
        return "in_process"

    # approved
    if booking.status == "cancelled" and current in ("pending", "in_process"):
        # Cancelled by the customer or an admin while the payment was still open
        _record_orphan_payment(booking, payment_id, now, "cancelled_before_payment")
        raise WebhookProcessingFailure(
            f"booking {booking.id}: payment {payment_id} approved after the booking was cancelled, refund required"
        )

    values = {
        Booking.payment_status: "approved",
        Booking.provider_payment_id: payment_id,
        Booking.webhook_processed_at: now,
    }
    if booking.status != "completed":
        values[Booking.status] = "confirmed"
        values[Booking.confirmed_at] = now

    try:
        matched = guard.update(values, synchronize_session=False)
    except IntegrityError:
        # Booking was cancelled and its slot has been taken since
        db.session.rollback()
        _record_orphan_payment(booking, payment_id, now, "slot_taken_after_payment")
        raise WebhookProcessingFailure(
            f"booking {booking.id}: payment {payment_id} approved but slot "
            f"{booking.booking_date} {booking.booking_time} is taken, refund required"
        )
    if matched != 1:
        return None

    invoice = None
    if payment_id is not None and Invoice.query.filter_by(booking_id=booking.id).first() is None:
        try:
            invoice = issue_invoice_for_booking(booking, payment_id)
        except IntegrityError:
            db.session.rollback()
            return "duplicate"

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return "duplicate"

    log_event("PAYMENT_APPROVED", actor="stripe", entity="booking", entity_id=booking.id,
              metadata={"payment_id": payment_id, "invoice_id": invoice.id if invoice else None})
    if invoice is not None:
        dispatch_invoice(invoice)
    emit_event("payment.approved", booking_id=booking.id, invoice_id=invoice.id if invoice else None)
    return "confirmed"


def _record_orphan_payment(booking, payment_id, now, reason):
    Booking.query.filter(Booking.id == booking.id).update({
        Booking.payment_status: "approved",
        Booking.provider_payment_id: payment_id,
        Booking.webhook_processed_at: now,
        Booking.cancel_reason: reason,
    }, synchronize_session=False)
    db.session.commit()


# ---------- subscription transitions ----------

def _subscription_status_update(sub_id, from_statuses, to_status, event_type, payload):
    matched = (
        Subscription.query
        .filter(Subscription.id == sub_id, Subscription.status.in_(from_statuses))
        .update({Subscription.status: to_status}, synchronize_session=False)
    )
    if matched == 1:
        db.session.add(SubscriptionEvent(subscription_id=sub_id, event_type=event_type, payload=payload))
    db.session.commit()
    return matched == 1


def _remember_payment_intent(event: PaymentWebhookEvent):
    # The checkout delivery may have issued the invoice before invoice.paid named its intent
    if not event.payment_intent_id:
        return
    Invoice.query.filter(
        Invoice.provider_payment_id == event.provider_payment_id,
        Invoice.provider_payment_intent_id.is_(None),
    ).update({Invoice.provider_payment_intent_id: event.payment_intent_id}, synchronize_session=False)
    db.session.commit()


def apply_to_subscription(sub: Subscription, event: PaymentWebhookEvent) -> str:
    payload = {"payment_id": event.provider_payment_id, "provider_status": event.provider_status,
               "event_id": event.event_id}

    if event.provider_subscription_id and not sub.provider_subscription_id:
        Subscription.query.filter(
            Subscription.id == sub.id, Subscription.provider_subscription_id.is_(None)
        ).update({Subscription.provider_subscription_id: event.provider_subscription_id},
                 synchronize_session=False)
        db.session.commit()

    if event.kind == "subscription":
        if event.provider_status == "cancelled":
            changed = _subscription_status_update(
                sub.id, ("pending", "active", "paused"), "cancelled", "status_change", payload)
        else:
            changed = _subscription_status_update(sub.id, ("active",), "paused", "status_change", payload)
        return event.provider_status if changed else "stale"

    status = event.provider_status
    if status == "approved":
        if not event.provider_payment_id:
            raise WebhookProcessingFailure(f"subscription {sub.id}: approved payment without id")
        if not renew_cycle(sub.id, payment_id=event.provider_payment_id, commit=False):
            db.session.rollback()
            _remember_payment_intent(event)
            return "duplicate"
        try:
            invoice = issue_invoice_for_subscription(sub, event.provider_payment_id, event.payment_intent_id)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            _remember_payment_intent(event)
            return "duplicate"

        log_event("SUBSCRIPTION_PAYMENT_APPROVED", actor="stripe", entity="subscription", entity_id=sub.id,
                  metadata={"payment_id": event.provider_payment_id, "invoice_id": invoice.id})
        dispatch_invoice(invoice)
        emit_event("subscription.renewed", subscription_id=sub.id, invoice_id=invoice.id)
        return "renewed"

    if status in ("rejected", "cancelled"):
        # A failed first charge ends the signup; a failed renewal suspends it
        if _subscription_status_update(sub.id, ("pending",), "cancelled", "payment_failed", payload):
            return "cancelled"
        _subscription_status_update(sub.id, ("active",), "paused", "payment_failed", payload)
        return "paused"

    if status in ("refunded", "charged_back"):
        _subscription_status_update(sub.id, ("active",), "paused", "payment_refunded", payload)
        return "paused"

    return "ignored"


# ---------- entry point ----------

def _log_delivery(event: PaymentWebhookEvent, raw_payload):
    row = WebhookLog(
        source="stripe",
        event_id=event.event_id,
        event_type=event.event_type,
        provider_payment_id=event.provider_payment_id,
        payload=raw_payload,
    )
    db.session.add(row)
    db.session.commit()
    return row.id


def _finish_delivery(log_id, error=None):
    WebhookLog.query.filter(WebhookLog.id == log_id).update({
        WebhookLog.processed: error is None,
        WebhookLog.error: error,
        WebhookLog.processed_at: datetime.utcnow(),
    }, synchronize_session=False)
    db.session.commit()


def process_event(event: PaymentWebhookEvent) -> str:
    kind, target = resolve_target(event)
    if target is None:
        log.warning("Webhook %s (%s): no booking or subscription matches", event.event_id, event.provider_payment_id)
        return "unmatched"
    if kind == "booking":
        return apply_to_booking(target, event)
    return apply_to_subscription(target, event)


def handle_webhook(event: PaymentWebhookEvent, raw_payload=None) -> str:
    """
    Apply one provider delivery. Always returns an outcome string; internal
    failures are logged and stored on the webhook log, never raised.
    """
    log_id = None
    try:
        log_id = _log_delivery(event, raw_payload)
        outcome = process_event(event)
        _finish_delivery(log_id)
        log.info("Webhook %s %s -> %s", event.event_type, event.provider_payment_id, outcome)
        return outcome
    except WebhookProcessingFailure as exc:
        log.error("Webhook processing failure: %s", exc)
        error = str(exc)
    except Exception as exc:
        log.exception("Unexpected error processing webhook %s", event.event_id)
        error = f"{type(exc).__name__}: {exc}"

    db.session.rollback()
    if log_id is not None:
        try:
            _finish_delivery(log_id, error)
        except Exception:
            log.exception("Could not record failure for webhook log %s", log_id)
            db.session.rollback()
    return "failed"
