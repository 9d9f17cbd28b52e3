"""
Invoice records. The unique keys on provider_payment_id and booking_id make
issuance exactly-once; rendering and emailing the document is done by the
external invoice generator, triggered after commit.
"""
import logging

from models import db
from models.invoice import Invoice
from utils.notify import request_invoice_document

log = logging.getLogger(__name__)


def booking_line_items(booking):
    items = [{"description": booking.service_name, "amount_cents": booking.service_price_cents or 0}]
    if booking.car_type_extra_cents:
        items.append({
            "description": f"Extra vehículo ({booking.car_type or 'otro'})",
            "amount_cents": booking.car_type_extra_cents,
        })
    for addon in booking.addons or []:
        items.append({"description": addon.get("name", "Adicional"), "amount_cents": addon.get("price_cents", 0)})
    return items


def _assign_number(invoice: Invoice):
    db.session.flush()
    invoice.invoice_number = f"WH-{invoice.issued_at.year}-{invoice.id:06d}"


def issue_invoice_for_booking(booking, payment_id=None) -> Invoice:
    """Adds the invoice to the current transaction. A duplicate fails at flush with IntegrityError."""
    invoice = Invoice(
        booking_id=booking.id,
        provider_payment_id=payment_id,
        amount_cents=booking.total_cents,
        status="paid",
        line_items=booking_line_items(booking),
    )
    db.session.add(invoice)
    _assign_number(invoice)
    return invoice


def issue_invoice_for_subscription(subscription, payment_id=None, payment_intent_id=None) -> Invoice:
    plan = subscription.plan
    invoice = Invoice(
        subscription_id=subscription.id,
        provider_payment_id=payment_id,
        provider_payment_intent_id=payment_intent_id,
        amount_cents=plan.price_cents,
        status="paid",
        line_items=[{
            "description": f"Suscripción {plan.name} ({plan.washes_per_cycle} lavados)",
            "amount_cents": plan.price_cents,
        }],
    )
    db.session.add(invoice)
    _assign_number(invoice)
    return invoice


def dispatch_invoice(invoice: Invoice):
    """Hand a committed invoice to the document generator."""
    log.info("Invoice %s issued", invoice.invoice_number)
    request_invoice_document(invoice.id, booking_id=invoice.booking_id, subscription_id=invoice.subscription_id)
