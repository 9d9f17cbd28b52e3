from datetime import datetime
from models.db import db


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(40), unique=True, nullable=True)

    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)

    # One invoice per provider payment; manual payments have no provider id
    provider_payment_id = db.Column(db.String(255), nullable=True)
    # Stripe invoices are paid through a payment intent; refunds and disputes only carry that id
    provider_payment_intent_id = db.Column(db.String(255), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="paid")
    line_items = db.Column(db.JSON, nullable=False, default=list)
    issued_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("provider_payment_id", name="uq_invoices_provider_payment"),
        db.UniqueConstraint("booking_id", name="uq_invoices_booking_once"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "booking_id": self.booking_id,
            "subscription_id": self.subscription_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "line_items": self.line_items or [],
            "issued_at": self.issued_at.isoformat(),
        }
