from datetime import datetime
from models.db import db

BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "in_process", "approved", "rejected", "refunded")
PAYMENT_METHODS = ("online", "transfer", "pay_later", "subscription")

# Statuses that hold a slot for capacity purposes
ACTIVE_STATUSES = ("pending", "confirmed")


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    customer_name = db.Column(db.String(120), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_phone = db.Column(db.String(30), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    service_name = db.Column(db.String(120), nullable=False)
    car_type = db.Column(db.String(40), nullable=True)

    booking_date = db.Column(db.Date, nullable=False, index=True)
    booking_time = db.Column(db.String(5), nullable=False)  # "HH:MM"

    # Money in minor units (cents)
    service_price_cents = db.Column(db.Integer, nullable=False, default=0)
    car_type_extra_cents = db.Column(db.Integer, nullable=False, default=0)
    addons = db.Column(db.JSON, nullable=False, default=list)
    addons_total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(20), nullable=False, default="pay_later")
    payment_status = db.Column(db.String(20), nullable=False, default="pending")
    status = db.Column(db.String(20), nullable=False, default="pending")

    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)
    provider_payment_id = db.Column(db.String(255), nullable=True, index=True)
    webhook_processed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(120), nullable=True)

    subscription = db.relationship("Subscription", back_populates="bookings")

    __table_args__ = (
        # Hard business-rule: one non-cancelled booking per (date, time) slot
        db.Index(
            "uq_bookings_active_slot",
            "booking_date",
            "booking_time",
            unique=True,
            sqlite_where=db.text("status != 'cancelled'"),
            postgresql_where=db.text("status != 'cancelled'"),
        ),
    )

    @property
    def total_cents(self) -> int:
        return (self.service_price_cents or 0) + (self.car_type_extra_cents or 0) + (self.addons_total_cents or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "address": self.address,
            "notes": self.notes,
            "service_name": self.service_name,
            "car_type": self.car_type,
            "booking_date": self.booking_date.isoformat(),
            "booking_time": self.booking_time,
            "service_price_cents": self.service_price_cents,
            "car_type_extra_cents": self.car_type_extra_cents,
            "addons": self.addons or [],
            "addons_total_cents": self.addons_total_cents,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "subscription_id": self.subscription_id,
            "created_at": self.created_at.isoformat(),
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }
