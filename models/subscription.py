from datetime import datetime
from models.db import db

SUBSCRIPTION_STATUSES = ("pending", "active", "paused", "cancelled")


class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)
    washes_per_cycle = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    # What a subscription wash includes
    service_name = db.Column(db.String(120), nullable=False)
    vehicle_tier = db.Column(db.String(40), nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)

    customer_name = db.Column(db.String(120), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_phone = db.Column(db.String(30), nullable=True)
    external_user_id = db.Column(db.String(80), nullable=True, index=True)  # identity provider subject

    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")

    washes_remaining = db.Column(db.Integer, nullable=False, default=0)
    washes_used_in_cycle = db.Column(db.Integer, nullable=False, default=0)
    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)

    provider_subscription_id = db.Column(db.String(255), nullable=True, unique=True)
    last_renewal_payment_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    plan = db.relationship("SubscriptionPlan")
    bookings = db.relationship("Booking", back_populates="subscription")

    __table_args__ = (
        db.CheckConstraint("washes_remaining >= 0", name="ck_subscriptions_remaining_non_negative"),
        db.CheckConstraint("washes_used_in_cycle >= 0", name="ck_subscriptions_used_non_negative"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "plan": {
                "id": self.plan.id,
                "name": self.plan.name,
                "washes_per_cycle": self.plan.washes_per_cycle,
            } if self.plan else None,
            "status": self.status,
            "washes_remaining": self.washes_remaining,
            "washes_used_in_cycle": self.washes_used_in_cycle,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "created_at": self.created_at.isoformat(),
        }


class SubscriptionEvent(db.Model):
    __tablename__ = "subscription_events"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=False, index=True)
    event_type = db.Column(db.String(40), nullable=False)  # e.g. wash_consumed, cycle_renewed
    payload = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
