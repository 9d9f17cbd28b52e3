from flask import current_app

from models import db
from models.availability import AvailabilityRule
from models.subscription import SubscriptionPlan

DEFAULT_PLANS = [
    # name, washes per cycle, price (cents), included service, vehicle tier
    ("Básico", 2, 5500000, "Lavado exterior", "auto"),
    ("Confort", 4, 9900000, "Lavado completo", "auto"),
    ("Premium", 4, 14900000, "Lavado completo", "suv"),
]

def seed_availability_rules():
    hours = current_app.config.get("DEFAULT_BUSINESS_HOURS", {})
    existing = {r.weekday for r in AvailabilityRule.query.all()}
    for weekday in range(7):
        if weekday in existing:
            continue
        window = hours.get(weekday)
        if window is None:
            db.session.add(AvailabilityRule(weekday=weekday, is_open=False))
        else:
            start, end, interval = window
            db.session.add(AvailabilityRule(
                weekday=weekday,
                is_open=True,
                start_time=start,
                end_time=end,
                slot_interval_minutes=interval,
            ))
    db.session.commit()

def seed_plans():
    existing = {p.name for p in SubscriptionPlan.query.all()}
    for name, washes, price, service, tier in DEFAULT_PLANS:
        if name not in existing:
            db.session.add(SubscriptionPlan(
                name=name,
                washes_per_cycle=washes,
                price_cents=price,
                service_name=service,
                vehicle_tier=tier,
            ))
    db.session.commit()
