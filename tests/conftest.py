from datetime import timedelta

import pytest

from app import create_app
from config import TestConfig
from models import db
from models.subscription import Subscription, SubscriptionPlan
from services.quota import renew_cycle
from utils.seed import seed_availability_rules, seed_plans
from utils.timeutil import local_today


@pytest.fixture
def app(tmp_path):
    # File-backed SQLite so worker threads share the database
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'washero-test.db'}"

    app = create_app(_Config)
    with app.app_context():
        db.create_all()
        seed_availability_rules()
        seed_plans()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(app):
    return {"X-Admin-Token": app.config["ADMIN_API_TOKEN"]}


@pytest.fixture
def open_day(app):
    """A Monday at least three days ahead: open 09:00-17:00 and outside the cancel cutoff."""
    day = local_today() + timedelta(days=3)
    while day.weekday() != 0:
        day += timedelta(days=1)
    return day


@pytest.fixture
def sunday(app):
    day = local_today() + timedelta(days=1)
    while day.weekday() != 6:
        day += timedelta(days=1)
    return day


@pytest.fixture
def booking_payload():
    def _payload(day, time="10:00", **overrides):
        data = {
            "customer_name": "Lucía Pérez",
            "customer_email": "lucia@example.com",
            "customer_phone": "+54 11 5555 0101",
            "service_name": "Lavado completo",
            "address": "Av. Santa Fe 1234, CABA",
            "booking_date": day.isoformat(),
            "booking_time": time,
            "payment_method": "online",
            "car_type": "suv",
            "service_price_cents": 2500000,
            "car_type_extra_cents": 500000,
            "addons": [{"addon_id": "wax", "name": "Encerado", "price_cents": 300000}],
        }
        data.update(overrides)
        return data
    return _payload


@pytest.fixture
def make_subscription(app):
    def _make(washes_remaining=None, status="active", email="sofia@example.com", plan_name="Confort"):
        plan = SubscriptionPlan.query.filter_by(name=plan_name).one()
        sub = Subscription(
            customer_name="Sofía Gómez",
            customer_email=email,
            customer_phone="+54 11 5555 0202",
            plan_id=plan.id,
            status="pending",
            washes_remaining=0,
            washes_used_in_cycle=0,
        )
        db.session.add(sub)
        db.session.commit()

        if status == "active":
            renew_cycle(sub.id)
            if washes_remaining is not None:
                used = plan.washes_per_cycle - washes_remaining
                Subscription.query.filter_by(id=sub.id).update(
                    {"washes_remaining": washes_remaining, "washes_used_in_cycle": used}
                )
                db.session.commit()
        elif status != "pending":
            sub.status = status
            db.session.commit()

        db.session.refresh(sub)
        return sub
    return _make
