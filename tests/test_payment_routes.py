import hashlib
import hmac
import json
import time

import pytest
import stripe

from models import db
from models.booking import Booking
from models.invoice import Invoice
from models.subscription import Subscription
from models.webhook_log import WebhookLog


@pytest.fixture
def checkout_calls(monkeypatch):
    calls = []

    def fake_create(**params):
        calls.append(params)
        session_id = f"cs_test_{len(calls)}"
        return {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    return calls


def _book(client, booking_payload, day, **overrides):
    resp = client.post("/bookings", json=booking_payload(day, "10:00", **overrides))
    assert resp.status_code == 201
    return resp.get_json()["id"]


def _signed(payload: dict, secret="whsec_test"):
    body = json.dumps(payload)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


# ---------- checkout ----------

def test_start_booking_payment(client, booking_payload, open_day, checkout_calls):
    booking_id = _book(client, booking_payload, open_day)

    resp = client.post("/payments/start", json={"booking_id": booking_id})
    assert resp.status_code == 200
    assert resp.get_json()["checkout_url"].startswith("https://checkout.stripe.com/")

    (params,) = checkout_calls
    assert params["mode"] == "payment"
    assert params["metadata"] == {"entity_type": "booking", "entity_id": str(booking_id)}
    assert params["payment_intent_data"]["metadata"] == params["metadata"]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 3300000
    assert params["customer_email"] == "lucia@example.com"


def test_start_subscription_payment(client, make_subscription, checkout_calls):
    sub = make_subscription(status="pending")

    resp = client.post("/payments/start", json={"subscription_id": sub.id})
    assert resp.status_code == 200

    (params,) = checkout_calls
    assert params["mode"] == "subscription"
    assert params["subscription_data"]["metadata"] == {"entity_type": "subscription", "entity_id": str(sub.id)}
    assert params["line_items"][0]["price_data"]["recurring"] == {"interval": "month"}


def test_start_payment_rejects_bad_requests(client, booking_payload, open_day, checkout_calls):
    assert client.post("/payments/start", json={}).status_code == 400
    assert client.post("/payments/start", json={"booking_id": 1, "subscription_id": 1}).status_code == 400
    assert client.post("/payments/start", json={"booking_id": 999}).status_code == 404
    assert client.post("/payments/start", json={"booking_id": "abc"}).status_code == 400
    assert client.post("/payments/start", json={"subscription_id": [1]}).status_code == 400

    booking_id = _book(client, booking_payload, open_day, payment_method="pay_later")
    resp = client.post("/payments/start", json={"booking_id": booking_id})
    assert resp.status_code == 409
    assert checkout_calls == []


def test_stripe_outage_is_provider_unavailable(client, booking_payload, open_day, monkeypatch):
    def down(**params):
        raise stripe.APIConnectionError("network unreachable")

    monkeypatch.setattr(stripe.checkout.Session, "create", down)
    booking_id = _book(client, booking_payload, open_day)

    resp = client.post("/payments/start", json={"booking_id": booking_id})
    assert resp.status_code == 503
    assert resp.get_json()["code"] == "PROVIDER_UNAVAILABLE"


def test_stripe_rejection_is_provider_error(client, booking_payload, open_day, monkeypatch):
    def rejected(**params):
        raise stripe.InvalidRequestError("Invalid currency", "currency")

    monkeypatch.setattr(stripe.checkout.Session, "create", rejected)
    booking_id = _book(client, booking_payload, open_day)

    resp = client.post("/payments/start", json={"booking_id": booking_id})
    assert resp.status_code == 502
    assert resp.get_json()["code"] == "PROVIDER_ERROR"


# ---------- webhook endpoint ----------

def test_webhook_rejects_bad_signature(client):
    resp = client.post("/webhooks/stripe", data=json.dumps({"type": "checkout.session.completed"}),
                       headers={"Stripe-Signature": "t=1,v1=deadbeef"})
    assert resp.status_code == 400
    assert WebhookLog.query.count() == 0


def test_webhook_without_secret_still_acknowledges(app, client):
    app.config["STRIPE_WEBHOOK_SECRET"] = None
    resp = client.post("/webhooks/stripe", data="{}")
    assert resp.status_code == 200
    assert resp.get_json()["received"] is False


def test_checkout_completed_confirms_booking(client, booking_payload, open_day):
    booking_id = _book(client, booking_payload, open_day)
    event = {
        "id": "evt_cs_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_status": "paid",
            "payment_intent": "pi_live_1",
            "client_reference_id": str(booking_id),
            "metadata": {"entity_type": "booking", "entity_id": str(booking_id)},
        }},
    }

    for expected in ("confirmed", "duplicate"):
        body, headers = _signed(event)
        resp = client.post("/webhooks/stripe", data=body, headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == expected

    db.session.expire_all()
    booking = db.session.get(Booking, booking_id)
    assert booking.status == "confirmed"
    assert Invoice.query.filter_by(booking_id=booking_id).count() == 1
    assert WebhookLog.query.filter_by(event_id="evt_cs_1").count() == 2


def test_invoice_paid_renews_subscription(client, make_subscription):
    sub = make_subscription(status="pending")
    event = {
        "id": "evt_in_1",
        "type": "invoice.paid",
        "data": {"object": {
            "id": "in_test_1",
            "object": "invoice",
            "subscription": "sub_test_1",
            "subscription_details": {"metadata": {"entity_type": "subscription", "entity_id": str(sub.id)}},
        }},
    }
    body, headers = _signed(event)
    resp = client.post("/webhooks/stripe", data=body, headers=headers)
    assert resp.get_json()["outcome"] == "renewed"

    db.session.expire_all()
    sub = db.session.get(Subscription, sub.id)
    assert sub.status == "active"
    assert sub.provider_subscription_id == "sub_test_1"
    assert sub.washes_remaining == sub.plan.washes_per_cycle


def test_irrelevant_event_is_acknowledged(client):
    body, headers = _signed({"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    resp = client.post("/webhooks/stripe", data=body, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}
    assert WebhookLog.query.count() == 0
