import pytest

from models import db
from models.booking import Booking
from models.invoice import Invoice
from models.subscription import Subscription
from models.webhook_log import WebhookLog
from services import reconciliation
from services.reconciliation import PaymentWebhookEvent, event_from_stripe, handle_webhook, resolve_target
from services.slot_claim import cancel_booking, claim_slot, validate_draft


@pytest.fixture
def online_booking(app, booking_payload, open_day):
    def _make(time="10:00", **overrides):
        draft = validate_draft(booking_payload(open_day, time, payment_method="online", **overrides))
        return claim_slot(draft.booking_date, draft.booking_time, draft)
    return _make


def _booking_event(booking, status, payment_id="pi_1", **kwargs):
    return PaymentWebhookEvent(
        provider_payment_id=payment_id,
        provider_status=status,
        entity_type="booking",
        entity_id=str(booking.id),
        **kwargs,
    )


def _fresh_booking(booking_id):
    db.session.expire_all()
    return db.session.get(Booking, booking_id)


# ---------- bookings ----------

def test_approved_payment_confirms_and_invoices_once(app, online_booking):
    booking = online_booking()
    event = _booking_event(booking, "approved")

    assert handle_webhook(event) == "confirmed"
    assert handle_webhook(event) == "duplicate"
    assert handle_webhook(event) == "duplicate"

    booking = _fresh_booking(booking.id)
    assert booking.status == "confirmed"
    assert booking.payment_status == "approved"
    assert booking.provider_payment_id == "pi_1"
    assert booking.confirmed_at is not None

    invoices = Invoice.query.all()
    assert len(invoices) == 1
    assert invoices[0].booking_id == booking.id
    assert invoices[0].provider_payment_id == "pi_1"
    assert invoices[0].amount_cents == booking.total_cents
    assert WebhookLog.query.filter_by(processed=True).count() == 3


def test_late_pending_does_not_downgrade_approved(app, online_booking):
    booking = online_booking()
    assert handle_webhook(_booking_event(booking, "approved")) == "confirmed"
    assert handle_webhook(_booking_event(booking, "pending")) == "duplicate"

    booking = _fresh_booking(booking.id)
    assert booking.payment_status == "approved"
    assert booking.status == "confirmed"


def test_late_pending_of_another_attempt_is_stale(app, online_booking):
    booking = online_booking()
    assert handle_webhook(_booking_event(booking, "approved")) == "confirmed"
    assert handle_webhook(_booking_event(booking, "pending", payment_id="pi_retry")) == "stale"

    booking = _fresh_booking(booking.id)
    assert booking.payment_status == "approved"
    assert booking.provider_payment_id == "pi_1"
    assert booking.status == "confirmed"


def test_in_process_keeps_booking_pending(app, online_booking):
    booking = online_booking()
    assert handle_webhook(_booking_event(booking, "in_process")) == "in_process"

    booking = _fresh_booking(booking.id)
    assert booking.payment_status == "in_process"
    assert booking.status == "pending"

    assert handle_webhook(_booking_event(booking, "approved")) == "confirmed"


def test_rejected_payment_cancels_and_frees_slot(app, online_booking):
    booking = online_booking()
    assert handle_webhook(_booking_event(booking, "rejected")) == "cancelled"

    booking = _fresh_booking(booking.id)
    assert booking.status == "cancelled"
    assert booking.payment_status == "rejected"

    other = online_booking(customer_email="otra@example.com")
    assert other.booking_time == booking.booking_time


def test_refund_after_approval_cancels(app, online_booking):
    booking = online_booking()
    handle_webhook(_booking_event(booking, "approved"))
    assert handle_webhook(_booking_event(booking, "refunded")) == "cancelled"

    booking = _fresh_booking(booking.id)
    assert booking.status == "cancelled"
    assert booking.payment_status == "refunded"
    assert Invoice.query.count() == 1


def test_refund_of_completed_booking(app, online_booking):
    booking = online_booking()
    handle_webhook(_booking_event(booking, "approved"))
    Booking.query.filter_by(id=booking.id).update({"status": "completed"})
    db.session.commit()

    assert handle_webhook(_booking_event(booking, "charged_back")) == "cancelled"
    booking = _fresh_booking(booking.id)
    assert booking.status == "cancelled"
    assert booking.payment_status == "refunded"


def test_reconfirmation_after_slot_retaken_fails(app, online_booking):
    booking = online_booking()
    handle_webhook(_booking_event(booking, "rejected"))
    newcomer = online_booking(customer_email="otra@example.com")

    assert handle_webhook(_booking_event(booking, "approved", payment_id="pi_late")) == "failed"

    booking = _fresh_booking(booking.id)
    assert booking.status == "cancelled"
    assert booking.cancel_reason == "slot_taken_after_payment"
    assert booking.provider_payment_id == "pi_late"
    assert _fresh_booking(newcomer.id).status == "pending"

    row = WebhookLog.query.filter_by(provider_payment_id="pi_late").one()
    assert row.processed is False
    assert "refund required" in row.error


def test_payment_after_manual_cancellation_is_not_reconfirmed(app, online_booking):
    booking = online_booking()
    cancel_booking(booking.id, reason="Lluvia", actor="admin")

    assert handle_webhook(_booking_event(booking, "approved", payment_id="pi_after")) == "failed"

    booking = _fresh_booking(booking.id)
    assert booking.status == "cancelled"
    assert booking.payment_status == "approved"
    assert booking.provider_payment_id == "pi_after"
    assert booking.cancel_reason == "cancelled_before_payment"
    assert Invoice.query.count() == 0

    row = WebhookLog.query.filter_by(provider_payment_id="pi_after").one()
    assert "refund required" in row.error

    # The slot stays free for someone else
    assert online_booking(customer_email="otra@example.com").status == "pending"


def test_unknown_target_is_unmatched(app):
    event = PaymentWebhookEvent(provider_payment_id="pi_x", provider_status="approved",
                                entity_type="booking", entity_id="4242")
    assert handle_webhook(event) == "unmatched"


def test_handle_webhook_never_raises(app, online_booking, monkeypatch):
    booking = online_booking()

    def _explode(event):
        raise RuntimeError("boom")

    monkeypatch.setattr(reconciliation, "process_event", _explode)
    assert handle_webhook(_booking_event(booking, "approved"), raw_payload={"id": "evt_1"}) == "failed"

    row = WebhookLog.query.one()
    assert row.processed is False
    assert "RuntimeError: boom" in row.error
    assert row.payload == {"id": "evt_1"}


# ---------- subscriptions ----------

def test_renewal_delivered_twice_refills_once(app, make_subscription):
    sub = make_subscription(status="pending")
    event = PaymentWebhookEvent(provider_payment_id="in_100", provider_status="approved",
                                entity_type="subscription", entity_id=str(sub.id),
                                provider_subscription_id="sub_abc")

    assert handle_webhook(event) == "renewed"
    sub = db.session.get(Subscription, sub.id)
    db.session.refresh(sub)
    assert sub.status == "active"
    assert sub.washes_remaining == sub.plan.washes_per_cycle
    assert sub.provider_subscription_id == "sub_abc"

    Subscription.query.filter_by(id=sub.id).update({"washes_remaining": 1})
    db.session.commit()

    assert handle_webhook(event) == "duplicate"
    db.session.refresh(sub)
    assert sub.washes_remaining == 1
    assert Invoice.query.filter_by(subscription_id=sub.id).count() == 1


def test_failed_first_charge_cancels_pending_subscription(app, make_subscription):
    sub = make_subscription(status="pending")
    event = PaymentWebhookEvent(provider_payment_id="in_200", provider_status="rejected",
                                entity_type="subscription", entity_id=str(sub.id))
    assert handle_webhook(event) == "cancelled"
    db.session.refresh(sub)
    assert sub.status == "cancelled"


def test_failed_renewal_pauses_active_subscription(app, make_subscription):
    sub = make_subscription(washes_remaining=2)
    event = PaymentWebhookEvent(provider_payment_id="in_201", provider_status="rejected",
                                entity_type="subscription", entity_id=str(sub.id))
    assert handle_webhook(event) == "paused"
    db.session.refresh(sub)
    assert sub.status == "paused"
    assert sub.washes_remaining == 2


def test_provider_subscription_deleted(app, make_subscription):
    sub = make_subscription(washes_remaining=2)
    Subscription.query.filter_by(id=sub.id).update({"provider_subscription_id": "sub_del"})
    db.session.commit()

    event = PaymentWebhookEvent(provider_payment_id=None, provider_status="cancelled", kind="subscription",
                                entity_type="subscription", provider_subscription_id="sub_del")
    assert handle_webhook(event) == "cancelled"
    db.session.refresh(sub)
    assert sub.status == "cancelled"


def _deliver(event_type, obj, event_id):
    return handle_webhook(event_from_stripe(_stripe_event(event_type, obj, event_id)))


def test_refunded_renewal_pauses_subscription(app, make_subscription):
    sub = make_subscription(status="pending")
    paid = {
        "id": "in_1", "subscription": "sub_1", "payment_intent": "pi_1",
        "subscription_details": {"metadata": {"entity_type": "subscription", "entity_id": str(sub.id)}},
    }
    assert _deliver("invoice.paid", paid, "evt_paid") == "renewed"

    refund = {"id": "ch_1", "refunded": True, "payment_intent": "pi_1", "invoice": "in_1"}
    assert _deliver("charge.refunded", refund, "evt_refund") == "paused"

    db.session.expire_all()
    sub = db.session.get(Subscription, sub.id)
    assert sub.status == "paused"
    assert Invoice.query.filter_by(provider_payment_id="in_1").one().provider_payment_intent_id == "pi_1"


def test_disputed_renewal_pauses_subscription(app, make_subscription):
    sub = make_subscription(status="pending")
    meta = {"entity_type": "subscription", "entity_id": str(sub.id)}

    # Checkout reports the first invoice before invoice.paid names its payment intent
    checkout = {"id": "cs_1", "payment_status": "paid", "invoice": "in_3", "subscription": "sub_3", "metadata": meta}
    assert _deliver("checkout.session.completed", checkout, "evt_checkout") == "renewed"
    paid = {
        "id": "in_3",
        "parent": {"subscription_details": {"subscription": "sub_3", "metadata": meta}},
        "payments": {"data": [{"payment": {"type": "payment_intent", "payment_intent": "pi_3"}}]},
    }
    assert _deliver("invoice.paid", paid, "evt_paid") == "duplicate"

    dispute = {"id": "dp_1", "charge": "ch_3", "payment_intent": "pi_3"}
    assert _deliver("charge.dispute.created", dispute, "evt_dispute") == "paused"

    db.session.expire_all()
    assert db.session.get(Subscription, sub.id).status == "paused"


def test_refund_of_unknown_invoice_is_unmatched(app, make_subscription):
    make_subscription(washes_remaining=2)
    refund = {"id": "ch_9", "refunded": True, "payment_intent": "pi_9", "invoice": "in_9"}
    assert _deliver("charge.refunded", refund, "evt_refund") == "unmatched"


# ---------- target resolution ----------

def test_metadata_wins_over_external_reference(app, online_booking, make_subscription):
    booking = online_booking()
    sub = make_subscription(status="pending")
    event = PaymentWebhookEvent(provider_payment_id="p", provider_status="approved",
                                entity_type="subscription", entity_id=str(sub.id),
                                external_reference=str(booking.id))
    kind, target = resolve_target(event)
    assert kind == "subscription"
    assert target.id == sub.id


def test_stored_payment_id_resolves_booking(app, online_booking):
    booking = online_booking()
    handle_webhook(_booking_event(booking, "in_process", payment_id="pi_stored"))

    event = PaymentWebhookEvent(provider_payment_id="pi_stored", provider_status="approved")
    kind, target = resolve_target(event)
    assert kind == "booking"
    assert target.id == booking.id


def test_external_reference_probes_bookings_first(app, online_booking, make_subscription):
    booking = online_booking()
    sub = make_subscription(status="pending")
    assert booking.id == sub.id == 1

    kind, _ = resolve_target(PaymentWebhookEvent(provider_payment_id=None, provider_status="approved",
                                                 external_reference="1"))
    assert kind == "booking"

    kind, target = resolve_target(PaymentWebhookEvent(provider_payment_id=None, provider_status="approved",
                                                      external_reference="2"))
    assert (kind, target) == (None, None)


# ---------- Stripe normalization ----------

def _stripe_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def test_checkout_completed_paid():
    event = event_from_stripe(_stripe_event("checkout.session.completed", {
        "id": "cs_1", "payment_status": "paid", "payment_intent": "pi_9", "client_reference_id": "7",
        "metadata": {"entity_type": "booking", "entity_id": "7"},
    }))
    assert event.provider_payment_id == "pi_9"
    assert event.provider_status == "approved"
    assert (event.entity_type, event.entity_id, event.external_reference) == ("booking", "7", "7")
    assert event.event_id == "evt_1"


def test_checkout_completed_unpaid_is_pending():
    event = event_from_stripe(_stripe_event("checkout.session.completed", {
        "id": "cs_2", "payment_status": "unpaid", "payment_intent": "pi_10", "metadata": {},
    }))
    assert event.provider_status == "pending"


def test_payment_intent_events():
    assert event_from_stripe(_stripe_event("payment_intent.succeeded", {"id": "pi_1"})).provider_status == "approved"
    assert event_from_stripe(_stripe_event("payment_intent.processing", {"id": "pi_1"})).provider_status == "in_process"
    assert event_from_stripe(_stripe_event("payment_intent.canceled", {"id": "pi_1"})).provider_status == "cancelled"
    assert event_from_stripe(_stripe_event("payment_intent.payment_failed", {"id": "pi_1"})) is None


def test_charge_refunds_and_disputes():
    full = event_from_stripe(_stripe_event("charge.refunded", {"refunded": True, "payment_intent": "pi_3"}))
    assert (full.provider_payment_id, full.provider_status) == ("pi_3", "refunded")
    assert full.provider_invoice_id is None
    renewal = event_from_stripe(_stripe_event("charge.refunded", {
        "refunded": True, "payment_intent": "pi_5", "invoice": "in_5",
    }))
    assert (renewal.provider_payment_id, renewal.provider_invoice_id) == ("pi_5", "in_5")
    assert event_from_stripe(_stripe_event("charge.refunded", {"refunded": False, "payment_intent": "pi_3"})) is None

    dispute = event_from_stripe(_stripe_event("charge.dispute.created", {"payment_intent": "pi_4"}))
    assert dispute.provider_status == "charged_back"


def test_invoice_events_target_subscriptions():
    paid = event_from_stripe(_stripe_event("invoice.paid", {
        "id": "in_1",
        "parent": {"subscription_details": {"subscription": "sub_1", "metadata": {"entity_id": "3"}}},
    }))
    assert paid.provider_payment_id == "in_1"
    assert paid.payment_intent_id is None
    assert paid.provider_status == "approved"
    assert (paid.entity_type, paid.entity_id, paid.provider_subscription_id) == ("subscription", "3", "sub_1")

    failed = event_from_stripe(_stripe_event("invoice.payment_failed", {"id": "in_2", "subscription": "sub_2"}))
    assert failed.provider_status == "rejected"
    assert failed.provider_subscription_id == "sub_2"


def test_subscription_deleted_and_unknown_types():
    deleted = event_from_stripe(_stripe_event("customer.subscription.deleted", {"id": "sub_5", "metadata": {}}))
    assert deleted.kind == "subscription"
    assert deleted.provider_status == "cancelled"
    assert deleted.provider_subscription_id == "sub_5"

    assert event_from_stripe(_stripe_event("customer.created", {"id": "cus_1"})) is None
