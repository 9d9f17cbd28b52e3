"""
Subscription quota ledger.

Every change to washes_remaining is a single conditional UPDATE whose WHERE
clause carries the guard (status, remaining > 0, plan ceiling, renewal id),
and the affected-row count decides the outcome. Functions taking ``commit``
can join a caller's transaction (the slot claim consumes a wash and inserts
the booking in one commit).
"""
import logging
from collections import namedtuple
from datetime import datetime

from sqlalchemy import case, or_, select

from models import db
from models.subscription import Subscription, SubscriptionPlan, SubscriptionEvent, SUBSCRIPTION_STATUSES
from services.errors import NotFound, QuotaExhausted, SubscriptionInactive, ValidationError
from utils.timeutil import add_months

log = logging.getLogger(__name__)

QuotaResult = namedtuple("QuotaResult", ["ok", "washes_remaining"])


def _plan_quota():
    return (
        select(SubscriptionPlan.washes_per_cycle)
        .where(SubscriptionPlan.id == Subscription.plan_id)
        .correlate(Subscription)
        .scalar_subquery()
    )


def _remaining(subscription_id: int):
    return (
        db.session.query(Subscription.washes_remaining)
        .filter(Subscription.id == subscription_id)
        .scalar()
    )


def _journal(subscription_id: int, event_type: str, payload=None):
    db.session.add(SubscriptionEvent(subscription_id=subscription_id, event_type=event_type, payload=payload))


def get_subscription(subscription_id) -> Subscription:
    sub = db.session.get(Subscription, subscription_id) if subscription_id else None
    if sub is None:
        raise NotFound("Suscripción no encontrada")
    return sub


def consume_wash(subscription_id: int, booking_ref=None, commit: bool = True) -> QuotaResult:
    """
    Take one wash from the current cycle.

    Raises QuotaExhausted when nothing is left, SubscriptionInactive when the
    subscription is not active. The caller owns the rollback when commit=False.
    """
    matched = (
        Subscription.query
        .filter(
            Subscription.id == subscription_id,
            Subscription.status == "active",
            Subscription.washes_remaining > 0,
        )
        .update(
            {
                Subscription.washes_remaining: Subscription.washes_remaining - 1,
                Subscription.washes_used_in_cycle: Subscription.washes_used_in_cycle + 1,
            },
            synchronize_session=False,
        )
    )

    if matched != 1:
        # Guard failed: work out why for the caller, nothing was written
        row = (
            db.session.query(Subscription.status, Subscription.washes_remaining)
            .filter(Subscription.id == subscription_id)
            .first()
        )
        if row is None:
            raise NotFound("Suscripción no encontrada")
        if row.status != "active":
            raise SubscriptionInactive(status=row.status)
        raise QuotaExhausted(washesRemaining=0)

    remaining = _remaining(subscription_id)
    _journal(subscription_id, "wash_consumed", {"booking": booking_ref, "washes_remaining": remaining})
    if commit:
        db.session.commit()

    log.info("Subscription %s consumed a wash, %s left", subscription_id, remaining)
    return QuotaResult(True, remaining)


def restore_wash(subscription_id: int, booking_ref=None, commit: bool = True) -> bool:
    """Give one wash back, never above the plan's washes_per_cycle. Returns True if restored."""
    matched = (
        Subscription.query
        .filter(
            Subscription.id == subscription_id,
            Subscription.washes_remaining < _plan_quota(),
        )
        .update(
            {
                Subscription.washes_remaining: Subscription.washes_remaining + 1,
                Subscription.washes_used_in_cycle: case(
                    (Subscription.washes_used_in_cycle > 0, Subscription.washes_used_in_cycle - 1),
                    else_=0,
                ),
            },
            synchronize_session=False,
        )
    )

    if matched == 1:
        _journal(subscription_id, "wash_restored", {"booking": booking_ref})
    else:
        log.warning("Subscription %s already at plan quota, wash not restored", subscription_id)

    if commit:
        db.session.commit()
    return matched == 1


def _next_period(sub: Subscription, now: datetime):
    if sub.current_period_end is None or sub.current_period_end < now:
        start = now
    else:
        start = sub.current_period_end
    return start, add_months(start, 1)


def renew_cycle(subscription_id: int, payment_id=None, now=None, commit: bool = True) -> bool:
    """
    Refill the quota and move the billing period forward one month.

    With a payment_id the renewal is applied at most once per payment.
    Returns False when this payment was already applied.
    """
    now = now or datetime.utcnow()

    for _ in range(3):
        sub = get_subscription(subscription_id)
        if payment_id is not None and sub.last_renewal_payment_id == payment_id:
            return False

        start, end = _next_period(sub, now)
        quota = sub.plan.washes_per_cycle
        old_end = sub.current_period_end

        q = Subscription.query.filter(Subscription.id == subscription_id)
        # Compare-and-swap on the period we read
        if old_end is None:
            q = q.filter(Subscription.current_period_end.is_(None))
        else:
            q = q.filter(Subscription.current_period_end == old_end)
        if payment_id is not None:
            q = q.filter(or_(
                Subscription.last_renewal_payment_id.is_(None),
                Subscription.last_renewal_payment_id != payment_id,
            ))

        values = {
            Subscription.status: "active",
            Subscription.washes_remaining: quota,
            Subscription.washes_used_in_cycle: 0,
            Subscription.current_period_start: start,
            Subscription.current_period_end: end,
        }
        if payment_id is not None:
            values[Subscription.last_renewal_payment_id] = payment_id

        if q.update(values, synchronize_session=False) == 1:
            _journal(subscription_id, "cycle_renewed", {
                "payment_id": payment_id,
                "washes": quota,
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
            })
            if commit:
                db.session.commit()
            else:
                db.session.flush()
            db.session.expire(sub)
            log.info("Subscription %s renewed until %s", subscription_id, end.isoformat())
            return True

        # Somebody else moved the row; read it again
        db.session.expire(sub)

    log.warning("Subscription %s renewal lost the race three times", subscription_id)
    return False


def adjust_credits(subscription_id: int, delta: int, reason=None):
    """Admin correction, clamped to [0, plan quota]. Returns (old, new)."""
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationError("delta must be a non-zero integer")

    old = get_subscription(subscription_id).washes_remaining
    quota = _plan_quota()
    target = Subscription.washes_remaining + delta

    Subscription.query.filter(Subscription.id == subscription_id).update(
        {
            Subscription.washes_remaining: case(
                (target < 0, 0),
                (target > quota, quota),
                else_=target,
            ),
        },
        synchronize_session=False,
    )
    new = _remaining(subscription_id)
    _journal(subscription_id, "credits_adjusted", {
        "old_credits": old,
        "new_credits": new,
        "delta": delta,
        "reason": reason or "Ajuste manual por admin",
    })
    db.session.commit()
    return old, new


def set_status(subscription_id: int, status: str, reset_credits: bool = False) -> Subscription:
    if status not in SUBSCRIPTION_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(SUBSCRIPTION_STATUSES)}")

    sub = get_subscription(subscription_id)
    old_status = sub.status
    if old_status == status and not reset_credits:
        return sub

    if status == "active" and (reset_credits or old_status == "pending"):
        renew_cycle(subscription_id, commit=False)
    else:
        Subscription.query.filter(Subscription.id == subscription_id).update(
            {Subscription.status: status}, synchronize_session=False
        )

    _journal(subscription_id, "status_change", {"old_status": old_status, "new_status": status})
    db.session.commit()
    db.session.refresh(sub)
    return sub
