"""
Availability calculator.

Availability is derived on every call from the weekly rules, the date/slot
overrides and the bookings that currently hold a slot. Nothing here writes to
the database and nothing is cached between requests.
"""
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import date, timedelta
from typing import Dict, List, Optional

from flask import current_app

from models import db
from models.availability import AvailabilityRule, AvailabilityOverride, AvailabilityOverrideSlot
from models.booking import Booking, ACTIVE_STATUSES
from services.errors import ValidationError, NotFound
from utils.timeutil import date_range, local_today, normalize_time, to_minutes


@dataclass
class DayAvailability:
    date: date
    closed: bool
    total_slots: int
    booked_slots: int
    available_slots: int
    surcharge_amount_cents: Optional[int] = None
    surcharge_percent: Optional[int] = None
    note: Optional[str] = None

    def to_dict(self):
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data


def generate_time_slots(start_time: str, end_time: str, interval_minutes: int) -> List[str]:
    """Slot start times from start to end inclusive, every interval minutes."""
    if interval_minutes <= 0:
        return []
    current = to_minutes(start_time)
    end = to_minutes(end_time)
    slots = []
    while current <= end:
        slots.append(f"{current // 60:02d}:{current % 60:02d}")
        current += interval_minutes
    return slots


def slots_for_date(day: date, rules, overrides, slot_overrides, horizon_end: Optional[date] = None):
    """
    Returns (slot_times, closed, override) for one day.

    rules: weekday -> rule, overrides: date -> override,
    slot_overrides: date -> [slot override].
    """
    override = overrides.get(day)
    if horizon_end is not None and day > horizon_end:
        return [], True, override
    if override is not None and override.is_closed:
        return [], True, override

    rule = rules.get(day.weekday())
    if rule is None or not rule.is_open:
        return [], True, override

    slots = generate_time_slots(rule.start_time, rule.end_time, rule.slot_interval_minutes)

    day_slot_overrides = slot_overrides.get(day) or []
    if day_slot_overrides:
        closed_times = {so.time for so in day_slot_overrides if not so.is_open}
        added = [so.time for so in day_slot_overrides if so.is_open and so.time not in slots]
        slots = sorted([s for s in slots if s not in closed_times] + added)

    return slots, False, override


def compute_day(day: date, rules, overrides, slot_overrides, booked_times, horizon_end=None) -> DayAvailability:
    slots, closed, override = slots_for_date(day, rules, overrides, slot_overrides, horizon_end)

    if closed:
        total = booked = 0
    else:
        total = len(slots)
        # Only times that are part of today's schedule consume capacity
        booked = len(set(slots) & set(booked_times or ()))

    return DayAvailability(
        date=day,
        closed=closed,
        total_slots=total,
        booked_slots=booked,
        available_slots=0 if closed else max(total - booked, 0),
        surcharge_amount_cents=override.surcharge_amount_cents if override else None,
        surcharge_percent=override.surcharge_percent if override else None,
        note=override.note if override else None,
    )


def compute_range(start: date, end: date, rules, overrides, slot_overrides, booked_by_date, horizon_end=None):
    return [
        compute_day(day, rules, overrides, slot_overrides, booked_by_date.get(day, ()), horizon_end)
        for day in date_range(start, end)
    ]


# ---------- database loaders ----------

def _horizon_end() -> date:
    return local_today() + timedelta(days=current_app.config.get("BOOKING_HORIZON_DAYS", 90))


def _load_calendar(start: date, end: date):
    rules = {r.weekday: r for r in AvailabilityRule.query.all()}
    overrides = {
        o.date: o
        for o in AvailabilityOverride.query.filter(
            AvailabilityOverride.date >= start, AvailabilityOverride.date <= end
        ).all()
    }
    slot_overrides: Dict[date, list] = defaultdict(list)
    for so in AvailabilityOverrideSlot.query.filter(
        AvailabilityOverrideSlot.date >= start, AvailabilityOverrideSlot.date <= end
    ).all():
        slot_overrides[so.date].append(so)
    return rules, overrides, slot_overrides


def _load_booked_times(start: date, end: date) -> Dict[date, set]:
    rows = (
        db.session.query(Booking.booking_date, Booking.booking_time)
        .filter(
            Booking.booking_date >= start,
            Booking.booking_date <= end,
            Booking.status.in_(ACTIVE_STATUSES),
        )
        .all()
    )
    booked: Dict[date, set] = defaultdict(set)
    for booking_date, booking_time in rows:
        booked[booking_date].add(booking_time)
    return booked


def get_availability(start: date, end: date) -> List[DayAvailability]:
    if end < start:
        raise ValidationError("'from' must be on or before 'to'")
    max_days = current_app.config.get("MAX_AVAILABILITY_RANGE_DAYS", 62)
    if (end - start).days + 1 > max_days:
        raise ValidationError(f"Range too large (max {max_days} days)")

    rules, overrides, slot_overrides = _load_calendar(start, end)
    booked = _load_booked_times(start, end)
    return compute_range(start, end, rules, overrides, slot_overrides, booked, _horizon_end())


def get_day_schedule(day: date):
    """Configured slot times for a day plus its closed flag and override."""
    rules, overrides, slot_overrides = _load_calendar(day, day)
    return slots_for_date(day, rules, overrides, slot_overrides, _horizon_end())


def get_day_slots(day: date) -> dict:
    slots, closed, override = get_day_schedule(day)
    booked = _load_booked_times(day, day).get(day, set())
    return {
        "date": day.isoformat(),
        "closed": closed,
        "note": override.note if override else None,
        "slots": [
            {"time": t, "status": "booked" if t in booked else "available"}
            for t in slots
        ],
    }


# ---------- admin maintenance ----------

def upsert_weekly_rule(weekday: int, is_open: bool, start_time=None, end_time=None, slot_interval_minutes=None):
    if weekday not in range(7):
        raise ValidationError("weekday must be between 0 (Monday) and 6 (Sunday)")

    rule = AvailabilityRule.query.filter_by(weekday=weekday).first()
    if rule is None:
        rule = AvailabilityRule(weekday=weekday)
        db.session.add(rule)

    rule.is_open = bool(is_open)
    if start_time is not None or end_time is not None:
        start = normalize_time(start_time)
        end = normalize_time(end_time)
        if not start or not end:
            raise ValidationError("start_time and end_time must be HH:MM")
        if to_minutes(end) < to_minutes(start):
            raise ValidationError("end_time must not be before start_time")
        rule.start_time, rule.end_time = start, end
    if slot_interval_minutes is not None:
        try:
            interval = int(slot_interval_minutes)
        except (TypeError, ValueError):
            raise ValidationError("slot_interval_minutes must be an integer")
        if interval <= 0:
            raise ValidationError("slot_interval_minutes must be positive")
        rule.slot_interval_minutes = interval

    db.session.commit()
    return rule


def upsert_date_override(day: date, is_closed: bool, note=None, surcharge_amount_cents=None, surcharge_percent=None):
    override = AvailabilityOverride.query.filter_by(date=day).first()
    if override is None:
        override = AvailabilityOverride(date=day)
        db.session.add(override)

    override.is_closed = bool(is_closed)
    override.note = note or None
    override.surcharge_amount_cents = surcharge_amount_cents or None
    override.surcharge_percent = surcharge_percent or None
    db.session.commit()
    return override


def delete_date_override(day: date):
    deleted = AvailabilityOverride.query.filter_by(date=day).delete()
    # Slot overrides belong to the date override
    AvailabilityOverrideSlot.query.filter_by(date=day).delete()
    db.session.commit()
    if not deleted:
        raise NotFound("No override for that date")


def upsert_slot_override(day: date, time_str: str, is_open: bool):
    slot_time = normalize_time(time_str)
    if not slot_time:
        raise ValidationError("time must be HH:MM")

    slot = AvailabilityOverrideSlot.query.filter_by(date=day, time=slot_time).first()
    if slot is None:
        slot = AvailabilityOverrideSlot(date=day, time=slot_time)
        db.session.add(slot)
    slot.is_open = bool(is_open)
    db.session.commit()
    return slot


def delete_slot_override(day: date, time_str: str):
    slot_time = normalize_time(time_str)
    deleted = AvailabilityOverrideSlot.query.filter_by(date=day, time=slot_time).delete()
    db.session.commit()
    if not deleted:
        raise NotFound("No slot override for that date and time")
