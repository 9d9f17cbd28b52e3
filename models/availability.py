from datetime import datetime
from models.db import db


class AvailabilityRule(db.Model):
    __tablename__ = "availability_rules"

    id = db.Column(db.Integer, primary_key=True)
    weekday = db.Column(db.Integer, unique=True, nullable=False)  # 0 = Monday ... 6 = Sunday
    is_open = db.Column(db.Boolean, default=True, nullable=False)
    start_time = db.Column(db.String(5), nullable=False, default="09:00")
    end_time = db.Column(db.String(5), nullable=False, default="17:00")
    slot_interval_minutes = db.Column(db.Integer, nullable=False, default=60)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "weekday": self.weekday,
            "is_open": self.is_open,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "slot_interval_minutes": self.slot_interval_minutes,
        }


class AvailabilityOverride(db.Model):
    __tablename__ = "availability_overrides"

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, unique=True, nullable=False)
    is_closed = db.Column(db.Boolean, default=False, nullable=False)
    note = db.Column(db.String(255), nullable=True)
    surcharge_amount_cents = db.Column(db.Integer, nullable=True)
    surcharge_percent = db.Column(db.Integer, nullable=True)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "date": self.date.isoformat(),
            "is_closed": self.is_closed,
            "note": self.note,
            "surcharge_amount_cents": self.surcharge_amount_cents,
            "surcharge_percent": self.surcharge_percent,
        }


class AvailabilityOverrideSlot(db.Model):
    __tablename__ = "availability_override_slots"

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False, index=True)
    time = db.Column(db.String(5), nullable=False)
    is_open = db.Column(db.Boolean, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("date", "time", name="uq_override_slot_date_time"),
    )

    def to_dict(self):
        return {"date": self.date.isoformat(), "time": self.time, "is_open": self.is_open}
