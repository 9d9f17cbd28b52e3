from datetime import datetime
from models.db import db


class WebhookLog(db.Model):
    __tablename__ = "webhook_logs"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(40), nullable=False, default="stripe")
    event_id = db.Column(db.String(255), nullable=True, index=True)
    event_type = db.Column(db.String(80), nullable=True)
    provider_payment_id = db.Column(db.String(255), nullable=True, index=True)

    payload = db.Column(db.JSON, nullable=True)
    processed = db.Column(db.Boolean, default=False, nullable=False)
    error = db.Column(db.Text, nullable=True)

    received_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    processed_at = db.Column(db.DateTime, nullable=True)
