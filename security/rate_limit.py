from datetime import datetime, timedelta
from functools import wraps
from flask import request, current_app, jsonify
from sqlalchemy.exc import IntegrityError

from models import db
from models.ip_rate_limit import IpRateLimit

def _client_ip() -> str:
    return request.headers.get("X-Forwarded-For", request.remote_addr) or "unknown"

def check_and_increment(scope: str, window_seconds: int, max_requests: int) -> tuple[bool, int]:
    """
    Returns (allowed, retry_after_seconds).
    Simple fixed window per (scope, IP).
    """
    ip = _client_ip()
    now = datetime.utcnow()

    row = IpRateLimit.query.filter_by(scope=scope, ip=ip).first()
    if not row:
        row = IpRateLimit(scope=scope, ip=ip, window_start=now, count=0)
        db.session.add(row)
        try:
            db.session.flush()
        except IntegrityError:
            # Another request created the window first
            db.session.rollback()
            row = IpRateLimit.query.filter_by(scope=scope, ip=ip).first()

    # Reset window if expired
    IpRateLimit.query.filter(
        IpRateLimit.id == row.id,
        IpRateLimit.window_start <= now - timedelta(seconds=window_seconds),
    ).update({IpRateLimit.window_start: now, IpRateLimit.count: 0}, synchronize_session=False)

    # Increment in SQL so concurrent requests don't overwrite each other
    IpRateLimit.query.filter(IpRateLimit.id == row.id).update(
        {IpRateLimit.count: IpRateLimit.count + 1}, synchronize_session=False
    )
    db.session.commit()
    db.session.refresh(row)

    window_end = row.window_start + timedelta(seconds=window_seconds)
    if row.count > max_requests:
        retry_after = int((window_end - now).total_seconds())
        return False, max(retry_after, 1)

    return True, 0

def limit_booking_creation(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        allowed, retry_after = check_and_increment(
            "booking_create",
            current_app.config.get("BOOKING_RATE_WINDOW_SECONDS", 60),
            current_app.config.get("BOOKING_RATE_MAX_REQUESTS", 10),
        )
        if not allowed:
            resp = jsonify(error="Demasiadas solicitudes, probá en un minuto")
            resp.headers["Retry-After"] = str(retry_after)
            return resp, 429
        return fn(*args, **kwargs)
    return wrapper
