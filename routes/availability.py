from flask import Blueprint, jsonify, request

from services.availability import get_availability, get_day_slots
from utils.timeutil import parse_date

availability_bp = Blueprint("availability", __name__)


@availability_bp.get("/availability")
def availability():
    from_str = request.args.get("from")
    to_str = request.args.get("to")
    if not from_str or not to_str:
        return jsonify(error="Missing 'from' and/or 'to' query parameters (YYYY-MM-DD)"), 400

    start = parse_date(from_str)
    end = parse_date(to_str)
    if start is None or end is None:
        return jsonify(error="Invalid date format. Use YYYY-MM-DD"), 400

    days = get_availability(start, end)
    return jsonify(
        {"from": start.isoformat(), "to": end.isoformat(), "availability": [d.to_dict() for d in days]}
    ), 200


@availability_bp.get("/slots")
def slots():
    date_str = request.args.get("date")
    if not date_str:
        return jsonify(error="Missing 'date' query parameter (YYYY-MM-DD)"), 400

    day = parse_date(date_str)
    if day is None:
        return jsonify(error="Invalid date format. Use YYYY-MM-DD"), 400

    return jsonify(get_day_slots(day)), 200
