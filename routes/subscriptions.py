from flask import Blueprint, request, jsonify

from models import db
from models.subscription import Subscription, SubscriptionPlan
from services.errors import NotFound, ValidationError
from services.quota import get_subscription
from utils.audit import log_event

subscription_bp = Blueprint("subscriptions", __name__)


@subscription_bp.get("/plans")
def list_plans():
    plans = SubscriptionPlan.query.filter_by(is_active=True).order_by(SubscriptionPlan.price_cents.asc()).all()
    return jsonify([
        {
            "id": p.id,
            "name": p.name,
            "washes_per_cycle": p.washes_per_cycle,
            "price_cents": p.price_cents,
            "service_name": p.service_name,
            "vehicle_tier": p.vehicle_tier,
        }
        for p in plans
    ]), 200


@subscription_bp.post("/subscriptions")
def create_subscription():
    data = request.get_json(silent=True) or {}
    name = (data.get("customer_name") or "").strip()
    email = (data.get("customer_email") or "").strip().lower()
    phone = (data.get("customer_phone") or "").strip() or None
    plan_id = data.get("plan_id")

    errors = []
    if not name:
        errors.append("Nombre es requerido")
    if not email or "@" not in email:
        errors.append("Email es requerido")
    if not plan_id:
        errors.append("Plan es requerido")
    else:
        try:
            plan_id = int(plan_id)
        except (TypeError, ValueError):
            errors.append("Plan inválido")
    if errors:
        raise ValidationError(errors=errors)

    plan = db.session.get(SubscriptionPlan, plan_id)
    if not plan or not plan.is_active:
        raise NotFound("Plan no encontrado")

    # Pending until the first payment (or an admin) activates it
    sub = Subscription(
        customer_name=name,
        customer_email=email,
        customer_phone=phone,
        external_user_id=(data.get("external_user_id") or None),
        plan_id=plan.id,
        status="pending",
        washes_remaining=0,
        washes_used_in_cycle=0,
    )
    db.session.add(sub)
    db.session.commit()

    log_event("SUBSCRIPTION_CREATE", actor="customer", entity="subscription", entity_id=sub.id,
              metadata={"plan": plan.name})
    return jsonify(sub.to_dict()), 201


@subscription_bp.get("/subscriptions/<int:subscription_id>")
def subscription_detail(subscription_id: int):
    email = (request.args.get("email") or "").strip().lower()
    sub = get_subscription(subscription_id)
    if not email or sub.customer_email != email:
        raise NotFound("Suscripción no encontrada")
    return jsonify(sub.to_dict()), 200
