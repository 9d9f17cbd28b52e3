import logging

import click
from flask import Flask, jsonify
from flask_migrate import Migrate

from config import Config
from routes import (
    health_bp, availability_bp, booking_bp, subscription_bp, payments_bp, webhook_bp, admin_bp,
)
from models import db
from models.db import engine_options
from services.errors import BookingError
from utils.seed import seed_availability_rules, seed_plans


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        engine_options(app.config["SQLALCHEMY_DATABASE_URI"], app.config.get("DB_LOCK_TIMEOUT_SECONDS", 5)),
    )

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(availability_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(subscription_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    if app.config.get("SEED_ON_STARTUP"):
        with app.app_context():
            seed_availability_rules()
            seed_plans()

    @app.errorhandler(BookingError)
    def _booking_error(err):
        return jsonify(err.to_dict()), err.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app


#-------------------------
def register_cli(app):
    @app.cli.command("seed")
    def seed():
        """Create the default weekly schedule and subscription plans (idempotent)."""
        seed_availability_rules()
        seed_plans()
        click.echo("Availability rules and plans seeded")

    @app.cli.command("generate-cycle")
    @click.argument("subscription_id", type=int)
    def generate_cycle(subscription_id):
        """Start a new billing cycle for a subscription (manual renewal)."""
        from services.quota import get_subscription, renew_cycle

        renew_cycle(subscription_id)
        sub = get_subscription(subscription_id)
        click.echo(f"Subscription {sub.id}: {sub.washes_remaining} washes until {sub.current_period_end}")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
