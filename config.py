import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as washero.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "washero.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bounded wait on row/table locks (seconds). Claims and quota updates
    # that hit it report an unknown outcome instead of hanging.
    DB_LOCK_TIMEOUT_SECONDS = int(os.getenv("DB_LOCK_TIMEOUT_SECONDS", "5"))

    # Business calendar
    TIMEZONE = os.getenv("TIMEZONE", "America/Argentina/Buenos_Aires")
    BOOKING_HORIZON_DAYS = int(os.getenv("BOOKING_HORIZON_DAYS", "90"))
    MAX_AVAILABILITY_RANGE_DAYS = 62

    # Default weekly schedule seeded into availability_rules (0 = Monday).
    # 09:00-17:00 every hour = 9 slots, Sunday closed.
    DEFAULT_BUSINESS_HOURS = {
        0: ("09:00", "17:00", 60),
        1: ("09:00", "17:00", 60),
        2: ("09:00", "17:00", 60),
        3: ("09:00", "17:00", 60),
        4: ("09:00", "17:00", 60),
        5: ("09:00", "17:00", 60),
        6: None,
    }

    # Cancellation policy (customer self-service only)
    CANCEL_CUTOFF_HOURS = 12

    # Simple IP rate limit for booking creation
    BOOKING_RATE_WINDOW_SECONDS = 60
    BOOKING_RATE_MAX_REQUESTS = 10

    # Admin endpoints (identity is handled upstream; this is the shared token)
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL")
    STRIPE_CANCEL_URL = os.getenv("STRIPE_CANCEL_URL")
    STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "ars")
    STRIPE_TIMEOUT_SECONDS = int(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))

    # Collaborators (fire-and-forget HTTP hooks)
    NOTIFICATIONS_URL = os.getenv("NOTIFICATIONS_URL")
    INVOICE_SERVICE_URL = os.getenv("INVOICE_SERVICE_URL")
    COLLABORATOR_TOKEN = os.getenv("COLLABORATOR_TOKEN")
    COLLABORATOR_TIMEOUT_SECONDS = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "5"))

    # Seed weekly rules and plans at startup (idempotent, needs migrated tables)
    SEED_ON_STARTUP = os.getenv("SEED_ON_STARTUP", "0") == "1"

    # Basic app settings
    DEBUG = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    ADMIN_API_TOKEN = "test-admin-token"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    STRIPE_SUCCESS_URL = "http://localhost:5173/pago/exito"
    STRIPE_CANCEL_URL = "http://localhost:5173/pago/fallo"
    NOTIFICATIONS_URL = None
    INVOICE_SERVICE_URL = None
    BOOKING_RATE_MAX_REQUESTS = 1000
    SEED_ON_STARTUP = False
