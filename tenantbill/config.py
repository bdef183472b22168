import os

from dotenv import dotenv_values


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _flag(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").strip().lower() in ("1", "true", "yes")


def _database_url(default: str = "sqlite:///:memory:") -> str:
    # Process env first, then a local .env (useful when running `flask db` from a shell)
    return os.environ.get("DATABASE_URL") or dotenv_values(".env").get("DATABASE_URL") or default


class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # "mail" delivers to the organization owner; "log" only writes the notice to the log
    NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "mail")

    # Only the webhook route is limited
    RATELIMIT_DEFAULT = None
    WEBHOOK_RATE_LIMIT = os.getenv("WEBHOOK_RATE_LIMIT", "120 per minute")

    # --- Notifications (Flask-Mail) ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = _int("MAIL_PORT", 587)
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", True)
    MAIL_USE_SSL = _flag("MAIL_USE_SSL", False)
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Billing <no-reply@local.test>")
    MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND", False)

    # Absolute links in notices and gateway success/cancel URLs
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "TenantBill")

    # --- Billing calendar ---
    # Organizations without their own zone fall back to this one
    BILLING_TIMEZONE = os.getenv("BILLING_TIMEZONE", "America/Sao_Paulo")
    BILLING_PERIOD_DAYS = _int("BILLING_PERIOD_DAYS", 30)
    TRIAL_PERIOD_DAYS = _int("TRIAL_PERIOD_DAYS", 7)
    PRORATION_DAYS_PER_MONTH = _int("PRORATION_DAYS_PER_MONTH", 30)
    ADDON_INVOICE_DUE_DAYS = _int("ADDON_INVOICE_DUE_DAYS", 7)
    PRORATION_INVOICE_DUE_DAYS = _int("PRORATION_INVOICE_DUE_DAYS", 7)
    INVOICE_OVERDUE_GRACE_DAYS = _int("INVOICE_OVERDUE_GRACE_DAYS", 0)
    USAGE_RETENTION_DAYS = _int("USAGE_RETENTION_DAYS", 90)
    EXPIRY_WARNING_DAYS = _int("EXPIRY_WARNING_DAYS", 3)
    EXPIRY_FINAL_WARNING_DAYS = _int("EXPIRY_FINAL_WARNING_DAYS", 1)

    # A job run not finished after this long is considered dead and its lease reclaimed
    JOB_LEASE_SECONDS = _int("JOB_LEASE_SECONDS", 6 * 3600)

    # --- Payment gateway ---
    # "hosted": checkout API that posts back to /webhooks/payments
    # "stripe": Stripe Checkout, confirmed through /webhooks/stripe
    PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "hosted").lower()
    PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL")
    PAYMENT_GATEWAY_STORE_CODE = os.getenv("PAYMENT_GATEWAY_STORE_CODE")
    PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY")
    PAYMENT_METHOD = os.getenv("PAYMENT_METHOD", "pix")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "brl")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = _int("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # --- Payment webhook authenticity ---
    PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")
    PAYMENT_WEBHOOK_ALLOWED_IPS = [
        ip.strip() for ip in os.getenv("PAYMENT_WEBHOOK_ALLOWED_IPS", "").split(",") if ip.strip()
    ]
    PAYMENT_WEBHOOK_TOLERANCE_SECONDS = _int("PAYMENT_WEBHOOK_TOLERANCE_SECONDS", 300)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    MAIL_SUPPRESS_SEND = True


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # create_app() refuses to start when these are empty
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    MAIL_SUPPRESS_SEND = False


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    MAIL_SUPPRESS_SEND = True
    RATELIMIT_ENABLED = False


_CONFIGS = {
    "development": DevelopmentConfig,
    "staging": ProductionConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    return _CONFIGS.get(os.environ.get("APP_ENV", "development").lower(), DevelopmentConfig)
