import os

from flask import Flask

# Platform env vars win in production; elsewhere a local .env fills the gaps
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=True)

from .config import get_config
from .errors import register_error_handlers
from .extensions import db, limiter, mail, migrate
from .observability import init_logging, init_sentry
from .security import init_security

PROD_LIKE = ("staging", "production")
REQUIRED_IN_PROD = ("SECRET_KEY", "DATABASE_URL")
# Credentials each payment gateway needs to create links and to authenticate its callbacks
GATEWAY_REQUIRED = {
    "hosted": ("PAYMENT_GATEWAY_URL", "PAYMENT_GATEWAY_API_KEY", "PAYMENT_WEBHOOK_SECRET"),
    "stripe": ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"),
}


def _env() -> str:
    return (os.getenv("APP_ENV", "development") or "development").lower()


def _limiter_storage(app_env: str) -> str:
    if app_env not in PROD_LIKE:
        return "memory://"
    uri = os.environ.get("REDIS_URL")
    if not uri:
        # Several workers must share counters
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    return uri


def _gateway_required(app) -> tuple:
    gateway = app.config.get("PAYMENT_GATEWAY", "hosted")
    if gateway not in GATEWAY_REQUIRED:
        raise RuntimeError(f"Unknown PAYMENT_GATEWAY {gateway!r}")
    return GATEWAY_REQUIRED[gateway]


def _check_required(app) -> None:
    required = REQUIRED_IN_PROD + _gateway_required(app)
    missing = [name for name in required if not (os.getenv(name) or app.config.get(name))]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")


def create_app(config_object=None):
    app_env = _env()
    app = Flask(__name__, template_folder="templates")
    app.config["RATELIMIT_STORAGE_URI"] = _limiter_storage(app_env)
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)
    app.config.from_object(config_object or get_config())

    if app_env in PROD_LIKE:
        _check_required(app)

    init_logging(app)
    init_sentry(app)
    if app_env in PROD_LIKE:
        init_security(app)

    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    limiter.init_app(app)
    mail.init_app(app)

    # Register every table on the metadata before create_all / autogenerate
    from . import models  # noqa: F401

    from .blueprints.webhooks import bp as webhooks_bp
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    register_error_handlers(app)

    from .jobs import build_registry
    app.extensions["tenantbill.jobs"] = build_registry()

    from .cli import register_cli
    register_cli(app)

    unset = [name for name in _gateway_required(app) if not app.config.get(name)]
    if unset:
        app.logger.warning("%s not set; payment links or confirmations are unavailable", ", ".join(unset))

    return app
