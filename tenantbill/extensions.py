from flask import request
from flask_limiter import Limiter
from flask_mail import Mail
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy


def _webhook_source() -> str:
    # Only the payment gateway calls in, so it is keyed by source address
    return request.remote_addr or "unknown"


db = SQLAlchemy()
migrate = Migrate()

# Storage URI and enablement come from app config at init_app time
limiter = Limiter(key_func=_webhook_source)

# Notification delivery
mail = Mail()
