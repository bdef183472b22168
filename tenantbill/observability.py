import json
import logging
import os
from logging.config import dictConfig

from pythonjsonlogger import jsonlogger

# Never forwarded to Sentry
_SENSITIVE_HEADERS = {"x-signature", "authorization", "cookie"}


def _app_env() -> str:
    return (os.getenv("APP_ENV", "development") or "development").lower()


def _json_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "rename_fields": {"levelname": "level", "name": "logger"},
            },
        },
        "handlers": {"stdout": {"class": "logging.StreamHandler", "formatter": "json"}},
        "root": {"level": level, "handlers": ["stdout"]},
    }


def init_logging(app):
    """JSON lines on stdout for staging/production; dev and tests keep Flask's console handler."""
    level = app.config.get("LOG_LEVEL", "INFO")
    if _app_env() in ("staging", "production"):
        dictConfig(_json_config(level))
        return
    logging.getLogger("tenantbill").setLevel(level)


def _scrub(event, hint):
    headers = (event.get("request") or {}).get("headers") or {}
    for key in list(headers):
        if key.lower() in _SENSITIVE_HEADERS:
            headers[key] = "[filtered]"
    return event


def init_sentry(app):
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            environment=_app_env(),
            traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
            send_default_pii=False,
            before_send=_scrub,
        )
    except Exception as exc:
        app.logger.warning("Sentry disabled: %s", exc)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields) -> None:
    """
    One JSON object per line, e.g. {"event": "invoice_created", "invoice_id": 3}.
    Dates and other non-JSON values are stringified.
    """
    logger.log(level, json.dumps({"event": event, **fields}, default=str))
