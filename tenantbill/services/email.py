import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from flask import current_app, render_template
from flask_mail import Message

from tenantbill.extensions import mail
from tenantbill.observability import log_event

logger = logging.getLogger("tenantbill.email")


def absolute_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def send_email(to_email: str, subject: str, template: str, context: Optional[Dict[str, Any]] = None) -> bool:
    """
    template: basename under templates/email/ without extension (e.g. 'billing_notice').
    Renders both HTML and plaintext. Returns True when the backend accepted the message.
    """
    context = context or {}
    msg = Message(recipients=[to_email], subject=subject)
    msg.body = render_template(f"email/{template}.txt", **context)
    msg.html = render_template(f"email/{template}.html", **context)

    start = time.perf_counter()
    try:
        mail.send(msg)
    except Exception as ex:
        log_event(
            logger, "mail_send", level=logging.WARNING,
            template=template, to=to_email.lower(), subject=subject, outcome="smtp_error",
            latency_ms=int((time.perf_counter() - start) * 1000), smtp_error=str(ex),
        )
        return False

    log_event(
        logger, "mail_send",
        template=template, to=to_email.lower(), subject=subject, outcome="sent",
        latency_ms=int((time.perf_counter() - start) * 1000),
    )
    return True
