from flask_talisman import Talisman

# JSON-only surface: nothing may be framed, scripted or embedded
API_CSP = {"default-src": "'none'", "frame-ancestors": "'none'"}


def init_security(app):
    """HTTPS and response headers for staging/production."""
    Talisman(
        app,
        force_https=True,
        force_https_permanent=True,
        strict_transport_security=True,
        strict_transport_security_max_age=31536000,
        content_security_policy=API_CSP,
        frame_options="DENY",
        referrer_policy="no-referrer",
        session_cookie_secure=True,
    )
