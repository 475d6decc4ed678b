from flask_talisman import Talisman

def init_security(app):
    """
    Production/staging security headers. The service is JSON-only, so the CSP
    is locked down to self; Stripe Checkout is a redirect, not an embed.
    """
    csp = {
        "default-src": ["'self'"],
        "connect-src": ["'self'", "https://api.stripe.com"],
        "frame-ancestors": ["'none'"],
        "base-uri":    ["'self'"],
        "form-action": ["'self'", "https://checkout.stripe.com"],
    }

    Talisman(
        app,
        content_security_policy=csp,
        force_https=True,
        strict_transport_security=True,
        session_cookie_secure=True,
        frame_options="DENY",
        referrer_policy="strict-origin-when-cross-origin",
    )
