from flask_talisman import Talisman

def init_security(app):
    """
    Production/staging security headers with a conservative CSP.
    The billing API is JSON-only; Paystack inline checkout is the only third-party frame.
    """
    csp = {
        "default-src": ["'self'"],
        "script-src":  ["'self'", "https://js.paystack.co"],
        "style-src":   ["'self'"],
        "img-src":     ["'self'", "data:"],
        "connect-src": ["'self'", "https://api.paystack.co"],
        "frame-src":   ["'self'", "https://checkout.paystack.com"],
        "frame-ancestors": ["'self'"],
        "base-uri":    ["'self'"],
        "form-action": ["'self'"],
    }

    Talisman(
        app,
        content_security_policy=csp,
        force_https=True,
        strict_transport_security=True,
        session_cookie_secure=True,
        frame_options="SAMEORIGIN",
        referrer_policy="strict-origin-when-cross-origin",
    )
