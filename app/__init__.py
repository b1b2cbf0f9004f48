import os
from flask import Flask, request, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    # Always load .env if present and override any pre-set envs (prod: no .env → no-op)
    load_dotenv(".env", override=True)


from .config import get_config
from .extensions import db, migrate, csrf, login_manager, limiter, mail
from .security import init_security
from .observability import init_logging, init_sentry


def create_app(config_overrides=None, **billing_overrides):
    app = Flask(__name__)

    # ---- Rate limiting storage configuration ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    # ---------------------------------------------

    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_DEFAULTS", ["1000 per hour"])
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())
    if config_overrides:
        app.config.update(config_overrides)

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("PAYSTACK_SECRET_KEY")

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)

    # Apply HTTPS, HSTS & CSP only in staging/production
    if app_env in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)
    mail.init_app(app)

    # Billing core: verifiers, store, event logger and engine resolved once
    from .billing import init_billing
    init_billing(app, **billing_overrides)

    # Blueprints (explicit, consistent prefixes)
    from .blueprints.billing import billing_bp
    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.admin import bp as admin_bp

    # JSON API authenticated by session; webhooks authenticate by signature
    csrf.exempt(billing_bp)
    csrf.exempt(admin_bp)

    app.register_blueprint(billing_bp, url_prefix="/billing")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(admin_bp, url_prefix="/admin")

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "authentication_required"}), 401

    @limiter.exempt
    # Health
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    # JSON-only service: every HTTP error is a small JSON body
    def _json_error(code: int, error: str):
        def handler(e):
            return {"error": error, "code": code}, code
        return handler

    for code, error in ((400, "bad_request"), (401, "authentication_required"), (403, "forbidden"),
                        (404, "not_found"), (405, "method_not_allowed"), (500, "internal_error")):
        app.register_error_handler(code, _json_error(code, error))

    # CSRF error handler (clean 400 instead of generic 500)
    from flask_wtf.csrf import CSRFError

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return {"error": "csrf_failed", "message": e.description}, 400

    # 429 Too Many Requests: consistent JSON with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429, "path": request.path}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return (payload, 429, headers)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    if not app.config.get("PAYSTACK_SECRET_KEY"):
        app.logger.warning("Paystack secret key missing; card payments and webhooks will not work")

    return app
