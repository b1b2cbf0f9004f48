import os


def _flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or default).lower() == "true"


def _delays(name: str, default: str) -> tuple:
    raw = os.getenv(name, default) or default
    return tuple(float(p) for p in raw.split(",") if p.strip())


class BaseConfig:
    APP_ENV = (os.getenv("APP_ENV", "development") or "development").lower()

    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    WTF_CSRF_TIME_LIMIT = None

    # Database (env in prod; dev/test may use default)
    try:
        from dotenv import dotenv_values
        _ENV_FALLBACK = dotenv_values(".env")
    except Exception:
        _ENV_FALLBACK = {}
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Cookies: secure-by-default
    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Mail ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "true")
    MAIL_USE_SSL = _flag("MAIL_USE_SSL")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Simple Slips <no-reply@local.test>")
    MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND")

    # Operator alerts + user-facing support address
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "support@simpleslips.co.za")
    SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@simpleslips.co.za")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Simple Slips")

    # Outbound notification retry (linear backoff)
    NOTIFY_MAX_ATTEMPTS = int(os.getenv("NOTIFY_MAX_ATTEMPTS", "3"))
    NOTIFY_BACKOFF_SECONDS = float(os.getenv("NOTIFY_BACKOFF_SECONDS", "1.0"))

    # --- Paystack (card / recurring gateway) ---
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")

    # --- Apple App Store ---
    APPLE_SHARED_SECRET = os.getenv("APPLE_SHARED_SECRET")
    APPLE_VERIFY_URL = os.getenv("APPLE_VERIFY_URL", "https://buy.itunes.apple.com/verifyReceipt")
    APPLE_SANDBOX_VERIFY_URL = os.getenv("APPLE_SANDBOX_VERIFY_URL", "https://sandbox.itunes.apple.com/verifyReceipt")

    # --- Google Play ---
    GOOGLE_PLAY_PACKAGE_NAME = os.getenv("GOOGLE_PLAY_PACKAGE_NAME", "app.simpleslips.twa")
    GOOGLE_SERVICE_ACCOUNT_KEY = os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY")
    # Development convenience only; never honoured when APP_ENV=production
    GOOGLE_PLAY_ALLOW_UNVERIFIED = _flag("GOOGLE_PLAY_ALLOW_UNVERIFIED")

    # --- Reconciliation engine ---
    BILLING_VERIFY_TIMEOUT = float(os.getenv("BILLING_VERIFY_TIMEOUT", "10"))
    # Amount (minor units) at or above which a payment is treated as the yearly plan
    BILLING_YEARLY_THRESHOLD = int(os.getenv("BILLING_YEARLY_THRESHOLD", "50000"))
    BILLING_DOUBLE_CHARGE_GRACE_DAYS = int(os.getenv("BILLING_DOUBLE_CHARGE_GRACE_DAYS", "7"))
    BILLING_DEFAULT_PLAN = os.getenv("BILLING_DEFAULT_PLAN", "premium_monthly")
    BILLING_CURRENCY = os.getenv("BILLING_CURRENCY", "ZAR")

    # Best-effort audit writes: 1s, 2s, 4s then alert
    BILLING_EVENT_RETRY_DELAYS = _delays("BILLING_EVENT_RETRY_DELAYS", "1,2,4")
    BILLING_EVENT_RETRY_INLINE = _flag("BILLING_EVENT_RETRY_INLINE")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    MAIL_SUPPRESS_SEND = False
    GOOGLE_PLAY_ALLOW_UNVERIFIED = False


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True
    NOTIFY_BACKOFF_SECONDS = 0.0
    BILLING_EVENT_RETRY_INLINE = True
    RATELIMIT_ENABLED = False
    PAYSTACK_SECRET_KEY = "sk_test_secret"
    ADMIN_EMAIL = "ops@simpleslips.test"


_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
