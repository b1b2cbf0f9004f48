from .routes import billing_bp  # noqa: F401
