from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_wtf import CSRFProtect
from flask_login import LoginManager, current_user
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()
login_manager = LoginManager()
mail = Mail()


def _billing_rate_key() -> str:
    """Payment endpoints are limited per account; webhooks and anonymous calls per client IP."""
    user_id = getattr(current_user, "id", None) if getattr(current_user, "is_authenticated", False) else None
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address()}"


# Storage URI is set by create_app() (memory:// locally, Redis in staging/production)
limiter = Limiter(key_func=_billing_rate_key)
