from functools import wraps
from typing import Callable

from flask import jsonify
from flask_login import current_user

from app.billing import get_billing
from app.billing.service import has_active_subscription


def enforce_active_subscription():
    """
    Returns None when allowed; otherwise a (JSON, 403) response.
    Lapsed trials are expired here, on access, before the check runs.
    """
    user_id = getattr(current_user, "id", None)
    if user_id is None:
        return jsonify({"error": "authentication_required"}), 401
    if has_active_subscription(get_billing(), user_id):
        return None
    return jsonify({
        "error": "subscription_required",
        "message": "An active subscription or trial is required to use this feature.",
    }), 403


def require_active_subscription(fn: Callable):
    """Decorator form; stack it under ``@login_required``."""
    @wraps(fn)
    def _wrap(*args, **kwargs):
        resp = enforce_active_subscription()
        if resp is not None:
            return resp
        return fn(*args, **kwargs)
    return _wrap
