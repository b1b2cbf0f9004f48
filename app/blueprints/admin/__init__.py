from flask import Blueprint, jsonify
from flask_login import current_user

bp = Blueprint("admin", __name__)


@bp.before_request
def _require_admin():
    if not current_user.is_authenticated:
        return jsonify({"error": "authentication_required"}), 401
    if not getattr(current_user, "is_admin", False):
        return jsonify({"error": "forbidden", "code": 403}), 403
    return None


# Import submodules so their routes register on the same bp
from . import billing  # noqa: E402,F401
