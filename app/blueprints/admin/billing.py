from flask import request, jsonify, current_app
from flask_login import current_user
from . import bp

from app.extensions import db
from app.billing import get_billing
from app.billing.exceptions import BillingError, UserNotFound
from app.billing.service import ADMIN_ACTIONS, admin_action, get_payment_history, get_subscription_status
from app.billing.verifiers import PLATFORMS, PLATFORM_PAYSTACK
from app.models import BillingEvent, User
from app.models.subscription_plan import BILLING_PERIODS, PERIOD_MONTHLY
from app.utils.helpers import iso


@bp.errorhandler(BillingError)
def _billing_error(e: BillingError):
    current_app.logger.warning("admin.billing.%s", e.code, extra={"detail": e.message})
    return jsonify(e.to_dict()), e.http_status


def _get_user_or_404(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found")
    return user


@bp.get("/users/<int:user_id>/billing")
def user_billing(user_id: int):
    """Support view: lifecycle status, payments and the most recent audit events."""
    user = _get_user_or_404(user_id)
    services = get_billing()
    events = (
        BillingEvent.query.filter_by(user_id=user_id)
        .order_by(BillingEvent.created_at.desc(), BillingEvent.id.desc())
        .limit(50)
        .all()
    )
    return jsonify({
        "user": {
            "id": user.id,
            "email": user.email,
            "subscriptionTier": user.subscription_tier,
            "subscriptionExpiresAt": iso(user.subscription_expires_at),
        },
        "status": get_subscription_status(services, user_id),
        "transactions": [tx.to_dict() for tx in get_payment_history(services, user_id)],
        "events": [
            {
                "id": ev.id,
                "type": ev.event_type,
                "data": ev.event_data,
                "processed": ev.processed,
                "processingError": ev.processing_error,
                "createdAt": iso(ev.created_at),
            }
            for ev in events
        ],
    })


@bp.post("/users/<int:user_id>/actions")
def user_action(user_id: int):
    _get_user_or_404(user_id)
    payload = request.get_json(silent=True) or {}

    action = (payload.get("action") or "").strip()
    if action not in ADMIN_ACTIONS:
        return jsonify({"error": "invalid_action", "allowed": list(ADMIN_ACTIONS)}), 400
    platform = (payload.get("platform") or PLATFORM_PAYSTACK).strip()
    if platform not in PLATFORMS:
        return jsonify({"error": "invalid_platform", "allowed": list(PLATFORMS)}), 400
    period = (payload.get("period") or PERIOD_MONTHLY).strip()
    if period not in BILLING_PERIODS:
        return jsonify({"error": "invalid_period", "allowed": list(BILLING_PERIODS)}), 400
    reason = (payload.get("reason") or "").strip() or None
    if not reason:
        return jsonify({"error": "reason is required"}), 400

    hints = {}
    if payload.get("productId"):
        hints["product_id"] = payload["productId"]

    result = admin_action(
        get_billing(), user_id, action,
        admin_id=current_user.id,
        reason=reason,
        reference=(payload.get("reference") or "").strip() or None,
        platform=platform,
        period=period,
        **hints,
    )
    return jsonify(result), 200
