from flask import Blueprint, request, current_app, jsonify
from flask_login import login_required, current_user
from app.extensions import limiter
from app.billing import get_billing
from app.billing import service as billing_service
from app.billing.exceptions import BillingError
from app.billing.plans import get_plans
from app.billing.trials import start_free_trial
from app.billing.verifiers import PLATFORM_APPLE, PLATFORM_GOOGLE_PLAY, PLATFORM_PAYSTACK

billing_bp = Blueprint("billing", __name__)


@billing_bp.errorhandler(BillingError)
def _billing_error(e: BillingError):
    current_app.logger.warning(
        "billing.%s", e.code,
        extra={"user_id": getattr(current_user, "id", None), "path": request.path, "detail": e.message},
    )
    return jsonify(e.to_dict()), e.http_status


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


def _reconciled(result):
    payload = result.to_dict()
    payload["message"] = (
        "Payment already processed" if result.duplicate else "Subscription activated successfully"
    )
    return jsonify(payload), 200


@billing_bp.get("/plans")
def plans():
    return jsonify({"plans": [p.to_dict() for p in get_plans()]})


@billing_bp.get("/subscription")
@login_required
def subscription():
    sub = billing_service.get_subscription(get_billing(), current_user.id)
    return jsonify({"subscription": sub.to_dict() if sub else None})


@billing_bp.get("/status")
@login_required
def status():
    return jsonify(billing_service.get_subscription_status(get_billing(), current_user.id))


@billing_bp.post("/start-trial")
@limiter.limit("5/minute")
@login_required
def start_trial():
    sub = start_free_trial(get_billing(), current_user.id)
    return jsonify({"message": "Free trial started", "subscription": sub.to_dict()}), 201


@billing_bp.post("/paystack/subscription")
@limiter.limit("10/minute")
@login_required
def paystack_subscription():
    """
    Reconcile a completed Paystack checkout. With ``planCode`` the gateway is
    also asked to set up the recurring subscription for this customer.
    """
    data = _json_body()
    reference = (data.get("reference") or "").strip()
    if not reference:
        return jsonify({"error": "reference is required"}), 400

    services = get_billing()
    result = services.engine.reconcile(current_user.id, PLATFORM_PAYSTACK, reference)

    plan_code = (data.get("planCode") or "").strip()
    if plan_code and not result.duplicate:
        try:
            services.verifiers[PLATFORM_PAYSTACK].create_subscription(current_user.email, plan_code)
        except BillingError:
            # The payment is already provisioned; recurring setup can be retried from the dashboard
            current_app.logger.exception(
                "billing.paystack.subscription_create_failed",
                extra={"user_id": current_user.id, "plan_code": plan_code},
            )
    return _reconciled(result)


@billing_bp.post("/paystack/verify")
@limiter.limit("20/minute")
@login_required
def paystack_verify():
    """Read-only status of a Paystack reference; nothing is provisioned."""
    reference = (_json_body().get("reference") or "").strip()
    if not reference:
        return jsonify({"error": "reference is required"}), 400
    verified = get_billing().verifiers[PLATFORM_PAYSTACK].verify(reference)
    return jsonify({
        "valid": verified.valid,
        "amount": verified.amount,
        "currency": verified.currency,
        "error": verified.error,
    })


@billing_bp.post("/google-play/purchase")
@limiter.limit("10/minute")
@login_required
def google_play_purchase():
    data = _json_body()
    token = (data.get("purchaseToken") or "").strip()
    product_id = (data.get("productId") or "").strip()
    if not token or not product_id:
        return jsonify({"error": "purchaseToken and productId are required"}), 400
    result = get_billing().engine.reconcile(
        current_user.id, PLATFORM_GOOGLE_PLAY, token,
        product_id=product_id,
        order_id=data.get("orderId"),
        subscription_id=data.get("subscriptionId"),
    )
    return _reconciled(result)


@billing_bp.post("/apple/purchase")
@limiter.limit("10/minute")
@login_required
def apple_purchase():
    data = _json_body()
    receipt = (data.get("receiptData") or "").strip()
    if not receipt:
        return jsonify({"error": "receiptData is required"}), 400
    result = get_billing().engine.reconcile(
        current_user.id, PLATFORM_APPLE, receipt,
        product_id=data.get("productId"),
        transaction_id=data.get("transactionId"),
    )
    return _reconciled(result)


@billing_bp.post("/cancel")
@login_required
def cancel():
    reason = _json_body().get("reason")
    sub = billing_service.cancel_subscription(get_billing(), current_user.id, reason=reason)
    return jsonify({"message": "Subscription cancelled", "subscription": sub.to_dict()})


@billing_bp.get("/transactions")
@login_required
def transactions():
    limit = min(request.args.get("limit", default=50, type=int) or 50, 200)
    rows = billing_service.get_payment_history(get_billing(), current_user.id, limit=limit)
    return jsonify({"transactions": [tx.to_dict() for tx in rows]})
