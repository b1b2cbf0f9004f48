import hmac
import hashlib
import json
from flask import request, jsonify, abort, current_app
from . import bp
from app.extensions import csrf
from app.billing import get_billing
from app.billing.exceptions import (
    InvalidTransition,
    PaymentOwnershipMismatch,
    ReconciliationCommitError,
    SubscriptionNotFound,
    VerificationFailed,
)
from app.billing.service import cancel_subscription, record_payment_failure
from app.billing.verifiers import PLATFORM_PAYSTACK
from app.models import User
from app.utils.helpers import iso


def _valid_signature(raw_body: bytes, sig: str) -> bool:
    secret = current_app.config.get("PAYSTACK_SECRET_KEY")
    if not secret or not sig:
        return False
    mac = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(mac, sig)


def _user_for(data: dict):
    email = ((data.get("customer") or {}).get("email") or "").strip().lower()
    if not email:
        return None
    return User.query.filter_by(email=email).first()


def _log(event: str, **fields):
    current_app.logger.info(json.dumps({"event": event, **fields}))


# ----- Paystack Webhook (recurring card gateway) -----
@csrf.exempt
@bp.post("/paystack")
def paystack_webhook():
    """
    Paystack → /webhooks/paystack
    Verifies the HMAC-SHA512 signature, then hands the event to the billing core.
    Redelivery is safe: reconciliation is idempotent on the transaction reference.
    """
    raw = request.get_data(cache=True, as_text=False) or b""
    if not _valid_signature(raw, request.headers.get("x-paystack-signature", "")):
        _log("paystack_webhook_rejected", reason="invalid_signature")
        abort(401)

    try:
        payload = json.loads(raw.decode("utf-8"))
    except ValueError:
        return jsonify({"error": "malformed_event"}), 400

    ev_type = payload.get("event") or ""
    data = payload.get("data") or {}
    user = _user_for(data)
    _log("paystack_webhook", type=ev_type, reference=data.get("reference"), user_id=getattr(user, "id", None))

    if ev_type not in ("charge.success", "subscription.disable", "invoice.payment_failed"):
        return jsonify({"ok": True, "ignored": ev_type}), 200
    if user is None:
        # Nothing to attach it to; acknowledging stops redelivery of an event we can never apply
        current_app.logger.warning(json.dumps({"event": "paystack_webhook_unknown_customer", "type": ev_type}))
        return jsonify({"ok": True, "ignored": "unknown_customer"}), 200

    services = get_billing()

    if ev_type == "charge.success":
        reference = data.get("reference")
        if not reference:
            return jsonify({"error": "malformed_event"}), 400
        try:
            result = services.engine.reconcile(user.id, PLATFORM_PAYSTACK, reference)
        except VerificationFailed as e:
            # Non-2xx so Paystack redelivers; the gateway may not have settled yet
            return jsonify(e.to_dict()), 502
        except (ReconciliationCommitError, PaymentOwnershipMismatch) as e:
            # Operators were alerted; redelivery would hit the same fault, so acknowledge
            return jsonify({"ok": False, **e.to_dict()}), 200
        return jsonify({"ok": True, "outcome": result.outcome, "duplicate": result.duplicate}), 200

    if ev_type == "subscription.disable":
        try:
            sub = cancel_subscription(services, user.id, reason="gateway_disabled", source="paystack_webhook")
        except (SubscriptionNotFound, InvalidTransition) as e:
            _log("paystack_webhook_noop", type=ev_type, user_id=user.id, reason=e.code)
            return jsonify({"ok": True, "ignored": e.code}), 200
        services.notifier.notify_user(user.id, "subscription_disabled",
                                      access_until=iso(sub.next_billing_date))
        return jsonify({"ok": True, "status": sub.status}), 200

    # invoice.payment_failed
    subscription = data.get("subscription") or {}
    record_payment_failure(
        services, user.id,
        reference=data.get("invoice_code") or subscription.get("subscription_code"),
        reason=data.get("description") or (data.get("transaction") or {}).get("gateway_response") or "payment_failed",
        amount=data.get("amount"),
        currency=data.get("currency"),
    )
    return jsonify({"ok": True}), 200
