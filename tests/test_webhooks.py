import hashlib
import hmac
import json

from app.models import BillingEvent, PaymentTransaction, UserSubscription

SECRET = "sk_test_secret"


def _post(client, payload, secret=SECRET):
    body = json.dumps(payload).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return client.post(
        "/webhooks/paystack",
        data=body,
        headers={"x-paystack-signature": sig, "Content-Type": "application/json"},
    )


def _charge(reference, email="user@example.com", amount=4900):
    return {
        "event": "charge.success",
        "data": {"reference": reference, "amount": amount, "customer": {"email": email}},
    }


def test_bad_signature_rejected(app, client, gateways, make_user):
    make_user()
    resp = _post(client, _charge("ref_1"), secret="wrong")
    assert resp.status_code == 401
    assert gateways["paystack"].calls == []


def test_charge_success_reconciles_once(app, client, gateways, clock, make_user):
    uid = make_user()
    gateways["paystack"].succeed("ref_1", amount=4900)

    first = _post(client, _charge("ref_1"))
    assert first.status_code == 200
    assert first.get_json() == {"ok": True, "outcome": "activated", "duplicate": False}

    redelivered = _post(client, _charge("ref_1"))
    assert redelivered.status_code == 200
    assert redelivered.get_json()["duplicate"] is True

    with app.app_context():
        assert PaymentTransaction.query.count() == 1
        assert UserSubscription.query.filter_by(user_id=uid).one().total_paid == 4900


def test_customer_email_match_is_case_insensitive(app, client, gateways, clock, make_user):
    make_user(email="mixed@example.com")
    gateways["paystack"].succeed("ref_1", amount=4900)
    resp = _post(client, _charge("ref_1", email="MIXED@Example.com"))
    assert resp.get_json()["outcome"] == "activated"


def test_verification_failure_asks_gateway_to_retry(client, gateways, clock, make_user):
    make_user()
    gateways["paystack"].fail("ref_1", error="Transaction not found")
    resp = _post(client, _charge("ref_1"))
    assert resp.status_code == 502
    assert resp.get_json()["retryable"] is True


def test_commit_failure_is_acknowledged_and_flagged(app, client, gateways, clock, make_user, monkeypatch):
    from app.billing.store import BillingStore

    def _boom(self, *args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(BillingStore, "sync_user_access", _boom)
    make_user()
    gateways["paystack"].succeed("ref_1", amount=4900)
    resp = _post(client, _charge("ref_1"))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is False
    assert body["flagged"] is True
    with app.app_context():
        assert UserSubscription.query.count() == 0


def test_unknown_customer_is_acknowledged(client, gateways, clock):
    resp = _post(client, _charge("ref_1", email="ghost@example.com"))
    assert resp.status_code == 200
    assert resp.get_json()["ignored"] == "unknown_customer"
    assert gateways["paystack"].calls == []


def test_unhandled_event_is_acknowledged(client, make_user):
    make_user()
    resp = _post(client, {"event": "transfer.success", "data": {}})
    assert resp.status_code == 200
    assert resp.get_json()["ignored"] == "transfer.success"


def test_subscription_disable_cancels_and_notifies(app, client, services, gateways, clock, make_user, outbox):
    uid = make_user()
    gateways["paystack"].succeed("ref_1", amount=4900)
    _post(client, _charge("ref_1"))

    resp = _post(client, {"event": "subscription.disable",
                          "data": {"subscription_code": "SUB_1", "customer": {"email": "user@example.com"}}})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "cancelled"
    with app.app_context():
        sub = UserSubscription.query.filter_by(user_id=uid).one()
        assert sub.status == "cancelled"
        ev = BillingEvent.query.filter_by(event_type="subscription_cancelled").one()
        assert ev.event_data["source"] == "paystack_webhook"
    assert any("cancelled" in m.subject and m.recipients == ["user@example.com"] for m in outbox)


def test_subscription_disable_without_active_subscription(app, client, services, clock, make_user):
    make_user()
    resp = _post(client, {"event": "subscription.disable", "data": {"customer": {"email": "user@example.com"}}})
    assert resp.status_code == 200
    assert resp.get_json()["ignored"] == "subscription_not_found"


def test_invoice_payment_failed_records_event(app, client, clock, make_user, outbox):
    make_user()
    resp = _post(client, {
        "event": "invoice.payment_failed",
        "data": {
            "invoice_code": "INV_9",
            "amount": 4900,
            "currency": "ZAR",
            "description": "Insufficient funds",
            "customer": {"email": "user@example.com"},
            "subscription": {"subscription_code": "SUB_1"},
        },
    })
    assert resp.status_code == 200
    with app.app_context():
        ev = BillingEvent.query.filter_by(event_type="payment_failed").one()
        assert ev.event_data["reference"] == "INV_9"
        assert ev.event_data["reason"] == "Insufficient funds"
    assert any("didn't go through" in m.subject for m in outbox)


def test_reference_claimed_by_another_user_still_provisions_the_payer(app, client, gateways, clock, make_user, login):
    alice = make_user(email="alice@example.com")
    mallory = make_user(email="mallory@example.com")
    gateways["paystack"].succeed("ref-A", amount=4900, customer_email="alice@example.com")

    login(mallory)
    claim = client.post("/billing/paystack/subscription", json={"reference": "ref-A"})
    assert claim.status_code == 409
    assert claim.get_json()["error"] == "payment_owner_mismatch"

    resp = _post(client, _charge("ref-A", email="alice@example.com"))
    assert resp.get_json() == {"ok": True, "outcome": "activated", "duplicate": False}
    with app.app_context():
        assert UserSubscription.query.filter_by(user_id=alice).one().status == "active"
        assert UserSubscription.query.filter_by(user_id=mallory).count() == 0


def test_charge_for_reference_owned_elsewhere_is_acknowledged_not_duplicate(app, client, services, gateways, clock,
                                                                           make_user, outbox):
    alice = make_user(email="alice@example.com")
    other = make_user(email="other@example.com")
    gateways["paystack"].succeed("ref-A", amount=4900)
    with app.app_context():
        services.engine.reconcile(other, "paystack", "ref-A")

    resp = _post(client, _charge("ref-A", email="alice@example.com"))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is False
    assert body["error"] == "payment_owner_mismatch"
    assert any("claimed by two accounts" in m.subject for m in outbox)
    with app.app_context():
        assert UserSubscription.query.filter_by(user_id=alice).count() == 0
