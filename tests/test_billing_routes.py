from app.models import PaymentTransaction, UserSubscription


def test_plans_are_public(client):
    resp = client.get("/billing/plans")
    assert resp.status_code == 200
    names = [p["name"] for p in resp.get_json()["plans"]]
    assert names == ["premium_monthly", "premium_yearly"]


def test_endpoints_require_login(client):
    assert client.get("/billing/status").status_code == 401
    assert client.post("/billing/start-trial").status_code == 401
    assert client.post("/billing/paystack/subscription", json={"reference": "r"}).status_code == 401


def test_start_trial_then_conflict(client, clock, make_user, login):
    login(make_user())
    resp = client.post("/billing/start-trial")
    assert resp.status_code == 201
    assert resp.get_json()["subscription"]["status"] == "trial"

    again = client.post("/billing/start-trial")
    assert again.status_code == 409
    assert again.get_json()["error"] == "trial_already_used"


def test_status_endpoint(client, clock, make_user, login):
    login(make_user())
    body = client.get("/billing/status").get_json()
    assert body["status"] == "none"
    assert body["canStartTrial"] is True


def test_paystack_subscription_reconciles_and_replays(app, client, gateways, clock, make_user, login):
    uid = make_user()
    login(uid)
    gateways["paystack"].succeed("ref_web", amount=4900)

    resp = client.post("/billing/paystack/subscription", json={"reference": "ref_web"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["outcome"] == "activated"
    assert body["subscription"]["status"] == "active"
    assert body["subscription"]["totalPaid"] == 4900

    replay = client.post("/billing/paystack/subscription", json={"reference": "ref_web"})
    assert replay.status_code == 200
    assert replay.get_json()["duplicate"] is True
    assert replay.get_json()["message"] == "Payment already processed"

    with app.app_context():
        assert PaymentTransaction.query.count() == 1


def test_paystack_subscription_sets_up_recurring_plan(client, gateways, clock, make_user, login):
    created = []
    gateways["paystack"].create_subscription = lambda email, plan_code: created.append((email, plan_code)) or {}
    login(make_user(email="payer@example.com"))
    gateways["paystack"].succeed("ref_rec", amount=4900)

    resp = client.post("/billing/paystack/subscription", json={"reference": "ref_rec", "planCode": "PLN_m"})
    assert resp.status_code == 200
    assert created == [("payer@example.com", "PLN_m")]


def test_declined_payment_is_402_and_retryable(client, gateways, clock, make_user, login):
    login(make_user())
    gateways["paystack"].fail("ref_no", error="Declined")
    resp = client.post("/billing/paystack/subscription", json={"reference": "ref_no"})
    assert resp.status_code == 402
    body = resp.get_json()
    assert body["error"] == "verification_failed"
    assert body["retryable"] is True


def test_commit_failure_shows_generic_message(client, gateways, clock, make_user, login, monkeypatch):
    from app.billing.store import BillingStore

    def _boom(self, *args, **kwargs):
        raise RuntimeError("deadlock detected")

    monkeypatch.setattr(BillingStore, "insert_transaction_if_absent", _boom)
    login(make_user())
    gateways["paystack"].succeed("ref_x", amount=4900)
    resp = client.post("/billing/paystack/subscription", json={"reference": "ref_x"})
    assert resp.status_code == 500
    body = resp.get_json()
    assert body["flagged"] is True
    assert body["message"].startswith("We're resolving a billing issue")
    assert "deadlock" not in resp.get_data(as_text=True)


def test_paystack_verify_is_read_only(app, client, gateways, clock, make_user, login):
    login(make_user())
    gateways["paystack"].succeed("ref_v", amount=53000)
    body = client.post("/billing/paystack/verify", json={"reference": "ref_v"}).get_json()
    assert body == {"valid": True, "amount": 53000, "currency": "ZAR", "error": None}
    with app.app_context():
        assert UserSubscription.query.count() == 0


def test_google_play_purchase(client, gateways, clock, make_user, login):
    login(make_user())
    gateways["google_play"].succeed("tok_1", amount=4900, order_id="GPA.9")
    resp = client.post("/billing/google-play/purchase",
                       json={"purchaseToken": "tok_1", "productId": "simple_slips_premium_monthly"})
    assert resp.status_code == 200
    assert resp.get_json()["subscription"]["platform"] == "google_play"
    assert gateways["google_play"].calls[0][1]["product_id"] == "simple_slips_premium_monthly"


def test_google_play_purchase_requires_fields(client, make_user, login):
    login(make_user())
    resp = client.post("/billing/google-play/purchase", json={"purchaseToken": "tok_1"})
    assert resp.status_code == 400


def test_apple_purchase(client, gateways, clock, make_user, login):
    login(make_user())
    gateways["apple"].succeed("receipt", amount=None, transaction_id="7001",
                              product_id="simple_slips_premium_monthly")
    resp = client.post("/billing/apple/purchase", json={"receiptData": "receipt"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["subscription"]["platform"] == "apple"
    assert body["subscription"]["totalPaid"] == 4900


def test_cancel_and_transactions(client, gateways, clock, make_user, login):
    login(make_user())
    gateways["paystack"].succeed("ref_c", amount=4900)
    client.post("/billing/paystack/subscription", json={"reference": "ref_c"})

    resp = client.post("/billing/cancel", json={"reason": "moving"})
    assert resp.status_code == 200
    assert resp.get_json()["subscription"]["status"] == "cancelled"

    again = client.post("/billing/cancel")
    assert again.status_code == 409

    txs = client.get("/billing/transactions").get_json()["transactions"]
    assert [t["platformTransactionId"] for t in txs] == ["ref_c"]


def test_subscription_endpoint(client, clock, make_user, login):
    login(make_user())
    assert client.get("/billing/subscription").get_json() == {"subscription": None}
    client.post("/billing/start-trial")
    assert client.get("/billing/subscription").get_json()["subscription"]["status"] == "trial"
