import json

from app.extensions import db
from app.models import BillingEvent, SubscriptionPlan, User, UserSubscription


def test_seed_plans_is_idempotent(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["billing", "seed-plans"])
    assert result.exit_code == 0
    assert "already up to date" in result.output
    with app.app_context():
        assert SubscriptionPlan.query.count() == 2


def test_activate_and_status_by_email(app, clock, make_user):
    make_user(email="cli@example.com")
    runner = app.test_cli_runner()

    result = runner.invoke(args=["billing", "activate", "cli@example.com", "--period", "yearly", "--reason", "comp"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["subscription"]["status"] == "active"

    status = runner.invoke(args=["billing", "status", "cli@example.com"])
    assert json.loads(status.output)["plan"]["name"] == "premium_yearly"


def test_reconcile_command_is_safe_to_repeat(app, gateways, clock, make_user):
    uid = make_user()
    gateways["paystack"].succeed("ref_cli", amount=4900)
    runner = app.test_cli_runner()

    first = runner.invoke(args=["billing", "reconcile", str(uid), "paystack", "ref_cli"])
    second = runner.invoke(args=["billing", "reconcile", str(uid), "paystack", "ref_cli"])
    assert json.loads(first.output)["outcome"] == "activated"
    assert json.loads(second.output)["outcome"] == "duplicate"
    with app.app_context():
        ev = BillingEvent.query.filter_by(event_type="admin_action_reconcile_payment").first()
        assert ev.event_data["reason"] == "manual reconciliation"
        assert ev.event_data["admin_id"] is None


def test_billing_errors_become_click_errors(app, clock, make_user):
    uid = make_user()
    runner = app.test_cli_runner()
    result = runner.invoke(args=["billing", "cancel", str(uid), "--reason", "x"])
    assert result.exit_code == 1
    assert "subscription_not_found" in result.output

    missing = runner.invoke(args=["billing", "status", "nobody@example.com"])
    assert missing.exit_code == 1
    assert "not found" in missing.output


def test_restart_trial_command(app, clock, make_user):
    uid = make_user()
    result = app.test_cli_runner().invoke(args=["billing", "restart-trial", str(uid), "--reason", "support"])
    assert result.exit_code == 0, result.output
    with app.app_context():
        assert UserSubscription.query.one().status == "trial"


def test_users_create(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["users", "create", "--email", "Ops@Example.com", "--password", "pw", "--admin"])
    assert result.exit_code == 0
    with app.app_context():
        user = db.session.query(User).filter_by(email="ops@example.com").one()
        assert user.is_admin is True
        assert user.check_password("pw")

    dup = runner.invoke(args=["users", "create", "--email", "ops@example.com", "--password", "pw"])
    assert dup.exit_code == 1
