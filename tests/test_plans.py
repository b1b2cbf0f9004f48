import pytest
from sqlalchemy.exc import IntegrityError

from app.billing.exceptions import PlanNotFound
from app.billing.plans import (
    get_default_plan,
    get_plan_by_name,
    get_plans,
    plan_for_period,
    plan_for_product,
    seed_subscription_plans,
)
from app.extensions import db
from app.models import PaymentTransaction, SubscriptionPlan


def test_seed_does_not_duplicate_or_overwrite(ctx):
    plan = get_plan_by_name("premium_monthly")
    plan.price = 5900
    db.session.commit()

    assert seed_subscription_plans() == []
    assert SubscriptionPlan.query.count() == 2
    assert get_plan_by_name("premium_monthly").price == 5900


def test_catalog_lookups(ctx):
    assert [p.name for p in get_plans()] == ["premium_monthly", "premium_yearly"]
    assert get_default_plan().name == "premium_monthly"
    assert plan_for_period("yearly").name == "premium_yearly"
    assert plan_for_product("google_play", "simple_slips_premium_yearly").name == "premium_yearly"
    assert plan_for_product("apple", "simple_slips_premium_monthly").name == "premium_monthly"
    assert plan_for_product("paystack", "simple_slips_premium_monthly") is None
    assert plan_for_product("apple", "unknown_sku") is None


def test_inactive_plans_hidden(ctx):
    get_plan_by_name("premium_yearly").is_active = False
    db.session.commit()
    assert [p.name for p in get_plans()] == ["premium_monthly"]
    assert len(get_plans(active_only=False)) == 2


def test_missing_plan_raises(ctx):
    with pytest.raises(PlanNotFound):
        get_plan_by_name("enterprise")


def test_transaction_reference_is_unique_per_platform(ctx, make_user):
    uid = make_user()
    for platform in ("paystack", "apple"):
        db.session.add(PaymentTransaction(
            user_id=uid, platform=platform, platform_transaction_id="T1",
            amount=4900, currency="ZAR", status="completed",
        ))
    db.session.commit()

    db.session.add(PaymentTransaction(
        user_id=uid, platform="paystack", platform_transaction_id="T1",
        amount=4900, currency="ZAR", status="completed",
    ))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()
