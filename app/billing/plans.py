"""Plan catalog: slow-changing reference rows every billing flow reads."""
import json
from typing import List, Optional

from flask import current_app

from app.billing.exceptions import PlanNotFound
from app.extensions import db
from app.models import SubscriptionPlan
from app.models.subscription_plan import PERIOD_MONTHLY, PERIOD_YEARLY

_FEATURES = [
    "Unlimited receipt scanning",
    "AI-powered categorization",
    "Smart search & analytics",
    "Tax insights & deductions",
    "Budget tracking & alerts",
    "Export to PDF & CSV",
    "Cloud storage & sync",
]

DEFAULT_PLANS = [
    {
        "name": "premium_monthly",
        "display_name": "Premium Monthly",
        "description": "Full access to all features, billed monthly.",
        "price": 4900,
        "currency": "ZAR",
        "billing_period": PERIOD_MONTHLY,
        "trial_days": 7,
        "google_play_product_id": "simple_slips_premium_monthly",
        "apple_product_id": "simple_slips_premium_monthly",
        "features": _FEATURES,
    },
    {
        "name": "premium_yearly",
        "display_name": "Premium Yearly",
        "description": "Full access to all features, billed once a year.",
        "price": 53000,
        "currency": "ZAR",
        "billing_period": PERIOD_YEARLY,
        "trial_days": 7,
        "google_play_product_id": "simple_slips_premium_yearly",
        "apple_product_id": "simple_slips_premium_yearly",
        "features": _FEATURES + ["Priority customer support"],
    },
]


def seed_subscription_plans(plans: Optional[List[dict]] = None) -> List[SubscriptionPlan]:
    """Insert any missing catalog rows; existing rows are never modified."""
    created = []
    for spec in plans or DEFAULT_PLANS:
        if SubscriptionPlan.query.filter_by(name=spec["name"]).first():
            continue
        plan = SubscriptionPlan(**spec)
        db.session.add(plan)
        created.append(plan)
    db.session.commit()
    if created:
        current_app.logger.info(json.dumps({
            "event": "plans_seeded",
            "plans": [p.name for p in created],
        }))
    return created


def get_plans(active_only: bool = True) -> List[SubscriptionPlan]:
    q = SubscriptionPlan.query
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(SubscriptionPlan.price.asc()).all()


def get_plan_by_name(name: str) -> SubscriptionPlan:
    plan = SubscriptionPlan.query.filter_by(name=name).first()
    if plan is None:
        raise PlanNotFound(f"Plan {name!r} not found; run `flask billing seed-plans`")
    return plan


def get_default_plan() -> SubscriptionPlan:
    return get_plan_by_name(current_app.config.get("BILLING_DEFAULT_PLAN", "premium_monthly"))


def plan_for_period(period: str) -> SubscriptionPlan:
    plan = (
        SubscriptionPlan.query
        .filter_by(billing_period=period, is_active=True)
        .order_by(SubscriptionPlan.id.asc())
        .first()
    )
    return plan or get_default_plan()


def plan_for_product(platform: str, product_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not product_id:
        return None
    column = {
        "google_play": SubscriptionPlan.google_play_product_id,
        "apple": SubscriptionPlan.apple_product_id,
    }.get(platform)
    if column is None:
        return None
    return SubscriptionPlan.query.filter(column == product_id).first()
