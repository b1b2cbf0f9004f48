"""Subscription lifecycle rules.

Everything here is pure: functions receive a subscription snapshot (a
``UserSubscription`` or ``None``) plus the current time and return decisions or
the field changes to apply. Persistence lives in ``app.billing.store``.

    none ──start_trial──▶ trial ──verified_payment──▶ active ◀─┐
                            │                          │  │     │ renewal
                            └─(now > trial_end)─▶ expired  └─────┘
                                                       │
    active ──cancel──▶ cancelled ──verified_payment──▶ active (reactivation)
"""
import math
from datetime import datetime
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from app.billing.exceptions import InvalidTransition, TrialAlreadyUsed
from app.models.subscription_plan import PERIOD_MONTHLY, PERIOD_YEARLY
from app.models.user import TIER_FREE, TIER_TRIAL
from app.models.user_subscription import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_TRIAL,
)

STATE_NONE = "none"

OUTCOME_ACTIVATED = "activated"
OUTCOME_RENEWED = "renewed"
OUTCOME_REACTIVATED = "reactivated"
OUTCOME_DUPLICATE = "duplicate"

_PAYABLE = {STATE_NONE, STATUS_TRIAL, STATUS_ACTIVE, STATUS_CANCELLED, STATUS_EXPIRED}


def current_state(subscription) -> str:
    return subscription.status if subscription is not None else STATE_NONE


def trial_has_lapsed(subscription, now: datetime) -> bool:
    return (
        subscription is not None
        and subscription.status == STATUS_TRIAL
        and subscription.trial_end_date is not None
        and now > subscription.trial_end_date
    )


def has_access(subscription, now: datetime) -> bool:
    state = current_state(subscription)
    if state == STATUS_ACTIVE:
        return True
    if state == STATUS_TRIAL:
        return subscription.trial_end_date is not None and now <= subscription.trial_end_date
    if state == STATUS_CANCELLED:
        return subscription.next_billing_date is not None and now < subscription.next_billing_date
    return False


def days_until(target: Optional[datetime], now: datetime) -> int:
    if target is None:
        return 0
    return max(0, math.ceil((target - now).total_seconds() / 86400))


# ---- calendar / plan heuristics ----

def next_billing_date(start: datetime, period: str) -> datetime:
    """+1 calendar month or year; relativedelta clamps to the last valid day (Jan 31 -> Feb 28/29)."""
    if period == PERIOD_YEARLY:
        return start + relativedelta(years=1)
    if period == PERIOD_MONTHLY:
        return start + relativedelta(months=1)
    raise ValueError(f"unknown billing period {period!r}")


def resolve_billing_period(amount: int, yearly_threshold: int) -> str:
    # Amount-based inference mirrors how the card gateway plans are priced;
    # it ignores any plan code the gateway may send.
    return PERIOD_YEARLY if amount >= yearly_threshold else PERIOD_MONTHLY


# ---- transitions ----

def assert_can_start_trial(subscription) -> None:
    if subscription is not None:
        raise TrialAlreadyUsed(
            "User already has a subscription record; trials are one per account",
            status=subscription.status,
        )


def trial_changes(plan, now: datetime) -> dict:
    return {
        "plan_id": plan.id,
        "status": STATUS_TRIAL,
        "trial_start_date": now,
        "trial_end_date": now + relativedelta(days=plan.trial_days),
        "total_paid": 0,
    }


def restart_trial_changes(subscription, plan, now: datetime) -> dict:
    """Operator-only: put an existing row back into trial. total_paid is left alone."""
    if subscription is None:
        return trial_changes(plan, now)
    changes = trial_changes(plan, now)
    del changes["total_paid"]
    changes["cancelled_at"] = None
    return changes


def classify_payment(subscription) -> str:
    state = current_state(subscription)
    if state not in _PAYABLE:
        raise InvalidTransition(f"Cannot apply a payment to a subscription in state {state!r}")
    if state == STATUS_ACTIVE:
        return OUTCOME_RENEWED
    if state == STATUS_CANCELLED:
        return OUTCOME_REACTIVATED
    return OUTCOME_ACTIVATED


def payment_changes(subscription, *, plan, amount: int, now: datetime, next_billing: datetime) -> dict:
    """Field changes for ``verified_payment``; total_paid only ever grows."""
    if amount < 0:
        raise InvalidTransition("Payment amount cannot be negative")
    outcome = classify_payment(subscription)
    previous_total = (subscription.total_paid or 0) if subscription is not None else 0
    keep_start = outcome == OUTCOME_RENEWED and subscription.subscription_start_date is not None
    return {
        "plan_id": plan.id,
        "status": STATUS_ACTIVE,
        "subscription_start_date": subscription.subscription_start_date if keep_start else now,
        "next_billing_date": next_billing,
        "cancelled_at": None,
        "total_paid": previous_total + amount,
        "last_payment_date": now,
    }


def cancel_changes(subscription, now: datetime) -> dict:
    state = current_state(subscription)
    if state != STATUS_ACTIVE:
        raise InvalidTransition(f"Only active subscriptions can be cancelled (state={state!r})")
    # next_billing_date is kept: it bounds the grace period
    return {"status": STATUS_CANCELLED, "cancelled_at": now}


def expiry_changes(subscription, now: datetime) -> Optional[dict]:
    if not trial_has_lapsed(subscription, now):
        return None
    return {"status": STATUS_EXPIRED}


def access_flags(subscription, plan=None) -> Tuple[str, Optional[datetime]]:
    """Values for users.subscription_tier / users.subscription_expires_at."""
    state = current_state(subscription)
    if state == STATUS_TRIAL:
        return TIER_TRIAL, subscription.trial_end_date
    if state in (STATUS_ACTIVE, STATUS_CANCELLED):
        period = (plan or subscription.plan).billing_period
        return period, subscription.next_billing_date
    return TIER_FREE, None
