"""Subscription commands and queries used by the HTTP, webhook and CLI surfaces."""
import json
from typing import Optional

from flask import current_app

from app.billing.exceptions import BillingError, SubscriptionNotFound, UserNotFound
from app.billing.plans import get_default_plan, plan_for_period
from app.billing.state_machine import (
    cancel_changes,
    current_state,
    days_until,
    has_access,
    next_billing_date,
    payment_changes,
    restart_trial_changes,
)
from app.billing.trials import check_trial_expiration, start_free_trial
from app.billing.verifiers import PLATFORM_PAYSTACK
from app.models.subscription_plan import PERIOD_MONTHLY
from app.models.user_subscription import STATUS_TRIAL
from app.utils.helpers import iso

ADMIN_ACTIONS = ("activate_subscription", "cancel_subscription", "restart_trial", "reconcile_payment")


def get_subscription(services, user_id: int):
    return services.store.get_subscription(user_id)


def has_active_subscription(services, user_id: int) -> bool:
    check_trial_expiration(services, user_id)
    return has_access(services.store.get_subscription(user_id), services.clock())


def get_subscription_status(services, user_id: int) -> dict:
    check_trial_expiration(services, user_id)
    now = services.clock()
    subscription = services.store.get_subscription(user_id)
    state = current_state(subscription)
    status = {
        "hasSubscription": subscription is not None,
        "status": state,
        "hasAccess": has_access(subscription, now),
        "canStartTrial": subscription is None,
        "trialDaysRemaining": 0,
        "daysUntilBilling": 0,
        "plan": None,
        "platform": None,
        "subscription": None,
    }
    if subscription is None:
        return status
    if state == STATUS_TRIAL:
        status["trialDaysRemaining"] = days_until(subscription.trial_end_date, now)
    status["daysUntilBilling"] = days_until(subscription.next_billing_date, now)
    status["plan"] = subscription.plan.to_dict() if subscription.plan else None
    status["platform"] = subscription.platform
    status["subscription"] = subscription.to_dict()
    return status


def cancel_subscription(services, user_id: int, reason: Optional[str] = None, source: str = "user"):
    store = services.store
    now = services.clock()
    with store.unit_of_work():
        subscription = store.get_subscription(user_id, lock=True)
        if subscription is None:
            raise SubscriptionNotFound(f"No subscription for user {user_id}")
        store.apply_changes(subscription, user_id, cancel_changes(subscription, now))
        user = store.get_user(user_id)
        if user is not None:
            store.sync_user_access(user, subscription)

    services.event_logger.log(user_id, "subscription_cancelled", {
        "reason": reason,
        "source": source,
        "access_until": iso(subscription.next_billing_date),
    })
    return subscription


def get_payment_history(services, user_id: int, limit: int = 50):
    return services.store.payment_history(user_id, limit=limit)


def record_payment_failure(services, user_id: int, reference: Optional[str], reason: Optional[str],
                           amount: Optional[int] = None, currency: Optional[str] = None,
                           platform: str = PLATFORM_PAYSTACK) -> None:
    """A failed renewal is informational: no state changes, an event and a user notice."""
    current_app.logger.warning(json.dumps({
        "event": "payment_failed",
        "user_id": user_id,
        "platform": platform,
        "reference": reference,
        "reason": reason,
    }))
    services.event_logger.log(user_id, "payment_failed", {
        "platform": platform,
        "reference": reference,
        "reason": reason,
        "amount": amount,
        "currency": currency,
    })
    try:
        services.notifier.notify_user(user_id, "payment_failed", reason=reason)
    except Exception:
        current_app.logger.exception("payment_failed_notice_failed")


def _activate_without_payment(services, user_id: int, period: str):
    store = services.store
    now = services.clock()
    plan = plan_for_period(period)
    with store.unit_of_work():
        user = store.get_user(user_id, lock=True)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        subscription = store.get_subscription(user_id, lock=True)
        changes = payment_changes(
            subscription, plan=plan, amount=0, now=now,
            next_billing=next_billing_date(now, plan.billing_period),
        )
        subscription = store.apply_changes(subscription, user_id, changes)
        store.sync_user_access(user, subscription, plan)
    return subscription


def _restart_trial(services, user_id: int):
    store = services.store
    now = services.clock()
    plan = get_default_plan()
    with store.unit_of_work():
        user = store.get_user(user_id, lock=True)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        subscription = store.get_subscription(user_id, lock=True)
        subscription = store.apply_changes(subscription, user_id, restart_trial_changes(subscription, plan, now))
        store.sync_user_access(user, subscription, plan)
    return subscription


def admin_action(services, user_id: int, action: str, admin_id: Optional[int], reason: Optional[str] = None,
                 reference: Optional[str] = None, platform: str = PLATFORM_PAYSTACK,
                 period: str = PERIOD_MONTHLY, **hints) -> dict:
    """Support-driven recovery. Runs the same primitives as the automated path."""
    if action not in ADMIN_ACTIONS:
        raise BillingError(f"Unknown admin action {action!r}", allowed=ADMIN_ACTIONS)

    outcome = None
    if action == "activate_subscription":
        subscription = _activate_without_payment(services, user_id, period)
    elif action == "cancel_subscription":
        subscription = cancel_subscription(services, user_id, reason=reason, source="admin")
    elif action == "restart_trial":
        if services.store.get_subscription(user_id) is None:
            subscription = start_free_trial(services, user_id)
        else:
            subscription = _restart_trial(services, user_id)
    else:
        if not reference:
            raise BillingError("reconcile_payment requires a transaction reference")
        result = services.engine.reconcile(user_id, platform, reference, **hints)
        subscription, outcome = result.subscription, result.outcome

    services.event_logger.log(user_id, f"admin_action_{action}", {
        "admin_id": admin_id,
        "reason": reason,
        "reference": reference,
        "platform": platform if action == "reconcile_payment" else None,
        "outcome": outcome,
    })
    current_app.logger.info(json.dumps({
        "event": "admin_action",
        "action": action,
        "user_id": user_id,
        "admin_id": admin_id,
        "outcome": outcome,
    }))
    return {
        "action": action,
        "outcome": outcome,
        "subscription": subscription.to_dict() if subscription is not None else None,
    }
