"""Free trial lifecycle: one trial per account, expired lazily on access checks."""
import json

from flask import current_app

from app.billing.exceptions import UserNotFound
from app.billing.plans import get_default_plan
from app.billing.state_machine import assert_can_start_trial, expiry_changes, trial_changes
from app.utils.helpers import iso


def start_free_trial(services, user_id: int):
    """Create the user's one and only trial. Raises ``TrialAlreadyUsed`` if any row exists."""
    store = services.store
    now = services.clock()
    plan = get_default_plan()
    with store.unit_of_work():
        user = store.get_user(user_id, lock=True)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        subscription = store.get_subscription(user_id, lock=True)
        assert_can_start_trial(subscription)
        subscription = store.apply_changes(None, user_id, trial_changes(plan, now))
        store.sync_user_access(user, subscription, plan)

    current_app.logger.info(json.dumps({"event": "trial_started", "user_id": user_id, "plan": plan.name}))
    services.event_logger.log(user_id, "trial_started", {
        "plan": plan.name,
        "trial_end_date": iso(subscription.trial_end_date),
    })
    return subscription


def check_trial_expiration(services, user_id: int) -> bool:
    """Flip a lapsed trial to ``expired``. Returns True only when this call expired it."""
    store = services.store
    now = services.clock()
    # Lock only when there is something to expire
    if expiry_changes(store.get_subscription(user_id), now) is None:
        return False
    with store.unit_of_work():
        subscription = store.get_subscription(user_id, lock=True)
        changes = expiry_changes(subscription, now)
        if changes is None:
            return False
        store.apply_changes(subscription, user_id, changes)
        user = store.get_user(user_id)
        if user is not None:
            store.sync_user_access(user, subscription)

    services.event_logger.log(user_id, "trial_expired", {"trial_end_date": iso(subscription.trial_end_date)})
    return True
