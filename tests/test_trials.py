from datetime import timedelta

import pytest
from app.extensions import db
from app.billing.exceptions import TrialAlreadyUsed, UserNotFound
from app.billing.trials import check_trial_expiration, start_free_trial
from app.models import BillingEvent, User, UserSubscription


def test_start_trial_creates_row_and_syncs_user(app, services, clock, make_user):
    uid = make_user()
    with app.app_context():
        sub = start_free_trial(services, uid)
        assert sub.status == "trial"
        assert sub.trial_start_date == clock.now
        assert sub.trial_end_date == clock.now + timedelta(days=7)
        assert sub.total_paid == 0
        assert sub.plan.name == "premium_monthly"

        user = db.session.get(User, uid)
        assert user.subscription_tier == "trial"
        assert user.subscription_expires_at == sub.trial_end_date
        assert BillingEvent.query.filter_by(event_type="trial_started").count() == 1


def test_second_trial_is_rejected(app, services, clock, make_user):
    uid = make_user()
    with app.app_context():
        start_free_trial(services, uid)
        with pytest.raises(TrialAlreadyUsed) as exc:
            start_free_trial(services, uid)
        assert exc.value.http_status == 409
        assert UserSubscription.query.count() == 1


def test_trial_rejected_after_expiry_too(app, services, clock, make_user):
    uid = make_user()
    with app.app_context():
        start_free_trial(services, uid)
        clock.advance(days=8)
        assert check_trial_expiration(services, uid) is True
        with pytest.raises(TrialAlreadyUsed):
            start_free_trial(services, uid)


def test_trial_for_unknown_user(app, services, clock):
    with app.app_context():
        with pytest.raises(UserNotFound):
            start_free_trial(services, 424242)


def test_expiration_is_lazy_and_exact(app, services, clock, make_user):
    uid = make_user()
    with app.app_context():
        start_free_trial(services, uid)

        clock.advance(days=7)  # exactly trial_end: still inside the trial
        assert check_trial_expiration(services, uid) is False
        assert UserSubscription.query.one().status == "trial"

        clock.advance(seconds=1)
        assert check_trial_expiration(services, uid) is True
        sub = UserSubscription.query.one()
        assert sub.status == "expired"
        user = db.session.get(User, uid)
        assert user.subscription_tier == "free"
        assert user.subscription_expires_at is None
        assert BillingEvent.query.filter_by(event_type="trial_expired").count() == 1

        # already expired: no second transition, no second event
        assert check_trial_expiration(services, uid) is False
        assert BillingEvent.query.filter_by(event_type="trial_expired").count() == 1


def test_expiration_without_subscription_is_noop(app, services, clock, make_user):
    uid = make_user()
    with app.app_context():
        assert check_trial_expiration(services, uid) is False


def test_access_check_takes_no_lock_while_trial_is_running(app, services, clock, make_user, monkeypatch):
    uid = make_user()
    with app.app_context():
        start_free_trial(services, uid)

        locks = []
        real_get = services.store.get_subscription

        def _recording_get(user_id, lock=False):
            locks.append(lock)
            return real_get(user_id, lock=lock)

        monkeypatch.setattr(services.store, "get_subscription", _recording_get)
        monkeypatch.setattr(services.store, "unit_of_work", lambda: pytest.fail("no write expected"))

        clock.advance(days=3)
        assert check_trial_expiration(services, uid) is False
        assert locks == [False]


def test_lapsed_trial_is_locked_before_expiring(app, services, clock, make_user, monkeypatch):
    uid = make_user()
    with app.app_context():
        start_free_trial(services, uid)

        locks = []
        real_get = services.store.get_subscription

        def _recording_get(user_id, lock=False):
            locks.append(lock)
            return real_get(user_id, lock=lock)

        monkeypatch.setattr(services.store, "get_subscription", _recording_get)
        clock.advance(days=8)
        assert check_trial_expiration(services, uid) is True
        assert locks == [False, True]
