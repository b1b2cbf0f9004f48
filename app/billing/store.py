"""Storage capability for the billing core.

``BillingStore`` is the only place billing code touches the session. All of its
writes are staged on ``db.session`` and become durable together when the
enclosing ``unit_of_work()`` commits.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from app.billing.state_machine import access_flags
from app.extensions import db
from app.models import BillingEvent, PaymentTransaction, User, UserSubscription

_IDEMPOTENCY_COLUMNS = ["platform", "platform_transaction_id"]


class TransactionAlreadyRecorded(Exception):
    """A concurrent writer inserted the same (platform, reference) first."""


class BillingStore:

    @property
    def session(self):
        return db.session

    @contextmanager
    def unit_of_work(self):
        """Commit everything staged inside the block, or roll all of it back."""
        try:
            yield self
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # ---- reads ----

    def get_user(self, user_id: int, lock: bool = False) -> Optional[User]:
        stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def get_subscription(self, user_id: int, lock: bool = False) -> Optional[UserSubscription]:
        stmt = (
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update(of=UserSubscription)
        return self.session.execute(stmt).unique().scalar_one_or_none()

    def find_transaction(self, platform: str, reference: str) -> Optional[PaymentTransaction]:
        return PaymentTransaction.query.filter_by(
            platform=platform, platform_transaction_id=reference
        ).first()

    def payment_history(self, user_id: int, limit: int = 50):
        return (
            PaymentTransaction.query
            .filter_by(user_id=user_id)
            .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .limit(limit)
            .all()
        )

    # ---- writes (staged; durable on unit commit) ----

    def apply_changes(self, subscription: Optional[UserSubscription], user_id: int, changes: dict) -> UserSubscription:
        if subscription is None:
            subscription = UserSubscription(user_id=user_id, **changes)
            self.session.add(subscription)
        else:
            for key, value in changes.items():
                setattr(subscription, key, value)
        self.session.flush()
        return subscription

    def sync_user_access(self, user: User, subscription: Optional[UserSubscription], plan=None) -> None:
        tier, expires = access_flags(subscription, plan)
        user.subscription_tier = tier
        user.subscription_expires_at = expires
        self.session.flush()

    def insert_transaction_if_absent(self, values: dict) -> int:
        """INSERT ... ON CONFLICT DO NOTHING on the idempotency key.

        ``values`` uses table column names (``metadata``, not ``meta``).
        Raises ``TransactionAlreadyRecorded`` when the row was skipped.
        """
        dialect = self.session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = (
                insert(PaymentTransaction.__table__)
                .values(**values)
                .on_conflict_do_nothing(index_elements=_IDEMPOTENCY_COLUMNS)
            )
            result = self.session.execute(stmt)
            if result.rowcount == 0:
                raise TransactionAlreadyRecorded(values.get("platform_transaction_id"))
            return result.inserted_primary_key[0]

        row = dict(values)
        row["meta"] = row.pop("metadata", {})
        tx = PaymentTransaction(**row)
        try:
            with self.session.begin_nested():
                self.session.add(tx)
        except IntegrityError as exc:
            raise TransactionAlreadyRecorded(values.get("platform_transaction_id")) from exc
        return tx.id

    def add_event(self, user_id: Optional[int], event_type: str, data: dict,
                  created_at: Optional[datetime] = None) -> BillingEvent:
        event = BillingEvent(
            user_id=user_id,
            event_type=event_type,
            event_data=data,
            processed=True,
        )
        if created_at is not None:
            event.created_at = created_at
        self.session.add(event)
        self.session.flush()
        return event

    def refresh(self, obj):
        self.session.refresh(obj)
        return obj
