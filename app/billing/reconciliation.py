"""Verified payment -> committed subscription state, exactly once per reference."""
import json
import shlex
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from flask import current_app

from app.billing.exceptions import (
    BillingError,
    PaymentOwnershipMismatch,
    ReconciliationCommitError,
    UserNotFound,
    VerificationFailed,
)
from app.billing.plans import get_default_plan, plan_for_period, plan_for_product
from app.billing.state_machine import (
    OUTCOME_DUPLICATE,
    classify_payment,
    next_billing_date,
    payment_changes,
    resolve_billing_period,
)
from app.billing.store import BillingStore, TransactionAlreadyRecorded
from app.billing.verifiers import (
    PLATFORM_APPLE,
    PLATFORM_GOOGLE_PLAY,
    PLATFORM_PAYSTACK,
    VerificationResult,
    get_verifier,
)
from app.models.payment_transaction import TX_COMPLETED
from app.models.user_subscription import STATUS_ACTIVE
from app.services.notifications import SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARNING
from app.utils.helpers import iso, utcnow


@dataclass
class ReconciliationResult:
    subscription: object
    outcome: str
    flagged_for_review: bool = False
    transaction_id: Optional[int] = None

    @property
    def duplicate(self) -> bool:
        return self.outcome == OUTCOME_DUPLICATE

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "duplicate": self.duplicate,
            "flaggedForReview": self.flagged_for_review,
            "subscription": self.subscription.to_dict() if self.subscription is not None else None,
        }


def _platform_fields(platform: str, verified: VerificationResult) -> dict:
    if platform == PLATFORM_PAYSTACK:
        fields = {"paystack_reference": verified.idempotency_reference}
        if verified.customer_ref:
            fields["paystack_customer_code"] = verified.customer_ref
        return fields
    if platform == PLATFORM_GOOGLE_PLAY:
        return {
            "google_play_purchase_token": verified.reference,
            "google_play_order_id": verified.order_id,
            "google_play_subscription_id": verified.subscription_ref,
        }
    if platform == PLATFORM_APPLE:
        return {
            "apple_transaction_id": verified.idempotency_reference,
            "apple_original_transaction_id": verified.order_id,
        }
    return {}


class ReconciliationEngine:
    """Runs one reconciliation: verify, then a single unit of work.

    Collaborators are injected; ``create_app`` wires the production set via
    ``app.billing.init_billing``.
    """

    def __init__(self, store: BillingStore, verifiers: dict, event_logger, notifier,
                 clock: Callable = utcnow, config: Optional[dict] = None):
        self.store = store
        self.verifiers = verifiers
        self.event_logger = event_logger
        self.notifier = notifier
        self.clock = clock
        self.config = config or {}

    def _setting(self, key: str, default):
        return self.config.get(key, current_app.config.get(key, default))

    def reconcile(self, user_id: int, platform: str, reference: str, **hints) -> ReconciliationResult:
        verifier = get_verifier(self.verifiers, platform)
        verified = verifier.verify(reference, **hints)
        if not verified.valid:
            self.event_logger.log(user_id, "subscription_failed", {
                "platform": platform,
                "reference": reference,
                "error": verified.error,
            })
            raise VerificationFailed(verified.error or "Payment verification failed",
                                     platform=platform, reference=reference)
        self._check_payer(user_id, platform, verified)

        now = self.clock()
        amount = verified.amount
        if amount is None:
            # App store receipts carry no price; charge what the catalog says the product costs
            product_plan = plan_for_product(platform, verified.product_id) or get_default_plan()
            amount = product_plan.price
        period = resolve_billing_period(amount, int(self._setting("BILLING_YEARLY_THRESHOLD", 50000)))
        plan = plan_for_period(period)
        next_billing = next_billing_date(now, period)
        key = verified.idempotency_reference

        try:
            with self.store.unit_of_work() as store:
                result = self._apply(store, user_id, platform, key, verified,
                                     plan=plan, amount=amount, now=now, next_billing=next_billing)
        except TransactionAlreadyRecorded:
            # Lost the insert race to a concurrent delivery of the same reference
            try:
                self._check_owner(self.store.find_transaction(platform, key), user_id, platform, key)
            except PaymentOwnershipMismatch as exc:
                self._ownership_conflict(user_id, platform, key, exc)
                raise
            result = ReconciliationResult(self.store.get_subscription(user_id), OUTCOME_DUPLICATE)
        except PaymentOwnershipMismatch as exc:
            self._ownership_conflict(user_id, platform, key, exc)
            raise
        except BillingError:
            raise
        except Exception as exc:
            self._commit_failed(user_id, platform, reference, key, amount, hints, exc)
            raise ReconciliationCommitError(
                f"Reconciliation rolled back for user {user_id} ({platform}:{key})",
                user_id=user_id, platform=platform, reference=key,
            ) from exc

        current_app.logger.info(json.dumps({
            "event": "reconciliation",
            "user_id": user_id,
            "platform": platform,
            "reference": key,
            "outcome": result.outcome,
            "amount": amount,
            "flagged_for_review": result.flagged_for_review,
        }))
        if result.duplicate:
            self._duplicate_ignored(user_id, platform, key)
        elif result.flagged_for_review:
            self._safe_alert(SEVERITY_WARNING, "Possible double charge: review for refund", {
                "user_id": user_id,
                "platform": platform,
                "reference": key,
                "amount": amount,
                "next_billing_date": iso(result.subscription.next_billing_date),
            })
        return result

    def _check_payer(self, user_id: int, platform: str, verified: VerificationResult) -> None:
        """A gateway that reports the payer's email must report this user's email."""
        if not verified.customer_email:
            return
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        if (user.email or "").strip().lower() == verified.customer_email.strip().lower():
            return
        current_app.logger.warning(json.dumps({
            "event": "payment_owner_mismatch",
            "user_id": user_id,
            "platform": platform,
            "reference": verified.idempotency_reference,
        }))
        self.event_logger.log(user_id, "payment_ownership_rejected", {
            "platform": platform,
            "reference": verified.idempotency_reference,
            "payer": verified.customer_ref,
        })
        raise PaymentOwnershipMismatch(
            "This payment was made by a different customer",
            platform=platform, reference=verified.idempotency_reference,
        )

    @staticmethod
    def _check_owner(found, user_id: int, platform: str, key: str) -> None:
        if found is not None and found.user_id != user_id:
            raise PaymentOwnershipMismatch(
                "This payment is already recorded against another account",
                platform=platform, reference=key, owner_id=found.user_id,
            )

    def _apply(self, store: BillingStore, user_id: int, platform: str, reference: str,
               verified: VerificationResult, *, plan, amount: int, now, next_billing) -> ReconciliationResult:
        user = store.get_user(user_id, lock=True)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")

        found = store.find_transaction(platform, reference)
        if found is not None:
            self._check_owner(found, user_id, platform, reference)
            return ReconciliationResult(store.get_subscription(user_id), OUTCOME_DUPLICATE)

        subscription = store.get_subscription(user_id, lock=True)
        previous_status = subscription.status if subscription is not None else None
        flagged = self._looks_like_double_charge(subscription, now)
        outcome = classify_payment(subscription)

        changes = payment_changes(subscription, plan=plan, amount=amount, now=now, next_billing=next_billing)
        changes.update(_platform_fields(platform, verified))
        subscription = store.apply_changes(subscription, user_id, changes)
        store.sync_user_access(user, subscription, plan)

        transaction_id = store.insert_transaction_if_absent({
            "user_id": user_id,
            "subscription_id": subscription.id,
            "amount": amount,
            "currency": verified.currency or plan.currency,
            "status": TX_COMPLETED,
            "platform": platform,
            "platform_transaction_id": reference,
            "platform_order_id": verified.order_id,
            "platform_subscription_id": verified.subscription_ref,
            "metadata": verified.raw,
            "description": f"{plan.display_name} ({outcome})",
            "created_at": now,
        })

        store.add_event(user_id, "subscription_activated", {
            "platform": platform,
            "reference": reference,
            "plan": plan.name,
            "amount": amount,
            "outcome": outcome,
            "previous_status": previous_status,
            "next_billing_date": iso(next_billing),
            "requires_review": flagged,
        }, created_at=now)

        store.refresh(subscription)
        return ReconciliationResult(subscription, outcome, flagged_for_review=flagged,
                                    transaction_id=transaction_id)

    def _looks_like_double_charge(self, subscription, now) -> bool:
        if subscription is None or subscription.status != STATUS_ACTIVE or subscription.next_billing_date is None:
            return False
        grace = timedelta(days=int(self._setting("BILLING_DOUBLE_CHARGE_GRACE_DAYS", 7)))
        return subscription.next_billing_date - now > grace

    def _duplicate_ignored(self, user_id: int, platform: str, reference: str) -> None:
        self.event_logger.log(user_id, "duplicate_payment_ignored", {
            "platform": platform,
            "reference": reference,
        })
        self._safe_alert(SEVERITY_INFO, "Duplicate payment blocked", {
            "user_id": user_id,
            "platform": platform,
            "reference": reference,
        })

    def _ownership_conflict(self, user_id: int, platform: str, key: str, exc: PaymentOwnershipMismatch) -> None:
        owner_id = exc.context.get("owner_id")
        current_app.logger.critical(json.dumps({
            "event": "payment_owner_conflict",
            "user_id": user_id,
            "owner_id": owner_id,
            "platform": platform,
            "reference": key,
        }))
        self._safe_alert(SEVERITY_CRITICAL, "Payment reference claimed by two accounts", {
            "claimed_by": user_id,
            "recorded_for": owner_id,
            "platform": platform,
            "reference": key,
            "remediation": (
                "Nothing was written for the claiming account. Check which account the gateway "
                "charged; if it is not the recorded one, move the transaction and refund or provision by hand."
            ),
        })

    @staticmethod
    def _remediation_command(user_id: int, platform: str, reference: str, hints: dict) -> str:
        parts = ["flask", "billing", "reconcile", str(user_id), platform, reference]
        if hints.get("product_id"):
            parts += ["--product-id", hints["product_id"]]
        return " ".join(shlex.quote(p) for p in parts)

    def _commit_failed(self, user_id: int, platform: str, reference: str, key: str, amount: int,
                       hints: dict, exc: Exception) -> None:
        """``reference`` is what the caller submitted (receipt, token); ``key`` is the recorded transaction id."""
        command = self._remediation_command(user_id, platform, reference, hints)
        current_app.logger.critical(json.dumps({
            "event": "reconciliation_commit_failed",
            "user_id": user_id,
            "platform": platform,
            "reference": key,
            "amount": amount,
            "error": f"{type(exc).__name__}: {exc}",
        }))
        self._safe_alert(SEVERITY_CRITICAL, "Payment received but subscription NOT provisioned", {
            "user_id": user_id,
            "platform": platform,
            "reference": key,
            "amount": amount,
            "error": f"{type(exc).__name__}: {exc}",
            "remediation": (
                "The gateway has the money and nothing was written. Fix the cause, then run "
                f"`{command}`; the reference is idempotent."
            ),
        })
        try:
            self.notifier.notify_user(user_id, "billing_issue")
        except Exception:
            current_app.logger.exception("billing_issue_notice_failed")

    def _safe_alert(self, severity: str, subject: str, details: dict) -> None:
        try:
            self.notifier.alert_operator(severity, subject, details)
        except Exception:
            current_app.logger.exception("operator_alert_failed")
