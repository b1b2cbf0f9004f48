"""Billing error taxonomy.

``retryable`` tells the caller (typically a webhook handler) whether asking the
gateway to redeliver can help.
"""


class BillingError(Exception):
    code = "billing_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class VerificationFailed(BillingError):
    """The gateway reported the payment as invalid or could not be reached."""

    code = "verification_failed"
    http_status = 402
    retryable = True


class ReconciliationCommitError(BillingError):
    """The atomic unit rolled back after the gateway accepted the payment."""

    code = "reconciliation_failed"
    http_status = 500
    retryable = False
    user_message = "We're resolving a billing issue with your account. No action is needed from you."

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.user_message, "retryable": False, "flagged": True}


class TrialAlreadyUsed(BillingError):
    code = "trial_already_used"
    http_status = 409


class SubscriptionNotFound(BillingError):
    code = "subscription_not_found"
    http_status = 404


class PlanNotFound(BillingError):
    code = "plan_not_found"
    http_status = 500


class InvalidTransition(BillingError):
    code = "invalid_transition"
    http_status = 409


class UnknownPlatform(BillingError):
    code = "unknown_platform"
    http_status = 400


class UserNotFound(BillingError):
    code = "user_not_found"
    http_status = 404


class PaymentOwnershipMismatch(BillingError):
    """The verified payment belongs to a different account than the one claiming it."""

    code = "payment_owner_mismatch"
    http_status = 409
