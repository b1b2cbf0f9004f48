from sqlalchemy import func, text, UniqueConstraint
from app.extensions import db
from app.utils.helpers import iso

STATUS_TRIAL = "trial"
STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUSES = (STATUS_TRIAL, STATUS_ACTIVE, STATUS_CANCELLED, STATUS_EXPIRED)


class UserSubscription(db.Model):
    __tablename__ = "user_subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)

    status = db.Column(db.String(16), nullable=False, index=True, default=STATUS_TRIAL, server_default=text("'trial'"))

    trial_start_date = db.Column(db.DateTime, nullable=True)
    trial_end_date = db.Column(db.DateTime, nullable=True)
    subscription_start_date = db.Column(db.DateTime, nullable=True)
    next_billing_date = db.Column(db.DateTime, nullable=True, index=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    total_paid = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    last_payment_date = db.Column(db.DateTime, nullable=True)

    # Paystack (card gateway)
    paystack_reference = db.Column(db.String(120), nullable=True)
    paystack_customer_code = db.Column(db.String(120), nullable=True)
    # Google Play
    google_play_purchase_token = db.Column(db.String(512), nullable=True)
    google_play_order_id = db.Column(db.String(120), nullable=True)
    google_play_subscription_id = db.Column(db.String(120), nullable=True)
    # Apple App Store
    apple_transaction_id = db.Column(db.String(120), nullable=True)
    apple_original_transaction_id = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    plan = db.relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_subscriptions_user_id"),
        db.CheckConstraint("total_paid >= 0", name="ck_user_subscriptions_total_paid_nonneg"),
    )

    @property
    def platform(self):
        if self.google_play_purchase_token:
            return "google_play"
        if self.apple_transaction_id:
            return "apple"
        if self.paystack_reference:
            return "paystack"
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "planId": self.plan_id,
            "status": self.status,
            "trialStartDate": iso(self.trial_start_date),
            "trialEndDate": iso(self.trial_end_date),
            "subscriptionStartDate": iso(self.subscription_start_date),
            "nextBillingDate": iso(self.next_billing_date),
            "cancelledAt": iso(self.cancelled_at),
            "totalPaid": self.total_paid,
            "lastPaymentDate": iso(self.last_payment_date),
            "platform": self.platform,
        }

    def __repr__(self) -> str:
        return f"<UserSubscription id={self.id} user_id={self.user_id} status={self.status!r} plan_id={self.plan_id}>"
