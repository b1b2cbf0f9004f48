from sqlalchemy import func, UniqueConstraint
from app.extensions import db
from app.utils.helpers import iso

TX_COMPLETED = "completed"


class PaymentTransaction(db.Model):
    __tablename__ = "payment_transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("user_subscriptions.id"), nullable=True, index=True)

    amount = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="ZAR")
    status = db.Column(db.String(20), nullable=False, default=TX_COMPLETED)
    platform = db.Column(db.String(32), nullable=False)  # paystack | google_play | apple

    platform_transaction_id = db.Column(db.String(512), nullable=False)
    platform_order_id = db.Column(db.String(120), nullable=True)
    platform_subscription_id = db.Column(db.String(120), nullable=True)

    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    description = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        # Idempotency key for reconciliation
        UniqueConstraint("platform", "platform_transaction_id", name="uq_payment_transactions_platform_ref"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriptionId": self.subscription_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "platform": self.platform,
            "platformTransactionId": self.platform_transaction_id,
            "description": self.description,
            "createdAt": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<PaymentTransaction id={self.id} platform={self.platform!r} ref={self.platform_transaction_id!r} amount={self.amount}>"
