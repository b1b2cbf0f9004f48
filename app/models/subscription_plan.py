from sqlalchemy import func, text
from app.extensions import db

PERIOD_MONTHLY = "monthly"
PERIOD_YEARLY = "yearly"
BILLING_PERIODS = (PERIOD_MONTHLY, PERIOD_YEARLY)


class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True, index=True)  # premium_monthly | premium_yearly
    display_name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)

    price = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="ZAR", server_default=text("'ZAR'"))
    billing_period = db.Column(db.String(16), nullable=False)
    trial_days = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))

    google_play_product_id = db.Column(db.String(120), nullable=True, index=True)
    apple_product_id = db.Column(db.String(120), nullable=True, index=True)

    features = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=text("true"))

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        db.CheckConstraint("billing_period in ('monthly', 'yearly')", name="ck_subscription_plans_period"),
        db.CheckConstraint("price >= 0", name="ck_subscription_plans_price_nonneg"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "displayName": self.display_name,
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "billingPeriod": self.billing_period,
            "trialDays": self.trial_days,
            "features": list(self.features or []),
        }

    def __repr__(self) -> str:
        return f"<SubscriptionPlan id={self.id} name={self.name!r} price={self.price} period={self.billing_period!r}>"
