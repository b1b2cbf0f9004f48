from sqlalchemy import func, text
from app.extensions import db


class BillingEvent(db.Model):
    __tablename__ = "billing_events"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    event_data = db.Column(db.JSON, nullable=False, default=dict)

    processed = db.Column(db.Boolean, nullable=False, default=False, server_default=text("false"))
    processing_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), index=True)

    def __repr__(self) -> str:
        return f"<BillingEvent id={self.id} user_id={self.user_id} type={self.event_type!r}>"
