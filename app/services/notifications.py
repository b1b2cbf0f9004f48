"""Outbound billing notices (user-facing) and operator alerts, over Flask-Mail."""
import json
import time
from typing import Callable

from flask import current_app
from flask_mail import Message

from app.extensions import db, mail
from app.models import User

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

# kind -> (subject, body). Bodies are plain text; {product} / {support} are always available.
USER_NOTICES = {
    "billing_issue": (
        "We're looking into a billing issue",
        "Hi,\n\nWe're resolving a billing issue with your {product} account. "
        "No action is needed from you; we'll be in touch if anything changes.\n\n"
        "Questions? Reply to {support}.",
    ),
    "payment_failed": (
        "Your {product} payment didn't go through",
        "Hi,\n\nWe couldn't process your latest {product} payment ({reason}). "
        "Please check your payment method to keep premium access.\n\n"
        "Questions? Reply to {support}.",
    ),
    "subscription_disabled": (
        "Your {product} subscription has been cancelled",
        "Hi,\n\nYour {product} subscription was cancelled by the payment provider. "
        "You keep premium access until {access_until}.\n\n"
        "Questions? Reply to {support}.",
    ),
}


class Notifier:
    """Sends mail with bounded linear retry. ``send`` never raises."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep

    def send(self, to_email: str, subject: str, body: str, kind: str) -> bool:
        cfg = current_app.config
        attempts = max(1, int(cfg.get("NOTIFY_MAX_ATTEMPTS", 3)))
        backoff = float(cfg.get("NOTIFY_BACKOFF_SECONDS", 1.0))

        for attempt in range(1, attempts + 1):
            start = time.perf_counter()
            try:
                mail.send(Message(recipients=[to_email], subject=subject, body=body))
                current_app.logger.info(json.dumps({
                    "event": "mail_send",
                    "kind": kind,
                    "to": to_email,
                    "outcome": "sent",
                    "attempt": attempt,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                }))
                return True
            except Exception as ex:
                current_app.logger.warning(json.dumps({
                    "event": "mail_send",
                    "kind": kind,
                    "to": to_email,
                    "outcome": "smtp_error",
                    "attempt": attempt,
                    "smtp_error": str(ex),
                }))
                if attempt < attempts:
                    self.sleep(backoff * attempt)
        return False

    def alert_operator(self, severity: str, subject: str, details: dict) -> bool:
        """Alert ``ADMIN_EMAIL``; the alert is also logged so it survives a mail outage."""
        log = current_app.logger.critical if severity == SEVERITY_CRITICAL else current_app.logger.warning
        log(json.dumps({"event": "operator_alert", "severity": severity, "subject": subject, **details}, default=str))

        admin = current_app.config.get("ADMIN_EMAIL")
        if not admin:
            return False
        body = "\n".join(
            [f"[{severity.upper()}] {subject}", ""]
            + [f"{key}: {value}" for key, value in details.items()]
        )
        return self.send(admin, f"[{severity.upper()}] {subject}", body, kind=f"operator_{severity}")

    def notify_user(self, user_id: int, kind: str, **context) -> bool:
        subject_tpl, body_tpl = USER_NOTICES[kind]
        user = db.session.get(User, user_id)
        if user is None or not user.email:
            current_app.logger.warning(json.dumps({"event": "notify_user_skipped", "user_id": user_id, "kind": kind}))
            return False
        values = {
            "product": current_app.config.get("PRODUCT_NAME", "Simple Slips"),
            "support": current_app.config.get("SUPPORT_EMAIL", ""),
            "reason": "declined",
            "access_until": "the end of your billing period",
        }
        values.update({k: v for k, v in context.items() if v is not None})
        return self.send(user.email, subject_tpl.format(**values), body_tpl.format(**values), kind=kind)

