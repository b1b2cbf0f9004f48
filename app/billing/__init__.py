"""Billing core wiring.

``init_billing`` resolves every collaborator once, at app construction, and
parks the bundle on ``app.extensions["billing"]``; request handlers and CLI
commands fetch it with ``get_billing()``.
"""
import time

from flask import current_app

from app.billing.events import BillingEventLogger
from app.billing.reconciliation import ReconciliationEngine
from app.billing.store import BillingStore
from app.billing.verifiers import build_verifiers
from app.services.notifications import Notifier
from app.utils.helpers import utcnow


class BillingServices:

    def __init__(self, app, clock=utcnow, verifiers=None, sleep=time.sleep):
        self.clock = clock
        self.store = BillingStore()
        self.notifier = Notifier(sleep=sleep)
        self.event_logger = BillingEventLogger(
            app,
            self.notifier,
            delays=app.config.get("BILLING_EVENT_RETRY_DELAYS", (1, 2, 4)),
            inline=app.config.get("BILLING_EVENT_RETRY_INLINE", False),
            sleep=sleep,
        )
        self.verifiers = verifiers if verifiers is not None else build_verifiers(app.config)
        self.engine = ReconciliationEngine(
            self.store, self.verifiers, self.event_logger, self.notifier, clock=self.now,
        )

    def now(self):
        return self.clock()


def init_billing(app, **overrides) -> BillingServices:
    services = BillingServices(app, **overrides)
    app.extensions["billing"] = services
    return services


def get_billing() -> BillingServices:
    return current_app.extensions["billing"]
