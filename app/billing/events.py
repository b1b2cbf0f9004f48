"""Best-effort billing audit trail.

Events that describe state committed by the reconciliation unit are written
inside that unit (``BillingStore.add_event``). Everything else goes through
``BillingEventLogger.log``: its own session, written after the business
operation has finished, retried with a bounded backoff, and escalated to an
operator alert if it still cannot be stored. It never raises into the caller.
"""
import json
import threading
import time
from typing import Callable, Optional, Sequence

from flask import current_app
from sqlalchemy.orm import Session

from app.extensions import db
from app.models import BillingEvent
from app.services.notifications import SEVERITY_CRITICAL


class BillingEventLogger:

    def __init__(self, app, notifier, delays: Sequence[float] = (1, 2, 4), inline: bool = False,
                 sleep: Callable[[float], None] = time.sleep):
        self.app = app
        self.notifier = notifier
        self.delays = tuple(delays)
        self.inline = inline
        self.sleep = sleep

    def log(self, user_id: Optional[int], event_type: str, data: Optional[dict] = None) -> bool:
        """Record an event. Returns True when the first attempt stored it."""
        payload = {"user_id": user_id, "event_type": event_type, "event_data": dict(data or {})}
        current_app.logger.info(json.dumps({"event": "billing_event", **payload}, default=str))
        try:
            self._write(payload)
            return True
        except Exception as exc:
            current_app.logger.warning(json.dumps({
                "event": "billing_event_write_failed",
                "event_type": event_type,
                "attempt": 1,
                "error": str(exc),
            }))
            first_error = exc

        if self.inline:
            self._retry(payload, first_error)
        else:
            threading.Thread(
                target=self._retry_in_context, args=(payload, first_error),
                name=f"billing-event-retry-{event_type}", daemon=True,
            ).start()
        return False

    def _write(self, payload: dict, prior_error: Optional[Exception] = None) -> None:
        with Session(db.engine) as session:
            session.add(BillingEvent(
                user_id=payload["user_id"],
                event_type=payload["event_type"],
                event_data=payload["event_data"],
                processed=False,
                processing_error=str(prior_error) if prior_error is not None else None,
            ))
            session.commit()

    def _retry_in_context(self, payload: dict, first_error: Exception) -> None:
        with self.app.app_context():
            self._retry(payload, first_error)

    def _retry(self, payload: dict, first_error: Exception) -> None:
        last_error = first_error
        for attempt, delay in enumerate(self.delays, start=2):
            self.sleep(delay)
            try:
                self._write(payload, prior_error=last_error)
                current_app.logger.info(json.dumps({
                    "event": "billing_event_write_recovered",
                    "event_type": payload["event_type"],
                    "attempt": attempt,
                }))
                return
            except Exception as exc:
                last_error = exc
                current_app.logger.warning(json.dumps({
                    "event": "billing_event_write_failed",
                    "event_type": payload["event_type"],
                    "attempt": attempt,
                    "error": str(exc),
                }))
        self._exhausted(payload, last_error)

    def _exhausted(self, payload: dict, error: Exception) -> None:
        try:
            self.notifier.alert_operator(
                SEVERITY_CRITICAL,
                "Billing event could not be recorded",
                {
                    "event_type": payload["event_type"],
                    "user_id": payload["user_id"],
                    "attempts": len(self.delays) + 1,
                    "error": str(error),
                    "payload": json.dumps(payload["event_data"], default=str),
                },
            )
        except Exception:
            current_app.logger.exception("billing_event_alert_failed")
