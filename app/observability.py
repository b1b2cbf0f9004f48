import logging
import os
from logging.config import dictConfig

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

# Gateway client libraries log every request at DEBUG/INFO; billing events are logged by the app itself
_NOISY_LOGGERS = ("urllib3", "google.auth.transport.requests")


def init_logging(app):
    """JSON lines in staging/production, one object per billing event; plain console in dev/tests."""
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    level = app.config.get("LOG_LEVEL", "INFO")
    if app_env in ("staging", "production"):
        dictConfig({
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {
                    "()": "pythonjsonlogger.json.JsonFormatter",
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                    "static_fields": {"service": "billing", "env": app_env},
                },
            },
            "handlers": {"stdout": {"class": "logging.StreamHandler", "formatter": "json"}},
            "root": {"level": level, "handlers": ["stdout"]},
        })
    else:
        app.logger.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def init_sentry(app):
    """Report to Sentry when SENTRY_DSN is set; payment payloads are never attached."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
            environment=os.getenv("APP_ENV", "development"),
            send_default_pii=False,
            max_request_body_size="never",
        )
    except Exception as exc:
        app.logger.warning("Sentry init skipped: %s", exc)
