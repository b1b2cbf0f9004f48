import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta

import pytest
from app import create_app
from app.extensions import db, mail
from app.billing.plans import seed_subscription_plans
from app.billing.verifiers import PLATFORMS, VerificationResult
from app.models import User

NOW = datetime(2026, 3, 10, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeVerifier:
    """Scripted gateway: references must be registered with ``succeed``/``fail`` first."""

    def __init__(self, platform: str):
        self.platform = platform
        self.results = {}
        self.calls = []

    def succeed(self, reference, amount=4900, **fields):
        fields.setdefault("transaction_id", reference)
        fields.setdefault("currency", "ZAR")
        self.results[reference] = VerificationResult(
            valid=True, platform=self.platform, reference=reference, amount=amount, **fields
        )

    def fail(self, reference, error="Declined by issuer"):
        self.results[reference] = VerificationResult.invalid(self.platform, reference, error)

    def verify(self, reference, **hints):
        self.calls.append((reference, hints))
        return self.results.get(reference) or VerificationResult.invalid(self.platform, reference, "unknown reference")


@pytest.fixture(scope="session")
def app():
    app = create_app(
        config_overrides={
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "MAIL_SUPPRESS_SEND": True,
            "WTF_CSRF_ENABLED": False,
        },
        sleep=lambda seconds: None,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test, then reseed the plan catalog
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
        seed_subscription_plans()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def services(app):
    return app.extensions["billing"]


@pytest.fixture()
def clock(services, monkeypatch):
    fake = FakeClock(NOW)
    monkeypatch.setattr(services, "clock", fake)
    return fake


@pytest.fixture()
def gateways(services, monkeypatch):
    """Replace every platform verifier with a scripted fake (undone after the test)."""
    fakes = {platform: FakeVerifier(platform) for platform in PLATFORMS}
    for platform, fake in fakes.items():
        monkeypatch.setitem(services.verifiers, platform, fake)
    return fakes


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture()
def make_user(app):
    def _make(email="user@example.com", is_admin=False):
        with app.app_context():
            u = User(email=email, is_admin=is_admin)
            u.set_password("x")
            db.session.add(u)
            db.session.commit()
            return u.id
    return _make


@pytest.fixture()
def login(client):
    def _login(user_id: int):
        with client.session_transaction() as sess:
            sess["_user_id"] = str(user_id)
            sess["_fresh"] = True
    return _login


@pytest.fixture()
def outbox(app):
    with mail.record_messages() as messages:
        yield messages
