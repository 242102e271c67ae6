"""
Shared fixtures: an in-memory database, a TestClient bound to it, gateway
credentials in the environment and a fake for outbound gateway HTTP.
"""

import json
from datetime import datetime
from unittest.mock import patch
from urllib.parse import urlparse

import pytest
import requests
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tms_billing import models
from tms_billing.database import Base, get_db
from tms_billing.main import app
from tms_billing.utils.rate_limiter import rate_limiter

RAZORPAY_KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"


def make_response(status_code=200, payload=None):
    response = requests.Response()
    response.status_code = status_code
    if isinstance(payload, (dict, list)):
        response._content = json.dumps(payload).encode("utf-8")
    elif isinstance(payload, str):
        response._content = payload.encode("utf-8")
    else:
        response._content = b""
    return response


class FakeGateway:
    """Answers outbound `requests.request` calls from registered routes."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, status_code=200, payload=None):
        self.routes[(method.upper(), path)] = (status_code, payload)

    def calls_to(self, method, path):
        return [call for call in self.calls if call[0] == method.upper() and urlparse(call[1]).path.endswith(path)]

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        path = urlparse(url).path
        for (route_method, route_path), (status_code, payload) in self.routes.items():
            if method == route_method and path.endswith(route_path):
                return make_response(status_code, payload)
        raise AssertionError(f"Unexpected gateway call {method} {url}")


@pytest.fixture(autouse=True)
def billing_env(monkeypatch):
    for name in (
        "VITE_RAZORPAY_KEY_ID",
        "VITE_RAZORPAY_KEY_SECRET",
        "VITE_PAYPAL_CLIENT_ID",
        "VITE_PAYPAL_CLIENT_SECRET",
        "VITE_PAYPAL_ENVIRONMENT",
        "RAZORPAY_STARTUP_PLAN_ID",
        "RAZORPAY_STARTUP_PLAN_ID_MONTHLY",
        "RAZORPAY_STARTUP_PLAN_ID_YEARLY",
        "RAZORPAY_LENIENT_SUBSCRIPTION_SIGNATURE",
        "RAZORPAY_TRIAL_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", RAZORPAY_KEY_SECRET)
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "paypal-client")
    monkeypatch.setenv("PAYPAL_CLIENT_SECRET", "paypal-secret")
    monkeypatch.setenv("PAYPAL_ENVIRONMENT", "sandbox")
    monkeypatch.setenv("ENVIRONMENT", "development")
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def gateway():
    fake = FakeGateway()
    with patch("requests.request", side_effect=fake):
        yield fake


@pytest.fixture
def profile(db_session):
    row = models.Profile(
        id="profile-1",
        auth_user_id="auth-1",
        role="Startup",
        name="Acme",
        created_at=datetime(2024, 1, 1),
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def plan(db_session):
    row = models.SubscriptionPlan(
        id=1,
        name="Startup Basic",
        plan_tier="basic",
        user_type="Startup",
        billing_interval="monthly",
        price=499.0,
        currency="INR",
        is_active=True,
    )
    db_session.add(row)
    db_session.commit()
    return row
