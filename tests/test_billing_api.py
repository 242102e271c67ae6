from datetime import datetime

from sqlalchemy import create_engine, inspect, text

from tms_billing import models
from tms_billing.schema_patch import apply_schema_patches


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_subscription_status_without_subscription(client):
    response = client.get("/api/billing/subscription-status", params={"user_id": "nobody"})

    assert response.status_code == 200
    assert response.json() == {"status": None, "is_in_trial": False, "trial_end": None, "current_period_end": None}


def test_subscription_status_reports_trial(client, db_session, profile):
    db_session.add(
        models.UserSubscription(
            user_id="profile-1",
            status="active",
            is_in_trial=True,
            trial_end=datetime(2024, 7, 8),
            current_period_end=datetime(2024, 8, 1),
        )
    )
    db_session.commit()

    response = client.get("/api/billing/subscription-status", params={"user_id": "auth-1"})

    data = response.json()
    assert data["status"] == "active"
    assert data["is_in_trial"] is True
    assert data["trial_end"].startswith("2024-07-08")


def test_record_subscription_upserts_per_plan(client, db_session, profile, plan):
    body = {"user_id": "auth-1", "razorpay_subscription_id": "sub_1", "plan_type": "monthly", "startup_count": 2}

    first = client.post("/api/billing/record-subscription", json=body)
    second = client.post("/api/billing/record-subscription", json={**body, "razorpay_subscription_id": "sub_2"})

    assert first.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["razorpay_subscription_id"] == "sub_2"
    assert second.json()["amount"] == 998.0
    rows = db_session.query(models.UserSubscription).all()
    assert len(rows) == 1
    period = rows[0].current_period_end - rows[0].current_period_start
    assert period.days == 30


def test_record_subscription_supersedes_other_plans(client, db_session, profile, plan):
    db_session.add(models.UserSubscription(id="sub-other", user_id="profile-1", plan_id=None, status="active"))
    db_session.commit()

    client.post(
        "/api/billing/record-subscription",
        json={"user_id": "profile-1", "razorpay_subscription_id": "sub_1"},
    )

    db_session.expire_all()
    assert db_session.get(models.UserSubscription, "sub-other").status == "inactive"


def test_record_subscription_without_matching_plan(client, profile, plan):
    response = client.post(
        "/api/billing/record-subscription",
        json={"user_id": "profile-1", "razorpay_subscription_id": "sub_1", "plan_type": "yearly"},
    )

    assert response.status_code == 400


def test_schema_patch_adds_missing_columns():
    engine = create_engine("sqlite://")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE users (id VARCHAR PRIMARY KEY)"))
        conn.execute(text("CREATE TABLE user_subscriptions (id VARCHAR PRIMARY KEY, autopay_cancelled_at TIMESTAMP)"))
        conn.execute(
            text("CREATE TABLE payment_transactions (id VARCHAR PRIMARY KEY, payment_gateway VARCHAR, gateway_payment_id VARCHAR)")
        )

    apply_schema_patches(engine)
    apply_schema_patches(engine)

    inspector = inspect(engine)
    assert "razorpay_customer_id" in {column["name"] for column in inspector.get_columns("users")}
    subscription_columns = {column["name"] for column in inspector.get_columns("user_subscriptions")}
    assert {"autopay_cancelled_at", "autopay_cancellation_reason", "autopay_cancelled_by"} <= subscription_columns
    indexes = {index["name"]: index for index in inspector.get_indexes("payment_transactions")}
    assert indexes["uq_payment_transactions_gateway_payment"]["unique"]
