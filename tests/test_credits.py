import threading

import pytest
from sqlalchemy import create_engine, false
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query, sessionmaker

from tms_billing import credits, models
from tms_billing.database import Base


def _add(db, credits_to_add, transaction_id):
    return credits.add_advisor_credits(
        db,
        advisor_user_id="advisor-1",
        credits_to_add=credits_to_add,
        amount_paid=credits_to_add * 100.0,
        currency="INR",
        payment_gateway="razorpay",
        payment_transaction_id=transaction_id,
    )


def test_first_purchase_creates_balance(db_session):
    result = _add(db_session, 10, "pay_1")

    assert result["success"] is True
    assert result["credits"] == {
        "advisor_user_id": "advisor-1",
        "credits_available": 10,
        "credits_used": 0,
        "credits_purchased": 10,
    }


def test_two_top_ups_accumulate(db_session):
    _add(db_session, 10, "pay_1")
    result = _add(db_session, 5, "pay_2")

    assert result["credits"]["credits_available"] == 15
    assert result["credits"]["credits_purchased"] == 15
    row = db_session.query(models.AdvisorCredits).one()
    assert row.last_purchase_amount == 500.0

    history = db_session.query(models.CreditPurchaseHistory).order_by(models.CreditPurchaseHistory.id).all()
    assert [entry.status for entry in history] == ["completed", "completed"]
    assert history[1].metadata_["credits_available"] == 15


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'credits.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.mark.parametrize("starting_balance", [None, 7])
def test_concurrent_top_ups_both_land(file_session_factory, starting_balance):
    if starting_balance is not None:
        with file_session_factory() as db:
            db.add(
                models.AdvisorCredits(
                    advisor_user_id="advisor-1",
                    credits_available=starting_balance,
                    credits_used=0,
                    credits_purchased=starting_balance,
                )
            )
            db.commit()

    barrier = threading.Barrier(2)
    results = {}
    errors = []

    def top_up(credits_to_add, transaction_id):
        with file_session_factory() as db:
            barrier.wait()
            try:
                results[transaction_id] = _add(db, credits_to_add, transaction_id)
            except Exception as exc:
                errors.append(exc)

    workers = [
        threading.Thread(target=top_up, args=(10, "pay_a")),
        threading.Thread(target=top_up, args=(5, "pay_b")),
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=60)

    assert errors == []
    assert all(result["success"] for result in results.values())
    with file_session_factory() as db:
        balance = db.query(models.AdvisorCredits).one()
        assert balance.credits_available == (starting_balance or 0) + 15
        assert balance.credits_purchased == (starting_balance or 0) + 15
        history = db.query(models.CreditPurchaseHistory).all()
        assert sorted(entry.payment_transaction_id for entry in history) == ["pay_a", "pay_b"]
        assert {entry.status for entry in history} == {"completed"}


def test_lost_insert_race_falls_back_to_update(session_factory, db_session, monkeypatch):
    with session_factory() as other:
        other.add(
            models.AdvisorCredits(advisor_user_id="advisor-1", credits_available=4, credits_used=0, credits_purchased=4)
        )
        other.commit()

    original_update = Query.update
    updates = []

    def update_missing_first_time(self, values, *args, **kwargs):
        # The first UPDATE runs before the other writer's row exists.
        updates.append(values)
        if len(updates) == 1:
            return original_update(self.filter(false()), values, *args, **kwargs)
        return original_update(self, values, *args, **kwargs)

    monkeypatch.setattr(Query, "update", update_missing_first_time)
    result = _add(db_session, 6, "pay_3")

    assert len(updates) == 2
    assert result["success"] is True
    assert result["credits"]["credits_available"] == 10
    assert db_session.query(models.AdvisorCredits).count() == 1


def test_failed_increment_records_failed_history(db_session, monkeypatch):
    def failing_increment(*args, **kwargs):
        raise OperationalError("UPDATE advisor_credits", {}, Exception("database is locked"))

    monkeypatch.setattr(credits, "increment_advisor_credits", failing_increment)
    result = _add(db_session, 3, "pay_9")

    assert result["success"] is False
    history = db_session.query(models.CreditPurchaseHistory).one()
    assert history.status == "failed"
    assert history.payment_transaction_id == "pay_9"
    assert history.metadata_["code"] == "OperationalError"
    assert db_session.query(models.AdvisorCredits).count() == 0
