import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tms_billing import models
from tms_billing.periods import utcnow

logger = logging.getLogger(__name__)

PURCHASE_STATUS_COMPLETED = "completed"
PURCHASE_STATUS_FAILED = "failed"


def _balance_snapshot(row: models.AdvisorCredits) -> dict[str, Any]:
    return {
        "advisor_user_id": row.advisor_user_id,
        "credits_available": row.credits_available,
        "credits_used": row.credits_used,
        "credits_purchased": row.credits_purchased,
    }


def increment_advisor_credits(
    db: Session,
    advisor_user_id: str,
    credits_to_add: int,
    amount_paid: float,
    currency: str,
) -> dict[str, Any]:
    """
    Atomically add purchased credits and return the post-increment balance.

    The increment is a single UPDATE evaluated by the database, so concurrent
    top-ups never lose each other's credits. The first purchase inserts the
    balance row; losing an insert race falls back to the UPDATE.
    """
    now = utcnow()
    increment = {
        models.AdvisorCredits.credits_available: models.AdvisorCredits.credits_available + credits_to_add,
        models.AdvisorCredits.credits_purchased: models.AdvisorCredits.credits_purchased + credits_to_add,
        models.AdvisorCredits.last_purchase_amount: amount_paid,
        models.AdvisorCredits.last_purchase_currency: currency,
        models.AdvisorCredits.last_purchase_date: now,
        models.AdvisorCredits.updated_at: now,
    }
    balance_query = db.query(models.AdvisorCredits).filter(
        models.AdvisorCredits.advisor_user_id == advisor_user_id
    )

    try:
        updated = balance_query.update(increment, synchronize_session=False)
        if not updated:
            try:
                with db.begin_nested():
                    db.add(
                        models.AdvisorCredits(
                            advisor_user_id=advisor_user_id,
                            credits_available=credits_to_add,
                            credits_used=0,
                            credits_purchased=credits_to_add,
                            last_purchase_amount=amount_paid,
                            last_purchase_currency=currency,
                            last_purchase_date=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError:
                balance_query.update(increment, synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    row = balance_query.populate_existing().first()
    return _balance_snapshot(row)


def record_purchase_history(
    db: Session,
    *,
    advisor_user_id: str,
    credits_purchased: int,
    amount_paid: float,
    currency: str,
    payment_gateway: str,
    payment_transaction_id: str,
    status: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    db.add(
        models.CreditPurchaseHistory(
            advisor_user_id=advisor_user_id,
            credits_purchased=credits_purchased,
            amount_paid=amount_paid,
            currency=currency,
            payment_gateway=payment_gateway,
            payment_transaction_id=payment_transaction_id,
            status=status,
            metadata_=metadata or {},
        )
    )
    db.commit()


def _record_purchase_history_safe(db: Session, **kwargs) -> bool:
    try:
        record_purchase_history(db, **kwargs)
        return True
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Could not record credit purchase history advisor_user_id=%s status=%s",
            kwargs.get("advisor_user_id"),
            kwargs.get("status"),
        )
        return False


def add_advisor_credits(
    db: Session,
    advisor_user_id: str,
    credits_to_add: int,
    amount_paid: float,
    currency: str,
    payment_gateway: str,
    payment_transaction_id: str,
) -> dict[str, Any]:
    history = {
        "advisor_user_id": advisor_user_id,
        "credits_purchased": credits_to_add,
        "amount_paid": amount_paid,
        "currency": currency,
        "payment_gateway": payment_gateway,
        "payment_transaction_id": payment_transaction_id,
    }
    logger.info("Adding advisor credits advisor_user_id=%s credits=%s", advisor_user_id, credits_to_add)

    try:
        balance = increment_advisor_credits(db, advisor_user_id, credits_to_add, amount_paid, currency)
    except SQLAlchemyError as exc:
        logger.exception("Advisor credit increment failed advisor_user_id=%s", advisor_user_id)
        _record_purchase_history_safe(
            db,
            status=PURCHASE_STATUS_FAILED,
            metadata={"error": str(exc), "code": exc.__class__.__name__},
            **history,
        )
        return {"success": False, "error": str(exc)}

    _record_purchase_history_safe(
        db,
        status=PURCHASE_STATUS_COMPLETED,
        metadata={
            "credits_available": balance["credits_available"],
            "credits_used": balance["credits_used"],
            "credits_purchased": balance["credits_purchased"],
        },
        **history,
    )
    return {"success": True, "credits": balance}
