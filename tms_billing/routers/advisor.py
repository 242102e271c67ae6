import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from tms_billing.credits import add_advisor_credits
from tms_billing.database import get_db
from tms_billing.errors import ValidationError
from tms_billing.schemas import AdvisorCreditsAddRequest

router = APIRouter(prefix="/api/advisor", tags=["advisor"])
logger = logging.getLogger(__name__)


def handle_advisor_credits_add(payload: AdvisorCreditsAddRequest, db: Session) -> dict:
    missing = payload.missing_fields()
    if missing:
        logger.warning("Advisor credit purchase rejected missing=%s", ",".join(missing))
        raise ValidationError({"error": "Missing required fields", "required": list(payload.REQUIRED_FIELDS)})

    result = add_advisor_credits(
        db,
        advisor_user_id=payload.advisor_user_id,
        credits_to_add=payload.credits_to_add,
        amount_paid=payload.amount_paid,
        currency=payload.currency,
        payment_gateway=payload.payment_gateway,
        payment_transaction_id=payload.payment_transaction_id,
    )
    if not result["success"]:
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to add credits", "details": result["error"]},
        )

    return {
        "success": True,
        "credits": result["credits"],
        "message": f"Successfully added {payload.credits_to_add} credits to advisor account",
    }


@router.post("/credits/add")
def add_credits(payload: AdvisorCreditsAddRequest, db: Session = Depends(get_db)):
    return handle_advisor_credits_add(payload, db)
