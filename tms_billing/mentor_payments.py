import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tms_billing import models
from tms_billing.periods import utcnow

logger = logging.getLogger(__name__)

ASSIGNMENT_READY = "ready_for_activation"


def find_mentor_payment(
    db: Session,
    razorpay_order_id: str | None = None,
    paypal_order_id: str | None = None,
) -> models.MentorPayment | None:
    query = db.query(models.MentorPayment)
    if razorpay_order_id:
        return query.filter(models.MentorPayment.razorpay_order_id == razorpay_order_id).first()
    if paypal_order_id:
        return query.filter(models.MentorPayment.paypal_order_id == paypal_order_id).first()
    return None


def _next_assignment_status(assignment: models.MentorStartupAssignment) -> str:
    if assignment.status == "pending_payment":
        return ASSIGNMENT_READY
    if assignment.status == "pending_payment_and_agreement" and assignment.agreement_status == "approved":
        return ASSIGNMENT_READY
    return assignment.status


def complete_mentor_payment(db: Session, assignment_id: int, payment_id: str, is_razorpay: bool) -> bool:
    """Settle a mentor fee and move its assignment forward when nothing else blocks it."""
    try:
        assignment = db.get(models.MentorStartupAssignment, assignment_id)
        if not assignment:
            return False

        update_values = {
            models.MentorPayment.payment_status: "completed",
            models.MentorPayment.payment_date: utcnow(),
        }
        if is_razorpay:
            update_values[models.MentorPayment.razorpay_payment_id] = payment_id
        else:
            update_values[models.MentorPayment.paypal_order_id] = payment_id
        db.query(models.MentorPayment).filter(
            models.MentorPayment.assignment_id == assignment_id
        ).update(update_values, synchronize_session=False)

        assignment.payment_status = "completed"
        assignment.status = _next_assignment_status(assignment)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error completing mentor payment assignment_id=%s", assignment_id)
        return False

    logger.info("Mentor payment completed assignment_id=%s status=%s", assignment_id, assignment.status)
    return True
