import logging
from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tms_billing import models, schemas
from tms_billing.database import get_db
from tms_billing.errors import ValidationError
from tms_billing.identity import IdentityResolver, get_identity_resolver
from tms_billing.ledger import STATUS_ACTIVE, STATUS_INACTIVE, current_subscription
from tms_billing.periods import utcnow

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)

STARTUP_USER_TYPE = "Startup"
# Client-side recording keeps fixed-length periods rather than calendar months.
PERIOD_DAYS = {"monthly": 30, "yearly": 365}


@router.get("/subscription-status", response_model=schemas.SubscriptionStatusResponse)
def subscription_status(
    user_id: str,
    db: Session = Depends(get_db),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    if not user_id.strip():
        raise ValidationError("user_id is required")

    profile_id = resolver.find_profile_id(user_id) or user_id
    subscription = current_subscription(db, profile_id)
    if not subscription:
        return schemas.SubscriptionStatusResponse()

    return schemas.SubscriptionStatusResponse(
        status=subscription.status,
        is_in_trial=bool(subscription.is_in_trial),
        trial_end=subscription.trial_end,
        current_period_end=subscription.current_period_end,
    )


@router.post("/record-subscription", response_model=schemas.SubscriptionResponse)
def record_subscription(
    payload: schemas.RecordSubscriptionRequest,
    db: Session = Depends(get_db),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    """Store a subscription created on the client against the active Startup plan."""
    if not payload.user_id or not payload.razorpay_subscription_id:
        raise ValidationError("user_id and razorpay_subscription_id are required")

    plan = db.query(models.SubscriptionPlan).filter(
        models.SubscriptionPlan.user_type == STARTUP_USER_TYPE,
        models.SubscriptionPlan.billing_interval == payload.plan_type,
        models.SubscriptionPlan.is_active.is_(True),
    ).first()
    if not plan:
        raise ValidationError(f"No active Startup plan found for {payload.plan_type} billing")

    profile_id = resolver.resolve(payload.user_id)
    now = utcnow()
    period_end = now + timedelta(days=PERIOD_DAYS[payload.plan_type])
    amount = float(plan.price or 0) * payload.startup_count

    subscription = db.query(models.UserSubscription).filter(
        models.UserSubscription.user_id == profile_id,
        models.UserSubscription.plan_id == plan.id,
    ).first()
    if subscription is None:
        subscription = models.UserSubscription(user_id=profile_id, plan_id=plan.id)
        db.add(subscription)
        db.flush()

    db.query(models.UserSubscription).filter(
        models.UserSubscription.user_id == profile_id,
        models.UserSubscription.status == STATUS_ACTIVE,
        models.UserSubscription.id != subscription.id,
    ).update(
        {models.UserSubscription.status: STATUS_INACTIVE, models.UserSubscription.updated_at: now},
        synchronize_session=False,
    )

    subscription.status = STATUS_ACTIVE
    subscription.current_period_start = now
    subscription.current_period_end = period_end
    subscription.amount = amount
    subscription.currency = plan.currency
    subscription.interval = payload.plan_type
    subscription.billing_interval = payload.plan_type
    subscription.is_in_trial = False
    subscription.razorpay_subscription_id = payload.razorpay_subscription_id
    subscription.payment_gateway = "razorpay"
    subscription.autopay_enabled = True
    subscription.startup_count = payload.startup_count
    subscription.locked_amount_inr = amount if plan.currency == "INR" else None
    subscription.updated_at = now
    db.commit()
    db.refresh(subscription)

    logger.info(
        "Subscription recorded from client profile_id=%s plan_id=%s razorpay_subscription_id=%s interval=%s",
        profile_id,
        plan.id,
        payload.razorpay_subscription_id,
        payload.plan_type,
    )
    return subscription
