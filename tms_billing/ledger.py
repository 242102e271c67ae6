import logging
import math
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tms_billing import models
from tms_billing.database import supports_row_locks
from tms_billing.periods import INTERVAL_MONTHLY, period_end_for_interval, utcnow

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
PAYMENT_STATUS_SUCCESS = "success"
PAYMENT_TYPE_INITIAL = "initial"
CYCLE_STATUS_PAID = "paid"
DEFAULT_PLAN_TIER = "free"
GATEWAY_DEFAULT_CURRENCY = {"razorpay": "INR", "paypal": "EUR"}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def resolve_final_amount(
    plan: models.SubscriptionPlan | None,
    amount: float | None,
    total_amount_with_tax: float | None,
) -> float:
    if _is_number(total_amount_with_tax) and total_amount_with_tax > 0:
        return float(total_amount_with_tax)
    if _is_number(amount):
        return float(amount)
    if plan is not None and plan.price:
        return float(plan.price)
    return 0.0


def get_plan(db: Session, plan_id: int | None) -> models.SubscriptionPlan | None:
    if plan_id is None:
        return None
    return db.query(models.SubscriptionPlan).filter(models.SubscriptionPlan.id == plan_id).first()


def find_recorded_payment(db: Session, gateway: str, gateway_payment_id: str | None) -> models.PaymentTransaction | None:
    if not gateway_payment_id:
        return None
    return (
        db.query(models.PaymentTransaction)
        .filter(
            models.PaymentTransaction.payment_gateway == gateway,
            models.PaymentTransaction.gateway_payment_id == gateway_payment_id,
            models.PaymentTransaction.status == PAYMENT_STATUS_SUCCESS,
        )
        .order_by(models.PaymentTransaction.created_at.desc())
        .first()
    )


def _subscription_for_payment(db: Session, payment: models.PaymentTransaction) -> models.UserSubscription | None:
    if not payment.subscription_id:
        return None
    return db.get(models.UserSubscription, payment.subscription_id)


def _lock_profile(db: Session, profile_id: str) -> None:
    # Serialises concurrent verifications for the same profile until commit.
    if supports_row_locks(db):
        db.query(models.Profile.id).filter(models.Profile.id == profile_id).with_for_update().first()


def deactivate_active_subscriptions(db: Session, profile_id: str, now=None) -> int:
    return (
        db.query(models.UserSubscription)
        .filter(
            models.UserSubscription.user_id == profile_id,
            models.UserSubscription.status == STATUS_ACTIVE,
        )
        .update(
            {
                models.UserSubscription.status: STATUS_INACTIVE,
                models.UserSubscription.updated_at: now or utcnow(),
            },
            synchronize_session=False,
        )
    )


def record_verified_payment(
    db: Session,
    *,
    profile_id: str,
    plan_id: int,
    gateway: str,
    gateway_order_id: str | None,
    gateway_payment_id: str | None,
    gateway_signature: str | None = None,
    razorpay_subscription_id: str | None = None,
    paypal_subscription_id: str | None = None,
    is_autopay: bool = False,
    amount: float | None = None,
    currency: str | None = None,
    interval: str | None = INTERVAL_MONTHLY,
    country: str | None = None,
    tax_percentage: float | None = None,
    tax_amount: float | None = None,
    total_amount_with_tax: float | None = None,
) -> models.UserSubscription | None:
    """
    Reflect a verified charge as the profile's single active subscription.

    Supersedes prior active subscriptions, then writes the payment
    transaction, the subscription, and its first billing cycle. All writes
    share one transaction; a failure rolls every one of them back and
    re-raises. A charge already recorded for the same gateway payment id is
    not written twice; its subscription is returned instead.
    """
    plan = get_plan(db, plan_id)
    plan_tier = (plan.plan_tier if plan and plan.plan_tier else DEFAULT_PLAN_TIER)
    final_amount = resolve_final_amount(plan, amount, total_amount_with_tax)
    final_currency = currency or (plan.currency if plan else None) or GATEWAY_DEFAULT_CURRENCY.get(gateway, "INR")
    final_interval = interval or INTERVAL_MONTHLY

    try:
        _lock_profile(db, profile_id)

        existing_payment = find_recorded_payment(db, gateway, gateway_payment_id)
        if existing_payment is not None:
            logger.info(
                "Payment already recorded gateway=%s payment_id=%s subscription_id=%s",
                gateway,
                gateway_payment_id,
                existing_payment.subscription_id,
            )
            db.rollback()
            return _subscription_for_payment(db, existing_payment)

        now = utcnow()
        period_end = period_end_for_interval(now, final_interval)

        superseded = deactivate_active_subscriptions(db, profile_id, now=now)

        payment_row = models.PaymentTransaction(
            user_id=profile_id,
            payment_gateway=gateway,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            gateway_signature=gateway_signature,
            amount=final_amount,
            currency=final_currency,
            status=PAYMENT_STATUS_SUCCESS,
            payment_type=PAYMENT_TYPE_INITIAL,
            plan_tier=plan_tier,
            is_autopay=is_autopay,
            autopay_mandate_id=(razorpay_subscription_id or paypal_subscription_id) if is_autopay else None,
            metadata_={
                "tax_percentage": tax_percentage,
                "tax_amount": tax_amount,
                "total_amount_with_tax": total_amount_with_tax,
            },
        )
        db.add(payment_row)
        db.flush()

        subscription = models.UserSubscription(
            user_id=profile_id,
            plan_id=plan_id,
            status=STATUS_ACTIVE,
            current_period_start=now,
            current_period_end=period_end,
            amount=final_amount,
            currency=final_currency,
            interval=final_interval,
            billing_interval=final_interval,
            is_in_trial=False,
            razorpay_subscription_id=razorpay_subscription_id,
            paypal_subscription_id=paypal_subscription_id,
            payment_gateway=gateway,
            autopay_enabled=is_autopay,
            mandate_status=STATUS_ACTIVE if is_autopay else None,
            billing_cycle_count=1,
            total_paid=final_amount,
            last_billing_date=now,
            next_billing_date=period_end,
            locked_amount_inr=final_amount if final_currency == "INR" else None,
            country=country,
            updated_at=now,
        )
        db.add(subscription)
        db.flush()

        payment_row.subscription_id = subscription.id
        db.add(
            models.BillingCycle(
                subscription_id=subscription.id,
                cycle_number=1,
                period_start=now,
                period_end=period_end,
                payment_transaction_id=payment_row.id,
                amount=final_amount,
                currency=final_currency,
                status=CYCLE_STATUS_PAID,
                plan_tier=plan_tier,
                is_autopay=is_autopay,
            )
        )
        db.commit()
    except IntegrityError:
        # A concurrent verification wrote the same gateway payment first.
        db.rollback()
        existing_payment = find_recorded_payment(db, gateway, gateway_payment_id)
        if existing_payment is None:
            raise
        logger.info(
            "Payment recorded concurrently gateway=%s payment_id=%s subscription_id=%s",
            gateway,
            gateway_payment_id,
            existing_payment.subscription_id,
        )
        return _subscription_for_payment(db, existing_payment)
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    logger.info(
        "Subscription recorded profile_id=%s subscription_id=%s gateway=%s plan_id=%s superseded=%s",
        profile_id,
        subscription.id,
        gateway,
        plan_id,
        superseded,
    )
    return subscription


def current_subscription(db: Session, profile_id: str) -> models.UserSubscription | None:
    """The active subscription if there is one, otherwise the most recent."""
    query = db.query(models.UserSubscription).filter(models.UserSubscription.user_id == profile_id)
    active = query.filter(models.UserSubscription.status == STATUS_ACTIVE).first()
    if active:
        return active
    return query.order_by(models.UserSubscription.created_at.desc()).first()


def record_autopay_cancellation(
    db: Session,
    subscription: models.UserSubscription,
    reason: str,
    initiated_by: str,
) -> models.UserSubscription:
    now = utcnow()
    subscription.autopay_enabled = False
    subscription.mandate_status = "cancelled"
    subscription.autopay_cancelled_at = now
    subscription.autopay_cancellation_reason = reason
    subscription.autopay_cancelled_by = initiated_by
    subscription.updated_at = now
    db.commit()
    db.refresh(subscription)
    return subscription
