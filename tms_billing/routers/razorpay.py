import json
import logging
import os
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tms_billing import models, schemas
from tms_billing.database import get_db
from tms_billing.errors import (
    GatewayError,
    InvalidSignature,
    ServerConfigurationError,
    SubscriptionNotFound,
    ValidationError,
)
from tms_billing.gateways import razorpay
from tms_billing.identity import IdentityResolver, get_identity_resolver
from tms_billing.ledger import record_autopay_cancellation
from tms_billing.periods import utcnow
from tms_billing.routers.payment import verify_payment_body
from tms_billing.utils.rate_limiter import enforce_rate_limit

router = APIRouter(prefix="/api/razorpay", tags=["razorpay"])
logger = logging.getLogger(__name__)

WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "120"))
WEBHOOK_RATE_WINDOW_SECONDS = int(os.getenv("WEBHOOK_RATE_LIMIT_WINDOW_SECONDS", "60"))
DEV_TRIAL_SECONDS = 120


def _is_production() -> bool:
    return os.getenv("ENVIRONMENT", "production").strip().lower() == "production"


def _trial_period_seconds(payload: schemas.RazorpayCreateSubscriptionRequest) -> int:
    if payload.trial_seconds is not None:
        return max(0, payload.trial_seconds)
    if not _is_production():
        return DEV_TRIAL_SECONDS
    trial_days = payload.trial_days
    if trial_days is None:
        trial_days = int(os.getenv("RAZORPAY_TRIAL_DAYS", "7"))
    return max(0, trial_days) * 86400


@router.post("/create-order")
def create_order(payload: schemas.RazorpayCreateOrderRequest):
    return razorpay.create_order(
        amount=payload.amount,
        currency=payload.currency,
        receipt=payload.receipt,
        amount_unit=payload.amount_unit,
    )


@router.post("/create-subscription")
def create_subscription(payload: schemas.RazorpayCreateSubscriptionRequest, db: Session = Depends(get_db)):
    razorpay.require_razorpay_credentials()

    plan_id = payload.plan_id
    if not plan_id and payload.amount is not None:
        plan_id = razorpay.get_or_create_plan(
            db,
            amount_paise=razorpay.to_minor_units(payload.amount),
            period=payload.interval,
            name=payload.plan_name,
            currency=payload.currency,
        )
    plan_id = plan_id or razorpay.configured_plan_id()
    if not plan_id:
        raise ValidationError("plan_id not provided and RAZORPAY_STARTUP_PLAN_ID is not configured")

    notes: dict[str, Any] = {}
    if payload.user_id:
        notes["user_id"] = payload.user_id
    trial_period = None
    if payload.include_trial:
        trial_period = _trial_period_seconds(payload)
        notes["trial_startup"] = "true"

    return razorpay.create_subscription(
        plan_id=plan_id,
        total_count=payload.total_count,
        customer_notify=payload.customer_notify,
        notes=notes,
        trial_period=trial_period,
    )


@router.post("/create-trial-subscription")
def create_trial_subscription(payload: schemas.RazorpayTrialSubscriptionRequest):
    if not payload.user_id:
        raise ValidationError("user_id is required")
    razorpay.require_razorpay_credentials()

    plan_id = razorpay.configured_plan_id(payload.plan_type)
    if not plan_id:
        raise ServerConfigurationError(f"Plan ID not configured for {payload.plan_type} plan")

    return razorpay.create_subscription(
        plan_id=plan_id,
        total_count=1 if payload.plan_type == "yearly" else 12,
        customer_notify=1,
        notes={
            "user_id": payload.user_id,
            "startup_count": str(payload.startup_count),
            "trial_startup": "true",
            "plan_type": payload.plan_type,
        },
    )


@router.post("/verify")
def verify_payment(
    request: Request,
    body: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    return verify_payment_body(request, body, db, resolver)


@router.post("/stop-autopay")
def stop_autopay(
    payload: schemas.StopAutopayRequest,
    db: Session = Depends(get_db),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    if not payload.subscription_id or not payload.user_id:
        raise ValidationError("subscription_id and user_id are required")

    profile_id = resolver.resolve(payload.user_id)
    subscription = db.query(models.UserSubscription).filter(
        models.UserSubscription.id == payload.subscription_id,
        models.UserSubscription.user_id == profile_id,
    ).first()
    if not subscription:
        raise SubscriptionNotFound()

    if not subscription.autopay_enabled:
        return {"success": True, "message": "Auto-pay is already disabled", "already_disabled": True}

    razorpay_cancelled = False
    if subscription.razorpay_subscription_id:
        razorpay.require_razorpay_credentials()
        try:
            razorpay.cancel_subscription(subscription.razorpay_subscription_id, cancel_at_cycle_end=False)
            razorpay_cancelled = True
        except GatewayError as exc:
            logger.warning(
                "Razorpay cancellation failed, disabling locally subscription_id=%s razorpay_subscription_id=%s status=%s",
                subscription.id,
                subscription.razorpay_subscription_id,
                exc.gateway_status,
            )

    try:
        record_autopay_cancellation(db, subscription, reason="user_cancelled", initiated_by="user")
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not record autopay cancellation subscription_id=%s", subscription.id)
        raise HTTPException(status_code=500, detail="Failed to update subscription")

    logger.info("Autopay stopped subscription_id=%s razorpay_cancelled=%s", subscription.id, razorpay_cancelled)
    return {
        "success": True,
        "message": "Auto-pay has been stopped. Your subscription will continue until the current billing period ends.",
        "razorpay_cancelled": razorpay_cancelled,
        "subscription_id": subscription.id,
    }


def _event_entity(event: dict[str, Any], name: str) -> dict[str, Any]:
    container = (event.get("payload") or {}).get(name) or {}
    if not isinstance(container, dict):
        return {}
    entity = container.get("entity", container)
    return entity if isinstance(entity, dict) else {}


def _handle_subscription_activated(db: Session, event: dict[str, Any]) -> None:
    subscription = _event_entity(event, "subscription")
    customer_id = subscription.get("customer_id")
    user_id = (subscription.get("notes") or {}).get("user_id")
    logger.info(
        "Razorpay subscription activated subscription_id=%s customer_id=%s user_id=%s",
        subscription.get("id"),
        customer_id,
        user_id,
    )
    if not customer_id or not user_id:
        return

    try:
        user = db.get(models.User, user_id)
        if not user:
            logger.warning("Webhook user not found user_id=%s", user_id)
            return
        user.razorpay_customer_id = customer_id
        user.updated_at = utcnow()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not store Razorpay customer id user_id=%s", user_id)


def _log_subscription_event(db: Session, event: dict[str, Any]) -> None:
    subscription = _event_entity(event, "subscription")
    logger.info(
        "Razorpay webhook event=%s subscription_id=%s status=%s",
        event.get("event"),
        subscription.get("id"),
        subscription.get("status"),
    )


def _log_payment_failed(db: Session, event: dict[str, Any]) -> None:
    payment = _event_entity(event, "payment")
    logger.warning(
        "Razorpay payment failed payment_id=%s order_id=%s error=%s",
        payment.get("id"),
        payment.get("order_id"),
        payment.get("error_description"),
    )


WEBHOOK_EVENT_HANDLERS = {
    "subscription.activated": _handle_subscription_activated,
    "subscription.charged": _log_subscription_event,
    "subscription.paused": _log_subscription_event,
    "subscription.cancelled": _log_subscription_event,
    "payment.failed": _log_payment_failed,
}


@router.post("/webhook")
async def razorpay_webhook(request: Request, db: Session = Depends(get_db)):
    enforce_rate_limit(
        request,
        scope="razorpay-webhook",
        limit=WEBHOOK_RATE_LIMIT,
        window_seconds=WEBHOOK_RATE_WINDOW_SECONDS,
    )

    secret = razorpay.webhook_secret()
    if not secret:
        raise ServerConfigurationError("Webhook secret not configured")

    raw_body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    if not razorpay.verify_webhook_signature(raw_body, signature, secret):
        raise InvalidSignature("Invalid signature", status_code=401)

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid payload")
    if not isinstance(event, dict):
        raise ValidationError("Invalid payload")

    event_name = event.get("event")
    handler = WEBHOOK_EVENT_HANDLERS.get(event_name)
    if handler:
        handler(db, event)
    else:
        logger.info("Razorpay webhook event ignored event=%s", event_name)
    return {"ok": True}


@router.post("/cleanup-customer", response_model=schemas.CleanupCustomerResponse)
def cleanup_customer(payload: schemas.CleanupCustomerRequest):
    customer_id = (payload.customer_id or "").strip()
    if not customer_id:
        raise ValidationError("customer_id is required")
    razorpay.require_razorpay_credentials()

    cancelled: list[str] = []
    try:
        subscriptions = razorpay.list_customer_subscriptions(customer_id)
    except GatewayError as exc:
        logger.warning("Could not list subscriptions customer_id=%s status=%s", customer_id, exc.gateway_status)
        subscriptions = []
    for subscription in subscriptions:
        subscription_id = subscription.get("id")
        if not subscription_id:
            continue
        try:
            razorpay.cancel_subscription(subscription_id, cancel_at_cycle_end=False)
            cancelled.append(subscription_id)
        except GatewayError as exc:
            logger.warning("Could not cancel subscription subscription_id=%s status=%s", subscription_id, exc.gateway_status)

    deleted: list[str] = []
    try:
        tokens = razorpay.list_customer_tokens(customer_id)
    except GatewayError as exc:
        logger.warning("Could not list tokens customer_id=%s status=%s", customer_id, exc.gateway_status)
        tokens = []
    for token in tokens:
        token_id = token.get("id")
        if not token_id:
            continue
        try:
            razorpay.delete_customer_token(customer_id, token_id)
            deleted.append(token_id)
        except GatewayError as exc:
            logger.warning("Could not delete token token_id=%s status=%s", token_id, exc.gateway_status)

    logger.info(
        "Razorpay customer cleaned up customer_id=%s cancelled=%s deleted_tokens=%s",
        customer_id,
        len(cancelled),
        len(deleted),
    )
    return schemas.CleanupCustomerResponse(ok=True, cancelled_subscriptions=cancelled, deleted_tokens=deleted)
