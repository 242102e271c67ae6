import logging
import os
from typing import Any

import pydantic
from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from tms_billing import ledger
from tms_billing.database import get_db
from tms_billing.errors import ServerConfigurationError, ValidationError
from tms_billing.gateways.paypal import ORDER_STATUS_COMPLETED, VERIFIABLE_SUBSCRIPTION_STATUSES, PayPalClient
from tms_billing.gateways.razorpay import ensure_payment_signature, razorpay_key_secret
from tms_billing.identity import IdentityResolver, get_identity_resolver
from tms_billing.mentor_payments import complete_mentor_payment, find_mentor_payment
from tms_billing.routers.advisor import handle_advisor_credits_add
from tms_billing.schemas import (
    AdvisorCreditsAddRequest,
    PayPalVerifyRequest,
    RazorpayVerifyRequest,
    VerifyRequest,
)
from tms_billing.utils.rate_limiter import enforce_rate_limit

router = APIRouter(prefix="/api/payment", tags=["payment"])
logger = logging.getLogger(__name__)

VERIFY_RATE_LIMIT = int(os.getenv("PAYMENT_VERIFY_RATE_LIMIT", "30"))
VERIFY_RATE_WINDOW_SECONDS = int(os.getenv("PAYMENT_VERIFY_RATE_LIMIT_WINDOW_SECONDS", "900"))

PROVIDER_RAZORPAY = "razorpay"
PROVIDER_PAYPAL = "paypal"
ADVISOR_CREDITS_ENDPOINT = "advisor-credits-add"


def _detect_provider(body: dict[str, Any]) -> str:
    if any(key.startswith("paypal_") and body.get(key) for key in body):
        if not any(key.startswith("razorpay_") and body.get(key) for key in body):
            return PROVIDER_PAYPAL
    return PROVIDER_RAZORPAY


def classify_verify_request(body: dict[str, Any]) -> VerifyRequest:
    """Pick the verify variant a raw body describes and validate it."""
    if body.get("endpoint") == ADVISOR_CREDITS_ENDPOINT or body.get("advisor_user_id"):
        model = AdvisorCreditsAddRequest
    else:
        provider = body.get("provider") or _detect_provider(body)
        if provider == PROVIDER_RAZORPAY:
            model = RazorpayVerifyRequest
        elif provider == PROVIDER_PAYPAL:
            model = PayPalVerifyRequest
        else:
            raise ValidationError("Invalid payment provider")

    fields = {key: value for key, value in body.items() if key in model.model_fields and key != "kind"}
    try:
        return model.model_validate(fields)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]
        )


def _record_payment_safe(db: Session, **kwargs) -> tuple[bool, str | None]:
    """Ledger writes never fail a verified payment; the caller only learns whether it stuck."""
    try:
        subscription = ledger.record_verified_payment(db, **kwargs)
    except Exception:
        logger.exception(
            "Subscription persistence failed profile_id=%s gateway=%s payment_id=%s",
            kwargs.get("profile_id"),
            kwargs.get("gateway"),
            kwargs.get("gateway_payment_id"),
        )
        return False, None
    if subscription is None:
        return False, None
    return True, subscription.id


def _complete_mentor_payment_or_500(db: Session, assignment_id: int, payment_id: str, is_razorpay: bool) -> dict:
    if not complete_mentor_payment(db, assignment_id, payment_id, is_razorpay):
        raise HTTPException(status_code=500, detail="Failed to complete mentor payment")
    return {"success": True, "message": "Mentor payment verified and completed", "payment_id": payment_id}


def _ledger_kwargs(payload: RazorpayVerifyRequest | PayPalVerifyRequest) -> dict[str, Any]:
    return {
        "plan_id": payload.plan_id,
        "amount": payload.amount,
        "currency": payload.currency,
        "interval": payload.interval,
        "country": payload.country,
        "tax_percentage": payload.tax_percentage,
        "tax_amount": payload.tax_amount,
        "total_amount_with_tax": payload.total_amount_with_tax,
    }


def verify_razorpay_payment(payload: RazorpayVerifyRequest, db: Session, resolver: IdentityResolver) -> dict:
    payment_id = payload.razorpay_payment_id
    order_id = payload.razorpay_order_id
    subscription_id = payload.razorpay_subscription_id

    if not payment_id or not payload.razorpay_signature:
        raise ValidationError("Missing payment verification data")
    if not order_id and not subscription_id:
        raise ValidationError("Missing order_id or subscription_id for payment verification")

    key_secret = razorpay_key_secret()
    if not key_secret:
        raise ServerConfigurationError("Razorpay secret not configured")

    signature_matched = ensure_payment_signature(
        key_secret,
        payment_id,
        payload.razorpay_signature,
        order_id=order_id,
        subscription_id=subscription_id,
    )

    if order_id and not subscription_id:
        mentor_payment = find_mentor_payment(db, razorpay_order_id=order_id)
        if mentor_payment:
            return _complete_mentor_payment_or_500(db, mentor_payment.assignment_id, payment_id, is_razorpay=True)

    recorded, recorded_subscription_id = False, None
    if payload.user_id and payload.plan_id:
        profile_id = resolver.resolve(payload.user_id)
        recorded, recorded_subscription_id = _record_payment_safe(
            db,
            profile_id=profile_id,
            gateway=PROVIDER_RAZORPAY,
            gateway_order_id=order_id or subscription_id,
            gateway_payment_id=payment_id,
            gateway_signature=payload.razorpay_signature,
            razorpay_subscription_id=subscription_id,
            is_autopay=bool(subscription_id),
            **_ledger_kwargs(payload),
        )

    logger.info(
        "Razorpay payment verified payment_id=%s signature_matched=%s subscription_recorded=%s",
        payment_id,
        signature_matched,
        recorded,
    )
    return {
        "success": True,
        "message": "Payment verified",
        "subscription_recorded": recorded,
        "subscription_id": recorded_subscription_id,
    }


def _verify_paypal_subscription(
    client: PayPalClient,
    payload: PayPalVerifyRequest,
    db: Session,
    resolver: IdentityResolver,
) -> dict:
    subscription_id = payload.paypal_subscription_id
    response = client.get_subscription(subscription_id)
    if response.status_code >= 400:
        logger.warning("PayPal subscription lookup failed subscription_id=%s status=%s", subscription_id, response.status_code)
        raise ValidationError("Invalid PayPal subscription")

    status = response.json().get("status")
    if status not in VERIFIABLE_SUBSCRIPTION_STATUSES:
        raise ValidationError({"error": "PayPal subscription is not active", "status": status})

    recorded, recorded_subscription_id = False, None
    if payload.user_id and payload.plan_id:
        profile_id = resolver.resolve(payload.user_id)
        recorded, recorded_subscription_id = _record_payment_safe(
            db,
            profile_id=profile_id,
            gateway=PROVIDER_PAYPAL,
            gateway_order_id=subscription_id,
            gateway_payment_id=subscription_id,
            paypal_subscription_id=subscription_id,
            is_autopay=True,
            **_ledger_kwargs(payload),
        )

    logger.info("PayPal subscription verified subscription_id=%s status=%s", subscription_id, status)
    return {
        "success": True,
        "message": "PayPal subscription verified",
        "status": status,
        "subscription_recorded": recorded,
        "subscription_id": recorded_subscription_id,
    }


def verify_paypal_payment(payload: PayPalVerifyRequest, db: Session, resolver: IdentityResolver) -> dict:
    client = PayPalClient()
    client.access_token()

    if payload.paypal_subscription_id:
        return _verify_paypal_subscription(client, payload, db, resolver)

    order_id = payload.paypal_order_id
    if not order_id:
        raise ValidationError("Missing PayPal order or subscription id")

    response = client.get_order(order_id)
    if response.status_code >= 400:
        logger.warning("PayPal order lookup failed order_id=%s status=%s", order_id, response.status_code)
        raise ValidationError("Invalid PayPal order")

    if response.json().get("status") != ORDER_STATUS_COMPLETED:
        capture = client.capture_order(order_id)
        if capture.status_code >= 400:
            logger.warning("PayPal capture failed order_id=%s status=%s", order_id, capture.status_code)
            raise ValidationError("Failed to capture PayPal payment")

    mentor_payment = find_mentor_payment(db, paypal_order_id=order_id)
    if mentor_payment:
        return _complete_mentor_payment_or_500(db, mentor_payment.assignment_id, order_id, is_razorpay=False)

    recorded, recorded_subscription_id = False, None
    if payload.user_id and payload.plan_id:
        profile_id = resolver.resolve(payload.user_id)
        recorded, recorded_subscription_id = _record_payment_safe(
            db,
            profile_id=profile_id,
            gateway=PROVIDER_PAYPAL,
            gateway_order_id=order_id,
            gateway_payment_id=order_id,
            is_autopay=False,
            **_ledger_kwargs(payload),
        )

    logger.info("PayPal order verified order_id=%s subscription_recorded=%s", order_id, recorded)
    return {
        "success": True,
        "message": "Payment verified",
        "subscription_recorded": recorded,
        "subscription_id": recorded_subscription_id,
    }


def dispatch_verify(payload: VerifyRequest, db: Session, resolver: IdentityResolver) -> dict:
    if isinstance(payload, AdvisorCreditsAddRequest):
        return handle_advisor_credits_add(payload, db)
    if isinstance(payload, PayPalVerifyRequest):
        return verify_paypal_payment(payload, db, resolver)
    return verify_razorpay_payment(payload, db, resolver)


def verify_payment_body(
    request: Request,
    body: dict[str, Any],
    db: Session,
    resolver: IdentityResolver,
) -> dict:
    enforce_rate_limit(
        request,
        scope="payment-verify",
        limit=VERIFY_RATE_LIMIT,
        window_seconds=VERIFY_RATE_WINDOW_SECONDS,
    )
    return dispatch_verify(classify_verify_request(body), db, resolver)


@router.post("/verify")
def verify_payment(
    request: Request,
    body: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    return verify_payment_body(request, body, db, resolver)
