import hashlib
import hmac
import logging
import math
import os
from typing import Any

import requests
from sqlalchemy.orm import Session

from tms_billing import models
from tms_billing.errors import GatewayError, InvalidSignature, ServerConfigurationError, ValidationError

logger = logging.getLogger(__name__)

RAZORPAY_API_BASE = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").rstrip("/")
AMOUNT_UNIT_MAJOR = "major"
AMOUNT_UNIT_MINOR = "minor"


def _is_truthy(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def gateway_timeout_seconds() -> float:
    raw = os.getenv("GATEWAY_HTTP_TIMEOUT_SECONDS", "15").strip()
    try:
        timeout = float(raw)
        if timeout <= 0:
            raise ValueError
        return timeout
    except ValueError:
        return 15.0


def razorpay_credentials() -> tuple[str, str]:
    key_id = os.getenv("VITE_RAZORPAY_KEY_ID") or os.getenv("RAZORPAY_KEY_ID", "")
    key_secret = os.getenv("VITE_RAZORPAY_KEY_SECRET") or os.getenv("RAZORPAY_KEY_SECRET", "")
    return key_id.strip(), key_secret.strip()


def require_razorpay_credentials() -> tuple[str, str]:
    key_id, key_secret = razorpay_credentials()
    if not key_id or not key_secret:
        raise ServerConfigurationError("Razorpay keys not configured")
    return key_id, key_secret


def razorpay_key_secret() -> str:
    return razorpay_credentials()[1]


def webhook_secret() -> str:
    return os.getenv("RAZORPAY_WEBHOOK_SECRET", "").strip()


def lenient_subscription_signature_enabled() -> bool:
    return _is_truthy(os.getenv("RAZORPAY_LENIENT_SUBSCRIPTION_SIGNATURE", "true"))


def configured_plan_id(plan_type: str | None = None) -> str:
    if plan_type == "yearly":
        candidates = ("RAZORPAY_STARTUP_PLAN_ID_YEARLY", "RAZORPAY_STARTUP_PLAN_ID")
    elif plan_type == "monthly":
        candidates = ("RAZORPAY_STARTUP_PLAN_ID_MONTHLY", "RAZORPAY_STARTUP_PLAN_ID")
    else:
        candidates = ("RAZORPAY_STARTUP_PLAN_ID", "RAZORPAY_STARTUP_PLAN_ID_MONTHLY")
    for name in candidates:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return ""


def razorpay_request(
    method: str,
    path: str,
    json_payload: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
    credentials: tuple[str, str] | None = None,
) -> dict[str, Any]:
    key_id, key_secret = credentials or require_razorpay_credentials()
    url = f"{RAZORPAY_API_BASE}/{path.lstrip('/')}"
    try:
        response = requests.request(
            method=method.upper(),
            url=url,
            auth=(key_id, key_secret),
            json=json_payload,
            params=params,
            timeout=gateway_timeout_seconds(),
        )
    except requests.RequestException as exc:
        raise GatewayError(f"Failed to contact Razorpay: {str(exc)}")

    if response.status_code >= 400:
        logger.warning("Razorpay request failed method=%s path=%s status=%s", method, path, response.status_code)
        raise GatewayError(response.text, gateway_status=response.status_code)

    if not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError:
        raise GatewayError("Invalid response received from Razorpay.", gateway_status=response.status_code)

    if not isinstance(payload, dict):
        raise GatewayError("Unexpected response format from Razorpay.", gateway_status=response.status_code)
    return payload


def to_minor_units(amount: float, amount_unit: str = AMOUNT_UNIT_MAJOR) -> int:
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Invalid amount")
    if amount_unit == AMOUNT_UNIT_MINOR:
        if int(amount) != amount:
            raise ValidationError("Minor-unit amounts must be whole numbers")
        return int(amount)
    if amount_unit != AMOUNT_UNIT_MAJOR:
        raise ValidationError(f"Unsupported amount unit: {amount_unit}")
    minor = int(round(amount * 100))
    if minor <= 0:
        raise ValidationError("Invalid amount")
    return minor


def create_order(
    amount: float,
    currency: str = "INR",
    receipt: str | None = None,
    amount_unit: str = AMOUNT_UNIT_MAJOR,
) -> dict[str, Any]:
    amount_minor = to_minor_units(amount, amount_unit)
    credentials = require_razorpay_credentials()
    order = razorpay_request(
        method="POST",
        path="/orders",
        credentials=credentials,
        json_payload={
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        },
    )
    logger.info("Razorpay order created order_id=%s amount=%s currency=%s", order.get("id"), amount_minor, currency)
    return order


def create_subscription(
    plan_id: str,
    total_count: int = 12,
    customer_notify: int = 1,
    notes: dict[str, Any] | None = None,
    trial_period: int | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "plan_id": plan_id,
        "total_count": total_count,
        "customer_notify": customer_notify,
        "notes": notes or {},
    }
    if trial_period is not None:
        payload["trial_period"] = trial_period
    subscription = razorpay_request(method="POST", path="/subscriptions", json_payload=payload)
    logger.info("Razorpay subscription created subscription_id=%s plan_id=%s", subscription.get("id"), plan_id)
    return subscription


def get_or_create_plan(
    db: Session,
    amount_paise: int,
    period: str,
    name: str,
    currency: str = "INR",
    interval_count: int = 1,
) -> str:
    if not amount_paise or amount_paise <= 0:
        raise ValidationError("Invalid amount for plan")
    credentials = require_razorpay_credentials()

    cached = db.query(models.RazorpayPlanCache).filter(
        models.RazorpayPlanCache.amount_paise == amount_paise,
        models.RazorpayPlanCache.currency == currency,
        models.RazorpayPlanCache.period == period,
        models.RazorpayPlanCache.interval_count == interval_count,
    ).first()
    if cached and cached.plan_id:
        return cached.plan_id

    plan = razorpay_request(
        method="POST",
        path="/plans",
        credentials=credentials,
        json_payload={
            "period": period,
            "interval": interval_count,
            "item": {"name": name, "amount": amount_paise, "currency": currency},
        },
    )
    plan_id = str(plan.get("id") or "").strip()
    if not plan_id:
        raise GatewayError("Invalid plan response from Razorpay.")

    try:
        db.add(
            models.RazorpayPlanCache(
                plan_id=plan_id,
                amount_paise=amount_paise,
                currency=currency,
                period=period,
                interval_count=interval_count,
                name=name,
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not cache Razorpay plan plan_id=%s", plan_id)
    return plan_id


def cancel_subscription(subscription_id: str, cancel_at_cycle_end: bool = False) -> dict[str, Any]:
    return razorpay_request(
        method="POST",
        path=f"/subscriptions/{subscription_id}/cancel",
        json_payload={"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0},
    )


def list_customer_subscriptions(customer_id: str, status: str = "active") -> list[dict[str, Any]]:
    data = razorpay_request(
        method="GET",
        path="/subscriptions",
        params={"customer_id": customer_id, "status": status},
    )
    items = data.get("items")
    return items if isinstance(items, list) else []


def list_customer_tokens(customer_id: str) -> list[dict[str, Any]]:
    data = razorpay_request(method="GET", path=f"/customers/{customer_id}/tokens")
    items = data.get("items")
    return items if isinstance(items, list) else []


def delete_customer_token(customer_id: str, token_id: str) -> None:
    razorpay_request(method="DELETE", path=f"/customers/{customer_id}/tokens/{token_id}")


def compute_signature(secret: str, message: str | bytes) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    key_secret: str,
    payment_id: str,
    signature: str,
    order_id: str | None = None,
    subscription_id: str | None = None,
) -> bool:
    """
    Check a checkout signature. The canonical payload is
    `order_or_subscription_id|payment_id`; subscription checkouts may instead
    sign the payment id alone.
    """
    order_or_subscription_id = order_id or subscription_id
    if not order_or_subscription_id:
        return False
    expected = compute_signature(key_secret, f"{order_or_subscription_id}|{payment_id}")
    if hmac.compare_digest(expected, signature or ""):
        return True
    if subscription_id:
        alternate = compute_signature(key_secret, payment_id)
        if hmac.compare_digest(alternate, signature or ""):
            return True
    return False


def ensure_payment_signature(
    key_secret: str,
    payment_id: str,
    signature: str,
    order_id: str | None = None,
    subscription_id: str | None = None,
) -> bool:
    """
    Returns True when the signature matched, False when a subscription payment
    is let through despite a mismatch. Raises InvalidSignature otherwise.
    """
    if verify_payment_signature(key_secret, payment_id, signature, order_id, subscription_id):
        return True
    if subscription_id and lenient_subscription_signature_enabled():
        logger.warning(
            "Subscription payment signature verification failed, proceeding payment_id=%s subscription_id=%s",
            payment_id,
            subscription_id,
        )
        return False
    raise InvalidSignature("Invalid payment signature")


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip())
