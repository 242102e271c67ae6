from fastapi import APIRouter

from tms_billing import schemas
from tms_billing.gateways.paypal import PayPalClient

router = APIRouter(prefix="/api/paypal", tags=["paypal"])


@router.post("/create-order")
def create_order(payload: schemas.PayPalCreateOrderRequest):
    order = PayPalClient().create_order(payload.amount, currency=payload.currency)
    return {"orderId": order.get("id")}


@router.post("/create-subscription")
def create_subscription(payload: schemas.PayPalCreateSubscriptionRequest):
    subscription = PayPalClient().create_subscription(
        final_amount=payload.final_amount,
        interval=payload.interval,
        plan_name=payload.plan_name,
        currency=payload.currency,
        customer_ref=payload.user_id,
    )
    return {"subscriptionId": subscription.get("id"), "status": subscription.get("status")}
