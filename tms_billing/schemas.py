from datetime import datetime
from typing import ClassVar, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field


class RazorpayCreateOrderRequest(BaseModel):
    amount: Optional[float] = None
    currency: str = "INR"
    receipt: Optional[str] = None
    amount_unit: Literal["major", "minor"] = "major"


class RazorpayCreateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = None
    amount: Optional[float] = None
    currency: str = "INR"
    interval: Literal["monthly", "yearly"] = "monthly"
    plan_name: str = "Startup Subscription"
    total_count: int = 12
    customer_notify: int = 1
    user_id: Optional[str] = None
    include_trial: bool = False
    trial_seconds: Optional[int] = None
    trial_days: Optional[int] = None


class RazorpayTrialSubscriptionRequest(BaseModel):
    user_id: Optional[str] = None
    plan_type: Literal["monthly", "yearly"] = "monthly"
    startup_count: int = 1


class StopAutopayRequest(BaseModel):
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None


class CleanupCustomerRequest(BaseModel):
    customer_id: Optional[str] = None


class CleanupCustomerResponse(BaseModel):
    ok: bool = True
    cancelled_subscriptions: List[str] = []
    deleted_tokens: List[str] = []


class PayPalCreateOrderRequest(BaseModel):
    amount: Optional[float] = None
    currency: str = "EUR"


class PayPalCreateSubscriptionRequest(BaseModel):
    user_id: Optional[str] = None
    final_amount: Optional[float] = None
    interval: Literal["monthly", "yearly"] = "monthly"
    plan_name: str = "Subscription Plan"
    currency: str = "EUR"


class AdvisorCreditsAddRequest(BaseModel):
    kind: Literal["advisor-credits-add"] = "advisor-credits-add"
    advisor_user_id: Optional[str] = None
    credits_to_add: Optional[int] = None
    amount_paid: Optional[float] = None
    currency: Optional[str] = None
    payment_gateway: Optional[str] = None
    payment_transaction_id: Optional[str] = None

    REQUIRED_FIELDS: ClassVar[Tuple[str, ...]] = (
        "advisor_user_id",
        "credits_to_add",
        "amount_paid",
        "currency",
        "payment_gateway",
        "payment_transaction_id",
    )

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]


class _LedgerFields(BaseModel):
    user_id: Optional[str] = None
    plan_id: Optional[int] = None
    amount: Optional[float] = None
    tax_percentage: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount_with_tax: Optional[float] = None
    interval: Optional[str] = None
    country: Optional[str] = None


class RazorpayVerifyRequest(_LedgerFields):
    kind: Literal["razorpay"] = "razorpay"
    razorpay_payment_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_subscription_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    currency: Optional[str] = None


class PayPalVerifyRequest(_LedgerFields):
    kind: Literal["paypal"] = "paypal"
    paypal_order_id: Optional[str] = None
    paypal_subscription_id: Optional[str] = None
    currency: Optional[str] = None


VerifyRequest = Union[AdvisorCreditsAddRequest, RazorpayVerifyRequest, PayPalVerifyRequest]


class SubscriptionStatusResponse(BaseModel):
    status: Optional[str] = None
    is_in_trial: bool = False
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


class RecordSubscriptionRequest(BaseModel):
    user_id: Optional[str] = None
    razorpay_subscription_id: Optional[str] = None
    plan_type: Literal["monthly", "yearly"] = "monthly"
    startup_count: int = Field(default=1, ge=1)


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    plan_id: Optional[int] = None
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    is_in_trial: bool = False
    razorpay_subscription_id: Optional[str] = None
    startup_count: Optional[int] = None

    class Config:
        from_attributes = True
