import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tms_billing.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, nullable=True, index=True)
    razorpay_customer_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class Profile(Base):
    __tablename__ = "user_profiles"
    __table_args__ = (UniqueConstraint("auth_user_id", "role", name="uq_user_profiles_auth_user_role"),)

    id = Column(String, primary_key=True, default=_uuid)
    auth_user_id = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False)  # Startup, Investor, Mentor, Investment Advisor, Facilitator
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    firm_name = Column(String, nullable=True)
    startup_name = Column(String, nullable=True)
    investor_code = Column(String, nullable=True)
    advisor_code = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    plan_tier = Column(String, nullable=True)
    user_type = Column(String, nullable=True, index=True)
    billing_interval = Column(String, nullable=False, default="monthly")
    price = Column(Float, nullable=False, default=0)
    currency = Column(String, nullable=False, default="INR")
    is_active = Column(Boolean, default=True)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)  # canonical profile id
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    status = Column(String, nullable=False, default="active", index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    interval = Column(String, nullable=True)
    billing_interval = Column(String, nullable=True)
    is_in_trial = Column(Boolean, default=False)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    razorpay_subscription_id = Column(String, nullable=True, index=True)
    paypal_subscription_id = Column(String, nullable=True, index=True)
    payment_gateway = Column(String, nullable=True)
    autopay_enabled = Column(Boolean, default=False)
    mandate_status = Column(String, nullable=True)
    billing_cycle_count = Column(Integer, default=0)
    total_paid = Column(Float, default=0)
    last_billing_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    locked_amount_inr = Column(Float, nullable=True)
    country = Column(String, nullable=True)
    startup_count = Column(Integer, nullable=True)
    autopay_cancelled_at = Column(DateTime(timezone=True), nullable=True)
    autopay_cancellation_reason = Column(String, nullable=True)
    autopay_cancelled_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    plan = relationship("SubscriptionPlan")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        Index(
            "uq_payment_transactions_gateway_payment",
            "payment_gateway",
            "gateway_payment_id",
            unique=True,
        ),
    )

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("user_subscriptions.id"), nullable=True, index=True)
    payment_gateway = Column(String, nullable=False)
    gateway_order_id = Column(String, nullable=True)
    gateway_payment_id = Column(String, nullable=True, index=True)
    gateway_signature = Column(String, nullable=True)
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default="success")
    payment_type = Column(String, nullable=False, default="initial")  # initial, recurring
    plan_tier = Column(String, nullable=True)
    is_autopay = Column(Boolean, default=False)
    autopay_mandate_id = Column(String, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class BillingCycle(Base):
    __tablename__ = "billing_cycles"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String, ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False, default=1)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    payment_transaction_id = Column(String, ForeignKey("payment_transactions.id"), nullable=True)
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default="paid")
    plan_tier = Column(String, nullable=True)
    is_autopay = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AdvisorCredits(Base):
    __tablename__ = "advisor_credits"

    id = Column(Integer, primary_key=True, index=True)
    advisor_user_id = Column(String, nullable=False, unique=True, index=True)
    credits_available = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    credits_purchased = Column(Integer, nullable=False, default=0)
    last_purchase_amount = Column(Float, nullable=True)
    last_purchase_currency = Column(String, nullable=True)
    last_purchase_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class CreditPurchaseHistory(Base):
    __tablename__ = "credit_purchase_history"

    id = Column(Integer, primary_key=True, index=True)
    advisor_user_id = Column(String, nullable=False, index=True)
    credits_purchased = Column(Integer, nullable=False)
    amount_paid = Column(Float, nullable=False)
    currency = Column(String, nullable=False)
    payment_gateway = Column(String, nullable=False)
    payment_transaction_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # completed, failed
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MentorStartupAssignment(Base):
    __tablename__ = "mentor_startup_assignments"

    id = Column(Integer, primary_key=True, index=True)
    mentor_id = Column(String, nullable=True)
    startup_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending_payment")
    payment_status = Column(String, nullable=True)
    agreement_status = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MentorPayment(Base):
    __tablename__ = "mentor_payments"

    id = Column(Integer, primary_key=True, index=True)
    assignment_id = Column(Integer, ForeignKey("mentor_startup_assignments.id"), nullable=False, index=True)
    amount = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    payment_status = Column(String, nullable=False, default="pending")
    payment_date = Column(DateTime(timezone=True), nullable=True)
    razorpay_order_id = Column(String, nullable=True, index=True)
    razorpay_payment_id = Column(String, nullable=True)
    paypal_order_id = Column(String, nullable=True, index=True)
    notes = Column(Text, nullable=True)

    assignment = relationship("MentorStartupAssignment")


class RazorpayPlanCache(Base):
    __tablename__ = "razorpay_plans_cache"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(String, nullable=False, unique=True)
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    period = Column(String, nullable=False)
    interval_count = Column(Integer, nullable=False, default=1)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
