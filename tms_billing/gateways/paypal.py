import logging
import math
import os
from typing import Any

import requests

from tms_billing.errors import GatewayError, ServerConfigurationError, ValidationError
from tms_billing.gateways.razorpay import gateway_timeout_seconds

logger = logging.getLogger(__name__)

PAYPAL_LIVE_API_BASE = "https://api-m.paypal.com"
PAYPAL_SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"

ORDER_STATUS_COMPLETED = "COMPLETED"
VERIFIABLE_SUBSCRIPTION_STATUSES = {"ACTIVE", "APPROVAL_PENDING"}


def paypal_credentials() -> tuple[str, str]:
    client_id = os.getenv("VITE_PAYPAL_CLIENT_ID") or os.getenv("PAYPAL_CLIENT_ID", "")
    client_secret = os.getenv("VITE_PAYPAL_CLIENT_SECRET") or os.getenv("PAYPAL_CLIENT_SECRET", "")
    return client_id.strip(), client_secret.strip()


def require_paypal_credentials() -> tuple[str, str]:
    client_id, client_secret = paypal_credentials()
    if not client_id or not client_secret:
        raise ServerConfigurationError("PayPal credentials not configured")
    return client_id, client_secret


def paypal_api_base() -> str:
    environment = os.getenv("PAYPAL_ENVIRONMENT") or os.getenv("VITE_PAYPAL_ENVIRONMENT", "")
    if environment.strip().lower() == "production":
        return PAYPAL_LIVE_API_BASE
    return PAYPAL_SANDBOX_API_BASE


def paypal_brand_name() -> str:
    return os.getenv("PAYPAL_BRAND_NAME", "TrackMyStartup").strip() or "TrackMyStartup"


def is_chargeable_amount(amount: float | None) -> bool:
    return amount is not None and math.isfinite(amount) and amount > 0


def format_amount(amount: float) -> str:
    return f"{float(amount):.2f}"


class PayPalClient:
    """
    Thin wrapper over the PayPal REST API. One instance per request; the
    access token is fetched lazily and reused for the calls of that request.
    """

    def __init__(self, client_id: str | None = None, client_secret: str | None = None, base_url: str | None = None):
        if client_id is None or client_secret is None:
            client_id, client_secret = require_paypal_credentials()
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = (base_url or paypal_api_base()).rstrip("/")
        self._access_token: str | None = None

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            return requests.request(method=method.upper(), url=url, timeout=gateway_timeout_seconds(), **kwargs)
        except requests.RequestException as exc:
            raise GatewayError(f"Failed to contact PayPal: {str(exc)}")

    def access_token(self) -> str:
        if self._access_token:
            return self._access_token
        response = self._send(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data="grant_type=client_credentials",
        )
        if response.status_code >= 400:
            logger.error("PayPal token request failed status=%s", response.status_code)
            raise GatewayError("Failed to get PayPal access token", gateway_status=response.status_code)
        try:
            token = str(response.json().get("access_token") or "")
        except ValueError:
            token = ""
        if not token:
            raise GatewayError("Failed to get PayPal access token", gateway_status=response.status_code)
        self._access_token = token
        return token

    def request(self, method: str, path: str, json_payload: dict[str, Any] | None = None) -> requests.Response:
        return self._send(
            method,
            path,
            json=json_payload,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.access_token()}",
            },
        )

    def _json_or_error(self, response: requests.Response, error_detail: str) -> dict[str, Any]:
        if response.status_code >= 400:
            logger.error("%s status=%s body=%s", error_detail, response.status_code, response.text)
            raise GatewayError(response.text or error_detail, gateway_status=response.status_code)
        try:
            payload = response.json()
        except ValueError:
            raise GatewayError("Invalid response received from PayPal.", gateway_status=response.status_code)
        if not isinstance(payload, dict):
            raise GatewayError("Unexpected response format from PayPal.", gateway_status=response.status_code)
        return payload

    def create_order(self, amount: float, currency: str = "EUR") -> dict[str, Any]:
        if not is_chargeable_amount(amount):
            raise ValidationError("Invalid amount")
        response = self.request(
            "POST",
            "/v2/checkout/orders",
            json_payload={
                "intent": "CAPTURE",
                "purchase_units": [
                    {"amount": {"currency_code": currency, "value": format_amount(amount)}},
                ],
            },
        )
        order = self._json_or_error(response, "Failed to create PayPal order")
        logger.info("PayPal order created order_id=%s", order.get("id"))
        return order

    def get_order(self, order_id: str) -> requests.Response:
        return self.request("GET", f"/v2/checkout/orders/{order_id}")

    def capture_order(self, order_id: str) -> requests.Response:
        return self.request("POST", f"/v2/checkout/orders/{order_id}/capture")

    def get_subscription(self, subscription_id: str) -> requests.Response:
        return self.request("GET", f"/v1/billing/subscriptions/{subscription_id}")

    def create_product(self, plan_name: str) -> str:
        response = self.request(
            "POST",
            "/v1/catalogs/products",
            json_payload={
                "name": plan_name,
                "description": f"Subscription for {plan_name}",
                "type": "SERVICE",
                "category": "SOFTWARE",
            },
        )
        return str(self._json_or_error(response, "Failed to create PayPal product").get("id") or "")

    def create_billing_plan(
        self,
        product_id: str,
        plan_name: str,
        interval: str,
        amount: float,
        currency: str,
    ) -> str:
        interval_unit = "YEAR" if interval == "yearly" else "MONTH"
        response = self.request(
            "POST",
            "/v1/billing/plans",
            json_payload={
                "product_id": product_id,
                "name": f"{plan_name} ({interval})",
                "description": f"Recurring {interval} subscription for {plan_name}",
                "status": "ACTIVE",
                "billing_cycles": [
                    {
                        "frequency": {"interval_unit": interval_unit, "interval_count": 1},
                        "tenure_type": "REGULAR",
                        "sequence": 1,
                        "total_cycles": 0,
                        "pricing_scheme": {
                            "fixed_price": {"value": format_amount(amount), "currency_code": currency},
                        },
                    }
                ],
                "payment_preferences": {
                    "auto_bill_outstanding": True,
                    "setup_fee_failure_action": "CANCEL",
                    "payment_failure_threshold": 3,
                },
            },
        )
        return str(self._json_or_error(response, "Failed to create PayPal billing plan").get("id") or "")

    def deactivate_billing_plan(self, plan_id: str) -> bool:
        response = self.request("POST", f"/v1/billing/plans/{plan_id}/deactivate")
        return response.status_code < 400

    def create_billing_subscription(self, plan_id: str, custom_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "plan_id": plan_id,
            "application_context": {
                "brand_name": paypal_brand_name(),
                "user_action": "SUBSCRIBE_NOW",
            },
        }
        if custom_id:
            payload["custom_id"] = custom_id
        response = self.request("POST", "/v1/billing/subscriptions", json_payload=payload)
        return self._json_or_error(response, "Failed to create PayPal subscription")

    def create_subscription(
        self,
        final_amount: float,
        interval: str = "monthly",
        plan_name: str = "Subscription Plan",
        currency: str = "EUR",
        customer_ref: str | None = None,
    ) -> dict[str, Any]:
        """
        Product -> billing plan -> subscription. A failure after the plan
        exists deactivates the plan; products cannot be deleted on PayPal so a
        product created before a failure is only reported.
        """
        if not is_chargeable_amount(final_amount):
            raise ValidationError("Invalid amount")

        product_id = self.create_product(plan_name)
        try:
            plan_id = self.create_billing_plan(product_id, plan_name, interval, final_amount, currency)
        except GatewayError:
            logger.warning("PayPal product left without a billing plan product_id=%s", product_id)
            raise

        try:
            subscription = self.create_billing_subscription(plan_id, custom_id=customer_ref)
        except GatewayError:
            try:
                deactivated = self.deactivate_billing_plan(plan_id)
            except GatewayError:
                deactivated = False
            logger.warning(
                "PayPal subscription creation failed, compensated plan_id=%s deactivated=%s product_id=%s",
                plan_id,
                deactivated,
                product_id,
            )
            raise

        logger.info(
            "PayPal subscription created subscription_id=%s plan_id=%s status=%s",
            subscription.get("id"),
            plan_id,
            subscription.get("status"),
        )
        return subscription
