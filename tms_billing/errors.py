"""
HTTP error taxonomy shared by the payment routers and gateway adapters.
"""
from typing import Any

from fastapi import HTTPException, status


class ValidationError(HTTPException):
    def __init__(self, detail: Any = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ServerConfigurationError(HTTPException):
    def __init__(self, detail: Any = "Server configuration error"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


class GatewayError(HTTPException):
    """
    Upstream gateway failure. `detail` carries the gateway's own body where it
    could be read, and `gateway_status` the HTTP status it answered with.
    """

    def __init__(self, detail: Any, gateway_status: int | None = None):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
        self.gateway_status = gateway_status


class InvalidSignature(HTTPException):
    def __init__(self, detail: Any = "Invalid signature", status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(status_code=status_code, detail=detail)


class ProfileNotFound(HTTPException):
    def __init__(self, detail: Any = "Profile not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class SubscriptionNotFound(HTTPException):
    def __init__(self, detail: Any = "Subscription not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
