# gateway/__init__.py
from typing import Optional

import httpx

from ..config import Settings
from ._base import (
    ErrorCategory, GatewayError, PaymentGateway, RefundResult, classify,
    user_message,
)
from ._mock import MockGateway
from ._stripe import StripeGateway


# Factory keeps server.py simple and constructor-agnostic:
def new_gateway(settings: Settings,
                http: Optional[httpx.AsyncClient] = None) -> PaymentGateway:
    if settings.gateway_backend == "stripe":
        if not settings.gateway_api_key:
            raise RuntimeError("StripeGateway requires GATEWAY_API_KEY")
        return StripeGateway(
            api_key=settings.gateway_api_key,
            base_url=settings.gateway_url,
            timeout=settings.gateway_timeout,
            http=http,
        )
    if settings.gateway_backend == "mock":
        return MockGateway()
    raise RuntimeError(
        f"unknown GATEWAY_BACKEND: {settings.gateway_backend!r}"
    )


__all__ = [
    "PaymentGateway", "GatewayError", "ErrorCategory", "RefundResult",
    "MockGateway", "StripeGateway", "classify", "user_message",
    "new_gateway",
]
