"""
Stripe-style REST gateway over httpx.

Talks form-encoded POSTs to /tokens, /charges and /refunds with bearer auth.
Every transport problem (timeouts included) is turned into a GatewayError so
the checkout flow only ever has to handle one exception type.
"""
from __future__ import annotations
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from ..card import CardData, card_brand, digits_only, last_four
from ._base import (
    ALREADY_REFUNDED_CODE, ErrorCategory, GatewayError, PaymentGateway,
    RefundResult,
)

logger = structlog.get_logger(__name__)


class StripeGateway(PaymentGateway):
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com/v1",
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _post(
        self, path: str, data: Dict[str, Any]
    ) -> Tuple[int, Dict[str, Any]]:
        try:
            r = await self.http.post(
                f"{self.base_url}{path}",
                data=data,
                headers={"authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", path=path, error=str(e))
            raise GatewayError(
                ErrorCategory.PROCESSING_ERROR, "gateway timeout",
                code="timeout", unreachable=True,
            ) from e
        except httpx.HTTPError as e:
            logger.warning("gateway_unreachable", path=path, error=str(e))
            raise GatewayError(
                ErrorCategory.PROCESSING_ERROR, f"gateway unreachable: {e}",
                code="network_error", unreachable=True,
            ) from e

        try:
            body = r.json()
        except ValueError as e:
            raise GatewayError(
                ErrorCategory.PROCESSING_ERROR,
                f"undecodable gateway response (HTTP {r.status_code})",
                status_code=r.status_code,
            ) from e
        if not isinstance(body, dict):
            body = {}
        return r.status_code, body

    @staticmethod
    def _error(status: int, body: Dict[str, Any], fallback: str) -> GatewayError:
        err = body.get("error") or {}
        message = err.get("message") or fallback
        code = err.get("decline_code") or err.get("code")
        if status in (401, 403) or status >= 500:
            # our credentials or their outage; nothing the customer did
            return GatewayError(
                ErrorCategory.PROCESSING_ERROR, message, code=code,
                status_code=status,
            )
        return GatewayError.from_raw(message, code, status_code=status)

    async def tokenize(self, card: CardData) -> str:
        status, body = await self._post("/tokens", {
            "card[number]": digits_only(card.number),
            "card[exp_month]": str(card.exp_month),
            "card[exp_year]": str(card.exp_year),
            "card[cvc]": str(card.cvc),
            "card[name]": card.name,
        })
        if status == 200 and body.get("id"):
            return body["id"]
        err = self._error(status, body, "Card validation failed")
        logger.info(
            "gateway_tokenize_failed",
            brand=card_brand(card.number), last_four=last_four(card.number),
            category=err.category.value, code=err.code,
        )
        raise err

    async def charge(self, amount_minor: int, currency: str, token: str,
                     description: str) -> str:
        status, body = await self._post("/charges", {
            "amount": int(amount_minor),
            "currency": currency.lower(),
            "source": token,
            "description": description,
        })
        if status == 200 and body.get("id") and body.get("paid") is True:
            return body["id"]
        err = self._error(status, body, "Payment failed")
        logger.info(
            "gateway_charge_failed",
            amount_minor=amount_minor, currency=currency,
            category=err.category.value, code=err.code,
        )
        raise err

    async def refund(self, charge_id: str) -> RefundResult:
        status, body = await self._post("/refunds", {"charge": charge_id})
        if status in (200, 201) and body.get("id"):
            return RefundResult(refund_id=body["id"])
        err = body.get("error") or {}
        if err.get("code") == ALREADY_REFUNDED_CODE:
            logger.info("gateway_refund_duplicate", charge_id=charge_id)
            return RefundResult(refund_id=None, already_refunded=True)
        raise self._error(status, body, "Refund failed")
