from __future__ import annotations
import uuid
from typing import Dict, List, Optional, Set

import structlog

from ..card import CardData, digits_only
from ._base import (
    ALREADY_REFUNDED_CODE, GatewayError, PaymentGateway, RefundResult,
)

logger = structlog.get_logger(__name__)

# Stripe's documented test cards; anything else that passes Luhn succeeds.
# number -> (raw message, code) returned on charge
TEST_CARD_FAILURES = {
    "4000000000000002": ("Your card was declined.", "card_declined"),
    "4000000000009995": ("Your card has insufficient funds.",
                         "insufficient_funds"),
    "4000000000000069": ("Your card has expired.", "expired_card"),
    "4000000000000127": ("Your card's security code is incorrect.",
                         "incorrect_cvc"),
    "4000000000009987": ("Your card was declined.", "lost_card"),
    "4000000000009979": ("Your card was declined.", "stolen_card"),
}


# ----------------------------
# MockPay implementation
# ----------------------------
class MockGateway(PaymentGateway):
    """
    In-process gateway for development and tests.

    Keeps a ledger of charges and refunds so callers can assert on what
    happened, and lets tests queue failures per operation with `fail_next`.
    """

    def __init__(self) -> None:
        # token -> failure the charge should produce (None = succeed)
        self._tokens: Dict[str, Optional[tuple]] = {}
        self._failures: Dict[str, List[Exception]] = {}
        self.charges: List[dict] = []
        self.refunds: List[str] = []
        self._refunded: Set[str] = set()

    def fail_next(self, op: str, error: Exception) -> None:
        """Queue `error` to be raised by the next call to `op`."""
        self._failures.setdefault(op, []).append(error)

    def _maybe_fail(self, op: str) -> None:
        queued = self._failures.get(op)
        if queued:
            raise queued.pop(0)

    async def tokenize(self, card: CardData) -> str:
        self._maybe_fail("tokenize")
        tok = f"tok_mock_{uuid.uuid4().hex}"
        self._tokens[tok] = TEST_CARD_FAILURES.get(digits_only(card.number))
        return tok

    async def charge(self, amount_minor: int, currency: str, token: str,
                     description: str) -> str:
        self._maybe_fail("charge")
        if token not in self._tokens:
            raise GatewayError.from_raw("No such token", "invalid_token",
                                        status_code=400)
        failure = self._tokens.pop(token)  # single use
        if failure is not None:
            message, code = failure
            raise GatewayError.from_raw(message, code, status_code=402)
        charge_id = f"ch_mock_{uuid.uuid4().hex}"
        self.charges.append({
            "id": charge_id,
            "amount": int(amount_minor),
            "currency": currency.lower(),
            "description": description,
        })
        return charge_id

    async def refund(self, charge_id: str) -> RefundResult:
        self._maybe_fail("refund")
        self.refunds.append(charge_id)
        if charge_id in self._refunded:
            logger.info("gateway_refund_duplicate", charge_id=charge_id,
                        code=ALREADY_REFUNDED_CODE)
            return RefundResult(refund_id=None, already_refunded=True)
        if not any(c["id"] == charge_id for c in self.charges):
            raise GatewayError.from_raw(
                f"No such charge: {charge_id}", "resource_missing",
                status_code=404,
            )
        self._refunded.add(charge_id)
        return RefundResult(refund_id=f"re_mock_{uuid.uuid4().hex}")

    def is_refunded(self, charge_id: str) -> bool:
        return charge_id in self._refunded
