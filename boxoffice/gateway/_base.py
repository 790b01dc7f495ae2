from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..card import CardData


class ErrorCategory(str, Enum):
    DECLINED = "declined"
    INVALID_CARD = "invalid_card"
    EXPIRED_CARD = "expired_card"
    INVALID_CVC = "invalid_cvc"
    LOST_OR_STOLEN = "lost_or_stolen"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RATE_LIMITED = "rate_limited"
    PROCESSING_ERROR = "processing_error"


USER_MESSAGES = {
    ErrorCategory.DECLINED:
        "Your card was declined. Please check your card details or try a "
        "different card.",
    ErrorCategory.INVALID_CARD:
        "The card number you entered is invalid. Please check and try again.",
    ErrorCategory.EXPIRED_CARD:
        "Your card has expired. Please use a valid card.",
    ErrorCategory.INVALID_CVC:
        "The security code (CVC) you provided is incorrect.",
    ErrorCategory.LOST_OR_STOLEN:
        "This card has been reported as lost or stolen. Please use a "
        "different card.",
    ErrorCategory.INSUFFICIENT_FUNDS:
        "Your card does not have sufficient funds for this transaction.",
    ErrorCategory.RATE_LIMITED:
        "Too many requests. Please wait a moment and try again.",
    ErrorCategory.PROCESSING_ERROR:
        "There was an error processing your payment. Please try again.",
}

# first match wins; order matters ("lost_card" comes with a "declined"
# message, "insufficient_funds" too)
_KEYWORDS = (
    (("lost_card", "stolen_card", "lost", "stolen"),
     ErrorCategory.LOST_OR_STOLEN),
    (("insufficient_funds", "insufficient funds"),
     ErrorCategory.INSUFFICIENT_FUNDS),
    (("expired_card", "expired"), ErrorCategory.EXPIRED_CARD),
    (("incorrect_cvc", "invalid_cvc", "cvc", "security code"),
     ErrorCategory.INVALID_CVC),
    (("rate_limit", "too many requests"), ErrorCategory.RATE_LIMITED),
    (("card_declined", "generic_decline", "decline"),
     ErrorCategory.DECLINED),
    (("invalid_card", "incorrect_number", "invalid_number", "invalid"),
     ErrorCategory.INVALID_CARD),
)

ALREADY_REFUNDED_CODE = "charge_already_refunded"


def classify(message: Optional[str], code: Optional[str] = None) -> ErrorCategory:
    """
    Best-effort mapping of a raw gateway message/code onto our categories.
    Unmatched input falls through to PROCESSING_ERROR.
    """
    haystack = f"{code or ''} {message or ''}".lower()
    for keywords, category in _KEYWORDS:
        if any(k in haystack for k in keywords):
            return category
    return ErrorCategory.PROCESSING_ERROR


def user_message(category: ErrorCategory) -> str:
    return USER_MESSAGES[category]


class GatewayError(Exception):
    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        unreachable: bool = False,
    ):
        super().__init__(message)
        self.category = category
        self.message = message
        self.code = code
        self.status_code = status_code
        # timeout / connection failure: no answer from the gateway at all
        self.unreachable = unreachable

    @classmethod
    def from_raw(cls, message: Optional[str], code: Optional[str] = None,
                 status_code: Optional[int] = None) -> "GatewayError":
        return cls(classify(message, code), message or "unknown error",
                   code=code, status_code=status_code)

    @property
    def user_message(self) -> str:
        return user_message(self.category)


@dataclass(frozen=True)
class RefundResult:
    refund_id: Optional[str]
    already_refunded: bool = False


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    @abstractmethod
    async def tokenize(self, card: CardData) -> str:
        """Exchange raw card data for a single-use token id."""

    @abstractmethod
    async def charge(self, amount_minor: int, currency: str, token: str,
                     description: str) -> str:
        """Charge `amount_minor` (cents); returns the charge id."""

    @abstractmethod
    async def refund(self, charge_id: str) -> RefundResult:
        ...

    async def aclose(self) -> None:
        return None
