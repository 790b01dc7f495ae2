"""
Card data checks done before anything is sent to the gateway.

Everything here is pure: no I/O, no logging, no state. The gateway has the
final say on whether a card is real; these checks only catch typos early.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

FIELD_NAMES = {
    "number": "card number",
    "exp_month": "expiry month",
    "exp_year": "expiry year",
    "cvc": "security code (CVC)",
    "name": "cardholder name",
}

MSG_INVALID_NUMBER = (
    "The card number you entered is invalid. Please check and try again."
)
MSG_INVALID_MONTH = "The expiry month must be between 01 and 12."
MSG_EXPIRED = "Your card has expired. Please use a valid card."
MSG_INVALID_CVC = "The security code (CVC) must be 3 or 4 digits."

_CVC_RE = re.compile(r"^\d{3,4}$")
_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class CardData:
    number: str
    exp_month: str
    exp_year: str
    cvc: str
    name: str

    def __repr__(self) -> str:
        # never let the PAN or CVC end up in a log line
        return (
            f"CardData(brand={card_brand(self.number)}, "
            f"last_four={last_four(self.number)})"
        )


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    field: Optional[str] = None


def digits_only(number: str) -> str:
    return _NON_DIGITS.sub("", number or "")


def luhn_valid(number: str) -> bool:
    digits = digits_only(number)
    if len(digits) < 13 or len(digits) > 19:
        return False
    total = 0
    # double every second digit counting from the rightmost
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def card_brand(number: str) -> str:
    digits = digits_only(number)
    if not digits:
        return "UNKNOWN"
    first_two = int(digits[:2]) if len(digits) >= 2 else -1
    first_four = int(digits[:4]) if len(digits) >= 4 else -1

    if digits[0] == "4":
        return "VISA"
    if 51 <= first_two <= 55:
        return "MASTERCARD"
    if first_two in (34, 37):
        return "AMEX"
    if first_four == 6011 or 65 <= first_two <= 69:
        return "DISCOVER"
    if 3528 <= first_four <= 3589:
        return "JCB"
    return "UNKNOWN"


def last_four(number: str) -> str:
    return digits_only(number)[-4:]


def _check_expiry(month: str, year: str,
                  today: date) -> Optional[ValidationResult]:
    try:
        m = int(str(month).strip())
    except ValueError:
        return ValidationResult(False, MSG_INVALID_MONTH, "exp_month")
    try:
        y = int(str(year).strip())
    except ValueError:
        return ValidationResult(
            False, f"Please enter your {FIELD_NAMES['exp_year']}", "exp_year"
        )

    if m < 1 or m > 12:
        return ValidationResult(False, MSG_INVALID_MONTH, "exp_month")

    # accept 2-digit or 4-digit years
    if y < 100:
        y += 2000

    if y < today.year or (y == today.year and m < today.month):
        return ValidationResult(False, MSG_EXPIRED, "exp_year")
    return None


def validate(card: CardData, today: Optional[date] = None) -> ValidationResult:
    today = today or date.today()

    for name in ("number", "exp_month", "exp_year", "cvc", "name"):
        value = getattr(card, name, None)
        if value is None or str(value).strip() == "":
            return ValidationResult(
                False, f"Please enter your {FIELD_NAMES[name]}", name
            )

    if not luhn_valid(card.number):
        return ValidationResult(False, MSG_INVALID_NUMBER, "number")

    expiry_error = _check_expiry(card.exp_month, card.exp_year, today)
    if expiry_error is not None:
        return expiry_error

    if not _CVC_RE.match(str(card.cvc).strip()):
        return ValidationResult(False, MSG_INVALID_CVC, "cvc")

    return ValidationResult(True)
