"""
Card pre-validation: Luhn, brand detection, expiry and CVC checks.
"""
import random
from datetime import date

import pytest

from boxoffice import card as cardcheck
from boxoffice.card import CardData


def with_check_digit(partial: str) -> str:
    """Append the digit that makes `partial` pass the Luhn check."""
    for d in "0123456789":
        if cardcheck.luhn_valid(partial + d):
            return partial + d
    raise AssertionError("no check digit found")


def make_card(**kw) -> CardData:
    fields = dict(number="4242424242424242", exp_month="12",
                  exp_year="2030", cvc="123", name="Ada Lovelace")
    fields.update(kw)
    return CardData(**fields)


TODAY = date(2026, 3, 15)


class TestLuhn:
    def test_generated_numbers_pass(self) -> None:
        rng = random.Random(7)
        for _ in range(200):
            length = rng.randint(13, 19)
            partial = "".join(rng.choice("0123456789")
                              for _ in range(length - 1))
            assert cardcheck.luhn_valid(with_check_digit(partial))

    def test_any_single_digit_change_is_rejected(self) -> None:
        rng = random.Random(11)
        for _ in range(50):
            number = with_check_digit(
                "4" + "".join(rng.choice("0123456789") for _ in range(14))
            )
            for pos in range(len(number)):
                d = int(number[pos])
                mutated = number[:pos] + str((d + 1) % 10) + number[pos + 1:]
                assert not cardcheck.luhn_valid(mutated), (number, pos)

    def test_separators_are_ignored(self) -> None:
        assert cardcheck.luhn_valid("4242 4242 4242 4242")
        assert cardcheck.luhn_valid("4242-4242-4242-4242")

    @pytest.mark.parametrize("number", [
        "", "4242", "424242424242", "42424242424242424242",
    ])
    def test_length_bounds(self, number: str) -> None:
        assert not cardcheck.luhn_valid(number)


class TestBrand:
    @pytest.mark.parametrize("number,brand", [
        ("4242424242424242", "VISA"),
        ("5555555555554444", "MASTERCARD"),
        ("378282246310005", "AMEX"),
        ("6011111111111117", "DISCOVER"),
        ("3530111333300000", "JCB"),
        ("9999999999999995", "UNKNOWN"),
        ("", "UNKNOWN"),
    ])
    def test_prefixes(self, number: str, brand: str) -> None:
        assert cardcheck.card_brand(number) == brand

    def test_repr_hides_the_number(self) -> None:
        r = repr(make_card())
        assert "4242424242424242" not in r
        assert "123" not in r
        assert "VISA" in r and "4242" in r


class TestValidate:
    def test_valid_card(self) -> None:
        result = cardcheck.validate(make_card(), today=TODAY)
        assert result.valid
        assert result.error is None

    def test_missing_field_names_it(self) -> None:
        result = cardcheck.validate(make_card(cvc=" "), today=TODAY)
        assert not result.valid
        assert result.field == "cvc"
        assert result.error == "Please enter your security code (CVC)"

    def test_bad_number(self) -> None:
        result = cardcheck.validate(make_card(number="4242424242424241"),
                                    today=TODAY)
        assert (result.valid, result.field) == (False, "number")
        assert result.error == cardcheck.MSG_INVALID_NUMBER

    @pytest.mark.parametrize("month", ["0", "13", "ab"])
    def test_bad_month(self, month: str) -> None:
        result = cardcheck.validate(make_card(exp_month=month), today=TODAY)
        assert result.error == cardcheck.MSG_INVALID_MONTH

    def test_expired_last_month(self) -> None:
        result = cardcheck.validate(
            make_card(exp_month="2", exp_year="2026"), today=TODAY
        )
        assert not result.valid
        assert result.error == cardcheck.MSG_EXPIRED

    def test_current_month_still_valid(self) -> None:
        result = cardcheck.validate(
            make_card(exp_month="03", exp_year="26"), today=TODAY
        )
        assert result.valid

    @pytest.mark.parametrize("cvc", ["12", "12345", "1a3"])
    def test_bad_cvc(self, cvc: str) -> None:
        result = cardcheck.validate(make_card(cvc=cvc), today=TODAY)
        assert result.error == cardcheck.MSG_INVALID_CVC

    def test_amex_four_digit_cvc(self) -> None:
        result = cardcheck.validate(
            make_card(number="378282246310005", cvc="1234"), today=TODAY
        )
        assert result.valid
