"""Tests for the integer money helpers."""

from decimal import Decimal

import pytest

from gymdesk.exceptions import PolicyViolation, ViolationCode
from gymdesk.services.money import (
    apply_percentage,
    format_amount,
    parse_amount,
    percentage_of,
    require_positive,
    to_wire,
)


def test_parse_accepts_integer_forms():
    assert parse_amount(40000) == 40000
    assert parse_amount("40000") == 40000
    assert parse_amount(" 40000 ") == 40000
    assert parse_amount(Decimal("40000")) == 40000


def test_parse_accepts_zero_fraction_from_backend():
    """Backend decimals like '40000.00' are whole amounts."""
    assert parse_amount("40000.00") == 40000
    assert parse_amount(40000.0) == 40000


@pytest.mark.parametrize("bad", [
    "40000.50", "abc", "", None, True, float("nan"), "Infinity", [1], "1e3", "4E4", "1_000",
])
def test_parse_rejects_non_integral(bad):
    with pytest.raises(PolicyViolation) as exc:
        parse_amount(bad)
    assert exc.value.code == ViolationCode.INVALID_AMOUNT


@pytest.mark.parametrize("bad", [0, -5, "0"])
def test_require_positive(bad):
    with pytest.raises(PolicyViolation) as exc:
        require_positive(bad)
    assert exc.value.code == ViolationCode.INVALID_AMOUNT


def test_to_wire_is_integer_string():
    assert to_wire(40000) == "40000"


def test_format_amount():
    assert format_amount(100000) == "COP 100,000"
    assert format_amount(-2500, "USD") == "-USD 2,500"


def test_apply_percentage_rounds_half_up():
    assert apply_percentage(100000, Decimal("10")) == 90000
    assert apply_percentage(999, Decimal("50")) == 499  # 499.5 discount → 500
    assert apply_percentage(100000, Decimal("100")) == 0


def test_percentage_of_is_clamped():
    assert percentage_of(40000, 100000) == 40
    assert percentage_of(150000, 100000) == 100
    assert percentage_of(0, 0) == 100
