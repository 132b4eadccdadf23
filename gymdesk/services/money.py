"""
Money helpers: integer-safe amounts in the smallest currency unit.

Rules:
  - Amounts are plain ints; floats never enter the ledger
  - On the wire every amount is an integer string ("40000")
  - The backend may echo decimals ("40000.00"); a zero fraction is accepted,
    anything else is rejected
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from gymdesk.config import settings
from gymdesk.exceptions import PolicyViolation, ViolationCode

# Plain positional notation only; Decimal would also take "1e3" or "1_000"
_NUMBER_TEXT = re.compile(r"[+-]?\d+(?:\.\d+)?")


def _invalid(value) -> PolicyViolation:
    return PolicyViolation(
        ViolationCode.INVALID_AMOUNT,
        f"Amount must be a whole number of currency units, got {value!r}",
    )


def parse_amount(value) -> int:
    """
    Parse an amount from user input or a backend payload.

    Accepts ints, integral Decimals/floats and integer strings (optionally
    with a zero fraction). Raises PolicyViolation(INVALID_AMOUNT) otherwise.
    """
    if isinstance(value, bool) or value is None:
        raise _invalid(value)
    if isinstance(value, int):
        return value

    if isinstance(value, str):
        text = value.strip()
        if not _NUMBER_TEXT.fullmatch(text):
            raise _invalid(value)
        try:
            number = Decimal(text)
        except InvalidOperation:
            raise _invalid(value) from None
    elif isinstance(value, (Decimal, float)):
        number = Decimal(value)
    else:
        raise _invalid(value)

    if not number.is_finite() or number != number.to_integral_value():
        raise _invalid(value)
    return int(number)


def require_positive(value) -> int:
    amount = parse_amount(value)
    if amount <= 0:
        raise PolicyViolation(
            ViolationCode.INVALID_AMOUNT,
            "Amount must be greater than zero",
        )
    return amount


def to_wire(amount: int) -> str:
    return str(parse_amount(amount))


def format_amount(amount: int, currency: str | None = None) -> str:
    """Display form, e.g. 'COP 100,000'."""
    code = currency or settings.CURRENCY_CODE
    sign = "-" if amount < 0 else ""
    return f"{sign}{code} {abs(amount):,}"


def apply_percentage(price: int, percentage: Decimal) -> int:
    """
    Price after a percentage discount, rounded half-up to a whole unit.

    Never negative; a 100% discount yields 0.
    """
    discount = (Decimal(price) * percentage / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    return max(0, price - int(discount))


def percentage_of(part: int, whole: int) -> int:
    """Rounded progress percentage clamped to 0..100; an empty whole counts as done."""
    if whole <= 0:
        return 100
    pct = (Decimal(part) * 100 / Decimal(whole)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(min(max(pct, Decimal(0)), Decimal(100)))
