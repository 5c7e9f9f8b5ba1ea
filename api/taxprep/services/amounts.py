"""Currency normalization for OCR-extracted amounts.

The extraction service returns amounts as numbers, currency strings
("$55,000.00"), empty strings or nulls depending on the form and the model
that read it. Everything that counts money goes through `parse_amount`.
"""
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

_STRIP = re.compile(r"[$,\s]")


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_amount(value: object) -> Decimal:
    """Return `value` as a Decimal rounded to cents; anything unusable is 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return to_cents(value) if value.is_finite() else ZERO
    if isinstance(value, int):
        return to_cents(Decimal(value))
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return ZERO
        return to_cents(Decimal(str(value)))
    if isinstance(value, str):
        text = _STRIP.sub("", value)
        negative = text.startswith("(") and text.endswith(")")  # accounting notation
        if negative:
            text = text[1:-1]
        if not text:
            return ZERO
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return ZERO
        if not amount.is_finite():
            return ZERO
        return to_cents(-amount if negative else amount)
    return ZERO
