"""
Money helpers. Amounts stay exact ``Decimal`` values until output.
"""

import re
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Iterable, Optional

CENT = Decimal('0.01')
ZERO = Decimal('0')

_CURRENCY_NOISE = re.compile(r'[£$€,\s]|GBP', re.IGNORECASE)


def parse_amount(value: object) -> Optional[Decimal]:
    """Convert a source amount ("£8.50", "8.5", 8.5) to Decimal; None if not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return None

    text = _CURRENCY_NOISE.sub('', value.strip())
    # "(1.50)" is the accounting notation for a negative amount
    if text.startswith('(') and text.endswith(')'):
        text = '-' + text[1:-1]
    if not text:
        return None
    try:
        amount = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def exact_sum(amounts: Iterable[Decimal]) -> Decimal:
    """Sum without intermediate rounding."""
    return sum(amounts, ZERO)


def round_money(value: Decimal) -> Decimal:
    """Round to pennies with banker's rounding. Apply once, at output time."""
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def format_money(value: Decimal) -> str:
    return str(round_money(value))


def approx_equal(a: Optional[Decimal], b: Optional[Decimal], tolerance: Decimal = Decimal('0.005')) -> bool:
    """Check if two money values agree within an absolute tolerance."""
    if a is None or b is None:
        return False
    return abs(a - b) <= tolerance
