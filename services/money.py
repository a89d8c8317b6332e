from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

AMOUNT_PRECISION = Decimal("0.000001")
RATE_PRECISION = Decimal("0.00000001")

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_amount(value: Number) -> Decimal:
    return to_decimal(value).quantize(AMOUNT_PRECISION, rounding=ROUND_HALF_UP)


def quantize_rate(value: Number) -> Decimal:
    return to_decimal(value).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


def format_amount(value: Optional[Number]) -> Optional[str]:
    if value is None:
        return None
    value = to_decimal(value)
    normalized = value.quantize(RATE_PRECISION).normalize()
    result = format(normalized, 'f')
    if '.' in result:
        result = result.rstrip('0').rstrip('.')
    return result if result != '-0' else '0'
