from decimal import ROUND_DOWN, Decimal


def _shift(d: Decimal, places: int) -> Decimal:
    # Exact for any digit count; only the exponent changes.
    sign, digits, exponent = d.as_tuple()
    assert isinstance(exponent, int), f"Cannot shift non-finite decimal {d}"
    return Decimal((sign, digits, exponent + places))


def decimal_to_int(d: Decimal, precision: int = 18) -> int:
    return int(_shift(d, precision).to_integral_value(rounding=ROUND_DOWN))


def int_to_decimal(value: int, precision: int = 18) -> Decimal:
    return _shift(Decimal(value), -precision)
