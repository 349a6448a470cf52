from __future__ import annotations

from decimal import Decimal

from utils.misc import decimal_to_int, int_to_decimal

USD_QUANTUM = Decimal("0.01")


def format_amount(value: Decimal, decimals: int | None = None) -> str:
    """Plain-notation amount, truncated to the asset's ``decimals`` when given, trailing zeros dropped."""
    if decimals is not None:
        value = int_to_decimal(decimal_to_int(value, decimals), decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("", "-0"):
        return "0"
    return text


def format_usd(value: Decimal) -> str:
    return f"{value.quantize(USD_QUANTUM):,.2f}"
