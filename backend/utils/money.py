"""
Fixed-point money helpers.

All settlement amounts are Decimal values in the settlement token (USDC),
quantized to 6 decimal places. Amounts are converted to integer smallest
units only at the hashing/ledger boundary.
"""
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Union

TOKEN_DECIMALS = 6
UNIT = Decimal(1).scaleb(-TOKEN_DECIMALS)   # 0.000001
ZERO = Decimal("0").quantize(UNIT)

Amount = Union[Decimal, int, str]


def to_decimal(value: Amount) -> Decimal:
    """
    Parse an amount without passing through float.

    Raises:
        ValueError: If the value is a float or not a finite number
    """
    if isinstance(value, float):
        raise ValueError(f"Float amounts are not accepted: {value!r}")
    try:
        result = Decimal(value) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result


def quantize(value: Amount) -> Decimal:
    """Truncate to token precision (never rounds up)"""
    return to_decimal(value).quantize(UNIT, rounding=ROUND_DOWN)


def to_units(value: Amount) -> int:
    """
    Convert an amount to integer smallest units.

    Rejects amounts with more precision than the token carries, so a
    hash over the units can never silently differ from the stored amount.
    """
    amount = to_decimal(value)
    units = amount.scaleb(TOKEN_DECIMALS)
    if units != units.to_integral_value():
        raise ValueError(f"Amount {amount} exceeds {TOKEN_DECIMALS} decimals")
    return int(units)


def from_units(units: int) -> Decimal:
    """Convert integer smallest units back to a quantized Decimal"""
    return (Decimal(units).scaleb(-TOKEN_DECIMALS)).quantize(UNIT)


def format_amount(value: Amount) -> str:
    """Fixed 6-decimal string, e.g. '8.333333'"""
    return f"{quantize(value):.{TOKEN_DECIMALS}f}"
