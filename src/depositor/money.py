"""Token amount conversion helpers using integer base units."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING


TOKEN_DECIMALS = 6
TOKEN_SYMBOL = "USDT"


def to_base_units(value: Decimal | float | int | str, decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a display amount to integer base units, rounding up (conservative)."""
    quant = Decimal(1).scaleb(-decimals)
    dec = Decimal(str(value)).quantize(quant, rounding=ROUND_CEILING)
    return int(dec.scaleb(decimals))


def from_base_units(value: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal display amount."""
    return (Decimal(int(value)) / (Decimal(10) ** decimals)).quantize(Decimal(1).scaleb(-decimals))


def format_amount(value: int, decimals: int = TOKEN_DECIMALS, symbol: str = TOKEN_SYMBOL) -> str:
    """Format integer base units as a currency string."""
    return f"{from_base_units(value, decimals):,.2f} {symbol}"
