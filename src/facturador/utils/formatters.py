from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

_SYMBOLS = {"CRC": "₡", "USD": "US$", "EUR": "€"}


def format_crc(value: Decimal | str) -> str:
    """Format an amount as ₡X XXX XXX,XX (Costa Rican grouping)."""
    d = Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    formatted = f"{d:,.2f}".replace(",", " ").replace(".", ",")
    return f"₡{formatted}"


def format_amount(value: Decimal | str, currency: str) -> str:
    """Format an amount in the given currency, e.g. US$ 1,234.50."""
    if currency == "CRC":
        return format_crc(value)
    d = Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    symbol = _SYMBOLS.get(currency, currency)
    return f"{symbol} {d:,.2f}"
