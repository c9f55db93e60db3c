from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def format_amount(amount: str | int | float | Decimal, symbol: str = "$") -> str:
    """Render an amount with thousands separators and two decimals; unparseable input is echoed."""
    try:
        d = Decimal(str(amount).strip()).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return str(amount)
    return f"{symbol}{d:,}"
