from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


def dec(value: str | int | Decimal | None, places: int) -> str:
    """Render a decimal string with exactly *places* fraction digits.

    Empty values render as zero. Uses Decimal arithmetic, never floats.
    """
    raw = "0" if value is None or str(value).strip() == "" else str(value).strip()
    try:
        d = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"Valor numerico invalido: '{value}'") from None
    return str(d.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


def dec2(value: str | int | Decimal | None) -> str:
    """Money: 2 fraction digits."""
    return dec(value, 2)


def dec4(value: str | int | Decimal | None) -> str:
    """Quantity / unit price: 4 fraction digits."""
    return dec(value, 4)


def format_brl(value: str) -> str:
    """Format a numeric string as R$ X.XXX,XX."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"
