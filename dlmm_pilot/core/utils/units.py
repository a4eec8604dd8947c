from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from dlmm_pilot.core.constants.base import SOL_DECIMALS


def _to_decimal(value: str | int | float | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return Decimal(value)
    return Decimal(str(value).strip())


def to_raw_amount(
    amount: str | int | float | Decimal, decimals: int = SOL_DECIMALS
) -> int:
    try:
        amt = _to_decimal(amount)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid token amount: {amount}") from exc
    if amt < 0:
        raise ValueError("Amount must be non-negative")
    scale = Decimal(10) ** int(decimals)
    return int((amt * scale).to_integral_value(rounding=ROUND_DOWN))


def to_lamports(amount_sol: str | int | float | Decimal) -> int:
    return to_raw_amount(amount_sol, SOL_DECIMALS)


def from_raw_amount(raw: int, decimals: int = SOL_DECIMALS) -> float:
    return float(Decimal(int(raw)) / (Decimal(10) ** int(decimals)))
