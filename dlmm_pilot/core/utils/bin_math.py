"""Pure DLMM bin math helpers. No I/O, no dependencies beyond stdlib."""

from __future__ import annotations

import math

from dlmm_pilot.core.errors import InvalidStrategyError
from dlmm_pilot.core.models import TokenSide

BASIS_POINT_MAX = 10_000


def bin_id_to_price(bin_id: int, bin_step: int) -> float:
    """Raw price (Y per X, no decimal adjustment) of a bin."""
    return (1 + bin_step / BASIS_POINT_MAX) ** bin_id


def price_to_bin_id(price: float, bin_step: int) -> int:
    """Bin containing a raw price (rounds down)."""
    if price <= 0:
        raise ValueError("price must be positive")
    return int(math.floor(math.log(price) / math.log(1 + bin_step / BASIS_POINT_MAX)))


def price_range_percent(width: int, bin_step: int) -> float:
    """Price movement covered by ``width`` consecutive bins, in percent."""
    return ((1 + bin_step / BASIS_POINT_MAX) ** width - 1) * 100


def is_in_range(active_bin_id: int, min_bin_id: int, max_bin_id: int) -> bool:
    return min_bin_id <= active_bin_id <= max_bin_id


def overshoot_distance(active_bin_id: int, min_bin_id: int, max_bin_id: int) -> int:
    """How many bins the activation bin sits beyond the range (0 when inside)."""
    if active_bin_id < min_bin_id:
        return min_bin_id - active_bin_id
    if active_bin_id > max_bin_id:
        return active_bin_id - max_bin_id
    return 0


def single_sided_range(
    active_bin_id: int, width: int, side: TokenSide
) -> tuple[int, int]:
    """Place ``width`` bins entirely on one side of the activation bin.

    Token X is sold as price rises, so an X deposit sits above the active bin:
    ``[active + 1, active + width]``. A Y deposit mirrors it below:
    ``[active - width, active - 1]``. The active bin itself is never included.
    """
    if width < 1:
        raise InvalidStrategyError(f"width must be positive, got {width}")
    if side == TokenSide.X:
        return active_bin_id + 1, active_bin_id + width
    return active_bin_id - width, active_bin_id - 1
