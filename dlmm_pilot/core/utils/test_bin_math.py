from __future__ import annotations

import pytest

from dlmm_pilot.core.errors import InvalidStrategyError
from dlmm_pilot.core.models import TokenSide
from dlmm_pilot.core.utils.bin_math import (
    bin_id_to_price,
    is_in_range,
    overshoot_distance,
    price_range_percent,
    price_to_bin_id,
    single_sided_range,
)


def test_single_sided_range_x_sits_above_active_bin() -> None:
    assert single_sided_range(100, 10, TokenSide.X) == (101, 110)


def test_single_sided_range_y_sits_below_active_bin() -> None:
    assert single_sided_range(100, 10, TokenSide.Y) == (90, 99)


@pytest.mark.parametrize("side", [TokenSide.X, TokenSide.Y])
def test_single_sided_range_never_contains_active_bin(side: TokenSide) -> None:
    lo, hi = single_sided_range(-5, 1, side)
    assert hi - lo + 1 == 1
    assert not is_in_range(-5, lo, hi)


def test_single_sided_range_rejects_empty_width() -> None:
    with pytest.raises(InvalidStrategyError):
        single_sided_range(0, 0, TokenSide.X)


def test_is_in_range_is_inclusive() -> None:
    assert is_in_range(100, 100, 120)
    assert is_in_range(120, 100, 120)
    assert not is_in_range(99, 100, 120)
    assert not is_in_range(121, 100, 120)


def test_overshoot_distance() -> None:
    assert overshoot_distance(110, 100, 120) == 0
    assert overshoot_distance(130, 100, 120) == 10
    assert overshoot_distance(90, 100, 120) == 10


def test_bin_price_helpers() -> None:
    assert bin_id_to_price(0, 25) == 1.0
    assert bin_id_to_price(1, 100) == pytest.approx(1.01)
    assert price_to_bin_id(1.0, 25) == 0
    # a hair above bin 10 still resolves to bin 10
    assert price_to_bin_id(1.0025**10 * 1.0001, 25) == 10
    with pytest.raises(ValueError):
        price_to_bin_id(0, 25)


def test_price_range_percent() -> None:
    assert price_range_percent(1, 100) == pytest.approx(1.0)
    assert price_range_percent(69, 80) > price_range_percent(69, 2)
