from __future__ import annotations

from dlmm_pilot.core.constants.dlmm import (
    HIGH_VOLATILITY_MAX_BIN_STEP,
    LOW_VOLATILITY_MAX_BIN_STEP,
    MEDIUM_VOLATILITY_MAX_BIN_STEP,
)
from dlmm_pilot.core.models import StrategyShape, VolatilityTier

TIER_SHAPES: dict[VolatilityTier, StrategyShape] = {
    VolatilityTier.LOW: StrategyShape.SPOT,
    VolatilityTier.MEDIUM: StrategyShape.CURVE,
    VolatilityTier.HIGH: StrategyShape.BID_ASK,
    VolatilityTier.EXTREME: StrategyShape.BID_ASK,
}

# Bin counts per tier. Extreme pools take more bins because their price
# coverage per bin already dwarfs the other tiers; 69 keeps them in one transaction.
TIER_BASE_WIDTHS: dict[VolatilityTier, int] = {
    VolatilityTier.LOW: 60,
    VolatilityTier.MEDIUM: 40,
    VolatilityTier.HIGH: 30,
    VolatilityTier.EXTREME: 69,
}


def classify_volatility(bin_step: int) -> VolatilityTier:
    """Map a pool's bin step (basis points per bin) to a volatility tier."""
    if bin_step <= LOW_VOLATILITY_MAX_BIN_STEP:
        return VolatilityTier.LOW
    if bin_step <= MEDIUM_VOLATILITY_MAX_BIN_STEP:
        return VolatilityTier.MEDIUM
    if bin_step <= HIGH_VOLATILITY_MAX_BIN_STEP:
        return VolatilityTier.HIGH
    return VolatilityTier.EXTREME
