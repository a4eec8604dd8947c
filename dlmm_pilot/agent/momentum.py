"""Volume-based momentum scoring for pools."""

from __future__ import annotations

from dataclasses import dataclass

from dlmm_pilot.core.constants.dlmm import (
    FEE_YIELD_TIERS,
    HOT_ALT_SCORE,
    HOT_ALT_TURNOVER,
    HOT_SCORE,
    MOMENTUM_WEIGHT_FEE_YIELD,
    MOMENTUM_WEIGHT_SHORT,
    MOMENTUM_WEIGHT_SUSTAINED,
    MOMENTUM_WEIGHT_TURNOVER,
    PARABOLIC_ALT_SCORE,
    PARABOLIC_ALT_TURNOVER,
    PARABOLIC_SCORE,
    RISING_SCORE,
    SHORT_TERM_SHARE_TARGET,
    SUSTAINED_SHARE_TARGET,
    TURNOVER_SATURATION,
)
from dlmm_pilot.core.models import MomentumLabel, PoolSnapshot


@dataclass(frozen=True)
class MomentumSignal:
    score: float
    label: MomentumLabel
    short_term: float = 0.0
    sustained: float = 0.0
    turnover: float = 0.0
    fee_bonus: float = 0.0
    turnover_ratio: float = 0.0


CALM_SIGNAL = MomentumSignal(score=0.0, label=MomentumLabel.CALM)


def fee_yield_bonus(fee_apr: float) -> float:
    for min_apr, bonus in FEE_YIELD_TIERS:
        if fee_apr >= min_apr:
            return bonus
    return 0.0


def label_for(score: float, turnover_ratio: float) -> MomentumLabel:
    if score >= PARABOLIC_SCORE or (
        score >= PARABOLIC_ALT_SCORE and turnover_ratio >= PARABOLIC_ALT_TURNOVER
    ):
        return MomentumLabel.PARABOLIC
    if score >= HOT_SCORE or (
        score >= HOT_ALT_SCORE and turnover_ratio >= HOT_ALT_TURNOVER
    ):
        return MomentumLabel.HOT
    if score >= RISING_SCORE:
        return MomentumLabel.RISING
    return MomentumLabel.CALM


def compute_momentum(
    *,
    volume_1h: float,
    volume_4h: float,
    volume_24h: float,
    fee_apr: float,
    liquidity: float,
) -> MomentumSignal:
    """Score how unusually active recent trading is, in [0, 1].

    - short-term: 1h share of 24h volume, saturating at 10%
    - sustained: 4h share of 24h volume, saturating at 33%
    - turnover: 24h volume / liquidity, saturating at 100x
    - fee-yield bonus from the annualised fee APR tier
    """
    if volume_24h <= 0:
        return CALM_SIGNAL

    short_term = min((volume_1h / volume_24h) / SHORT_TERM_SHARE_TARGET, 1.0)
    sustained = min((volume_4h / volume_24h) / SUSTAINED_SHARE_TARGET, 1.0)
    turnover_ratio = volume_24h / liquidity if liquidity > 0 else 0.0
    turnover = min(turnover_ratio / TURNOVER_SATURATION, 1.0)
    bonus = fee_yield_bonus(fee_apr)

    score = (
        MOMENTUM_WEIGHT_SHORT * short_term
        + MOMENTUM_WEIGHT_SUSTAINED * sustained
        + MOMENTUM_WEIGHT_TURNOVER * turnover
        + MOMENTUM_WEIGHT_FEE_YIELD * bonus
    )
    score = max(0.0, min(score, 1.0))

    return MomentumSignal(
        score=score,
        label=label_for(score, turnover_ratio),
        short_term=short_term,
        sustained=sustained,
        turnover=turnover,
        fee_bonus=bonus,
        turnover_ratio=turnover_ratio,
    )


def pool_momentum(pool: PoolSnapshot) -> MomentumSignal:
    return compute_momentum(
        volume_1h=pool.volume_1h,
        volume_4h=pool.volume_4h,
        volume_24h=pool.volume_24h,
        fee_apr=pool.fee_apr,
        liquidity=pool.liquidity,
    )
