from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from dlmm_pilot.agent.advisor import AdvisorRecommendation
from dlmm_pilot.agent.momentum import MomentumSignal, pool_momentum
from dlmm_pilot.agent.volatility import (
    TIER_BASE_WIDTHS,
    TIER_SHAPES,
    classify_volatility,
)
from dlmm_pilot.core.chain import ChainQuery, StrategyAdvisor
from dlmm_pilot.core.config import get_advisor_settings
from dlmm_pilot.core.constants.dlmm import (
    EXTREME_MOMENTUM_BOOST,
    MAX_POSITION_WIDTH,
    OVERSHOOT_FACTORS,
    REBALANCE_AGE_FALLBACK_MULTIPLIER,
    REBALANCE_AGE_MULTIPLIERS,
    REPEAT_REBALANCE_PENALTIES,
)
from dlmm_pilot.core.models import (
    MomentumLabel,
    PoolSnapshot,
    RebalanceContext,
    StrategyConfig,
    StrategyShape,
    VolatilityTier,
)
from dlmm_pilot.core.utils.bin_math import (
    overshoot_distance,
    price_range_percent,
    single_sided_range,
)

MOMENTUM_MULTIPLIERS: dict[MomentumLabel, float] = {
    MomentumLabel.CALM: 1.0,
    MomentumLabel.RISING: 1.3,
    MomentumLabel.HOT: 1.8,
    MomentumLabel.PARABOLIC: 2.5,
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def momentum_multiplier(label: MomentumLabel, tier: VolatilityTier) -> float:
    mult = MOMENTUM_MULTIPLIERS[label]
    if tier == VolatilityTier.EXTREME and mult > 1.0:
        mult *= EXTREME_MOMENTUM_BOOST
    return mult


def age_multiplier(age_s: float) -> float:
    for max_age_s, mult in REBALANCE_AGE_MULTIPLIERS:
        if age_s < max_age_s:
            return mult
    return REBALANCE_AGE_FALLBACK_MULTIPLIER


def overshoot_factor(overshoot: int, prev_width: int) -> float:
    ratio = overshoot / prev_width if prev_width > 0 else 0.0
    for threshold, factor in OVERSHOOT_FACTORS:
        if ratio > threshold:
            return factor
    return 1.0


def repeat_penalty(rebalance_count: int) -> float:
    for min_count, penalty in REPEAT_REBALANCE_PENALTIES:
        if rebalance_count >= min_count:
            return penalty
    return 1.0


@dataclass(frozen=True)
class RuleBasedRange:
    tier: VolatilityTier
    shape: StrategyShape
    base_width: int
    width: int
    momentum_multiplier: float
    rebalance_multiplier: float = 1.0
    floor: int = 0


def compute_rule_based(
    pool: PoolSnapshot,
    active_bin_id: int,
    momentum: MomentumSignal,
    ctx: RebalanceContext | None = None,
    *,
    now: datetime | None = None,
) -> RuleBasedRange:
    """Deterministic shape and width from volatility tier, momentum and rebalance history.

    The result is not capped; capping happens after the advisor has had its say.
    """
    tier = classify_volatility(pool.bin_step)
    shape = TIER_SHAPES[tier]
    base_width = TIER_BASE_WIDTHS[tier]
    mom_mult = momentum_multiplier(momentum.label, tier)
    width = _round_half_up(base_width * mom_mult)

    if ctx is None:
        return RuleBasedRange(
            tier=tier,
            shape=shape,
            base_width=base_width,
            width=width,
            momentum_multiplier=mom_mult,
        )

    rebal_mult = age_multiplier(ctx.age_seconds(now)) * repeat_penalty(
        ctx.rebalance_count
    )
    floor = 0
    if ctx.same_pool:
        overshoot = overshoot_distance(
            active_bin_id, ctx.prev_min_bin_id, ctx.prev_max_bin_id
        )
        rebal_mult *= overshoot_factor(overshoot, ctx.prev_width)
        floor = ctx.prev_width + overshoot
    width = max(_round_half_up(width * rebal_mult), floor)
    return RuleBasedRange(
        tier=tier,
        shape=shape,
        base_width=base_width,
        width=width,
        momentum_multiplier=mom_mult,
        rebalance_multiplier=rebal_mult,
        floor=floor,
    )


def quick_classify(pool: PoolSnapshot) -> RuleBasedRange:
    """Rule-based suggestion without touching the chain (for pool listings)."""
    return compute_rule_based(pool, 0, pool_momentum(pool))


@dataclass(frozen=True)
class StrategySelection:
    strategy: StrategyConfig
    active_bin_id: int
    tier: VolatilityTier
    momentum: MomentumSignal
    rule_width: int
    advisor: AdvisorRecommendation | None = None
    capped: bool = False


class RangeStrategySelector:
    def __init__(
        self,
        chain: ChainQuery,
        advisor: StrategyAdvisor | None = None,
        *,
        advisor_timeout_s: float | None = None,
    ) -> None:
        self.chain = chain
        self.advisor = advisor
        self.advisor_timeout_s = (
            advisor_timeout_s
            if advisor_timeout_s is not None
            else get_advisor_settings().timeout_s
        )
        self.logger = logger.bind(component="strategy_selector")

    async def _consult_advisor(
        self, pool: PoolSnapshot, active_bin_id: int, ctx: RebalanceContext | None
    ) -> AdvisorRecommendation | None:
        if self.advisor is None:
            return None
        try:
            rec = await asyncio.wait_for(
                self.advisor.recommend(pool, active_bin_id, ctx),
                timeout=self.advisor_timeout_s,
            )
        except TimeoutError:
            self.logger.warning(
                f"Advisor timed out after {self.advisor_timeout_s}s for {pool.name}, using rule-based range"
            )
            return None
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                f"Advisor failed for {pool.name}, using rule-based range: {exc}"
            )
            return None
        if rec is not None and not isinstance(rec, AdvisorRecommendation):
            self.logger.warning(f"Advisor returned unexpected payload for {pool.name}")
            return None
        return rec

    async def plan(
        self,
        pool: PoolSnapshot,
        ctx: RebalanceContext | None = None,
        *,
        now: datetime | None = None,
    ) -> StrategySelection:
        active_bin_id = await self.chain.get_active_bin(pool.address)
        momentum = pool_momentum(pool)
        rule = compute_rule_based(pool, active_bin_id, momentum, ctx, now=now)
        shape, width = rule.shape, rule.width

        rec = await self._consult_advisor(pool, active_bin_id, ctx)
        if rec is not None:
            shape = rec.shape
            if ctx is not None or momentum.label == MomentumLabel.PARABOLIC:
                width = max(width, rec.width)
            else:
                width = rec.width

        capped = width > MAX_POSITION_WIDTH
        if capped:
            self.logger.warning(
                f"Capping width {width} to {MAX_POSITION_WIDTH} bins for {pool.name}"
            )
            width = MAX_POSITION_WIDTH

        min_bin_id, max_bin_id = single_sided_range(
            active_bin_id, width, pool.home_side
        )
        strategy = StrategyConfig(
            shape=shape, min_bin_id=min_bin_id, max_bin_id=max_bin_id
        )

        self.logger.info(
            f"Strategy for {pool.name}: {shape} bins {min_bin_id}..{max_bin_id} "
            f"({strategy.width} bins, ~{price_range_percent(strategy.width, pool.bin_step):.1f}% range) "
            f"tier={rule.tier} momentum={momentum.label}({momentum.score:.2f}) "
            f"rebalance={'yes' if ctx else 'no'} advisor={'yes' if rec else 'no'}"
        )
        return StrategySelection(
            strategy=strategy,
            active_bin_id=active_bin_id,
            tier=rule.tier,
            momentum=momentum,
            rule_width=rule.width,
            advisor=rec,
            capped=capped,
        )

    async def select(
        self, pool: PoolSnapshot, ctx: RebalanceContext | None = None
    ) -> StrategyConfig:
        return (await self.plan(pool, ctx)).strategy
