from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from dlmm_pilot.agent.advisor import AdvisorRecommendation
from dlmm_pilot.agent.momentum import CALM_SIGNAL, compute_momentum
from dlmm_pilot.agent.strategy_selector import (
    RangeStrategySelector,
    age_multiplier,
    compute_rule_based,
    momentum_multiplier,
    overshoot_factor,
    quick_classify,
    repeat_penalty,
)
from dlmm_pilot.core.errors import AdvisorError
from dlmm_pilot.core.models import (
    MomentumLabel,
    PoolSnapshot,
    RebalanceContext,
    StrategyShape,
    TokenSide,
    VolatilityTier,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _calm_pool(bin_step: int, *, home_side: TokenSide = TokenSide.X) -> PoolSnapshot:
    return PoolSnapshot(
        address=f"calm-{bin_step}",
        name="SOL-USDC",
        bin_step=bin_step,
        volume_1h=0,
        volume_4h=0,
        volume_24h=0,
        fees_4h=0,
        fees_24h=0,
        fee_apr=0,
        liquidity=1_000_000,
        home_side=home_side,
    )


def _parabolic_pool(bin_step: int = 80) -> PoolSnapshot:
    return PoolSnapshot(
        address=f"hot-{bin_step}",
        name="SOL-MEME",
        bin_step=bin_step,
        volume_1h=1_000,
        volume_4h=4_000,
        volume_24h=10_000,
        fees_4h=50,
        fees_24h=100,
        fee_apr=1_000,
        liquidity=100,
        home_side=TokenSide.X,
    )


def _chain(active_bin_id: int = 1000) -> MagicMock:
    chain = MagicMock()
    chain.get_active_bin = AsyncMock(return_value=active_bin_id)
    return chain


def _ctx(
    prev_min: int, prev_max: int, *, age: timedelta, count: int = 0
) -> RebalanceContext:
    return RebalanceContext(
        prev_min_bin_id=prev_min,
        prev_max_bin_id=prev_max,
        prev_created_at=NOW - age,
        rebalance_count=count,
    )


# ── multipliers ─────────────────────────────────────────────────────────────


def test_momentum_multiplier_extreme_boost() -> None:
    assert momentum_multiplier(MomentumLabel.CALM, VolatilityTier.EXTREME) == 1.0
    assert momentum_multiplier(MomentumLabel.HOT, VolatilityTier.HIGH) == 1.8
    assert momentum_multiplier(
        MomentumLabel.PARABOLIC, VolatilityTier.EXTREME
    ) == pytest.approx(2.875)


@pytest.mark.parametrize(
    "age_s,mult",
    [
        (0, 4.0),
        (29 * 60, 4.0),
        (30 * 60, 3.0),
        (3 * 3600, 2.0),
        (4 * 3600, 1.5),
        (12 * 3600, 1.2),
        (3 * 86400, 1.2),
    ],
)
def test_age_multiplier(age_s: float, mult: float) -> None:
    assert age_multiplier(age_s) == mult


def test_overshoot_factor_and_repeat_penalty() -> None:
    assert overshoot_factor(0, 40) == 1.0
    assert overshoot_factor(20, 40) == 1.0
    assert overshoot_factor(21, 40) == 1.15
    assert overshoot_factor(50, 40) == 1.3
    assert overshoot_factor(81, 40) == 1.5
    assert overshoot_factor(5, 0) == 1.0

    assert repeat_penalty(0) == 1.0
    assert repeat_penalty(1) == 1.0
    assert repeat_penalty(2) == 1.3
    assert repeat_penalty(5) == 1.5


# ── rule-based range ────────────────────────────────────────────────────────


def test_calm_low_volatility_pool_gets_spot_60() -> None:
    rule = compute_rule_based(_calm_pool(2), 1000, CALM_SIGNAL)
    assert rule.tier == VolatilityTier.LOW
    assert rule.shape == StrategyShape.SPOT
    assert rule.width == 60


def test_parabolic_extreme_pool_widens() -> None:
    pool = _parabolic_pool(80)
    momentum = compute_momentum(
        volume_1h=pool.volume_1h,
        volume_4h=pool.volume_4h,
        volume_24h=pool.volume_24h,
        fee_apr=pool.fee_apr,
        liquidity=pool.liquidity,
    )
    rule = compute_rule_based(pool, 1000, momentum)
    assert momentum.label == MomentumLabel.PARABOLIC
    assert rule.shape == StrategyShape.BID_ASK
    # 69 * 2.5 * 1.15 = 198.375
    assert rule.width == 198


def test_fresh_rebalance_with_large_overshoot() -> None:
    # 40-bin position, 20 minutes old, price 50 bins past the top edge
    ctx = _ctx(900, 939, age=timedelta(minutes=20))
    rule = compute_rule_based(_calm_pool(20), 989, CALM_SIGNAL, ctx, now=NOW)

    assert rule.tier == VolatilityTier.MEDIUM
    assert rule.shape == StrategyShape.CURVE
    assert rule.rebalance_multiplier == pytest.approx(5.2)
    assert rule.floor == 90
    assert rule.width == 208


def test_rebalance_floor_wins_over_small_multipliers() -> None:
    # old position, tiny base width, far overshoot
    ctx = _ctx(0, 199, age=timedelta(days=2))
    rule = compute_rule_based(_calm_pool(40), 260, CALM_SIGNAL, ctx, now=NOW)

    assert rule.floor == 200 + 61
    assert rule.width == 261


def test_rebalance_into_another_pool_ignores_previous_bins() -> None:
    # bin ids of the old pool mean nothing against the new activation bin
    ctx = _ctx(-3040, -3001, age=timedelta(days=2)).for_other_pool()
    rule = compute_rule_based(_calm_pool(2), 5000, CALM_SIGNAL, ctx, now=NOW)

    assert rule.floor == 0
    assert rule.rebalance_multiplier == pytest.approx(1.2)
    assert rule.width == 72


def test_quick_classify_needs_no_chain() -> None:
    rule = quick_classify(_calm_pool(10))
    assert rule.shape == StrategyShape.CURVE
    assert rule.width == 40


# ── selector ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_select_places_range_on_home_side() -> None:
    selector = RangeStrategySelector(_chain(1000), advisor_timeout_s=1)

    above = await selector.select(_calm_pool(2))
    assert (above.min_bin_id, above.max_bin_id) == (1001, 1060)
    assert above.shape == StrategyShape.SPOT

    below = await selector.select(_calm_pool(2, home_side=TokenSide.Y))
    assert (below.min_bin_id, below.max_bin_id) == (940, 999)


@pytest.mark.asyncio
async def test_select_parabolic_extreme_pool() -> None:
    selector = RangeStrategySelector(_chain(1000), advisor_timeout_s=1)
    plan = await selector.plan(_parabolic_pool(80))

    assert plan.strategy.shape == StrategyShape.BID_ASK
    assert plan.strategy.width == 198
    assert (plan.strategy.min_bin_id, plan.strategy.max_bin_id) == (1001, 1198)
    assert not plan.capped


@pytest.mark.asyncio
async def test_width_cap_wins_over_rebalance_floor() -> None:
    selector = RangeStrategySelector(_chain(1000), advisor_timeout_s=1)
    ctx = _ctx(-600, 699, age=timedelta(minutes=10))

    plan = await selector.plan(_parabolic_pool(80), ctx, now=NOW)

    assert plan.rule_width > 1400
    assert plan.capped
    assert plan.strategy.width == 1400
    assert (plan.strategy.min_bin_id, plan.strategy.max_bin_id) == (1001, 2400)


@pytest.mark.asyncio
async def test_advisor_overrides_new_position() -> None:
    advisor = MagicMock()
    advisor.recommend = AsyncMock(
        return_value=AdvisorRecommendation(shape=StrategyShape.CURVE, width=50)
    )
    selector = RangeStrategySelector(_chain(1000), advisor, advisor_timeout_s=1)

    plan = await selector.plan(_calm_pool(2))

    assert plan.advisor is not None
    assert plan.strategy.shape == StrategyShape.CURVE
    assert plan.strategy.width == 50
    assert plan.rule_width == 60


@pytest.mark.asyncio
async def test_parabolic_keeps_the_wider_of_rule_and_advisor() -> None:
    advisor = MagicMock()
    advisor.recommend = AsyncMock(
        return_value=AdvisorRecommendation(shape=StrategyShape.SPOT, width=120)
    )
    selector = RangeStrategySelector(_chain(1000), advisor, advisor_timeout_s=1)

    narrow = await selector.plan(_parabolic_pool(80))
    assert narrow.strategy.width == 198
    assert narrow.strategy.shape == StrategyShape.SPOT

    advisor.recommend.return_value = AdvisorRecommendation(
        shape=StrategyShape.BID_ASK, width=300
    )
    wide = await selector.plan(_parabolic_pool(80))
    assert wide.strategy.width == 300


@pytest.mark.asyncio
async def test_rebalance_keeps_the_wider_of_rule_and_advisor() -> None:
    advisor = MagicMock()
    advisor.recommend = AsyncMock(
        return_value=AdvisorRecommendation(shape=StrategyShape.SPOT, width=30)
    )
    selector = RangeStrategySelector(_chain(989), advisor, advisor_timeout_s=1)
    ctx = _ctx(900, 939, age=timedelta(minutes=20))

    plan = await selector.plan(_calm_pool(20), ctx, now=NOW)

    assert plan.strategy.width == 208
    assert plan.strategy.shape == StrategyShape.SPOT
    advisor.recommend.assert_awaited_once()
    assert advisor.recommend.await_args.args[2] is ctx


@pytest.mark.asyncio
async def test_advisor_failure_falls_back_to_rules() -> None:
    advisor = MagicMock()
    advisor.recommend = AsyncMock(
        side_effect=AdvisorError("strategyType 'Triangle' is not a valid shape")
    )
    selector = RangeStrategySelector(_chain(1000), advisor, advisor_timeout_s=1)

    plan = await selector.plan(_calm_pool(2))

    assert plan.advisor is None
    assert plan.strategy.shape == StrategyShape.SPOT
    assert plan.strategy.width == 60


@pytest.mark.asyncio
async def test_advisor_timeout_falls_back_to_rules() -> None:
    async def slow(*_args, **_kwargs):  # type: ignore[no-untyped-def]
        await asyncio.sleep(5)

    advisor = MagicMock()
    advisor.recommend = slow
    selector = RangeStrategySelector(_chain(1000), advisor, advisor_timeout_s=0.05)

    plan = await selector.plan(_calm_pool(2))

    assert plan.advisor is None
    assert plan.strategy.width == 60


@pytest.mark.asyncio
async def test_advisor_returning_none_uses_rules() -> None:
    advisor = MagicMock()
    advisor.recommend = AsyncMock(return_value=None)
    selector = RangeStrategySelector(_chain(1000), advisor, advisor_timeout_s=1)

    strategy = await selector.select(_calm_pool(40))
    assert strategy.shape == StrategyShape.BID_ASK
    assert strategy.width == 30
