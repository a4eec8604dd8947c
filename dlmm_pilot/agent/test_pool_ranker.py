from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from dlmm_pilot.agent.pool_ranker import (
    DEFAULT_WEIGHTS,
    PoolRanker,
    normalize,
    ranking_momentum,
    score_and_rank_pools,
)
from dlmm_pilot.core.clients.MeteoraClient import MeteoraPair
from dlmm_pilot.core.config import PoolFilters
from dlmm_pilot.core.constants.base import SOL_MINT
from dlmm_pilot.core.models import AgentMode, TokenSide


def _pair(address: str, **overrides: Any) -> MeteoraPair:
    data: dict[str, Any] = {
        "address": address,
        "name": f"SOL-{address}",
        "mint_x": SOL_MINT,
        "mint_y": f"mint-{address}",
        "bin_step": 20,
        "current_price": 0.5,
        "liquidity": 100_000,
        "trade_volume_24h": 50_000,
        "fees_24h": 500,
        "apr": 100,
        "volume": {"hour_1": 100, "hour_4": 1_000},
        "fees": {"hour_4": 10},
    }
    data.update(overrides)
    return MeteoraPair.model_validate(data)


FILTERS = PoolFilters(min_volume_24h=10_000, min_liquidity=50_000)


def test_normalize_handles_flat_ranges() -> None:
    assert normalize(5, 5, 5) == 0.5
    assert normalize(5, 0, 10) == 0.5
    assert normalize(10, 0, 10) == 1.0


def test_ranking_momentum_saturates() -> None:
    assert ranking_momentum(1_000, 0) == 0.0
    assert ranking_momentum(10_000, 100_000) == pytest.approx(0.2)
    assert ranking_momentum(80_000, 100_000) == 1.0


def test_filters_drop_ineligible_pairs() -> None:
    pairs = [
        _pair("ok"),
        _pair("hidden", hide=True),
        _pair("no-sol", mint_x="usdc", mint_y="usdt"),
        _pair("thin", liquidity=1_000),
        _pair("quiet", trade_volume_24h=500),
    ]
    ranked = score_and_rank_pools(pairs, filters=FILTERS)
    assert [p.address for p in ranked] == ["ok"]


def test_single_pool_score() -> None:
    [pool] = score_and_rank_pools([_pair("only")], filters=FILTERS)
    # every normalised metric is 0.5, plus 0.15 * (0.02 / 0.5)
    assert pool.score == pytest.approx(0.45 + 0.006)
    assert pool.volume_4h == 1_000
    assert pool.fees_4h == 10
    assert pool.home_side == TokenSide.X


def test_better_pool_ranks_first_and_home_side_is_detected() -> None:
    weak = _pair("weak")
    strong = _pair(
        "strong",
        mint_x="mint-strong",
        mint_y=SOL_MINT,
        trade_volume_24h=500_000,
        fees_24h=5_000,
        apr=900,
        liquidity=1_000_000,
        bin_step=10,
        volume={"hour_1": 10_000, "hour_4": 200_000},
    )
    ranked = score_and_rank_pools([weak, strong], filters=FILTERS)
    assert [p.address for p in ranked] == ["strong", "weak"]
    assert ranked[0].home_side == TokenSide.Y
    assert ranked[0].score > ranked[1].score


def test_history_bonus_can_reorder() -> None:
    a = _pair("a", bin_step=10)
    b = _pair("b")
    plain = score_and_rank_pools([a, b], filters=FILTERS)
    assert plain[0].address == "a"

    boosted = score_and_rank_pools(
        [a, b], weights=DEFAULT_WEIGHTS, filters=FILTERS, history_bonuses={"b": 1.0}
    )
    assert boosted[0].address == "b"


# ── cached ranker ───────────────────────────────────────────────────────────


def _client(pairs: list[MeteoraPair]) -> MagicMock:
    client = MagicMock()
    client.get_all_pairs = AsyncMock(return_value=pairs)
    return client


@pytest.mark.asyncio
async def test_rank_pools_caches_per_mode() -> None:
    client = _client([_pair("a"), _pair("b"), _pair("c")])
    ranker = PoolRanker(client, cache_ttl_s=60)

    first = await ranker.rank_pools(2)
    second = await ranker.rank_pools(2)

    assert len(first) == 2
    assert [p.address for p in first] == [p.address for p in second]
    assert client.get_all_pairs.await_count == 1

    await ranker.rank_pools(5, AgentMode.DEGEN)
    assert client.get_all_pairs.await_count == 2


@pytest.mark.asyncio
async def test_degen_mode_uses_looser_filters() -> None:
    client = _client([_pair("small", liquidity=6_000, trade_volume_24h=6_000)])
    ranker = PoolRanker(client)

    assert await ranker.rank_pools(5, AgentMode.ASSISTED) == []
    assert [p.address for p in await ranker.rank_pools(5, AgentMode.DEGEN)] == ["small"]


@pytest.mark.asyncio
async def test_stale_entries_are_served_while_refreshing() -> None:
    client = _client([_pair("a")])
    ranker = PoolRanker(client, cache_ttl_s=0)
    await ranker.rank_pools(5)

    client.get_all_pairs.side_effect = RuntimeError("api down")
    stale = await ranker.rank_pools(5)
    for _ in range(5):
        await asyncio.sleep(0)

    assert [p.address for p in stale] == ["a"]
    assert client.get_all_pairs.await_count == 2
    # the failed refresh leaves the previous ranking in place
    assert [p.address for p in await ranker.rank_pools(5)] == ["a"]
    await ranker.stop_background_refresh()


@pytest.mark.asyncio
async def test_background_refresh_prewarms_both_modes() -> None:
    client = _client([_pair("a")])
    ranker = PoolRanker(client, cache_ttl_s=60)

    await ranker.start_background_refresh(interval_s=60)
    for _ in range(200):
        if client.get_all_pairs.await_count >= 2:
            break
        await asyncio.sleep(0.01)
    await ranker.stop_background_refresh()

    assert client.get_all_pairs.await_count >= 2
    assert [p.address for p in await ranker.rank_pools(5)] == ["a"]
    assert client.get_all_pairs.await_count == 2
