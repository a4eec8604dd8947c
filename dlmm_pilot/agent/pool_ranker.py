from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from loguru import logger

from dlmm_pilot.core.clients.MeteoraClient import MeteoraClient, MeteoraPair
from dlmm_pilot.core.config import PoolFilters, get_pool_filters
from dlmm_pilot.core.constants.base import SOL_MINT
from dlmm_pilot.core.constants.dlmm import (
    RANKED_POOLS_CACHE_TTL_S,
    RANKING_MOMENTUM_SHARE_TARGET,
    RANKING_MOMENTUM_WEIGHT,
)
from dlmm_pilot.core.models import AgentMode, PoolSnapshot, TokenSide


@dataclass(frozen=True)
class ScoringWeights:
    volume: float
    fees: float
    apr: float
    liquidity: float
    bin_step: float
    history: float


DEFAULT_WEIGHTS = ScoringWeights(
    volume=0.25, fees=0.30, apr=0.20, liquidity=0.10, bin_step=0.05, history=0.10
)
DEGEN_WEIGHTS = ScoringWeights(
    volume=0.15, fees=0.10, apr=0.40, liquidity=0.10, bin_step=0.05, history=0.20
)

CANDIDATE_POOL_SIZE = 10


def normalize(value: float, lo: float, hi: float) -> float:
    if hi == lo:
        return 0.5
    return (value - lo) / (hi - lo)


def ranking_momentum(volume_4h: float, volume_24h: float) -> float:
    """Share of 24h volume traded in the last 4h, saturating at 50%."""
    if volume_24h <= 0:
        return 0.0
    return min((volume_4h / volume_24h) / RANKING_MOMENTUM_SHARE_TARGET, 1.0)


def home_side_for(pair: MeteoraPair, home_mint: str) -> TokenSide:
    return TokenSide.X if pair.mint_x == home_mint else TokenSide.Y


def pair_to_snapshot(
    pair: MeteoraPair, *, home_mint: str = SOL_MINT, score: float = 0.0
) -> PoolSnapshot:
    return PoolSnapshot(
        address=pair.address,
        name=pair.name,
        bin_step=pair.bin_step,
        volume_1h=pair.volume_1h,
        volume_4h=pair.volume_4h,
        volume_24h=pair.trade_volume_24h,
        fees_4h=pair.fees_4h,
        fees_24h=pair.fees_24h,
        fee_apr=pair.apr,
        liquidity=pair.liquidity,
        home_side=home_side_for(pair, home_mint),
        mint_x=pair.mint_x,
        mint_y=pair.mint_y,
        current_price=pair.current_price,
        score=score,
    )


def score_and_rank_pools(
    pairs: Iterable[MeteoraPair],
    *,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    filters: PoolFilters | None = None,
    home_mint: str = SOL_MINT,
    history_bonuses: Mapping[str, float] | None = None,
) -> list[PoolSnapshot]:
    """Filter to home-asset pairs with enough activity and rank them best first.

    score = weighted min-max normalised volume, fees, APR, liquidity and
    inverse bin step, plus a history bonus, plus up to 0.15 for recent momentum.
    """
    filters = filters or get_pool_filters()
    bonuses = history_bonuses or {}
    filtered = [
        p
        for p in pairs
        if not p.hide
        and home_mint in (p.mint_x, p.mint_y)
        and p.trade_volume_24h >= filters.min_volume_24h
        and p.liquidity >= filters.min_liquidity
    ]
    if not filtered:
        logger.warning("No pools passed the ranking filters")
        return []

    def bounds(values: list[float]) -> tuple[float, float]:
        return min(values), max(values)

    vol_lo, vol_hi = bounds([p.trade_volume_24h for p in filtered])
    fee_lo, fee_hi = bounds([p.fees_24h for p in filtered])
    apr_lo, apr_hi = bounds([p.apr for p in filtered])
    liq_lo, liq_hi = bounds([p.liquidity for p in filtered])
    bin_lo, bin_hi = bounds([float(p.bin_step) for p in filtered])

    scored: list[PoolSnapshot] = []
    for p in filtered:
        base = (
            weights.volume * normalize(p.trade_volume_24h, vol_lo, vol_hi)
            + weights.fees * normalize(p.fees_24h, fee_lo, fee_hi)
            + weights.apr * normalize(p.apr, apr_lo, apr_hi)
            + weights.liquidity * normalize(p.liquidity, liq_lo, liq_hi)
            + weights.bin_step * (1 - normalize(float(p.bin_step), bin_lo, bin_hi))
            + weights.history * min(bonuses.get(p.address, 0.0), 1.0)
        )
        score = base + RANKING_MOMENTUM_WEIGHT * ranking_momentum(
            p.volume_4h, p.trade_volume_24h
        )
        scored.append(pair_to_snapshot(p, home_mint=home_mint, score=score))

    scored.sort(key=lambda s: s.score, reverse=True)
    logger.info(
        f"Ranked {len(scored)} of {len(filtered)} filtered pools; "
        f"top: {scored[0].name} ({scored[0].score:.4f})"
    )
    return scored


class PoolRanker:
    """Ranked pool lists per mode with stale-while-revalidate caching.

    A fresh entry is returned as is. A stale entry is returned immediately and
    a background task refreshes it; refresh failures are logged and never reach
    the caller. With no entry at all the caller waits for the first ranking.
    """

    def __init__(
        self,
        client: MeteoraClient,
        *,
        home_mint: str = SOL_MINT,
        cache_ttl_s: float = RANKED_POOLS_CACHE_TTL_S,
    ) -> None:
        self.client = client
        self.home_mint = home_mint
        self.cache_ttl_s = cache_ttl_s
        self._ranked: dict[AgentMode, tuple[float, list[PoolSnapshot]]] = {}
        self._refreshing: dict[AgentMode, asyncio.Task[None]] = {}
        self._background: asyncio.Task[None] | None = None
        self.logger = logger.bind(component="pool_ranker")

    async def _analyze(self, mode: AgentMode) -> list[PoolSnapshot]:
        pairs = await self.client.get_all_pairs()
        if mode == AgentMode.DEGEN:
            weights, filters = DEGEN_WEIGHTS, get_pool_filters(degen=True)
        else:
            weights, filters = DEFAULT_WEIGHTS, get_pool_filters()
        return score_and_rank_pools(
            pairs, weights=weights, filters=filters, home_mint=self.home_mint
        )

    async def refresh(self, mode: AgentMode) -> list[PoolSnapshot]:
        pools = await self._analyze(mode)
        self._ranked[mode] = (time.monotonic(), pools)
        return pools

    def _schedule_refresh(self, mode: AgentMode) -> None:
        running = self._refreshing.get(mode)
        if running is not None and not running.done():
            return

        async def _refresh() -> None:
            try:
                await self.refresh(mode)
            except Exception as exc:  # noqa: BLE001
                self.logger.error(f"Background pool refresh failed ({mode}): {exc}")

        self._refreshing[mode] = asyncio.create_task(_refresh())

    async def rank_pools(
        self, count: int = CANDIDATE_POOL_SIZE, mode: AgentMode = AgentMode.ASSISTED
    ) -> list[PoolSnapshot]:
        entry = self._ranked.get(mode)
        if entry is not None:
            fetched_at, pools = entry
            if time.monotonic() - fetched_at >= self.cache_ttl_s:
                self._schedule_refresh(mode)
            return pools[:count]
        return (await self.refresh(mode))[:count]

    async def start_background_refresh(self, interval_s: float | None = None) -> None:
        """Pre-warm both modes, then keep them refreshed on an interval."""
        if self._background is not None and not self._background.done():
            return
        period = interval_s if interval_s is not None else self.cache_ttl_s

        async def _loop() -> None:
            while True:
                for mode in AgentMode:
                    try:
                        await self.refresh(mode)
                    except Exception as exc:  # noqa: BLE001
                        self.logger.error(f"Pool cache refresh failed ({mode}): {exc}")
                await asyncio.sleep(period)

        self._background = asyncio.create_task(_loop(), name="pool-ranker-refresh")

    async def stop_background_refresh(self) -> None:
        tasks = [t for t in (self._background, *self._refreshing.values()) if t]
        self._background = None
        self._refreshing.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
