from __future__ import annotations

import asyncio
import json
import os
import re
from collections.abc import Sequence
from datetime import datetime

from aiocache import Cache
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dlmm_pilot.agent.momentum import pool_momentum
from dlmm_pilot.core.config import AdvisorSettings, get_advisor_settings
from dlmm_pilot.core.constants.dlmm import MAX_POSITION_WIDTH, MIN_ADVISOR_WIDTH
from dlmm_pilot.core.errors import AdvisorError
from dlmm_pilot.core.models import PoolSnapshot, RebalanceContext, StrategyShape

_JSON_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = """You are an analyst for Meteora DLMM liquidity provision on Solana.

Pools use discrete price bins; a higher bin step means a more volatile pair.
LPs earn fees only while the active price sits inside their bin range.
Deposits here are single-sided, placed entirely on one side of the active bin.

Strategy types:
- Spot: uniform distribution, for stable pairs (bin step 1-5), 50-70 bins
- Curve: bell curve, for medium volatility (bin step 6-30), 35-50 bins
- BidAsk: weighted to the far edge, for volatile pairs (bin step 31+), 25-42 bins

Momentum labels: PARABOLIC needs 150-250 bins on extreme pools, HOT 100-180,
RISING 50-100, CALM keeps the base range. Pools with bin step 80+ should
never go below 100 bins.

Respond with ONLY valid JSON. No markdown, no extra text."""


class AdvisorRecommendation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    shape: StrategyShape = Field(alias="strategyType")
    width: int = Field(alias="binRangeWidth", ge=MIN_ADVISOR_WIDTH, le=MAX_POSITION_WIDTH)
    reasoning: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def extract_json(text: str) -> str:
    """Pull the JSON payload out of a model reply that may wrap it in prose or fences."""
    if match := _JSON_BLOCK.search(text):
        return match.group(1).strip()
    if match := _JSON_OBJECT.search(text):
        return match.group(0)
    return text


def parse_recommendation(text: str) -> AdvisorRecommendation:
    try:
        payload = json.loads(extract_json(text))
    except ValueError as exc:
        raise AdvisorError(f"Advisor reply is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise AdvisorError("Advisor reply is not a JSON object")
    try:
        return AdvisorRecommendation.model_validate(payload)
    except ValidationError as exc:
        raise AdvisorError(f"Advisor reply failed validation: {exc}") from exc


def advisor_cache_key(
    pool_address: str, active_bin_id: int, ctx: RebalanceContext | None
) -> str:
    return f"{pool_address}:{active_bin_id}:{'rebal' if ctx else 'new'}"


def build_prompt(
    pool: PoolSnapshot,
    active_bin_id: int,
    ctx: RebalanceContext | None = None,
    *,
    now: datetime | None = None,
) -> str:
    momentum = pool_momentum(pool)
    lines = [
        "Recommend an LP strategy for this Meteora DLMM pool.",
        "",
        f"Pool: {pool.name}",
        f"Bin Step: {pool.bin_step}",
        f"Active Bin ID: {active_bin_id}",
        f"24h Volume: ${round(pool.volume_24h)}",
        f"4h Volume: ${round(pool.volume_4h)}",
        f"1h Volume: ${round(pool.volume_1h)}",
        f"24h Fees: ${pool.fees_24h:.2f}",
        f"Fee APR: {pool.fee_apr:.1f}%",
        f"Liquidity: ${round(pool.liquidity)}",
        f"Deposit Side: {pool.home_side}",
        f"Momentum: {momentum.score:.2f} ({momentum.label})",
    ]
    if ctx is not None:
        age_h = ctx.age_seconds(now) / 3600
        if not ctx.same_pool:
            direction = "n/a (moving from another pool)"
        elif active_bin_id > ctx.prev_max_bin_id:
            direction = "UP (price rose above range)"
        elif active_bin_id < ctx.prev_min_bin_id:
            direction = "DOWN (price fell below range)"
        else:
            direction = "unknown"
        lines += [
            "",
            "## REBALANCE CONTEXT (previous position went out of range)",
            f"- Previous range: bins {ctx.prev_min_bin_id} to {ctx.prev_max_bin_id} ({ctx.prev_width} bins)",
            f"- Previous position age: {age_h:.1f} hours",
            f"- Price moved: {direction}",
            f"- Times rebalanced: {ctx.rebalance_count}",
            f"Recommend at least {round(ctx.prev_width * 1.5)} bins, ideally {round(ctx.prev_width * 2)}+.",
        ]
    lines += [
        "",
        'Respond with ONLY this JSON: {"strategyType":"Spot|Curve|BidAsk","binRangeWidth":30,"reasoning":"brief","confidence":0.80}',
    ]
    return "\n".join(lines)


class ClaudeCliAdvisor:
    """Asks a one-shot LLM CLI for a shape/width suggestion.

    Replies are cached per pool, activation bin and rebalance flag. Every
    failure surfaces as ``AdvisorError`` (or ``TimeoutError``) so the caller can
    fall back to the rule-based result.
    """

    def __init__(
        self,
        settings: AdvisorSettings | None = None,
        *,
        cache: Cache | None = None,
    ) -> None:
        self.settings = settings or get_advisor_settings()
        self._cache = cache or Cache(Cache.MEMORY)
        self.logger = logger.bind(component="advisor")

    async def _run(self, args: Sequence[str]) -> str:
        env = os.environ.copy()
        # The CLI refuses to start from inside another session
        env.pop("CLAUDECODE", None)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise AdvisorError(f"Advisor command failed to start: {exc}") from exc

        try:
            stdout_b, stderr_b = await asyncio.wait_for(
                proc.communicate(), timeout=self.settings.timeout_s
            )
        except BaseException:
            # timeout here or cancellation from the caller's own deadline
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            stderr = stderr_b.decode("utf-8", errors="replace").strip()
            raise AdvisorError(
                f"Advisor exited with code {proc.returncode}: {stderr[-500:]}"
            )
        return stdout_b.decode("utf-8", errors="replace").strip()

    async def recommend(
        self,
        pool: PoolSnapshot,
        active_bin_id: int,
        ctx: RebalanceContext | None = None,
    ) -> AdvisorRecommendation | None:
        if not self.settings.enabled:
            return None

        cache_key = advisor_cache_key(pool.address, active_bin_id, ctx)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            self.logger.debug(f"Advisor cache hit for {pool.name}")
            return cached

        args = [
            *self.settings.command,
            "--tools",
            "",
            "--system-prompt",
            SYSTEM_PROMPT,
            build_prompt(pool, active_bin_id, ctx),
        ]
        self.logger.info(f"Querying advisor for {pool.name}")
        reply = await self._run(args)
        rec = parse_recommendation(reply)

        await self._cache.set(cache_key, rec, ttl=self.settings.cache_ttl_s)
        self.logger.info(
            f"Advisor suggests {rec.shape} x{rec.width} for {pool.name} "
            f"(confidence {rec.confidence:.2f}): {rec.reasoning}"
        )
        return rec
