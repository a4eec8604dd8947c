from __future__ import annotations

from typing import Any

import httpx
from aiocache import Cache
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from dlmm_pilot.core.config import get_meteora_api_base
from dlmm_pilot.core.constants.base import DEFAULT_HTTP_TIMEOUT
from dlmm_pilot.core.utils.retry import is_transient_http_error, retry_async

PAIRS_CACHE_TTL_S = 300


class MeteoraPair(BaseModel):
    """One entry of the DLMM ``/pair/all`` listing (only the fields we score on)."""

    model_config = ConfigDict(extra="ignore")

    address: str
    name: str = ""
    mint_x: str = ""
    mint_y: str = ""
    bin_step: int = 0
    current_price: float = 0.0
    liquidity: float = 0.0
    trade_volume_24h: float = 0.0
    fees_24h: float = 0.0
    apr: float = 0.0
    hide: bool = False
    volume: dict[str, float | None] = Field(default_factory=dict)
    fees: dict[str, float | None] = Field(default_factory=dict)

    @field_validator("liquidity", "apr", "current_price", mode="before")
    @classmethod
    def _lenient_float(cls, value: Any) -> float:
        try:
            return float(value or 0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def volume_1h(self) -> float:
        return float(self.volume.get("hour_1", 0) or 0)

    @property
    def volume_4h(self) -> float:
        return float(self.volume.get("hour_4", 0) or 0)

    @property
    def fees_4h(self) -> float:
        return float(self.fees.get("hour_4", 0) or 0)


class MeteoraClient:
    def __init__(self, *, base_url: str | None = None) -> None:
        self.base_url = str(base_url or get_meteora_api_base()).rstrip("/")
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(DEFAULT_HTTP_TIMEOUT))
        self._cache = Cache(Cache.MEMORY)
        self._last_pairs: list[MeteoraPair] = []
        self._pairs_key = f"pairs:{self.base_url}"

    async def _fetch_pairs(self) -> list[dict[str, Any]]:
        url = f"{self.base_url}/pair/all"
        resp = await self.client.get(url)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise ValueError("Meteora API returned unexpected response type")
        return [d for d in data if isinstance(d, dict)]

    async def get_all_pairs(self) -> list[MeteoraPair]:
        """All DLMM pairs, cached for five minutes. Serves the last good list on failure."""
        cached = await self._cache.get(self._pairs_key)
        if cached is not None:
            return cached

        try:
            raw = await retry_async(
                self._fetch_pairs,
                max_retries=3,
                base_delay_s=0.5,
                should_retry=is_transient_http_error,
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Failed to fetch DLMM pairs: {exc}")
            return list(self._last_pairs)

        pairs: list[MeteoraPair] = []
        for item in raw:
            try:
                pairs.append(MeteoraPair.model_validate(item))
            except ValidationError:
                continue
        logger.info(f"Fetched {len(pairs)} DLMM pairs")
        self._last_pairs = pairs
        await self._cache.set(self._pairs_key, pairs, ttl=PAIRS_CACHE_TTL_S)
        return pairs

    async def get_pair(self, address: str) -> MeteoraPair | None:
        for pair in await self.get_all_pairs():
            if pair.address == address:
                return pair
        return None

    async def aclose(self) -> None:
        await self.client.aclose()
