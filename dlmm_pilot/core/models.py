from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum

from dlmm_pilot.core.errors import InvalidStrategyError


class TokenSide(StrEnum):
    X = "X"
    Y = "Y"


class StrategyShape(StrEnum):
    SPOT = "Spot"
    CURVE = "Curve"
    BID_ASK = "BidAsk"

    @property
    def program_id(self) -> int:
        """Numeric strategy type used by the DLMM program."""
        return _SHAPE_PROGRAM_IDS[self]


_SHAPE_PROGRAM_IDS = {
    StrategyShape.SPOT: 0,
    StrategyShape.CURVE: 1,
    StrategyShape.BID_ASK: 2,
}


class VolatilityTier(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class MomentumLabel(StrEnum):
    CALM = "CALM"
    RISING = "RISING"
    HOT = "HOT"
    PARABOLIC = "PARABOLIC"


class PositionStatus(StrEnum):
    ACTIVE = "active"
    REBALANCING = "rebalancing"
    CLOSED = "closed"


class AgentMode(StrEnum):
    ASSISTED = "assisted"
    DEGEN = "degen"


@dataclass(frozen=True)
class PoolSnapshot:
    address: str
    name: str
    bin_step: int
    volume_1h: float
    volume_4h: float
    volume_24h: float
    fees_4h: float
    fees_24h: float
    fee_apr: float
    liquidity: float
    home_side: TokenSide
    mint_x: str = ""
    mint_y: str = ""
    current_price: float = 0.0
    score: float = 0.0


@dataclass(frozen=True)
class StrategyConfig:
    shape: StrategyShape
    min_bin_id: int
    max_bin_id: int

    def __post_init__(self) -> None:
        if self.max_bin_id <= self.min_bin_id:
            raise InvalidStrategyError(
                f"Empty or inverted bin range: min={self.min_bin_id} max={self.max_bin_id}"
            )

    @property
    def width(self) -> int:
        return self.max_bin_id - self.min_bin_id + 1


@dataclass(frozen=True)
class RebalanceContext:
    """Geometry and history of the position being replaced.

    Bin ids only compare within one pool, so a context carried into a different
    pool has ``same_pool`` unset and its previous range is not measured against
    the new activation bin.
    """

    prev_min_bin_id: int
    prev_max_bin_id: int
    prev_created_at: datetime
    rebalance_count: int
    same_pool: bool = True

    @property
    def prev_width(self) -> int:
        return self.prev_max_bin_id - self.prev_min_bin_id + 1

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        created = self.prev_created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return max(0.0, (now - created).total_seconds())

    def for_other_pool(self) -> RebalanceContext:
        return replace(self, same_pool=False)
