from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from solders.keypair import Keypair

from dlmm_pilot.core.models import AgentMode, PoolSnapshot, RebalanceContext

if TYPE_CHECKING:
    from dlmm_pilot.agent.advisor import AdvisorRecommendation
    from dlmm_pilot.agent.tx_builder import PositionTransaction


# ---------------------------------------------------------------------------
# Claimable fee accounting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BinFees:
    bin_id: int
    fee_x: int  # raw token-X units
    fee_y: int  # raw token-Y units


@dataclass(frozen=True)
class PositionFees:
    position_address: str
    bins: tuple[BinFees, ...] = ()

    @property
    def total_fee_x(self) -> int:
        return sum(b.fee_x for b in self.bins)

    @property
    def total_fee_y(self) -> int:
        return sum(b.fee_y for b in self.bins)


@dataclass(frozen=True)
class ClaimableFeeReport:
    """Per-bin claimable fees for every position an owner holds in one pool."""

    pool_address: str
    active_bin_price: float  # raw Y per X at the activation bin
    positions: tuple[PositionFees, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Collaborator boundaries
# ---------------------------------------------------------------------------


class ChainQuery(Protocol):
    async def get_active_bin(self, pool_address: str) -> int: ...

    async def get_latest_blockhash(self) -> tuple[str, int]:
        """Return ``(blockhash, last_valid_block_height)``."""
        ...

    async def get_claimable_fees(
        self, pool_address: str, owner: str
    ) -> ClaimableFeeReport: ...


class ChainSubmitter(Protocol):
    async def submit(
        self, transactions: Sequence[PositionTransaction], *, signer: Keypair
    ) -> list[str]:
        """Sign, send and confirm in order. Returns one signature per transaction."""
        ...

    async def remove_liquidity(
        self, pool_address: str, position_address: str, *, signer: Keypair
    ) -> list[str]:
        """Remove all liquidity, claim and close. Raises ``NoLiquidityError`` when empty."""
        ...

    async def close_position_if_empty(
        self, pool_address: str, position_address: str, *, signer: Keypair
    ) -> list[str]: ...

    async def claim_all_rewards(
        self, pool_address: str, owner: str, *, signer: Keypair
    ) -> list[str]: ...


class PoolRanking(Protocol):
    async def rank_pools(self, count: int, mode: AgentMode) -> list[PoolSnapshot]: ...


class StrategyAdvisor(Protocol):
    async def recommend(
        self,
        pool: PoolSnapshot,
        active_bin_id: int,
        ctx: RebalanceContext | None = None,
    ) -> AdvisorRecommendation | None: ...


class NotificationSink(Protocol):
    def notify(
        self,
        *,
        wallet_address: str,
        type: str,
        title: str,
        message: str,
        position_id: int | None = None,
        action_type: str | None = None,
    ) -> int: ...
