from __future__ import annotations

from loguru import logger
from solders.keypair import Keypair

from dlmm_pilot.core.chain import ChainQuery, ChainSubmitter, ClaimableFeeReport
from dlmm_pilot.core.config import get_monitoring_settings
from dlmm_pilot.core.constants.base import SOL_DECIMALS
from dlmm_pilot.core.events import EventBus, EventType
from dlmm_pilot.core.models import TokenSide
from dlmm_pilot.store.db import PositionRecord, PositionStore


def claimable_fees_by_position(
    report: ClaimableFeeReport,
    home_side: TokenSide,
    *,
    decimals: int = SOL_DECIMALS,
) -> dict[str, float]:
    """Claimable fees per position, expressed in the home asset.

    Uses the per-bin fee amounts, not the position-level fee checkpoints. The
    non-home side is converted at the raw activation-bin price (Y per X).
    """
    scale = 10**decimals
    price = report.active_bin_price
    out: dict[str, float] = {}
    for position in report.positions:
        fee_x = position.total_fee_x
        fee_y = position.total_fee_y
        if home_side == TokenSide.X:
            converted = fee_y / price if price > 0 else 0.0
            total = fee_x / scale + converted / scale
        else:
            total = fee_y / scale + (fee_x * price) / scale
        out[position.position_address] = total
    return out


class FeeClaimer:
    def __init__(
        self,
        *,
        chain: ChainQuery,
        submitter: ChainSubmitter,
        store: PositionStore,
        events: EventBus,
        threshold: float | None = None,
    ) -> None:
        self.chain = chain
        self.submitter = submitter
        self.store = store
        self.events = events
        self.threshold = (
            threshold
            if threshold is not None
            else get_monitoring_settings().fee_claim_threshold
        )
        self.logger = logger.bind(component="fee_claimer")

    async def claimable_for(self, position: PositionRecord) -> float:
        fees = await self._claimable_in_pool(position)
        return fees.get(position.position_address, 0.0)

    async def _claimable_in_pool(self, position: PositionRecord) -> dict[str, float]:
        report = await self.chain.get_claimable_fees(
            position.pool_address, position.wallet_address
        )
        return claimable_fees_by_position(report, position.home_side)

    def _credit_claimed(
        self, position: PositionRecord, fees: dict[str, float], signature: str
    ) -> None:
        """Record fees for every tracked position the pool-wide claim paid out."""
        siblings = [
            p
            for p in self.store.list_active_positions(position.wallet_address)
            if p.pool_address == position.pool_address and p.id != position.id
        ]
        for p in [position, *siblings]:
            amount = fees.get(p.position_address, 0.0)
            if amount <= 0:
                continue
            self.store.add_earned_fees(p.id, amount)
            self.events.publish(
                p.wallet_address,
                EventType.FEES_CLAIMED,
                {
                    "position_id": p.id,
                    "position_address": p.position_address,
                    "pool_name": p.pool_name,
                    "fees_claimed": amount,
                    "signature": signature,
                },
            )

    async def claim_if_above_threshold(
        self, position: PositionRecord, signer: Keypair
    ) -> float | None:
        """Claim when accrued fees reach the threshold. Returns the amount claimed.

        The claim covers every position the wallet holds in the pool, so each of
        them is credited with its own share. Failures are logged and reported as
        ``None`` so one position never aborts the rest of a monitor tick.
        """
        try:
            fees = await self._claimable_in_pool(position)
            amount = fees.get(position.position_address, 0.0)
            if amount < self.threshold:
                return None

            self.logger.info(
                f"Claiming {amount:.6f} in fees for position {position.position_address} ({position.pool_name})"
            )
            signatures = await self.submitter.claim_all_rewards(
                position.pool_address, position.wallet_address, signer=signer
            )
            if not signatures:
                self.logger.warning(
                    f"Fee claim for {position.position_address} returned no signature"
                )
                return None

            self._credit_claimed(position, fees, signatures[-1])
            return amount
        except Exception as exc:  # noqa: BLE001
            self.logger.error(
                f"Failed to claim fees for {position.position_address}: {exc}"
            )
            return None
