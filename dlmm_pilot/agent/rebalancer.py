from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger
from solders.keypair import Keypair

from dlmm_pilot.agent.strategy_selector import RangeStrategySelector
from dlmm_pilot.agent.tx_builder import PositionTransactionBuilder
from dlmm_pilot.core.chain import ChainSubmitter, PoolRanking
from dlmm_pilot.core.constants.dlmm import (
    REBALANCE_CANDIDATE_COUNT,
    REBALANCE_KEEP_RANK,
)
from dlmm_pilot.core.errors import (
    NoLiquidityError,
    SubmissionError,
    SubmissionFailure,
    classify_submission_error,
    is_no_liquidity_message,
)
from dlmm_pilot.core.events import EventBus, EventType
from dlmm_pilot.core.models import PoolSnapshot, PositionStatus
from dlmm_pilot.core.utils.units import to_lamports
from dlmm_pilot.store.db import NewPosition, PositionRecord, PositionStore


class RebalanceStatus(StrEnum):
    COMPLETED = "completed"
    CLOSED_NO_POOL = "closed_no_pool"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RebalanceOutcome:
    status: RebalanceStatus
    position_id: int
    new_position_id: int | None = None
    pool_address: str | None = None
    switched_pool: bool = False
    signatures: tuple[str, ...] = ()
    error: str | None = None
    error_kind: SubmissionFailure | None = None


def choose_target_pool(
    ranked: list[PoolSnapshot],
    current_pool_address: str,
    *,
    keep_rank: int = REBALANCE_KEEP_RANK,
) -> PoolSnapshot | None:
    """Stay in the current pool while it ranks in the top ``keep_rank``, else take the leader."""
    for idx, pool in enumerate(ranked):
        if pool.address == current_pool_address and idx < keep_rank:
            return pool
    return ranked[0] if ranked else None


async def remove_or_close(
    submitter: ChainSubmitter,
    position: PositionRecord,
    signer: Keypair,
) -> list[str]:
    """Remove all liquidity and close; an already-empty position takes the close-only path."""
    try:
        return await submitter.remove_liquidity(
            position.pool_address, position.position_address, signer=signer
        )
    except NoLiquidityError:
        pass
    except Exception as exc:
        if not is_no_liquidity_message(str(exc)):
            raise
    logger.info(
        f"Position {position.position_address} holds no liquidity, closing only"
    )
    return await submitter.close_position_if_empty(
        position.pool_address, position.position_address, signer=signer
    )


class Rebalancer:
    def __init__(
        self,
        *,
        store: PositionStore,
        ranking: PoolRanking,
        selector: RangeStrategySelector,
        builder: PositionTransactionBuilder,
        submitter: ChainSubmitter,
        events: EventBus,
        candidate_count: int = REBALANCE_CANDIDATE_COUNT,
    ) -> None:
        self.store = store
        self.ranking = ranking
        self.selector = selector
        self.builder = builder
        self.submitter = submitter
        self.events = events
        self.candidate_count = candidate_count
        self.logger = logger.bind(component="rebalancer")

    async def rebalance(
        self, position: PositionRecord, signer: Keypair
    ) -> RebalanceOutcome:
        wallet = position.wallet_address
        if not self.store.transition_status(
            position.id,
            expected=PositionStatus.ACTIVE,
            new=PositionStatus.REBALANCING,
        ):
            self.logger.info(
                f"Position {position.id} is no longer active, skipping rebalance"
            )
            return RebalanceOutcome(
                status=RebalanceStatus.SKIPPED, position_id=position.id
            )

        self.events.publish(
            wallet,
            EventType.REBALANCE_STARTED,
            {
                "position_id": position.id,
                "position_address": position.position_address,
                "pool_name": position.pool_name,
            },
        )

        try:
            self.logger.info(
                f"Rebalancing position {position.position_address}: removing liquidity"
            )
            signatures = list(await remove_or_close(self.submitter, position, signer))

            ranked = await self.ranking.rank_pools(self.candidate_count, position.mode)
            target = choose_target_pool(ranked, position.pool_address)
            if target is None:
                self.store.transition_status(
                    position.id,
                    expected=PositionStatus.REBALANCING,
                    new=PositionStatus.CLOSED,
                )
                self.logger.warning(
                    f"No viable pool for position {position.id}, closed without redeploying"
                )
                self.events.publish(
                    wallet,
                    EventType.REBALANCE_CLOSED,
                    {
                        "position_id": position.id,
                        "position_address": position.position_address,
                        "reason": "no_viable_pool",
                    },
                )
                return RebalanceOutcome(
                    status=RebalanceStatus.CLOSED_NO_POOL,
                    position_id=position.id,
                    signatures=tuple(signatures),
                )

            ctx = position.rebalance_context()
            switched = target.address != position.pool_address
            if switched:
                self.logger.info(
                    f"Switching pools: {position.pool_name} -> {target.name}"
                )
                ctx = ctx.for_other_pool()

            strategy = await self.selector.select(target, ctx)
            build = await self.builder.build(
                pool_address=target.address,
                owner=wallet,
                strategy=strategy,
                amount_lamports=to_lamports(position.deposit_amount),
                home_side=target.home_side,
            )
            try:
                signatures += await self.submitter.submit(
                    build.transactions, signer=signer
                )
            except SubmissionError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise classify_submission_error(exc) from exc

            new_count = position.rebalance_count + 1
            new_id = self.store.replace_position(
                position.id,
                NewPosition(
                    wallet_address=wallet,
                    pool_address=target.address,
                    pool_name=target.name,
                    position_address=build.position_address,
                    mode=position.mode,
                    home_side=target.home_side,
                    deposit_amount=position.deposit_amount,
                    strategy=strategy,
                    rebalance_count=new_count,
                ),
            )
        except asyncio.CancelledError:
            self.store.transition_status(
                position.id,
                expected=PositionStatus.REBALANCING,
                new=PositionStatus.ACTIVE,
            )
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.exception(
                f"Rebalance failed for position {position.position_address}"
            )
            self.store.transition_status(
                position.id,
                expected=PositionStatus.REBALANCING,
                new=PositionStatus.ACTIVE,
            )
            self.events.publish(
                wallet,
                EventType.REBALANCE_FAILED,
                {
                    "position_id": position.id,
                    "position_address": position.position_address,
                    "error": str(exc),
                },
            )
            return RebalanceOutcome(
                status=RebalanceStatus.FAILED,
                position_id=position.id,
                error=str(exc),
                error_kind=exc.kind if isinstance(exc, SubmissionError) else None,
            )

        self.events.publish(
            wallet,
            EventType.REBALANCE_COMPLETED,
            {
                "old_position_id": position.id,
                "new_position_id": new_id,
                "old_position_address": position.position_address,
                "new_position_address": build.position_address,
                "pool_name": target.name,
                "shape": str(strategy.shape),
                "min_bin_id": strategy.min_bin_id,
                "max_bin_id": strategy.max_bin_id,
                "switched_pool": switched,
                "signature": signatures[-1] if signatures else None,
            },
        )
        self.logger.info(
            f"Rebalance completed: {position.position_address} -> {build.position_address} "
            f"in {target.name} ({strategy.shape} {strategy.min_bin_id}..{strategy.max_bin_id})"
        )
        return RebalanceOutcome(
            status=RebalanceStatus.COMPLETED,
            position_id=position.id,
            new_position_id=new_id,
            pool_address=target.address,
            switched_pool=switched,
            signatures=tuple(signatures),
        )
