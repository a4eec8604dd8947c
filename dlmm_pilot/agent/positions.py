from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from solders.keypair import Keypair

from dlmm_pilot.agent.monitor import PositionMonitor
from dlmm_pilot.agent.rebalancer import remove_or_close
from dlmm_pilot.agent.strategy_selector import RangeStrategySelector
from dlmm_pilot.agent.tx_builder import PositionBuild, PositionTransactionBuilder
from dlmm_pilot.core.chain import ChainSubmitter
from dlmm_pilot.core.errors import (
    InsufficientFundsError,
    InvalidStrategyError,
    SubmissionError,
    classify_submission_error,
)
from dlmm_pilot.core.events import EventBus, EventType
from dlmm_pilot.core.models import AgentMode, PoolSnapshot, PositionStatus, StrategyConfig
from dlmm_pilot.core.utils.units import to_lamports
from dlmm_pilot.store.db import NewPosition, PositionStore

StatusTuple = tuple[bool, str]


@dataclass(frozen=True)
class PreparedPosition:
    """A position build ready for an external wallet to sign and send in order."""

    pool: PoolSnapshot
    deposit_amount: float
    build: PositionBuild

    @property
    def position_address(self) -> str:
        return self.build.position_address

    @property
    def strategy(self) -> StrategyConfig:
        return self.build.strategy

    def serialized_transactions(self) -> list[bytes]:
        return self.build.serialized()


class PositionService:
    def __init__(
        self,
        *,
        store: PositionStore,
        selector: RangeStrategySelector,
        builder: PositionTransactionBuilder,
        submitter: ChainSubmitter,
        monitor: PositionMonitor,
        events: EventBus,
    ) -> None:
        self.store = store
        self.selector = selector
        self.builder = builder
        self.submitter = submitter
        self.monitor = monitor
        self.events = events
        self.logger = logger.bind(component="positions")

    async def prepare_position(
        self, pool: PoolSnapshot, amount: float, wallet_address: str
    ) -> PreparedPosition:
        if amount <= 0:
            raise InvalidStrategyError(f"Deposit amount must be positive, got {amount}")
        strategy = await self.selector.select(pool)
        build = await self.builder.build(
            pool_address=pool.address,
            owner=wallet_address,
            strategy=strategy,
            amount_lamports=to_lamports(amount),
            home_side=pool.home_side,
        )
        return PreparedPosition(pool=pool, deposit_amount=amount, build=build)

    async def open_position(
        self,
        pool: PoolSnapshot,
        amount: float,
        wallet_address: str,
        signer: Keypair,
        *,
        mode: AgentMode = AgentMode.ASSISTED,
    ) -> StatusTuple:
        """Select, build, sign and submit a new position, then start monitoring it."""
        try:
            prepared = await self.prepare_position(pool, amount, wallet_address)
        except InvalidStrategyError as exc:
            return (False, f"Invalid deposit: {exc}")

        try:
            await self.submitter.submit(prepared.build.transactions, signer=signer)
        except Exception as exc:  # noqa: BLE001
            err = classify_submission_error(exc)
            if isinstance(err, InsufficientFundsError):
                return (
                    False,
                    f"Insufficient funds to open a {amount} position in {pool.name}; "
                    "try a smaller amount",
                )
            return (False, f"Position submission failed: {err}")

        position_id = await self.confirm_position(
            wallet_address=wallet_address,
            pool=pool,
            position_address=prepared.position_address,
            deposit_amount=amount,
            strategy=prepared.strategy,
            mode=mode,
            signer=signer,
        )
        s = prepared.strategy
        return (
            True,
            f"Opened position {position_id} in {pool.name}: {s.shape} "
            f"bins {s.min_bin_id}..{s.max_bin_id} ({s.width} bins)",
        )

    async def confirm_position(
        self,
        *,
        wallet_address: str,
        pool: PoolSnapshot,
        position_address: str,
        deposit_amount: float,
        strategy: StrategyConfig,
        mode: AgentMode = AgentMode.ASSISTED,
        signer: Keypair | None = None,
    ) -> int:
        """Record a position whose deposit has been confirmed on chain and monitor its wallet."""
        position_id = self.store.create_position(
            NewPosition(
                wallet_address=wallet_address,
                pool_address=pool.address,
                pool_name=pool.name,
                position_address=position_address,
                mode=mode,
                home_side=pool.home_side,
                deposit_amount=deposit_amount,
                strategy=strategy,
            )
        )
        self.logger.info(
            f"Recorded position {position_id} ({position_address}) in {pool.name}"
        )
        self.events.publish(
            wallet_address,
            EventType.POSITION_OPENED,
            {
                "position_id": position_id,
                "position_address": position_address,
                "pool_name": pool.name,
                "min_bin_id": strategy.min_bin_id,
                "max_bin_id": strategy.max_bin_id,
            },
        )
        await self.monitor.start(wallet_address, signer)
        return position_id

    async def close_position(
        self, position_id: int, wallet_address: str, signer: Keypair
    ) -> StatusTuple:
        """Withdraw everything and close the position (``active -> closed``)."""
        try:
            position = self.store.get_position(position_id)
        except KeyError:
            return (False, f"Position {position_id} not found")
        if position.wallet_address != wallet_address:
            return (False, f"Position {position_id} does not belong to {wallet_address}")
        if position.status != PositionStatus.ACTIVE:
            return (False, f"Position {position_id} is {position.status}, not active")

        try:
            signatures = await remove_or_close(self.submitter, position, signer)
        except SubmissionError as exc:
            return (False, f"Withdrawal failed: {exc}")
        except Exception as exc:  # noqa: BLE001
            return (False, f"Withdrawal failed: {classify_submission_error(exc)}")

        return self.confirm_closed(
            position_id, wallet_address, signature=signatures[-1] if signatures else None
        )

    def confirm_closed(
        self, position_id: int, wallet_address: str, *, signature: str | None = None
    ) -> StatusTuple:
        """Mark a withdrawn position closed once its close transaction landed."""
        try:
            position = self.store.get_position(position_id)
        except KeyError:
            return (False, f"Position {position_id} not found")
        if position.wallet_address != wallet_address:
            return (False, f"Position {position_id} does not belong to {wallet_address}")
        if not self.store.transition_status(
            position_id, expected=PositionStatus.ACTIVE, new=PositionStatus.CLOSED
        ):
            return (False, f"Position {position_id} is no longer active")
        self.events.publish(
            wallet_address,
            EventType.POSITION_CLOSED,
            {"position_id": position_id, "signature": signature},
        )
        self.logger.info(f"Closed position {position_id} for {wallet_address}")
        return (True, f"Closed position {position_id}")
