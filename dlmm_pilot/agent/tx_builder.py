"""Position transaction assembly.

A range of up to ``SINGLE_TX_BIN_LIMIT`` bins fits in one
initialize-and-deposit transaction. Wider ranges are built as an ordered
sequence: initialize the first 69 bins next to the activation bin, grow the
position away from it in steps of at most ``MAX_RESIZE_PER_IX`` bins, then
deposit across the full range. Every step depends on account state created by
the step before it, so the list order is the submission order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Annotated, Literal

from loguru import logger
from pydantic import BaseModel, Field
from solders.keypair import Keypair

from dlmm_pilot.core.chain import ChainQuery
from dlmm_pilot.core.constants.base import DEFAULT_SLIPPAGE_BPS
from dlmm_pilot.core.constants.dlmm import (
    MAX_POSITION_WIDTH,
    MAX_RESIZE_PER_IX,
    SINGLE_TX_BIN_LIMIT,
)
from dlmm_pilot.core.errors import InvalidStrategyError
from dlmm_pilot.core.models import StrategyConfig, StrategyShape, TokenSide

RESIZE_COMPUTE_UNIT_LIMIT = 200_000


class ResizeSide(IntEnum):
    LOWER = 0
    UPPER = 1


# ── operations ────────────────────────────────────────────────────────────


class OperationBase(BaseModel):
    pool_address: str
    owner: str
    position_address: str


class InitializePositionAndAddLiquidityByStrategy(OperationBase):
    type: Literal["initialize_position_and_add_liquidity_by_strategy"] = (
        "initialize_position_and_add_liquidity_by_strategy"
    )
    min_bin_id: int
    max_bin_id: int
    shape: StrategyShape
    strategy_type: int
    total_x_amount: int
    total_y_amount: int
    slippage_bps: int


class InitializePosition(OperationBase):
    type: Literal["initialize_position"] = "initialize_position"
    lower_bin_id: int
    width: int


class IncreasePositionLength(OperationBase):
    type: Literal["increase_position_length"] = "increase_position_length"
    length: int
    side: ResizeSide


class AddLiquidityByStrategy(OperationBase):
    type: Literal["add_liquidity_by_strategy"] = "add_liquidity_by_strategy"
    min_bin_id: int
    max_bin_id: int
    shape: StrategyShape
    strategy_type: int
    total_x_amount: int
    total_y_amount: int
    slippage_bps: int


PositionOperation = (
    InitializePositionAndAddLiquidityByStrategy
    | InitializePosition
    | IncreasePositionLength
    | AddLiquidityByStrategy
)


class PositionTransaction(BaseModel):
    step: int
    operation: Annotated[PositionOperation, Field(discriminator="type")]
    recent_blockhash: str
    last_valid_block_height: int
    fee_payer: str
    compute_unit_limit: int | None = None
    # pubkey -> signature, filled for steps the position keypair must co-sign
    partial_signatures: dict[str, str] = Field(default_factory=dict)

    def message_bytes(self) -> bytes:
        return self.model_dump_json(exclude={"partial_signatures"}).encode()

    def serialize(self) -> bytes:
        return self.model_dump_json().encode()


# ── build result ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PositionBuild:
    strategy: StrategyConfig
    position_keypair: Keypair
    transactions: list[PositionTransaction]
    blockhash: str
    last_valid_block_height: int

    @property
    def position_address(self) -> str:
        return str(self.position_keypair.pubkey())

    @property
    def is_wide(self) -> bool:
        return len(self.transactions) > 1

    def serialized(self) -> list[bytes]:
        return [tx.serialize() for tx in self.transactions]


@dataclass(frozen=True)
class WidePlan:
    init_lower_bin_id: int
    init_width: int
    resize_side: ResizeSide
    resize_chunks: tuple[int, ...]


def expected_operation_count(width: int) -> int:
    if width <= SINGLE_TX_BIN_LIMIT:
        return 1
    return math.ceil((width - SINGLE_TX_BIN_LIMIT) / MAX_RESIZE_PER_IX) + 2


def plan_wide_position(strategy: StrategyConfig, side: TokenSide) -> WidePlan:
    """Anchor the initial 69 bins at the activation-side end and grow outward.

    X deposits sit above the activation bin, so the initial slice starts at
    ``min_bin_id`` and the position grows upward. Y deposits mirror that.
    """
    width = strategy.width
    if width <= SINGLE_TX_BIN_LIMIT:
        raise InvalidStrategyError(
            f"Width {width} fits in a single transaction; no wide plan needed"
        )
    if side == TokenSide.X:
        init_lower = strategy.min_bin_id
        resize_side = ResizeSide.UPPER
    else:
        init_lower = strategy.max_bin_id - SINGLE_TX_BIN_LIMIT + 1
        resize_side = ResizeSide.LOWER

    chunks: list[int] = []
    remaining = width - SINGLE_TX_BIN_LIMIT
    while remaining > 0:
        chunk = min(remaining, MAX_RESIZE_PER_IX)
        chunks.append(chunk)
        remaining -= chunk
    return WidePlan(
        init_lower_bin_id=init_lower,
        init_width=SINGLE_TX_BIN_LIMIT,
        resize_side=resize_side,
        resize_chunks=tuple(chunks),
    )


def validate_build_inputs(strategy: StrategyConfig, amount_lamports: int) -> None:
    width = strategy.max_bin_id - strategy.min_bin_id + 1
    if width < 1 or strategy.max_bin_id <= strategy.min_bin_id:
        raise InvalidStrategyError(
            f"Invalid bin range {strategy.min_bin_id}..{strategy.max_bin_id}"
        )
    if width > MAX_POSITION_WIDTH:
        raise InvalidStrategyError(
            f"Width {width} exceeds the {MAX_POSITION_WIDTH}-bin position limit"
        )
    if amount_lamports <= 0:
        raise InvalidStrategyError(
            f"Deposit amount must be positive, got {amount_lamports}"
        )


class PositionTransactionBuilder:
    def __init__(self, chain: ChainQuery) -> None:
        self.chain = chain
        self.logger = logger.bind(component="tx_builder")

    async def build(
        self,
        *,
        pool_address: str,
        owner: str,
        strategy: StrategyConfig,
        amount_lamports: int,
        home_side: TokenSide,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        position_keypair: Keypair | None = None,
    ) -> PositionBuild:
        validate_build_inputs(strategy, amount_lamports)

        position_kp = position_keypair or Keypair()
        position_address = str(position_kp.pubkey())
        blockhash, last_valid = await self.chain.get_latest_blockhash()

        total_x = amount_lamports if home_side == TokenSide.X else 0
        total_y = amount_lamports if home_side == TokenSide.Y else 0
        base = {
            "pool_address": pool_address,
            "owner": owner,
            "position_address": position_address,
        }
        deposit = {
            "min_bin_id": strategy.min_bin_id,
            "max_bin_id": strategy.max_bin_id,
            "shape": strategy.shape,
            "strategy_type": strategy.shape.program_id,
            "total_x_amount": total_x,
            "total_y_amount": total_y,
            "slippage_bps": slippage_bps,
        }

        operations: list[tuple[PositionOperation, int | None]] = []
        if strategy.width <= SINGLE_TX_BIN_LIMIT:
            operations.append(
                (InitializePositionAndAddLiquidityByStrategy(**base, **deposit), None)
            )
        else:
            plan = plan_wide_position(strategy, home_side)
            operations.append(
                (
                    InitializePosition(
                        **base,
                        lower_bin_id=plan.init_lower_bin_id,
                        width=plan.init_width,
                    ),
                    None,
                )
            )
            for chunk in plan.resize_chunks:
                operations.append(
                    (
                        IncreasePositionLength(
                            **base, length=chunk, side=plan.resize_side
                        ),
                        RESIZE_COMPUTE_UNIT_LIMIT,
                    )
                )
            operations.append((AddLiquidityByStrategy(**base, **deposit), None))

        transactions: list[PositionTransaction] = []
        for step, (op, cu_limit) in enumerate(operations):
            tx = PositionTransaction(
                step=step,
                operation=op,
                recent_blockhash=blockhash,
                last_valid_block_height=last_valid,
                fee_payer=owner,
                compute_unit_limit=cu_limit,
            )
            if isinstance(op, (InitializePosition, InitializePositionAndAddLiquidityByStrategy)):
                signature = position_kp.sign_message(tx.message_bytes())
                tx.partial_signatures[position_address] = str(signature)
            transactions.append(tx)

        self.logger.info(
            f"Built {len(transactions)} transaction(s) for position {position_address} "
            f"in {pool_address}: {strategy.shape} {strategy.min_bin_id}..{strategy.max_bin_id} "
            f"({strategy.width} bins{', wide' if len(transactions) > 1 else ''})"
        )
        return PositionBuild(
            strategy=strategy,
            position_keypair=position_kp,
            transactions=transactions,
            blockhash=blockhash,
            last_valid_block_height=last_valid,
        )
