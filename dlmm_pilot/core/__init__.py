from dlmm_pilot.core.errors import (
    DlmmPilotError,
    InsufficientFundsError,
    InvalidStrategyError,
    SubmissionError,
)
from dlmm_pilot.core.models import (
    PoolSnapshot,
    RebalanceContext,
    StrategyConfig,
    StrategyShape,
    TokenSide,
)

__all__ = [
    "DlmmPilotError",
    "InsufficientFundsError",
    "InvalidStrategyError",
    "SubmissionError",
    "PoolSnapshot",
    "RebalanceContext",
    "StrategyConfig",
    "StrategyShape",
    "TokenSide",
]
