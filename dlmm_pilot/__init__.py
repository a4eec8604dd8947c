__version__ = "0.1.0"

from dlmm_pilot.core import (
    DlmmPilotError,
    InvalidStrategyError,
    PoolSnapshot,
    RebalanceContext,
    StrategyConfig,
    StrategyShape,
    TokenSide,
)

__all__ = [
    "__version__",
    "DlmmPilotError",
    "InvalidStrategyError",
    "PoolSnapshot",
    "RebalanceContext",
    "StrategyConfig",
    "StrategyShape",
    "TokenSide",
]
