"""DLMM program limits and strategy tuning tables."""

from typing import Final

# ---------------------------------------------------------------------------
# Program limits
# ---------------------------------------------------------------------------

# Bins that fit in a single initialize-and-deposit transaction
SINGLE_TX_BIN_LIMIT: Final[int] = 69
# Max bins one increase-position-length instruction may add
MAX_RESIZE_PER_IX: Final[int] = 91
MAX_POSITION_WIDTH: Final[int] = 1400
MIN_ADVISOR_WIDTH: Final[int] = 4

# ---------------------------------------------------------------------------
# Volatility tiers (bin step, in basis points)
# ---------------------------------------------------------------------------

LOW_VOLATILITY_MAX_BIN_STEP = 5
MEDIUM_VOLATILITY_MAX_BIN_STEP = 30
HIGH_VOLATILITY_MAX_BIN_STEP = 60

# ---------------------------------------------------------------------------
# Momentum
# ---------------------------------------------------------------------------

SHORT_TERM_SHARE_TARGET = 0.10  # 1h volume / 24h volume saturating at 10%
SUSTAINED_SHARE_TARGET = 0.33  # 4h volume / 24h volume saturating at 33%
TURNOVER_SATURATION = 100.0  # 24h volume / liquidity

MOMENTUM_WEIGHT_SHORT = 0.35
MOMENTUM_WEIGHT_SUSTAINED = 0.30
MOMENTUM_WEIGHT_TURNOVER = 0.20
MOMENTUM_WEIGHT_FEE_YIELD = 0.15

# (minimum fee APR %, bonus), checked in order
FEE_YIELD_TIERS: Final[tuple[tuple[float, float], ...]] = (
    (1000.0, 1.0),
    (300.0, 0.7),
    (100.0, 0.4),
    (30.0, 0.2),
)

PARABOLIC_SCORE = 0.8
PARABOLIC_ALT_SCORE = 0.65
PARABOLIC_ALT_TURNOVER = 50.0
HOT_SCORE = 0.5
HOT_ALT_SCORE = 0.4
HOT_ALT_TURNOVER = 20.0
RISING_SCORE = 0.3

# ---------------------------------------------------------------------------
# Rebalance widening
# ---------------------------------------------------------------------------

# (max age in seconds, multiplier); positions older than the last bound get the fallback
REBALANCE_AGE_MULTIPLIERS: Final[tuple[tuple[int, float], ...]] = (
    (30 * 60, 4.0),
    (60 * 60, 3.0),
    (4 * 60 * 60, 2.0),
    (12 * 60 * 60, 1.5),
)
REBALANCE_AGE_FALLBACK_MULTIPLIER = 1.2

# (overshoot / previous width strictly greater than, factor)
OVERSHOOT_FACTORS: Final[tuple[tuple[float, float], ...]] = (
    (2.0, 1.5),
    (1.0, 1.3),
    (0.5, 1.15),
)

# (minimum rebalance count, penalty)
REPEAT_REBALANCE_PENALTIES: Final[tuple[tuple[int, float], ...]] = (
    (3, 1.5),
    (2, 1.3),
)

EXTREME_MOMENTUM_BOOST = 1.15

# ---------------------------------------------------------------------------
# Pool ranking
# ---------------------------------------------------------------------------

RANKING_MOMENTUM_WEIGHT = 0.15
RANKING_MOMENTUM_SHARE_TARGET = 0.5
REBALANCE_CANDIDATE_COUNT = 5
REBALANCE_KEEP_RANK = 3
RANKED_POOLS_CACHE_TTL_S = 120
