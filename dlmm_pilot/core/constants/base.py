DEFAULT_HTTP_TIMEOUT = 30.0  # HTTP client timeout

# Solana
SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9

DEFAULT_SLIPPAGE_BPS = 100
