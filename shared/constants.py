"""
Shared constants for Base Swap Watcher.

Event topics, fixed-point constants, and default values used across all modules.
"""

from decimal import Decimal

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

Q96 = 2**96  # Uniswap V3 sqrtPriceX96 fixed-point scale
DECIMAL_PRECISION = 78  # enough for uint256 magnitudes

TOKEN_AMOUNT_DP = 3  # fractional digits for token-denominated amounts
BASE_AMOUNT_DP = 4  # fractional digits for the quote/base cost

UNPRICED_MARKER = "NaN"

# ---------------------------------------------------------------------------
# Event Topics (keccak256 of the canonical signature)
# ---------------------------------------------------------------------------

# Transfer(address,address,uint256)
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# Swap(address,address,int256,int256,uint160,uint128,int24)
V3_SWAP_TOPIC = "0xc42079f94a6350d7e6235f29174924f928cc2ac818eb64fed8004e115fbcca67"

# ---------------------------------------------------------------------------
# Function Selectors (raw JSON-RPC eth_call)
# ---------------------------------------------------------------------------

TOKEN0_SELECTOR = "0x0dfe1681"  # token0()
BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)

# ---------------------------------------------------------------------------
# Chain Defaults (Base mainnet)
# ---------------------------------------------------------------------------

DEFAULT_CHAIN_ID = 8453
DEFAULT_CHAIN_TAG = "base"
DEFAULT_VERSION_TAG = "v3"

# ---------------------------------------------------------------------------
# Default Operational Values
# ---------------------------------------------------------------------------

DEFAULT_MIN_AMOUNT_RECEIVED = Decimal("0.01")
DEFAULT_DB_WRITE_THROTTLE_MS = 10_800_000  # 3h
DEFAULT_STALE_PAIR_THRESHOLD_MS = 259_200_000  # 72h
DEFAULT_STALE_PAIR_SCAN_INTERVAL_MS = 21_600_000  # 6h

DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_CALL_TIMEOUT_SECONDS = 10.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_MAX_SECONDS = 30.0
DEFAULT_KEEPALIVE_INTERVAL_SECONDS = 10.0

FAULT_POLICY_EXIT = "exit"
FAULT_POLICY_RESTART = "restart"
