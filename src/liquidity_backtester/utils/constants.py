"""Shared constants for pool replay and fixed-point math."""

# Identity used when replaying historical MINT/BURN events.
SYSTEM_USER = "0xSYSTEM"

# Events replayed between pool snapshots.
DEFAULT_CHECKPOINT_INTERVAL = 4_000

# Layout of the `date` column in the event store; lexical order == time order.
STORE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

Q96 = 1 << 96
MAX_UINT128 = (1 << 128) - 1
MAX_UINT256 = (1 << 256) - 1

MIN_TICK = -887_272
MAX_TICK = 887_272
MIN_SQRT_RATIO = 4_295_128_739
MAX_SQRT_RATIO = 1_461_446_703_485_210_103_287_273_052_203_988_822_378_723_970_342

# 0.3% fee tier in hundredths of a bip.
FEE_AMOUNT_MEDIUM = 3_000

__all__ = [
    "SYSTEM_USER",
    "DEFAULT_CHECKPOINT_INTERVAL",
    "STORE_DATE_FORMAT",
    "LOG_DATE_FORMAT",
    "Q96",
    "MAX_UINT128",
    "MAX_UINT256",
    "MIN_TICK",
    "MAX_TICK",
    "MIN_SQRT_RATIO",
    "MAX_SQRT_RATIO",
    "FEE_AMOUNT_MEDIUM",
]
