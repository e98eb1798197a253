"""Fixed-point helpers for Q64.96 prices, ticks and position sizing.

All inputs and outputs are Python ints; nothing here rounds through floats
except the initial guess in :func:`tick_at_sqrt_ratio`, which is corrected
against the exact tick table.
"""

from __future__ import annotations

import math
from typing import Sequence

from .constants import (
    MAX_SQRT_RATIO,
    MAX_TICK,
    MAX_UINT256,
    MIN_SQRT_RATIO,
    MIN_TICK,
    Q96,
)

_Q128 = 1 << 128

# sqrt(1.0001) ** -(2 ** i) in Q128.128 for bit i of |tick|, i >= 1.
_TICK_BIT_FACTORS = (
    (0x2, 0xFFF97272373D413259A46990580E213A),
    (0x4, 0xFFF2E50F5F656932EF12357CF3C7FDCC),
    (0x8, 0xFFE5CACA7E10E4E61C3624EAA0941CD0),
    (0x10, 0xFFCB9843D60F6159C9DB58835C926644),
    (0x20, 0xFF973B41FA98C081472E6896DFB254C0),
    (0x40, 0xFF2EA16466C96A3843EC78B326B52861),
    (0x80, 0xFE5DEE046A99A2A811C461F1969C3053),
    (0x100, 0xFCBE86C7900A88AEDCFFC83B479AA3A4),
    (0x200, 0xF987A7253AC413176F2B074CF7815E54),
    (0x400, 0xF3392B0822B70005940C7A398E4B70F3),
    (0x800, 0xE7159475A2C29B7443B29C7FA6E889D9),
    (0x1000, 0xD097F3BDFD2022B8845AD8F792AA5825),
    (0x2000, 0xA9F746462D870FDF8A65DC1F90E061E5),
    (0x4000, 0x70D869A156D2A1B890BB3DF62BAF32F7),
    (0x8000, 0x31BE135F97D08FD981231505542FCFA6),
    (0x10000, 0x9AA508B5B7A84E1C677DE54F3E99BC9),
    (0x20000, 0x5D6AF8DEDB81196699C329225EE604),
    (0x40000, 0x2216E584F5FA1EA926041BEDFE98),
    (0x80000, 0x48A170391F7DC42444E8FA2),
)


def inverse_price_x192(price_x192: int) -> int:
    """Invert a Q192 price (token1 per token0 -> token0 per token1)."""

    if price_x192 <= 0:
        raise ValueError("price must be positive")
    return (1 << 384) // price_x192


def price_x192(sqrt_price_x96: int) -> int:
    return sqrt_price_x96 * sqrt_price_x96


def sqrt_price_to_view(sqrt_price_x96: int, decimals_delta: int = 12) -> int:
    """Human readable token0-per-token1 price, e.g. USDC per ETH.

    Returns 0 when the raw price is below one unit and cannot be inverted.
    """

    raw = price_x192(sqrt_price_x96) >> 192
    if raw == 0:
        return 0
    return 10**decimals_delta // raw


def sqrt_ratio_at_tick(tick: int) -> int:
    """Exact sqrt(1.0001 ** tick) in Q64.96, rounded up like the on-chain table."""

    if not MIN_TICK <= tick <= MAX_TICK:
        raise ValueError(f"tick {tick} outside [{MIN_TICK}, {MAX_TICK}]")
    abs_tick = abs(tick)
    ratio = 0xFFFCB933BD6FAD37AA2D162D1A594001 if abs_tick & 0x1 else _Q128
    for bit, factor in _TICK_BIT_FACTORS:
        if abs_tick & bit:
            ratio = (ratio * factor) >> 128
    if tick > 0:
        ratio = MAX_UINT256 // ratio
    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


def tick_at_sqrt_ratio(sqrt_price_x96: int) -> int:
    """Greatest tick whose sqrt ratio does not exceed ``sqrt_price_x96``."""

    if not MIN_SQRT_RATIO <= sqrt_price_x96 < MAX_SQRT_RATIO:
        raise ValueError("sqrt price outside the supported range")
    guess = math.floor(2 * (math.log(sqrt_price_x96) - math.log(Q96)) / math.log(1.0001))
    tick = max(MIN_TICK, min(MAX_TICK, guess))
    while tick > MIN_TICK and sqrt_ratio_at_tick(tick) > sqrt_price_x96:
        tick -= 1
    while tick < MAX_TICK and sqrt_ratio_at_tick(tick + 1) <= sqrt_price_x96:
        tick += 1
    return tick


def available_tick(tick: int, tick_spacing: int) -> int:
    """Snap ``tick`` to a multiple of ``tick_spacing``, truncating toward zero."""

    if tick_spacing <= 0:
        raise ValueError("tick_spacing must be positive")
    snapped = abs(tick) // tick_spacing * tick_spacing
    return snapped if tick >= 0 else -snapped


def _ordered(sqrt_a: int, sqrt_b: int) -> tuple[int, int]:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if sqrt_a == sqrt_b:
        raise ValueError("sqrt price bounds must differ")
    return sqrt_a, sqrt_b


def liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    return amount0 * sqrt_a * sqrt_b // (Q96 * (sqrt_b - sqrt_a))


def liquidity_for_amount1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    return amount1 * Q96 // (sqrt_b - sqrt_a)


def max_liquidity_for_amounts(
    sqrt_price_x96: int,
    sqrt_a: int,
    sqrt_b: int,
    amount0: int,
    amount1: int,
) -> int:
    """Largest liquidity the two amounts can fund for the range at the current price."""

    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    if sqrt_price_x96 <= sqrt_a:
        return liquidity_for_amount0(sqrt_a, sqrt_b, amount0)
    if sqrt_price_x96 < sqrt_b:
        return min(
            liquidity_for_amount0(sqrt_price_x96, sqrt_b, amount0),
            liquidity_for_amount1(sqrt_a, sqrt_price_x96, amount1),
        )
    return liquidity_for_amount1(sqrt_a, sqrt_b, amount1)


def assets_in_token0(balance0: int, balance1: int, sqrt_price_x96: int) -> int:
    """Value both balances in token0 at the given price."""

    raw = price_x192(sqrt_price_x96) >> 192
    if raw == 0:
        return balance0
    return balance0 + balance1 // raw


def standard_deviation(values: Sequence[int]) -> int:
    """Integer sample standard deviation."""

    count = len(values)
    if count < 2:
        raise ValueError("at least two samples are required")
    mean = sum(values) // count
    variance = sum((value - mean) ** 2 for value in values) // (count - 1)
    return math.isqrt(variance)


__all__ = [
    "assets_in_token0",
    "available_tick",
    "inverse_price_x192",
    "liquidity_for_amount0",
    "liquidity_for_amount1",
    "max_liquidity_for_amounts",
    "price_x192",
    "sqrt_price_to_view",
    "sqrt_ratio_at_tick",
    "standard_deviation",
    "tick_at_sqrt_ratio",
]
