"""AMM pricing helpers: constant-product outputs, impact approximation and size search."""

import math
from typing import Callable, Tuple

BPS = 10000.0
GOLDEN_RATIO = (math.sqrt(5) - 1) / 2


def price_impact(trade_size: float, reserve: float, coefficient: float = 1.0) -> float:
    """Approximate relative price impact of ``trade_size`` against ``reserve``.

    ``coefficient`` scales the impact per venue; concentrated-liquidity pools
    use a value below 1.0.
    """
    if trade_size <= 0:
        return 0.0
    if reserve <= 0:
        return 1.0
    return min(coefficient * trade_size / (reserve + trade_size), 1.0)


def quoted_output(amount_in: float, price: float, reserve_in: float,
                  fee_bps: float = 0.0, coefficient: float = 1.0) -> float:
    """Output of a swap at ``price`` reduced by impact and the venue fee."""
    if amount_in <= 0 or price <= 0:
        return 0.0
    impact = price_impact(amount_in, reserve_in, coefficient)
    return amount_in * price * (1 - impact) * (1 - fee_bps / BPS)


def amount_out(amount_in: float, reserve_in: float, reserve_out: float,
               fee_bps: float = 30.0, coefficient: float = 1.0) -> float:
    """Constant-product swap output (x * y = k) with the fee taken on input.

    Reserves are scaled by ``1 / coefficient`` so a concentrated-liquidity
    venue behaves like a deeper pool.
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0.0
    effective_in = reserve_in / coefficient
    effective_out = reserve_out / coefficient
    amount_in_with_fee = amount_in * (1 - fee_bps / BPS)
    out = amount_in_with_fee * effective_out / (effective_in + amount_in_with_fee)
    return min(out, reserve_out)


def reserves_after_swap(amount_in: float, reserve_in: float, reserve_out: float,
                        fee_bps: float = 30.0, coefficient: float = 1.0) -> Tuple[float, float, float]:
    """Simulate a swap and return ``(amount_out, new_reserve_in, new_reserve_out)``."""
    out = amount_out(amount_in, reserve_in, reserve_out, fee_bps, coefficient)
    return out, reserve_in + amount_in, reserve_out - out


def golden_section_max(func: Callable[[float], float], lower: float, upper: float,
                       iterations: int = 60) -> Tuple[float, float]:
    """Maximize a unimodal function on ``[lower, upper]``.

    Both bounds are also evaluated so a monotonic function returns its edge.
    """
    if upper <= lower:
        return lower, func(lower)

    a, b = lower, upper
    c = b - GOLDEN_RATIO * (b - a)
    d = a + GOLDEN_RATIO * (b - a)
    fc, fd = func(c), func(d)
    for _ in range(iterations):
        if fc > fd:
            b, d, fd = d, c, fc
            c = b - GOLDEN_RATIO * (b - a)
            fc = func(c)
        else:
            a, c, fc = c, d, fd
            d = a + GOLDEN_RATIO * (b - a)
            fd = func(d)

    candidates = [(c, fc), (d, fd), (lower, func(lower)), (upper, func(upper))]
    return max(candidates, key=lambda item: item[1])
