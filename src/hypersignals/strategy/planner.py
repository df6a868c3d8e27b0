"""TP/SL planning from a signal and ATR."""

from __future__ import annotations

import pandas as pd  # type: ignore[import-untyped]

from hypersignals.config import RiskConfig
from hypersignals.features.indicators import FibonacciLevels, atr, fibonacci_levels, last_valid
from hypersignals.types import Side, Signal, TPSLPlan


def plan_tpsl(
    signal: Signal,
    frame: pd.DataFrame,
    config: RiskConfig | None = None,
) -> TPSLPlan | None:
    """Build the plan for ``signal`` priced off the last close of ``frame``.

    Returns None when the signal is NEUTRAL or ATR is unavailable or zero.
    """
    cfg = config or RiskConfig()
    side = signal.side
    if side is None or frame.empty:
        return None

    atr_value = last_valid(atr(frame, cfg.atr_period))
    price = float(frame["close"].iloc[-1])
    return build_plan(side, price, atr_value, fibonacci_levels(frame), cfg)


def build_plan(
    side: Side,
    price: float,
    atr_value: float | None,
    fib: FibonacciLevels | None,
    config: RiskConfig,
) -> TPSLPlan | None:
    if not atr_value or atr_value <= 0 or price <= 0:
        return None

    stop_distance = atr_value * config.atr_multiplier_sl
    sign = 1.0 if side == "LONG" else -1.0
    stop_loss = price - sign * stop_distance
    take_profits = tuple(
        _round_sig(price + sign * stop_distance * level * config.rr_multiplier)
        for level in config.tp_levels
    )

    return TPSLPlan(
        side=side,
        entry=price,
        stop_loss=_round_sig(stop_loss),
        take_profits=take_profits,
        atr=atr_value,
        stop_distance=stop_distance,
        risk_percent=round(stop_distance / price * 100, 2),
        fib_target=_fib_target(side, price, fib, config.fib_min_distance_pct),
    )


def _fib_target(
    side: Side,
    price: float,
    fib: FibonacciLevels | None,
    min_distance_pct: float,
) -> float | None:
    """Nearest fib level beyond ``min_distance_pct`` from entry in the trade's favour."""
    if fib is None:
        return None
    margin = min_distance_pct / 100
    levels = sorted(fib.levels.values())
    if side == "LONG":
        candidates = [level for level in levels if level > price * (1 + margin)]
        return _round_sig(candidates[0]) if candidates else None
    candidates = [level for level in levels if level < price * (1 - margin)]
    return _round_sig(candidates[-1]) if candidates else None


def _round_sig(value: float, digits: int = 6) -> float:
    return float(f"{value:.{digits}g}")
