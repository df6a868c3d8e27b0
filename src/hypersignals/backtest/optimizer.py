"""Grid search over backtest parameters."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pandas as pd  # type: ignore[import-untyped]

from hypersignals.backtest.runner import BarSignalCache, run_backtest
from hypersignals.backtest.types import (
    BacktestConfig,
    BacktestFailure,
    BacktestStats,
    OptimizationResult,
    OptimizerGrid,
    OptimizerParams,
)
from hypersignals.config import ScoringConfig
from hypersignals.utils.logging import get_logger

logger = get_logger(__name__)

MIN_TRADES = 5
TOP_N = 20
PROFIT_FACTOR_CAP = 5.0


def rank_score(stats: BacktestStats) -> float:
    """sharpe x sqrt(trades) x min(profit factor, 5)."""
    return stats.sharpe * math.sqrt(stats.total_trades) * min(stats.profit_factor, PROFIT_FACTOR_CAP)


def optimize_parameters(
    frame: pd.DataFrame,
    grid: OptimizerGrid | None = None,
    *,
    base_config: BacktestConfig | None = None,
    min_trades: int = MIN_TRADES,
    top_n: int = TOP_N,
    max_workers: int = 1,
) -> list[OptimizationResult]:
    """Run one backtest per grid combination and return the best ``top_n``.

    Combinations that fail or trade fewer than ``min_trades`` times are
    dropped. Ties keep grid order, so output is deterministic.
    """
    grid = grid or OptimizerGrid()
    base = base_config or BacktestConfig()
    cache = BarSignalCache(
        frame,
        timeframe=base.timeframe,
        scoring=ScoringConfig().with_weights(base.weights),
        warmup_bars=base.warmup_bars,
    )

    def evaluate(params: OptimizerParams) -> OptimizationResult | None:
        config = replace(
            base,
            min_confidence=params.min_confidence,
            atr_multiplier_sl=params.atr_multiplier_sl,
            rr_multiplier=params.rr_multiplier,
            max_hold_bars=params.max_hold_bars,
        )
        result = run_backtest(frame, config, cache=cache)
        if isinstance(result, BacktestFailure):
            logger.debug("optimizer_combination_failed", kind=result.kind, message=result.message)
            return None
        if result.stats.total_trades < min_trades:
            return None
        return OptimizationResult(params=params, stats=result.stats, rank_score=rank_score(result.stats))

    combinations = list(grid.combinations())
    if max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            evaluated = list(pool.map(evaluate, combinations))
    else:
        evaluated = [evaluate(params) for params in combinations]

    results = [item for item in evaluated if item is not None]
    results.sort(key=lambda item: item.rank_score, reverse=True)
    logger.info(
        "optimization_completed",
        combinations=len(combinations),
        qualified=len(results),
        bars=len(frame),
    )
    return results[:top_n]
