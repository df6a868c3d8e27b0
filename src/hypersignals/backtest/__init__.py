"""Backtest package exports."""

from hypersignals.backtest.data import candles_to_frame, empty_ohlcv, load_ohlcv_csv, normalize_ohlcv
from hypersignals.backtest.optimizer import optimize_parameters, rank_score
from hypersignals.backtest.runner import WARMUP_BARS, BarSignalCache, require_history, run_backtest
from hypersignals.backtest.types import (
    BacktestConfig,
    BacktestFailure,
    BacktestResult,
    BacktestStats,
    BacktestTrade,
    EquityPoint,
    OptimizationResult,
    OptimizerGrid,
    OptimizerParams,
)

__all__ = [
    "WARMUP_BARS",
    "BacktestConfig",
    "BacktestFailure",
    "BacktestResult",
    "BacktestStats",
    "BacktestTrade",
    "BarSignalCache",
    "EquityPoint",
    "OptimizationResult",
    "OptimizerGrid",
    "OptimizerParams",
    "candles_to_frame",
    "empty_ohlcv",
    "load_ohlcv_csv",
    "normalize_ohlcv",
    "optimize_parameters",
    "rank_score",
    "require_history",
    "run_backtest",
]
