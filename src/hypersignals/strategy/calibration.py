"""Per-coin parameter calibration on recent history."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Literal

import pandas as pd  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, RootModel

from hypersignals.backtest.optimizer import optimize_parameters
from hypersignals.backtest.runner import WARMUP_BARS, MIN_EXTRA_BARS
from hypersignals.backtest.types import BacktestConfig, OptimizerGrid
from hypersignals.config import TIMEFRAME_SECONDS, RiskConfig
from hypersignals.utils.logging import get_logger

logger = get_logger(__name__)

CalibrationStatus = Literal[
    "calibrated",
    "insufficient_data",
    "no_valid_configs",
    "below_quality_bar",
    "error",
    "skipped",
]

MIN_CALIBRATION_CANDLES = WARMUP_BARS + MIN_EXTRA_BARS
MIN_PROFIT_FACTOR = 0.8
MIN_TRADES = 5
HOLD_HOURS = 48


class BacktestSummary(BaseModel):
    model_config = ConfigDict(extra="forbid", ser_json_inf_nan="constants")

    win_rate: float
    profit_factor: float
    return_pct: float
    total_trades: int
    sharpe: float
    max_drawdown: float


class CoinCalibration(BaseModel):
    """Best grid point for one coin, kept only if it passed the quality gate."""

    model_config = ConfigDict(extra="forbid", ser_json_inf_nan="constants")

    min_confidence: float
    atr_multiplier_sl: float
    rr_multiplier: float
    max_hold_bars: int
    backtest_stats: BacktestSummary
    calibrated_at: datetime | None = None
    candle_count: int = 0


class CoinConfigs(RootModel[dict[str, CoinCalibration]]):
    root: dict[str, CoinCalibration] = {}

    def get(self, coin: str) -> CoinCalibration | None:
        return self.root.get(coin)


@dataclass(slots=True)
class CalibrationOutcome:
    coin: str
    status: CalibrationStatus
    candles: int = 0
    calibration: CoinCalibration | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class CoinTradingConfig:
    """Knobs the scan uses for one coin."""

    min_confidence: float
    atr_multiplier_sl: float
    rr_multiplier: float
    calibrated: bool = False

    def risk_config(self, base: RiskConfig | None = None) -> RiskConfig:
        return replace(
            base or RiskConfig(),
            atr_multiplier_sl=self.atr_multiplier_sl,
            rr_multiplier=self.rr_multiplier,
        )


def resolve_coin_config(
    configs: CoinConfigs,
    coin: str,
    *,
    min_confidence: float = 40,
    atr_multiplier_sl: float = 1.5,
    rr_multiplier: float = 1.5,
) -> CoinTradingConfig:
    """Calibrated knobs when the coin has a dated calibration, else the defaults."""
    entry = configs.get(coin)
    if entry is None or entry.calibrated_at is None:
        return CoinTradingConfig(
            min_confidence=min_confidence,
            atr_multiplier_sl=atr_multiplier_sl,
            rr_multiplier=rr_multiplier,
        )
    return CoinTradingConfig(
        min_confidence=entry.min_confidence,
        atr_multiplier_sl=entry.atr_multiplier_sl,
        rr_multiplier=entry.rr_multiplier,
        calibrated=True,
    )


def hold_bars_for(timeframe: str, hours: float = HOLD_HOURS) -> int:
    return max(1, round(hours * 3600 / TIMEFRAME_SECONDS[timeframe]))


def calibrate_coin(
    coin: str,
    frame: pd.DataFrame,
    *,
    timeframe: str = "4h",
    min_profit_factor: float = MIN_PROFIT_FACTOR,
    min_trades: int = MIN_TRADES,
    max_workers: int = 1,
    now: datetime | None = None,
) -> CalibrationOutcome:
    """Grid-search one coin and apply the quality gate to the best result."""
    candles = len(frame)
    if candles < MIN_CALIBRATION_CANDLES:
        return CalibrationOutcome(coin=coin, status="insufficient_data", candles=candles)

    grid = OptimizerGrid(max_hold_bars=(hold_bars_for(timeframe),))
    results = optimize_parameters(
        frame,
        grid,
        base_config=BacktestConfig(timeframe=timeframe),
        min_trades=min_trades,
        max_workers=max_workers,
    )
    if not results:
        return CalibrationOutcome(coin=coin, status="no_valid_configs", candles=candles)

    best = results[0]
    if best.stats.total_trades < min_trades or best.stats.profit_factor < min_profit_factor:
        logger.info(
            "calibration_below_quality_bar",
            coin=coin,
            trades=best.stats.total_trades,
            profit_factor=best.stats.profit_factor,
        )
        return CalibrationOutcome(coin=coin, status="below_quality_bar", candles=candles)

    stats = best.stats
    calibration = CoinCalibration(
        min_confidence=best.params.min_confidence,
        atr_multiplier_sl=best.params.atr_multiplier_sl,
        rr_multiplier=best.params.rr_multiplier,
        max_hold_bars=best.params.max_hold_bars,
        backtest_stats=BacktestSummary(
            win_rate=stats.win_rate,
            profit_factor=stats.profit_factor,
            return_pct=stats.return_pct,
            total_trades=stats.total_trades,
            sharpe=stats.sharpe,
            max_drawdown=stats.max_drawdown,
        ),
        calibrated_at=now or datetime.now(UTC),
        candle_count=candles,
    )
    return CalibrationOutcome(coin=coin, status="calibrated", candles=candles, calibration=calibration)
