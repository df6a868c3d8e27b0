from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pandas as pd
import pytest

from hypersignals.backtest.types import BacktestStats, OptimizationResult, OptimizerParams
from hypersignals.config import RiskConfig
from hypersignals.strategy import calibration
from hypersignals.strategy.calibration import (
    BacktestSummary,
    CoinCalibration,
    CoinConfigs,
    calibrate_coin,
    hold_bars_for,
    resolve_coin_config,
)

NOW = datetime(2026, 4, 1, tzinfo=UTC)


def _build_ohlcv(rows: int, growth: float = 0.01) -> pd.DataFrame:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    closes = [100.0 * (1 + growth) ** i for i in range(rows)]
    opens = [closes[0], *closes[:-1]]
    return pd.DataFrame(
        {
            "open_time": [start + timedelta(hours=4 * i) for i in range(rows)],
            "open": opens,
            "high": [c * 1.01 for c in closes] if growth else closes,
            "low": [o * 0.99 for o in opens] if growth else closes,
            "close": closes,
            "volume": [1000.0 for _ in range(rows)],
        }
    )


def _calibration(calibrated_at: datetime | None = NOW) -> CoinCalibration:
    return CoinCalibration(
        min_confidence=50,
        atr_multiplier_sl=2.0,
        rr_multiplier=2.5,
        max_hold_bars=12,
        backtest_stats=BacktestSummary(
            win_rate=0.6,
            profit_factor=1.8,
            return_pct=12.0,
            total_trades=9,
            sharpe=0.4,
            max_drawdown=3.0,
        ),
        calibrated_at=calibrated_at,
        candle_count=360,
    )


def _fake_optimizer(profit_factor: float, trades: int = 8) -> Callable[..., list[OptimizationResult]]:
    def optimize(frame: pd.DataFrame, grid: object, **kwargs: object) -> list[OptimizationResult]:
        params = OptimizerParams(min_confidence=30, atr_multiplier_sl=1.5, rr_multiplier=2.0, max_hold_bars=12)
        stats = BacktestStats(total_trades=trades, win_rate=0.5, profit_factor=profit_factor, sharpe=0.3)
        return [OptimizationResult(params=params, stats=stats, rank_score=1.0)]

    return optimize


def test_resolve_coin_config_defaults() -> None:
    resolved = resolve_coin_config(CoinConfigs({}), "BTC", min_confidence=45, atr_multiplier_sl=1.6)
    assert not resolved.calibrated
    assert resolved.min_confidence == 45
    assert resolved.atr_multiplier_sl == 1.6
    assert resolved.rr_multiplier == 1.5


def test_resolve_coin_config_uses_dated_calibration() -> None:
    configs = CoinConfigs({"BTC": _calibration(), "ETH": _calibration(calibrated_at=None)})

    btc = resolve_coin_config(configs, "BTC")
    assert btc.calibrated
    assert (btc.min_confidence, btc.atr_multiplier_sl, btc.rr_multiplier) == (50, 2.0, 2.5)
    assert not resolve_coin_config(configs, "ETH").calibrated

    risk = btc.risk_config(RiskConfig(tp_levels=(1.0,)))
    assert risk.atr_multiplier_sl == 2.0
    assert risk.rr_multiplier == 2.5
    assert risk.tp_levels == (1.0,)


def test_coin_configs_roundtrip() -> None:
    configs = CoinConfigs({"BTC": _calibration()})
    restored = CoinConfigs.model_validate(configs.model_dump(mode="json"))
    assert restored.get("BTC") == configs.get("BTC")
    assert restored.get("DOGE") is None


def test_hold_bars_cover_two_days() -> None:
    assert hold_bars_for("4h") == 12
    assert hold_bars_for("1h") == 48
    assert hold_bars_for("1d") == 2


def test_calibrate_requires_history() -> None:
    outcome = calibrate_coin("BTC", _build_ohlcv(209))
    assert outcome.status == "insufficient_data"
    assert outcome.candles == 209
    assert outcome.calibration is None


def test_flat_history_has_no_valid_configs() -> None:
    assert calibrate_coin("BTC", _build_ohlcv(260, growth=0.0)).status == "no_valid_configs"


def test_quality_bar_rejects_weak_results(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(calibration, "optimize_parameters", _fake_optimizer(profit_factor=0.5))
    outcome = calibrate_coin("BTC", _build_ohlcv(210), now=NOW)
    assert outcome.status == "below_quality_bar"
    assert outcome.calibration is None


def test_best_result_becomes_calibration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(calibration, "optimize_parameters", _fake_optimizer(profit_factor=1.4))
    outcome = calibrate_coin("BTC", _build_ohlcv(210), now=NOW)

    assert outcome.status == "calibrated"
    entry = outcome.calibration
    assert entry is not None
    assert entry.calibrated_at == NOW
    assert entry.candle_count == 210
    assert entry.rr_multiplier == 2.0
    assert entry.backtest_stats.profit_factor == 1.4
    assert entry.backtest_stats.total_trades == 8


def test_uptrend_calibrates_end_to_end() -> None:
    outcome = calibrate_coin("BTC", _build_ohlcv(300), now=NOW)
    assert outcome.status == "calibrated"
    assert outcome.calibration is not None
    assert outcome.calibration.max_hold_bars == 12
    assert outcome.calibration.backtest_stats.total_trades >= 5
