from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest

from hypersignals.backtest.data import candles_to_frame, load_ohlcv_csv, normalize_ohlcv
from hypersignals.backtest.runner import BarSignalCache, require_history, run_backtest
from hypersignals.backtest.types import BacktestConfig, BacktestFailure, BacktestResult
from hypersignals.config import FeeModel
from hypersignals.errors import InsufficientDataError
from hypersignals.types import Candle


def _build_ohlcv(rows: int, growth: float = 0.01, start_price: float = 100.0) -> pd.DataFrame:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    closes = [start_price * (1 + growth) ** i for i in range(rows)]
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


def test_insufficient_data_is_reported() -> None:
    result = run_backtest(_build_ohlcv(209))
    assert isinstance(result, BacktestFailure)
    assert result.kind == "insufficient_data"
    assert result.required == 210
    assert result.got == 209


def test_require_history_raises_with_counts() -> None:
    require_history(_build_ohlcv(210))
    with pytest.raises(InsufficientDataError) as info:
        require_history(_build_ohlcv(150), BacktestConfig(warmup_bars=150))
    assert info.value.required == 160
    assert info.value.got == 150


def test_invalid_parameters_are_reported() -> None:
    frame = _build_ohlcv(220)
    for config in (
        BacktestConfig(max_hold_bars=0),
        BacktestConfig(atr_multiplier_sl=0),
        BacktestConfig(leverage=0),
    ):
        result = run_backtest(frame, config)
        assert isinstance(result, BacktestFailure)
        assert result.kind == "invalid_parameters"


def test_uptrend_trades_and_accounting_identity() -> None:
    config = BacktestConfig(starting_balance=10_000.0)
    result = run_backtest(_build_ohlcv(300), config)
    assert isinstance(result, BacktestResult)

    stats = result.stats
    assert stats.total_trades > 0
    assert all(trade.side == "LONG" for trade in result.trades)
    assert stats.final_equity == pytest.approx(10_000.0 + sum(t.pnl_dollar for t in result.trades))
    assert result.trades[-1].balance_after == pytest.approx(stats.final_equity)
    assert stats.wins + stats.losses == stats.total_trades
    assert stats.return_pct > 0

    for before, after in zip(result.trades, result.trades[1:]):
        assert after.entry_bar >= before.exit_bar
    for trade in result.trades:
        assert trade.entry_bar >= config.warmup_bars
        assert trade.hold_bars <= config.max_hold_bars
        assert trade.margin <= 10_000.0 * config.max_margin_fraction * 2


def test_flat_series_never_trades() -> None:
    result = run_backtest(_build_ohlcv(260, growth=0.0))
    assert isinstance(result, BacktestResult)
    assert result.stats.total_trades == 0
    assert result.stats.final_equity == pytest.approx(result.stats.start_balance)
    assert result.equity_curve


def test_fees_reduce_returns() -> None:
    frame = _build_ohlcv(300)
    with_fees = run_backtest(frame, BacktestConfig())
    without_fees = run_backtest(frame, BacktestConfig(fee_model=FeeModel(enabled=False)))
    assert isinstance(with_fees, BacktestResult) and isinstance(without_fees, BacktestResult)
    assert with_fees.stats.final_equity < without_fees.stats.final_equity


def test_shared_cache_gives_identical_results() -> None:
    frame = _build_ohlcv(230)
    config = BacktestConfig()
    cache = BarSignalCache(frame, warmup_bars=config.warmup_bars)
    first = run_backtest(frame, config, cache=cache)
    second = run_backtest(frame, config, cache=cache)
    assert isinstance(first, BacktestResult) and isinstance(second, BacktestResult)
    assert [t.pnl_dollar for t in first.trades] == [t.pnl_dollar for t in second.trades]
    assert cache.get(210) is cache.get(210)


def test_normalize_ohlcv_sorts_and_parses_millis() -> None:
    raw = pd.DataFrame(
        {
            "time": [1_700_000_400_000, 1_700_000_000_000, 1_700_000_000_000],
            "open": ["2", "1", "1.5"],
            "high": [2, 1, 1.5],
            "low": [2, 1, 1.5],
            "close": [2, 1, 1.5],
            "volume": [10, 10, 10],
        }
    )
    frame = normalize_ohlcv(raw)
    assert len(frame) == 2
    assert frame["open"].tolist() == [1.5, 2.0]
    assert str(frame["open_time"].dt.tz) == "UTC"


def test_normalize_ohlcv_rejects_missing_columns() -> None:
    with pytest.raises(ValueError, match="missing_ohlcv_columns"):
        normalize_ohlcv(pd.DataFrame({"open_time": [1], "close": [1.0]}))


def test_load_csv_and_candles_to_frame(tmp_path: Path) -> None:
    path = tmp_path / "btc.csv"
    _build_ohlcv(5).to_csv(path, index=False)
    frame = load_ohlcv_csv(path)
    assert len(frame) == 5

    candles = [
        Candle(time=datetime(2026, 1, 1, tzinfo=UTC), open=1.0, high=2.0, low=0.5, close=1.5, volume=3.0),
    ]
    assert candles_to_frame(candles)["close"].tolist() == [1.5]
    assert candles_to_frame([]).empty
