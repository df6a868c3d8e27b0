from __future__ import annotations

import math

import pytest

from hypersignals.backtest.metrics import (
    compute_stats,
    downsample_equity,
    max_consecutive,
    trade_sharpe,
    trades_as_rows,
)
from hypersignals.backtest.optimizer import rank_score
from hypersignals.backtest.types import BacktestStats, BacktestTrade, EquityPoint


def _trade(pnl_dollar: float, pnl_percent: float, *, entry_bar: int = 0, exit_bar: int = 3) -> BacktestTrade:
    return BacktestTrade(
        side="LONG",
        direction="LONG",
        confidence=50,
        entry_price=100.0,
        entry_bar=entry_bar,
        entry_time="2026-01-01T00:00:00+00:00",
        stop_loss=95.0,
        take_profit=107.5,
        size=1000.0,
        margin=333.33,
        exit_price=100.0 + pnl_percent,
        exit_bar=exit_bar,
        exit_time="2026-01-01T12:00:00+00:00",
        reason="take_profit" if pnl_dollar >= 0 else "stop_loss",
        pnl_percent=pnl_percent,
        pnl_dollar=pnl_dollar,
        balance_before=10_000.0,
        balance_after=10_000.0 + pnl_dollar,
    )


def test_compute_stats_fields() -> None:
    trades = [_trade(100.0, 10.0), _trade(-50.0, -5.0), _trade(60.0, 6.0)]
    stats = compute_stats(trades, start_balance=10_000.0, final_equity=10_110.0, max_drawdown=1.5)

    assert stats.total_trades == 3
    assert stats.wins == 2
    assert stats.losses == 1
    assert stats.win_rate == pytest.approx(2 / 3)
    assert stats.avg_win_pct == pytest.approx(8.0)
    assert stats.avg_loss_pct == pytest.approx(5.0)
    assert stats.profit_factor == pytest.approx(160.0 / 50.0)
    assert stats.return_pct == pytest.approx(1.1)
    assert stats.max_drawdown == 1.5


def test_profit_factor_edge_cases() -> None:
    only_wins = compute_stats([_trade(10.0, 1.0)], start_balance=100.0, final_equity=110.0, max_drawdown=0.0)
    assert math.isinf(only_wins.profit_factor)

    empty = compute_stats([], start_balance=100.0, final_equity=100.0, max_drawdown=0.0)
    assert empty.profit_factor == 0.0
    assert empty.win_rate == 0.0
    assert empty.sharpe == 0.0


def test_break_even_trade_counts_as_win() -> None:
    stats = compute_stats([_trade(0.0, 0.0)], start_balance=100.0, final_equity=100.0, max_drawdown=0.0)
    assert stats.wins == 1
    assert stats.profit_factor == 0.0


def test_trade_sharpe() -> None:
    assert trade_sharpe([1.0]) == 0.0
    assert trade_sharpe([2.0, 2.0, 2.0]) == 0.0
    assert trade_sharpe([1.0, 3.0]) == pytest.approx(2.0 / math.sqrt(2.0))


def test_max_consecutive_runs() -> None:
    pnls = [1.0, 1.0, -1.0, -1.0, -1.0, 1.0]
    trades = [_trade(p, p) for p in pnls]
    assert max_consecutive(trades) == (2, 3)


def test_downsample_equity_keeps_every_step() -> None:
    points = [EquityPoint(bar=i, time=i, equity=100.0 + i, balance=100.0) for i in range(1000)]
    sampled = downsample_equity(points, max_points=200)
    assert len(sampled) == 200
    assert sampled[1].bar == 5

    short = points[:50]
    assert downsample_equity(short) == short


def test_rank_score_caps_profit_factor() -> None:
    stats = BacktestStats(total_trades=9, sharpe=0.5, profit_factor=math.inf)
    assert rank_score(stats) == pytest.approx(0.5 * 3 * 5.0)


def test_trades_as_rows_has_outcome_and_hold() -> None:
    rows = trades_as_rows([_trade(-20.0, -2.0, entry_bar=4, exit_bar=9)])
    assert rows[0]["outcome"] == "loss"
    assert rows[0]["hold_bars"] == 5
    assert rows[0]["reason"] == "stop_loss"
