"""Metrics and reporting rules for backtest runs."""

from __future__ import annotations

import math
from statistics import fmean, stdev
from typing import Iterable, Sequence

from hypersignals.backtest.types import BacktestStats, BacktestTrade, EquityPoint


def compute_stats(
    trades: Sequence[BacktestTrade],
    *,
    start_balance: float,
    final_equity: float,
    max_drawdown: float,
) -> BacktestStats:
    """Compute summary statistics for one run."""
    wins = [trade for trade in trades if trade.outcome == "win"]
    losses = [trade for trade in trades if trade.outcome == "loss"]

    total_profit = sum(trade.pnl_dollar for trade in wins)
    total_loss = sum(abs(trade.pnl_dollar) for trade in losses)
    if total_loss > 0:
        profit_factor = total_profit / total_loss
    else:
        profit_factor = math.inf if total_profit > 0 else 0.0

    max_wins, max_losses = max_consecutive(trades)
    return BacktestStats(
        total_trades=len(trades),
        wins=len(wins),
        losses=len(losses),
        win_rate=len(wins) / len(trades) if trades else 0.0,
        avg_win_pct=fmean(trade.pnl_percent for trade in wins) if wins else 0.0,
        avg_loss_pct=fmean(abs(trade.pnl_percent) for trade in losses) if losses else 0.0,
        profit_factor=profit_factor,
        sharpe=trade_sharpe([trade.pnl_percent for trade in trades]),
        max_drawdown=max_drawdown,
        max_consec_wins=max_wins,
        max_consec_losses=max_losses,
        return_pct=(final_equity - start_balance) / start_balance * 100 if start_balance > 0 else 0.0,
        final_equity=final_equity,
        start_balance=start_balance,
    )


def trade_sharpe(returns: Sequence[float]) -> float:
    """Mean over sample standard deviation of per-trade returns."""
    if len(returns) < 2:
        return 0.0
    spread = stdev(returns)
    return fmean(returns) / spread if spread > 0 else 0.0


def max_consecutive(trades: Iterable[BacktestTrade]) -> tuple[int, int]:
    best_wins = best_losses = run_wins = run_losses = 0
    for trade in trades:
        if trade.outcome == "win":
            run_wins += 1
            run_losses = 0
            best_wins = max(best_wins, run_wins)
        else:
            run_losses += 1
            run_wins = 0
            best_losses = max(best_losses, run_losses)
    return best_wins, best_losses


def downsample_equity(points: Sequence[EquityPoint], max_points: int = 200) -> list[EquityPoint]:
    """Keep every ``step``-th point so roughly ``max_points`` remain."""
    step = max(1, len(points) // max_points)
    return [point for idx, point in enumerate(points) if idx % step == 0]


def trades_as_rows(trades: Iterable[BacktestTrade]) -> list[dict[str, object]]:
    """Convert trade records to serializable row dicts."""
    return [
        {
            "side": trade.side,
            "direction": trade.direction,
            "confidence": trade.confidence,
            "entry_time": str(trade.entry_time),
            "exit_time": str(trade.exit_time),
            "entry_price": trade.entry_price,
            "exit_price": trade.exit_price,
            "stop_loss": trade.stop_loss,
            "take_profit": trade.take_profit,
            "size": trade.size,
            "margin": trade.margin,
            "reason": trade.reason,
            "pnl_percent": trade.pnl_percent,
            "pnl_dollar": trade.pnl_dollar,
            "outcome": trade.outcome,
            "hold_bars": trade.hold_bars,
        }
        for trade in trades
    ]
