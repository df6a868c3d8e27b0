"""Single-position walk-forward backtest over one coin/timeframe series."""

from __future__ import annotations

import threading
from dataclasses import dataclass

import pandas as pd  # type: ignore[import-untyped]

from hypersignals.backtest.metrics import compute_stats, downsample_equity
from hypersignals.backtest.types import (
    BacktestConfig,
    BacktestFailure,
    BacktestResult,
    BacktestTrade,
    EquityPoint,
)
from hypersignals.config import RiskConfig, ScoringConfig
from hypersignals.errors import InsufficientDataError, InvalidParametersError
from hypersignals.features.indicators import FibonacciLevels, atr, fibonacci_levels, last_valid
from hypersignals.risk.rules import RiskEngine
from hypersignals.strategy.planner import build_plan
from hypersignals.strategy.scoring import generate_signal
from hypersignals.types import Direction, Side, direction_side
from hypersignals.utils.logging import get_logger

logger = get_logger(__name__)

WARMUP_BARS = 200
MIN_EXTRA_BARS = 10


@dataclass(slots=True)
class BarSignal:
    """Parameter-independent read of one bar: signal plus planner inputs."""

    direction: Direction
    confidence: int
    price: float
    atr: float | None
    fib: FibonacciLevels | None


class BarSignalCache:
    """Lazily evaluates and memoizes the signal at each bar of one series.

    The optimizer shares one cache across every grid combination, since the
    signal at a bar depends only on the trailing window and the weights.
    """

    def __init__(
        self,
        frame: pd.DataFrame,
        *,
        timeframe: str = "4h",
        scoring: ScoringConfig | None = None,
        warmup_bars: int = WARMUP_BARS,
    ) -> None:
        self.frame = frame
        self.timeframe = timeframe
        self.scoring = scoring or ScoringConfig()
        self.warmup_bars = warmup_bars
        self._cache: dict[int, BarSignal | None] = {}
        self._lock = threading.Lock()

    def get(self, idx: int) -> BarSignal | None:
        with self._lock:
            if idx in self._cache:
                return self._cache[idx]
        value = self._evaluate(idx)
        with self._lock:
            self._cache[idx] = value
        return value

    def _evaluate(self, idx: int) -> BarSignal | None:
        window = self.frame.iloc[idx - self.warmup_bars : idx + 1]
        signal = generate_signal({self.timeframe: window}, self.scoring)
        if signal is None:
            return None
        return BarSignal(
            direction=signal.direction,
            confidence=signal.confidence,
            price=float(window["close"].iloc[-1]),
            atr=last_valid(atr(window)),
            fib=fibonacci_levels(window),
        )


@dataclass(slots=True)
class _OpenTrade:
    side: Side
    direction: Direction
    confidence: int
    entry_price: float
    entry_bar: int
    entry_time: object
    stop_loss: float
    take_profit: float
    size: float
    margin: float


def require_history(frame: pd.DataFrame, config: BacktestConfig | None = None) -> None:
    """Raise ``InsufficientDataError`` unless ``frame`` covers warm-up plus a few bars."""
    cfg = config or BacktestConfig()
    required = cfg.warmup_bars + MIN_EXTRA_BARS
    if len(frame) < required:
        raise InsufficientDataError("insufficient_data", required=required, got=len(frame))


def run_backtest(
    frame: pd.DataFrame,
    config: BacktestConfig | None = None,
    *,
    cache: BarSignalCache | None = None,
) -> BacktestResult | BacktestFailure:
    """Replay ``frame`` bar by bar, holding at most one position.

    Exits are checked stop first, then target, then max-hold expiry against
    each bar's range. Any position still open at the end is closed at the
    last close with reason ``backtest_end``.
    """
    cfg = config or BacktestConfig()
    try:
        require_history(frame, cfg)
    except InsufficientDataError as exc:
        return BacktestFailure(
            kind="insufficient_data",
            message="Not enough candles",
            required=exc.required,
            got=exc.got,
        )
    if cfg.max_hold_bars <= 0 or cfg.atr_multiplier_sl <= 0 or cfg.rr_multiplier <= 0:
        return BacktestFailure(kind="invalid_parameters", message="non_positive_backtest_parameter")

    try:
        risk_engine = RiskEngine(
            risk_per_trade=cfg.risk_per_trade,
            leverage=cfg.leverage,
            max_margin_fraction=cfg.max_margin_fraction,
            fee_model=cfg.fee_model,
        )
    except InvalidParametersError as exc:
        return BacktestFailure(kind="invalid_parameters", message=str(exc))

    if cache is None:
        cache = BarSignalCache(
            frame,
            timeframe=cfg.timeframe,
            scoring=ScoringConfig().with_weights(cfg.weights),
            warmup_bars=cfg.warmup_bars,
        )
    risk_config = RiskConfig(atr_multiplier_sl=cfg.atr_multiplier_sl, rr_multiplier=cfg.rr_multiplier)

    highs = frame["high"].astype(float).to_numpy()
    lows = frame["low"].astype(float).to_numpy()
    closes = frame["close"].astype(float).to_numpy()
    times = _bar_times(frame)

    trades: list[BacktestTrade] = []
    equity_curve: list[EquityPoint] = []
    balance = cfg.starting_balance
    peak_equity = balance
    max_drawdown = 0.0
    open_trade: _OpenTrade | None = None

    for idx in range(cfg.warmup_bars, len(frame)):
        if open_trade is not None:
            exit_hit = risk_engine.check_exit(
                open_trade.side,
                open_trade.stop_loss,
                open_trade.take_profit,
                highs[idx],
                lows[idx],
            )
            if exit_hit is None and idx - open_trade.entry_bar >= cfg.max_hold_bars:
                exit_hit = ("expired", float(closes[idx]))
            if exit_hit is not None:
                reason, exit_price = exit_hit
                trade = _close_trade(open_trade, risk_engine, balance, idx, times[idx], exit_price, reason)
                balance = trade.balance_after
                trades.append(trade)
                open_trade = None

        if open_trade is None:
            open_trade = _try_open(cache.get(idx), cfg, risk_engine, risk_config, balance, idx, times[idx])
            if open_trade is not None:
                balance -= open_trade.margin

        equity = balance
        if open_trade is not None:
            equity += open_trade.margin + risk_engine.unrealized_pnl(
                open_trade.side, open_trade.entry_price, float(closes[idx]), open_trade.size
            )
        peak_equity = max(peak_equity, equity)
        if peak_equity > 0:
            max_drawdown = max(max_drawdown, (peak_equity - equity) / peak_equity * 100)
        equity_curve.append(EquityPoint(bar=idx, time=times[idx], equity=equity, balance=balance))

    if open_trade is not None:
        last = len(frame) - 1
        trade = _close_trade(open_trade, risk_engine, balance, last, times[last], float(closes[last]), "backtest_end")
        balance = trade.balance_after
        trades.append(trade)

    stats = compute_stats(
        trades,
        start_balance=cfg.starting_balance,
        final_equity=balance,
        max_drawdown=max_drawdown,
    )
    logger.debug(
        "backtest_completed",
        timeframe=cfg.timeframe,
        bars=len(frame),
        trades=stats.total_trades,
        return_pct=round(stats.return_pct, 4),
    )
    return BacktestResult(
        stats=stats,
        trades=trades,
        equity_curve=downsample_equity(equity_curve),
        config=cfg,
    )


def _try_open(
    bar_signal: BarSignal | None,
    cfg: BacktestConfig,
    risk_engine: RiskEngine,
    risk_config: RiskConfig,
    balance: float,
    idx: int,
    bar_time: object,
) -> _OpenTrade | None:
    if bar_signal is None or bar_signal.confidence < cfg.min_confidence:
        return None
    side = direction_side(bar_signal.direction)
    if side is None:
        return None

    plan = build_plan(side, bar_signal.price, bar_signal.atr, bar_signal.fib, risk_config)
    if plan is None:
        return None
    try:
        sizing = risk_engine.compute_position_size(balance, bar_signal.price, plan.stop_loss)
    except InvalidParametersError:
        return None
    if sizing is None:
        return None

    return _OpenTrade(
        side=side,
        direction=bar_signal.direction,
        confidence=bar_signal.confidence,
        entry_price=bar_signal.price,
        entry_bar=idx,
        entry_time=bar_time,
        stop_loss=plan.stop_loss,
        take_profit=plan.take_profits[0],
        size=sizing.size,
        margin=sizing.margin,
    )


def _close_trade(
    trade: _OpenTrade,
    risk_engine: RiskEngine,
    balance: float,
    idx: int,
    bar_time: object,
    exit_price: float,
    reason: str,
) -> BacktestTrade:
    pnl_percent, pnl_dollar = risk_engine.realize_pnl(trade.side, trade.entry_price, exit_price, trade.size)
    return BacktestTrade(
        side=trade.side,
        direction=trade.direction,
        confidence=trade.confidence,
        entry_price=trade.entry_price,
        entry_bar=trade.entry_bar,
        entry_time=trade.entry_time,
        stop_loss=trade.stop_loss,
        take_profit=trade.take_profit,
        size=trade.size,
        margin=trade.margin,
        exit_price=exit_price,
        exit_bar=idx,
        exit_time=bar_time,
        reason=reason,
        pnl_percent=pnl_percent,
        pnl_dollar=pnl_dollar,
        balance_before=balance,
        balance_after=balance + trade.margin + pnl_dollar,
    )


def _bar_times(frame: pd.DataFrame) -> list[object]:
    if "open_time" in frame.columns:
        return frame["open_time"].tolist()
    return frame.index.tolist()
