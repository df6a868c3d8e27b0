"""Shared types for the backtest workflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import product
from typing import Iterator, Literal, Mapping

from hypersignals.config import DEFAULT_INDICATOR_WEIGHTS, FeeModel
from hypersignals.types import Direction, Side

FailureKind = Literal["insufficient_data", "invalid_parameters"]


@dataclass(slots=True)
class BacktestConfig:
    """Runtime parameters for one backtest run."""

    timeframe: str = "4h"
    min_confidence: float = 40
    atr_multiplier_sl: float = 1.5
    rr_multiplier: float = 1.5
    max_hold_bars: int = 12
    leverage: float = 3
    starting_balance: float = 10_000.0
    risk_per_trade: float = 0.02
    max_margin_fraction: float = 0.3
    warmup_bars: int = 200
    weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_INDICATOR_WEIGHTS))
    fee_model: FeeModel = field(default_factory=FeeModel)


@dataclass(slots=True)
class BacktestTrade:
    """Closed trade with realized pnl and the balance around its close."""

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
    exit_price: float
    exit_bar: int
    exit_time: object
    reason: str
    pnl_percent: float
    pnl_dollar: float
    balance_before: float
    balance_after: float

    @property
    def outcome(self) -> Literal["win", "loss"]:
        return "win" if self.pnl_dollar >= 0 else "loss"

    @property
    def hold_bars(self) -> int:
        return self.exit_bar - self.entry_bar


@dataclass(slots=True)
class EquityPoint:
    """Equity curve point at one candle close."""

    bar: int
    time: object
    equity: float
    balance: float


@dataclass(slots=True)
class BacktestStats:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    avg_win_pct: float = 0.0
    avg_loss_pct: float = 0.0
    profit_factor: float = 0.0
    sharpe: float = 0.0
    max_drawdown: float = 0.0
    max_consec_wins: int = 0
    max_consec_losses: int = 0
    return_pct: float = 0.0
    final_equity: float = 0.0
    start_balance: float = 0.0


@dataclass(slots=True)
class BacktestResult:
    stats: BacktestStats
    trades: list[BacktestTrade]
    equity_curve: list[EquityPoint]
    config: BacktestConfig


@dataclass(slots=True)
class BacktestFailure:
    """Structured failure returned instead of partial results."""

    kind: FailureKind
    message: str
    required: int | None = None
    got: int | None = None


@dataclass(frozen=True, slots=True)
class OptimizerParams:
    min_confidence: float
    atr_multiplier_sl: float
    rr_multiplier: float
    max_hold_bars: int


@dataclass(slots=True)
class OptimizerGrid:
    """Parameter ranges searched by the optimizer."""

    min_confidence: tuple[float, ...] = (30, 40, 50, 60)
    atr_multiplier_sl: tuple[float, ...] = (1.0, 1.5, 2.0)
    rr_multiplier: tuple[float, ...] = (1.0, 1.5, 2.0, 2.5)
    max_hold_bars: tuple[int, ...] = (12,)

    def combinations(self) -> Iterator[OptimizerParams]:
        for conf, atr_sl, rr, hold in product(
            self.min_confidence,
            self.atr_multiplier_sl,
            self.rr_multiplier,
            self.max_hold_bars,
        ):
            yield OptimizerParams(
                min_confidence=conf,
                atr_multiplier_sl=atr_sl,
                rr_multiplier=rr,
                max_hold_bars=hold,
            )

    def __len__(self) -> int:
        return (
            len(self.min_confidence)
            * len(self.atr_multiplier_sl)
            * len(self.rr_multiplier)
            * len(self.max_hold_bars)
        )


@dataclass(slots=True)
class OptimizationResult:
    params: OptimizerParams
    stats: BacktestStats
    rank_score: float
