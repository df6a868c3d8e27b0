"""Paper trading engine over a persisted portfolio document."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from hypersignals.config import FeeModel, PaperConfig
from hypersignals.errors import InvalidParametersError
from hypersignals.risk.rules import RiskEngine
from hypersignals.types import Direction, Side, Signal, TPSLPlan
from hypersignals.utils.logging import get_logger, log_paper_trade, log_risk_event

logger = get_logger(__name__)

Clock = Callable[[], datetime]
CloseReason = Literal["stop_loss", "take_profit", "expired"]


class PaperPosition(BaseModel):
    """An open simulated position."""

    model_config = ConfigDict(extra="forbid")

    id: str
    coin: str
    side: Side
    direction: Direction
    entry_price: float
    size: float
    margin: float
    stop_loss: float
    take_profit: float
    confidence: float
    open_time: datetime
    leverage: float
    calibrated: bool = False
    mark_price: float | None = None


class ClosedTrade(PaperPosition):
    exit_price: float
    exit_time: datetime
    pnl_percent: float
    pnl_dollar: float
    reason: CloseReason
    outcome: Literal["win", "loss"]


class PaperStats(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    max_drawdown: float = 0.0
    peak_equity: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0


class EquitySnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: datetime
    equity: float
    balance: float
    positions: int


class PortfolioState(BaseModel):
    """One simulated account.

    ``equity`` is balance plus margin and unrealized pnl of every open position.
    """

    model_config = ConfigDict(extra="forbid")

    balance: float = 10_000.0
    starting_balance: float = 10_000.0
    equity: float = 10_000.0
    open_positions: list[PaperPosition] = Field(default_factory=list)
    closed_trades: list[ClosedTrade] = Field(default_factory=list)
    equity_history: list[EquitySnapshot] = Field(default_factory=list)
    stats: PaperStats = Field(default_factory=lambda: PaperStats(peak_equity=10_000.0))
    last_updated: datetime | None = None

    def has_position(self, coin: str) -> bool:
        return any(position.coin == coin for position in self.open_positions)


def default_portfolio_state(balance: float = 10_000.0) -> PortfolioState:
    return PortfolioState(
        balance=balance,
        starting_balance=balance,
        equity=balance,
        stats=PaperStats(peak_equity=balance),
    )


class PaperTradingEngine:
    """Opens and closes simulated positions as signals and prices arrive.

    Methods mutate the given ``PortfolioState``; callers load it before a tick
    and save it after.
    """

    def __init__(
        self,
        config: PaperConfig | None = None,
        fee_model: FeeModel | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or PaperConfig()
        self.risk = RiskEngine(
            risk_per_trade=self.config.risk_per_trade,
            leverage=self.config.leverage,
            max_margin_fraction=self.config.max_margin_fraction,
            fee_model=fee_model,
        )
        self._clock = clock or (lambda: datetime.now(UTC))

    def open_position(
        self,
        state: PortfolioState,
        signal: Signal,
        plan: TPSLPlan,
        *,
        price: float | None = None,
        min_confidence: float | None = None,
        calibrated: bool = False,
    ) -> PaperPosition | None:
        """Open a position if every gate passes; returns None otherwise."""
        threshold = self.config.min_confidence if min_confidence is None else min_confidence
        side = signal.side
        if side is None:
            return None
        if signal.confidence < threshold:
            logger.debug("paper_open_skipped", coin=signal.coin, reason="low_confidence")
            return None
        if len(state.open_positions) >= self.config.max_positions:
            log_risk_event(logger, event_type="max_positions", action="skip_open", coin=signal.coin)
            return None
        if state.has_position(signal.coin):
            logger.debug("paper_open_skipped", coin=signal.coin, reason="already_open")
            return None

        entry = plan.entry if price is None else price
        # A live price can drift past levels planned from the last close.
        if (entry <= plan.stop_loss) if side == "LONG" else (entry >= plan.stop_loss):
            logger.info("paper_open_skipped", coin=signal.coin, reason="entry_beyond_stop", price=entry)
            return None
        try:
            sizing = self.risk.compute_position_size(state.balance, entry, plan.stop_loss)
        except InvalidParametersError as exc:
            logger.warning("paper_open_invalid", coin=signal.coin, error=str(exc))
            return None
        if sizing is None:
            log_risk_event(
                logger,
                event_type="margin_cap",
                action="skip_open",
                coin=signal.coin,
                balance=round(state.balance, 2),
            )
            return None

        now = self._clock()
        position = PaperPosition(
            id=f"pt_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:4]}",
            coin=signal.coin,
            side=side,
            direction=signal.direction,
            entry_price=entry,
            size=sizing.size,
            margin=sizing.margin,
            stop_loss=plan.stop_loss,
            take_profit=plan.take_profits[0],
            confidence=signal.confidence,
            open_time=now,
            leverage=self.config.leverage,
            calibrated=calibrated,
            mark_price=entry,
        )
        state.open_positions.append(position)
        state.balance -= sizing.margin
        state.stats.total_trades += 1
        self._refresh_equity(state)
        state.last_updated = now
        log_paper_trade(
            logger,
            action="open",
            coin=position.coin,
            direction=position.direction,
            price=entry,
            size=position.size,
            margin=round(position.margin, 2),
        )
        return position

    def check_positions(self, state: PortfolioState, prices: Mapping[str, float]) -> list[ClosedTrade]:
        """Close positions whose stop, target or max hold was reached.

        Also marks open positions to market, tracks peak equity and drawdown,
        and appends a rate-limited equity snapshot.
        """
        now = self._clock()
        closed: list[ClosedTrade] = []
        still_open: list[PaperPosition] = []

        for position in state.open_positions:
            price = prices.get(position.coin)
            if not price:
                still_open.append(position)
                continue
            position.mark_price = price

            exit_hit = self.risk.check_exit(position.side, position.stop_loss, position.take_profit, price, price)
            if exit_hit is None and self.risk.check_time_stop(position.open_time, now, self.config.max_hold_hours):
                exit_hit = ("expired", price)
            if exit_hit is None:
                still_open.append(position)
                continue

            reason, exit_price = exit_hit
            closed.append(self._close(state, position, exit_price, reason, now))

        state.open_positions = still_open
        self._refresh_equity(state)
        self._track_drawdown(state)

        if len(state.closed_trades) > self.config.closed_trades_limit:
            state.closed_trades = state.closed_trades[-self.config.closed_trades_limit :]
        self._snapshot_equity(state, now)
        state.last_updated = now
        return closed

    def reset(self, balance: float | None = None) -> PortfolioState:
        state = default_portfolio_state(balance or self.config.starting_balance)
        state.last_updated = self._clock()
        logger.info("paper_account_reset", balance=state.balance)
        return state

    def _close(
        self,
        state: PortfolioState,
        position: PaperPosition,
        exit_price: float,
        reason: str,
        now: datetime,
    ) -> ClosedTrade:
        pnl_percent, pnl_dollar = self.risk.realize_pnl(
            position.side, position.entry_price, exit_price, position.size
        )
        state.balance += position.margin + pnl_dollar

        trade = ClosedTrade(
            **position.model_dump(),
            exit_price=exit_price,
            exit_time=now,
            pnl_percent=pnl_percent,
            pnl_dollar=pnl_dollar,
            reason=reason,
            outcome="win" if pnl_dollar >= 0 else "loss",
        )
        state.closed_trades.append(trade)

        stats = state.stats
        if trade.outcome == "win":
            stats.wins += 1
        else:
            stats.losses += 1
        stats.best_trade = max(stats.best_trade, pnl_dollar)
        stats.worst_trade = min(stats.worst_trade, pnl_dollar)
        stats.total_pnl += pnl_dollar
        decided = stats.wins + stats.losses
        stats.win_rate = stats.wins / decided if decided else 0.0

        log_paper_trade(
            logger,
            action="close",
            coin=trade.coin,
            direction=trade.direction,
            price=exit_price,
            size=trade.size,
            reason=reason,
            pnl_dollar=round(pnl_dollar, 2),
        )
        return trade

    def _refresh_equity(self, state: PortfolioState) -> None:
        exposure = 0.0
        for position in state.open_positions:
            mark = position.mark_price or position.entry_price
            exposure += position.margin + self.risk.unrealized_pnl(
                position.side, position.entry_price, mark, position.size
            )
        state.equity = state.balance + exposure

    @staticmethod
    def _track_drawdown(state: PortfolioState) -> None:
        stats = state.stats
        stats.peak_equity = max(stats.peak_equity, state.equity)
        if stats.peak_equity > 0:
            drawdown = (stats.peak_equity - state.equity) / stats.peak_equity * 100
            stats.max_drawdown = max(stats.max_drawdown, drawdown)

    def _snapshot_equity(self, state: PortfolioState, now: datetime) -> None:
        last = state.equity_history[-1] if state.equity_history else None
        interval = timedelta(seconds=self.config.equity_snapshot_interval_s)
        if last is not None and now - last.timestamp <= interval:
            return
        state.equity_history.append(
            EquitySnapshot(
                timestamp=now,
                equity=state.equity,
                balance=state.balance,
                positions=len(state.open_positions),
            )
        )
        if len(state.equity_history) > self.config.equity_history_limit:
            state.equity_history = state.equity_history[-self.config.equity_history_limit :]
