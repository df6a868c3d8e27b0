"""Position sizing, exit priority and PnL rules shared by the backtest and paper engines."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from hypersignals.config import FeeModel
from hypersignals.errors import InvalidParametersError
from hypersignals.types import Side

ExitReason = Literal["stop_loss", "take_profit", "expired", "backtest_end"]


@dataclass(slots=True)
class PositionSizing:
    """Notional size and margin for one entry."""

    size: float
    margin: float
    risk_amount: float
    stop_distance: float


class RiskEngine:
    """Rule-based sizing and exits."""

    def __init__(
        self,
        *,
        risk_per_trade: float = 0.02,
        leverage: float = 3,
        max_margin_fraction: float = 0.3,
        fee_model: FeeModel | None = None,
    ) -> None:
        if leverage <= 0:
            raise InvalidParametersError("leverage must be positive")
        self.risk_per_trade = risk_per_trade
        self.leverage = leverage
        self.max_margin_fraction = max_margin_fraction
        self.fee_model = fee_model or FeeModel()

    def compute_position_size(self, balance: float, price: float, stop_loss: float) -> PositionSizing | None:
        """Size so that a stop-out loses ``risk_per_trade`` of balance.

        Returns None when the required margin exceeds the per-trade margin cap.
        """
        if price <= 0:
            raise InvalidParametersError(f"non-positive entry price: {price}")
        stop_distance = abs(price - stop_loss)
        if stop_distance == 0:
            raise InvalidParametersError("zero stop distance")
        if balance <= 0:
            return None

        risk_amount = balance * self.risk_per_trade
        size = risk_amount / stop_distance * price
        margin = size / self.leverage
        if margin > balance * self.max_margin_fraction:
            return None
        return PositionSizing(size=size, margin=margin, risk_amount=risk_amount, stop_distance=stop_distance)

    @staticmethod
    def check_exit(
        side: Side,
        stop_loss: float,
        take_profit: float,
        high: float,
        low: float,
    ) -> tuple[ExitReason, float] | None:
        """Stop first, then target, against a bar's range. Fills at the level."""
        if side == "LONG":
            if low <= stop_loss:
                return "stop_loss", stop_loss
            if high >= take_profit:
                return "take_profit", take_profit
        else:
            if high >= stop_loss:
                return "stop_loss", stop_loss
            if low <= take_profit:
                return "take_profit", take_profit
        return None

    @staticmethod
    def check_time_stop(opened_at: datetime, now: datetime, max_hold_hours: float) -> bool:
        """Check whether position exceeded max holding duration."""
        if opened_at.tzinfo is None and now.tzinfo is not None:
            opened_at = opened_at.replace(tzinfo=now.tzinfo)
        held_hours = (now - opened_at).total_seconds() / 3600
        return held_hours >= max_hold_hours

    def realize_pnl(self, side: Side, entry: float, exit_price: float, size: float) -> tuple[float, float]:
        """Return ``(pnl_percent, pnl_dollar)`` net of the fee model."""
        move_pct = _move_percent(side, entry, exit_price)
        cost = self.fee_model.round_trip_cost(size)
        pnl_percent = move_pct - (cost / size * 100 if size > 0 else 0.0)
        pnl_dollar = move_pct / 100 * size - cost
        return pnl_percent, pnl_dollar

    @staticmethod
    def unrealized_pnl(side: Side, entry: float, price: float, size: float) -> float:
        return _move_percent(side, entry, price) / 100 * size


def _move_percent(side: Side, entry: float, price: float) -> float:
    if side == "LONG":
        return (price - entry) / entry * 100
    return (entry - price) / entry * 100
