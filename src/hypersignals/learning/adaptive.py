"""Adaptive learner: signal history, outcome resolution and weight updates."""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from hypersignals.config import DEFAULT_INDICATOR_WEIGHTS, LearningConfig, RiskConfig, ScoringConfig
from hypersignals.types import Direction, Signal, TPSLPlan, direction_side
from hypersignals.utils.logging import get_logger

logger = get_logger(__name__)

Outcome = Literal["win", "loss", "expired"]
Clock = Callable[[], datetime]

SL_WIDEN_FACTOR = 1.05
SL_TIGHTEN_FACTOR = 0.98
SL_MULTIPLIER_CAP = 2.5
SL_MULTIPLIER_FLOOR = 1.0
RR_WIDEN_FACTOR = 1.05
RR_MULTIPLIER_CAP = 3.0
LOW_WIN_RATE = 0.4
HIGH_WIN_RATE = 0.6


class SignalRecord(BaseModel):
    """A recorded signal, pending until resolved with an outcome."""

    model_config = ConfigDict(extra="forbid")

    id: str
    coin: str
    direction: Direction
    confidence: float = Field(ge=0, le=99)
    entry: float
    stop_loss: float
    take_profits: list[float] = Field(default_factory=list)
    indicators: dict[str, float] = Field(default_factory=dict)
    timestamp: datetime
    outcome: Outcome | None = None
    exit_price: float | None = None
    exit_time: datetime | None = None
    pnl_percent: float | None = None

    @property
    def is_long(self) -> bool:
        return direction_side(self.direction) == "LONG"


class CoinPerformance(BaseModel):
    model_config = ConfigDict(extra="forbid")

    win_rate: float = 0.0
    total_trades: int = 0
    total_pnl: float = 0.0


class LearningStats(BaseModel):
    model_config = ConfigDict(extra="forbid", ser_json_inf_nan="constants")

    total_signals: int = 0
    wins: int = 0
    losses: int = 0
    expired: int = 0
    win_rate: float = 0.0
    avg_profit: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    indicator_accuracy: dict[str, float] = Field(default_factory=dict)
    coin_performance: dict[str, CoinPerformance] = Field(default_factory=dict)


class WeightSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: datetime
    weights: dict[str, float]
    win_rate: float
    atr_multiplier_sl: float
    rr_multiplier: float


class LearningState(BaseModel):
    """Persisted adaptive parameters and the signal history they learn from."""

    model_config = ConfigDict(extra="forbid", ser_json_inf_nan="constants")

    version: int = 1
    weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_INDICATOR_WEIGHTS))
    history: list[SignalRecord] = Field(default_factory=list)
    stats: LearningStats = Field(default_factory=LearningStats)
    atr_multiplier_sl: float = 1.5
    rr_multiplier: float = 1.5
    last_optimized: datetime | None = None
    weight_history: list[WeightSnapshot] = Field(default_factory=list)

    def scoring_config(self, base: ScoringConfig | None = None) -> ScoringConfig:
        return (base or ScoringConfig()).with_weights(self.weights)

    def risk_config(self, base: RiskConfig | None = None) -> RiskConfig:
        cfg = base or RiskConfig()
        return RiskConfig(
            atr_multiplier_sl=self.atr_multiplier_sl,
            rr_multiplier=self.rr_multiplier,
            tp_levels=cfg.tp_levels,
            min_risk_reward=cfg.min_risk_reward,
            atr_period=cfg.atr_period,
            fib_min_distance_pct=cfg.fib_min_distance_pct,
        )

    def pending(self) -> list[SignalRecord]:
        return [record for record in self.history if record.outcome is None]


def project_weights(weights: Mapping[str, float], lower: float, upper: float) -> dict[str, float]:
    """Scale weights to sum to 1 with every weight inside ``[lower, upper]``.

    Violators are pinned to the bound they crossed and the rest re-scaled over
    the remaining mass, repeating until no weight is out of range.
    """
    if not weights:
        return {}
    fixed: dict[str, float] = {}
    free = {name: max(float(value), 0.0) for name, value in weights.items()}

    for _ in range(len(weights) + 1):
        if not free:
            break
        remaining = 1.0 - sum(fixed.values())
        total = sum(free.values())
        if total > 0:
            scaled = {name: value / total * remaining for name, value in free.items()}
        else:
            scaled = {name: remaining / len(free) for name in free}

        over = [name for name, value in scaled.items() if value > upper]
        under = [name for name, value in scaled.items() if value < lower]
        if over:
            for name in over:
                fixed[name] = upper
                del free[name]
        elif under:
            for name in under:
                fixed[name] = lower
                del free[name]
        else:
            fixed.update(scaled)
            free = {}

    return {name: fixed.get(name, 0.0) for name in weights}


def default_learning_state(risk: RiskConfig | None = None) -> LearningState:
    """Fresh state whose TP/SL knobs start from ``risk``."""
    cfg = risk or RiskConfig()
    return LearningState(atr_multiplier_sl=cfg.atr_multiplier_sl, rr_multiplier=cfg.rr_multiplier)


class AdaptiveLearner:
    """Updates indicator weights and TP/SL knobs from resolved outcomes.

    Every method mutates the given ``LearningState`` in place; persisting it
    is left to the caller.
    """

    def __init__(
        self,
        config: LearningConfig | None = None,
        clock: Clock | None = None,
        *,
        risk: RiskConfig | None = None,
    ) -> None:
        self.config = config or LearningConfig()
        self.risk = risk or RiskConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    def record_signal(self, state: LearningState, signal: Signal, plan: TPSLPlan) -> SignalRecord:
        now = self._clock()
        record = SignalRecord(
            id=f"sig_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}",
            coin=signal.coin,
            direction=signal.direction,
            confidence=signal.confidence,
            entry=plan.entry,
            stop_loss=plan.stop_loss,
            take_profits=list(plan.take_profits),
            indicators=signal.indicator_scores(),
            timestamp=now,
        )
        state.history.append(record)
        if len(state.history) > self.config.max_history:
            state.history = state.history[-self.config.max_history :]
        state.stats.total_signals += 1
        return record

    def resolve_signal(
        self,
        state: LearningState,
        signal_id: str,
        outcome: Outcome,
        exit_price: float,
    ) -> SignalRecord | None:
        """Resolve one signal by id. Unknown ids are ignored."""
        record = next((item for item in state.history if item.id == signal_id), None)
        if record is None:
            logger.warning("signal_not_found", signal_id=signal_id)
            return None
        self._resolve(record, outcome, exit_price)
        self.recalculate_stats(state)
        self.maybe_optimize(state)
        return record

    def check_signal_outcomes(self, state: LearningState, prices: Mapping[str, float]) -> int:
        """Resolve pending signals against current prices.

        Per signal the order is stop, then first target, then expiry.
        Returns the number of signals resolved.
        """
        now = self._clock()
        expiry = timedelta(hours=self.config.signal_expiry_hours)
        resolved = 0

        for record in state.pending():
            price = prices.get(record.coin)
            if not price:
                continue
            target = record.take_profits[0] if record.take_profits else None

            if (price <= record.stop_loss) if record.is_long else (price >= record.stop_loss):
                self._resolve(record, "loss", record.stop_loss)
            elif target is not None and ((price >= target) if record.is_long else (price <= target)):
                self._resolve(record, "win", target)
            elif now - record.timestamp > expiry:
                self._resolve(record, "expired", price)
            else:
                continue
            resolved += 1

        if resolved:
            self.recalculate_stats(state)
            self.maybe_optimize(state)
            logger.info("signal_outcomes_resolved", resolved=resolved, pending=len(state.pending()))
        return resolved

    def recalculate_stats(self, state: LearningState) -> LearningStats:
        resolved = [record for record in state.history if record.outcome is not None]
        wins = [record for record in resolved if record.outcome == "win"]
        losses = [record for record in resolved if record.outcome == "loss"]
        profits = [record.pnl_percent or 0.0 for record in wins]
        loss_pcts = [abs(record.pnl_percent or 0.0) for record in losses]

        stats = state.stats
        stats.wins = len(wins)
        stats.losses = len(losses)
        stats.expired = sum(1 for record in resolved if record.outcome == "expired")
        stats.win_rate = len(wins) / len(resolved) if resolved else 0.0
        stats.avg_profit = sum(profits) / len(profits) if profits else 0.0
        stats.avg_loss = sum(loss_pcts) / len(loss_pcts) if loss_pcts else 0.0
        total_profit, total_loss = sum(profits), sum(loss_pcts)
        if total_loss > 0:
            stats.profit_factor = total_profit / total_loss
        else:
            stats.profit_factor = math.inf if total_profit > 0 else 0.0
        stats.indicator_accuracy = indicator_accuracy(resolved)

        coins: dict[str, CoinPerformance] = {}
        coin_wins: dict[str, int] = {}
        for record in resolved:
            perf = coins.setdefault(record.coin, CoinPerformance())
            perf.total_trades += 1
            perf.total_pnl += record.pnl_percent or 0.0
            coin_wins[record.coin] = coin_wins.get(record.coin, 0) + (record.outcome == "win")
        for coin, perf in coins.items():
            perf.win_rate = coin_wins[coin] / perf.total_trades
        stats.coin_performance = coins
        return stats

    def maybe_optimize(self, state: LearningState) -> bool:
        """Run a weight update once a full batch resolved since the last one."""
        since = state.last_optimized
        fresh = [
            record
            for record in state.history
            if record.outcome is not None
            and record.exit_time is not None
            and (since is None or record.exit_time > since)
        ]
        if len(fresh) < self.config.batch_size:
            return False
        self.optimize_weights(state)
        return True

    def optimize_weights(self, state: LearningState) -> None:
        cfg = self.config
        adjusted = dict(state.weights)
        for name, accuracy in state.stats.indicator_accuracy.items():
            if name not in adjusted:
                continue
            adjusted[name] *= 1 + cfg.learning_rate * (accuracy - cfg.baseline_accuracy)
        state.weights = project_weights(adjusted, cfg.min_weight, cfg.max_weight)

        recent = [record for record in state.history if record.outcome is not None][-cfg.recent_window :]
        if len(recent) >= cfg.min_recent_resolved:
            win_pcts = [abs(r.pnl_percent or 0.0) for r in recent if r.outcome == "win"]
            loss_pcts = [abs(r.pnl_percent or 0.0) for r in recent if r.outcome == "loss"]
            avg_win = sum(win_pcts) / len(win_pcts) if win_pcts else 0.0
            avg_loss = sum(loss_pcts) / len(loss_pcts) if loss_pcts else 0.0
            recent_win_rate = len(win_pcts) / len(recent)

            if recent_win_rate < LOW_WIN_RATE and avg_loss > 0:
                state.atr_multiplier_sl = min(SL_MULTIPLIER_CAP, state.atr_multiplier_sl * SL_WIDEN_FACTOR)
            elif recent_win_rate > HIGH_WIN_RATE:
                state.atr_multiplier_sl = max(SL_MULTIPLIER_FLOOR, state.atr_multiplier_sl * SL_TIGHTEN_FACTOR)

            if avg_win > 0 and avg_loss > 0 and avg_win / avg_loss < self.risk.min_risk_reward:
                state.rr_multiplier = min(RR_MULTIPLIER_CAP, state.rr_multiplier * RR_WIDEN_FACTOR)

        now = self._clock()
        state.last_optimized = now
        state.weight_history.append(
            WeightSnapshot(
                timestamp=now,
                weights=dict(state.weights),
                win_rate=state.stats.win_rate,
                atr_multiplier_sl=state.atr_multiplier_sl,
                rr_multiplier=state.rr_multiplier,
            )
        )
        if len(state.weight_history) > cfg.weight_history_limit:
            state.weight_history = state.weight_history[-cfg.weight_history_limit :]
        logger.info(
            "weights_optimized",
            win_rate=round(state.stats.win_rate, 4),
            atr_multiplier_sl=round(state.atr_multiplier_sl, 4),
            rr_multiplier=round(state.rr_multiplier, 4),
        )

    def reset_weights(self, state: LearningState) -> None:
        state.weights = dict(DEFAULT_INDICATOR_WEIGHTS)
        state.atr_multiplier_sl = self.risk.atr_multiplier_sl
        state.rr_multiplier = self.risk.rr_multiplier

    @staticmethod
    def clear_history(state: LearningState) -> None:
        state.history = []
        state.stats = LearningStats()

    def _resolve(self, record: SignalRecord, outcome: Outcome, exit_price: float) -> None:
        record.outcome = outcome
        record.exit_price = exit_price
        record.exit_time = self._clock()
        if record.entry and exit_price:
            move = (exit_price - record.entry) / record.entry * 100
            record.pnl_percent = move if record.is_long else -move


def indicator_accuracy(resolved: list[SignalRecord]) -> dict[str, float]:
    """Share of win/loss signals where each indicator's sign agreed with the outcome.

    Expired signals and zero scores carry no directional evidence and are skipped.
    """
    tallies: dict[str, list[int]] = {}
    for record in resolved:
        if record.outcome not in ("win", "loss"):
            continue
        side = direction_side(record.direction)
        if side is None:
            continue
        won = record.outcome == "win"
        for name, score in record.indicators.items():
            if score == 0:
                continue
            agreed = (score > 0) == (side == "LONG")
            tally = tallies.setdefault(name, [0, 0])
            tally[1] += 1
            if agreed == won:
                tally[0] += 1
    return {name: correct / total for name, (correct, total) in tallies.items() if total > 0}
