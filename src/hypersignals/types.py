"""Shared domain types for the signal engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

Direction = Literal["STRONG_LONG", "LONG", "NEUTRAL", "SHORT", "STRONG_SHORT"]
Side = Literal["LONG", "SHORT"]
RiskLevel = Literal["low", "medium", "high"]
Tilt = Literal["bullish", "bearish", "neutral"]


def direction_side(direction: str) -> Side | None:
    """Collapse a five-way direction into a trade side."""
    if "LONG" in direction:
        return "LONG"
    if "SHORT" in direction:
        return "SHORT"
    return None


@dataclass(slots=True)
class Candle:
    """One OHLCV bar."""

    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(slots=True)
class IndicatorScore:
    """One indicator's read on one timeframe."""

    name: str
    score: float
    weight: float
    detail: str

    @property
    def weighted_score(self) -> float:
        return self.score * self.weight


@dataclass(slots=True)
class TimeframeResult:
    timeframe: str
    score: float
    direction: Direction
    candles: int
    indicators: list[IndicatorScore] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(slots=True)
class IndicatorReason:
    """Entry of the primary-timeframe breakdown shown with a signal."""

    name: str
    display_name: str
    tilt: Tilt
    score: float
    detail: str


@dataclass(slots=True)
class SignalReasoning:
    summary: str
    primary_timeframe: str
    indicators: list[IndicatorReason]
    timeframes: dict[str, str]
    risk_level: RiskLevel


@dataclass(slots=True)
class Signal:
    """A directional call aggregated across timeframes."""

    coin: str
    direction: Direction
    composite_score: float
    confidence: int
    timeframe_results: dict[str, TimeframeResult]
    reasoning: SignalReasoning
    timestamp: datetime
    price: float | None = None

    @property
    def side(self) -> Side | None:
        return direction_side(self.direction)

    def indicator_scores(self, timeframe: str | None = None) -> dict[str, float]:
        """Per-indicator scores on ``timeframe`` (defaults to the primary one)."""
        tf = timeframe or self.reasoning.primary_timeframe
        result = self.timeframe_results.get(tf)
        if result is None:
            return {}
        return {item.name: item.score for item in result.indicators}


@dataclass(slots=True)
class TPSLPlan:
    """Entry, stop and targets derived from a signal and ATR."""

    side: Side
    entry: float
    stop_loss: float
    take_profits: tuple[float, ...]
    atr: float
    stop_distance: float
    risk_percent: float
    fib_target: float | None = None
