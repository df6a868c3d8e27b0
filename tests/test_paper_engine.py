from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from hypersignals.config import FeeModel, PaperConfig
from hypersignals.exec.paper import (
    PaperTradingEngine,
    PortfolioState,
    default_portfolio_state,
)
from hypersignals.types import Direction, Signal, SignalReasoning, TPSLPlan


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _signal(coin: str = "BTC", direction: Direction = "LONG", confidence: int = 60) -> Signal:
    return Signal(
        coin=coin,
        direction=direction,
        composite_score=0.4,
        confidence=confidence,
        timeframe_results={},
        reasoning=SignalReasoning(
            summary="",
            primary_timeframe="4h",
            indicators=[],
            timeframes={},
            risk_level="medium",
        ),
        timestamp=datetime(2026, 3, 1, tzinfo=UTC),
        price=100.0,
    )


def _plan(stop_loss: float = 95.0, take_profit: float = 110.0, side: str = "LONG") -> TPSLPlan:
    return TPSLPlan(
        side=side,
        entry=100.0,
        stop_loss=stop_loss,
        take_profits=(take_profit, take_profit + 5, take_profit + 10),
        atr=3.0,
        stop_distance=abs(100.0 - stop_loss),
        risk_percent=abs(100.0 - stop_loss),
    )


def _engine(config: PaperConfig | None = None) -> tuple[PaperTradingEngine, _Clock]:
    clock = _Clock()
    return PaperTradingEngine(config, fee_model=FeeModel(enabled=False), clock=clock), clock


def test_open_position_sizes_by_risk() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()

    position = engine.open_position(state, _signal(), _plan())

    assert position is not None
    assert position.size == pytest.approx(4000.0)
    assert position.margin == pytest.approx(4000.0 / 3)
    assert position.take_profit == 110.0
    assert state.balance == pytest.approx(10_000.0 - 4000.0 / 3)
    assert state.equity == pytest.approx(10_000.0)
    assert state.stats.total_trades == 1
    assert state.has_position("BTC")


def test_stop_loss_closes_at_stop_level() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()
    engine.open_position(state, _signal(), _plan())

    closed = engine.check_positions(state, {"BTC": 94.0})

    assert len(closed) == 1
    trade = closed[0]
    assert trade.reason == "stop_loss"
    assert trade.exit_price == 95.0
    assert trade.pnl_percent == pytest.approx(-5.0)
    assert trade.pnl_dollar == pytest.approx(-200.0)
    assert trade.outcome == "loss"
    assert state.open_positions == []
    assert state.balance == pytest.approx(9800.0)
    assert state.equity == pytest.approx(9800.0)
    assert state.stats.losses == 1
    assert state.stats.max_drawdown == pytest.approx(2.0)


def test_take_profit_closes_as_win() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()
    engine.open_position(state, _signal(), _plan())

    closed = engine.check_positions(state, {"BTC": 111.0})

    assert closed[0].reason == "take_profit"
    assert closed[0].pnl_dollar == pytest.approx(400.0)
    assert state.balance == pytest.approx(10_400.0)
    assert state.stats.win_rate == 1.0
    assert state.stats.best_trade == pytest.approx(400.0)


def test_short_position_stop_is_above_entry() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()
    engine.open_position(state, _signal(direction="SHORT"), _plan(stop_loss=105.0, take_profit=90.0, side="SHORT"))

    assert engine.check_positions(state, {"BTC": 104.0}) == []
    closed = engine.check_positions(state, {"BTC": 106.0})
    assert closed[0].reason == "stop_loss"
    assert closed[0].pnl_dollar == pytest.approx(-200.0)


def test_open_positions_are_marked_to_market() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()
    engine.open_position(state, _signal(), _plan())

    assert engine.check_positions(state, {"BTC": 102.0}) == []
    assert state.open_positions[0].mark_price == 102.0
    assert state.equity == pytest.approx(10_080.0)
    assert state.stats.peak_equity == pytest.approx(10_080.0)

    engine.check_positions(state, {})
    assert len(state.open_positions) == 1


def test_gates_reject_open() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()

    assert engine.open_position(state, _signal(direction="NEUTRAL"), _plan()) is None
    assert engine.open_position(state, _signal(confidence=30), _plan()) is None
    assert engine.open_position(state, _signal(), _plan(stop_loss=99.9)) is None
    assert engine.open_position(state, _signal(), _plan(stop_loss=100.0)) is None
    assert state.open_positions == []
    assert state.balance == 10_000.0

    assert engine.open_position(state, _signal(confidence=30), _plan(), min_confidence=25) is not None
    assert engine.open_position(state, _signal(), _plan()) is None


def test_max_positions_gate() -> None:
    engine, _ = _engine(PaperConfig(max_positions=2))
    state = default_portfolio_state()
    assert engine.open_position(state, _signal("BTC"), _plan()) is not None
    assert engine.open_position(state, _signal("ETH"), _plan()) is not None
    assert engine.open_position(state, _signal("SOL"), _plan()) is None
    assert len(state.open_positions) == 2


def test_live_price_overrides_plan_entry() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()
    position = engine.open_position(state, _signal(), _plan(), price=101.0, calibrated=True)
    assert position is not None
    assert position.entry_price == 101.0
    assert position.size == pytest.approx(200.0 / 6.0 * 101.0)
    assert position.calibrated


def test_live_price_past_stop_is_not_opened() -> None:
    engine, _ = _engine()
    state = default_portfolio_state()
    assert engine.open_position(state, _signal(), _plan(stop_loss=95.0), price=94.0) is None
    assert engine.open_position(state, _signal(), _plan(stop_loss=95.0), price=95.0) is None

    short_plan = _plan(stop_loss=105.0, take_profit=90.0, side="SHORT")
    assert engine.open_position(state, _signal(direction="SHORT"), short_plan, price=106.0) is None
    assert state.open_positions == []
    assert state.balance == 10_000.0

    assert engine.open_position(state, _signal(direction="SHORT"), short_plan, price=104.0) is not None


def test_positions_expire_after_max_hold() -> None:
    engine, clock = _engine()
    state = default_portfolio_state()
    engine.open_position(state, _signal(), _plan())

    clock.advance(hours=47)
    assert engine.check_positions(state, {"BTC": 100.0}) == []
    clock.advance(hours=2)
    closed = engine.check_positions(state, {"BTC": 100.0})
    assert closed[0].reason == "expired"
    assert closed[0].outcome == "win"
    assert state.balance == pytest.approx(10_000.0)


def test_equity_snapshots_are_rate_limited() -> None:
    engine, clock = _engine()
    state = default_portfolio_state()

    engine.check_positions(state, {})
    engine.check_positions(state, {})
    assert len(state.equity_history) == 1

    clock.advance(seconds=300)
    engine.check_positions(state, {})
    assert len(state.equity_history) == 1

    clock.advance(seconds=1)
    engine.check_positions(state, {})
    assert len(state.equity_history) == 2


def test_closed_trades_are_capped() -> None:
    engine, _ = _engine(PaperConfig(closed_trades_limit=2))
    state = default_portfolio_state()
    for _ in range(3):
        engine.open_position(state, _signal(), _plan())
        engine.check_positions(state, {"BTC": 111.0})
    assert len(state.closed_trades) == 2
    assert state.stats.wins == 3


def test_reset_and_roundtrip() -> None:
    engine, clock = _engine()
    state = default_portfolio_state()
    engine.open_position(state, _signal(), _plan())

    restored = PortfolioState.model_validate(state.model_dump(mode="json"))
    assert restored.open_positions[0].coin == "BTC"
    assert restored.balance == pytest.approx(state.balance)

    fresh = engine.reset(5000.0)
    assert fresh.balance == 5000.0
    assert fresh.starting_balance == 5000.0
    assert fresh.open_positions == []
    assert fresh.last_updated == clock.now
    assert engine.reset().balance == 10_000.0
