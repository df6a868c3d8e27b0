from __future__ import annotations

import itertools
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest

from hypersignals import pipeline
from hypersignals.config import Settings
from hypersignals.data.hyperliquid import AssetContext
from hypersignals.errors import ExternalFetchError
from hypersignals.persistence.store import COIN_CONFIGS_KEY, LEARNING_KEY, PAPER_KEY, JsonFileStateStore
from hypersignals.pipeline import fetch_timeframes, run_calibration, run_outcome_check, run_signal_scan
from hypersignals.strategy.calibration import (
    BacktestSummary,
    CalibrationOutcome,
    CoinCalibration,
)

NOW = datetime(2026, 5, 1, tzinfo=UTC)


def _build_ohlcv(rows: int = 300) -> pd.DataFrame:
    start = NOW - timedelta(hours=4 * rows)
    closes = [100.0 * 1.01**i for i in range(rows)]
    opens = [closes[0], *closes[:-1]]
    return pd.DataFrame(
        {
            "open_time": [start + timedelta(hours=4 * i) for i in range(rows)],
            "open": opens,
            "high": [c * 1.01 for c in closes],
            "low": [o * 0.99 for o in opens],
            "close": closes,
            "volume": [1000.0 for _ in range(rows)],
        }
    )


def _asset(name: str, volume: float) -> AssetContext:
    return AssetContext(
        name=name,
        mark_price=1.0,
        prev_day_price=1.0,
        volume_24h=volume,
        open_interest=0.0,
        funding=0.0,
    )


class _FakeMarketData:
    def __init__(self, mids: dict[str, float], failing: tuple[str, ...] = ()) -> None:
        self.mids = mids
        self.failing = failing
        self.frame = _build_ohlcv()

    def fetch_candles(
        self,
        coin: str,
        interval: str,
        *,
        count: int = 300,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> pd.DataFrame:
        if coin in self.failing:
            raise ExternalFetchError("boom", coin=coin, timeframe=interval)
        return self.frame

    def fetch_all_mids(self) -> dict[str, float]:
        return dict(self.mids)

    def fetch_meta_and_asset_ctxs(self) -> list[AssetContext]:
        return [_asset("BTC", 3e9), _asset("ETH", 2e9), _asset("DELISTED", 1e9)]


class _DownMarketData(_FakeMarketData):
    def fetch_meta_and_asset_ctxs(self) -> list[AssetContext]:
        raise ExternalFetchError("meta down")


def _settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path, fetch_batch_size=2, scan_top_coins=10)


def _clock() -> datetime:
    return NOW


def _last_close() -> float:
    return float(_build_ohlcv()["close"].iloc[-1])


def test_scan_records_and_opens_and_isolates_failures(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    client = _FakeMarketData({"BTC": _last_close(), "ETH": 3000.0}, failing=("ETH",))
    store = JsonFileStateStore(tmp_path)

    result = run_signal_scan(settings, client=client, store=store, clock=_clock)

    assert result.status == "ok"
    assert [item.coin for item in result.scanned] == ["BTC"]
    btc = result.scanned[0]
    assert btc.signal.side == "LONG"
    assert btc.plan is not None
    assert not btc.coin_config.calibrated
    assert result.recorded == 1
    assert [position.coin for position in result.opened] == ["BTC"]

    paper = json.loads((tmp_path / f"{PAPER_KEY}.json").read_text())
    learning = json.loads((tmp_path / f"{LEARNING_KEY}.json").read_text())
    assert paper["open_positions"][0]["coin"] == "BTC"
    assert learning["history"][0]["coin"] == "BTC"
    assert result.equity == pytest.approx(paper["equity"])


def test_configured_risk_knobs_seed_fresh_learning_state(tmp_path: Path) -> None:
    settings = Settings(data_dir=tmp_path, fetch_batch_size=2, atr_multiplier_sl=2.0, rr_multiplier=2.5)
    client = _FakeMarketData({"BTC": _last_close()})

    result = run_signal_scan(settings, client=client, store=JsonFileStateStore(tmp_path), clock=_clock)

    btc = result.scanned[0]
    assert btc.plan is not None
    assert btc.coin_config.atr_multiplier_sl == 2.0
    assert btc.coin_config.rr_multiplier == 2.5
    assert btc.plan.stop_distance == pytest.approx(btc.plan.atr * 2.0)
    assert btc.plan.take_profits[0] == pytest.approx(btc.plan.entry + btc.plan.stop_distance * 2.5, rel=1e-4)
    learning = json.loads((tmp_path / f"{LEARNING_KEY}.json").read_text())
    assert learning["atr_multiplier_sl"] == 2.0
    assert learning["rr_multiplier"] == 2.5


def test_outcome_check_resolves_stop(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    store = JsonFileStateStore(tmp_path)
    run_signal_scan(settings, client=_FakeMarketData({"BTC": _last_close()}), store=store, clock=_clock)

    crashed = _FakeMarketData({"BTC": _last_close() * 0.5})
    result = run_outcome_check(settings, client=crashed, store=store, clock=_clock)

    assert result.status == "ok"
    assert result.resolved == 1
    assert [trade.reason for trade in result.closed] == ["stop_loss"]
    paper = json.loads((tmp_path / f"{PAPER_KEY}.json").read_text())
    learning = json.loads((tmp_path / f"{LEARNING_KEY}.json").read_text())
    assert paper["open_positions"] == []
    assert paper["stats"]["losses"] == 1
    assert learning["history"][0]["outcome"] == "loss"


def test_market_snapshot_failure_is_reported(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    result = run_signal_scan(settings, client=_DownMarketData({}), store=JsonFileStateStore(tmp_path))
    assert result.status == "fetch_failed"

    again = run_signal_scan(settings, client=_DownMarketData({}), store=JsonFileStateStore(tmp_path))
    assert again.status == "fetch_failed"


def test_overlapping_tick_is_rejected(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    client = _FakeMarketData({"BTC": _last_close()})
    store = JsonFileStateStore(tmp_path)

    pipeline._TICK_LOCK.acquire()
    try:
        assert run_signal_scan(settings, client=client, store=store).status == "busy"
        assert run_outcome_check(settings, client=client, store=store).status == "busy"
    finally:
        pipeline._TICK_LOCK.release()
    assert not (tmp_path / f"{PAPER_KEY}.json").exists()


def test_fetch_timeframes_drops_short_and_failed_series() -> None:
    client = _FakeMarketData({}, failing=("ETH",))
    assert set(fetch_timeframes(client, "BTC")) == {"15m", "1h", "4h", "1d"}
    assert fetch_timeframes(client, "ETH") == {}
    assert fetch_timeframes(client, "BTC", min_candles=400) == {}


def test_calibration_budget_skips_remaining_coins(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    ticks = itertools.count(0, 100)

    report = run_calibration(
        settings,
        client=_FakeMarketData({"BTC": 1.0, "ETH": 1.0}),
        store=JsonFileStateStore(tmp_path),
        clock=_clock,
        timer=lambda: next(ticks),
    )

    assert report.status == "ok"
    assert report.skipped == 2
    assert report.calibrated == 0
    assert (tmp_path / f"{COIN_CONFIGS_KEY}.json").exists()


def test_calibration_isolates_coin_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_calibrate(coin: str, frame: pd.DataFrame, **kwargs: object) -> CalibrationOutcome:
        if coin == "ETH":
            raise RuntimeError("grid exploded")
        calibration = CoinCalibration(
            min_confidence=30,
            atr_multiplier_sl=2.0,
            rr_multiplier=2.0,
            max_hold_bars=12,
            backtest_stats=BacktestSummary(
                win_rate=0.7,
                profit_factor=2.0,
                return_pct=5.0,
                total_trades=7,
                sharpe=0.5,
                max_drawdown=1.0,
            ),
            calibrated_at=NOW,
            candle_count=len(frame),
        )
        return CalibrationOutcome(coin=coin, status="calibrated", candles=len(frame), calibration=calibration)

    monkeypatch.setattr(pipeline, "calibrate_coin", fake_calibrate)
    settings = _settings(tmp_path)
    store = JsonFileStateStore(tmp_path)
    client = _FakeMarketData({"BTC": _last_close(), "ETH": 1.0})

    report = run_calibration(settings, client=client, store=store, clock=_clock)

    statuses = {item.coin: item.status for item in report.results}
    assert statuses == {"BTC": "calibrated", "ETH": "error"}
    assert report.total_configs == 1
    assert "BTC" in json.loads((tmp_path / f"{COIN_CONFIGS_KEY}.json").read_text())

    scan = run_signal_scan(settings, client=client, store=store, clock=_clock)
    btc = next(item for item in scan.scanned if item.coin == "BTC")
    assert btc.coin_config.calibrated
    assert btc.coin_config.atr_multiplier_sl == 2.0
