"""Scan, outcome-check and calibration ticks over persisted state."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from time import perf_counter
from typing import Callable, Protocol

import pandas as pd  # type: ignore[import-untyped]

from hypersignals.backtest.data import empty_ohlcv
from hypersignals.config import TIMEFRAMES, ScoringConfig, Settings
from hypersignals.data.hyperliquid import AssetContext, HyperliquidClient
from hypersignals.errors import ExternalFetchError
from hypersignals.exec.paper import (
    ClosedTrade,
    PaperPosition,
    PaperTradingEngine,
    PortfolioState,
    default_portfolio_state,
)
from hypersignals.learning.adaptive import AdaptiveLearner, LearningState, default_learning_state
from hypersignals.persistence.store import (
    COIN_CONFIGS_KEY,
    LEARNING_KEY,
    PAPER_KEY,
    JsonFileStateStore,
    StateStore,
    load_or_default,
    save_quietly,
)
from hypersignals.strategy.calibration import (
    CalibrationOutcome,
    CoinConfigs,
    CoinTradingConfig,
    calibrate_coin,
    resolve_coin_config,
)
from hypersignals.strategy.planner import plan_tpsl
from hypersignals.strategy.scoring import generate_signal
from hypersignals.types import Signal, TPSLPlan
from hypersignals.utils.logging import get_logger, log_trade_signal

Clock = Callable[[], datetime]

_TICK_LOCK = threading.Lock()
_CALIBRATION_LOCK = threading.Lock()


class MarketData(Protocol):
    def fetch_candles(
        self,
        coin: str,
        interval: str,
        *,
        count: int = 300,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> pd.DataFrame: ...

    def fetch_all_mids(self) -> dict[str, float]: ...

    def fetch_meta_and_asset_ctxs(self) -> list[AssetContext]: ...


@dataclass(slots=True)
class ScannedCoin:
    coin: str
    signal: Signal
    plan: TPSLPlan | None
    coin_config: CoinTradingConfig


@dataclass(slots=True)
class ScanResult:
    status: str = "unknown"
    scanned: list[ScannedCoin] = field(default_factory=list)
    recorded: int = 0
    resolved: int = 0
    opened: list[PaperPosition] = field(default_factory=list)
    closed: list[ClosedTrade] = field(default_factory=list)
    equity: float = 0.0
    elapsed_ms: float = 0.0


@dataclass(slots=True)
class CalibrationReport:
    status: str = "unknown"
    results: list[CalibrationOutcome] = field(default_factory=list)
    total_configs: int = 0
    elapsed_ms: float = 0.0

    @property
    def calibrated(self) -> int:
        return sum(1 for item in self.results if item.status == "calibrated")

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.results if item.status == "skipped")


def run_signal_scan(
    settings: Settings,
    *,
    client: MarketData | None = None,
    store: StateStore | None = None,
    clock: Clock | None = None,
) -> ScanResult:
    """One full tick: resolve outcomes, check positions, scan, record and open.

    A tick already in progress makes this return ``status="busy"`` at once.
    """
    logger = get_logger("hypersignals.pipeline")
    if not _TICK_LOCK.acquire(blocking=False):
        logger.warning("tick_already_running", tick="scan")
        return ScanResult(status="busy")

    started = perf_counter()
    result = ScanResult()
    clock = clock or (lambda: datetime.now(UTC))
    client = client or HyperliquidClient(settings)
    store = store or JsonFileStateStore(settings.data_dir)

    try:
        learning_state = load_or_default(
            store,
            LEARNING_KEY,
            LearningState,
            lambda: default_learning_state(settings.risk_config()),
        )
        paper_state = load_or_default(
            store,
            PAPER_KEY,
            PortfolioState,
            lambda: default_portfolio_state(settings.paper_starting_balance),
        )
        coin_configs = load_or_default(store, COIN_CONFIGS_KEY, CoinConfigs, lambda: CoinConfigs({}))

        try:
            assets = client.fetch_meta_and_asset_ctxs()
            prices = client.fetch_all_mids()
        except ExternalFetchError as exc:
            logger.warning("market_snapshot_failed", error=str(exc))
            return _finish(result, started, status="fetch_failed")

        learner = AdaptiveLearner(settings.learning_config(), clock, risk=settings.risk_config())
        paper = PaperTradingEngine(settings.paper_config(), settings.fee_model(), clock)
        result.resolved = learner.check_signal_outcomes(learning_state, prices)
        result.closed = paper.check_positions(paper_state, prices)

        coins = [asset.name for asset in assets if asset.name in prices][: settings.scan_top_coins]
        scoring = learning_state.scoring_config()

        def scan(coin: str) -> ScannedCoin | None:
            return _scan_coin(coin, client, settings, scoring, learning_state, coin_configs, clock())

        with ThreadPoolExecutor(max_workers=settings.fetch_batch_size) as pool:
            scanned = [item for item in pool.map(scan, coins) if item is not None]
        result.scanned = scanned

        for item in scanned:
            signal, plan = item.signal, item.plan
            if signal.side is None or plan is None:
                continue
            log_trade_signal(logger, coin=item.coin, direction=signal.direction, confidence=signal.confidence)
            if signal.confidence >= settings.min_record_confidence:
                learner.record_signal(learning_state, signal, plan)
                result.recorded += 1
            position = paper.open_position(
                paper_state,
                signal,
                plan,
                price=prices.get(item.coin, plan.entry),
                min_confidence=item.coin_config.min_confidence,
                calibrated=item.coin_config.calibrated,
            )
            if position is not None:
                result.opened.append(position)

        save_quietly(store, LEARNING_KEY, learning_state)
        save_quietly(store, PAPER_KEY, paper_state)
        result.equity = paper_state.equity
        return _finish(result, started, status="ok")

    except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
        logger.exception("scan_failed", error=str(exc))
        return _finish(result, started, status="failed")
    finally:
        _TICK_LOCK.release()


def run_outcome_check(
    settings: Settings,
    *,
    client: MarketData | None = None,
    store: StateStore | None = None,
    clock: Clock | None = None,
) -> ScanResult:
    """Resolve pending signals and paper positions against current mids only."""
    logger = get_logger("hypersignals.pipeline")
    if not _TICK_LOCK.acquire(blocking=False):
        logger.warning("tick_already_running", tick="check")
        return ScanResult(status="busy")

    started = perf_counter()
    result = ScanResult()
    clock = clock or (lambda: datetime.now(UTC))
    client = client or HyperliquidClient(settings)
    store = store or JsonFileStateStore(settings.data_dir)

    try:
        learning_state = load_or_default(
            store,
            LEARNING_KEY,
            LearningState,
            lambda: default_learning_state(settings.risk_config()),
        )
        paper_state = load_or_default(
            store,
            PAPER_KEY,
            PortfolioState,
            lambda: default_portfolio_state(settings.paper_starting_balance),
        )
        try:
            prices = client.fetch_all_mids()
        except ExternalFetchError as exc:
            logger.warning("mids_fetch_failed", error=str(exc))
            return _finish(result, started, status="fetch_failed")

        learner = AdaptiveLearner(settings.learning_config(), clock, risk=settings.risk_config())
        paper = PaperTradingEngine(settings.paper_config(), settings.fee_model(), clock)
        result.resolved = learner.check_signal_outcomes(learning_state, prices)
        result.closed = paper.check_positions(paper_state, prices)

        if result.resolved:
            save_quietly(store, LEARNING_KEY, learning_state)
        save_quietly(store, PAPER_KEY, paper_state)
        result.equity = paper_state.equity
        return _finish(result, started, status="ok")

    except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
        logger.exception("outcome_check_failed", error=str(exc))
        return _finish(result, started, status="failed")
    finally:
        _TICK_LOCK.release()


def run_calibration(
    settings: Settings,
    *,
    client: MarketData | None = None,
    store: StateStore | None = None,
    clock: Clock | None = None,
    timer: Callable[[], float] = time.monotonic,
) -> CalibrationReport:
    """Calibrate the top coins by volume in small batches under a time budget.

    Coins left when the budget runs out are reported as skipped. Existing
    calibrations of coins that did not pass this run are kept.
    """
    logger = get_logger("hypersignals.pipeline")
    if not _CALIBRATION_LOCK.acquire(blocking=False):
        logger.warning("tick_already_running", tick="calibration")
        return CalibrationReport(status="busy")

    started_perf = perf_counter()
    started = timer()
    report = CalibrationReport()
    clock = clock or (lambda: datetime.now(UTC))
    client = client or HyperliquidClient(settings)
    store = store or JsonFileStateStore(settings.data_dir)
    timeframe = settings.calibration_timeframe

    try:
        try:
            assets = client.fetch_meta_and_asset_ctxs()
            mids = client.fetch_all_mids()
        except ExternalFetchError as exc:
            logger.warning("market_snapshot_failed", error=str(exc))
            report.status = "fetch_failed"
            return report

        coins = [asset.name for asset in assets if asset.name in mids][: settings.calibration_top_coins]
        configs = load_or_default(store, COIN_CONFIGS_KEY, CoinConfigs, lambda: CoinConfigs({}))

        def calibrate(coin: str) -> CalibrationOutcome:
            now = clock()
            start_ms = int((now - timedelta(days=settings.calibration_history_days)).timestamp() * 1000)
            try:
                frame = client.fetch_candles(
                    coin,
                    timeframe,
                    start_ms=start_ms,
                    end_ms=int(now.timestamp() * 1000),
                )
                return calibrate_coin(
                    coin,
                    frame,
                    timeframe=timeframe,
                    min_profit_factor=settings.calibration_min_profit_factor,
                    min_trades=settings.calibration_min_trades,
                    now=now,
                )
            except Exception as exc:  # noqa: BLE001 - keep the sweep resilient.
                logger.warning("calibration_coin_failed", coin=coin, error=str(exc))
                return CalibrationOutcome(coin=coin, status="error", error=str(exc))

        batch_size = settings.calibration_batch_size
        for start in range(0, len(coins), batch_size):
            if timer() - started > settings.calibration_budget_s:
                remaining = coins[start:]
                report.results.extend(CalibrationOutcome(coin=coin, status="skipped") for coin in remaining)
                logger.warning("calibration_budget_exhausted", skipped=len(remaining))
                break
            batch = coins[start : start + batch_size]
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                outcomes = list(pool.map(calibrate, batch))
            for outcome in outcomes:
                if outcome.calibration is not None:
                    configs.root[outcome.coin] = outcome.calibration
                logger.info("coin_calibrated", coin=outcome.coin, status=outcome.status, candles=outcome.candles)
            report.results.extend(outcomes)

        save_quietly(store, COIN_CONFIGS_KEY, configs)
        report.total_configs = len(configs.root)
        report.status = "ok"
        return report
    finally:
        report.elapsed_ms = (perf_counter() - started_perf) * 1000
        logger.info(
            "calibration_completed",
            status=report.status,
            calibrated=report.calibrated,
            skipped=report.skipped,
            elapsed_ms=round(report.elapsed_ms, 2),
        )
        _CALIBRATION_LOCK.release()


def fetch_timeframes(
    client: MarketData,
    coin: str,
    *,
    timeframes: tuple[str, ...] = TIMEFRAMES,
    count: int = 300,
    min_candles: int = 52,
) -> dict[str, pd.DataFrame]:
    """Candles per timeframe; a failed fetch counts as an empty series."""
    logger = get_logger("hypersignals.pipeline")
    frames: dict[str, pd.DataFrame] = {}
    for timeframe in timeframes:
        try:
            frame = client.fetch_candles(coin, timeframe, count=count)
        except (ExternalFetchError, ValueError) as exc:
            logger.warning("candle_fetch_failed", coin=coin, timeframe=timeframe, error=str(exc))
            frame = empty_ohlcv()
        if len(frame) >= min_candles:
            frames[timeframe] = frame
    return frames


def _scan_coin(
    coin: str,
    client: MarketData,
    settings: Settings,
    scoring: ScoringConfig,
    learning_state: LearningState,
    coin_configs: CoinConfigs,
    now: datetime,
) -> ScannedCoin | None:
    logger = get_logger("hypersignals.pipeline")
    try:
        frames = fetch_timeframes(client, coin, count=settings.candle_count, min_candles=scoring.min_candles)
        if not frames:
            return None
        signal = generate_signal(frames, scoring, coin=coin, now=now)
        if signal is None:
            return None

        coin_config = resolve_coin_config(
            coin_configs,
            coin,
            min_confidence=settings.paper_min_confidence,
            atr_multiplier_sl=learning_state.atr_multiplier_sl,
            rr_multiplier=learning_state.rr_multiplier,
        )
        plan_frame = frames.get("4h")
        if plan_frame is None:
            plan_frame = frames.get("1h")
        if plan_frame is None:
            plan_frame = next(iter(frames.values()))
        risk = coin_config.risk_config(learning_state.risk_config(settings.risk_config()))
        plan = plan_tpsl(signal, plan_frame, risk)
        return ScannedCoin(coin=coin, signal=signal, plan=plan, coin_config=coin_config)
    except Exception as exc:  # noqa: BLE001 - one coin must not abort the scan.
        logger.warning("coin_scan_failed", coin=coin, error=str(exc))
        return None


def _finish(result: ScanResult, started: float, *, status: str) -> ScanResult:
    result.status = status
    result.elapsed_ms = (perf_counter() - started) * 1000
    get_logger("hypersignals.pipeline").info(
        "tick_completed",
        status=status,
        scanned=len(result.scanned),
        recorded=result.recorded,
        resolved=result.resolved,
        opened=len(result.opened),
        closed=len(result.closed),
        elapsed_ms=round(result.elapsed_ms, 2),
    )
    return result
