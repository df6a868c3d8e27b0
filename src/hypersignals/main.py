"""CLI 入口模块 - HyperSignals 命令行接口。"""

import sys
import time
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import NoReturn

import click
import pandas as pd  # type: ignore[import-untyped]

from hypersignals import __version__
from hypersignals.backtest import (
    BacktestConfig,
    BacktestFailure,
    load_ohlcv_csv,
    optimize_parameters,
    require_history,
    run_backtest,
)
from hypersignals.backtest.metrics import downsample_equity
from hypersignals.config import TIMEFRAMES, FeeModel, Settings, get_settings
from hypersignals.data.hyperliquid import HyperliquidClient
from hypersignals.errors import ExternalFetchError, InsufficientDataError
from hypersignals.exec.paper import PaperTradingEngine, PortfolioState, default_portfolio_state
from hypersignals.learning.adaptive import LearningState, default_learning_state
from hypersignals.persistence.store import (
    COIN_CONFIGS_KEY,
    LEARNING_KEY,
    PAPER_KEY,
    JsonFileStateStore,
    load_or_default,
    save_quietly,
)
from hypersignals.pipeline import run_calibration, run_outcome_check, run_signal_scan
from hypersignals.strategy.calibration import CoinConfigs
from hypersignals.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """HyperSignals - 多周期指标信号、回测、参数校准与纸交易。

    对 Hyperliquid 永续合约按成交量扫描，生成信号并驱动模拟账户。
    """
    if version:
        click.echo(f"hypersignals version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
def scan() -> None:
    """执行一次完整扫描。

    结算信号 → 检查持仓 → 扫描币种 → 记录信号 → 开仓 → 保存状态
    """
    setup_logging()
    logger = get_logger("hypersignals.main")
    settings = get_settings()

    # 确保目录存在
    settings.ensure_directories()

    result = run_signal_scan(settings)
    logger.info(
        "scan_run_completed",
        status=result.status,
        elapsed_ms=round(result.elapsed_ms, 2),
        signals=len(result.scanned),
        opened=len(result.opened),
        closed=len(result.closed),
    )
    if result.status == "failed":
        sys.exit(1)


@cli.command()
def check() -> None:
    """仅用最新中间价结算待定信号与纸交易持仓。"""
    setup_logging()
    logger = get_logger("hypersignals.main")
    settings = get_settings()
    settings.ensure_directories()

    result = run_outcome_check(settings)
    logger.info(
        "check_run_completed",
        status=result.status,
        resolved=result.resolved,
        closed=len(result.closed),
        equity=round(result.equity, 2),
    )
    if result.status == "failed":
        sys.exit(1)


@cli.command()
@click.option(
    "--interval-min",
    "-i",
    type=int,
    default=15,
    help="扫描间隔（分钟）",
)
def loop(interval_min: int) -> NoReturn:
    """循环执行扫描。

    每隔指定时间执行一次完整扫描。
    使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("hypersignals.main")
    settings = get_settings()
    settings.ensure_directories()

    logger.info("starting_loop", interval_min=interval_min)

    iteration = 0
    interval_sec = interval_min * 60

    try:
        while True:
            iteration += 1
            result = run_signal_scan(settings)
            logger.info(
                "loop_iteration_completed",
                iteration=iteration,
                status=result.status,
                elapsed_ms=round(result.elapsed_ms, 2),
            )
            # 等待下一次循环
            time.sleep(interval_sec)

    except KeyboardInterrupt:
        logger.info(
            "loop_stopped",
            message="User stopped loop",
            total_iterations=iteration,
        )
        sys.exit(0)


@cli.command()
def calibrate() -> None:
    """按成交量前 N 个币校准参数（时间预算内分批执行）。"""
    setup_logging()
    settings = get_settings()
    settings.ensure_directories()

    report = run_calibration(settings)
    click.echo(f"Status: {report.status}")
    click.echo(f"Calibrated: {report.calibrated}  Skipped: {report.skipped}  Configs: {report.total_configs}")
    for item in report.results:
        suffix = f" ({item.error})" if item.error else ""
        click.echo(f"   {item.coin:<10} {item.status}{suffix}")


def _backtest_options(func):  # type: ignore[no-untyped-def]
    options = [
        click.option("--csv", "csv_path", type=click.Path(exists=True, path_type=Path), help="K 线 CSV 文件"),
        click.option("--coin", default=None, help="从 Hyperliquid 拉取的币种"),
        click.option("--days", type=int, default=60, show_default=True, help="拉取天数"),
        click.option(
            "--timeframe",
            type=click.Choice(list(TIMEFRAMES)),
            default="4h",
            show_default=True,
            help="K 线周期",
        ),
        click.option("--no-fees", is_flag=True, default=False, help="不扣除手续费与滑点"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _load_frame(settings: Settings, csv_path: Path | None, coin: str | None, days: int, timeframe: str) -> pd.DataFrame:
    if csv_path is not None:
        return load_ohlcv_csv(csv_path)
    if not coin:
        raise click.UsageError("需要 --csv 或 --coin 之一")
    now = datetime.now(UTC)
    start_ms = int((now - timedelta(days=days)).timestamp() * 1000)
    try:
        return HyperliquidClient(settings).fetch_candles(
            coin,
            timeframe,
            start_ms=start_ms,
            end_ms=int(now.timestamp() * 1000),
        )
    except ExternalFetchError as exc:
        raise click.ClickException(f"candle fetch failed for {coin} {timeframe}: {exc}") from exc


@cli.command()
@_backtest_options
@click.option("--min-confidence", type=float, default=40, show_default=True, help="最低开仓置信度")
@click.option("--atr-sl", type=float, default=1.5, show_default=True, help="止损 ATR 倍数")
@click.option("--rr", type=float, default=1.5, show_default=True, help="止盈 R 倍数")
@click.option("--max-hold-bars", type=int, default=12, show_default=True, help="最长持仓 K 线数")
@click.option("--show-trades", is_flag=True, default=False, help="输出逐笔交易")
def backtest(
    csv_path: Path | None,
    coin: str | None,
    days: int,
    timeframe: str,
    no_fees: bool,
    min_confidence: float,
    atr_sl: float,
    rr: float,
    max_hold_bars: int,
    show_trades: bool,
) -> None:
    """在历史 K 线上回测单组参数。"""
    setup_logging()
    settings = get_settings()
    frame = _load_frame(settings, csv_path, coin, days, timeframe)

    config = BacktestConfig(
        timeframe=timeframe,
        min_confidence=min_confidence,
        atr_multiplier_sl=atr_sl,
        rr_multiplier=rr,
        max_hold_bars=max_hold_bars,
        leverage=settings.paper_leverage,
        starting_balance=settings.paper_starting_balance,
        risk_per_trade=settings.paper_risk_per_trade,
        fee_model=_fee_model(settings, no_fees),
    )
    result = run_backtest(frame, config)
    if isinstance(result, BacktestFailure):
        click.echo(f"[ERROR] {result.kind}: {result.message}")
        sys.exit(1)

    stats = result.stats
    click.echo("=" * 50)
    click.echo(f"Backtest {coin or csv_path} [{timeframe}] - {len(frame)} candles")
    click.echo("=" * 50)
    click.echo(f"   Trades: {stats.total_trades} (W {stats.wins} / L {stats.losses})")
    click.echo(f"   Win rate: {stats.win_rate * 100:.1f}%")
    click.echo(f"   Profit factor: {stats.profit_factor:.2f}")
    click.echo(f"   Sharpe: {stats.sharpe:.2f}")
    click.echo(f"   Max drawdown: {stats.max_drawdown:.2f}%")
    click.echo(f"   Return: {stats.return_pct:.2f}%  Final equity: {stats.final_equity:.2f}")
    click.echo(f"   Equity points: {len(downsample_equity(result.equity_curve))}")
    if show_trades:
        click.echo()
        for trade in result.trades:
            click.echo(
                f"   {trade.side:<5} {trade.entry_price:>12.6g} -> {trade.exit_price:>12.6g} "
                f"{trade.reason:<12} {trade.pnl_dollar:>10.2f}"
            )


@cli.command()
@_backtest_options
@click.option("--top", type=int, default=10, show_default=True, help="输出前 N 组参数")
@click.option("--workers", type=int, default=1, show_default=True, help="并行线程数")
def optimize(
    csv_path: Path | None,
    coin: str | None,
    days: int,
    timeframe: str,
    no_fees: bool,
    top: int,
    workers: int,
) -> None:
    """网格搜索回测参数并按综合评分排序。"""
    setup_logging()
    settings = get_settings()
    frame = _load_frame(settings, csv_path, coin, days, timeframe)

    base = BacktestConfig(timeframe=timeframe, fee_model=_fee_model(settings, no_fees))
    try:
        require_history(frame, base)
    except InsufficientDataError as exc:
        click.echo(f"[ERROR] {exc}: need {exc.required} candles, got {exc.got}")
        sys.exit(1)

    results = optimize_parameters(frame, base_config=base, max_workers=workers)
    if not results:
        click.echo("[INFO] No parameter combination reached the minimum trade count")
        return

    click.echo(f"{'rank':>4} {'conf':>5} {'atr':>5} {'rr':>5} {'trades':>6} {'win%':>6} {'pf':>6} {'ret%':>8} {'score':>8}")
    for rank, item in enumerate(results[:top], start=1):
        p, s = item.params, item.stats
        click.echo(
            f"{rank:>4} {p.min_confidence:>5g} {p.atr_multiplier_sl:>5g} {p.rr_multiplier:>5g} "
            f"{s.total_trades:>6} {s.win_rate * 100:>6.1f} {s.profit_factor:>6.2f} {s.return_pct:>8.2f} {item.rank_score:>8.2f}"
        )


@cli.command()
def status() -> None:
    """显示配置摘要、纸交易账户与学习状态。"""
    setup_logging()
    settings = get_settings()
    store = JsonFileStateStore(settings.data_dir)
    paper = load_or_default(
        store,
        PAPER_KEY,
        PortfolioState,
        lambda: default_portfolio_state(settings.paper_starting_balance),
    )
    learning = load_or_default(
        store,
        LEARNING_KEY,
        LearningState,
        lambda: default_learning_state(settings.risk_config()),
    )
    configs = load_or_default(store, COIN_CONFIGS_KEY, CoinConfigs, lambda: CoinConfigs({}))

    click.echo("=" * 50)
    click.echo("HyperSignals - Status")
    click.echo("=" * 50)
    click.echo()

    # 纸交易账户
    click.echo("[Paper Account]")
    click.echo(f"   Balance: {paper.balance:.2f}  Equity: {paper.equity:.2f}")
    click.echo(f"   Open positions: {len(paper.open_positions)}/{settings.paper_max_positions}")
    click.echo(
        f"   Trades: {paper.stats.total_trades}  Win rate: {paper.stats.win_rate * 100:.1f}%  "
        f"Max drawdown: {paper.stats.max_drawdown:.2f}%"
    )
    for position in paper.open_positions:
        click.echo(
            f"   - {position.coin:<8} {position.direction:<12} entry {position.entry_price:.6g} "
            f"SL {position.stop_loss:.6g} TP {position.take_profit:.6g}"
        )
    click.echo()

    # 学习状态
    click.echo("[Learning]")
    click.echo(f"   Signals: {learning.stats.total_signals}  Pending: {len(learning.pending())}")
    click.echo(f"   Win rate: {learning.stats.win_rate * 100:.1f}%")
    click.echo(f"   ATR SL multiplier: {learning.atr_multiplier_sl:.3f}  R:R multiplier: {learning.rr_multiplier:.3f}")
    top_weights = sorted(learning.weights.items(), key=lambda kv: kv[1], reverse=True)[:5]
    click.echo("   Top weights: " + ", ".join(f"{name}={weight:.3f}" for name, weight in top_weights))
    click.echo()

    # 参数校准
    click.echo("[Calibration]")
    click.echo(f"   Calibrated coins: {len(configs.root)}")
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Data dir: {settings.data_dir}")
    click.echo()
    click.echo("=" * 50)


@cli.command("paper-reset")
@click.option("--balance", type=float, default=None, help="初始资金（默认取配置）")
@click.confirmation_option(prompt="确认重置纸交易账户？")
def paper_reset(balance: float | None) -> None:
    """重置纸交易账户。"""
    setup_logging()
    settings = get_settings()
    settings.ensure_directories()
    store = JsonFileStateStore(settings.data_dir)

    engine = PaperTradingEngine(settings.paper_config(), settings.fee_model())
    state = engine.reset(balance)
    if not save_quietly(store, PAPER_KEY, state):
        click.echo("[ERROR] Failed to save paper account")
        sys.exit(1)
    click.echo(f"[OK] Paper account reset to {state.balance:.2f}")


def _fee_model(settings: Settings, disabled: bool) -> FeeModel:
    fee_model = settings.fee_model()
    return replace(fee_model, enabled=False) if disabled else fee_model


# 支持 python -m hypersignals.main 调用
if __name__ == "__main__":
    cli()
