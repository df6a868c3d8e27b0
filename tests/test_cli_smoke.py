from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest
from click.testing import CliRunner

from hypersignals import __version__
from hypersignals.config import Settings
from hypersignals.main import cli
from hypersignals.pipeline import ScanResult


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    configured = Settings(data_dir=tmp_path / "data")
    monkeypatch.setattr("hypersignals.main.get_settings", lambda: configured)
    return configured


def _write_csv(path: Path, rows: int = 230) -> Path:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    closes = [100.0 * 1.01**i for i in range(rows)]
    opens = [closes[0], *closes[:-1]]
    pd.DataFrame(
        {
            "open_time": [start + timedelta(hours=4 * i) for i in range(rows)],
            "open": opens,
            "high": [c * 1.01 for c in closes],
            "low": [o * 0.99 for o in opens],
            "close": closes,
            "volume": [1000.0 for _ in range(rows)],
        }
    ).to_csv(path, index=False)
    return path


def test_cli_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_scan_smoke(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_scan(settings: Settings) -> ScanResult:
        return ScanResult(status="ok", elapsed_ms=1.0)

    monkeypatch.setattr("hypersignals.main.run_signal_scan", _fake_scan)
    result = CliRunner().invoke(cli, ["scan"])
    assert result.exit_code == 0


def test_cli_scan_failure_exits_nonzero(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("hypersignals.main.run_signal_scan", lambda settings: ScanResult(status="failed"))
    result = CliRunner().invoke(cli, ["scan"])
    assert result.exit_code == 1


def test_cli_backtest_from_csv(settings: Settings, tmp_path: Path) -> None:
    csv_path = _write_csv(tmp_path / "candles.csv")
    result = CliRunner().invoke(cli, ["backtest", "--csv", str(csv_path), "--show-trades"])
    assert result.exit_code == 0, result.output
    assert "Trades:" in result.output
    assert "230 candles" in result.output


def test_cli_backtest_insufficient_data(settings: Settings, tmp_path: Path) -> None:
    csv_path = _write_csv(tmp_path / "short.csv", rows=100)
    result = CliRunner().invoke(cli, ["backtest", "--csv", str(csv_path)])
    assert result.exit_code == 1
    assert "insufficient_data" in result.output


def test_cli_optimize_rejects_short_history(settings: Settings, tmp_path: Path) -> None:
    csv_path = _write_csv(tmp_path / "short.csv", rows=100)
    result = CliRunner().invoke(cli, ["optimize", "--csv", str(csv_path)])
    assert result.exit_code == 1
    assert "insufficient_data: need 210 candles, got 100" in result.output


def test_cli_backtest_requires_source(settings: Settings) -> None:
    result = CliRunner().invoke(cli, ["backtest"])
    assert result.exit_code == 2


def test_cli_paper_reset_and_status(settings: Settings) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["paper-reset", "--yes", "--balance", "5000"])
    assert result.exit_code == 0, result.output
    saved = json.loads((settings.data_dir / "paper-trading.json").read_text())
    assert saved["balance"] == 5000.0

    status = runner.invoke(cli, ["status"])
    assert status.exit_code == 0
    assert "Balance: 5000.00" in status.output
    assert "Calibrated coins: 0" in status.output
