"""Historical data loading helpers for backtests."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pandas as pd  # type: ignore[import-untyped]

from hypersignals.types import Candle

_REQUIRED_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
]

_NUMERIC_COLUMNS = ["open", "high", "low", "close", "volume"]


def load_ohlcv_csv(path: Path) -> pd.DataFrame:
    """Load OHLCV data from CSV and normalize schema."""
    df = pd.read_csv(path)
    return normalize_ohlcv(df)


def normalize_ohlcv(df: pd.DataFrame) -> pd.DataFrame:
    """Validate/normalize dataframe to the expected OHLCV shape."""
    if "open_time" not in df.columns and "time" in df.columns:
        df = df.rename(columns={"time": "open_time"})
    missing = [col for col in _REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"missing_ohlcv_columns: {','.join(missing)}")

    normalized = df[_REQUIRED_COLUMNS].copy()
    open_time = normalized["open_time"]
    if pd.api.types.is_numeric_dtype(open_time):
        normalized["open_time"] = pd.to_datetime(open_time, unit="ms", utc=True)
    else:
        normalized["open_time"] = pd.to_datetime(open_time, utc=True)
    for col in _NUMERIC_COLUMNS:
        normalized[col] = pd.to_numeric(normalized[col], errors="coerce")

    normalized = normalized.dropna(subset=_NUMERIC_COLUMNS + ["open_time"])
    normalized = normalized.sort_values("open_time").drop_duplicates("open_time", keep="last")
    normalized = normalized.reset_index(drop=True)
    if normalized.empty:
        raise ValueError("normalized_ohlcv_empty")
    return normalized


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    """Build a normalized frame from Candle records."""
    rows = [
        {
            "open_time": candle.time,
            "open": candle.open,
            "high": candle.high,
            "low": candle.low,
            "close": candle.close,
            "volume": candle.volume,
        }
        for candle in candles
    ]
    if not rows:
        return empty_ohlcv()
    return normalize_ohlcv(pd.DataFrame(rows))


def empty_ohlcv() -> pd.DataFrame:
    return pd.DataFrame(columns=_REQUIRED_COLUMNS)
