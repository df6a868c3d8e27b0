"""Technical indicator library over OHLCV frames.

Every function takes a pandas Series (close prices) or a DataFrame with
``open``/``high``/``low``/``close``/``volume`` columns and returns ``None``
when the input is shorter than the indicator's warm-up. Returned series keep
the input index and carry NaN for warm-up positions.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

FIB_RATIOS: tuple[float, ...] = (0.0, 0.236, 0.382, 0.5, 0.618, 0.786, 1.0)


@dataclass(slots=True)
class MACDResult:
    macd: pd.Series
    signal: pd.Series
    histogram: pd.Series


@dataclass(slots=True)
class StochRSIResult:
    k: pd.Series
    d: pd.Series


@dataclass(slots=True)
class BollingerResult:
    upper: pd.Series
    middle: pd.Series
    lower: pd.Series
    bandwidth: pd.Series


@dataclass(slots=True)
class ADXResult:
    adx: pd.Series
    plus_di: pd.Series
    minus_di: pd.Series


@dataclass(slots=True)
class IchimokuResult:
    tenkan: pd.Series
    kijun: pd.Series
    senkou_a: pd.Series
    senkou_b: pd.Series
    chikou: pd.Series


@dataclass(slots=True)
class FibonacciLevels:
    """Retracement levels between the swing high and low of a lookback."""

    high: float
    low: float
    levels: dict[float, float]

    def position(self, price: float) -> float | None:
        """Relative position of ``price`` inside the swing (0 = low, 1 = high)."""
        span = self.high - self.low
        if span <= 0:
            return None
        return (price - self.low) / span


@dataclass(slots=True)
class VolumeBin:
    price_low: float
    price_high: float
    volume: float

    @property
    def price_level(self) -> float:
        return (self.price_low + self.price_high) / 2


@dataclass(slots=True)
class VolumeProfile:
    bins: list[VolumeBin]
    poc: VolumeBin


@dataclass(slots=True)
class SupportResistance:
    supports: list[float]
    resistances: list[float]
    nearest_support: float | None
    nearest_resistance: float | None


@dataclass(slots=True)
class IndicatorSnapshot:
    """All indicators computed once for one candle frame."""

    close: pd.Series
    ema: dict[int, pd.Series | None] = field(default_factory=dict)
    rsi: pd.Series | None = None
    macd: MACDResult | None = None
    atr: pd.Series | None = None
    stoch_rsi: StochRSIResult | None = None
    bollinger: BollingerResult | None = None
    adx: ADXResult | None = None
    ichimoku: IchimokuResult | None = None
    obv: pd.Series | None = None
    vwap: pd.Series | None = None
    fibonacci: FibonacciLevels | None = None
    volume_profile: VolumeProfile | None = None
    support_resistance: SupportResistance | None = None

    @property
    def price(self) -> float:
        return float(self.close.iloc[-1])


def ema(series: pd.Series, period: int) -> pd.Series | None:
    """Exponential moving average seeded with the SMA of the first ``period`` values."""
    values = series.astype(float)
    if period <= 0 or int(values.notna().sum()) < period:
        return None
    return _seeded_smooth(values, period, 2.0 / (period + 1))


def rsi(close: pd.Series, period: int = 14) -> pd.Series | None:
    """Wilder RSI; 100 wherever the average loss is zero."""
    values = close.astype(float)
    if len(values) <= period:
        return None

    delta = values.diff()
    gains = delta.clip(lower=0.0)
    losses = (-delta).clip(lower=0.0)
    avg_gain = _seeded_smooth(gains, period, 1.0 / period)
    avg_loss = _seeded_smooth(losses, period, 1.0 / period)

    rs = avg_gain / avg_loss.replace(0.0, np.nan)
    out = 100.0 - 100.0 / (1.0 + rs)
    return out.mask((avg_loss == 0.0) & avg_gain.notna(), 100.0)


def macd(
    close: pd.Series,
    fast: int = 12,
    slow: int = 26,
    signal_period: int = 9,
) -> MACDResult | None:
    values = close.astype(float)
    if len(values) < slow + signal_period:
        return None

    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    if fast_ema is None or slow_ema is None:
        return None
    macd_line = fast_ema - slow_ema
    signal_line = _seeded_smooth(macd_line, signal_period, 2.0 / (signal_period + 1))
    return MACDResult(macd=macd_line, signal=signal_line, histogram=macd_line - signal_line)


def true_range(frame: pd.DataFrame) -> pd.Series:
    high = frame["high"].astype(float)
    low = frame["low"].astype(float)
    prev_close = frame["close"].astype(float).shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    tr = tr_components.max(axis=1)
    # the first bar has no previous close
    tr.iloc[0] = np.nan
    return tr


def atr(frame: pd.DataFrame, period: int = 14) -> pd.Series | None:
    """Wilder-smoothed average true range."""
    if len(frame) <= period:
        return None
    return _seeded_smooth(true_range(frame), period, 1.0 / period)


def stoch_rsi(
    close: pd.Series,
    rsi_period: int = 14,
    stoch_period: int = 14,
    k_period: int = 3,
    d_period: int = 3,
) -> StochRSIResult | None:
    rsi_series = rsi(close, rsi_period)
    if rsi_series is None or int(rsi_series.notna().sum()) < stoch_period + k_period + d_period - 2:
        return None

    lowest = rsi_series.rolling(window=stoch_period, min_periods=stoch_period).min()
    highest = rsi_series.rolling(window=stoch_period, min_periods=stoch_period).max()
    span = highest - lowest
    stoch = ((rsi_series - lowest) / span.replace(0.0, np.nan) * 100.0).mask(span == 0.0, 50.0)
    k = stoch.rolling(window=k_period, min_periods=k_period).mean()
    d = k.rolling(window=d_period, min_periods=d_period).mean()
    return StochRSIResult(k=k, d=d)


def bollinger_bands(
    close: pd.Series,
    period: int = 20,
    multiplier: float = 2.0,
) -> BollingerResult | None:
    values = close.astype(float)
    if len(values) < period:
        return None

    middle = values.rolling(window=period, min_periods=period).mean()
    std = values.rolling(window=period, min_periods=period).std(ddof=0)
    upper = middle + std * multiplier
    lower = middle - std * multiplier
    bandwidth = (upper - lower) / middle.replace(0.0, np.nan)
    return BollingerResult(upper=upper, middle=middle, lower=lower, bandwidth=bandwidth)


def adx(frame: pd.DataFrame, period: int = 14) -> ADXResult | None:
    """Average directional index with +DI / -DI."""
    if len(frame) < period * 2:
        return None

    high = frame["high"].astype(float)
    low = frame["low"].astype(float)
    up_move = high.diff()
    down_move = -low.diff()
    plus_dm = pd.Series(
        np.where((up_move > down_move) & (up_move > 0), up_move, 0.0),
        index=frame.index,
    )
    minus_dm = pd.Series(
        np.where((down_move > up_move) & (down_move > 0), down_move, 0.0),
        index=frame.index,
    )
    plus_dm.iloc[0] = np.nan
    minus_dm.iloc[0] = np.nan

    smoothed_tr = _seeded_smooth(true_range(frame), period, 1.0 / period)
    smoothed_plus = _seeded_smooth(plus_dm, period, 1.0 / period)
    smoothed_minus = _seeded_smooth(minus_dm, period, 1.0 / period)

    zero_range = smoothed_tr == 0.0
    safe_tr = smoothed_tr.replace(0.0, np.nan)
    plus_di = (100.0 * smoothed_plus / safe_tr).mask(zero_range, 0.0)
    minus_di = (100.0 * smoothed_minus / safe_tr).mask(zero_range, 0.0)

    di_sum = plus_di + minus_di
    dx = (100.0 * (plus_di - minus_di).abs() / di_sum.replace(0.0, np.nan)).mask(di_sum == 0.0, 0.0)
    adx_line = _seeded_smooth(dx, period, 1.0 / period)
    return ADXResult(adx=adx_line, plus_di=plus_di, minus_di=minus_di)


def ichimoku(
    frame: pd.DataFrame,
    tenkan_period: int = 9,
    kijun_period: int = 26,
    senkou_period: int = 52,
) -> IchimokuResult | None:
    if len(frame) < senkou_period:
        return None

    high = frame["high"].astype(float)
    low = frame["low"].astype(float)

    def midpoint(period: int) -> pd.Series:
        highest = high.rolling(window=period, min_periods=period).max()
        lowest = low.rolling(window=period, min_periods=period).min()
        return (highest + lowest) / 2

    tenkan = midpoint(tenkan_period)
    kijun = midpoint(kijun_period)
    return IchimokuResult(
        tenkan=tenkan,
        kijun=kijun,
        senkou_a=((tenkan + kijun) / 2).shift(kijun_period),
        senkou_b=midpoint(senkou_period).shift(kijun_period),
        chikou=frame["close"].astype(float).shift(-kijun_period),
    )


def obv(frame: pd.DataFrame) -> pd.Series | None:
    """On-balance volume."""
    if frame.empty:
        return None
    direction = np.sign(frame["close"].astype(float).diff()).fillna(0.0)
    return (direction * frame["volume"].astype(float)).cumsum()


def vwap(frame: pd.DataFrame, window: int | None = None) -> pd.Series | None:
    """Volume-weighted average price.

    Cumulative over the whole frame by default; ``window`` gives a rolling VWAP.
    """
    if frame.empty or (window is not None and len(frame) < window):
        return None

    typical = (frame["high"].astype(float) + frame["low"].astype(float) + frame["close"].astype(float)) / 3
    volume = frame["volume"].astype(float)
    weighted = typical * volume
    if window is None:
        cum_volume = volume.cumsum()
        return weighted.cumsum() / cum_volume.replace(0.0, np.nan)
    roll_volume = volume.rolling(window=window, min_periods=window).sum()
    return weighted.rolling(window=window, min_periods=window).sum() / roll_volume.replace(0.0, np.nan)


def fibonacci_levels(frame: pd.DataFrame, lookback: int = 100) -> FibonacciLevels | None:
    if len(frame) < 2:
        return None

    recent = frame.iloc[-lookback:]
    swing_high = float(recent["high"].max())
    swing_low = float(recent["low"].min())
    span = swing_high - swing_low
    return FibonacciLevels(
        high=swing_high,
        low=swing_low,
        levels={ratio: swing_high - span * ratio for ratio in FIB_RATIOS},
    )


def volume_profile(frame: pd.DataFrame, bins: int = 24) -> VolumeProfile | None:
    """Volume histogram by closing price over equal-width price buckets."""
    if frame.empty or bins <= 0:
        return None

    price_low = float(frame["low"].min())
    price_high = float(frame["high"].max())
    width = (price_high - price_low) / bins
    if width <= 0:
        return None

    closes = frame["close"].astype(float).to_numpy()
    volumes = frame["volume"].astype(float).to_numpy()
    indexes = np.clip(((closes - price_low) / width).astype(int), 0, bins - 1)
    totals = np.bincount(indexes, weights=volumes, minlength=bins)

    profile = [
        VolumeBin(
            price_low=price_low + width * i,
            price_high=price_low + width * (i + 1),
            volume=float(totals[i]),
        )
        for i in range(bins)
    ]
    poc = max(profile, key=lambda item: item.volume)
    return VolumeProfile(bins=profile, poc=poc)


def support_resistance(
    frame: pd.DataFrame,
    window: int = 5,
    cluster_pct: float = 0.005,
) -> SupportResistance | None:
    """Local extrema over ``window`` centred bars, clustered within ``cluster_pct``."""
    if len(frame) < window:
        return None

    highs = frame["high"].astype(float)
    lows = frame["low"].astype(float)
    pivot_highs = highs[highs == highs.rolling(window=window, center=True).max()]
    pivot_lows = lows[lows == lows.rolling(window=window, center=True).min()]
    levels = _cluster_levels([*pivot_highs.tolist(), *pivot_lows.tolist()], cluster_pct)

    price = float(frame["close"].iloc[-1])
    supports = [level for level in levels if level < price]
    resistances = [level for level in levels if level > price]
    return SupportResistance(
        supports=supports,
        resistances=resistances,
        nearest_support=max(supports) if supports else None,
        nearest_resistance=min(resistances) if resistances else None,
    )


def compute_all_indicators(frame: pd.DataFrame) -> IndicatorSnapshot:
    """Compute the full indicator snapshot used by the scorer and planner."""
    if frame.empty:
        raise ValueError("input_ohlcv_empty")

    close = frame["close"].astype(float)
    return IndicatorSnapshot(
        close=close,
        ema={period: ema(close, period) for period in (9, 21, 50, 200)},
        rsi=rsi(close),
        macd=macd(close),
        atr=atr(frame),
        stoch_rsi=stoch_rsi(close),
        bollinger=bollinger_bands(close),
        adx=adx(frame),
        ichimoku=ichimoku(frame),
        obv=obv(frame),
        vwap=vwap(frame),
        fibonacci=fibonacci_levels(frame),
        volume_profile=volume_profile(frame),
        support_resistance=support_resistance(frame),
    )


def last_valid(series: pd.Series | None, offset: int = 0) -> float | None:
    """Return the last (or ``offset``-th from last) non-NaN value."""
    if series is None:
        return None
    clean = series.dropna()
    if len(clean) <= offset:
        return None
    return float(clean.iloc[-1 - offset])


def _seeded_smooth(values: pd.Series, period: int, alpha: float) -> pd.Series:
    """Recursive smoothing seeded with the mean of the first ``period`` valid values.

    Shared by EMA (alpha = 2 / (period + 1)) and Wilder smoothing (alpha = 1 / period).
    Leading NaNs are skipped.
    """
    valid = values.notna().to_numpy()
    if int(valid.sum()) < period:
        return pd.Series(np.nan, index=values.index)

    start = int(valid.argmax())
    seed_end = start + period
    tail = values.iloc[seed_end - 1 :].copy()
    tail.iloc[0] = float(values.iloc[start:seed_end].mean())
    smoothed = tail.ewm(alpha=alpha, adjust=False).mean()

    out = np.full(len(values), np.nan)
    out[seed_end - 1 :] = smoothed.to_numpy()
    return pd.Series(out, index=values.index)


def _cluster_levels(levels: list[float], cluster_pct: float) -> list[float]:
    clusters: list[list[float]] = []
    for level in sorted(levels):
        if clusters:
            current = clusters[-1]
            centre = sum(current) / len(current)
            if centre > 0 and abs(level - centre) / centre <= cluster_pct:
                current.append(level)
                continue
        clusters.append([level])
    return [sum(cluster) / len(cluster) for cluster in clusters]
