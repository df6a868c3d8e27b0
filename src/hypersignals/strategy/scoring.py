"""Indicator scoring and multi-timeframe signal aggregation."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime

import pandas as pd  # type: ignore[import-untyped]

from hypersignals.config import DEFAULT_INDICATOR_WEIGHTS, DirectionThresholds, ScoringConfig
from hypersignals.features.indicators import IndicatorSnapshot, compute_all_indicators, last_valid
from hypersignals.types import (
    Direction,
    IndicatorReason,
    IndicatorScore,
    RiskLevel,
    Signal,
    SignalReasoning,
    TimeframeResult,
)

ScoreRead = tuple[float, str]

STRONG_TREND_ADX = 25.0
DIVERGENCE_BARS = 10
OBV_TREND_BARS = 20
SQUEEZE_BANDWIDTH = 0.03
FIB_PROXIMITY = 0.005

DISPLAY_NAMES: dict[str, str] = {
    "ema": "EMA System",
    "rsi": "RSI",
    "macd": "MACD",
    "stoch_rsi": "Stochastic RSI",
    "bollinger": "Bollinger Bands",
    "adx": "ADX",
    "ichimoku": "Ichimoku Cloud",
    "obv": "OBV",
    "vwap": "VWAP",
    "fibonacci": "Fibonacci",
    "volume_profile": "Volume Profile",
    "atr": "ATR",
}


def trend_bias(snapshot: IndicatorSnapshot) -> int:
    """+1 / -1 when ADX marks a strong trend led by +DI / -DI, else 0."""
    if snapshot.adx is None:
        return 0
    adx_value = last_valid(snapshot.adx.adx)
    plus_di = last_valid(snapshot.adx.plus_di)
    minus_di = last_valid(snapshot.adx.minus_di)
    if adx_value is None or plus_di is None or minus_di is None or adx_value <= STRONG_TREND_ADX:
        return 0
    if plus_di > minus_di:
        return 1
    if minus_di > plus_di:
        return -1
    return 0


def score_ema(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    series = snapshot.ema
    e9, e21, e50 = (last_valid(series.get(p)) for p in (9, 21, 50))
    if e9 is None or e21 is None or e50 is None:
        return None

    price = snapshot.price
    score = 0.0
    details: list[str] = []

    if e9 > e21:
        score += 0.3
        details.append("9 EMA > 21 EMA (bullish)")
    elif e9 < e21:
        score -= 0.3
        details.append("9 EMA < 21 EMA (bearish)")

    if e21 > e50:
        score += 0.2
        details.append("21 EMA > 50 EMA (uptrend)")
    elif e21 < e50:
        score -= 0.2
        details.append("21 EMA < 50 EMA (downtrend)")

    e200 = last_valid(series.get(200))
    if e200 is not None:
        if price > e200:
            score += 0.3
            details.append("Price above 200 EMA (major uptrend)")
        elif price < e200:
            score -= 0.3
            details.append("Price below 200 EMA (major downtrend)")

    prev9 = last_valid(series.get(9), 1)
    prev21 = last_valid(series.get(21), 1)
    if prev9 is not None and prev21 is not None:
        if prev9 < prev21 and e9 > e21:
            score += 0.2
            details.append("Bullish 9/21 EMA crossover")
        elif prev9 > prev21 and e9 < e21:
            score -= 0.2
            details.append("Bearish 9/21 EMA crossover")

    return _clamp(score), ". ".join(details) or "EMAs flat"


def score_rsi(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    series = snapshot.rsi
    value = last_valid(series)
    if series is None or value is None:
        return None

    if trend > 0 and value > 60:
        score = 0.3 if value > 70 else 0.0
        details = [f"RSI {value:.1f} elevated inside a strong uptrend"]
    elif trend < 0 and value < 40:
        score = -0.3 if value < 30 else 0.0
        details = [f"RSI {value:.1f} depressed inside a strong downtrend"]
    elif value < 30:
        score, details = 0.7, [f"RSI oversold at {value:.1f}"]
    elif value < 40:
        score, details = 0.3, [f"RSI approaching oversold at {value:.1f}"]
    elif value > 70:
        score, details = -0.7, [f"RSI overbought at {value:.1f}"]
    elif value > 60:
        score, details = -0.3, [f"RSI approaching overbought at {value:.1f}"]
    else:
        score, details = 0.0, [f"RSI neutral at {value:.1f}"]

    recent_rsi = series.dropna().iloc[-DIVERGENCE_BARS:]
    if len(recent_rsi) >= DIVERGENCE_BARS:
        recent_close = snapshot.close.iloc[-DIVERGENCE_BARS:]
        rsi_trend = float(recent_rsi.iloc[-1] - recent_rsi.iloc[0])
        price_trend = float(recent_close.iloc[-1] - recent_close.iloc[0])
        if price_trend < 0 < rsi_trend:
            score += 0.3
            details.append("Bullish RSI divergence detected")
        elif rsi_trend < 0 < price_trend:
            score -= 0.3
            details.append("Bearish RSI divergence detected")

    return _clamp(score), ". ".join(details)


def score_macd(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    if snapshot.macd is None:
        return None
    macd_value = last_valid(snapshot.macd.macd)
    signal_value = last_valid(snapshot.macd.signal)
    if macd_value is None or signal_value is None:
        return None

    score = 0.0
    details: list[str] = []
    if macd_value > signal_value:
        score += 0.4
        details.append("MACD above signal line")
    elif macd_value < signal_value:
        score -= 0.4
        details.append("MACD below signal line")
    else:
        details.append("MACD on signal line")

    hist = last_valid(snapshot.macd.histogram)
    prev_hist = last_valid(snapshot.macd.histogram, 1)
    if hist is not None and prev_hist is not None:
        if hist > prev_hist and hist > 0:
            score += 0.3
            details.append("Histogram expanding bullish")
        elif hist < prev_hist and hist < 0:
            score -= 0.3
            details.append("Histogram expanding bearish")

    prev_macd = last_valid(snapshot.macd.macd, 1)
    prev_signal = last_valid(snapshot.macd.signal, 1)
    if prev_macd is not None and prev_signal is not None:
        if prev_macd < prev_signal and macd_value > signal_value:
            score += 0.3
            details.append("Bullish MACD crossover")
        elif prev_macd > prev_signal and macd_value < signal_value:
            score -= 0.3
            details.append("Bearish MACD crossover")

    return _clamp(score), ". ".join(details)


def score_stoch_rsi(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    if snapshot.stoch_rsi is None:
        return None
    k = last_valid(snapshot.stoch_rsi.k)
    d = last_valid(snapshot.stoch_rsi.d)
    if k is None:
        return None

    score = 0.0
    details: list[str] = []
    continuation = (trend > 0 and k > 80) or (trend < 0 and k < 20)
    if continuation:
        score = 0.2 * trend
        details.append(f"Stoch RSI pinned with the trend (K: {k:.1f})")
    elif k < 20:
        score += 0.6
        details.append(f"Stoch RSI oversold (K: {k:.1f})")
    elif k > 80:
        score -= 0.6
        details.append(f"Stoch RSI overbought (K: {k:.1f})")
    else:
        details.append(f"Stoch RSI neutral (K: {k:.1f})")

    if d is not None and not continuation:
        if d < k < 30:
            score += 0.4
            details.append("Bullish K/D crossover in oversold zone")
        elif d > k > 70:
            score -= 0.4
            details.append("Bearish K/D crossover in overbought zone")

    return _clamp(score), ". ".join(details)


def score_bollinger(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    bands = snapshot.bollinger
    if bands is None:
        return None
    upper = last_valid(bands.upper)
    lower = last_valid(bands.lower)
    middle = last_valid(bands.middle)
    if upper is None or lower is None or middle is None:
        return None

    price = snapshot.price
    if trend > 0 and price > middle:
        score = 0.3 if price >= upper else 0.1
        details = ["Price riding the upper Bollinger half in a strong uptrend"]
    elif trend < 0 and price < middle:
        score = -0.3 if price <= lower else -0.1
        details = ["Price riding the lower Bollinger half in a strong downtrend"]
    elif price <= lower:
        score, details = 0.6, ["Price at lower Bollinger Band (potential bounce)"]
    elif price >= upper:
        score, details = -0.6, ["Price at upper Bollinger Band (potential rejection)"]
    elif price > middle:
        score, details = -0.1, ["Price above BB middle"]
    elif price < middle:
        score, details = 0.1, ["Price below BB middle"]
    else:
        score, details = 0.0, ["Price on BB middle"]

    if middle > 0 and (upper - lower) / middle < SQUEEZE_BANDWIDTH:
        details.append("Bollinger squeeze detected - volatility expansion imminent")

    return _clamp(score), ". ".join(details)


def score_adx(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    if snapshot.adx is None:
        return None
    adx_value = last_valid(snapshot.adx.adx)
    if adx_value is None:
        return None

    if adx_value <= STRONG_TREND_ADX:
        return 0.0, f"Weak/no trend (ADX: {adx_value:.1f})"
    if trend > 0:
        return 0.5, f"Strong trend (ADX: {adx_value:.1f}). +DI dominant (bullish trend)"
    if trend < 0:
        return -0.5, f"Strong trend (ADX: {adx_value:.1f}). -DI dominant (bearish trend)"
    return 0.0, f"Strong trend (ADX: {adx_value:.1f}). DI lines level"


def score_ichimoku(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    cloud = snapshot.ichimoku
    if cloud is None:
        return None
    tenkan = last_valid(cloud.tenkan)
    kijun = last_valid(cloud.kijun)
    if tenkan is None or kijun is None:
        return None

    price = snapshot.price
    score = 0.0
    details: list[str] = []
    if tenkan > kijun:
        score += 0.25
        details.append("Tenkan above Kijun (bullish)")
    elif tenkan < kijun:
        score -= 0.25
        details.append("Tenkan below Kijun (bearish)")

    # current cloud: spans projected from 26 bars ago
    senkou_a = _at_last(cloud.senkou_a)
    senkou_b = _at_last(cloud.senkou_b)
    if senkou_a is not None and senkou_b is not None:
        if price > max(senkou_a, senkou_b):
            score += 0.4
            details.append("Price above cloud (bullish)")
        elif price < min(senkou_a, senkou_b):
            score -= 0.4
            details.append("Price below cloud (bearish)")
        else:
            details.append("Price inside cloud (indecision)")

        if senkou_a > senkou_b:
            score += 0.15
            details.append("Bullish cloud")
        elif senkou_a < senkou_b:
            score -= 0.15
            details.append("Bearish cloud")

    prev_tenkan = last_valid(cloud.tenkan, 1)
    prev_kijun = last_valid(cloud.kijun, 1)
    if prev_tenkan is not None and prev_kijun is not None:
        if prev_tenkan < prev_kijun and tenkan > kijun:
            score += 0.2
            details.append("Bullish TK cross")
        elif prev_tenkan > prev_kijun and tenkan < kijun:
            score -= 0.2
            details.append("Bearish TK cross")

    return _clamp(score), ". ".join(details) or "Tenkan equals Kijun"


def score_obv(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    if snapshot.obv is None or len(snapshot.obv) < OBV_TREND_BARS:
        return None

    recent = snapshot.obv.iloc[-OBV_TREND_BARS:]
    closes = snapshot.close.iloc[-OBV_TREND_BARS:]
    obv_trend = float(recent.iloc[-1] - recent.iloc[0])
    price_trend = float(closes.iloc[-1] - closes.iloc[0])

    if obv_trend > 0 and price_trend > 0:
        return 0.4, "OBV confirming uptrend (volume supporting price)"
    if obv_trend < 0 and price_trend < 0:
        return -0.4, "OBV confirming downtrend (volume supporting decline)"
    if obv_trend > 0 and price_trend < 0:
        return 0.5, "Bullish OBV divergence (accumulation)"
    if obv_trend < 0 and price_trend > 0:
        return -0.5, "Bearish OBV divergence (distribution)"
    return 0.0, "OBV flat"


def score_vwap(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    value = last_valid(snapshot.vwap)
    if value is None or value <= 0:
        return None

    price = snapshot.price
    diff = (price - value) / value
    if price > value:
        return min(diff * 10, 0.5), f"Price {diff * 100:.2f}% above VWAP (bullish)"
    if price < value:
        return max(diff * 10, -0.5), f"Price {abs(diff) * 100:.2f}% below VWAP (bearish)"
    return 0.0, "Price at VWAP"


def score_fibonacci(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    fib = snapshot.fibonacci
    if fib is None:
        return None
    price = snapshot.price
    position = fib.position(price)
    if position is None:
        return None

    if trend > 0 and position > 0.618:
        score = 0.2 if position > 0.786 else 0.1
        details = ["Price pressing the swing high in a strong uptrend"]
    elif trend < 0 and position <= 0.382:
        score = -0.2 if position <= 0.236 else -0.1
        details = ["Price pressing the swing low in a strong downtrend"]
    elif position > 0.786:
        score, details = -0.3, ["Price near swing high (resistance zone)"]
    elif position > 0.618:
        score, details = -0.1, ["Price between 61.8%-78.6% fib (upper zone)"]
    elif position > 0.382:
        score, details = 0.0, ["Price in middle fib range"]
    elif position > 0.236:
        score, details = 0.2, ["Price near 23.6%-38.2% fib (support zone)"]
    else:
        score, details = 0.4, ["Price near swing low (strong support)"]

    for ratio, level in fib.levels.items():
        if price > 0 and abs(price - level) / price < FIB_PROXIMITY:
            details.append(f"Price at {ratio * 100:.1f}% fib level")

    return _clamp(score), ". ".join(details)


def score_volume_profile(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    profile = snapshot.volume_profile
    if profile is None:
        return None
    poc = profile.poc.price_level
    if snapshot.price > poc:
        return 0.2, f"Price above Point of Control ({poc:.2f})"
    return -0.2, f"Price below Point of Control ({poc:.2f})"


def score_atr(snapshot: IndicatorSnapshot, trend: int) -> ScoreRead | None:
    value = last_valid(snapshot.atr)
    price = snapshot.price
    if value is None or price <= 0:
        return None
    return 0.0, f"ATR: {value:.4f} ({value / price * 100:.2f}% of price). Used for TP/SL sizing."


SCORERS: dict[str, Callable[[IndicatorSnapshot, int], ScoreRead | None]] = {
    "ema": score_ema,
    "rsi": score_rsi,
    "macd": score_macd,
    "stoch_rsi": score_stoch_rsi,
    "bollinger": score_bollinger,
    "adx": score_adx,
    "ichimoku": score_ichimoku,
    "obv": score_obv,
    "vwap": score_vwap,
    "fibonacci": score_fibonacci,
    "volume_profile": score_volume_profile,
    "atr": score_atr,
}


def score_snapshot(
    snapshot: IndicatorSnapshot,
    weights: Mapping[str, float],
) -> tuple[float, list[IndicatorScore], list[str]]:
    """Weighted mean of indicator scores over the indicators that have data.

    Returns ``(normalized_score, scored, skipped)``.
    """
    trend = trend_bias(snapshot)
    scored: list[IndicatorScore] = []
    skipped: list[str] = []
    total_score = 0.0
    total_weight = 0.0

    for name, scorer in SCORERS.items():
        read = scorer(snapshot, trend)
        if read is None:
            skipped.append(name)
            continue
        score, detail = read
        weight = float(weights.get(name, DEFAULT_INDICATOR_WEIGHTS.get(name, 0.0)))
        scored.append(IndicatorScore(name=name, score=score, weight=weight, detail=detail))
        total_score += score * weight
        total_weight += weight

    normalized = total_score / total_weight if total_weight > 0 else 0.0
    return normalized, scored, skipped


def score_timeframe(
    timeframe: str,
    frame: pd.DataFrame,
    config: ScoringConfig,
) -> TimeframeResult:
    snapshot = compute_all_indicators(frame)
    score, scored, skipped = score_snapshot(snapshot, config.indicator_weights)
    return TimeframeResult(
        timeframe=timeframe,
        score=score,
        direction=classify_direction(score, config.thresholds),
        candles=len(frame),
        indicators=scored,
        skipped=skipped,
    )


def classify_direction(score: float, thresholds: DirectionThresholds | None = None) -> Direction:
    t = thresholds or DirectionThresholds()
    if score >= t.strong_long:
        return "STRONG_LONG"
    if score >= t.long:
        return "LONG"
    if score <= t.strong_short:
        return "STRONG_SHORT"
    if score <= t.short:
        return "SHORT"
    return "NEUTRAL"


def compute_confidence(
    composite: float,
    timeframe_scores: list[float],
    config: ScoringConfig | None = None,
) -> int:
    """|composite| x 100, boosted when timeframes agree in sign, damped when they conflict."""
    cfg = config or ScoringConfig()
    confidence = abs(composite) * 100
    if timeframe_scores and (
        all(score > 0 for score in timeframe_scores) or all(score < 0 for score in timeframe_scores)
    ):
        confidence *= cfg.agreement_multiplier
    elif any(score > 0 for score in timeframe_scores) and any(score < 0 for score in timeframe_scores):
        confidence *= cfg.conflict_multiplier
    # half-up rounding
    return min(int(confidence + 0.5), 99)


def risk_level(confidence: float) -> RiskLevel:
    if confidence > 70:
        return "low"
    if confidence > 45:
        return "medium"
    return "high"


def generate_signal(
    timeframe_data: Mapping[str, pd.DataFrame | None],
    config: ScoringConfig | None = None,
    *,
    coin: str = "",
    now: datetime | None = None,
) -> Signal | None:
    """Aggregate per-timeframe composites into one signal.

    Timeframes with fewer than ``config.min_candles`` bars are left out of both
    the weighted sum and the weight total. Returns None when none qualifies.
    """
    cfg = config or ScoringConfig()
    results: dict[str, TimeframeResult] = {}
    scored_frames: dict[str, pd.DataFrame] = {}
    weighted_sum = 0.0
    weight_total = 0.0

    for timeframe, frame in timeframe_data.items():
        if frame is None or len(frame) < cfg.min_candles:
            continue
        result = score_timeframe(timeframe, frame, cfg)
        tf_weight = float(cfg.timeframe_weights.get(timeframe, cfg.default_timeframe_weight))
        weighted_sum += result.score * tf_weight
        weight_total += tf_weight
        results[timeframe] = result
        scored_frames[timeframe] = frame

    if not results or weight_total <= 0:
        return None

    composite = weighted_sum / weight_total
    confidence = compute_confidence(composite, [r.score for r in results.values()], cfg)
    direction = classify_direction(composite, cfg.thresholds)
    primary = _primary_timeframe(results)

    return Signal(
        coin=coin,
        direction=direction,
        composite_score=composite,
        confidence=confidence,
        timeframe_results=results,
        reasoning=build_reasoning(direction, confidence, results, primary),
        timestamp=now or datetime.now(UTC),
        price=float(scored_frames[primary]["close"].iloc[-1]),
    )


def build_reasoning(
    direction: Direction,
    confidence: int,
    results: Mapping[str, TimeframeResult],
    primary: str,
) -> SignalReasoning:
    reasons = [
        IndicatorReason(
            name=item.name,
            display_name=DISPLAY_NAMES.get(item.name, item.name),
            tilt="bullish" if item.score > 0.1 else "bearish" if item.score < -0.1 else "neutral",
            score=item.score,
            detail=item.detail,
        )
        for item in results[primary].indicators
    ]
    reasons.sort(key=lambda reason: abs(reason.score), reverse=True)

    bullish = sum(1 for reason in reasons if reason.tilt == "bullish")
    bearish = sum(1 for reason in reasons if reason.tilt == "bearish")
    if "LONG" in direction:
        summary = (
            f"Bullish confluence: {bullish} indicators bullish vs {bearish} bearish "
            f"across {len(results)} timeframes"
        )
    elif "SHORT" in direction:
        summary = (
            f"Bearish confluence: {bearish} indicators bearish vs {bullish} bullish "
            f"across {len(results)} timeframes"
        )
    else:
        summary = f"Mixed signals: {bullish} bullish, {bearish} bearish - no clear direction"

    return SignalReasoning(
        summary=summary,
        primary_timeframe=primary,
        indicators=reasons,
        timeframes={tf: r.direction.lower().replace("_", " ") for tf, r in results.items()},
        risk_level=risk_level(confidence),
    )


def _primary_timeframe(results: Mapping[str, TimeframeResult]) -> str:
    for candidate in ("4h", "1h"):
        if candidate in results:
            return candidate
    return next(iter(results))


def _at_last(series: pd.Series) -> float | None:
    value = series.iloc[-1]
    return None if pd.isna(value) else float(value)


def _clamp(value: float, lower: float = -1.0, upper: float = 1.0) -> float:
    return min(max(value, lower), upper)
