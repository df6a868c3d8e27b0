"""Hyperliquid info-endpoint market data client."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
import pandas as pd  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from hypersignals.backtest.data import empty_ohlcv, normalize_ohlcv
from hypersignals.config import TIMEFRAME_SECONDS, Settings
from hypersignals.errors import ExternalFetchError
from hypersignals.utils.logging import get_logger


@dataclass(slots=True)
class AssetContext:
    """One perpetual's 24h context from ``metaAndAssetCtxs``."""

    name: str
    mark_price: float
    prev_day_price: float
    volume_24h: float
    open_interest: float
    funding: float

    @property
    def change_24h_pct(self) -> float:
        if self.prev_day_price <= 0:
            return 0.0
        return (self.mark_price - self.prev_day_price) / self.prev_day_price * 100


class HyperliquidClient:
    """Read-only client for candles, mids and asset contexts."""

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("hypersignals.data.hyperliquid")

    def fetch_candles(
        self,
        coin: str,
        interval: str,
        *,
        count: int = 300,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> pd.DataFrame:
        """Fetch candles ending now (or at ``end_ms``) as a normalized frame.

        Without ``start_ms`` the window spans ``count`` intervals.
        """
        interval_s = TIMEFRAME_SECONDS.get(interval)
        if interval_s is None:
            raise ValueError(f"unsupported_interval: {interval}")
        end = end_ms if end_ms is not None else int(time.time() * 1000)
        start = start_ms if start_ms is not None else end - interval_s * 1000 * count

        try:
            rows = self._post(
                {
                    "type": "candleSnapshot",
                    "req": {"coin": coin, "interval": interval, "startTime": start, "endTime": end},
                }
            )
        except ExternalFetchError as exc:
            raise ExternalFetchError(str(exc), coin=coin, timeframe=interval) from exc

        if not isinstance(rows, list) or not rows:
            return empty_ohlcv()
        frame = pd.DataFrame(
            {
                "open_time": [row["t"] for row in rows],
                "open": [row["o"] for row in rows],
                "high": [row["h"] for row in rows],
                "low": [row["l"] for row in rows],
                "close": [row["c"] for row in rows],
                "volume": [row["v"] for row in rows],
            }
        )
        return normalize_ohlcv(frame)

    def fetch_all_mids(self) -> dict[str, float]:
        """Mid price per coin."""
        payload = self._post({"type": "allMids"})
        mids: dict[str, float] = {}
        for coin, value in (payload or {}).items():
            try:
                price = float(value)
            except (TypeError, ValueError):
                continue
            if price > 0:
                mids[coin] = price
        return mids

    def fetch_meta_and_asset_ctxs(self) -> list[AssetContext]:
        """Universe with 24h volume, sorted by volume descending."""
        payload = self._post({"type": "metaAndAssetCtxs"})
        if not isinstance(payload, list) or len(payload) < 2:
            raise ExternalFetchError("malformed_meta_response")
        meta, ctxs = payload[0], payload[1]
        universe = meta.get("universe", []) if isinstance(meta, dict) else []

        assets: list[AssetContext] = []
        for index, coin in enumerate(universe):
            ctx = ctxs[index] if index < len(ctxs) else {}
            assets.append(
                AssetContext(
                    name=coin["name"],
                    mark_price=_as_float(ctx.get("markPx") or ctx.get("midPx")),
                    prev_day_price=_as_float(ctx.get("prevDayPx")),
                    volume_24h=_as_float(ctx.get("dayNtlVlm")),
                    open_interest=_as_float(ctx.get("openInterest")),
                    funding=_as_float(ctx.get("funding")),
                )
            )
        assets.sort(key=lambda asset: asset.volume_24h, reverse=True)
        return assets

    @retry(
        retry=retry_if_exception_type(ExternalFetchError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _post(self, payload: dict[str, Any]) -> Any:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, transport=self._transport) as client:
                response = client.post(self._settings.hyperliquid_api_url, json=payload)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning("hyperliquid_request_failed", request=payload.get("type"), error=str(exc))
            raise ExternalFetchError(str(exc)) from exc


def _as_float(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
