from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest
from tenacity import wait_none

from hypersignals.config import Settings
from hypersignals.data.hyperliquid import HyperliquidClient
from hypersignals.errors import ExternalFetchError


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> HyperliquidClient:
    return HyperliquidClient(Settings(), transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(HyperliquidClient._post.retry, "wait", wait_none())


def test_fetch_candles_builds_normalized_frame() -> None:
    seen: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        rows = [
            {"t": 1_700_000_000_000 + i * 3_600_000, "o": "10", "h": "11", "l": "9", "c": str(10 + i), "v": "5"}
            for i in range(3)
        ]
        return httpx.Response(200, json=list(reversed(rows)))

    frame = _client(handler).fetch_candles("BTC", "1h", count=3, end_ms=1_700_010_000_000)

    assert frame["close"].tolist() == [10.0, 11.0, 12.0]
    assert str(frame["open_time"].dt.tz) == "UTC"
    request = seen[0]
    assert request["type"] == "candleSnapshot"
    assert request["req"] == {
        "coin": "BTC",
        "interval": "1h",
        "startTime": 1_700_010_000_000 - 3 * 3_600_000,
        "endTime": 1_700_010_000_000,
    }


def test_fetch_candles_empty_response() -> None:
    frame = _client(lambda request: httpx.Response(200, json=[])).fetch_candles("BTC", "4h")
    assert frame.empty


def test_fetch_candles_rejects_unknown_interval() -> None:
    with pytest.raises(ValueError, match="unsupported_interval"):
        _client(lambda request: httpx.Response(200, json=[])).fetch_candles("BTC", "3m")


def test_http_errors_retry_then_raise_with_context() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(ExternalFetchError) as info:
        _client(handler).fetch_candles("ETH", "4h")
    assert info.value.coin == "ETH"
    assert info.value.timeframe == "4h"
    assert len(calls) == 3


def test_transient_failure_recovers() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(500)
        return httpx.Response(200, json={"BTC": "65000.5", "ETH": "0", "BAD": "x"})

    assert _client(handler).fetch_all_mids() == {"BTC": 65000.5}
    assert len(calls) == 2


def test_meta_sorted_by_volume() -> None:
    payload = [
        {"universe": [{"name": "ETH"}, {"name": "BTC"}, {"name": "NEW"}]},
        [
            {"markPx": "3000", "prevDayPx": "2900", "dayNtlVlm": "1000", "openInterest": "5", "funding": "0.0001"},
            {"markPx": "60000", "prevDayPx": "60000", "dayNtlVlm": "5000", "openInterest": "9", "funding": "0"},
        ],
    ]
    assets = _client(lambda request: httpx.Response(200, json=payload)).fetch_meta_and_asset_ctxs()

    assert [asset.name for asset in assets] == ["BTC", "ETH", "NEW"]
    assert assets[1].change_24h_pct == pytest.approx(100 / 29)
    assert assets[2].mark_price == 0.0
    assert assets[2].change_24h_pct == 0.0


def test_meta_malformed_payload() -> None:
    with pytest.raises(ExternalFetchError, match="malformed_meta_response"):
        _client(lambda request: httpx.Response(200, json={"oops": 1})).fetch_meta_and_asset_ctxs()
