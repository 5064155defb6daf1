"""
Hyperliquid Info Client - Async httpx client for the public info endpoint.

Provides OHLCV candles (``candleSnapshot``) plus account equity and open
perpetual positions (``clearinghouseState``). Order signing is not part of
this client; order flow goes through an ``ExchangeClient`` implementation.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from perpdesk.core.logger import get_logger
from perpdesk.exchange.base import Candle, CandleSource, ExchangePosition, SignalDirection
from perpdesk.exchange.exceptions import (
    DataUnavailable,
    ExchangeError,
    PermanentExchangeError,
    RateLimitError,
    TransientExchangeError,
)

logger = get_logger("hyperliquid")

TIMEFRAME_MS: Dict[str, int] = {
    "1m": 60_000,
    "3m": 3 * 60_000,
    "5m": 5 * 60_000,
    "15m": 15 * 60_000,
    "30m": 30 * 60_000,
    "1h": 3_600_000,
    "2h": 2 * 3_600_000,
    "4h": 4 * 3_600_000,
    "8h": 8 * 3_600_000,
    "12h": 12 * 3_600_000,
    "1d": 86_400_000,
}


class HyperliquidClient(CandleSource):
    """Minimal async client for https://api.hyperliquid.xyz/info."""

    CANDLE_CACHE_SECONDS = 30.0
    CANDLE_CACHE_MAX = 50

    def __init__(
        self,
        base_url: str = "https://api.hyperliquid.xyz",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "https://api.hyperliquid.xyz").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._client = client
        self._candle_cache: Dict[Tuple[str, str], Tuple[float, List[Candle]]] = {}

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _info(self, payload: Dict[str, Any]) -> Any:
        if self._client is None:
            await self.initialize()
        try:
            resp = await self._client.post(f"{self.base_url}/info", json=payload)
        except httpx.TimeoutException as e:
            raise TransientExchangeError(f"Hyperliquid timeout: {e!r}") from e
        except httpx.HTTPError as e:
            raise TransientExchangeError(f"Hyperliquid transport error: {e!r}") from e

        if resp.status_code == 429:
            retry_after = float(resp.headers.get("retry-after", 1) or 1)
            raise RateLimitError(retry_after=retry_after)
        if resp.status_code >= 500:
            raise TransientExchangeError(f"Hyperliquid HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentExchangeError(
                f"Hyperliquid HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise TransientExchangeError("Hyperliquid returned invalid JSON") from e

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        interval_ms = TIMEFRAME_MS.get(timeframe)
        if interval_ms is None:
            raise DataUnavailable(f"Unsupported timeframe {timeframe}")

        key = (symbol, timeframe)
        cached = self._candle_cache.get(key)
        if cached and time.monotonic() - cached[0] < self.CANDLE_CACHE_SECONDS and len(cached[1]) >= limit:
            return cached[1][-limit:]

        end_ms = int(time.time() * 1000)
        # A few extra bars so gaps in thin markets still yield ``limit`` candles
        start_ms = end_ms - interval_ms * (limit + 10)
        payload = {
            "type": "candleSnapshot",
            "req": {"coin": symbol, "interval": timeframe, "startTime": start_ms, "endTime": end_ms},
        }
        try:
            rows = await self._info(payload)
        except ExchangeError as e:
            raise DataUnavailable(f"Candles unavailable for {symbol} {timeframe}: {e}") from e
        if not isinstance(rows, list):
            raise DataUnavailable(f"Unexpected candle payload for {symbol} {timeframe}")

        candles: List[Candle] = []
        for row in rows:
            try:
                candles.append(
                    Candle(
                        time=float(row["t"]) / 1000.0,
                        open=float(row["o"]),
                        high=float(row["h"]),
                        low=float(row["l"]),
                        close=float(row["c"]),
                        volume=float(row.get("v", 0) or 0),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed candle", symbol=symbol, row=row)
        candles = candles[-limit:]

        self._candle_cache[key] = (time.monotonic(), candles)
        if len(self._candle_cache) > self.CANDLE_CACHE_MAX:
            oldest = next(iter(self._candle_cache))
            del self._candle_cache[oldest]
        return candles

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_clearinghouse_state(self, address: str) -> Dict[str, Any]:
        data = await self._info({"type": "clearinghouseState", "user": address})
        if not isinstance(data, dict):
            raise TransientExchangeError("Unexpected clearinghouseState payload")
        return data

    async def get_account_equity(self, address: str) -> float:
        state = await self.get_clearinghouse_state(address)
        summary = state.get("marginSummary") or state.get("crossMarginSummary") or {}
        try:
            return float(summary.get("accountValue", 0) or 0)
        except (TypeError, ValueError) as e:
            raise TransientExchangeError("Invalid accountValue in clearinghouseState") from e

    async def get_open_positions(self, address: str) -> List[ExchangePosition]:
        state = await self.get_clearinghouse_state(address)
        positions: List[ExchangePosition] = []
        for entry in state.get("assetPositions", []) or []:
            pos = entry.get("position", {}) if isinstance(entry, dict) else {}
            try:
                szi = float(pos.get("szi", 0) or 0)
            except (TypeError, ValueError):
                continue
            if szi == 0:
                continue
            leverage = pos.get("leverage") or {}
            liq = pos.get("liquidationPx")
            positions.append(
                ExchangePosition(
                    symbol=str(pos.get("coin", "")),
                    direction=SignalDirection.LONG if szi > 0 else SignalDirection.SHORT,
                    size=abs(szi),
                    entry_price=float(pos.get("entryPx", 0) or 0),
                    unrealized_pnl=float(pos.get("unrealizedPnl", 0) or 0),
                    leverage=float(leverage.get("value", 1) or 1),
                    liquidation_price=float(liq) if liq not in (None, "") else None,
                    margin_used=float(pos.get("marginUsed", 0) or 0),
                )
            )
        return positions
