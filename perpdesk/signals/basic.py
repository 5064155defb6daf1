"""
Basic Signal Analyzer - Trend, momentum and cloud levels in one score.

Each component votes for long or short and carries a weight; the score is
the winning side's total on a 0-10 scale and ``confluence`` is the number
of components on that side.

Components:
  EMA 20/50 trend (2), MACD histogram (2), 10-bar momentum (2),
  price vs Ichimoku cloud (2), Tenkan/Kijun (1), RSI regime (1)

Levels reported for TP/SL: kijun, tenkan, cloud_top, cloud_bottom,
support/resistance (20-bar extremes), Bollinger width and ATR.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from perpdesk.exchange.base import Candle, SignalAnalyzer, SignalDirection, SignalResult


def ema(values: np.ndarray, period: int) -> np.ndarray:
    out = np.full(len(values), np.nan)
    if len(values) < period:
        return out
    alpha = 2.0 / (period + 1)
    out[period - 1] = values[:period].mean()
    for i in range(period, len(values)):
        out[i] = alpha * values[i] + (1 - alpha) * out[i - 1]
    return out


def rsi(closes: np.ndarray, period: int = 14) -> float:
    """Wilder RSI of the last bar (50.0 when history is too short)."""
    if len(closes) <= period:
        return 50.0
    deltas = np.diff(closes)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def atr(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 14) -> float:
    if len(closes) <= period:
        return float("nan")
    prev_close = closes[:-1]
    tr = np.maximum.reduce([
        highs[1:] - lows[1:],
        np.abs(highs[1:] - prev_close),
        np.abs(lows[1:] - prev_close),
    ])
    value = tr[:period].mean()
    for i in range(period, len(tr)):
        value = (value * (period - 1) + tr[i]) / period
    return float(value)


def _midpoint(highs: np.ndarray, lows: np.ndarray, period: int, end: int) -> Optional[float]:
    if end < period:
        return None
    return float((highs[end - period:end].max() + lows[end - period:end].min()) / 2.0)


def ichimoku_levels(
    highs: np.ndarray,
    lows: np.ndarray,
    tenkan_period: int = 9,
    kijun_period: int = 26,
    senkou_b_period: int = 52,
) -> Dict[str, Optional[float]]:
    """Current Tenkan/Kijun and the cloud projected onto the last bar."""
    n = len(highs)
    tenkan = _midpoint(highs, lows, tenkan_period, n)
    kijun = _midpoint(highs, lows, kijun_period, n)

    # The cloud under today's bar was computed kijun_period bars ago
    past = n - kijun_period
    cloud_top = cloud_bottom = None
    past_tenkan = _midpoint(highs, lows, tenkan_period, past)
    past_kijun = _midpoint(highs, lows, kijun_period, past)
    senkou_b = _midpoint(highs, lows, senkou_b_period, past)
    if past_tenkan is not None and past_kijun is not None and senkou_b is not None:
        senkou_a = (past_tenkan + past_kijun) / 2.0
        cloud_top = max(senkou_a, senkou_b)
        cloud_bottom = min(senkou_a, senkou_b)
    return {"tenkan": tenkan, "kijun": kijun, "cloud_top": cloud_top, "cloud_bottom": cloud_bottom}


class BasicSignalAnalyzer(SignalAnalyzer):
    def __init__(self, rsi_period: int = 14, atr_period: int = 14, level_lookback: int = 20):
        self.rsi_period = rsi_period
        self.atr_period = atr_period
        self.level_lookback = level_lookback

    def analyze(self, candles: List[Candle], params: Dict[str, Any], timeframe: str) -> SignalResult:
        closes = np.array([c.close for c in candles], dtype=float)
        highs = np.array([c.high for c in candles], dtype=float)
        lows = np.array([c.low for c in candles], dtype=float)
        if len(closes) < 50:
            return SignalResult(direction=SignalDirection.NEUTRAL, score=0.0)

        price = float(closes[-1])
        rsi_value = rsi(closes, self.rsi_period)
        atr_value = atr(highs, lows, closes, self.atr_period)
        levels = ichimoku_levels(highs, lows)

        ema_fast = ema(closes, 20)[-1]
        ema_slow = ema(closes, 50)[-1]
        macd_line = ema(closes, 12) - ema(closes, 26)
        valid = macd_line[~np.isnan(macd_line)]
        macd_hist = float(valid[-1] - ema(valid, 9)[-1]) if len(valid) >= 9 else 0.0

        window = closes[-20:]
        bb_mid = float(window.mean())
        bb_std = float(window.std())
        bb_width = (4.0 * bb_std / bb_mid * 100.0) if bb_mid > 0 else None

        votes: List[Tuple[int, float]] = []  # (+1 long / -1 short, weight)
        votes.append((1 if ema_fast > ema_slow else -1, 2.0))
        votes.append((1 if macd_hist > 0 else -1, 2.0))
        votes.append((1 if closes[-1] > closes[-11] else -1, 2.0))
        if levels["cloud_top"] is not None:
            if price > levels["cloud_top"]:
                votes.append((1, 2.0))
            elif price < levels["cloud_bottom"]:
                votes.append((-1, 2.0))
        if levels["tenkan"] is not None and levels["kijun"] is not None and levels["tenkan"] != levels["kijun"]:
            votes.append((1 if levels["tenkan"] > levels["kijun"] else -1, 1.0))
        if 50 < rsi_value < params.get("rsi_overbought", 70):
            votes.append((1, 1.0))
        elif params.get("rsi_oversold", 30) < rsi_value < 50:
            votes.append((-1, 1.0))

        long_score = sum(w for side, w in votes if side > 0)
        short_score = sum(w for side, w in votes if side < 0)
        if long_score > short_score:
            direction, score = SignalDirection.LONG, long_score
            confluence = sum(1 for side, _ in votes if side > 0)
        elif short_score > long_score:
            direction, score = SignalDirection.SHORT, short_score
            confluence = sum(1 for side, _ in votes if side < 0)
        else:
            direction, score, confluence = SignalDirection.NEUTRAL, 0.0, 0

        lookback = min(self.level_lookback, len(closes))
        indicators: Dict[str, Any] = {
            **levels,
            "support": float(lows[-lookback:].min()),
            "resistance": float(highs[-lookback:].max()),
            "bb_width": bb_width,
            "ema_fast": float(ema_fast),
            "ema_slow": float(ema_slow),
            "macd_hist": macd_hist,
            "atr": atr_value,
            "rsi": rsi_value,
        }
        return SignalResult(
            direction=direction,
            score=float(score),
            rsi=rsi_value,
            atr=atr_value if np.isfinite(atr_value) else None,
            confluence=confluence,
            indicators=indicators,
        )
