"""
Take-profit / stop-loss selection for bot entries.

Every mode produces percentage distances from entry which are clamped to
[0.3%, 5%] for the stop and [0.5%, 15%] for the target, then converted to
prices on the correct side of entry for the trade direction.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from perpdesk.core.config import TIMEFRAME_TPSL, TradingConfig
from perpdesk.core.logger import get_logger
from perpdesk.exchange.base import SignalDirection, SignalResult

logger = get_logger("tpsl")

SL_BOUNDS = (0.3, 5.0)
TP_BOUNDS = (0.5, 15.0)


@dataclass
class TPSLLevels:
    stop_loss: float
    take_profit: float
    stop_loss_pct: float
    take_profit_pct: float
    mode: str
    source: str

    @property
    def risk_reward_ratio(self) -> float:
        if self.stop_loss_pct <= 0:
            return 0.0
        return round(self.take_profit_pct / self.stop_loss_pct, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "stop_loss_pct": self.stop_loss_pct,
            "take_profit_pct": self.take_profit_pct,
            "risk_reward_ratio": self.risk_reward_ratio,
            "mode": self.mode,
            "source": self.source,
        }


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


def _level(indicators: Dict[str, Any], key: str) -> Optional[float]:
    value = indicators.get(key)
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def reward_multiplier(score: float, min_rrr: float) -> float:
    """Stronger signals aim further: 1.5x the minimum RRR at score 7+, 1.2x at 5+."""
    if score >= 7:
        return min_rrr * 1.5
    if score >= 5:
        return min_rrr * 1.2
    return min_rrr


def _atr_pct(signal: SignalResult, price: float) -> Optional[float]:
    atr = signal.atr if signal.atr is not None else _level(signal.indicators, "atr")
    if atr is None or not math.isfinite(atr) or atr <= 0:
        return None
    return atr / price * 100


def _percent(config: TradingConfig) -> Tuple[float, float, str]:
    return config.default_sl, config.default_tp, "percent"


def _atr(price: float, signal: SignalResult, config: TradingConfig) -> Optional[Tuple[float, float, str]]:
    atr_pct = _atr_pct(signal, price)
    if atr_pct is None:
        return None
    sl = atr_pct * config.atr_multiplier_sl
    strength = reward_multiplier(signal.score, 1.0)
    tp = atr_pct * config.atr_multiplier_tp * strength
    return sl, tp, "atr"


def _nearest_levels(price: float, indicators: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    """Closest cloud/baseline/support level below and above ``price``."""
    candidates = [
        _level(indicators, key)
        for key in ("kijun", "tenkan", "cloud_top", "cloud_bottom", "support", "resistance")
    ]
    below = [lvl for lvl in candidates if lvl is not None and lvl < price]
    above = [lvl for lvl in candidates if lvl is not None and lvl > price]
    return (max(below) if below else None), (min(above) if above else None)


def _ichimoku_pure(
    price: float, is_long: bool, signal: SignalResult, config: TradingConfig
) -> Optional[Tuple[float, float, str]]:
    below, above = _nearest_levels(price, signal.indicators)
    stop_level, target_level = (below, above) if is_long else (above, below)
    if stop_level is None:
        return None
    sl = abs(price - stop_level) / price * 100
    if target_level is not None:
        tp = abs(target_level - price) / price * 100
        source = "ichimoku_levels"
    else:
        tp = sl * config.min_risk_reward_ratio
        source = "ichimoku_rrr"
    return sl, tp, source


def _auto_stop_level(price: float, is_long: bool, indicators: Dict[str, Any]) -> Optional[float]:
    kijun = _level(indicators, "kijun")
    tenkan = _level(indicators, "tenkan")
    top = _level(indicators, "cloud_top")
    bottom = _level(indicators, "cloud_bottom")

    if is_long:
        level = kijun or bottom
        if top is not None and bottom is not None:
            if price > top:
                level = bottom
            elif bottom <= price <= top:
                level = min(kijun or price * 0.98, tenkan or price * 0.98)
        return level if level is not None and level < price else None

    level = kijun or top
    if top is not None and bottom is not None:
        if price < bottom:
            level = top
        elif bottom <= price <= top:
            level = max(kijun or price * 1.02, tenkan or price * 1.02)
    return level if level is not None and level > price else None


def _auto(
    price: float, is_long: bool, signal: SignalResult, config: TradingConfig
) -> Optional[Tuple[float, float, str]]:
    level = _auto_stop_level(price, is_long, signal.indicators)
    if level is None:
        return None
    sl = abs(price - level) / price * 100

    rsi = signal.rsi if signal.rsi is not None else _level(signal.indicators, "rsi")
    if rsi is not None:
        if (is_long and rsi < 35) or (not is_long and rsi > 65):
            sl *= 0.85
        elif (is_long and rsi > 60) or (not is_long and rsi < 40):
            sl *= 1.2

    atr_pct = _atr_pct(signal, price)
    if atr_pct is not None:
        if atr_pct > 2:
            sl = max(sl, atr_pct * 0.8)
    else:
        bb_width = _level(signal.indicators, "bb_width")
        if bb_width is not None and bb_width > 4:
            sl *= 1.15

    tp = sl * reward_multiplier(signal.score, config.min_risk_reward_ratio)
    return sl, tp, "auto"


def compute_tpsl(
    price: float,
    direction: SignalDirection,
    signal: SignalResult,
    config: TradingConfig,
    timeframe: Optional[str] = None,
) -> TPSLLevels:
    """
    TP/SL prices for an entry at ``price``.

    Dynamic modes fall back to the configured percentages when their inputs
    (ATR, cloud/baseline levels) are missing, and to the timeframe table
    when they produce non-finite distances.
    """
    if price <= 0:
        raise ValueError("price must be positive")
    if direction == SignalDirection.NEUTRAL:
        raise ValueError("direction must be long or short")
    is_long = direction == SignalDirection.LONG
    mode = config.tpsl_mode

    computed: Optional[Tuple[float, float, str]] = None
    if mode == "atr":
        computed = _atr(price, signal, config)
    elif mode in ("ichimoku", "ichimoku_pure"):
        computed = _ichimoku_pure(price, is_long, signal, config)
    elif mode == "auto":
        computed = _auto(price, is_long, signal, config)

    if computed is None:
        computed = _percent(config)
    sl_pct, tp_pct, source = computed

    if not (math.isfinite(sl_pct) and math.isfinite(tp_pct)):
        preset = TIMEFRAME_TPSL.get(timeframe or "", {"tp": config.default_tp, "sl": config.default_sl})
        logger.warning("Non-finite TP/SL, using timeframe fallback", mode=mode, timeframe=timeframe)
        sl_pct, tp_pct, source = preset["sl"], preset["tp"], "timeframe_fallback"

    sl_pct = round(_clamp(sl_pct, SL_BOUNDS), 2)
    tp_pct = round(_clamp(tp_pct, TP_BOUNDS), 2)

    if is_long:
        stop_loss = price * (1 - sl_pct / 100)
        take_profit = price * (1 + tp_pct / 100)
    else:
        stop_loss = price * (1 + sl_pct / 100)
        take_profit = price * (1 - tp_pct / 100)

    return TPSLLevels(
        stop_loss=stop_loss,
        take_profit=take_profit,
        stop_loss_pct=sl_pct,
        take_profit_pct=tp_pct,
        mode=mode,
        source=source,
    )
