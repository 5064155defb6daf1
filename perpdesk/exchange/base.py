"""
Collaborator contracts - market data, exchange account and signal analysis.

The trading loop only talks to these interfaces. Concrete adapters live
next to this module (Hyperliquid info API, in-memory paper exchange) and
in ``perpdesk.signals``.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


class SignalDirection(str, Enum):
    LONG = "long"
    SHORT = "short"
    NEUTRAL = "neutral"


@dataclass
class Candle:
    time: float  # epoch seconds, candle open
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass
class SignalResult:
    """
    Analyzer output for one (symbol, timeframe).

    ``score`` is the unsigned strength of ``direction``. ``indicators``
    carries whatever levels the analyzer computed; the TP/SL logic reads
    ``kijun``, ``tenkan``, ``cloud_top``, ``cloud_bottom``, ``support``,
    ``resistance``, ``bb_width`` and ``atr`` when present.
    """
    direction: SignalDirection
    score: float
    rsi: Optional[float] = None
    atr: Optional[float] = None
    win_probability: Optional[float] = None
    confluence: Optional[int] = None
    indicators: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_directional(self) -> bool:
        return self.direction != SignalDirection.NEUTRAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "score": round(float(self.score), 4),
            "rsi": self.rsi,
            "atr": self.atr,
            "win_probability": self.win_probability,
            "confluence": self.confluence,
            "indicators": sanitize_for_json(self.indicators),
        }


@dataclass
class OrderRequest:
    symbol: str
    direction: SignalDirection
    size: float
    price: float
    leverage: float
    take_profit: float
    stop_loss: float


@dataclass
class OrderResult:
    order_id: str
    symbol: str
    direction: SignalDirection
    size: float
    filled_price: float
    status: str = "filled"
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()


@dataclass
class ExchangePosition:
    symbol: str
    direction: SignalDirection
    size: float
    entry_price: float
    unrealized_pnl: float = 0.0
    leverage: float = 1.0
    liquidation_price: Optional[float] = None
    margin_used: float = 0.0


def sanitize_for_json(obj: Any) -> Any:
    """Convert numpy scalars and NaN/Inf into JSON-safe values."""
    if isinstance(obj, dict):
        return {k: sanitize_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [sanitize_for_json(v) for v in obj]
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, (np.floating, float)):
        val = float(obj)
        if math.isnan(val) or math.isinf(val):
            return None
        return val
    elif isinstance(obj, np.ndarray):
        return sanitize_for_json(obj.tolist())
    return obj


class CandleSource(ABC):
    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        """Return up to ``limit`` candles, oldest first. Raises DataUnavailable."""

    async def close(self) -> None:
        return None


class ExchangeClient(ABC):
    """Account-side exchange operations for one venue."""

    @abstractmethod
    async def authenticate(self, secret: str) -> str:
        """Validate a signing secret and return the address it controls. Raises AuthError."""

    @abstractmethod
    async def get_account_equity(self, address: str) -> float:
        """Account value in USD. Raises ExchangeError when unavailable."""

    @abstractmethod
    async def get_open_positions(self, address: str) -> List[ExchangePosition]:
        ...

    @abstractmethod
    async def submit_order(self, address: str, order: OrderRequest) -> OrderResult:
        """Place an entry order with attached TP/SL. Raises ExecutionError."""

    async def close(self) -> None:
        return None


class SignalAnalyzer(ABC):
    @abstractmethod
    def analyze(
        self,
        candles: List[Candle],
        params: Dict[str, Any],
        timeframe: str,
    ) -> SignalResult:
        ...
