"""Runtime state owned by a single BotInstance."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from perpdesk.exchange.base import SignalDirection, SignalResult, sanitize_for_json


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Opportunity:
    """A qualifying signal for one (symbol, timeframe) from the latest tick."""
    symbol: str
    timeframe: str
    direction: SignalDirection
    score: float
    price: float
    signal: SignalResult
    detected_at: datetime = field(default_factory=utc_now)

    @property
    def indicators(self) -> Dict[str, Any]:
        return self.signal.indicators

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "direction": self.direction.value,
            "score": round(float(self.score), 4),
            "price": self.price,
            "rsi": self.signal.rsi,
            "win_probability": self.signal.win_probability,
            "confluence": self.signal.confluence,
            "indicators": sanitize_for_json(self.signal.indicators),
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class ActivePosition:
    symbol: str
    direction: SignalDirection
    entry_price: float
    size: float
    take_profit: float
    stop_loss: float
    opened_at: datetime = field(default_factory=utc_now)
    order_id: Optional[str] = None
    timeframe: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction.value,
            "entry_price": self.entry_price,
            "size": self.size,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "opened_at": self.opened_at.isoformat(),
            "order_id": self.order_id,
            "timeframe": self.timeframe,
        }


@dataclass
class LogEntry:
    timestamp: datetime
    message: str
    level: str
    user_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "level": self.level,
            "user_id": self.user_id,
        }


@dataclass
class BotRuntimeState:
    is_running: bool = False
    analysis_count: int = 0
    last_analysis_at: Optional[datetime] = None
    last_signal: Optional[Opportunity] = None
    active_positions: Dict[str, ActivePosition] = field(default_factory=dict)
    opportunities: List[Opportunity] = field(default_factory=list)
    last_trade_time_per_symbol: Dict[str, float] = field(default_factory=dict)
    last_global_trade_time: Optional[float] = None
    # Monotonic timestamps of executed entries, for hourly/daily caps
    trade_times: Deque[float] = field(default_factory=deque)
    consecutive_losses: int = 0
    paused_until: Optional[float] = None

    def clear(self) -> None:
        self.is_running = False
        self.last_signal = None
        self.active_positions.clear()
        self.opportunities = []
        self.last_trade_time_per_symbol.clear()
        self.last_global_trade_time = None
        self.trade_times.clear()
        self.consecutive_losses = 0
        self.paused_until = None
