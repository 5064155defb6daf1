"""
Risk Management Engine - Capital Preservation System.

Implements risk-based position sizing, stop-loss/take-profit level
selection, and a stateful daily gate (trade count, daily loss, drawdown,
consecutive losses, minimum risk/reward). The daily state is persisted per
user so a halted bot stays halted across process restarts until an
operator calls ``restart_bot``.

Sizing keeps the dollar loss at the stop equal to ``equity * risk%``.
Leverage only lowers the margin posted; it never inflates notional.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from perpdesk.core.config import RiskConfig, merge_risk_config
from perpdesk.core.logger import get_logger
from perpdesk.exchange.base import SignalDirection
from perpdesk.exchange.exceptions import ConfigurationError
from perpdesk.execution.tpsl import SL_BOUNDS, TP_BOUNDS

logger = get_logger("risk_manager")


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON via tmp file + os.replace so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


def _clamp_distance(entry: float, distance: float, bounds: Tuple[float, float]) -> float:
    """Clamp a price distance to a percentage band of ``entry``."""
    low, high = (entry * b / 100 for b in bounds)
    return min(max(distance, low), high)


def _target_in_band(entry: float, level: Optional[float], is_long: bool) -> bool:
    if not level:
        return False
    if (is_long and level <= entry) or (not is_long and level >= entry):
        return False
    low, high = TP_BOUNDS
    return low <= abs(level - entry) / entry * 100 <= high


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class PositionSizing:
    """Result of position sizing calculation."""
    size: float = 0.0
    notional_value: float = 0.0
    margin_required: float = 0.0
    risk_amount: float = 0.0
    stop_distance_pct: float = 0.0
    leverage: float = 1.0
    capped_to_max: bool = False
    adjusted_to_minimum: bool = False

    @property
    def value(self) -> float:
        return self.notional_value


@dataclass
class SLTPResult:
    entry_price: float
    stop_loss: float
    take_profit: float
    risk_reward_ratio: float
    risk_percent: float
    reward_percent: float
    meets_min_rrr: bool
    sl_source: str
    tp_source: str
    used_technical_levels: bool
    mode: str = "auto"


@dataclass
class RiskCheck:
    name: str
    passed: bool
    reason: Optional[str] = None
    value: Optional[str] = None


@dataclass
class RiskGateResult:
    allowed: bool
    checks: List[RiskCheck] = field(default_factory=list)
    daily_stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed_checks(self) -> List[RiskCheck]:
        return [c for c in self.checks if not c.passed]

    def summary(self) -> str:
        return "; ".join(f"{c.name}: {c.reason}" for c in self.failed_checks)


@dataclass
class TradeValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    analysis: Dict[str, float] = field(default_factory=dict)


@dataclass
class DailyRiskState:
    """Per-day counters plus the sticky halt flag."""
    date: str = ""
    trades_count: int = 0
    total_pnl: float = 0.0
    wins: int = 0
    losses: int = 0
    consecutive_losses: int = 0
    peak_balance: float = 0.0
    start_balance: float = 0.0
    current_drawdown: float = 0.0
    is_stopped: bool = False
    stop_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DailyRiskState:
        clean = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**clean)


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------

def size_position(
    equity: float,
    entry_price: float,
    stop_price: float,
    leverage: float,
    risk_per_trade: float,
    max_position_pct: float,
    min_notional_usd: float,
) -> PositionSizing:
    """
    Risk-implied position size.

    notional = (equity * risk%) / stop_distance, capped at max_position_pct
    of equity, then raised to ``min_notional_usd``. The minimum wins when
    the two conflict. Raises ValueError on non-positive inputs or a zero
    stop distance.
    """
    if equity <= 0:
        raise ValueError("equity must be positive")
    if entry_price <= 0:
        raise ValueError("entry_price must be positive")
    if leverage <= 0:
        raise ValueError("leverage must be positive")
    stop_distance = abs(entry_price - stop_price) / entry_price
    if stop_distance <= 0:
        raise ValueError("stop price must differ from entry price")

    risk_amount = equity * (risk_per_trade / 100.0)
    notional = risk_amount / stop_distance
    result = PositionSizing(
        risk_amount=risk_amount,
        stop_distance_pct=stop_distance * 100.0,
        leverage=leverage,
    )

    max_notional = equity * (max_position_pct / 100.0)
    if notional > max_notional:
        logger.warning(
            "Position capped to max size",
            requested=round(notional, 2),
            cap=round(max_notional, 2),
            max_position_pct=max_position_pct,
        )
        notional = max_notional
        result.capped_to_max = True

    if notional < min_notional_usd:
        logger.warning(
            "Position raised to exchange minimum",
            requested=round(notional, 2),
            minimum=min_notional_usd,
        )
        notional = min_notional_usd
        result.adjusted_to_minimum = True

    result.notional_value = notional
    result.size = notional / entry_price
    result.margin_required = notional / leverage
    return result


class RiskManager:
    """
    Per-user risk gate.

    Core responsibilities:
    1. Risk-based position sizing with max/min notional clamps
    2. SL/TP level selection (technical > support/resistance > percent)
    3. Daily trade and loss limits
    4. Drawdown from peak balance
    5. Consecutive-loss halt
    6. Persisted daily state (risk.json / state.json)
    """

    CONFIG_FILE = "risk.json"
    STATE_FILE = "state.json"

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        storage_dir: Optional[Union[str, Path]] = None,
        user_id: str = "default",
    ):
        self.user_id = user_id
        self.config = config or RiskConfig()
        self.storage_dir = Path(storage_dir) if storage_dir else None
        self.state = DailyRiskState(date=_today())
        # Serialises gate/record sequences issued from concurrent ticks
        self.lock = asyncio.Lock()
        self._load_config()
        self._load_state()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def config_path(self) -> Optional[Path]:
        return self.storage_dir / self.CONFIG_FILE if self.storage_dir else None

    @property
    def state_path(self) -> Optional[Path]:
        return self.storage_dir / self.STATE_FILE if self.storage_dir else None

    def _load_config(self) -> None:
        path = self.config_path
        if path is None or not path.exists():
            return
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f) or {}
            self.config = merge_risk_config(self.config, data)
            logger.info("Risk config loaded", user_id=self.user_id, path=str(path))
        except Exception as e:
            logger.error("Risk config load failed, using defaults", user_id=self.user_id, error=repr(e))

    def _save_config(self) -> None:
        path = self.config_path
        if path is None:
            return
        try:
            _atomic_write_json(path, self.config.model_dump())
        except OSError as e:
            logger.error("Risk config save failed", user_id=self.user_id, error=repr(e))

    def _load_state(self) -> None:
        path = self.state_path
        if path is None or not path.exists():
            return
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f) or {}
            stored = DailyRiskState.from_dict(data.get("daily_state", {}))
        except Exception as e:
            logger.error("Risk state load failed, starting fresh", user_id=self.user_id, error=repr(e))
            return

        if stored.date == _today():
            self.state = stored
        else:
            logger.info("New trading day, daily stats reset", user_id=self.user_id, previous=stored.date)
            self.state = self._rolled_over(stored)

    def _save_state(self) -> None:
        path = self.state_path
        if path is None:
            return
        try:
            _atomic_write_json(
                path,
                {
                    "daily_state": self.state.to_dict(),
                    "last_update": datetime.now(timezone.utc).isoformat(),
                },
            )
        except OSError as e:
            logger.error("Risk state save failed", user_id=self.user_id, error=repr(e))

    @staticmethod
    def _rolled_over(previous: DailyRiskState) -> DailyRiskState:
        # Peak balance and an operator halt outlive the calendar day
        return DailyRiskState(
            date=_today(),
            peak_balance=previous.peak_balance,
            is_stopped=previous.is_stopped,
            stop_reason=previous.stop_reason,
        )

    def _check_daily_reset(self) -> None:
        """Reset daily counters at midnight UTC."""
        if self.state.date != _today():
            self.state = self._rolled_over(self.state)
            self._save_state()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_config(self, patch: Dict[str, Any]) -> RiskConfig:
        self.config = merge_risk_config(self.config, patch)
        if "default_tp_percent" in patch or "default_sl_percent" in patch:
            logger.info(
                "Risk TP/SL defaults updated",
                user_id=self.user_id,
                tp=self.config.default_tp_percent,
                sl=self.config.default_sl_percent,
            )
        self._save_config()
        return self.config

    def initialize_day_balance(self, balance: float) -> None:
        if self.state.start_balance == 0:
            self.state.start_balance = balance
            self.state.peak_balance = max(self.state.peak_balance, balance)
        self._save_state()

    # ------------------------------------------------------------------
    # Position Sizing
    # ------------------------------------------------------------------

    def effective_leverage(self, leverage: float) -> float:
        if not self.config.use_leverage:
            return 1.0
        return max(1.0, min(leverage, self.config.max_leverage))

    def calculate_position_size(
        self,
        equity: float,
        entry_price: float,
        stop_price: float,
        leverage: float = 1.0,
    ) -> PositionSizing:
        return size_position(
            equity=equity,
            entry_price=entry_price,
            stop_price=stop_price,
            leverage=self.effective_leverage(leverage),
            risk_per_trade=self.config.risk_per_trade,
            max_position_pct=self.config.max_position_size,
            min_notional_usd=self.config.min_notional_usd,
        )

    # ------------------------------------------------------------------
    # Stop Loss / Take Profit
    # ------------------------------------------------------------------

    def _sltp_result(
        self,
        entry: float,
        stop_loss: float,
        take_profit: float,
        sl_source: str,
        tp_source: str,
        mode: str,
        used_technical: bool,
    ) -> SLTPResult:
        risk = abs(entry - stop_loss)
        reward = abs(take_profit - entry)
        rrr = reward / risk if risk > 0 else 0.0
        min_rrr = self.config.min_risk_reward_ratio
        return SLTPResult(
            entry_price=entry,
            stop_loss=round(stop_loss, 6),
            take_profit=round(take_profit, 6),
            risk_reward_ratio=round(rrr, 2),
            risk_percent=round(risk / entry * 100, 2),
            reward_percent=round(reward / entry * 100, 2),
            meets_min_rrr=min_rrr == 0 or rrr >= min_rrr,
            sl_source=sl_source,
            tp_source=tp_source,
            used_technical_levels=used_technical,
            mode=mode,
        )

    def calculate_sltp(
        self,
        entry_price: float,
        direction: SignalDirection,
        *,
        mode: str = "auto",
        technical_sl: Optional[float] = None,
        technical_tp: Optional[float] = None,
        sl_source: Optional[str] = None,
        tp_source: Optional[str] = None,
        support_level: Optional[float] = None,
        resistance_level: Optional[float] = None,
        sl_percent: Optional[float] = None,
        tp_percent: Optional[float] = None,
        atr_value: Optional[float] = None,
        atr_multiplier_sl: float = 1.5,
        atr_multiplier_tp: float = 2.5,
    ) -> SLTPResult:
        """
        Select stop-loss and take-profit prices.

        Modes: ``atr`` (needs ``atr_value``), ``percent``, ``ichimoku_pure``
        (support/resistance only), and the default cascade where SL and TP
        are each chosen independently: technical level > raw support or
        resistance > percent fallback. Candidate levels outside the allowed
        distance band are rejected and the cascade moves on. Every mode
        keeps SL within ``SL_BOUNDS`` and TP within ``TP_BOUNDS`` percent.
        """
        if entry_price <= 0:
            raise ValueError("entry_price must be positive")
        is_long = direction == SignalDirection.LONG
        sl_pct = sl_percent or self.config.default_sl_percent
        tp_pct = tp_percent or self.config.default_tp_percent

        if mode == "atr" and atr_value and atr_value > 0:
            sl_dist = _clamp_distance(entry_price, atr_value * atr_multiplier_sl, SL_BOUNDS)
            tp_dist = _clamp_distance(entry_price, atr_value * atr_multiplier_tp, TP_BOUNDS)
            sl = entry_price - sl_dist if is_long else entry_price + sl_dist
            tp = entry_price + tp_dist if is_long else entry_price - tp_dist
            return self._sltp_result(entry_price, sl, tp, "atr_dynamic", "atr_dynamic", "atr", True)

        sl_pct_dist = _clamp_distance(entry_price, entry_price * sl_pct / 100, SL_BOUNDS)
        tp_pct_dist = _clamp_distance(entry_price, entry_price * tp_pct / 100, TP_BOUNDS)

        if mode == "percent":
            sl = entry_price - sl_pct_dist if is_long else entry_price + sl_pct_dist
            tp = entry_price + tp_pct_dist if is_long else entry_price - tp_pct_dist
            return self._sltp_result(entry_price, sl, tp, "percent_fixed", "percent_fixed", "percent", False)

        if mode == "ichimoku_pure":
            return self._ichimoku_pure_sltp(entry_price, is_long, support_level, resistance_level, sl_pct_dist)

        min_dist = entry_price * 0.005
        max_dist = entry_price * SL_BOUNDS[1] / 100

        def in_band(level: Optional[float], below: bool) -> bool:
            if not level:
                return False
            if below and level >= entry_price:
                return False
            if not below and level <= entry_price:
                return False
            return min_dist <= abs(entry_price - level) <= max_dist

        stop_loss: Optional[float] = None
        final_sl = "default_percent"
        # Long stops sit below entry, short stops above
        if in_band(technical_sl, below=is_long):
            stop_loss = technical_sl
            final_sl = sl_source or "technical"
        elif is_long and in_band(support_level, below=True):
            stop_loss = support_level * 0.998
            final_sl = "support"
        elif not is_long and in_band(resistance_level, below=False):
            stop_loss = resistance_level * 1.002
            final_sl = "resistance"
        if stop_loss is None:
            stop_loss = entry_price - sl_pct_dist if is_long else entry_price + sl_pct_dist

        # Targets sit above entry for longs, below for shorts
        take_profit: Optional[float] = None
        final_tp = "rrr_calculated"
        if _target_in_band(entry_price, technical_tp, is_long):
            take_profit, final_tp = technical_tp, tp_source or "technical"
        elif is_long and resistance_level and _target_in_band(entry_price, resistance_level * 0.998, True):
            take_profit, final_tp = resistance_level * 0.998, "resistance"
        elif not is_long and support_level and _target_in_band(entry_price, support_level * 1.002, False):
            take_profit, final_tp = support_level * 1.002, "support"
        if take_profit is None:
            min_reward = abs(entry_price - stop_loss) * self.config.min_risk_reward_ratio
            reward = _clamp_distance(entry_price, max(tp_pct_dist, min_reward), TP_BOUNDS)
            take_profit = entry_price + reward if is_long else entry_price - reward

        used = final_sl != "default_percent" or final_tp != "rrr_calculated"
        return self._sltp_result(entry_price, stop_loss, take_profit, final_sl, final_tp, "auto", used)

    def _ichimoku_pure_sltp(
        self,
        entry: float,
        is_long: bool,
        support: Optional[float],
        resistance: Optional[float],
        sl_fallback_dist: float,
    ) -> SLTPResult:
        buffer = 0.002
        min_dist = entry * SL_BOUNDS[0] / 100
        max_dist = entry * SL_BOUNDS[1] / 100
        sl_source = "default_percent"
        stop_loss: Optional[float] = None

        if is_long and support and support < entry and min_dist <= entry - support * (1 - buffer) <= max_dist:
            stop_loss, sl_source = support * (1 - buffer), "ichimoku_support"
        elif not is_long and resistance and resistance > entry and min_dist <= resistance * (1 + buffer) - entry <= max_dist:
            stop_loss, sl_source = resistance * (1 + buffer), "ichimoku_resistance"
        if stop_loss is None:
            stop_loss = entry - sl_fallback_dist if is_long else entry + sl_fallback_dist

        take_profit: Optional[float] = None
        tp_source = "rrr_calculated"
        if is_long and resistance and _target_in_band(entry, resistance * (1 - buffer), True):
            take_profit, tp_source = resistance * (1 - buffer), "ichimoku_resistance"
        elif not is_long and support and _target_in_band(entry, support * (1 + buffer), False):
            take_profit, tp_source = support * (1 + buffer), "ichimoku_support"
        if take_profit is None:
            reward = abs(entry - stop_loss) * max(self.config.min_risk_reward_ratio, 1.5)
            reward = _clamp_distance(entry, reward, TP_BOUNDS)
            take_profit = entry + reward if is_long else entry - reward

        used = "ichimoku" in sl_source or "ichimoku" in tp_source
        return self._sltp_result(entry, stop_loss, take_profit, sl_source, tp_source, "ichimoku_pure", used)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def can_trade(self, balance: float, risk_reward_ratio: Optional[float] = None) -> RiskGateResult:
        """
        Evaluate every gate check (no short-circuit) and persist state.

        Breaching the daily loss, drawdown or consecutive-loss limit halts
        the manager until ``restart_bot``.
        """
        self._check_daily_reset()
        self.initialize_day_balance(balance)
        cfg = self.config
        state = self.state
        checks: List[RiskCheck] = []

        if state.is_stopped:
            checks.append(RiskCheck("bot_status", False, reason=state.stop_reason or "stopped"))
        else:
            checks.append(RiskCheck("bot_status", True, value="active"))

        max_trades = cfg.max_trades_per_day
        if max_trades > 0 and state.trades_count >= max_trades:
            checks.append(RiskCheck(
                "max_trades", False,
                reason=f"Daily trade limit reached: {state.trades_count}/{max_trades}",
            ))
        else:
            checks.append(RiskCheck(
                "max_trades", True,
                value=f"{state.trades_count}/{max_trades if max_trades > 0 else 'unlimited'}",
            ))

        pnl_pct = (state.total_pnl / state.start_balance * 100) if state.start_balance > 0 else 0.0
        if cfg.daily_loss_limit > 0 and pnl_pct <= -cfg.daily_loss_limit:
            checks.append(RiskCheck(
                "daily_loss_limit", False,
                reason=f"Daily loss {pnl_pct:.2f}% (limit -{cfg.daily_loss_limit}%)",
            ))
            self._halt("Daily loss limit reached")
        else:
            checks.append(RiskCheck("daily_loss_limit", True, value=f"{pnl_pct:.2f}%"))

        state.peak_balance = max(state.peak_balance, balance)
        drawdown = (
            (state.peak_balance - balance) / state.peak_balance * 100
            if state.peak_balance > 0 else 0.0
        )
        state.current_drawdown = drawdown
        if cfg.max_drawdown > 0 and drawdown >= cfg.max_drawdown:
            checks.append(RiskCheck(
                "max_drawdown", False,
                reason=f"Drawdown {drawdown:.2f}% (max {cfg.max_drawdown}%)",
            ))
            self._halt("Max drawdown reached")
        else:
            checks.append(RiskCheck("max_drawdown", True, value=f"{drawdown:.2f}%"))

        max_losses = cfg.max_consecutive_losses
        if max_losses > 0 and state.consecutive_losses >= max_losses:
            checks.append(RiskCheck(
                "consecutive_losses", False,
                reason=f"{state.consecutive_losses} consecutive losses (max {max_losses})",
            ))
            self._halt("Too many consecutive losses")
        else:
            checks.append(RiskCheck(
                "consecutive_losses", True,
                value=f"{state.consecutive_losses}/{max_losses if max_losses > 0 else 'unlimited'}",
            ))

        if risk_reward_ratio is not None:
            if cfg.min_risk_reward_ratio > 0 and risk_reward_ratio < cfg.min_risk_reward_ratio:
                checks.append(RiskCheck(
                    "risk_reward_ratio", False,
                    reason=f"RRR {risk_reward_ratio:.2f} (min {cfg.min_risk_reward_ratio})",
                ))
            else:
                checks.append(RiskCheck("risk_reward_ratio", True, value=f"{risk_reward_ratio:.2f}"))

        self._save_state()

        result = RiskGateResult(
            allowed=all(c.passed for c in checks),
            checks=checks,
            daily_stats={
                "trades": state.trades_count,
                "pnl": round(state.total_pnl, 2),
                "pnl_percent": round(pnl_pct, 2),
                "wins": state.wins,
                "losses": state.losses,
                "drawdown": round(drawdown, 2),
            },
        )
        if not result.allowed:
            logger.warning("Risk gate rejected trade", user_id=self.user_id, reasons=result.summary())
        return result

    def record_trade(self, pnl: float, is_win: Optional[bool] = None) -> None:
        """Record a closed trade; a win resets the loss streak."""
        self._check_daily_reset()
        if is_win is None:
            is_win = pnl > 0
        state = self.state
        state.trades_count += 1
        state.total_pnl += pnl
        if is_win:
            state.wins += 1
            state.consecutive_losses = 0
        else:
            state.losses += 1
            state.consecutive_losses += 1

        self._check_limits_after_trade()
        self._save_state()
        logger.info(
            "Trade recorded",
            user_id=self.user_id,
            result="win" if is_win else "loss",
            pnl=round(pnl, 2),
            consecutive_losses=state.consecutive_losses,
        )

    def _check_limits_after_trade(self) -> None:
        state = self.state
        cfg = self.config
        if state.start_balance > 0 and cfg.daily_loss_limit > 0:
            pnl_pct = state.total_pnl / state.start_balance * 100
            if pnl_pct <= -cfg.daily_loss_limit:
                self._halt("Daily loss limit reached")
        if cfg.max_consecutive_losses > 0 and state.consecutive_losses >= cfg.max_consecutive_losses:
            self._halt("Too many consecutive losses")

    def _halt(self, reason: str) -> None:
        # The first breach keeps its reason until an operator restart
        if not self.state.is_stopped:
            self.stop_bot(reason)

    def stop_bot(self, reason: str) -> None:
        self.state.is_stopped = True
        self.state.stop_reason = reason
        self._save_state()
        logger.warning("Risk manager halted trading", user_id=self.user_id, reason=reason)

    def restart_bot(self) -> None:
        self.state.is_stopped = False
        self.state.stop_reason = None
        self._save_state()
        logger.info("Risk manager restarted", user_id=self.user_id)

    def reset_daily_stats(self, new_balance: float = 0.0) -> None:
        self.state = DailyRiskState(
            date=_today(),
            peak_balance=new_balance,
            start_balance=new_balance,
        )
        self._save_state()
        logger.info("Daily risk stats reset", user_id=self.user_id, balance=new_balance)

    @property
    def is_stopped(self) -> bool:
        return self.state.is_stopped

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        state = self.state
        win_rate = (state.wins / state.trades_count * 100) if state.trades_count > 0 else 0.0
        return {
            "config": self.config.model_dump(),
            "daily": {**state.to_dict(), "win_rate": round(win_rate, 1)},
        }

    def validate_trade(
        self,
        entry_price: float,
        stop_loss: float,
        take_profit: float,
        size: float,
        direction: SignalDirection,
        balance: float,
    ) -> TradeValidation:
        """Check a proposed order against risk, size and RRR limits."""
        errors: List[str] = []
        warnings: List[str] = []
        if entry_price <= 0 or balance <= 0:
            return TradeValidation(False, ["entry price and balance must be positive"])

        sl_distance = abs(entry_price - stop_loss) / entry_price * 100
        tp_distance = abs(take_profit - entry_price) / entry_price * 100
        rrr = tp_distance / sl_distance if sl_distance > 0 else 0.0
        position_pct = size * entry_price / balance * 100
        risk_usd = size * abs(entry_price - stop_loss)
        risk_pct = risk_usd / balance * 100

        cfg = self.config
        if risk_pct > cfg.risk_per_trade * 1.5:
            errors.append(f"Risk too high: {risk_pct:.2f}% (max {cfg.risk_per_trade}%)")
        elif risk_pct > cfg.risk_per_trade:
            warnings.append(f"Risk slightly above target: {risk_pct:.2f}%")
        if position_pct > cfg.max_position_size:
            errors.append(f"Position too large: {position_pct:.2f}% (max {cfg.max_position_size}%)")
        if rrr < cfg.min_risk_reward_ratio:
            errors.append(f"RRR too low: {rrr:.2f} (min {cfg.min_risk_reward_ratio})")

        if direction == SignalDirection.LONG:
            if stop_loss >= entry_price:
                errors.append("Stop loss must be below entry for a long")
            if take_profit <= entry_price:
                errors.append("Take profit must be above entry for a long")
        else:
            if stop_loss <= entry_price:
                errors.append("Stop loss must be above entry for a short")
            if take_profit >= entry_price:
                errors.append("Take profit must be below entry for a short")

        return TradeValidation(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            analysis={
                "risk_percent": round(risk_pct, 2),
                "risk_usd": round(risk_usd, 2),
                "position_percent": round(position_pct, 2),
                "risk_reward_ratio": round(rrr, 2),
                "sl_distance": round(sl_distance, 2),
                "tp_distance": round(tp_distance, 2),
            },
        )


class RiskManagerStore:
    """One RiskManager per user, persisted under ``<storage>/users/<user_id>/``."""

    def __init__(self, storage_dir: Optional[Union[str, Path]] = None, defaults: Optional[RiskConfig] = None):
        self.storage_dir = Path(storage_dir) if storage_dir else None
        self.defaults = defaults or RiskConfig()
        self._managers: Dict[str, RiskManager] = {}

    def get(self, user_id: str) -> RiskManager:
        manager = self._managers.get(user_id)
        if manager is None:
            if not user_id or user_id in (".", "..") or "/" in user_id or "\\" in user_id:
                raise ConfigurationError(f"Invalid user id for risk storage: {user_id!r}")
            user_dir = self.storage_dir / "users" / user_id if self.storage_dir else None
            manager = RiskManager(
                config=self.defaults.model_copy(),
                storage_dir=user_dir,
                user_id=user_id,
            )
            self._managers[user_id] = manager
        return manager

    def discard(self, user_id: str) -> None:
        self._managers.pop(user_id, None)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._managers
