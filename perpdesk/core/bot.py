"""
Bot Instance - Per-user analyze/filter/execute loop.

One instance owns one user's trading configuration and runtime state:

1. A scheduler task fires an analysis tick immediately and then every
   ``analysis_interval_seconds``. A tick that is still running causes the
   next firing to be skipped, never doubled.
2. Each tick fetches candles for every (symbol, timeframe), runs the
   signal analyzer and keeps qualifying opportunities.
3. In ``auto`` mode opportunities are ranked by score and executed under
   the concurrency cap, anti-overtrading cooldowns and the user's risk gate.

Failures are contained at the narrowest level: a pair, a candidate, or
the tick. None of them terminate the scheduler.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from perpdesk.core.config import (
    TradingConfig,
    get_timeframe_preset,
    merge_config,
    merge_risk_config,
    split_user_config,
)
from perpdesk.core.events import Event, EventBus, EventCallback, EventKind
from perpdesk.core.logger import get_logger, log_performance
from perpdesk.core.state import (
    ActivePosition,
    BotRuntimeState,
    LogEntry,
    Opportunity,
    utc_now,
)
from perpdesk.exchange.base import (
    CandleSource,
    ExchangeClient,
    OrderRequest,
    SignalAnalyzer,
    SignalDirection,
    SignalResult,
)
from perpdesk.exchange.exceptions import (
    AuthError,
    ConfigurationError,
    DataUnavailable,
    ExchangeError,
)
from perpdesk.execution.risk_manager import RiskManager, size_position
from perpdesk.execution.tpsl import compute_tpsl
from perpdesk.utils.crypto import WalletCredentials, decrypt_credential

logger = get_logger("bot")

_DAY_SECONDS = 86_400.0
_HOUR_SECONDS = 3_600.0


class BotInstance:
    """Trading bot for a single user."""

    def __init__(
        self,
        user_id: str,
        config: TradingConfig,
        candle_source: CandleSource,
        exchange: ExchangeClient,
        analyzer: SignalAnalyzer,
        risk_manager: Optional[RiskManager] = None,
        log_buffer_size: int = 200,
        clock: Callable[[], float] = time.time,
        decrypt: Callable[[str], str] = decrypt_credential,
        risk_profile: Optional[Dict[str, Any]] = None,
    ):
        self.user_id = user_id
        self.config = config
        self.candle_source = candle_source
        self.exchange = exchange
        self.analyzer = analyzer
        self.risk_manager = risk_manager or RiskManager(user_id=user_id)
        if risk_profile:
            # Raises ConfigurationError before the bot is usable
            self.risk_manager.update_config(risk_profile)
        self.state = BotRuntimeState()
        self.logs: Deque[LogEntry] = deque(maxlen=max(1, log_buffer_size))
        self.bus = EventBus(name=f"bot:{user_id}")

        self.wallet: Optional[WalletCredentials] = None
        self.address: Optional[str] = None
        self._authenticated = False
        self._destroyed = False

        self._clock = clock
        self._decrypt = decrypt
        self._scheduler_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()
        self._tick_in_progress = False

    # ------------------------------------------------------------------
    # Events & logging
    # ------------------------------------------------------------------

    def on(self, kind: Optional[EventKind], callback: EventCallback) -> None:
        self.bus.subscribe(kind, callback)

    def off(self, kind: Optional[EventKind], callback: EventCallback) -> bool:
        return self.bus.unsubscribe(kind, callback)

    def _emit(self, kind: EventKind, data: Dict[str, Any]) -> None:
        self.bus.emit(Event(kind=kind, data=data))

    def log(self, message: str, level: str = "info", **context: Any) -> None:
        """Append to the rolling user log, mirror to structlog and emit a log event."""
        entry = LogEntry(timestamp=utc_now(), message=message, level=level, user_id=self.user_id)
        self.logs.append(entry)

        if level == "error":
            logger.error(message, user_id=self.user_id, **context)
        elif level == "warning":
            logger.warning(message, user_id=self.user_id, **context)
        else:
            logger.info(message, user_id=self.user_id, kind=level, **context)

        self._emit(EventKind.LOG, entry.to_dict())

    def get_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return [e.to_dict() for e in list(self.logs)[-limit:]]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    async def initialize(self, wallet: Optional[WalletCredentials]) -> bool:
        """Decrypt the wallet secret and authenticate with the exchange."""
        if wallet is None or not wallet.encrypted_secret:
            self.log("Wallet missing or has no secret", "error")
            raise AuthError("Wallet is missing an encrypted secret")

        try:
            secret = self._decrypt(wallet.encrypted_secret)
        except ConfigurationError as e:
            self.log(f"Wallet secret could not be decrypted: {e}", "error")
            raise AuthError("Wallet secret could not be decrypted") from e

        try:
            address = await self.exchange.authenticate(secret)
        except AuthError as e:
            self.log(f"Exchange rejected wallet: {e}", "error")
            raise
        except ExchangeError as e:
            self.log(f"Exchange authentication failed: {e}", "error")
            raise AuthError(f"Exchange authentication failed: {e}") from e

        self.wallet = wallet
        self.address = wallet.trading_address or address
        self._authenticated = True
        self.log(f"Wallet initialized: {wallet.address[:10]}...")
        return True

    async def start(self) -> bool:
        if self._destroyed:
            raise RuntimeError(f"Bot for {self.user_id} has been destroyed")
        if self.state.is_running:
            self.log("Bot already running", "warning")
            return False
        if not self._authenticated:
            raise AuthError("Wallet not initialized; call initialize() first")

        self.state.is_running = True
        cfg = self.config
        self.log(f"Bot started for user {self.user_id}")
        self.log(f"Mode: {cfg.mode.upper()} | Symbols: {', '.join(cfg.symbols)}")
        if cfg.multi_timeframe_mode and cfg.mtf_timeframes:
            self.log(f"Multi-timeframe mode: {', '.join(cfg.mtf_timeframes)}")
        else:
            self.log(f"Timeframes: {', '.join(cfg.timeframes)}")
            self.apply_timeframe_preset(cfg.primary_timeframe)

        self._scheduler_task = asyncio.create_task(
            self._schedule_loop(), name=f"bot-scheduler-{self.user_id}"
        )
        return True

    def stop(self) -> bool:
        """Cancel future ticks. An in-flight tick is allowed to finish."""
        if not self.state.is_running:
            return False
        self.state.is_running = False
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            self._scheduler_task = None
        self.log(f"Bot stopped for user {self.user_id}")
        return True

    def destroy(self) -> None:
        self.stop()
        self.bus.clear()
        self.logs.clear()
        self.state.clear()
        self._destroyed = True

    async def wait_for_idle(self) -> None:
        """Wait for any in-flight analysis tick to finish."""
        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)

    def apply_timeframe_preset(self, timeframe: str) -> bool:
        preset = get_timeframe_preset(timeframe)
        if preset is None:
            return False
        self.config = self.config.model_copy(
            update={
                "min_score": preset.min_score,
                "min_win_probability": preset.min_win_probability,
                "analysis_interval_seconds": preset.analysis_interval_seconds,
            }
        )
        if not self.config.multi_timeframe_mode:
            self.log(f"Preset {preset.name} applied for {timeframe}")
        return True

    def update_config(self, patch: Dict[str, Any]) -> TradingConfig:
        """
        Merge ``patch`` into the live configuration.

        Risk-only keys (``daily_loss_limit``, ``max_drawdown``, ...) go to
        the user's risk manager; shared sizing keys are applied to both.
        Nothing is committed if either side fails validation.
        """
        trading_patch, risk_patch = split_user_config(patch)

        new_config = merge_config(self.config, trading_patch)
        if risk_patch:
            merge_risk_config(self.risk_manager.config, risk_patch)

        self.config = new_config
        if risk_patch:
            self.risk_manager.update_config(risk_patch)
        if "timeframes" in trading_patch and not new_config.multi_timeframe_mode:
            self.apply_timeframe_preset(new_config.primary_timeframe)
        self.log("Configuration updated", keys=sorted(patch))
        return self.config

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule_loop(self) -> None:
        logger.info("Analysis scheduler started", user_id=self.user_id)
        while self.state.is_running:
            try:
                self._spawn_tick()
                await asyncio.sleep(self.config.analysis_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Scheduler error",
                    user_id=self.user_id,
                    error=repr(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc(),
                )
                await asyncio.sleep(1)

    def _spawn_tick(self) -> None:
        if self._tick_in_progress:
            self.log("Previous analysis still running, skipping this tick", "warning")
            return
        task = asyncio.create_task(self.run_analysis(), name=f"bot-tick-{self.user_id}")
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def run_analysis(self) -> bool:
        """Run one analysis tick. Returns False when another tick is in flight."""
        if self._tick_in_progress:
            self.log("Previous analysis still running, skipping this tick", "warning")
            return False
        self._tick_in_progress = True
        try:
            with log_performance(logger, "Analysis tick", user_id=self.user_id):
                await self._analysis_tick()
        except Exception as e:
            logger.error(
                "Analysis tick error",
                user_id=self.user_id,
                error=repr(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
            )
            self.log(f"Analysis loop error: {e!r}", "error")
        finally:
            self._tick_in_progress = False
        return True

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _analysis_params(self) -> Dict[str, Any]:
        cfg = self.config
        return {
            "rsi_overbought": cfg.rsi_overbought,
            "rsi_oversold": cfg.rsi_oversold,
            "min_score": cfg.min_score,
        }

    async def _analysis_tick(self) -> None:
        self.state.analysis_count += 1
        cfg = self.config
        timeframes = cfg.analysis_timeframes()
        label = "MTF" if cfg.multi_timeframe_mode else timeframes[0]
        self.log(
            f"Analysis #{self.state.analysis_count} [{label}] - "
            f"{len(cfg.symbols)} symbols | TP/SL: {cfg.tpsl_mode}"
        )

        await self._reconcile_positions()

        opportunities: List[Opportunity] = []
        # symbol -> direction -> number of timeframes agreeing
        votes: Dict[str, Dict[SignalDirection, int]] = defaultdict(lambda: defaultdict(int))

        for symbol in cfg.symbols:
            for timeframe in timeframes:
                try:
                    signal, opportunity = await self._analyze_pair(symbol, timeframe)
                except DataUnavailable as e:
                    self.log(f"Data unavailable for {symbol} {timeframe}: {e}", "warning")
                    continue
                except Exception as e:
                    self.log(f"Analysis error {symbol} {timeframe}: {e!r}", "error")
                    continue
                if signal is not None and signal.is_directional:
                    votes[symbol][signal.direction] += 1
                if opportunity is not None:
                    opportunities.append(opportunity)

        if cfg.multi_timeframe_mode:
            opportunities = self._apply_mtf_confirmation(opportunities, votes)

        self.state.opportunities = opportunities
        self.state.last_analysis_at = utc_now()
        self.log(f"Analysis complete: {len(opportunities)} opportunities")
        self._emit(
            EventKind.ANALYSIS,
            {
                "count": self.state.analysis_count,
                "opportunities": len(opportunities),
                "timestamp": self.state.last_analysis_at.isoformat(),
            },
        )

        if cfg.mode == "auto" and opportunities:
            self.log(f"Auto mode: processing {len(opportunities)} opportunities")
            await self.process_opportunities(opportunities)

    async def _analyze_pair(
        self, symbol: str, timeframe: str
    ) -> Tuple[Optional[SignalResult], Optional[Opportunity]]:
        cfg = self.config
        candles = await self.candle_source.fetch_candles(symbol, timeframe, cfg.candle_limit)
        if len(candles) < cfg.min_candles:
            logger.debug(
                "Not enough candles, skipping",
                user_id=self.user_id, symbol=symbol, timeframe=timeframe, candles=len(candles),
            )
            return None, None

        signal = self.analyzer.analyze(candles, self._analysis_params(), timeframe)
        if not signal.is_directional or signal.score < cfg.min_score:
            return signal, None
        if (
            cfg.min_win_probability > 0
            and signal.win_probability is not None
            and signal.win_probability < cfg.min_win_probability
        ):
            return signal, None
        if cfg.min_confluence > 0 and signal.confluence is not None and signal.confluence < cfg.min_confluence:
            return signal, None
        if cfg.use_rsi_filter and signal.rsi is not None:
            if signal.direction == SignalDirection.LONG and signal.rsi > cfg.rsi_overbought:
                return signal, None
            if signal.direction == SignalDirection.SHORT and signal.rsi < cfg.rsi_oversold:
                return signal, None

        opportunity = Opportunity(
            symbol=symbol,
            timeframe=timeframe,
            direction=signal.direction,
            score=signal.score,
            price=candles[-1].close,
            signal=signal,
        )
        self.state.last_signal = opportunity

        preview = compute_tpsl(opportunity.price, opportunity.direction, signal, cfg, timeframe)
        self.log(
            f"Signal {signal.direction.value.upper()} on {symbol} [{timeframe}] "
            f"(score: {signal.score:.1f}) - TP:{preview.take_profit_pct}%/SL:{preview.stop_loss_pct}%",
            "signal",
        )
        self._emit(EventKind.SIGNAL, opportunity.to_dict())
        return signal, opportunity

    def _apply_mtf_confirmation(
        self,
        opportunities: List[Opportunity],
        votes: Dict[str, Dict[SignalDirection, int]],
    ) -> List[Opportunity]:
        required = self.config.mtf_min_confirmation
        if required <= 1:
            return opportunities
        confirmed = []
        for opp in opportunities:
            agreeing = votes.get(opp.symbol, {}).get(opp.direction, 0)
            if agreeing >= required:
                confirmed.append(opp)
            else:
                logger.debug(
                    "MTF confirmation missing",
                    user_id=self.user_id, symbol=opp.symbol, agreeing=agreeing, required=required,
                )
        return confirmed

    async def _reconcile_positions(self) -> None:
        """Release locally tracked positions that are no longer open on the exchange."""
        if not self.state.active_positions or not self.address:
            return
        try:
            open_positions = await self.exchange.get_open_positions(self.address)
        except ExchangeError as e:
            self.log(f"Position reconciliation skipped: {e}", "warning")
            return
        open_symbols = {p.symbol for p in open_positions if p.size != 0}
        for symbol in list(self.state.active_positions):
            if symbol not in open_symbols:
                self.state.active_positions.pop(symbol, None)
                self.log(f"Position {symbol} no longer open on exchange, released")

    # ------------------------------------------------------------------
    # Trade processing
    # ------------------------------------------------------------------

    def _anti_overtrading_block(self, symbol: str) -> Optional[Tuple[str, bool]]:
        """Return (reason, applies_to_all_symbols) if a new entry is blocked."""
        now = self._clock()
        ao = self.config.anti_overtrading
        state = self.state

        if state.paused_until is not None:
            if now < state.paused_until:
                return f"paused after losses ({state.paused_until - now:.0f}s left)", True
            state.paused_until = None

        last_symbol = state.last_trade_time_per_symbol.get(symbol)
        if ao.symbol_cooldown_seconds > 0 and last_symbol is not None:
            if now - last_symbol < ao.symbol_cooldown_seconds:
                remaining = ao.symbol_cooldown_seconds - (now - last_symbol)
                return f"{symbol} cooldown ({remaining:.0f}s left)", False

        last_global = state.last_global_trade_time
        if ao.global_cooldown_seconds > 0 and last_global is not None:
            if now - last_global < ao.global_cooldown_seconds:
                remaining = ao.global_cooldown_seconds - (now - last_global)
                return f"global cooldown ({remaining:.0f}s left)", True

        while state.trade_times and now - state.trade_times[0] >= _DAY_SECONDS:
            state.trade_times.popleft()
        if ao.max_trades_per_hour > 0:
            last_hour = sum(1 for t in state.trade_times if now - t < _HOUR_SECONDS)
            if last_hour >= ao.max_trades_per_hour:
                return f"hourly trade cap reached ({last_hour}/{ao.max_trades_per_hour})", True
        if ao.max_trades_per_day > 0 and len(state.trade_times) >= ao.max_trades_per_day:
            return f"daily trade cap reached ({len(state.trade_times)}/{ao.max_trades_per_day})", True
        return None

    async def _has_exchange_position(self, symbol: str) -> bool:
        positions = await self.exchange.get_open_positions(self.address)
        return any(p.symbol == symbol and p.size != 0 for p in positions)

    async def process_opportunities(self, opportunities: List[Opportunity]) -> int:
        """Execute candidates best score first. Returns the number of orders placed."""
        # sorted() is stable: equal scores keep scan order
        ranked = sorted(opportunities, key=lambda o: o.score, reverse=True)
        placed = 0
        for opp in ranked:
            if len(self.state.active_positions) >= self.config.max_concurrent_trades:
                self.log(f"Max concurrent trades reached ({self.config.max_concurrent_trades})")
                break
            if opp.symbol in self.state.active_positions:
                continue

            blocked = self._anti_overtrading_block(opp.symbol)
            if blocked is not None:
                reason, applies_to_all = blocked
                self.log(f"Skipping {opp.symbol}: {reason}")
                if applies_to_all:
                    break
                continue

            try:
                if await self._has_exchange_position(opp.symbol):
                    self.log(f"Position {opp.symbol} already open on exchange, skipping")
                    continue
            except ExchangeError as e:
                self.log(f"Could not verify open positions for {opp.symbol}: {e}", "warning")
                continue

            try:
                if await self.execute_trade(opp):
                    placed += 1
            except Exception as e:
                self.log(f"Trade execution error {opp.symbol}: {e!r}", "error")
                continue

            if self.risk_manager.is_stopped:
                self.log(f"Risk manager halted trading: {self.risk_manager.state.stop_reason}", "warning")
                break
        return placed

    async def execute_trade(self, opp: Opportunity) -> bool:
        cfg = self.config
        tpsl = compute_tpsl(opp.price, opp.direction, opp.signal, cfg, opp.timeframe)
        self.log(
            f"Executing {opp.direction.value.upper()} on {opp.symbol} @ {opp.price} "
            f"| TP: {tpsl.take_profit:.4f} | SL: {tpsl.stop_loss:.4f}",
            "trade",
        )

        try:
            equity = await self.exchange.get_account_equity(self.address)
        except ExchangeError as e:
            self.log(f"Equity unavailable, trade aborted: {e}", "error")
            return False
        if equity is None or equity <= 0:
            self.log("Insufficient equity to trade", "error")
            return False

        async with self.risk_manager.lock:
            gate = self.risk_manager.can_trade(equity, tpsl.risk_reward_ratio)
        if not gate.allowed:
            self.log(f"Risk gate blocked {opp.symbol}: {gate.summary()}", "warning")
            return False

        leverage = self.risk_manager.effective_leverage(cfg.leverage)
        sizing = size_position(
            equity=equity,
            entry_price=opp.price,
            stop_price=tpsl.stop_loss,
            leverage=leverage,
            risk_per_trade=cfg.risk_per_trade,
            max_position_pct=cfg.max_position_size,
            min_notional_usd=cfg.min_notional_usd,
        )
        if sizing.capped_to_max:
            self.log(f"Position reduced to max {cfg.max_position_size}% of equity", "warning")
        if sizing.adjusted_to_minimum:
            self.log(f"Position raised to minimum ${cfg.min_notional_usd:.2f}", "warning")
        self.log(
            f"Equity: ${equity:.2f} | Risk: {cfg.risk_per_trade}% (${sizing.risk_amount:.2f}) | "
            f"Size: {sizing.size:.6f} {opp.symbol} (${sizing.notional_value:.2f}) | "
            f"Leverage: {leverage}x | Margin: ${sizing.margin_required:.2f}"
        )

        order = OrderRequest(
            symbol=opp.symbol,
            direction=opp.direction,
            size=sizing.size,
            price=opp.price,
            leverage=leverage,
            take_profit=tpsl.take_profit,
            stop_loss=tpsl.stop_loss,
        )
        try:
            result = await self.exchange.submit_order(self.address, order)
        except ExchangeError as e:
            self.log(f"Order failed for {opp.symbol}: {e}", "error")
            return False

        now = self._clock()
        self.state.active_positions[opp.symbol] = ActivePosition(
            symbol=opp.symbol,
            direction=opp.direction,
            entry_price=opp.price,
            size=sizing.size,
            take_profit=tpsl.take_profit,
            stop_loss=tpsl.stop_loss,
            order_id=result.order_id,
            timeframe=opp.timeframe,
        )
        self.state.last_trade_time_per_symbol[opp.symbol] = now
        self.state.last_global_trade_time = now
        self.state.trade_times.append(now)

        self.log(f"Order filled: {result.order_id} {opp.symbol} {result.size:.6f} @ {result.filled_price}", "trade")
        self._emit(
            EventKind.TRADE,
            {
                "event": "opened",
                "symbol": opp.symbol,
                "direction": opp.direction.value,
                "price": opp.price,
                "size": sizing.size,
                "notional_value": sizing.notional_value,
                "margin_required": sizing.margin_required,
                "take_profit": tpsl.take_profit,
                "stop_loss": tpsl.stop_loss,
                "order_id": result.order_id,
                "timeframe": opp.timeframe,
            },
        )
        return True

    async def record_trade_result(self, symbol: str, pnl: float) -> None:
        """Close a tracked position and feed its outcome to the risk gate and loss breaker."""
        self.state.active_positions.pop(symbol, None)
        is_win = pnl > 0
        async with self.risk_manager.lock:
            self.risk_manager.record_trade(pnl, is_win)

        state = self.state
        ao = self.config.anti_overtrading
        if is_win:
            state.consecutive_losses = 0
        else:
            state.consecutive_losses += 1
            if (
                ao.max_consecutive_losses > 0
                and state.consecutive_losses >= ao.max_consecutive_losses
                and ao.pause_after_losses_seconds > 0
            ):
                state.paused_until = self._clock() + ao.pause_after_losses_seconds
                state.consecutive_losses = 0
                self.log(
                    f"{ao.max_consecutive_losses} losses in a row, pausing entries for "
                    f"{ao.pause_after_losses_seconds:.0f}s",
                    "warning",
                )

        self.log(f"Trade closed on {symbol}: {'WIN' if is_win else 'LOSS'} {pnl:.2f} USD", "trade")
        self._emit(EventKind.TRADE, {"event": "closed", "symbol": symbol, "pnl": pnl, "is_win": is_win})

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        state = self.state
        return {
            "user_id": self.user_id,
            "is_running": state.is_running,
            "config": self.config.model_dump(),
            "analysis_count": state.analysis_count,
            "last_analysis_at": state.last_analysis_at.isoformat() if state.last_analysis_at else None,
            "last_signal": state.last_signal.to_dict() if state.last_signal else None,
            "opportunities": [o.to_dict() for o in state.opportunities],
            "active_positions": [p.to_dict() for p in state.active_positions.values()],
            "paused_until": state.paused_until,
            "tick_in_progress": self._tick_in_progress,
            "risk": self.risk_manager.get_stats()["daily"],
            "wallet": (
                {"address": self.wallet.address, "name": self.wallet.name}
                if self.wallet else None
            ),
        }
