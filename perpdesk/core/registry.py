"""
Bot Registry - Multi-tenant orchestration of BotInstances.

Maps user ids to bot instances, creates them lazily with the user's
layered configuration and per-user risk manager, and re-broadcasts every
instance event on one global bus tagged with the originating user id.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from perpdesk.core.bot import BotInstance
from perpdesk.core.config import TradingConfig, merge_config, split_user_config
from perpdesk.core.events import Event, EventBus, EventCallback, EventKind
from perpdesk.core.logger import get_logger
from perpdesk.exchange.base import CandleSource, ExchangeClient, SignalAnalyzer
from perpdesk.exchange.exceptions import ConfigurationError
from perpdesk.execution.risk_manager import RiskManagerStore
from perpdesk.utils.crypto import WalletCredentials, decrypt_credential

logger = get_logger("registry")


class BotRegistry:
    def __init__(
        self,
        candle_source: CandleSource,
        exchange: ExchangeClient,
        analyzer: SignalAnalyzer,
        risk_store: Optional[RiskManagerStore] = None,
        defaults: Optional[TradingConfig] = None,
        log_buffer_size: int = 200,
        clock: Callable[[], float] = time.time,
        decrypt: Callable[[str], str] = decrypt_credential,
    ):
        self.candle_source = candle_source
        self.exchange = exchange
        self.analyzer = analyzer
        self.risk_store = risk_store or RiskManagerStore()
        self.defaults = defaults or TradingConfig()
        self.log_buffer_size = log_buffer_size
        self.bus = EventBus(name="registry")
        self._clock = clock
        self._decrypt = decrypt
        self._bots: Dict[str, BotInstance] = {}
        logger.info("Bot registry initialized")

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def get_or_create_bot(self, user_id: Any, config: Optional[Mapping[str, Any]] = None) -> BotInstance:
        """
        Return the user's bot, creating it from defaults < ``config`` on first use.

        Risk keys in ``config`` configure the user's risk manager exactly as a
        later ``update_bot_config`` patch would.
        """
        key = str(user_id)
        bot = self._bots.get(key)
        if bot is not None:
            return bot

        trading_profile, risk_profile = split_user_config(config)
        merged = merge_config(self.defaults, trading_profile)
        try:
            bot = BotInstance(
                user_id=key,
                config=merged,
                candle_source=self.candle_source,
                exchange=self.exchange,
                analyzer=self.analyzer,
                risk_manager=self.risk_store.get(key),
                log_buffer_size=self.log_buffer_size,
                clock=self._clock,
                decrypt=self._decrypt,
                risk_profile=risk_profile,
            )
        except ConfigurationError:
            self.risk_store.discard(key)
            raise

        def forward(event: Event) -> None:
            self.bus.emit(event.with_user(key))

        # Wildcard subscription forwards log, signal, trade and analysis alike
        bot.on(None, forward)
        self._bots[key] = bot
        logger.info("Bot instance created", user_id=key)
        return bot

    def get_bot(self, user_id: Any) -> Optional[BotInstance]:
        return self._bots.get(str(user_id))

    def has_bot(self, user_id: Any) -> bool:
        return str(user_id) in self._bots

    def is_bot_running(self, user_id: Any) -> bool:
        bot = self.get_bot(user_id)
        return bot.is_running if bot else False

    # ------------------------------------------------------------------
    # Delegations
    # ------------------------------------------------------------------

    async def start_bot(
        self,
        user_id: Any,
        wallet: WalletCredentials,
        config: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Authenticate and start the user's bot. Raises AuthError on bad credentials."""
        existed = self.has_bot(user_id)
        bot = self.get_or_create_bot(user_id, config)
        await bot.initialize(wallet)
        if existed and config:
            bot.update_config(dict(config))

        started = await bot.start()
        if started:
            self._broadcast_status(bot, "started")
        return started

    def stop_bot(self, user_id: Any) -> bool:
        bot = self.get_bot(user_id)
        if bot is None:
            return False
        stopped = bot.stop()
        if stopped:
            self._broadcast_status(bot, "stopped")
        return stopped

    def update_bot_config(self, user_id: Any, patch: Mapping[str, Any]) -> bool:
        bot = self.get_bot(user_id)
        if bot is None:
            return False
        bot.update_config(dict(patch))
        return True

    def get_bot_status(self, user_id: Any) -> Optional[Dict[str, Any]]:
        bot = self.get_bot(user_id)
        return bot.get_status() if bot else None

    def get_bot_logs(self, user_id: Any, limit: int = 50) -> List[Dict[str, Any]]:
        bot = self.get_bot(user_id)
        return bot.get_logs(limit) if bot else []

    def destroy_bot(self, user_id: Any) -> bool:
        key = str(user_id)
        bot = self._bots.pop(key, None)
        if bot is None:
            return False
        bot.destroy()
        self.risk_store.discard(key)
        logger.info("Bot instance destroyed", user_id=key)
        return True

    def stop_all_bots(self) -> int:
        logger.info("Stopping all bots", count=len(self._bots))
        return sum(1 for user_id in list(self._bots) if self.stop_bot(user_id))

    def destroy_all(self) -> None:
        logger.info("Destroying all bot instances", count=len(self._bots))
        for user_id, bot in self._bots.items():
            bot.destroy()
            self.risk_store.discard(user_id)
        self._bots.clear()

    async def wait_for_idle(self) -> None:
        for bot in list(self._bots.values()):
            await bot.wait_for_idle()

    # ------------------------------------------------------------------
    # Global stream & stats
    # ------------------------------------------------------------------

    def on(self, kind: Optional[EventKind], callback: EventCallback) -> None:
        self.bus.subscribe(kind, callback)

    def off(self, kind: Optional[EventKind], callback: EventCallback) -> bool:
        return self.bus.unsubscribe(kind, callback)

    def _broadcast_status(self, bot: BotInstance, status: str) -> None:
        data: Dict[str, Any] = {"status": status}
        if status == "started":
            data["config"] = bot.config.model_dump()
        self.bus.emit(Event(kind=EventKind.STATUS_CHANGE, data=data, user_id=bot.user_id))

    def get_global_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "total_bots": len(self._bots),
            "running_bots": 0,
            "stopped_bots": 0,
            "total_analyses": 0,
            "bots": [],
        }
        for user_id, bot in self._bots.items():
            if bot.is_running:
                stats["running_bots"] += 1
            else:
                stats["stopped_bots"] += 1
            stats["total_analyses"] += bot.state.analysis_count
            stats["bots"].append(
                {
                    "user_id": user_id[:8] + "..." if len(user_id) > 8 else user_id,
                    "is_running": bot.is_running,
                    "analysis_count": bot.state.analysis_count,
                    "symbols": list(bot.config.symbols),
                    "mode": bot.config.mode,
                    "active_positions": len(bot.state.active_positions),
                }
            )
        return stats
