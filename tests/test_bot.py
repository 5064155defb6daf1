"""
BotInstance tests.

Exercise the per-user loop against stub collaborators: authentication and
lifecycle, tick filtering, multi-timeframe confirmation, ranking under the
concurrency cap, anti-overtrading throttles, the risk gate, re-entrancy
and live configuration updates.
"""

from __future__ import annotations

import asyncio

import pytest

from perpdesk.core.bot import BotInstance
from perpdesk.core.events import EventKind
from perpdesk.exchange.base import ExchangePosition, SignalDirection
from perpdesk.exchange.exceptions import AuthError, ConfigurationError
from perpdesk.utils.crypto import CredentialCipher, WalletCredentials, encrypt_secret
from tests.conftest import (
    FakeClock,
    StubAnalyzer,
    StubCandleSource,
    StubExchange,
    make_bot,
    make_opportunity,
    make_signal,
    make_wallet,
)

LONG = SignalDirection.LONG
SHORT = SignalDirection.SHORT


class GatedSource(StubCandleSource):
    """Candle source that blocks until ``gate`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def fetch_candles(self, symbol, timeframe, limit):
        self.entered.set()
        await self.gate.wait()
        return await super().fetch_candles(symbol, timeframe, limit)


async def _eventually(predicate, attempts: int = 100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def _collect(bot, kind):
    events = []
    bot.on(kind, events.append)
    return events


# ---- Authentication & lifecycle ----

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_decrypts_and_authenticates(self):
        bot, _, _, exchange = make_bot()
        assert await bot.initialize(make_wallet(secret="s3cret"))
        assert exchange.secrets == ["s3cret"]
        assert bot.is_authenticated
        assert bot.address == "0xabc0000000000000000000000000000000000001"

    @pytest.mark.asyncio
    async def test_trading_address_takes_precedence(self):
        bot, _, _, _ = make_bot()
        await bot.initialize(make_wallet(trading_address="0xvault"))
        assert bot.address == "0xvault"

    @pytest.mark.asyncio
    async def test_missing_secret_rejected(self):
        bot, _, _, exchange = make_bot()
        with pytest.raises(AuthError):
            await bot.initialize(WalletCredentials(address="0xuser"))
        with pytest.raises(AuthError):
            await bot.initialize(None)
        assert exchange.secrets == []
        assert not bot.is_authenticated

    @pytest.mark.asyncio
    async def test_undecryptable_secret_rejected(self):
        bot, _, _, exchange = make_bot()
        other_key = CredentialCipher.generate_key()
        wallet = WalletCredentials(address="0xuser", encrypted_secret=encrypt_secret("x", other_key))
        with pytest.raises(AuthError):
            await bot.initialize(wallet)
        assert exchange.secrets == []

    @pytest.mark.asyncio
    async def test_exchange_rejection_propagates(self):
        exchange = StubExchange()
        exchange.reject_auth = True
        bot, _, _, _ = make_bot(exchange=exchange)
        with pytest.raises(AuthError):
            await bot.initialize(make_wallet())

    @pytest.mark.asyncio
    async def test_start_requires_authentication(self):
        bot, _, _, _ = make_bot()
        with pytest.raises(AuthError):
            await bot.start()
        assert not bot.is_running

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self):
        bot, _, _, _ = make_bot(config={"mode": "manual"})
        await bot.initialize(make_wallet())
        assert await bot.start() is True
        assert await bot.start() is False
        assert bot.stop() is True
        assert bot.stop() is False
        await bot.wait_for_idle()
        assert not bot.is_running

    @pytest.mark.asyncio
    async def test_start_applies_timeframe_preset(self):
        bot, _, _, _ = make_bot(config={"mode": "manual", "timeframes": ["15m"]})
        await bot.initialize(make_wallet())
        await bot.start()
        bot.stop()
        await bot.wait_for_idle()
        assert bot.config.min_score == 6
        assert bot.config.analysis_interval_seconds == 180

    @pytest.mark.asyncio
    async def test_mtf_start_keeps_thresholds(self):
        bot, _, _, _ = make_bot(config={"mode": "manual", "multi_timeframe_mode": True, "min_score": 4})
        await bot.initialize(make_wallet())
        await bot.start()
        bot.stop()
        await bot.wait_for_idle()
        assert bot.config.min_score == 4

    @pytest.mark.asyncio
    async def test_first_tick_runs_immediately(self):
        bot, _, _, _ = make_bot(config={"mode": "manual"})
        await bot.initialize(make_wallet())
        await bot.start()
        assert await _eventually(lambda: bot.state.analysis_count >= 1)
        bot.stop()
        await bot.wait_for_idle()
        assert bot.state.last_analysis_at is not None

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_tick_finish(self):
        source = GatedSource()
        bot, _, _, _ = make_bot(source=source, config={"mode": "manual"}, signals={"BTC": make_signal()})
        await bot.initialize(make_wallet())
        await bot.start()
        await source.entered.wait()
        bot.stop()
        source.gate.set()
        await bot.wait_for_idle()
        assert bot.state.analysis_count == 1
        assert bot.state.last_analysis_at is not None

    @pytest.mark.asyncio
    async def test_destroyed_bot_cannot_restart(self):
        bot, _, _, _ = make_bot(config={"mode": "manual"})
        await bot.initialize(make_wallet())
        bot.destroy()
        with pytest.raises(RuntimeError):
            await bot.start()


# ---- Analysis tick ----

class TestAnalysisTick:
    @pytest.mark.asyncio
    async def test_score_and_rsi_filters(self):
        signals = {
            "BTC": make_signal(score=8, rsi=55),
            "ETH": make_signal(score=2, rsi=55),
            "SOL": make_signal(score=8, rsi=75),
        }
        bot, _, _, exchange = make_bot(config={"mode": "manual"}, signals=signals)
        assert await bot.run_analysis() is True
        assert [o.symbol for o in bot.state.opportunities] == ["BTC"]
        assert exchange.orders == []

    @pytest.mark.asyncio
    async def test_oversold_short_filtered(self):
        signals = {"BTC": make_signal(direction=SHORT, rsi=25), "ETH": make_signal(direction=SHORT, rsi=45)}
        bot, _, _, _ = make_bot(config={"mode": "manual"}, signals=signals)
        await bot.run_analysis()
        assert [o.symbol for o in bot.state.opportunities] == ["ETH"]

    @pytest.mark.asyncio
    async def test_rsi_filter_can_be_disabled(self):
        signals = {"BTC": make_signal(rsi=90)}
        bot, _, _, _ = make_bot(config={"mode": "manual", "use_rsi_filter": False}, signals=signals)
        await bot.run_analysis()
        assert [o.symbol for o in bot.state.opportunities] == ["BTC"]

    @pytest.mark.asyncio
    async def test_insufficient_candles_skipped_silently(self):
        source = StubCandleSource(counts={"BTC": 10})
        bot, _, analyzer, _ = make_bot(source=source, config={"mode": "manual"}, signals={"BTC": make_signal()})
        await bot.run_analysis()
        assert "BTC" not in [call[0] for call in analyzer.calls]
        assert bot.state.opportunities == []
        assert not [e for e in bot.get_logs(200) if e["level"] in ("warning", "error")]

    @pytest.mark.asyncio
    async def test_analyzer_receives_rsi_params(self):
        bot, _, analyzer, _ = make_bot(config={"mode": "manual", "rsi_overbought": 80, "rsi_oversold": 20})
        await bot.run_analysis()
        params = analyzer.calls[0][2]
        assert params["rsi_overbought"] == 80
        assert params["rsi_oversold"] == 20

    @pytest.mark.asyncio
    async def test_win_probability_and_confluence_filters(self):
        signals = {
            "BTC": make_signal(win_probability=0.6),
            "ETH": make_signal(win_probability=0.8, confluence=2),
            "SOL": make_signal(win_probability=None, confluence=None),
        }
        bot, _, _, _ = make_bot(
            config={"mode": "manual", "min_win_probability": 0.7, "min_confluence": 3}, signals=signals
        )
        await bot.run_analysis()
        assert [o.symbol for o in bot.state.opportunities] == ["SOL"]

    @pytest.mark.asyncio
    async def test_pair_failures_are_isolated(self):
        source = StubCandleSource(unavailable={"BTC"}, broken={"ETH"})
        bot, _, _, _ = make_bot(source=source, config={"mode": "manual"}, signals={"SOL": make_signal()})
        assert await bot.run_analysis() is True
        assert [o.symbol for o in bot.state.opportunities] == ["SOL"]
        levels = {e["level"] for e in bot.get_logs(200)}
        assert {"warning", "error"} <= levels

    @pytest.mark.asyncio
    async def test_analyzer_failure_is_isolated(self):
        bot, _, analyzer, _ = make_bot(config={"mode": "manual"}, signals={"ETH": make_signal()})
        analyzer.broken = {"BTC"}
        await bot.run_analysis()
        assert [o.symbol for o in bot.state.opportunities] == ["ETH"]

    @pytest.mark.asyncio
    async def test_events_emitted(self):
        bot, _, _, _ = make_bot(config={"mode": "manual"}, signals={"BTC": make_signal(), "ETH": make_signal()})
        signal_events = _collect(bot, EventKind.SIGNAL)
        analysis_events = _collect(bot, EventKind.ANALYSIS)
        await bot.run_analysis()
        assert [e.data["symbol"] for e in signal_events] == ["BTC", "ETH"]
        assert len(analysis_events) == 1
        assert analysis_events[0].data["count"] == 1
        assert analysis_events[0].data["opportunities"] == 2
        assert bot.state.last_signal.symbol == "ETH"

    @pytest.mark.asyncio
    async def test_multi_timeframe_confirmation(self):
        signals = {
            ("BTC", "5m"): make_signal(score=8),
            ("BTC", "15m"): make_signal(score=2),
            ("ETH", "5m"): make_signal(score=8),
            ("ETH", "15m"): make_signal(direction=SHORT, score=2, rsi=50),
        }
        bot, source, _, _ = make_bot(
            config={
                "mode": "manual",
                "multi_timeframe_mode": True,
                "mtf_timeframes": ["5m", "15m", "1h"],
                "mtf_min_confirmation": 2,
            },
            signals=signals,
        )
        await bot.run_analysis()
        assert {tf for _, tf, _ in source.requests} == {"5m", "15m", "1h"}
        assert [(o.symbol, o.timeframe) for o in bot.state.opportunities] == [("BTC", "5m")]

    @pytest.mark.asyncio
    async def test_reentrant_tick_is_skipped(self):
        source = GatedSource()
        bot, _, _, _ = make_bot(source=source, config={"mode": "manual"})
        first = asyncio.create_task(bot.run_analysis())
        await source.entered.wait()
        assert await bot.run_analysis() is False
        source.gate.set()
        assert await first is True
        assert bot.state.analysis_count == 1

    @pytest.mark.asyncio
    async def test_scheduler_does_not_spawn_over_running_tick(self):
        bot, _, _, _ = make_bot(config={"mode": "manual"})
        bot._tick_in_progress = True
        bot._spawn_tick()
        assert not bot._tick_tasks

    @pytest.mark.asyncio
    async def test_closed_positions_released_on_tick(self):
        bot, _, _, exchange = make_bot(config={"mode": "manual"})
        await bot.initialize(make_wallet())
        await bot.process_opportunities([make_opportunity("BTC")])
        assert "BTC" in bot.state.active_positions
        exchange.positions.clear()
        await bot.run_analysis()
        assert "BTC" not in bot.state.active_positions

    @pytest.mark.asyncio
    async def test_manual_mode_never_orders(self):
        bot, _, _, exchange = make_bot(config={"mode": "manual"}, signals={"BTC": make_signal()})
        await bot.run_analysis()
        assert len(bot.state.opportunities) == 1
        assert exchange.orders == []

    @pytest.mark.asyncio
    async def test_auto_mode_orders_from_tick(self):
        bot, _, _, exchange = make_bot(signals={"BTC": make_signal()})
        await bot.run_analysis()
        assert [o.symbol for o in exchange.orders] == ["BTC"]


# ---- Processing ----

class TestProcessing:
    @pytest.mark.asyncio
    async def test_ranking_respects_concurrency_cap(self):
        bot, _, _, exchange = make_bot(config={"max_concurrent_trades": 1})
        opps = [make_opportunity("BTC", 5), make_opportunity("ETH", 8), make_opportunity("SOL", 3)]
        assert await bot.process_opportunities(opps) == 1
        assert [o.symbol for o in exchange.orders] == ["ETH"]

    @pytest.mark.asyncio
    async def test_orders_placed_best_score_first(self):
        bot, _, _, exchange = make_bot()
        opps = [make_opportunity("BTC", 5), make_opportunity("ETH", 8), make_opportunity("SOL", 3)]
        assert await bot.process_opportunities(opps) == 3
        assert [o.symbol for o in exchange.orders] == ["ETH", "BTC", "SOL"]

    @pytest.mark.asyncio
    async def test_execute_trade_sizes_from_equity(self):
        bot, _, _, exchange = make_bot()
        trades = _collect(bot, EventKind.TRADE)
        assert await bot.execute_trade(make_opportunity("BTC", price=100.0))
        order = exchange.orders[0]
        # 2% risk at a 1% stop is $20k notional, capped at 50% of equity
        assert order.size == pytest.approx(50)
        assert order.leverage == 10
        assert order.stop_loss == pytest.approx(99)
        assert order.take_profit == pytest.approx(102)
        assert trades[0].data["event"] == "opened"
        assert trades[0].data["margin_required"] == pytest.approx(500)
        assert bot.state.active_positions["BTC"].order_id == "stub-1"

    @pytest.mark.asyncio
    async def test_existing_positions_skipped(self):
        exchange = StubExchange()
        exchange.positions["ETH"] = ExchangePosition(symbol="ETH", direction=LONG, size=1, entry_price=100)
        bot, _, _, _ = make_bot(exchange=exchange)
        opps = [make_opportunity("ETH", 9), make_opportunity("BTC", 5)]
        assert await bot.process_opportunities(opps) == 1
        assert [o.symbol for o in exchange.orders] == ["BTC"]

    @pytest.mark.asyncio
    async def test_position_query_failure_skips_candidates(self):
        exchange = StubExchange()
        exchange.positions_error = True
        bot, _, _, _ = make_bot(exchange=exchange)
        assert await bot.process_opportunities([make_opportunity("BTC"), make_opportunity("ETH")]) == 0
        assert exchange.orders == []

    @pytest.mark.asyncio
    async def test_rejected_order_does_not_stop_processing(self):
        exchange = StubExchange()
        exchange.rejected_symbols = {"ETH"}
        bot, _, _, _ = make_bot(exchange=exchange)
        opps = [make_opportunity("ETH", 8), make_opportunity("BTC", 5)]
        assert await bot.process_opportunities(opps) == 1
        assert "ETH" not in bot.state.active_positions
        assert "BTC" in bot.state.active_positions

    @pytest.mark.asyncio
    async def test_equity_failure_aborts_trade(self):
        exchange = StubExchange()
        exchange.equity_error = True
        bot, _, _, _ = make_bot(exchange=exchange)
        assert await bot.execute_trade(make_opportunity()) is False
        assert exchange.orders == []

    @pytest.mark.asyncio
    async def test_halted_risk_manager_blocks_and_stops_processing(self):
        bot, _, _, exchange = make_bot()
        bot.risk_manager.stop_bot("operator halt")
        opps = [make_opportunity("BTC", 8), make_opportunity("ETH", 5)]
        assert await bot.process_opportunities(opps) == 0
        assert exchange.orders == []
        assert any("Risk gate blocked" in e["message"] for e in bot.get_logs(200))


# ---- Anti-overtrading ----

class TestAntiOvertrading:
    @pytest.mark.asyncio
    async def test_symbol_cooldown(self):
        clock = FakeClock()
        bot, _, _, exchange = make_bot(clock=clock, config={"anti_overtrading": {"symbol_cooldown_seconds": 600}})
        assert await bot.process_opportunities([make_opportunity("BTC")]) == 1
        await bot.record_trade_result("BTC", 5.0)
        exchange.positions.clear()

        clock.advance(10)
        for _ in range(3):
            assert await bot.process_opportunities([make_opportunity("BTC")]) == 0
        assert len(exchange.orders) == 1

        clock.advance(600)
        assert await bot.process_opportunities([make_opportunity("BTC")]) == 1

    @pytest.mark.asyncio
    async def test_symbol_cooldown_does_not_block_others(self):
        clock = FakeClock()
        bot, _, _, exchange = make_bot(clock=clock, config={"anti_overtrading": {"symbol_cooldown_seconds": 600}})
        await bot.process_opportunities([make_opportunity("BTC")])
        await bot.record_trade_result("BTC", 5.0)
        exchange.positions.clear()
        placed = await bot.process_opportunities([make_opportunity("BTC", 9), make_opportunity("ETH", 5)])
        assert placed == 1
        assert [o.symbol for o in exchange.orders] == ["BTC", "ETH"]

    @pytest.mark.asyncio
    async def test_global_cooldown_blocks_all(self):
        clock = FakeClock()
        bot, _, _, exchange = make_bot(clock=clock, config={"anti_overtrading": {"global_cooldown_seconds": 120}})
        placed = await bot.process_opportunities([make_opportunity("BTC", 8), make_opportunity("ETH", 5)])
        assert placed == 1
        clock.advance(121)
        assert await bot.process_opportunities([make_opportunity("ETH", 5)]) == 1

    @pytest.mark.asyncio
    async def test_hourly_cap(self):
        bot, _, _, _ = make_bot(config={"anti_overtrading": {"max_trades_per_hour": 2}})
        opps = [make_opportunity("BTC", 8), make_opportunity("ETH", 7), make_opportunity("SOL", 6)]
        assert await bot.process_opportunities(opps) == 2

    @pytest.mark.asyncio
    async def test_consecutive_losses_pause_entries(self):
        clock = FakeClock()
        bot, _, _, _ = make_bot(
            clock=clock,
            config={"anti_overtrading": {"max_consecutive_losses": 2, "pause_after_losses_seconds": 1800}},
        )
        await bot.record_trade_result("BTC", -5.0)
        assert bot.state.paused_until is None
        await bot.record_trade_result("ETH", -5.0)
        assert bot.state.paused_until == pytest.approx(clock.now + 1800)

        assert await bot.process_opportunities([make_opportunity("SOL")]) == 0
        clock.advance(1801)
        assert await bot.process_opportunities([make_opportunity("SOL")]) == 1
        assert bot.state.paused_until is None

    @pytest.mark.asyncio
    async def test_trade_result_feeds_risk_manager(self):
        bot, _, _, _ = make_bot()
        trades = _collect(bot, EventKind.TRADE)
        await bot.process_opportunities([make_opportunity("BTC")])
        await bot.record_trade_result("BTC", -12.5)
        assert "BTC" not in bot.state.active_positions
        assert bot.risk_manager.state.trades_count == 1
        assert bot.risk_manager.state.consecutive_losses == 1
        assert trades[-1].data == {"event": "closed", "symbol": "BTC", "pnl": -12.5, "is_win": False}


# ---- Configuration ----

class TestUpdateConfig:
    def test_risk_keys_routed_to_risk_manager(self):
        bot, _, _, _ = make_bot()
        bot.update_config({"risk_per_trade": 1.5, "daily_loss_limit": 3})
        assert bot.config.risk_per_trade == 1.5
        assert bot.risk_manager.config.risk_per_trade == 1.5
        assert bot.risk_manager.config.daily_loss_limit == 3

    def test_tpsl_defaults_synced(self):
        bot, _, _, _ = make_bot()
        bot.update_config({"default_tp": 3.0, "default_sl": 1.5})
        assert bot.risk_manager.config.default_tp_percent == 3.0
        assert bot.risk_manager.config.default_sl_percent == 1.5

    def test_invalid_patch_commits_nothing(self):
        bot, _, _, _ = make_bot()
        with pytest.raises(ConfigurationError):
            bot.update_config({"risk_per_trade": 1.5, "max_drawdown": 500})
        assert bot.config.risk_per_trade == 2.0
        assert bot.risk_manager.config.risk_per_trade == 1.0

    def test_risk_profile_applied_at_construction(self):
        bot, source, analyzer, exchange = make_bot()
        profiled = BotInstance(
            user_id="user-2",
            config=bot.config,
            candle_source=source,
            exchange=exchange,
            analyzer=analyzer,
            risk_profile={"min_risk_reward_ratio": 2.5, "max_trades_per_day": 4},
        )
        assert profiled.risk_manager.config.min_risk_reward_ratio == 2.5
        assert profiled.risk_manager.config.max_trades_per_day == 4

    def test_unknown_key_rejected(self):
        bot, _, _, _ = make_bot()
        with pytest.raises(ConfigurationError):
            bot.update_config({"leverag": 5})

    def test_partial_nested_patch_keeps_siblings(self):
        bot, _, _, _ = make_bot()
        bot.update_config({"anti_overtrading": {"symbol_cooldown_seconds": 30}})
        assert bot.config.anti_overtrading.symbol_cooldown_seconds == 30
        assert bot.config.anti_overtrading.max_trades_per_hour == 0

    def test_timeframe_change_applies_preset(self):
        bot, _, _, _ = make_bot()
        bot.update_config({"timeframes": ["4h"]})
        assert bot.config.min_score == 6
        assert bot.config.analysis_interval_seconds == 600

    def test_preset_leaves_confluence_and_rsi_alone(self):
        bot, _, _, _ = make_bot(config={"min_confluence": 1, "rsi_overbought": 80})
        bot.update_config({"timeframes": ["4h"]})
        assert bot.config.min_confluence == 1
        assert bot.config.rsi_overbought == 80


# ---- Logs & status ----

def test_log_buffer_is_bounded():
    source = StubCandleSource()
    bot = BotInstance(
        user_id="u",
        config=make_bot()[0].config,
        candle_source=source,
        exchange=StubExchange(),
        analyzer=StubAnalyzer(source),
        log_buffer_size=3,
    )
    for i in range(5):
        bot.log(f"message {i}")
    assert [e["message"] for e in bot.get_logs()] == ["message 2", "message 3", "message 4"]
    assert [e["message"] for e in bot.get_logs(1)] == ["message 4"]
    assert bot.get_logs(0) == []


@pytest.mark.asyncio
async def test_status_snapshot():
    bot, _, _, _ = make_bot(config={"mode": "manual"}, signals={"BTC": make_signal()})
    await bot.initialize(make_wallet())
    await bot.run_analysis()
    status = bot.get_status()
    assert status["user_id"] == "user-1"
    assert status["is_running"] is False
    assert status["analysis_count"] == 1
    assert status["last_signal"]["symbol"] == "BTC"
    assert status["wallet"]["address"] == "0xuser"
    assert "trades_count" in status["risk"]
