#!/usr/bin/env python3
"""
PerpDesk - Main Entry Point

Single clean lifecycle: main.py owns init/run/shutdown. Wires the
Hyperliquid candle feed, the paper exchange and the reference analyzer
into a BotRegistry, starts one local tenant and runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal as sig
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

from perpdesk.core.config import load_settings
from perpdesk.core.events import Event, EventKind
from perpdesk.core.logger import get_logger, setup_logging
from perpdesk.core.registry import BotRegistry
from perpdesk.exchange.exceptions import AuthError, ConfigurationError, ExchangeError
from perpdesk.exchange.hyperliquid import HyperliquidClient
from perpdesk.exchange.paper import PaperExchange
from perpdesk.execution.risk_manager import RiskManagerStore
from perpdesk.signals.basic import BasicSignalAnalyzer
from perpdesk.utils.crypto import ENCRYPTION_KEY_ENV, CredentialCipher, WalletCredentials

WALLET_SECRET_ENV = "PERPDESK_WALLET_SECRET"


def install_asyncio_exception_handler(loop: asyncio.AbstractEventLoop, logger: Any) -> None:
    """Log unhandled asyncio exceptions ("Task exception was never retrieved", callbacks)."""
    def _handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        msg = context.get("message", "asyncio_exception")
        exc = context.get("exception")
        if isinstance(exc, BaseException):
            logger.error(
                "Asyncio exception",
                message=msg,
                error_type=type(exc).__name__,
                error=str(exc),
                traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            )
        else:
            safe_ctx = {k: repr(v) for k, v in context.items() if k not in ("handle", "future", "task")}
            logger.error("Asyncio exception", message=msg, context=safe_ctx)

    loop.set_exception_handler(_handler)


def preflight_checks(settings) -> bool:
    """Create working directories and refuse unsupported modes."""
    for directory in (settings.storage.dir, settings.app.log_dir):
        Path(directory).mkdir(parents=True, exist_ok=True)
    if settings.app.mode != "paper":
        print("[FATAL] Only paper order execution is available; set TRADING_MODE=paper.")
        return False
    return True


def _local_wallet(user_id: str, logger: Any) -> WalletCredentials:
    """Encrypt the local tenant's secret the same way stored wallets are."""
    if not os.getenv(ENCRYPTION_KEY_ENV):
        os.environ[ENCRYPTION_KEY_ENV] = CredentialCipher.generate_key()
        logger.warning("No encryption key configured, using an ephemeral key", env=ENCRYPTION_KEY_ENV)
    secret = os.getenv(WALLET_SECRET_ENV) or f"paper-{user_id}"
    cipher = CredentialCipher()
    return WalletCredentials(
        address=PaperExchange.address_for(secret),
        encrypted_secret=cipher.encrypt(secret),
        name=f"{user_id} (paper)",
    )


def _build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    trading: Dict[str, Any] = {}
    if args.symbols:
        trading["symbols"] = [s for s in args.symbols.split(",") if s.strip()]
    if args.timeframes:
        trading["timeframes"] = [t for t in args.timeframes.split(",") if t.strip()]
    if args.manual:
        trading["mode"] = "manual"
    return {"trading": trading} if trading else {}


async def _log_account_snapshot(client: HyperliquidClient, address: str, logger: Any) -> None:
    try:
        equity = await client.get_account_equity(address)
        positions = await client.get_open_positions(address)
    except ExchangeError as e:
        logger.warning("Hyperliquid account snapshot failed", address=address, error=str(e))
        return
    logger.info(
        "Hyperliquid account snapshot",
        address=address,
        equity=round(equity, 2),
        positions=[f"{p.symbol}:{p.direction.value}:{p.size}" for p in positions],
    )


async def run_bot(args: argparse.Namespace) -> int:
    """Initialize and run the registry with one local tenant."""
    settings = load_settings(args.config, overrides=_build_overrides(args))
    setup_logging(
        log_level=settings.app.log_level,
        log_dir=settings.app.log_dir,
        json_output=settings.app.json_logs,
    )
    logger = get_logger("main")
    if not preflight_checks(settings):
        return 2

    candles = HyperliquidClient(
        base_url=settings.exchange.api_url,
        timeout_seconds=settings.exchange.timeout,
    )
    await candles.initialize()
    exchange = PaperExchange(
        starting_equity=settings.exchange.paper_starting_equity,
        min_notional_usd=settings.trading.min_notional_usd,
    )
    registry = BotRegistry(
        candle_source=candles,
        exchange=exchange,
        analyzer=BasicSignalAnalyzer(),
        risk_store=RiskManagerStore(settings.storage.dir, settings.risk),
        defaults=settings.trading,
        log_buffer_size=settings.app.log_buffer_size,
    )

    def _on_trade(event: Event) -> None:
        logger.info("Trade event", user_id=event.user_id, **event.data)

    registry.on(EventKind.TRADE, _on_trade)

    shutdown_event = asyncio.Event()

    def _request_shutdown():
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    install_asyncio_exception_handler(loop, logger)
    for s in (sig.SIGINT, sig.SIGTERM):
        try:
            loop.add_signal_handler(s, _request_shutdown)
        except NotImplementedError:
            sig.signal(s, lambda *_: _request_shutdown())

    exit_code = 0
    try:
        if args.address:
            await _log_account_snapshot(candles, args.address, logger)

        wallet = _local_wallet(args.user, logger)
        try:
            if args.once:
                bot = registry.get_or_create_bot(args.user)
                await bot.initialize(wallet)
                await bot.run_analysis()
                logger.info("Single analysis finished", status=bot.get_status()["opportunities"])
                return exit_code
            started = await registry.start_bot(args.user, wallet)
        except AuthError as e:
            logger.error("Local tenant failed to authenticate", user_id=args.user, error=str(e))
            return 1
        logger.info(
            "PerpDesk STARTED",
            user_id=args.user,
            started=started,
            symbols=settings.trading.symbols,
            mode=settings.app.mode,
        )

        await shutdown_event.wait()
        logger.info("Shutdown signal received, cleaning up...")
    except Exception as e:
        logger.critical(
            "Fatal runtime error",
            error=repr(e),
            error_type=type(e).__name__,
            traceback=traceback.format_exc(),
        )
        exit_code = 1
    finally:
        registry.stop_all_bots()
        await registry.wait_for_idle()
        registry.destroy_all()
        await candles.close()
        await exchange.close()
        logger.info("PerpDesk stopped")
    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="perpdesk", description="Multi-user perpetual futures trading bot")
    parser.add_argument("--config", default="config/config.yaml", help="path to the YAML config")
    parser.add_argument("--user", default="local", help="user id of the local tenant")
    parser.add_argument("--symbols", help="comma-separated symbols, overrides the config")
    parser.add_argument("--timeframes", help="comma-separated timeframes, overrides the config")
    parser.add_argument("--manual", action="store_true", help="analyze only, never place orders")
    parser.add_argument("--once", action="store_true", help="run a single analysis tick and exit")
    parser.add_argument("--address", help="log a Hyperliquid account snapshot for this address")
    return parser.parse_args(argv)


def cli(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run_bot(args))
    except ConfigurationError as e:
        print(f"[FATAL] {e}")
        return 2
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(cli())
