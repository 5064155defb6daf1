"""Shared test fixtures and stubs for PerpDesk tests.

Provides reusable stub collaborators (candle source, analyzer, exchange),
a controllable clock, and factory functions for signals, opportunities,
wallets and bot instances.
"""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import pytest

from perpdesk.core.bot import BotInstance
from perpdesk.core.config import RiskConfig, TradingConfig, merge_config
from perpdesk.core.state import Opportunity
from perpdesk.exchange.base import (
    Candle,
    CandleSource,
    ExchangeClient,
    ExchangePosition,
    OrderRequest,
    OrderResult,
    SignalAnalyzer,
    SignalDirection,
    SignalResult,
)
from perpdesk.exchange.exceptions import AuthError, DataUnavailable, ExecutionError, TransientExchangeError
from perpdesk.execution.risk_manager import RiskManager
from perpdesk.utils.crypto import ENCRYPTION_KEY_ENV, WalletCredentials, decrypt_credential, encrypt_secret

# Fixed so helpers imported via tests.conftest and the pytest-loaded conftest agree
TEST_KEY = base64.urlsafe_b64encode(b"perpdesk-test-key-0123456789abcd").decode()


# ---------------------------------------------------------------------------
# Stub classes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_candles(count: int = 100, price: float = 100.0, step: float = 0.0) -> List[Candle]:
    """Flat (or linearly trending) candles ending at ``price``."""
    start = price - step * (count - 1)
    candles = []
    for i in range(count):
        close = start + step * i
        candles.append(
            Candle(time=60.0 * i, open=close, high=close * 1.001, low=close * 0.999, close=close, volume=1.0)
        )
    return candles


class StubCandleSource(CandleSource):
    """Candle source stub.

    Configurable via attributes:
        counts: symbol -> number of candles returned (default ``count``)
        prices: symbol -> last close
        unavailable: symbols raising DataUnavailable
        broken: symbols raising RuntimeError
    """

    def __init__(
        self,
        count: int = 100,
        prices: Optional[Dict[str, float]] = None,
        counts: Optional[Dict[str, int]] = None,
        unavailable: Optional[Set[str]] = None,
        broken: Optional[Set[str]] = None,
    ) -> None:
        self.count = count
        self.prices = prices or {}
        self.counts = counts or {}
        self.unavailable = unavailable or set()
        self.broken = broken or set()
        self.requests: List[Tuple[str, str, int]] = []
        self.last_request: Optional[Tuple[str, str]] = None

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        self.requests.append((symbol, timeframe, limit))
        self.last_request = (symbol, timeframe)
        if symbol in self.unavailable:
            raise DataUnavailable(f"no candles for {symbol}")
        if symbol in self.broken:
            raise RuntimeError(f"feed exploded for {symbol}")
        return make_candles(self.counts.get(symbol, self.count), self.prices.get(symbol, 100.0))


class StubAnalyzer(SignalAnalyzer):
    """Returns scripted signals for the pair the candle source last served.

    ``signals`` is keyed by symbol or by (symbol, timeframe); anything
    unscripted is NEUTRAL.
    """

    def __init__(
        self,
        source: StubCandleSource,
        signals: Optional[Dict[Union[str, Tuple[str, str]], SignalResult]] = None,
        broken: Optional[Set[str]] = None,
    ) -> None:
        self.source = source
        self.signals = signals or {}
        self.broken = broken or set()
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def analyze(self, candles, params, timeframe):
        symbol, _ = self.source.last_request
        self.calls.append((symbol, timeframe, dict(params)))
        if symbol in self.broken:
            raise ValueError(f"analyzer failed for {symbol}")
        signal = self.signals.get((symbol, timeframe)) or self.signals.get(symbol)
        return signal or SignalResult(direction=SignalDirection.NEUTRAL, score=0.0)


class StubExchange(ExchangeClient):
    """Account-side exchange stub.

    Configurable via attributes:
        equity: value returned by get_account_equity()
        positions: symbol -> ExchangePosition returned as open
        rejected_symbols: orders for these symbols raise ExecutionError
        positions_error / equity_error: raise TransientExchangeError
        reject_auth: authenticate() raises AuthError
    """

    def __init__(self, equity: float = 10_000.0) -> None:
        self.equity = equity
        self.positions: Dict[str, ExchangePosition] = {}
        self.orders: List[OrderRequest] = []
        self.rejected_symbols: Set[str] = set()
        self.positions_error = False
        self.equity_error = False
        self.reject_auth = False
        self.secrets: List[str] = []

    async def authenticate(self, secret: str) -> str:
        self.secrets.append(secret)
        if self.reject_auth:
            raise AuthError("rejected")
        return "0xabc0000000000000000000000000000000000001"

    async def get_account_equity(self, address: str) -> float:
        if self.equity_error:
            raise TransientExchangeError("equity down")
        return self.equity

    async def get_open_positions(self, address: str) -> List[ExchangePosition]:
        if self.positions_error:
            raise TransientExchangeError("positions down")
        return list(self.positions.values())

    async def submit_order(self, address: str, order: OrderRequest) -> OrderResult:
        if order.symbol in self.rejected_symbols:
            raise ExecutionError(f"order rejected for {order.symbol}")
        self.orders.append(order)
        self.positions[order.symbol] = ExchangePosition(
            symbol=order.symbol,
            direction=order.direction,
            size=order.size,
            entry_price=order.price,
            leverage=order.leverage,
        )
        return OrderResult(
            order_id=f"stub-{len(self.orders)}",
            symbol=order.symbol,
            direction=order.direction,
            size=order.size,
            filled_price=order.price,
        )


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_signal(
    direction: SignalDirection = SignalDirection.LONG,
    score: float = 8.0,
    rsi: Optional[float] = 55.0,
    atr: Optional[float] = None,
    win_probability: Optional[float] = None,
    confluence: Optional[int] = None,
    indicators: Optional[Dict[str, Any]] = None,
) -> SignalResult:
    return SignalResult(
        direction=direction,
        score=score,
        rsi=rsi,
        atr=atr,
        win_probability=win_probability,
        confluence=confluence,
        indicators=indicators or {},
    )


def make_opportunity(
    symbol: str = "BTC",
    score: float = 8.0,
    price: float = 100.0,
    direction: SignalDirection = SignalDirection.LONG,
    timeframe: str = "1h",
    signal: Optional[SignalResult] = None,
) -> Opportunity:
    return Opportunity(
        symbol=symbol,
        timeframe=timeframe,
        direction=direction,
        score=score,
        price=price,
        signal=signal or make_signal(direction=direction, score=score),
    )


def make_wallet(secret: str = "test-secret", address: str = "0xuser", trading_address: Optional[str] = None) -> WalletCredentials:
    return WalletCredentials(
        address=address,
        encrypted_secret=encrypt_secret(secret, TEST_KEY),
        trading_address=trading_address,
        name="test wallet",
    )


# Anti-overtrading disabled so tests opt into the checks they exercise
NO_THROTTLE = {
    "symbol_cooldown_seconds": 0,
    "global_cooldown_seconds": 0,
    "max_trades_per_hour": 0,
    "max_trades_per_day": 0,
    "max_consecutive_losses": 0,
    "pause_after_losses_seconds": 0,
}


def make_bot(
    config: Optional[Dict[str, Any]] = None,
    signals: Optional[Dict[Any, SignalResult]] = None,
    source: Optional[StubCandleSource] = None,
    exchange: Optional[StubExchange] = None,
    risk_manager: Optional[RiskManager] = None,
    clock: Optional[FakeClock] = None,
    user_id: str = "user-1",
) -> Tuple[BotInstance, StubCandleSource, StubAnalyzer, StubExchange]:
    """Build a BotInstance wired to stubs.

    Returns (bot, source, analyzer, exchange) so tests can script and inspect them.
    """
    base = {
        "symbols": ["BTC", "ETH", "SOL"],
        "min_win_probability": 0,
        "anti_overtrading": dict(NO_THROTTLE),
    }
    cfg = merge_config(TradingConfig(), base, config)
    _source = source or StubCandleSource()
    _analyzer = StubAnalyzer(_source, signals)
    _exchange = exchange or StubExchange()
    _rm = risk_manager or RiskManager(config=RiskConfig(max_trades_per_day=0), user_id=user_id)
    bot = BotInstance(
        user_id=user_id,
        config=cfg,
        candle_source=_source,
        exchange=_exchange,
        analyzer=_analyzer,
        risk_manager=_rm,
        clock=clock or FakeClock(),
        decrypt=lambda token: decrypt_credential(token, TEST_KEY),
    )
    return bot, _source, _analyzer, _exchange


# ---------------------------------------------------------------------------
# Auto-use fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    """Every test runs with a known Fernet key and no inherited config env."""
    monkeypatch.setenv(ENCRYPTION_KEY_ENV, TEST_KEY)
    for var in ("TRADING_MODE", "LOG_LEVEL", "DEFAULT_SYMBOLS", "BOT_MODE", "PERPDESK_STORAGE_DIR"):
        monkeypatch.delenv(var, raising=False)
    return TEST_KEY
