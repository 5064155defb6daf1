"""
Paper Exchange - In-memory ExchangeClient for simulated trading.

Keeps one simulated account per address: equity, open positions and an
order log. Fills are immediate at the requested price. Closing a position
realises PnL into equity and returns it so callers can record the outcome.
"""

from __future__ import annotations

import hashlib
import uuid
from typing import Dict, List, Optional, Set

from perpdesk.core.logger import get_logger
from perpdesk.exchange.base import (
    ExchangeClient,
    ExchangePosition,
    OrderRequest,
    OrderResult,
    SignalDirection,
)
from perpdesk.exchange.exceptions import (
    AuthError,
    InsufficientFundsError,
    InvalidOrderError,
)

logger = get_logger("paper_exchange")


class PaperExchange(ExchangeClient):
    def __init__(
        self,
        starting_equity: float = 10_000.0,
        min_notional_usd: float = 10.0,
        allowed_secrets: Optional[Set[str]] = None,
    ):
        self.starting_equity = float(starting_equity)
        self.min_notional_usd = float(min_notional_usd)
        self._allowed_secrets = set(allowed_secrets) if allowed_secrets else None
        self._equity: Dict[str, float] = {}
        self._positions: Dict[str, Dict[str, ExchangePosition]] = {}
        self.orders: List[OrderResult] = []

    @staticmethod
    def address_for(secret: str) -> str:
        return "0x" + hashlib.sha256(secret.encode()).hexdigest()[:40]

    async def authenticate(self, secret: str) -> str:
        if not secret:
            raise AuthError("Empty wallet secret")
        if self._allowed_secrets is not None and secret not in self._allowed_secrets:
            raise AuthError("Wallet secret rejected")
        address = self.address_for(secret)
        self._equity.setdefault(address, self.starting_equity)
        self._positions.setdefault(address, {})
        logger.info("Paper account authenticated", address=address)
        return address

    def set_equity(self, address: str, equity: float) -> None:
        self._equity[address] = float(equity)

    async def get_account_equity(self, address: str) -> float:
        return self._equity.get(address, self.starting_equity)

    async def get_open_positions(self, address: str) -> List[ExchangePosition]:
        return list(self._positions.get(address, {}).values())

    def _margin_in_use(self, address: str) -> float:
        return sum(p.margin_used for p in self._positions.get(address, {}).values())

    async def submit_order(self, address: str, order: OrderRequest) -> OrderResult:
        if order.size <= 0 or order.price <= 0:
            raise InvalidOrderError(f"Invalid size/price for {order.symbol}")
        if order.direction == SignalDirection.NEUTRAL:
            raise InvalidOrderError("Order direction must be long or short")
        notional = order.size * order.price
        if notional < self.min_notional_usd - 1e-9:
            raise InvalidOrderError(
                f"Notional ${notional:.2f} below minimum ${self.min_notional_usd:.2f}"
            )
        positions = self._positions.setdefault(address, {})
        if order.symbol in positions:
            raise InvalidOrderError(f"Position already open for {order.symbol}")

        leverage = max(order.leverage, 1.0)
        margin = notional / leverage
        free = self._equity.get(address, self.starting_equity) - self._margin_in_use(address)
        if margin > free:
            raise InsufficientFundsError(
                f"Margin ${margin:.2f} exceeds free equity ${free:.2f}"
            )

        positions[order.symbol] = ExchangePosition(
            symbol=order.symbol,
            direction=order.direction,
            size=order.size,
            entry_price=order.price,
            leverage=leverage,
            margin_used=margin,
        )
        result = OrderResult(
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            symbol=order.symbol,
            direction=order.direction,
            size=order.size,
            filled_price=order.price,
        )
        self.orders.append(result)
        logger.info(
            "Paper order filled",
            symbol=order.symbol,
            direction=order.direction.value,
            size=order.size,
            price=order.price,
            take_profit=order.take_profit,
            stop_loss=order.stop_loss,
        )
        return result

    async def close_position(self, address: str, symbol: str, exit_price: float) -> float:
        """Close ``symbol`` at ``exit_price`` and return realised PnL."""
        positions = self._positions.get(address, {})
        pos = positions.pop(symbol, None)
        if pos is None:
            raise InvalidOrderError(f"No open position for {symbol}")
        sign = 1.0 if pos.direction == SignalDirection.LONG else -1.0
        pnl = (exit_price - pos.entry_price) * pos.size * sign
        self._equity[address] = self._equity.get(address, self.starting_equity) + pnl
        logger.info("Paper position closed", symbol=symbol, exit_price=exit_price, pnl=round(pnl, 4))
        return pnl
