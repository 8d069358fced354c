"""
Paper broker: in-memory simulated broker for paper mode.

Fills MARKET and BRACKET entries at the last price (optionally after a
delay), rests LIMIT and STOP orders until the price crosses, and keeps
bracket legs as a one-cancels-other pair that also cancels when the
position goes flat. Balance moves only by realised PnL, as on an intraday
margin account.

Fills are published as TradeExecuted and every price update as a MarketTick
on the attached EventBus.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable

from trade_core.contracts import (
    Direction,
    MarketTick,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Trade,
)
from trade_core.events import EventBus, TradeExecuted

logger = logging.getLogger(__name__)


class PaperBroker:
    """
    Parameters
    ----------
    initial_cash:
        Starting account balance.
    fill_delay:
        Seconds before a MARKET/BRACKET entry fills. 0 fills synchronously.
    prices:
        Optional initial last-traded prices by symbol.
    """

    supports_bracket_orders = True

    def __init__(
        self,
        initial_cash: float = 100_000.0,
        *,
        fill_delay: float = 0.0,
        prices: dict[str, float] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cash = initial_cash
        self._starting_cash = initial_cash
        self._fill_delay = fill_delay
        self._prices: dict[str, float] = dict(prices or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._orders: dict[str, Order] = {}
        self._working: dict[str, Order] = {}
        self._siblings: dict[str, str] = {}
        self._legs: set[str] = set()
        self._positions: dict[str, Position] = {}
        self._order_ids = itertools.count(1)
        self._trade_ids = itertools.count(1)
        self._timers: set[asyncio.TimerHandle] = set()
        self._bus: EventBus | None = None
        self._connected = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self, bus: EventBus) -> None:
        self._bus = bus

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        self._connected = True
        logger.info("Paper broker connected (balance %.2f)", self._cash)
        return True

    async def disconnect(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._connected = False
        logger.info(
            "Paper broker disconnected (balance %.2f, pnl %.2f)",
            self._cash, self._cash - self._starting_cash,
        )

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def update_price(self, symbol: str, price: float, volume: int = 0) -> None:
        """Feed a new last-traded price; triggers resting orders that cross."""
        self._prices[symbol] = price
        if self._bus is not None:
            self._bus.publish(MarketTick(symbol=symbol, ltp=price, timestamp=self._clock(), volume=volume))
        self._evaluate(symbol, price)

    async def get_ltp(self, symbol: str) -> float | None:
        return self._prices.get(symbol)

    async def get_account_balance(self) -> float:
        return self._cash

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _new_order(self, symbol: str, side: OrderSide, order_type: OrderType, quantity: int, **prices: float | None) -> Order:
        order = Order(
            order_id=f"PAPER-{next(self._order_ids)}",
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            timestamp=self._clock(),
            **prices,
        )
        self._orders[order.order_id] = order
        return order

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: int,
        limit_price: float | None = None,
        stop_loss: float | None = None,
        target: float | None = None,
    ) -> Order | None:
        if quantity <= 0:
            logger.warning("Paper order refused: quantity %s for %s", quantity, symbol)
            return None
        ltp = self._prices.get(symbol)

        if order_type in (OrderType.MARKET, OrderType.BRACKET):
            if ltp is None:
                logger.warning("Paper order refused: no price for %s", symbol)
                return None
            order = self._new_order(symbol, side, order_type, quantity, stop_price=stop_loss, target_price=target)
            if self._fill_delay > 0:
                handle = asyncio.get_running_loop().call_later(self._fill_delay, self._fill_entry, order.order_id)
                self._timers.add(handle)
            else:
                self._fill_entry(order.order_id)
            return order

        if order_type is OrderType.LIMIT:
            if limit_price is None:
                logger.warning("Paper LIMIT order refused: no limit price for %s", symbol)
                return None
            order = self._new_order(symbol, side, order_type, quantity, limit_price=limit_price)
        elif order_type is OrderType.STOP:
            if stop_loss is None:
                logger.warning("Paper STOP order refused: no trigger price for %s", symbol)
                return None
            order = self._new_order(symbol, side, order_type, quantity, stop_price=stop_loss)
        else:
            logger.warning("Paper order refused: unsupported type %s", order_type)
            return None

        self._working[order.order_id] = order
        if ltp is not None and self._crosses(order, ltp):
            self._fill(order, ltp)
        logger.info(
            "Paper %s %s %s %d placed (%s)", order.order_type.value, side.value, symbol, quantity, order.order_id
        )
        return order

    async def cancel_order(self, order_id: str) -> bool:
        order = self._orders.get(order_id)
        if order is None or order.status.is_terminal:
            return False
        self._cancel(order)
        return True

    async def get_orders(self) -> list[Order]:
        return list(self._orders.values())

    async def get_positions(self) -> list[Position]:
        return [replace(p) for p in self._positions.values()]

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    @staticmethod
    def _crosses(order: Order, price: float) -> bool:
        buy = order.side is OrderSide.BUY
        if order.order_type is OrderType.LIMIT:
            return price <= order.limit_price if buy else price >= order.limit_price
        if order.order_type is OrderType.STOP:
            return price >= order.stop_price if buy else price <= order.stop_price
        return False

    def _evaluate(self, symbol: str, price: float) -> None:
        for order in list(self._working.values()):
            if order.symbol == symbol and order.order_id in self._working and self._crosses(order, price):
                self._fill(order, price)

    def _fill_entry(self, order_id: str) -> None:
        order = self._orders[order_id]
        if order.status.is_terminal:
            return
        price = self._prices[order.symbol]
        self._fill(order, price)
        if order.order_type is OrderType.BRACKET:
            self._arm_bracket(order)

    def _arm_bracket(self, entry: Order) -> None:
        exit_side = entry.side.opposite
        legs: list[Order] = []
        if entry.stop_price is not None:
            legs.append(self._new_order(entry.symbol, exit_side, OrderType.STOP, entry.quantity, stop_price=entry.stop_price))
        if entry.target_price is not None:
            legs.append(self._new_order(entry.symbol, exit_side, OrderType.LIMIT, entry.quantity, limit_price=entry.target_price))
        for leg in legs:
            self._working[leg.order_id] = leg
            self._legs.add(leg.order_id)
        if len(legs) == 2:
            self._siblings[legs[0].order_id] = legs[1].order_id
            self._siblings[legs[1].order_id] = legs[0].order_id
        logger.info("Paper bracket armed for %s: %s", entry.symbol, [leg.order_id for leg in legs])

    def _cancel(self, order: Order) -> None:
        order.status = OrderStatus.CANCELLED
        self._working.pop(order.order_id, None)
        sibling = self._siblings.pop(order.order_id, None)
        if sibling is not None:
            self._siblings.pop(sibling, None)

    def _fill(self, order: Order, price: float) -> None:
        order.status = OrderStatus.FILLED
        order.filled_quantity = order.quantity
        order.average_price = price
        self._working.pop(order.order_id, None)

        sibling_id = self._siblings.pop(order.order_id, None)
        if sibling_id is not None:
            self._siblings.pop(sibling_id, None)
            sibling = self._orders.get(sibling_id)
            if sibling is not None and not sibling.status.is_terminal:
                self._cancel(sibling)

        self._apply(order.symbol, order.side, order.quantity, price)
        if order.symbol not in self._positions:
            for other in list(self._working.values()):
                if other.symbol == order.symbol and other.order_id in self._legs:
                    self._cancel(other)

        trade = Trade(
            trade_id=f"PT-{next(self._trade_ids)}",
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            price=price,
            timestamp=self._clock(),
        )
        logger.info("Paper fill %s: %s %s %d @ %.2f", order.order_id, order.side.value, order.symbol, order.quantity, price)
        if self._bus is not None:
            self._bus.publish(TradeExecuted(trade=trade))

    def _apply(self, symbol: str, side: OrderSide, qty: int, price: float) -> None:
        pos = self._positions.get(symbol)
        if pos is None:
            self._positions[symbol] = Position(
                symbol=symbol,
                direction=Direction.from_side(side),
                quantity=qty,
                entry_price=price,
                current_price=price,
                entry_time=self._clock(),
            )
            return
        if pos.direction.entry_side is side:
            total = pos.quantity + qty
            pos.entry_price = (pos.entry_price * pos.quantity + price * qty) / total
            pos.quantity = total
            return

        closed = min(pos.quantity, qty)
        sign = 1 if pos.direction is Direction.LONG else -1
        pnl = sign * (price - pos.entry_price) * closed
        self._cash += pnl
        pos.quantity -= closed
        if pos.quantity == 0:
            del self._positions[symbol]
        remainder = qty - closed
        if remainder > 0:
            self._apply(symbol, side, remainder, price)
