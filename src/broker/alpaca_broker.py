"""
Alpaca broker: implements BrokerPort using the alpaca-py SDK.

The SDK is synchronous; every call runs in a worker thread via
asyncio.to_thread so the event loop keeps serving other symbols.
Maps Alpaca orders and positions to trade_core contracts.

Alpaca has no push of fills here; ``poll_fills()`` diffs filled quantities
and publishes TradeExecuted for each increment. The engine calls it on the
price-update cadence.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from trade_core.contracts import (
    Direction,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Trade,
)
from trade_core.events import BrokerErrorEvent, EventBus, TradeExecuted

from broker.port import BrokerError

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "filled": OrderStatus.FILLED,
    "partially_filled": OrderStatus.PARTIALLY_FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "expired": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "suspended": OrderStatus.REJECTED,
}

_TYPE_MAP = {
    "market": OrderType.MARKET,
    "limit": OrderType.LIMIT,
    "stop": OrderType.STOP,
}


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value)).lower()


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def map_order(raw: Any) -> Order:
    """Convert an alpaca Order model to a trade_core Order."""
    order_class = _enum_value(getattr(raw, "order_class", "simple"))
    order_type = _TYPE_MAP.get(_enum_value(raw.type), OrderType.MARKET)
    if order_class in ("bracket", "oto"):
        order_type = OrderType.BRACKET
    return Order(
        order_id=str(raw.id),
        symbol=raw.symbol,
        side=OrderSide.BUY if _enum_value(raw.side) == "buy" else OrderSide.SELL,
        order_type=order_type,
        quantity=int(float(raw.qty or 0)),
        status=_STATUS_MAP.get(_enum_value(raw.status), OrderStatus.PENDING),
        filled_quantity=int(float(raw.filled_qty or 0)),
        average_price=_to_float(raw.filled_avg_price),
        limit_price=_to_float(getattr(raw, "limit_price", None)),
        stop_price=_to_float(getattr(raw, "stop_price", None)),
        timestamp=getattr(raw, "submitted_at", None),
    )


def map_position(raw: Any) -> Position:
    """Convert an alpaca Position model to a trade_core Position."""
    qty = int(abs(float(raw.qty)))
    entry = float(raw.avg_entry_price)
    current = _to_float(getattr(raw, "current_price", None)) or entry
    unrealized = _to_float(getattr(raw, "unrealized_pl", None)) or 0.0
    return Position(
        symbol=raw.symbol,
        direction=Direction.SHORT if _enum_value(raw.side) == "short" else Direction.LONG,
        quantity=qty,
        entry_price=entry,
        current_price=current,
        entry_time=datetime.now(timezone.utc),
        unrealized_pnl=unrealized,
        pnl_percent=unrealized / (entry * qty) * 100.0 if qty and entry else 0.0,
    )


class AlpacaBroker:
    """
    Live (or Alpaca paper-account) broker adapter.

    API keys via constructor (typically from AppConfig, sourced from env vars).
    """

    supports_bracket_orders = True

    def __init__(self, api_key: str, api_secret: str, *, paper: bool = True) -> None:
        if not api_key or not api_secret:
            raise ValueError(
                "Alpaca API key and secret are required. "
                "Set APCA_API_KEY_ID and APCA_API_SECRET_KEY environment variables."
            )
        try:
            from alpaca.data.historical import StockHistoricalDataClient
            from alpaca.trading.client import TradingClient
        except ImportError:
            raise ImportError(
                "alpaca-py is required for AlpacaBroker. "
                "Install with: pip install 'signal-executor[broker]'"
            )
        self._trading = TradingClient(api_key, api_secret, paper=paper)
        self._data = StockHistoricalDataClient(api_key, api_secret)
        self._paper = paper
        self._bus: EventBus | None = None
        self._seen_fills: dict[str, tuple[int, float]] = {}
        self._connected = False

    def attach(self, bus: EventBus) -> None:
        self._bus = bus

    def _report(self, message: str) -> None:
        logger.error(message)
        if self._bus is not None:
            self._bus.publish(BrokerErrorEvent(message=message))

    async def connect(self) -> bool:
        try:
            account = await asyncio.to_thread(self._trading.get_account)
        except Exception as exc:
            self._report(f"Alpaca connect failed: {exc}")
            return False
        try:
            history = await self.get_orders()
        except BrokerError as exc:
            self._report(f"Alpaca connect failed: {exc}")
            return False
        # Fills that predate this session are baseline, not new trades.
        self._seen_fills = {
            o.order_id: (o.filled_quantity, o.average_price or 0.0) for o in history if o.filled_quantity > 0
        }
        self._connected = True
        logger.info(
            "Alpaca connected (paper=%s, equity=%s, prior fills=%d)",
            self._paper, getattr(account, "equity", "?"), len(self._seen_fills),
        )
        return True

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("Alpaca disconnected")

    async def get_ltp(self, symbol: str) -> float | None:
        from alpaca.data.requests import StockLatestTradeRequest

        try:
            latest = await asyncio.to_thread(
                self._data.get_stock_latest_trade,
                StockLatestTradeRequest(symbol_or_symbols=symbol),
            )
        except Exception as exc:
            logger.warning("Alpaca latest trade for %s failed: %s", symbol, exc)
            return None
        trade = latest.get(symbol) if isinstance(latest, dict) else None
        return float(trade.price) if trade is not None else None

    async def get_account_balance(self) -> float:
        try:
            account = await asyncio.to_thread(self._trading.get_account)
        except Exception as exc:
            raise BrokerError(f"Alpaca account lookup failed: {exc}") from exc
        return float(account.equity)

    def _build_request(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: int,
        limit_price: float | None,
        stop_loss: float | None,
        target: float | None,
    ) -> Any:
        from alpaca.trading.enums import OrderClass, TimeInForce
        from alpaca.trading.enums import OrderSide as AlpacaSide
        from alpaca.trading.requests import (
            LimitOrderRequest,
            MarketOrderRequest,
            StopLossRequest,
            StopOrderRequest,
            TakeProfitRequest,
        )

        common = {
            "symbol": symbol,
            "qty": quantity,
            "side": AlpacaSide.BUY if side is OrderSide.BUY else AlpacaSide.SELL,
            "time_in_force": TimeInForce.DAY,
        }
        if order_type is OrderType.MARKET:
            return MarketOrderRequest(**common)
        if order_type is OrderType.LIMIT:
            return LimitOrderRequest(limit_price=round(limit_price, 2), **common)
        if order_type is OrderType.STOP:
            return StopOrderRequest(stop_price=round(stop_loss, 2), **common)
        if order_type is OrderType.BRACKET:
            legs: dict[str, Any] = {"stop_loss": StopLossRequest(stop_price=round(stop_loss, 2))}
            if target is not None:
                legs["take_profit"] = TakeProfitRequest(limit_price=round(target, 2))
                order_class = OrderClass.BRACKET
            else:
                order_class = OrderClass.OTO
            return MarketOrderRequest(order_class=order_class, **legs, **common)
        raise ValueError(f"Unsupported order type: {order_type}")

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
        if order_type is OrderType.LIMIT and limit_price is None:
            logger.warning("LIMIT order for %s needs a limit price", symbol)
            return None
        if order_type in (OrderType.STOP, OrderType.BRACKET) and stop_loss is None:
            logger.warning("%s order for %s needs a stop price", order_type.value, symbol)
            return None
        request = self._build_request(symbol, side, order_type, quantity, limit_price, stop_loss, target)
        try:
            raw = await asyncio.to_thread(self._trading.submit_order, order_data=request)
        except Exception as exc:
            self._report(f"Alpaca order {side.value} {quantity} {symbol} failed: {exc}")
            return None
        order = map_order(raw)
        logger.info("Alpaca order %s placed: %s %s %d", order.order_id, side.value, symbol, quantity)
        return order

    async def cancel_order(self, order_id: str) -> bool:
        try:
            await asyncio.to_thread(self._trading.cancel_order_by_id, order_id)
        except Exception as exc:
            logger.warning("Alpaca cancel %s failed: %s", order_id, exc)
            return False
        return True

    async def get_orders(self) -> list[Order]:
        from alpaca.trading.enums import QueryOrderStatus
        from alpaca.trading.requests import GetOrdersRequest

        try:
            raw = await asyncio.to_thread(
                self._trading.get_orders,
                filter=GetOrdersRequest(status=QueryOrderStatus.ALL, limit=500, nested=True),
            )
        except Exception as exc:
            raise BrokerError(f"Alpaca order listing failed: {exc}") from exc

        orders: list[Order] = []
        for item in raw:
            orders.append(map_order(item))
            for leg in getattr(item, "legs", None) or []:
                orders.append(map_order(leg))
        return orders

    async def get_positions(self) -> list[Position]:
        try:
            raw = await asyncio.to_thread(self._trading.get_all_positions)
        except Exception as exc:
            raise BrokerError(f"Alpaca position listing failed: {exc}") from exc
        return [map_position(p) for p in raw]

    async def poll_fills(self) -> int:
        """
        Publish TradeExecuted for fill increments since the last poll. Returns the count.

        Alpaca reports a cumulative average price, so each increment is priced
        from the change in filled notional rather than the running average.
        """
        orders = await self.get_orders()
        published = 0
        for order in orders:
            seen_qty, seen_avg = self._seen_fills.get(order.order_id, (0, 0.0))
            delta = order.filled_quantity - seen_qty
            if delta <= 0 or order.average_price is None:
                continue
            self._seen_fills[order.order_id] = (order.filled_quantity, order.average_price)
            price = (order.average_price * order.filled_quantity - seen_avg * seen_qty) / delta
            if price <= 0:
                price = order.average_price
            trade = Trade(
                trade_id=f"{order.order_id}:{order.filled_quantity}",
                order_id=order.order_id,
                symbol=order.symbol,
                side=order.side,
                quantity=delta,
                price=price,
                timestamp=datetime.now(timezone.utc),
            )
            if self._bus is not None:
                self._bus.publish(TradeExecuted(trade=trade))
            published += 1
        return published
