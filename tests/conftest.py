"""Pytest fixtures: a scripted broker, a recording notifier and a wired pipeline."""

import itertools
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from broker.port import BrokerError
from config.loader import ExecutionConfig
from config.runtime import RuntimeState
from execution.fill_monitor import FillMonitor
from execution.pipeline import ExecutionPipeline
from execution.stop_loss import StopLossManager
from trade_core.contracts import (
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Trade,
    TradingMode,
)
from trade_core.events import EventBus, TradeExecuted
from trade_core.idempotency import IdempotencyRegistry
from trade_core.position_manager import PositionManager
from trade_core.risk_manager import RiskLimits, RiskManager
from trade_core.signal_gate import SignalGate, TradingCalendar, TradingWindows
from trade_core.symbol_lock import SymbolLockManager

IST = ZoneInfo("Asia/Kolkata")

# Tuesday, inside the signal window.
SESSION_NOW = datetime(2026, 3, 10, 10, 0, tzinfo=IST)


class FakeBroker:
    """
    In-memory BrokerPort with scripted behaviour.

    MARKET and BRACKET orders fill on placement when ``fill_on_place`` is set;
    LIMIT orders fill on placement only if marketable at the current price.
    STOP orders rest until ``fill()`` is called.
    """

    supports_bracket_orders = False

    def __init__(self, prices: dict[str, float] | None = None, balance: float = 100_000.0) -> None:
        self.prices: dict[str, float] = dict(prices or {})
        self.balance = balance
        self.orders: dict[str, Order] = {}
        self.placed: list[Order] = []
        self.cancelled: list[str] = []
        self.positions: list[Position] = []
        self.fill_on_place = True
        self.refuse: set[OrderType] = set()
        self.raise_on: set[OrderType] = set()
        self.cancel_result = True
        self.bus: EventBus | None = None
        self.connected = False
        self._ids = itertools.count(1)
        self._trade_ids = itertools.count(1)

    def attach(self, bus: EventBus) -> None:
        self.bus = bus

    async def connect(self) -> bool:
        self.connected = True
        return True

    async def disconnect(self) -> None:
        self.connected = False

    async def get_ltp(self, symbol: str) -> float | None:
        return self.prices.get(symbol)

    async def get_account_balance(self) -> float:
        return self.balance

    def _marketable(self, order: Order) -> bool:
        price = self.prices.get(order.symbol)
        if price is None:
            return False
        if order.order_type in (OrderType.MARKET, OrderType.BRACKET):
            return True
        if order.order_type is OrderType.LIMIT:
            return price <= order.limit_price if order.side is OrderSide.BUY else price >= order.limit_price
        return False

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
        if order_type in self.raise_on:
            raise BrokerError(f"{order_type.value} rejected by test broker")
        if order_type in self.refuse:
            return None
        order = Order(
            order_id=f"O-{next(self._ids)}",
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            limit_price=limit_price,
            stop_price=stop_loss,
            target_price=target,
        )
        self.orders[order.order_id] = order
        self.placed.append(order)
        if self.fill_on_place and self._marketable(order):
            self.fill(order.order_id)
        return order

    def fill(self, order_id: str, quantity: int | None = None, price: float | None = None) -> None:
        """Fill (or partially fill) a resting order and publish the trade."""
        order = self.orders[order_id]
        qty = quantity if quantity is not None else order.quantity - order.filled_quantity
        px = price if price is not None else self.prices.get(order.symbol, order.limit_price or order.stop_price)
        order.filled_quantity += qty
        order.average_price = px
        order.status = OrderStatus.FILLED if order.filled_quantity >= order.quantity else OrderStatus.PARTIALLY_FILLED
        if self.bus is not None:
            trade = Trade(
                trade_id=f"T-{next(self._trade_ids)}",
                order_id=order_id,
                symbol=order.symbol,
                side=order.side,
                quantity=qty,
                price=px,
                timestamp=SESSION_NOW,
            )
            self.bus.publish(TradeExecuted(trade=trade))

    async def cancel_order(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        if not self.cancel_result or order is None or order.status.is_terminal:
            return False
        order.status = OrderStatus.CANCELLED
        self.cancelled.append(order_id)
        return True

    async def get_orders(self) -> list[Order]:
        return list(self.orders.values())

    async def get_positions(self) -> list[Position]:
        return list(self.positions)

    def placed_of(self, order_type: OrderType) -> list[Order]:
        return [o for o in self.placed if o.order_type is order_type]


class RecordingNotifier:
    """Notifier that records (method, args) for every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        def _record(*args, **kwargs):
            self.calls.append((name, args))

        return _record

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


FAST_SETTINGS = ExecutionConfig(
    order_retry_attempts=2,
    order_retry_delay_seconds=0.0,
    quote_retry_attempts=2,
    quote_retry_delay_seconds=0.0,
    fill_poll_seconds=0.01,
    fill_timeout_seconds=0.2,
    limit_order_timeout_seconds=0.05,
)


@dataclass
class Harness:
    broker: FakeBroker
    bus: EventBus
    runtime: RuntimeState
    risk: RiskManager
    positions: PositionManager
    locks: SymbolLockManager
    idempotency: IdempotencyRegistry
    stop_losses: StopLossManager
    notifier: RecordingNotifier
    pipeline: ExecutionPipeline


def build_harness(
    broker: FakeBroker | None = None,
    *,
    settings: ExecutionConfig = FAST_SETTINGS,
    limits: RiskLimits | None = None,
    mode: TradingMode = TradingMode.REAL,
    lock_ttl: float = 5.0,
) -> Harness:
    broker = broker or FakeBroker(prices={"INFY": 100.0})
    bus = EventBus()
    broker.attach(bus)
    runtime = RuntimeState(mode)
    risk = RiskManager(limits or RiskLimits(), bus=bus, starting_balance=broker.balance, clock=lambda: SESSION_NOW)
    positions = PositionManager(bus, broker)
    locks = SymbolLockManager(lock_ttl)
    idempotency = IdempotencyRegistry(120.0)
    stop_losses = StopLossManager(broker, bus, monitor_interval=0.01)
    notifier = RecordingNotifier()
    gate = SignalGate(TradingWindows(), TradingCalendar(), kill_switch=runtime.is_kill_switch_active)
    pipeline = ExecutionPipeline(
        broker,
        bus=bus,
        risk=risk,
        positions=positions,
        stop_losses=stop_losses,
        locks=locks,
        idempotency=idempotency,
        gate=gate,
        runtime=runtime,
        settings=settings,
        notifier=notifier,
        fill_monitor=FillMonitor(broker, poll_interval=settings.fill_poll_seconds, timeout=settings.fill_timeout_seconds),
        clock=lambda: SESSION_NOW,
    )
    return Harness(broker, bus, runtime, risk, positions, locks, idempotency, stop_losses, notifier, pipeline)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker(prices={"INFY": 100.0, "TCS": 200.0})


@pytest.fixture
def harness(broker: FakeBroker) -> Harness:
    return build_harness(broker)


@pytest.fixture
def session_now() -> datetime:
    return SESSION_NOW
