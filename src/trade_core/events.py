"""
Typed events and the bus that carries them between components.

Every event is a frozen dataclass. Subscribers register per event type;
publishers never see subscriber failures. Coroutine handlers are scheduled
as tasks on the running loop and tracked so callers can ``await drain()``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

from trade_core.contracts import (
    Direction,
    MarketTick,
    Order,
    OrderStatus,
    Position,
    PositionMismatch,
    Trade,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


# ---------------------------------------------------------------------------
# Broker stream
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradeExecuted:
    """A broker fill arrived on the event stream."""

    trade: Trade


@dataclass(frozen=True)
class BrokerPositionUpdate:
    """Broker pushed its view of a position."""

    position: Position


@dataclass(frozen=True)
class BrokerErrorEvent:
    message: str


@dataclass(frozen=True)
class CircuitStateChanged:
    """A broker circuit breaker moved between closed, open and half-open."""

    name: str
    previous: str
    state: str
    reason: str = ""


# ---------------------------------------------------------------------------
# Order lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderStatusChanged:
    """The broker reported a new status or fill quantity for a tracked order."""

    order: Order
    previous: OrderStatus
    previous_filled: int


@dataclass(frozen=True)
class OrderReconciliationFailed:
    """A tracked order stayed missing from the broker order book; tracking stopped."""

    order: Order
    checks: int


@dataclass(frozen=True)
class UntrackedOrderFound:
    """A live broker order this process did not place or had stopped tracking."""

    order: Order


# ---------------------------------------------------------------------------
# Position lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PositionOpened:
    position: Position


@dataclass(frozen=True)
class PositionIncreased:
    position: Position
    added_quantity: int
    price: float


@dataclass(frozen=True)
class PositionReduced:
    position: Position
    closed_quantity: int
    exit_price: float
    realized_pnl: float


@dataclass(frozen=True)
class PositionClosed:
    """Position fully closed. ``entry_slippage`` is None when no expected entry was recorded."""

    position: Position
    exit_price: float
    realized_pnl: float
    reason: str
    entry_slippage: float | None = None


@dataclass(frozen=True)
class PositionUpdated:
    """Mark-to-market refresh of an open position."""

    position: Position


@dataclass(frozen=True)
class StopLossTriggered:
    symbol: str
    direction: Direction
    price: float
    stop_loss: float


@dataclass(frozen=True)
class TargetReached:
    symbol: str
    direction: Direction
    price: float
    target: float


@dataclass(frozen=True)
class ProtectiveOrderFilled:
    """A broker-side stop or target leg filled; the sibling leg was cancelled."""

    symbol: str
    order_id: str
    leg: str
    cancelled_order_id: str | None = None


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DailyLossWarning:
    daily_pnl: float
    limit: float
    loss_pct: float


@dataclass(frozen=True)
class DailyLossLimitReached:
    daily_pnl: float
    limit: float


@dataclass(frozen=True)
class MaxTradesWarning:
    trades_today: int
    max_trades: int


@dataclass(frozen=True)
class DuplicateSignalRejected:
    symbol: str
    key: str


# ---------------------------------------------------------------------------
# Reconciliation and health
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconciliationMismatch:
    mismatches: tuple[PositionMismatch, ...]
    consecutive: int


@dataclass(frozen=True)
class ReconciliationCritical:
    mismatches: tuple[PositionMismatch, ...]
    consecutive: int


@dataclass(frozen=True)
class ReconciliationRecovered:
    previous_failures: int


@dataclass(frozen=True)
class ReconciliationError:
    error: str
    consecutive: int


@dataclass(frozen=True)
class DataFeedDead:
    seconds_since_data: float


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """Per-type publish/subscribe with typed payloads."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event_type*. Returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, ()))

    def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
            except Exception:
                logger.exception("Handler %r failed for %s", handler, type(event).__name__)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, event)

    def _schedule(self, awaitable: Any, event: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; dropping async handler for %s", type(event).__name__)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event handler failed", exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every scheduled handler task (including ones they spawn) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = [
    "BrokerErrorEvent",
    "BrokerPositionUpdate",
    "CircuitStateChanged",
    "DailyLossLimitReached",
    "DailyLossWarning",
    "DataFeedDead",
    "DuplicateSignalRejected",
    "EventBus",
    "MarketTick",
    "MaxTradesWarning",
    "OrderReconciliationFailed",
    "OrderStatusChanged",
    "PositionClosed",
    "PositionIncreased",
    "PositionOpened",
    "PositionReduced",
    "PositionUpdated",
    "ProtectiveOrderFilled",
    "ReconciliationCritical",
    "ReconciliationError",
    "ReconciliationMismatch",
    "ReconciliationRecovered",
    "StopLossTriggered",
    "TargetReached",
    "TradeExecuted",
    "UntrackedOrderFound",
]
