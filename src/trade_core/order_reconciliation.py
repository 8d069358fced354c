"""
Pending-order reconciliation: follow live orders to a terminal state.

Orders the pipeline placed are watched until the broker reports them FILLED,
REJECTED or CANCELLED. Each cycle reads the broker order book once and feeds
every watched order's snapshot through the OrderTracker; accepted transitions
are published as OrderStatusChanged. An order missing from the book for
``max_missing_checks`` consecutive cycles is given up on with
OrderReconciliationFailed.

``full_reconcile`` adopts live broker orders nobody is watching (placed by
another process, or left over from a previous session) and publishes
UntrackedOrderFound for each.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Protocol

from trade_core.contracts import Order
from trade_core.events import (
    EventBus,
    OrderReconciliationFailed,
    OrderStatusChanged,
    UntrackedOrderFound,
)
from trade_core.order_tracker import OrderTracker

logger = logging.getLogger(__name__)


class OrderBook(Protocol):
    def get_orders(self) -> Awaitable[list[Order]]: ...


class PendingOrderReconciler:
    """
    Parameters
    ----------
    broker:
        Order book source (any BrokerPort).
    tracker:
        Shared OrderTracker; watched orders are tracked there.
    interval_seconds:
        Loop period for ``start()``.
    max_missing_checks:
        Consecutive cycles an order may be absent from the book before
        tracking stops.
    """

    def __init__(
        self,
        broker: OrderBook,
        tracker: OrderTracker,
        bus: EventBus,
        *,
        interval_seconds: float = 5.0,
        max_missing_checks: int = 60,
    ) -> None:
        self._broker = broker
        self._tracker = tracker
        self._bus = bus
        self._interval = interval_seconds
        self._max_missing = max_missing_checks
        self._missing: dict[str, int] = {}
        self._errors = 0
        self._task: asyncio.Task | None = None

    @property
    def tracker(self) -> OrderTracker:
        return self._tracker

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def pending_ids(self) -> list[str]:
        return sorted(self._missing)

    def watch(self, order: Order, parent_id: str | None = None) -> None:
        """Track *order*; live orders are followed until they finish."""
        self._tracker.track(order, parent_id=parent_id)
        if not order.status.is_terminal:
            self._missing.setdefault(order.order_id, 0)
            logger.info("Watching order %s (%s %s)", order.order_id, order.symbol, order.status.value)

    def unwatch(self, order_id: str) -> None:
        self._missing.pop(order_id, None)

    async def reconcile(self) -> int:
        """Run one cycle. Returns the number of status changes applied."""
        if not self._missing:
            return 0
        try:
            orders = await self._broker.get_orders()
        except Exception as exc:
            self._errors += 1
            logger.error("Order reconciliation failed: %s", exc)
            return 0

        by_id = {o.order_id: o for o in orders}
        changes = 0
        for order_id in list(self._missing):
            snapshot = by_id.get(order_id)
            if snapshot is None:
                self._missing[order_id] += 1
                checks = self._missing[order_id]
                logger.warning("Order %s not in broker order book (check %d)", order_id, checks)
                if checks >= self._max_missing:
                    tracked = self._tracker.get(order_id)
                    del self._missing[order_id]
                    logger.error("Giving up on order %s after %d checks", order_id, checks)
                    if tracked is not None:
                        self._bus.publish(OrderReconciliationFailed(order=tracked.order, checks=checks))
                continue

            self._missing[order_id] = 0
            tracked = self._tracker.get(order_id)
            previous = tracked.order if tracked is not None else None
            transition = self._tracker.update(snapshot)
            if transition is not None and previous is not None:
                changes += 1
                self._bus.publish(
                    OrderStatusChanged(
                        order=self._tracker.get(order_id).order,
                        previous=previous.status,
                        previous_filled=previous.filled_quantity,
                    )
                )
            current = self._tracker.get(order_id)
            if current is None or current.order.status.is_terminal:
                del self._missing[order_id]
        return changes

    async def full_reconcile(self) -> list[Order]:
        """Adopt live broker orders that are not being watched. Returns them."""
        orders = await self._broker.get_orders()
        adopted: list[Order] = []
        for order in orders:
            if order.status.is_terminal or order.order_id in self._missing:
                continue
            logger.warning(
                "Found untracked live order %s (%s %s %s)",
                order.order_id, order.symbol, order.side.value, order.status.value,
            )
            self.watch(order)
            self._bus.publish(UntrackedOrderFound(order=order))
            adopted.append(order)
        logger.info("Full order reconciliation: %d broker order(s), %d watched", len(orders), len(self._missing))
        return adopted

    async def _loop(self) -> None:
        while True:
            await self.reconcile()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            logger.warning("Order reconciliation already running")
            return
        logger.info("Starting order reconciliation every %.0fs", self._interval)
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Order reconciliation stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "pending_orders": len(self._missing),
            "errors": self._errors,
            **self._tracker.stats(),
        }
