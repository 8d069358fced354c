"""
Stop-loss manager: broker-level protective orders for positions entered
without native brackets.

After a confirmed fill the pipeline calls ``place_protection``. The STOP leg
is what counts as protection; a failed target leg is only logged. The
monitor loop enforces one-cancels-other between the two legs, since a plain
STOP + LIMIT pair has no broker-side link.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from trade_core.contracts import Direction, OrderSide, OrderStatus, OrderType
from trade_core.events import EventBus, ProtectiveOrderFilled

from broker.port import BrokerPort

logger = logging.getLogger(__name__)


@dataclass
class ProtectiveOrders:
    """Live protective legs for one symbol."""

    symbol: str
    entry_order_id: str
    exit_side: OrderSide
    quantity: int
    stop_price: float
    stop_order_id: str
    target_price: float | None = None
    target_order_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StopLossManager:
    def __init__(self, broker: BrokerPort, bus: EventBus, *, monitor_interval: float = 10.0) -> None:
        self._broker = broker
        self._bus = bus
        self._interval = monitor_interval
        self._records: dict[str, ProtectiveOrders] = {}
        self._task: asyncio.Task | None = None

    def get(self, symbol: str) -> ProtectiveOrders | None:
        return self._records.get(symbol)

    def symbols(self) -> list[str]:
        return list(self._records)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    async def place_protection(
        self,
        symbol: str,
        entry_order_id: str,
        direction: Direction,
        quantity: int,
        stop_price: float,
        target: float | None = None,
    ) -> bool:
        """
        Place the STOP leg (and optional LIMIT target) at the exit side.

        Returns True only when the stop leg is live at the broker.
        """
        exit_side = direction.exit_side
        logger.info(
            "Placing stop loss for %s: %s %d stop=%.2f target=%s",
            symbol, exit_side.value, quantity, stop_price,
            f"{target:.2f}" if target is not None else "none",
        )
        try:
            stop_order = await self._broker.place_order(
                symbol, exit_side, OrderType.STOP, quantity, stop_loss=stop_price
            )
        except Exception as exc:
            logger.error("Error placing stop loss for %s: %s", symbol, exc)
            return False
        if stop_order is None:
            logger.error("Broker refused stop loss for %s", symbol)
            return False

        record = ProtectiveOrders(
            symbol=symbol,
            entry_order_id=entry_order_id,
            exit_side=exit_side,
            quantity=quantity,
            stop_price=stop_price,
            stop_order_id=stop_order.order_id,
            target_price=target,
        )
        self._records[symbol] = record
        logger.info("Stop loss placed for %s: %s @ %.2f", symbol, stop_order.order_id, stop_price)

        if target is not None:
            try:
                target_order = await self._broker.place_order(
                    symbol, exit_side, OrderType.LIMIT, quantity, limit_price=target
                )
            except Exception as exc:
                logger.error("Error placing target for %s: %s", symbol, exc)
                target_order = None
            if target_order is None:
                logger.warning("Target order for %s not placed; stop loss alone protects the position", symbol)
            else:
                record.target_order_id = target_order.order_id
                logger.info("Target placed for %s: %s @ %.2f", symbol, target_order.order_id, target)
        return True

    async def _cancel_quietly(self, order_id: str | None) -> None:
        if order_id is None:
            return
        try:
            await self._broker.cancel_order(order_id)
        except Exception as exc:
            logger.error("Cancel of protective order %s failed: %s", order_id, exc)

    async def cancel(self, symbol: str, reason: str = "") -> bool:
        """Cancel both legs for *symbol*. False when nothing was tracked."""
        record = self._records.pop(symbol, None)
        if record is None:
            return False
        logger.info("Cancelling protection for %s (%s)", symbol, reason or "no reason given")
        await self._cancel_quietly(record.stop_order_id)
        await self._cancel_quietly(record.target_order_id)
        return True

    async def cancel_all(self, reason: str = "") -> int:
        count = 0
        for symbol in list(self._records):
            if await self.cancel(symbol, reason):
                count += 1
        if count:
            logger.info("Cancelled protection for %d symbol(s): %s", count, reason)
        return count

    async def update_stop(self, symbol: str, new_stop: float) -> bool:
        """Trail the stop: place the new leg, then cancel the old one."""
        record = self._records.get(symbol)
        if record is None:
            logger.warning("Cannot update stop for %s: no protection tracked", symbol)
            return False
        try:
            order = await self._broker.place_order(
                symbol, record.exit_side, OrderType.STOP, record.quantity, stop_loss=new_stop
            )
        except Exception as exc:
            logger.error("Error updating stop for %s: %s", symbol, exc)
            return False
        if order is None:
            logger.error("Broker refused updated stop for %s; keeping %.2f", symbol, record.stop_price)
            return False
        old_id, old_price = record.stop_order_id, record.stop_price
        record.stop_order_id = order.order_id
        record.stop_price = new_stop
        await self._cancel_quietly(old_id)
        logger.info("Stop for %s moved %.2f -> %.2f (%s)", symbol, old_price, new_stop, order.order_id)
        return True

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def monitor_once(self) -> int:
        """Poll broker orders once. Returns the number of legs found filled."""
        if not self._records:
            return 0
        try:
            orders = {o.order_id: o for o in await self._broker.get_orders()}
        except Exception as exc:
            logger.error("Error checking protective orders: %s", exc)
            return 0

        filled = 0
        for symbol, record in list(self._records.items()):
            stop = orders.get(record.stop_order_id)
            target = orders.get(record.target_order_id) if record.target_order_id else None

            if stop is not None and stop.status is OrderStatus.FILLED:
                leg, sibling = "stop", record.target_order_id
                logger.warning("Stop loss filled at broker for %s @ %.2f", symbol, record.stop_price)
            elif target is not None and target.status is OrderStatus.FILLED:
                leg, sibling = "target", record.stop_order_id
                logger.info("Target filled at broker for %s", symbol)
            else:
                if stop is not None and stop.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
                    logger.error("Stop loss for %s ended %s outside this process", symbol, stop.status.value)
                    self._records.pop(symbol, None)
                continue

            filled += 1
            await self._cancel_quietly(sibling)
            self._records.pop(symbol, None)
            filled_id = record.stop_order_id if leg == "stop" else record.target_order_id
            self._bus.publish(
                ProtectiveOrderFilled(symbol=symbol, order_id=filled_id, leg=leg, cancelled_order_id=sibling)
            )
        return filled

    async def _loop(self) -> None:
        while True:
            await self.monitor_once()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            logger.warning("Stop-loss monitoring already running")
            return
        logger.info("Starting stop-loss monitoring every %.0fs", self._interval)
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
        logger.info("Stop-loss monitoring stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "protected_symbols": sorted(self._records),
        }
