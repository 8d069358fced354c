"""
Order fill state machine.

Polls the broker order book on a fixed interval until the order reaches a
terminal state or the deadline passes, then classifies the outcome:

  COMPLETE  FILLED with filled quantity == requested
  PARTIAL   some quantity filled by the deadline (or FILLED short of requested)
  FAILED    REJECTED, CANCELLED, or the order vanished from the book
  TIMEOUT   nothing filled by the deadline; the order is presumed still live

The wait always resolves; it never hangs past the deadline plus one poll.

OrderTimeoutGuard is the client-side cancel for resting LIMIT entries. Its
timer callback marks ``fired`` synchronously before cancelling, so the caller
can decide the race with the fill monitor without a suspension point.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Protocol

from trade_core.contracts import FillOutcome, FillResult, Order, OrderStatus

logger = logging.getLogger(__name__)


class OrderBook(Protocol):
    def get_orders(self) -> Awaitable[list[Order]]: ...


class OrderCanceller(Protocol):
    def cancel_order(self, order_id: str) -> Awaitable[bool]: ...


class FillMonitor:
    """
    Parameters
    ----------
    poll_interval:
        Seconds between order-book polls.
    timeout:
        Maximum seconds to wait for a terminal state.
    clock, sleep:
        Injectable for tests; default to the monotonic clock and asyncio.sleep.
    """

    def __init__(
        self,
        broker: OrderBook,
        *,
        poll_interval: float = 2.0,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._broker = broker
        self._interval = poll_interval
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep

    async def lookup(self, order_id: str) -> Order | None:
        """Current broker view of *order_id*, or None if it is not in the book."""
        orders = await self._broker.get_orders()
        return next((o for o in orders if o.order_id == order_id), None)

    async def wait_for_fill(
        self,
        order_id: str,
        expected_quantity: int,
        *,
        on_poll: Callable[[], object] | None = None,
    ) -> FillResult:
        """
        Poll until *order_id* is terminal or the deadline passes.

        *on_poll* runs before every order-book read, e.g. to keep a symbol lock alive.
        """
        start = self._clock()
        logger.info("Waiting for fill of %s (qty %d, up to %.0fs)", order_id, expected_quantity, self._timeout)

        while self._clock() - start < self._timeout:
            if on_poll is not None:
                on_poll()
            try:
                order = await self.lookup(order_id)
            except Exception as exc:
                logger.error("Error checking order %s: %s", order_id, exc)
                await self._sleep(self._interval)
                continue

            if order is None:
                logger.error("Order %s not found in broker order book", order_id)
                return FillResult(FillOutcome.FAILED)

            if order.status is OrderStatus.FILLED:
                filled = order.filled_quantity or order.quantity
                outcome = FillOutcome.COMPLETE if filled >= expected_quantity else FillOutcome.PARTIAL
                logger.info(
                    "Order %s filled: %d @ %s (%.1fs)",
                    order_id, filled, order.average_price, self._clock() - start,
                )
                return FillResult(outcome, filled=filled, average_price=order.average_price, order_status=order.status)

            if order.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
                logger.error("Order %s ended %s", order_id, order.status.value)
                return FillResult(
                    FillOutcome.FAILED,
                    filled=order.filled_quantity,
                    average_price=order.average_price,
                    order_status=order.status,
                )

            if order.status is OrderStatus.PARTIALLY_FILLED:
                logger.warning(
                    "Order %s partially filled %d/%d, waiting", order_id, order.filled_quantity, order.quantity
                )

            await self._sleep(self._interval)

        logger.warning("Fill wait for %s reached %.0fs deadline, checking final status", order_id, self._timeout)
        if on_poll is not None:
            on_poll()
        try:
            order = await self.lookup(order_id)
        except Exception as exc:
            logger.error("Final status check for %s failed: %s", order_id, exc)
            order = None

        if order is not None and order.filled_quantity > 0:
            logger.warning("Partial fill after timeout: %s %d/%d", order_id, order.filled_quantity, expected_quantity)
            return FillResult(
                FillOutcome.PARTIAL,
                filled=order.filled_quantity,
                average_price=order.average_price,
                order_status=order.status,
            )

        logger.error("Order %s timed out with no fill", order_id)
        return FillResult(FillOutcome.TIMEOUT, order_status=order.status if order is not None else None)


class OrderTimeoutGuard:
    """Cancels a resting order if it is still open after ``timeout`` seconds."""

    def __init__(self, broker: OrderCanceller, order_id: str, timeout: float) -> None:
        self._broker = broker
        self._order_id = order_id
        self._timeout = timeout
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self.fired = False
        self.disarmed = False

    def arm(self) -> None:
        self._handle = asyncio.get_running_loop().call_later(self._timeout, self.fire_now)

    def fire_now(self) -> None:
        """Mark fired and start the cancel. Idempotent; no-op once disarmed."""
        if self.fired or self.disarmed:
            return
        self.fired = True
        if self._handle is not None:
            self._handle.cancel()
        logger.warning("Order %s unfilled after %.0fs, cancelling", self._order_id, self._timeout)
        self._task = asyncio.get_running_loop().create_task(self._broker.cancel_order(self._order_id))

    def disarm(self) -> bool:
        """Stop the timer. Returns False if the guard already fired."""
        if self.fired:
            return False
        self.disarmed = True
        if self._handle is not None:
            self._handle.cancel()
        return True

    async def wait(self) -> bool:
        """Result of the cancel request; False when the guard never fired or the cancel failed."""
        if self._task is None:
            return False
        try:
            return bool(await self._task)
        except Exception as exc:
            logger.error("Cancel of %s failed: %s", self._order_id, exc)
            return False
