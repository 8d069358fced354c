"""
Reconciliation: periodic diff of internal positions against the broker.

Never corrects state. Mismatches are published for the operator; after
``critical_threshold`` consecutive failing cycles a single critical event is
published for the streak. A clean cycle resets the streak and publishes a
recovery event. A cycle that raises counts as a failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Protocol

from trade_core.contracts import MismatchKind, Position, PositionMismatch
from trade_core.events import (
    EventBus,
    ReconciliationCritical,
    ReconciliationError,
    ReconciliationMismatch,
    ReconciliationRecovered,
)

logger = logging.getLogger(__name__)


class BrokerPositions(Protocol):
    def get_positions(self) -> Awaitable[list[Position]]: ...


class PositionBook(Protocol):
    def all_positions(self) -> list[Position]: ...


def diff_positions(
    bot: list[Position],
    broker: list[Position],
    *,
    price_tolerance: float = 0.05,
) -> list[PositionMismatch]:
    """Compare two position lists keyed by symbol."""
    bot_by_symbol = {p.symbol: p for p in bot}
    broker_by_symbol = {p.symbol: p for p in broker}
    mismatches: list[PositionMismatch] = []

    for symbol, theirs in broker_by_symbol.items():
        ours = bot_by_symbol.get(symbol)
        if ours is None:
            mismatches.append(
                PositionMismatch(symbol, MismatchKind.MISSING_IN_BOT, broker_quantity=theirs.quantity)
            )
            continue
        if ours.quantity != theirs.quantity:
            mismatches.append(
                PositionMismatch(
                    symbol,
                    MismatchKind.QUANTITY_MISMATCH,
                    bot_quantity=ours.quantity,
                    broker_quantity=theirs.quantity,
                )
            )
        if theirs.entry_price:
            drift = abs(ours.entry_price - theirs.entry_price) / theirs.entry_price
            if drift > price_tolerance:
                mismatches.append(
                    PositionMismatch(
                        symbol,
                        MismatchKind.PRICE_MISMATCH,
                        bot_price=ours.entry_price,
                        broker_price=theirs.entry_price,
                    )
                )

    for symbol, ours in bot_by_symbol.items():
        if symbol not in broker_by_symbol:
            mismatches.append(
                PositionMismatch(symbol, MismatchKind.MISSING_IN_BROKER, bot_quantity=ours.quantity)
            )
    return mismatches


class ReconciliationService:
    """
    Parameters
    ----------
    broker:
        Authoritative position source.
    book:
        Internal position state (PositionManager).
    interval_seconds:
        Loop period for ``start()``.
    price_tolerance:
        Relative entry-price drift tolerated before flagging a mismatch.
    critical_threshold:
        Consecutive failing cycles that trigger the critical escalation.
    """

    def __init__(
        self,
        broker: BrokerPositions,
        book: PositionBook,
        bus: EventBus,
        *,
        interval_seconds: float = 30.0,
        price_tolerance: float = 0.05,
        critical_threshold: int = 3,
    ) -> None:
        self._broker = broker
        self._book = book
        self._bus = bus
        self._interval = interval_seconds
        self._tolerance = price_tolerance
        self._threshold = critical_threshold
        self._consecutive = 0
        self._escalated = False
        self._task: asyncio.Task | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _failed_cycle(self, mismatches: tuple[PositionMismatch, ...]) -> None:
        self._consecutive += 1
        if self._consecutive >= self._threshold and not self._escalated:
            self._escalated = True
            logger.error(
                "CRITICAL: %d consecutive reconciliation failures", self._consecutive
            )
            self._bus.publish(ReconciliationCritical(mismatches=mismatches, consecutive=self._consecutive))

    async def reconcile(self) -> list[PositionMismatch] | None:
        """Run one cycle. Returns the mismatches, or None if the cycle errored."""
        try:
            broker_positions = await self._broker.get_positions()
        except Exception as exc:
            logger.error("Reconciliation failed: %s", exc)
            self._bus.publish(ReconciliationError(error=str(exc), consecutive=self._consecutive + 1))
            self._failed_cycle(())
            return None

        mismatches = diff_positions(
            self._book.all_positions(), broker_positions, price_tolerance=self._tolerance
        )
        if mismatches:
            for m in mismatches:
                logger.error("Reconciliation mismatch %s: %s", m.kind.value, m.describe())
            frozen = tuple(mismatches)
            self._bus.publish(ReconciliationMismatch(mismatches=frozen, consecutive=self._consecutive + 1))
            self._failed_cycle(frozen)
            return mismatches

        if self._consecutive:
            logger.info("Reconciliation recovered after %d failing cycle(s)", self._consecutive)
            self._bus.publish(ReconciliationRecovered(previous_failures=self._consecutive))
        self._consecutive = 0
        self._escalated = False
        return mismatches

    async def _loop(self) -> None:
        while True:
            await self.reconcile()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            logger.warning("Reconciliation already running")
            return
        logger.info("Starting reconciliation every %.0fs", self._interval)
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
        logger.info("Reconciliation stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "consecutive_failures": self._consecutive,
            "healthy": self._consecutive < self._threshold,
        }
