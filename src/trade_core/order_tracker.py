"""
Order lifecycle tracking with validated status transitions.

Broker snapshots are applied through a fixed transition table:

  PENDING           -> PARTIALLY_FILLED, FILLED, REJECTED, CANCELLED
  PARTIALLY_FILLED  -> PARTIALLY_FILLED (more filled), FILLED, CANCELLED
  FILLED, REJECTED, CANCELLED are terminal

A snapshot that would move an order backwards (a stale read after a fill, a
terminal order reported live again) is refused and counted, so the tracked
state only ever moves forward. Entry orders can carry child orders (protective
legs, emergency closes) linked by ``parent_id``.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from trade_core.contracts import Order, OrderStatus

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED, OrderStatus.REJECTED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PARTIALLY_FILLED: frozenset(
        {OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED, OrderStatus.CANCELLED}
    ),
    OrderStatus.FILLED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def is_valid_transition(previous: OrderStatus, status: OrderStatus) -> bool:
    return status in _TRANSITIONS[previous]


@dataclass(frozen=True)
class OrderTransition:
    previous: OrderStatus
    status: OrderStatus
    filled_quantity: int
    at: datetime


@dataclass
class TrackedOrder:
    order: Order
    created_at: datetime
    updated_at: datetime
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    history: list[OrderTransition] = field(default_factory=list)

    @property
    def status(self) -> OrderStatus:
        return self.order.status

    @property
    def can_cancel(self) -> bool:
        return not self.order.status.is_terminal


class OrderTracker:
    """
    Parameters
    ----------
    clock:
        Wall-clock source for transition timestamps; injectable for tests.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._orders: dict[str, TrackedOrder] = {}
        self._invalid = 0

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def get(self, order_id: str) -> TrackedOrder | None:
        return self._orders.get(order_id)

    def track(self, order: Order, parent_id: str | None = None) -> TrackedOrder:
        """Start tracking a snapshot of *order*. Re-tracking an order returns the existing record."""
        existing = self._orders.get(order.order_id)
        if existing is not None:
            return existing
        now = self._clock()
        tracked = TrackedOrder(order=replace(order), created_at=now, updated_at=now, parent_id=parent_id)
        self._orders[order.order_id] = tracked
        if parent_id is not None:
            parent = self._orders.get(parent_id)
            if parent is not None:
                parent.children.append(order.order_id)
            else:
                logger.warning("Order %s linked to unknown parent %s", order.order_id, parent_id)
        logger.debug("Tracking order %s (%s %s)", order.order_id, order.symbol, order.status.value)
        return tracked

    def update(self, order: Order) -> OrderTransition | None:
        """
        Apply a broker snapshot.

        Returns the recorded transition, or None when the order is unknown,
        unchanged, or the move is not allowed.
        """
        tracked = self._orders.get(order.order_id)
        if tracked is None:
            return None
        current = tracked.order
        if order.status is current.status and order.filled_quantity == current.filled_quantity:
            return None

        allowed = is_valid_transition(current.status, order.status)
        if order.status is OrderStatus.PARTIALLY_FILLED and current.status is OrderStatus.PARTIALLY_FILLED:
            allowed = order.filled_quantity > current.filled_quantity
        if not allowed:
            self._invalid += 1
            logger.warning(
                "Ignoring invalid transition for %s: %s (%d filled) -> %s (%d filled)",
                order.order_id, current.status.value, current.filled_quantity,
                order.status.value, order.filled_quantity,
            )
            return None

        now = self._clock()
        transition = OrderTransition(current.status, order.status, order.filled_quantity, now)
        tracked.order = replace(order)
        tracked.updated_at = now
        tracked.history.append(transition)
        logger.info(
            "Order %s %s -> %s (%d/%d filled)",
            order.order_id, transition.previous.value, order.status.value, order.filled_quantity, order.quantity,
        )
        return transition

    def children(self, order_id: str) -> list[TrackedOrder]:
        tracked = self._orders.get(order_id)
        if tracked is None:
            return []
        return [self._orders[c] for c in tracked.children if c in self._orders]

    def active(self) -> list[Order]:
        return [t.order for t in self._orders.values() if not t.order.status.is_terminal]

    def purge(self, max_age_seconds: float) -> int:
        """Forget terminal orders last updated more than *max_age_seconds* ago."""
        now = self._clock()
        stale = [
            order_id
            for order_id, t in self._orders.items()
            if t.order.status.is_terminal and (now - t.updated_at).total_seconds() > max_age_seconds
        ]
        for order_id in stale:
            del self._orders[order_id]
        if stale:
            logger.debug("Purged %d finished order(s)", len(stale))
        return len(stale)

    def stats(self) -> dict[str, Any]:
        by_status = Counter(t.order.status.value for t in self._orders.values())
        return {
            "total_orders": len(self._orders),
            "active_orders": sum(1 for t in self._orders.values() if not t.order.status.is_terminal),
            "by_status": dict(sorted(by_status.items())),
            "invalid_transitions": self._invalid,
        }
