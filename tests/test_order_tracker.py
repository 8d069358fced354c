"""Tests for order lifecycle tracking and transition validation."""

from dataclasses import replace
from datetime import timedelta

import pytest

from trade_core.contracts import Order, OrderSide, OrderStatus, OrderType
from trade_core.order_tracker import OrderTracker, is_valid_transition

from conftest import SESSION_NOW


class Clock:
    def __init__(self) -> None:
        self.now = SESSION_NOW

    def __call__(self):
        return self.now


def order(order_id: str = "O-1", status: OrderStatus = OrderStatus.PENDING, filled: int = 0) -> Order:
    return Order(order_id, "INFY", OrderSide.BUY, OrderType.LIMIT, 10, status=status, filled_quantity=filled)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def tracker(clock: Clock) -> OrderTracker:
    return OrderTracker(clock)


class TestTransitions:
    @pytest.mark.parametrize(
        "previous, status, allowed",
        [
            (OrderStatus.PENDING, OrderStatus.FILLED, True),
            (OrderStatus.PENDING, OrderStatus.REJECTED, True),
            (OrderStatus.PARTIALLY_FILLED, OrderStatus.CANCELLED, True),
            (OrderStatus.PARTIALLY_FILLED, OrderStatus.PENDING, False),
            (OrderStatus.PARTIALLY_FILLED, OrderStatus.REJECTED, False),
            (OrderStatus.FILLED, OrderStatus.CANCELLED, False),
            (OrderStatus.CANCELLED, OrderStatus.PENDING, False),
        ],
    )
    def test_table(self, previous: OrderStatus, status: OrderStatus, allowed: bool) -> None:
        assert is_valid_transition(previous, status) is allowed


class TestTracking:
    def test_track_snapshots_the_order(self, tracker: OrderTracker) -> None:
        live = order()
        tracker.track(live)
        live.status = OrderStatus.FILLED
        assert tracker.get("O-1").status is OrderStatus.PENDING

    def test_update_records_history(self, tracker: OrderTracker, clock: Clock) -> None:
        tracker.track(order())
        clock.now += timedelta(seconds=5)
        first = tracker.update(order(status=OrderStatus.PARTIALLY_FILLED, filled=4))
        second = tracker.update(order(status=OrderStatus.FILLED, filled=10))
        assert first.previous is OrderStatus.PENDING
        assert second.status is OrderStatus.FILLED
        tracked = tracker.get("O-1")
        assert [t.status for t in tracked.history] == [OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED]
        assert tracked.updated_at == SESSION_NOW + timedelta(seconds=5)
        assert not tracked.can_cancel

    def test_unchanged_snapshot_is_not_a_transition(self, tracker: OrderTracker) -> None:
        tracker.track(order())
        assert tracker.update(order()) is None

    def test_unknown_order_ignored(self, tracker: OrderTracker) -> None:
        assert tracker.update(order("O-9", OrderStatus.FILLED, 10)) is None

    def test_stale_snapshot_refused(self, tracker: OrderTracker) -> None:
        tracker.track(order())
        tracker.update(order(status=OrderStatus.FILLED, filled=10))
        assert tracker.update(order(status=OrderStatus.PARTIALLY_FILLED, filled=4)) is None
        assert tracker.get("O-1").status is OrderStatus.FILLED
        assert tracker.stats()["invalid_transitions"] == 1

    def test_partial_fill_must_grow(self, tracker: OrderTracker) -> None:
        tracker.track(order(status=OrderStatus.PARTIALLY_FILLED, filled=4))
        assert tracker.update(order(status=OrderStatus.PARTIALLY_FILLED, filled=3)) is None
        assert tracker.update(order(status=OrderStatus.PARTIALLY_FILLED, filled=6)) is not None
        assert tracker.get("O-1").order.filled_quantity == 6

    def test_retrack_keeps_existing_record(self, tracker: OrderTracker) -> None:
        first = tracker.track(order())
        assert tracker.track(order(status=OrderStatus.FILLED, filled=10)) is first


class TestLinksAndQueries:
    def test_children_linked_to_parent(self, tracker: OrderTracker) -> None:
        tracker.track(order("entry"))
        tracker.track(replace(order("close"), side=OrderSide.SELL), parent_id="entry")
        assert [c.order.order_id for c in tracker.children("entry")] == ["close"]
        assert tracker.get("close").parent_id == "entry"
        assert tracker.children("unknown") == []

    def test_active_and_stats(self, tracker: OrderTracker) -> None:
        tracker.track(order("a"))
        tracker.track(order("b", OrderStatus.PARTIALLY_FILLED, 2))
        tracker.track(order("c", OrderStatus.FILLED, 10))
        assert sorted(o.order_id for o in tracker.active()) == ["a", "b"]
        stats = tracker.stats()
        assert stats["total_orders"] == 3
        assert stats["active_orders"] == 2
        assert stats["by_status"] == {"FILLED": 1, "PARTIALLY_FILLED": 1, "PENDING": 1}

    def test_purge_drops_old_finished_orders(self, tracker: OrderTracker, clock: Clock) -> None:
        tracker.track(order("done", OrderStatus.FILLED, 10))
        tracker.track(order("live"))
        clock.now += timedelta(hours=2)
        assert tracker.purge(3600) == 1
        assert "done" not in tracker
        assert "live" in tracker
