"""Tests for pending-order reconciliation against the broker order book."""

import asyncio

import pytest

from trade_core.contracts import OrderSide, OrderStatus, OrderType
from trade_core.events import EventBus, OrderReconciliationFailed, OrderStatusChanged, UntrackedOrderFound
from trade_core.order_reconciliation import PendingOrderReconciler
from trade_core.order_tracker import OrderTracker

from conftest import FakeBroker


class BrokenBook:
    async def get_orders(self):
        raise ConnectionError("broker unreachable")


@pytest.fixture
def broker() -> FakeBroker:
    broker = FakeBroker(prices={"INFY": 100.0})
    broker.fill_on_place = False
    return broker


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def bus(events: list) -> EventBus:
    bus = EventBus()
    for event_type in (OrderStatusChanged, OrderReconciliationFailed, UntrackedOrderFound):
        bus.subscribe(event_type, events.append)
    return bus


@pytest.fixture
def reconciler(broker: FakeBroker, bus: EventBus) -> PendingOrderReconciler:
    return PendingOrderReconciler(broker, OrderTracker(), bus, interval_seconds=0.01, max_missing_checks=3)


async def resting_limit(broker: FakeBroker):
    return await broker.place_order("INFY", OrderSide.BUY, OrderType.LIMIT, 10, limit_price=99.0)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_follows_order_to_fill(self, broker: FakeBroker, reconciler: PendingOrderReconciler, events: list) -> None:
        order = await resting_limit(broker)
        reconciler.watch(order)
        assert await reconciler.reconcile() == 0

        broker.fill(order.order_id, quantity=4)
        assert await reconciler.reconcile() == 1
        broker.fill(order.order_id)
        assert await reconciler.reconcile() == 1

        assert [(e.previous, e.order.status) for e in events] == [
            (OrderStatus.PENDING, OrderStatus.PARTIALLY_FILLED),
            (OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED),
        ]
        assert events[1].previous_filled == 4
        assert reconciler.pending_ids() == []
        assert reconciler.tracker.get(order.order_id).status is OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_cancellation_ends_tracking(self, broker: FakeBroker, reconciler: PendingOrderReconciler, events: list) -> None:
        order = await resting_limit(broker)
        reconciler.watch(order)
        await broker.cancel_order(order.order_id)
        assert await reconciler.reconcile() == 1
        assert events[0].order.status is OrderStatus.CANCELLED
        assert reconciler.pending_ids() == []

    @pytest.mark.asyncio
    async def test_missing_order_given_up_after_max_checks(
        self, broker: FakeBroker, reconciler: PendingOrderReconciler, events: list
    ) -> None:
        order = await resting_limit(broker)
        reconciler.watch(order)
        del broker.orders[order.order_id]
        for _ in range(2):
            await reconciler.reconcile()
        assert events == []
        await reconciler.reconcile()
        [failed] = events
        assert isinstance(failed, OrderReconciliationFailed)
        assert failed.checks == 3
        assert reconciler.pending_ids() == []

    @pytest.mark.asyncio
    async def test_reappearing_order_resets_missing_count(
        self, broker: FakeBroker, reconciler: PendingOrderReconciler, events: list
    ) -> None:
        order = await resting_limit(broker)
        reconciler.watch(order)
        stored = broker.orders.pop(order.order_id)
        await reconciler.reconcile()
        await reconciler.reconcile()
        broker.orders[order.order_id] = stored
        await reconciler.reconcile()
        del broker.orders[order.order_id]
        await reconciler.reconcile()
        await reconciler.reconcile()
        assert events == []
        assert reconciler.pending_ids() == [order.order_id]

    @pytest.mark.asyncio
    async def test_terminal_order_not_watched(self, broker: FakeBroker, reconciler: PendingOrderReconciler) -> None:
        order = await resting_limit(broker)
        broker.fill(order.order_id)
        reconciler.watch(order)
        assert reconciler.pending_ids() == []
        assert order.order_id in reconciler.tracker

    @pytest.mark.asyncio
    async def test_broker_error_counted(self, bus: EventBus) -> None:
        reconciler = PendingOrderReconciler(BrokenBook(), OrderTracker(), bus)
        reconciler.watch(await resting_limit(FakeBroker()))
        assert await reconciler.reconcile() == 0
        assert reconciler.status()["errors"] == 1
        assert reconciler.status()["pending_orders"] == 1

    @pytest.mark.asyncio
    async def test_nothing_pending_skips_broker(self, bus: EventBus) -> None:
        reconciler = PendingOrderReconciler(BrokenBook(), OrderTracker(), bus)
        assert await reconciler.reconcile() == 0
        assert reconciler.status()["errors"] == 0


class TestFullReconcile:
    @pytest.mark.asyncio
    async def test_adopts_untracked_live_orders(
        self, broker: FakeBroker, reconciler: PendingOrderReconciler, events: list
    ) -> None:
        watched = await resting_limit(broker)
        reconciler.watch(watched)
        stray = await resting_limit(broker)
        done = await resting_limit(broker)
        broker.fill(done.order_id)

        adopted = await reconciler.full_reconcile()
        assert [o.order_id for o in adopted] == [stray.order_id]
        assert [e.order.order_id for e in events if isinstance(e, UntrackedOrderFound)] == [stray.order_id]
        assert reconciler.pending_ids() == sorted([watched.order_id, stray.order_id])

    @pytest.mark.asyncio
    async def test_errors_propagate(self, bus: EventBus) -> None:
        reconciler = PendingOrderReconciler(BrokenBook(), OrderTracker(), bus)
        with pytest.raises(ConnectionError):
            await reconciler.full_reconcile()


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_stop(self, broker: FakeBroker, reconciler: PendingOrderReconciler, events: list) -> None:
        order = await resting_limit(broker)
        reconciler.watch(order)
        reconciler.start()
        assert reconciler.running
        broker.fill(order.order_id)
        await asyncio.sleep(0.05)
        await reconciler.stop()
        assert not reconciler.running
        assert events[-1].order.status is OrderStatus.FILLED
