"""Tests for the order fill state machine and the client-side order timeout."""

import asyncio
from typing import Callable

import pytest

from execution.fill_monitor import FillMonitor, OrderTimeoutGuard
from trade_core.contracts import FillOutcome, OrderSide, OrderStatus, OrderType

from conftest import FakeBroker


class FakeTime:
    """Monotonic clock advanced by the monitor's own sleeps; runs a hook per poll."""

    def __init__(self) -> None:
        self.now = 0.0
        self.polls = 0
        self.on_sleep: Callable[[int], None] | None = None

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.polls += 1
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(self.polls)


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def resting() -> FakeBroker:
    broker = FakeBroker(prices={"INFY": 100.0})
    broker.fill_on_place = False
    return broker


@pytest.fixture
def monitor(resting: FakeBroker, fake_time: FakeTime) -> FillMonitor:
    return FillMonitor(resting, poll_interval=2.0, timeout=30.0, clock=fake_time.clock, sleep=fake_time.sleep)


async def _limit(broker: FakeBroker, qty: int = 10) -> str:
    order = await broker.place_order("INFY", OrderSide.BUY, OrderType.LIMIT, qty, limit_price=100.2)
    return order.order_id


class TestWaitForFill:
    @pytest.mark.asyncio
    async def test_complete(self, resting: FakeBroker, monitor: FillMonitor, fake_time: FakeTime) -> None:
        order_id = await _limit(resting)
        fake_time.on_sleep = lambda n: resting.fill(order_id) if n == 2 else None
        result = await monitor.wait_for_fill(order_id, 10)
        assert result.outcome is FillOutcome.COMPLETE
        assert result.filled == 10
        assert result.average_price == 100.0

    @pytest.mark.asyncio
    async def test_partial_then_complete(self, resting: FakeBroker, monitor: FillMonitor, fake_time: FakeTime) -> None:
        order_id = await _limit(resting)

        def script(n: int) -> None:
            if n == 1:
                resting.fill(order_id, quantity=4)
            elif n == 3:
                resting.fill(order_id, quantity=6)

        fake_time.on_sleep = script
        result = await monitor.wait_for_fill(order_id, 10)
        assert result.outcome is FillOutcome.COMPLETE
        assert result.filled == 10

    @pytest.mark.asyncio
    async def test_partial_at_deadline(self, resting: FakeBroker, monitor: FillMonitor, fake_time: FakeTime) -> None:
        order_id = await _limit(resting)
        fake_time.on_sleep = lambda n: resting.fill(order_id, quantity=3) if n == 1 else None
        result = await monitor.wait_for_fill(order_id, 10)
        assert result.outcome is FillOutcome.PARTIAL
        assert result.filled == 3
        assert result.order_status is OrderStatus.PARTIALLY_FILLED
        assert fake_time.now == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_timeout_without_fill(self, resting: FakeBroker, monitor: FillMonitor, fake_time: FakeTime) -> None:
        order_id = await _limit(resting)
        result = await monitor.wait_for_fill(order_id, 10)
        assert result.outcome is FillOutcome.TIMEOUT
        assert result.filled == 0
        assert result.order_status is OrderStatus.PENDING
        assert fake_time.polls == 15

    @pytest.mark.asyncio
    async def test_rejected(self, resting: FakeBroker, monitor: FillMonitor) -> None:
        order_id = await _limit(resting)
        resting.orders[order_id].status = OrderStatus.REJECTED
        result = await monitor.wait_for_fill(order_id, 10)
        assert result.outcome is FillOutcome.FAILED
        assert result.order_status is OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_cancelled_keeps_partial_quantity(self, resting: FakeBroker, monitor: FillMonitor) -> None:
        order_id = await _limit(resting)
        resting.fill(order_id, quantity=2)
        await resting.cancel_order(order_id)
        result = await monitor.wait_for_fill(order_id, 10)
        assert result.outcome is FillOutcome.FAILED
        assert result.filled == 2

    @pytest.mark.asyncio
    async def test_vanished_order(self, monitor: FillMonitor) -> None:
        result = await monitor.wait_for_fill("O-404", 10)
        assert result.outcome is FillOutcome.FAILED
        assert result.filled == 0

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_hang(self, fake_time: FakeTime) -> None:
        class Broken:
            async def get_orders(self):
                raise ConnectionError("down")

        monitor = FillMonitor(Broken(), poll_interval=2.0, timeout=10.0, clock=fake_time.clock, sleep=fake_time.sleep)
        result = await monitor.wait_for_fill("O-1", 10)
        assert result.outcome is FillOutcome.TIMEOUT
        assert result.order_status is None

    @pytest.mark.asyncio
    async def test_on_poll_runs_before_each_read(
        self, resting: FakeBroker, monitor: FillMonitor, fake_time: FakeTime
    ) -> None:
        order_id = await _limit(resting)
        fake_time.on_sleep = lambda n: resting.fill(order_id) if n == 2 else None
        beats: list[float] = []
        result = await monitor.wait_for_fill(order_id, 10, on_poll=lambda: beats.append(fake_time.now))
        assert result.outcome is FillOutcome.COMPLETE
        assert beats == [0.0, 2.0, 4.0]


class TestOrderTimeoutGuard:
    @pytest.mark.asyncio
    async def test_fires_after_timeout(self, resting: FakeBroker) -> None:
        order_id = await _limit(resting)
        guard = OrderTimeoutGuard(resting, order_id, 0.01)
        guard.arm()
        await asyncio.sleep(0.05)
        assert guard.fired
        assert await guard.wait() is True
        assert resting.orders[order_id].status is OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_disarm_prevents_cancel(self, resting: FakeBroker) -> None:
        order_id = await _limit(resting)
        guard = OrderTimeoutGuard(resting, order_id, 0.01)
        guard.arm()
        assert guard.disarm() is True
        await asyncio.sleep(0.03)
        assert not guard.fired
        assert await guard.wait() is False
        assert resting.cancelled == []

    @pytest.mark.asyncio
    async def test_disarm_after_fire_reports_loss(self, resting: FakeBroker) -> None:
        order_id = await _limit(resting)
        guard = OrderTimeoutGuard(resting, order_id, 10.0)
        guard.arm()
        guard.fire_now()
        guard.fire_now()
        assert guard.disarm() is False
        assert await guard.wait() is True
        assert resting.cancelled == [order_id]

    @pytest.mark.asyncio
    async def test_cancel_refused(self, resting: FakeBroker) -> None:
        order_id = await _limit(resting)
        resting.fill(order_id)
        guard = OrderTimeoutGuard(resting, order_id, 10.0)
        guard.fire_now()
        assert await guard.wait() is False
