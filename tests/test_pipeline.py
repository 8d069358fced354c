"""Tests for the signal execution pipeline: serialisation, dedupe, fills and protection."""

import asyncio
from dataclasses import replace

import pytest

from trade_core.contracts import (
    Action,
    Direction,
    ExecutionStatus,
    OrderSide,
    OrderType,
    Signal,
)
from trade_core.idempotency import IdempotencyState
from execution.pipeline import apply_slippage, default_stop, limit_price

from conftest import FAST_SETTINGS, FakeBroker, Harness, build_harness


def buy(qty: int | None = 10, stop: float | None = 98.0, target: float | None = 110.0) -> Signal:
    return Signal("INFY", Action.BUY, reason="breakout", quantity=qty, stop_loss=stop, target=target)


class SlowQuoteBroker(FakeBroker):
    async def get_ltp(self, symbol: str) -> float | None:
        await asyncio.sleep(0.01)
        return await super().get_ltp(symbol)


class PartialLimitBroker(FakeBroker):
    """Buy LIMIT entries fill 4 shares and then rest; everything else behaves normally."""

    def _marketable(self, order) -> bool:
        if order.order_type is OrderType.LIMIT:
            return False
        return super()._marketable(order)

    async def place_order(self, symbol, side, order_type, quantity, limit_price=None, stop_loss=None, target=None):
        order = await super().place_order(symbol, side, order_type, quantity, limit_price, stop_loss, target)
        if order is not None and order_type is OrderType.LIMIT and side is OrderSide.BUY:
            self.fill(order.order_id, quantity=4)
        return order


class TestPricingHelpers:
    def test_slippage_direction(self) -> None:
        assert apply_slippage(100.0, OrderSide.BUY, 0.01) == pytest.approx(101.0)
        assert apply_slippage(100.0, OrderSide.SELL, 0.01) == pytest.approx(99.0)

    def test_slippage_buffer_clamped(self) -> None:
        assert apply_slippage(100.0, OrderSide.BUY, 0.5) == pytest.approx(105.0)
        assert apply_slippage(100.0, OrderSide.BUY, -1.0) == pytest.approx(100.0)

    def test_default_stop(self) -> None:
        assert default_stop(100.0, OrderSide.BUY, 0.005) == pytest.approx(99.5)
        assert default_stop(100.0, OrderSide.SELL, 0.005) == pytest.approx(100.5)

    def test_limit_price_rounded(self) -> None:
        assert limit_price(100.0, OrderSide.BUY, 0.002) == 100.2
        assert limit_price(100.0, OrderSide.SELL, 0.002) == 99.8


class TestEntry:
    @pytest.mark.asyncio
    async def test_executed_with_protection(self, harness: Harness) -> None:
        report = await harness.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.EXECUTED
        assert report.filled == 10
        assert report.fill_price == 100.0

        [entry] = harness.broker.placed_of(OrderType.LIMIT)[:1]
        assert entry.limit_price == 100.2
        position = harness.positions.get_position("INFY")
        assert position.quantity == 10
        assert position.stop_loss == 98.0
        assert position.expected_entry_price == pytest.approx(100.1)

        protection = harness.stop_losses.get("INFY")
        assert protection.stop_price == 98.0
        assert protection.exit_side is OrderSide.SELL
        assert harness.idempotency.get("INFY:BUY:10").state is IdempotencyState.COMPLETED
        assert not harness.locks.is_locked("INFY")
        assert "trade_executed" in harness.notifier.names()

    @pytest.mark.asyncio
    async def test_default_sizing(self, harness: Harness) -> None:
        report = await harness.pipeline.handle_signal(buy(qty=None, stop=None, target=None))
        assert report.status is ExecutionStatus.EXECUTED
        assert report.filled == 499
        stop = harness.stop_losses.get("INFY").stop_price
        assert stop == pytest.approx(100.1 * 0.995)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, harness: Harness) -> None:
        await harness.pipeline.handle_signal(buy())
        report = await harness.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.DUPLICATE
        assert len([o for o in harness.broker.placed if o.side is OrderSide.BUY]) == 1

    @pytest.mark.asyncio
    async def test_gate_rejection_touches_nothing(self, harness: Harness) -> None:
        harness.runtime.set_kill_switch(True, "test")
        report = await harness.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.REJECTED
        assert report.reason == "Kill switch active"
        assert harness.broker.placed == []
        assert len(harness.idempotency) == 0

    @pytest.mark.asyncio
    async def test_concurrent_signals_serialised_per_symbol(self) -> None:
        h = build_harness(SlowQuoteBroker(prices={"INFY": 100.0}))
        first, second = await asyncio.gather(
            h.pipeline.handle_signal(buy(qty=10)),
            h.pipeline.handle_signal(buy(qty=11)),
        )
        assert first.status is ExecutionStatus.EXECUTED
        assert second.status is ExecutionStatus.SKIPPED
        assert second.reason == "Symbol locked"
        assert len(h.broker.placed_of(OrderType.LIMIT)) == 2  # entry plus target leg

    @pytest.mark.asyncio
    async def test_other_symbols_not_blocked(self) -> None:
        h = build_harness(SlowQuoteBroker(prices={"INFY": 100.0, "TCS": 200.0}))
        tcs = Signal("TCS", Action.SELL, quantity=5, stop_loss=204.0)
        first, second = await asyncio.gather(h.pipeline.handle_signal(buy()), h.pipeline.handle_signal(tcs))
        assert first.status is ExecutionStatus.EXECUTED
        assert second.status is ExecutionStatus.EXECUTED
        assert h.positions.get_position("TCS").direction is Direction.SHORT

    @pytest.mark.asyncio
    async def test_risk_rejection_alerts_and_fails_record(self, harness: Harness) -> None:
        report = await harness.pipeline.handle_signal(buy(qty=1000))
        assert report.status is ExecutionStatus.REJECTED
        assert "Position size" in report.reason
        assert harness.broker.placed == []
        assert "risk_alert" in harness.notifier.names()
        assert harness.idempotency.get("INFY:BUY:1000").state is IdempotencyState.FAILED

    @pytest.mark.asyncio
    async def test_no_price_aborts(self, harness: Harness) -> None:
        report = await harness.pipeline.handle_signal(Signal("WIPRO", Action.BUY, quantity=1, stop_loss=1.0))
        assert report.status is ExecutionStatus.ABORTED
        assert report.reason == "Could not fetch last traded price"
        assert harness.idempotency.get("WIPRO:BUY:1").state is IdempotencyState.FAILED

    @pytest.mark.asyncio
    async def test_zero_quantity_aborts(self, harness: Harness) -> None:
        harness.broker.balance = 1.0
        report = await harness.pipeline.handle_signal(buy(qty=None, stop=None))
        assert report.status is ExecutionStatus.ABORTED
        assert harness.broker.placed == []

    @pytest.mark.asyncio
    async def test_placement_failure_aborts(self, harness: Harness) -> None:
        harness.broker.refuse.add(OrderType.LIMIT)
        report = await harness.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.ABORTED
        assert report.reason == "Order placement failed"
        assert harness.idempotency.get("INFY:BUY:10").state is IdempotencyState.FAILED
        assert "error" in harness.notifier.names()
        # A later fill for the symbol must not inherit this signal's levels.
        assert harness.positions._pending == {}

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_everything(self, harness: Harness, monkeypatch) -> None:
        def boom(*args, **kwargs):
            raise RuntimeError("risk engine crashed")

        monkeypatch.setattr(harness.risk, "check_order_risk", boom)
        report = await harness.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.ERROR
        assert not harness.locks.is_locked("INFY")
        assert harness.idempotency.get("INFY:BUY:10").state is IdempotencyState.FAILED
        assert (await harness.pipeline.handle_signal(buy())).status is ExecutionStatus.ERROR


class TestProtectionFailure:
    @pytest.mark.asyncio
    async def test_exactly_one_emergency_close(self, harness: Harness) -> None:
        harness.broker.refuse.add(OrderType.STOP)
        report = await harness.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.PROTECTION_FAILED
        closes = harness.broker.placed_of(OrderType.MARKET)
        assert len(closes) == 1
        assert closes[0].side is OrderSide.SELL
        assert closes[0].quantity == 10
        assert report.notes[-1] == f"emergency close {closes[0].order_id}"
        assert not harness.positions.has_position("INFY")
        assert not harness.runtime.is_kill_switch_active()
        assert harness.idempotency.get("INFY:BUY:10").state is IdempotencyState.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_emergency_close_reported(self, harness: Harness) -> None:
        harness.broker.refuse.update({OrderType.STOP, OrderType.MARKET})
        report = await harness.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.PROTECTION_FAILED
        assert "manual intervention" in report.notes[-1]
        assert harness.positions.has_position("INFY")


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_unfilled_limit_cancelled_on_timeout(self, broker: FakeBroker) -> None:
        broker.fill_on_place = False
        h = build_harness(broker)
        report = await h.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.CANCELLED_TIMEOUT
        assert report.filled == 0
        assert broker.cancelled == [report.order_id]
        assert not h.positions.has_position("INFY")
        assert h.stop_losses.get("INFY") is None
        assert h.idempotency.get("INFY:BUY:10").state is IdempotencyState.FAILED

    @pytest.mark.asyncio
    async def test_partial_fill_flattened_when_cancel_wins(self) -> None:
        broker = PartialLimitBroker(prices={"INFY": 100.0})
        h = build_harness(broker)
        report = await h.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.CANCELLED_TIMEOUT
        assert report.filled == 4
        assert report.notes == ["flattened 4"]
        [close] = broker.placed_of(OrderType.MARKET)
        assert close.side is OrderSide.SELL and close.quantity == 4
        assert not h.positions.has_position("INFY")
        assert broker.placed_of(OrderType.STOP) == []

    @pytest.mark.asyncio
    async def test_bracket_order_without_fill_is_unconfirmed(self) -> None:
        broker = FakeBroker(prices={"INFY": 100.0})
        broker.supports_bracket_orders = True
        broker.fill_on_place = False
        settings = replace(FAST_SETTINGS, bracket_orders=True)
        h = build_harness(broker, settings=settings)
        report = await h.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.UNCONFIRMED
        assert broker.placed[0].order_type is OrderType.BRACKET
        assert broker.cancelled == []
        assert h.idempotency.get("INFY:BUY:10").state is IdempotencyState.COMPLETED

    @pytest.mark.asyncio
    async def test_lock_held_for_whole_fill_wait(self) -> None:
        broker = FakeBroker(prices={"INFY": 100.0})
        broker.supports_bracket_orders = True
        broker.fill_on_place = False
        settings = replace(FAST_SETTINGS, bracket_orders=True, fill_timeout_seconds=0.5)
        h = build_harness(broker, settings=settings, lock_ttl=0.1)

        first = asyncio.create_task(h.pipeline.handle_signal(buy(qty=10)))
        await asyncio.sleep(0.25)
        assert not first.done()
        second = await h.pipeline.handle_signal(buy(qty=11))
        assert second.status is ExecutionStatus.SKIPPED
        assert second.reason == "Symbol locked"

        assert (await first).status is ExecutionStatus.UNCONFIRMED
        assert len(broker.placed) == 1
        assert not h.locks.is_locked("INFY")

    @pytest.mark.asyncio
    async def test_bracket_fill_skips_client_protection(self) -> None:
        broker = FakeBroker(prices={"INFY": 100.0})
        broker.supports_bracket_orders = True
        settings = replace(FAST_SETTINGS, bracket_orders=True)
        h = build_harness(broker, settings=settings)
        report = await h.pipeline.handle_signal(buy())
        assert report.status is ExecutionStatus.EXECUTED
        assert broker.placed_of(OrderType.STOP) == []
        assert broker.placed[0].stop_price == 98.0
        assert broker.placed[0].target_price == 110.0


class TestClosing:
    @pytest.mark.asyncio
    async def test_close_signal(self, harness: Harness) -> None:
        await harness.pipeline.handle_signal(buy())
        report = await harness.pipeline.handle_signal(Signal("INFY", Action.CLOSE, reason="exit rule"))
        assert report.status is ExecutionStatus.CLOSED
        assert report.filled == 10
        assert not harness.positions.has_position("INFY")
        assert harness.stop_losses.get("INFY") is None
        assert len(harness.broker.cancelled) == 2

    @pytest.mark.asyncio
    async def test_close_without_position_skipped(self, harness: Harness) -> None:
        report = await harness.pipeline.handle_signal(Signal("INFY", Action.CLOSE))
        assert report.status is ExecutionStatus.SKIPPED
        assert report.reason == "No open position"

    @pytest.mark.asyncio
    async def test_close_position_respects_lock(self, harness: Harness) -> None:
        await harness.pipeline.handle_signal(buy())
        harness.locks.acquire("INFY")
        report = await harness.pipeline.close_position("INFY", "Stop loss triggered")
        assert report.status is ExecutionStatus.SKIPPED
        forced = await harness.pipeline.close_position("INFY", "Emergency", force=True)
        assert forced.status is ExecutionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_close_all(self, harness: Harness) -> None:
        await harness.pipeline.handle_signal(buy())
        await harness.pipeline.handle_signal(Signal("TCS", Action.SELL, quantity=5, stop_loss=204.0))
        reports = await harness.pipeline.close_all("Auto square-off")
        assert sorted(r.symbol for r in reports) == ["INFY", "TCS"]
        assert all(r.status is ExecutionStatus.CLOSED for r in reports)
        assert harness.positions.all_positions() == []

    @pytest.mark.asyncio
    async def test_close_all_empty(self, harness: Harness) -> None:
        assert await harness.pipeline.close_all("nothing") == []
