"""
Execution pipeline: one strategy signal in, at most one broker order out.

Flow per signal:
  gate check -> per-symbol lock -> idempotency -> price (retried) ->
  slippage-adjusted entry -> stop -> balance refresh (retried) -> sizing ->
  risk check -> order mechanics -> placement (retried) -> fill wait ->
  protection (non-bracket mode)

CLOSE signals skip pricing, sizing and risk. Nothing raised inside the lock
escapes ``handle_signal``; every exit path releases the lock and leaves the
idempotency record COMPLETED or FAILED.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Callable

from config.loader import ExecutionConfig
from config.runtime import RuntimeState
from trade_core.contracts import (
    Action,
    Direction,
    ExecutionReport,
    ExecutionStatus,
    FillOutcome,
    FillResult,
    Order,
    OrderSide,
    OrderType,
    Signal,
    TradingMode,
)
from trade_core.events import DuplicateSignalRejected, EventBus
from trade_core.idempotency import IdempotencyRegistry, make_key
from trade_core.order_reconciliation import PendingOrderReconciler
from trade_core.position_manager import PositionManager
from trade_core.retry import RetryError, retry_async
from trade_core.risk_manager import RiskManager
from trade_core.signal_gate import SignalGate
from trade_core.symbol_lock import LOCK_BUSY, SymbolLockManager

from broker.port import BrokerPort
from execution.fill_monitor import FillMonitor, OrderTimeoutGuard
from execution.notify import Notifier, SafeNotifier
from execution.stop_loss import StopLossManager

logger = logging.getLogger(__name__)

MAX_SLIPPAGE_BUFFER = 0.05

# Outcomes that leave an order live or filled; the idempotency record becomes
# COMPLETED. Everything else is FAILED and may be retried by a later signal.
_ORDER_STANDS = frozenset(
    {
        ExecutionStatus.EXECUTED,
        ExecutionStatus.CLOSED,
        ExecutionStatus.PROTECTION_FAILED,
        ExecutionStatus.UNCONFIRMED,
    }
)


# ---------------------------------------------------------------------------
# Pricing helpers
# ---------------------------------------------------------------------------


def apply_slippage(price: float, side: OrderSide, buffer: float) -> float:
    """Conservative expected entry: buys pushed up, sells pushed down."""
    buffer = min(max(buffer, 0.0), MAX_SLIPPAGE_BUFFER)
    factor = 1 + buffer if side is OrderSide.BUY else 1 - buffer
    return price * factor


def default_stop(price: float, side: OrderSide, pct: float) -> float:
    return price * (1 - pct) if side is OrderSide.BUY else price * (1 + pct)


def limit_price(ltp: float, side: OrderSide, tolerance: float) -> float:
    """Marketable limit within *tolerance* of the observed price."""
    raw = ltp * (1 + tolerance) if side is OrderSide.BUY else ltp * (1 - tolerance)
    return round(raw, 2)


class ExecutionPipeline:
    """
    Parameters
    ----------
    broker:
        Any BrokerPort.
    settings:
        Slippage, sizing, timeout and retry knobs (``ExecutionConfig``).
    runtime:
        Shared kill switch / mode handle; re-checked right before placement.
    clock:
        Returns the current aware datetime for gate checks.
    order_watch:
        Optional PendingOrderReconciler; every order placed here is handed to
        it so live orders are followed to a terminal state.
    """

    def __init__(
        self,
        broker: BrokerPort,
        *,
        bus: EventBus,
        risk: RiskManager,
        positions: PositionManager,
        stop_losses: StopLossManager,
        locks: SymbolLockManager,
        idempotency: IdempotencyRegistry,
        gate: SignalGate,
        runtime: RuntimeState,
        settings: ExecutionConfig | None = None,
        notifier: Notifier | None = None,
        fill_monitor: FillMonitor | None = None,
        clock: Callable[[], datetime] | None = None,
        order_watch: PendingOrderReconciler | None = None,
    ) -> None:
        self._broker = broker
        self._bus = bus
        self._risk = risk
        self._positions = positions
        self._stop_losses = stop_losses
        self._locks = locks
        self._idempotency = idempotency
        self._gate = gate
        self._runtime = runtime
        self._settings = settings or ExecutionConfig()
        self._notifier = notifier if isinstance(notifier, SafeNotifier) else SafeNotifier(notifier)
        self._fills = fill_monitor or FillMonitor(
            broker,
            poll_interval=self._settings.fill_poll_seconds,
            timeout=self._settings.fill_timeout_seconds,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._order_watch = order_watch

    def _watch(self, order: Order, parent_id: str | None = None) -> None:
        if self._order_watch is not None:
            self._order_watch.watch(order, parent_id=parent_id)

    @property
    def uses_bracket_orders(self) -> bool:
        """Broker-native brackets when configured, else in PAPER mode when the broker offers them."""
        supported = bool(getattr(self._broker, "supports_bracket_orders", False))
        if self._settings.bracket_orders is not None:
            return self._settings.bracket_orders and supported
        return supported and self._runtime.mode is TradingMode.PAPER

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_signal(self, signal: Signal, now: datetime | None = None) -> ExecutionReport:
        gate = self._gate.check(now or self._clock())
        if not gate.allowed:
            logger.info("Signal %s %s rejected: %s", signal.action.value, signal.symbol, gate.reason)
            return ExecutionReport(signal.symbol, signal.action, ExecutionStatus.REJECTED, gate.reason)

        logger.info(
            "Signal received: %s %s (%s, confidence %.2f)",
            signal.action.value, signal.symbol, signal.reason or "no reason", signal.confidence,
        )
        result = await self._locks.with_lock(
            signal.symbol, lambda keep_alive: self._guarded(signal, keep_alive)
        )
        if result is LOCK_BUSY:
            logger.warning("Order already in progress for %s, skipping signal", signal.symbol)
            return ExecutionReport(signal.symbol, signal.action, ExecutionStatus.SKIPPED, "Symbol locked")
        return result

    async def _guarded(self, signal: Signal, keep_alive: Callable[[], bool]) -> ExecutionReport:
        key = make_key(signal.symbol, signal.action, signal.quantity)
        if not self._idempotency.begin(key):
            self._bus.publish(DuplicateSignalRejected(symbol=signal.symbol, key=key))
            return ExecutionReport(signal.symbol, signal.action, ExecutionStatus.DUPLICATE, f"Duplicate of {key}")

        try:
            if signal.action is Action.CLOSE:
                report = await self._close_unlocked(signal.symbol, signal.reason or "Close signal")
            else:
                report = await self._enter(signal, keep_alive)
        except Exception as exc:
            logger.exception("Error executing %s %s", signal.action.value, signal.symbol)
            self._idempotency.fail(key)
            self._positions.discard_pending(signal.symbol)
            self._notifier.error(f"Error executing {signal.action.value} {signal.symbol}", str(exc))
            return ExecutionReport(signal.symbol, signal.action, ExecutionStatus.ERROR, str(exc))

        if report.status in _ORDER_STANDS:
            self._idempotency.complete(key, report.order_id or "")
        else:
            self._idempotency.fail(key)
        return report

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def _fetch_ltp(self, symbol: str) -> float:
        s = self._settings
        return await retry_async(
            lambda: self._broker.get_ltp(symbol),
            attempts=s.quote_retry_attempts,
            delay=s.quote_retry_delay_seconds,
            retry_if_none=True,
            label=f"LTP {symbol}",
        )

    async def _refresh_balance(self) -> float:
        s = self._settings
        balance = await retry_async(
            self._broker.get_account_balance,
            attempts=s.quote_retry_attempts,
            delay=s.quote_retry_delay_seconds,
            retry_if_none=True,
            label="account balance",
        )
        self._risk.update_balance(balance)
        return balance

    def _size(self, signal: Signal, price: float, stop: float) -> int:
        """Sized at the slippage-adjusted price, the same notional the risk check sees."""
        if signal.quantity is not None:
            return signal.quantity
        margin = signal.margin_multiplier or self._settings.default_margin_multiplier
        by_capital = math.floor(self._settings.max_capital_per_trade * margin / price)
        by_risk = self._risk.calculate_position_size(price, stop)
        qty = min(by_capital, by_risk)
        logger.info(
            "Sizing %s: by_capital=%d (x%.1f) by_risk=%d -> %d", signal.symbol, by_capital, margin, by_risk, qty
        )
        return qty

    async def _enter(self, signal: Signal, keep_alive: Callable[[], bool]) -> ExecutionReport:
        symbol, side = signal.symbol, signal.side
        s = self._settings

        def report(status: ExecutionStatus, reason: str = "", **kwargs) -> ExecutionReport:
            return ExecutionReport(symbol, signal.action, status, reason, **kwargs)

        try:
            ltp = await self._fetch_ltp(symbol)
        except RetryError as exc:
            logger.error("Aborting %s %s: no price (%s)", side.value, symbol, exc)
            return report(ExecutionStatus.ABORTED, "Could not fetch last traded price")

        expected_entry = apply_slippage(ltp, side, s.slippage_buffer)
        stop = signal.stop_loss or default_stop(expected_entry, side, s.default_stop_pct)
        logger.info(
            "%s %s: ltp=%.2f expected_entry=%.2f stop=%.2f target=%s",
            side.value, symbol, ltp, expected_entry, stop, signal.target,
        )

        try:
            await self._refresh_balance()
        except RetryError as exc:
            logger.error("Aborting %s %s: balance unavailable (%s)", side.value, symbol, exc)
            return report(ExecutionStatus.ABORTED, "Could not refresh account balance")

        keep_alive()
        qty = self._size(signal, expected_entry, stop)
        if qty <= 0:
            logger.warning("Aborting %s %s: calculated quantity is zero", side.value, symbol)
            return report(ExecutionStatus.ABORTED, "Calculated quantity is zero")

        check = self._risk.check_order_risk(symbol, side, qty, expected_entry, stop)
        if not check.allowed:
            self._notifier.risk_alert(f"{side.value} {qty} {symbol} rejected: {check.reason}")
            return report(ExecutionStatus.REJECTED, check.reason)

        if self._runtime.is_kill_switch_active():
            logger.warning("Kill switch activated while processing %s; not placing order", symbol)
            return report(ExecutionStatus.REJECTED, "Kill switch active")

        bracket = self.uses_bracket_orders
        if bracket:
            order_type, price = OrderType.BRACKET, None
        else:
            order_type, price = OrderType.LIMIT, limit_price(ltp, side, s.limit_tolerance)

        self._positions.annotate(symbol, stop_loss=stop, target=signal.target, expected_entry=expected_entry)
        try:
            order = await retry_async(
                lambda: self._broker.place_order(
                    symbol, side, order_type, qty, limit_price=price, stop_loss=stop, target=signal.target
                ),
                attempts=s.order_retry_attempts,
                delay=s.order_retry_delay_seconds,
                retry_if_none=True,
                label=f"place {side.value} {symbol}",
            )
        except RetryError as exc:
            logger.error("Order placement failed for %s: %s", symbol, exc)
            self._positions.discard_pending(symbol)
            self._notifier.error(f"Order placement failed for {side.value} {qty} {symbol}", str(exc))
            return report(ExecutionStatus.ABORTED, "Order placement failed")

        logger.info(
            "Order placed: %s %s %s %d (%s)", order.order_id, order_type.value, side.value, qty, symbol
        )
        self._watch(order)
        keep_alive()

        guard = None
        if order_type is OrderType.LIMIT:
            guard = OrderTimeoutGuard(self._broker, order.order_id, s.limit_order_timeout_seconds)
            guard.arm()

        fill = await self._fills.wait_for_fill(order.order_id, qty, on_poll=keep_alive)

        if guard is not None:
            still_open = fill.order_status is None or not fill.order_status.is_terminal
            if not guard.fired and still_open and fill.outcome in (FillOutcome.TIMEOUT, FillOutcome.PARTIAL):
                guard.fire_now()
            if guard.fired:
                if await guard.wait():
                    return await self._cancelled_on_timeout(signal, order, fill)
                fill = await self._refresh_fill(order, qty, fill)
            else:
                guard.disarm()

        if fill.filled <= 0:
            if fill.outcome is FillOutcome.TIMEOUT:
                logger.warning("No fill for %s within deadline; order %s presumed live", symbol, order.order_id)
                return report(ExecutionStatus.UNCONFIRMED, "No fill by deadline", order_id=order.order_id)
            self._positions.discard_pending(symbol)
            status = fill.order_status.value if fill.order_status else "missing"
            self._notifier.error(f"Order {order.order_id} for {symbol} not filled ({status})")
            return report(ExecutionStatus.NOT_FILLED, f"Order {status}", order_id=order.order_id)

        fill_price = fill.average_price if fill.average_price is not None else expected_entry
        notes: list[str] = []
        if fill.outcome is not FillOutcome.COMPLETE:
            notes.append(f"partial fill {fill.filled}/{qty}")
        self._notifier.trade_executed(symbol, side.value, fill.filled, fill_price, order.order_id)

        if not bracket:
            direction = Direction.from_side(side)
            keep_alive()
            protected = await self._stop_losses.place_protection(
                symbol, order.order_id, direction, fill.filled, stop, signal.target
            )
            if not protected:
                return await self._protection_failed(signal, order, fill, direction, notes)

        return report(
            ExecutionStatus.EXECUTED,
            signal.reason,
            order_id=order.order_id,
            filled=fill.filled,
            fill_price=fill_price,
            notes=notes,
        )

    async def _refresh_fill(self, order: Order, qty: int, fill: FillResult) -> FillResult:
        """The timeout cancel was refused, so the order filled meanwhile; re-read it."""
        snapshot = await self._fills.lookup(order.order_id)
        if snapshot is None or snapshot.filled_quantity <= fill.filled:
            return fill
        outcome = FillOutcome.COMPLETE if snapshot.filled_quantity >= qty else FillOutcome.PARTIAL
        return FillResult(outcome, snapshot.filled_quantity, snapshot.average_price, snapshot.status)

    async def _cancelled_on_timeout(self, signal: Signal, order: Order, fill: FillResult) -> ExecutionReport:
        """Timeout cancel won the race: flatten anything that filled, then stop."""
        symbol, side = signal.symbol, signal.side
        snapshot = await self._fills.lookup(order.order_id)
        filled = snapshot.filled_quantity if snapshot is not None else fill.filled
        self._positions.discard_pending(symbol)
        notes: list[str] = []
        if filled > 0:
            logger.error("Order %s cancelled on timeout after %d filled; flattening", order.order_id, filled)
            close = await self._place_close_order(
                symbol, side.opposite, filled, "Entry timeout partial fill", parent_id=order.order_id
            )
            notes.append(f"flattened {filled}" if close is not None else f"flatten of {filled} FAILED")
        self._notifier.error(
            f"Order {order.order_id} for {symbol} cancelled after {self._settings.limit_order_timeout_seconds:.0f}s timeout",
            "; ".join(notes),
        )
        return ExecutionReport(
            symbol,
            signal.action,
            ExecutionStatus.CANCELLED_TIMEOUT,
            "Order cancelled on timeout",
            order_id=order.order_id,
            filled=filled,
            notes=notes,
        )

    async def _protection_failed(
        self,
        signal: Signal,
        order: Order,
        fill: FillResult,
        direction: Direction,
        notes: list[str],
    ) -> ExecutionReport:
        symbol = signal.symbol
        logger.critical("Stop loss placement FAILED for %s; emergency closing %d", symbol, fill.filled)
        self._positions.annotate(symbol, exit_reason="Emergency close: stop loss placement failed")
        close = await self._place_close_order(
            symbol, direction.exit_side, fill.filled, "Stop loss placement failed", parent_id=order.order_id
        )
        if close is None:
            notes.append("emergency close FAILED, manual intervention required")
        else:
            notes.append(f"emergency close {close.order_id}")
        self._notifier.error(f"{symbol}: stop loss could not be placed after fill", notes[-1])
        return ExecutionReport(
            symbol,
            signal.action,
            ExecutionStatus.PROTECTION_FAILED,
            "Stop loss placement failed",
            order_id=order.order_id,
            filled=fill.filled,
            fill_price=fill.average_price,
            notes=notes,
        )

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def _place_close_order(
        self, symbol: str, side: OrderSide, quantity: int, reason: str, parent_id: str | None = None
    ) -> Order | None:
        s = self._settings
        try:
            order = await retry_async(
                lambda: self._broker.place_order(symbol, side, OrderType.MARKET, quantity),
                attempts=s.order_retry_attempts,
                delay=s.order_retry_delay_seconds,
                retry_if_none=True,
                label=f"close {symbol}",
            )
        except RetryError as exc:
            logger.error("Close order for %s failed (%s): %s", symbol, reason, exc)
            return None
        logger.info("Close order placed: %s %s %d %s (%s)", order.order_id, side.value, quantity, symbol, reason)
        self._watch(order, parent_id)
        return order

    async def _cancel_open_exits(self, symbol: str, exit_side: OrderSide) -> None:
        """Cancel resting exit-side orders (bracket legs) so they cannot fire after the close."""
        try:
            orders = await self._broker.get_orders()
        except Exception as exc:
            logger.warning("Could not list orders before closing %s: %s", symbol, exc)
            return
        for order in orders:
            if order.symbol == symbol and order.side is exit_side and not order.status.is_terminal:
                try:
                    await self._broker.cancel_order(order.order_id)
                except Exception as exc:
                    logger.warning("Cancel of %s failed before closing %s: %s", order.order_id, symbol, exc)

    async def _close_unlocked(self, symbol: str, reason: str) -> ExecutionReport:
        position = self._positions.get_position(symbol)
        if position is None:
            logger.warning("No open position for %s to close", symbol)
            return ExecutionReport(symbol, Action.CLOSE, ExecutionStatus.SKIPPED, "No open position")

        exit_side = position.direction.exit_side
        await self._stop_losses.cancel(symbol, reason)
        await self._cancel_open_exits(symbol, exit_side)
        self._positions.annotate(symbol, exit_reason=reason)

        order = await self._place_close_order(symbol, exit_side, position.quantity, reason)
        if order is None:
            self._notifier.error(f"Failed to close {symbol}", reason)
            return ExecutionReport(symbol, Action.CLOSE, ExecutionStatus.ERROR, "Close order failed")
        return ExecutionReport(
            symbol, Action.CLOSE, ExecutionStatus.CLOSED, reason, order_id=order.order_id, filled=position.quantity
        )

    async def close_position(self, symbol: str, reason: str, *, force: bool = False) -> ExecutionReport:
        """
        Close *symbol* outside the signal gate.

        Serialised with entries for the same symbol through the lock; a busy
        lock returns SKIPPED. ``force`` bypasses the lock for emergency paths.
        """
        if force:
            return await self._close_unlocked(symbol, reason)
        result = await self._locks.with_lock(symbol, lambda keep_alive: self._close_unlocked(symbol, reason))
        if result is LOCK_BUSY:
            logger.warning("Close of %s skipped: order in progress", symbol)
            return ExecutionReport(symbol, Action.CLOSE, ExecutionStatus.SKIPPED, "Symbol locked")
        return result

    async def close_all(self, reason: str) -> list[ExecutionReport]:
        positions = self._positions.all_positions()
        if not positions:
            return []
        logger.info("Closing all %d position(s): %s", len(positions), reason)
        reports = []
        for position in positions:
            try:
                reports.append(await self.close_position(position.symbol, reason, force=True))
            except Exception as exc:
                logger.exception("Failed to close %s", position.symbol)
                reports.append(
                    ExecutionReport(position.symbol, Action.CLOSE, ExecutionStatus.ERROR, str(exc))
                )
        return reports
