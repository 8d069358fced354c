"""
Trading engine: builds the pipeline components around one broker and wires
their events together.

Event routing:
  MarketTick              -> heartbeat, active strategies
  TradeExecuted           -> journal (positions subscribe on their own)
  PositionOpened/Closed   -> notifier, journal; closed also records the
                             round trip with the risk manager
  StopLossTriggered /
  TargetReached           -> close the position (lock-serialised, no gate)
  DailyLossLimitReached   -> emergency shutdown
  DataFeedDead            -> alert; emergency shutdown past the dead-feed limit
  Reconciliation*         -> alert and journal, never auto-correct
  OrderStatusChanged      -> journal; rejections and cancellations alert
  OrderReconciliationFailed,
  UntrackedOrderFound     -> alert and journal
  CircuitStateChanged     -> journal; opening alerts

Scheduler callbacks are ignored on non-trading days.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from config.loader import AppConfig
from config.runtime import RuntimeState
from trade_core.contracts import ExecutionReport, ExecutionStatus, MarketTick, Signal
from trade_core.events import (
    BrokerErrorEvent,
    CircuitStateChanged,
    DailyLossLimitReached,
    DailyLossWarning,
    DataFeedDead,
    EventBus,
    MaxTradesWarning,
    OrderReconciliationFailed,
    OrderStatusChanged,
    PositionClosed,
    PositionOpened,
    ProtectiveOrderFilled,
    ReconciliationCritical,
    ReconciliationError,
    ReconciliationMismatch,
    StopLossTriggered,
    TargetReached,
    TradeExecuted,
    UntrackedOrderFound,
)
from trade_core.contracts import OrderStatus
from trade_core.idempotency import IdempotencyRegistry
from trade_core.order_reconciliation import PendingOrderReconciler
from trade_core.order_tracker import OrderTracker
from trade_core.position_manager import PositionManager
from trade_core.reconciliation import ReconciliationService
from trade_core.retry import retry_async
from trade_core.risk_manager import RiskManager
from trade_core.signal_gate import SignalGate
from trade_core.symbol_lock import SymbolLockManager

from broker.port import BrokerError, BrokerPort
from broker.resilient import ResilientBroker
from execution.heartbeat import HeartbeatMonitor
from execution.notify import Notifier, SafeNotifier
from execution.pipeline import ExecutionPipeline
from execution.shutdown import EmergencyShutdown, ShutdownRecord
from execution.stop_loss import StopLossManager
from journal.writer import JournalWriter

logger = logging.getLogger(__name__)

SignalSink = Callable[[Signal], Awaitable[ExecutionReport]]


class Strategy(Protocol):
    """Signal producer. Calls the bound sink with each signal it generates."""

    name: str

    def bind(self, emit: SignalSink) -> None: ...

    async def initialize(self) -> None: ...

    def on_market_data(self, tick: MarketTick) -> None: ...

    async def shutdown(self) -> None: ...


class TradingEngine:
    """
    Parameters
    ----------
    config:
        Loaded AppConfig.
    broker:
        Any BrokerPort; attached to the engine's bus. Wrapped in a
        ResilientBroker unless ``resilience.circuit_breaker`` is off.
    runtime:
        Shared kill switch / mode handle. Built from config when omitted.
    notifier:
        Operator notification sink; calls are wrapped so failures only log.
    journal:
        Optional JournalWriter for fills, positions, risk and shutdowns.
    """

    def __init__(
        self,
        config: AppConfig,
        broker: BrokerPort,
        *,
        runtime: RuntimeState | None = None,
        notifier: Notifier | None = None,
        journal: JournalWriter | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        res = config.resilience
        if res.circuit_breaker and not isinstance(broker, ResilientBroker):
            broker = ResilientBroker(
                broker,
                failure_threshold=res.failure_threshold,
                success_threshold=res.success_threshold,
                reset_timeout=res.reset_timeout_seconds,
                read_attempts=res.read_retry_attempts,
                read_delay=res.read_retry_delay_seconds,
            )
        self.broker = broker
        self.bus = bus or EventBus()
        self.runtime = runtime or RuntimeState(config.trading.mode, config.trading.kill_switch)
        self.notifier = SafeNotifier(notifier)
        self.journal = journal
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        ex = config.execution
        broker.attach(self.bus)
        self.risk = RiskManager(config.risk, bus=self.bus, timezone_name=config.trading.timezone, clock=self._clock)
        self.positions = PositionManager(self.bus, broker)
        self.locks = SymbolLockManager(ex.lock_ttl_seconds)
        self.idempotency = IdempotencyRegistry(ex.idempotency_window_seconds)
        self.gate = SignalGate(
            config.trading.windows(),
            config.trading.calendar(),
            kill_switch=self.runtime.is_kill_switch_active,
        )
        self.stop_losses = StopLossManager(broker, self.bus, monitor_interval=ex.stop_monitor_seconds)
        rec = config.reconciliation
        self.orders = PendingOrderReconciler(
            broker,
            OrderTracker(self._clock),
            self.bus,
            interval_seconds=rec.order_interval_seconds,
            max_missing_checks=rec.order_max_missing_checks,
        )
        self.pipeline = ExecutionPipeline(
            broker,
            bus=self.bus,
            risk=self.risk,
            positions=self.positions,
            stop_losses=self.stop_losses,
            locks=self.locks,
            idempotency=self.idempotency,
            gate=self.gate,
            runtime=self.runtime,
            settings=ex,
            notifier=self.notifier,
            clock=self._clock,
            order_watch=self.orders,
        )
        self.reconciliation = ReconciliationService(
            broker,
            self.positions,
            self.bus,
            interval_seconds=rec.interval_seconds,
            price_tolerance=rec.price_tolerance,
            critical_threshold=rec.critical_threshold,
        )
        hb = config.heartbeat
        self.heartbeat = HeartbeatMonitor(
            self.bus,
            check_interval=hb.check_seconds,
            alert_after=hb.alert_after_seconds,
            realert=hb.realert_seconds,
        )
        self.shutdown = EmergencyShutdown(
            self.runtime,
            self.pipeline.close_all,
            notifier=self.notifier,
            stop_strategies=self.stop_strategies,
            stop_monitors=self._stop_monitors,
        )

        self._strategies: dict[str, Strategy] = {}
        self._strategies_active = False
        self.running = False
        self._subscribe()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _subscribe(self) -> None:
        on = self.bus.subscribe
        on(MarketTick, self._on_tick)
        on(TradeExecuted, self._on_trade)
        on(PositionOpened, self._on_position_opened)
        on(PositionClosed, self._on_position_closed)
        on(StopLossTriggered, self._on_stop_loss)
        on(TargetReached, self._on_target)
        on(ProtectiveOrderFilled, self._on_protective_fill)
        on(DailyLossLimitReached, self._on_daily_loss_limit)
        on(DailyLossWarning, self._on_daily_loss_warning)
        on(MaxTradesWarning, self._on_max_trades_warning)
        on(ReconciliationMismatch, self._on_reconciliation_mismatch)
        on(ReconciliationCritical, self._on_reconciliation_critical)
        on(ReconciliationError, self._on_reconciliation_error)
        on(DataFeedDead, self._on_data_feed_dead)
        on(BrokerErrorEvent, self._on_broker_error)
        on(CircuitStateChanged, self._on_circuit_change)
        on(OrderStatusChanged, self._on_order_status)
        on(OrderReconciliationFailed, self._on_order_reconciliation_failed)
        on(UntrackedOrderFound, self._on_untracked_order)

    def _on_tick(self, event: MarketTick) -> None:
        self.heartbeat.record_data()
        if not self._strategies_active:
            return
        for strategy in self._strategies.values():
            try:
                strategy.on_market_data(event)
            except Exception:
                logger.exception("Strategy %s failed on market data", strategy.name)

    def _on_trade(self, event: TradeExecuted) -> None:
        t = event.trade
        if self.journal is not None:
            self.journal.fill(t.order_id, t.symbol, t.side.value, t.quantity, t.price, trade_id=t.trade_id)

    def _on_position_opened(self, event: PositionOpened) -> None:
        p = event.position
        self.notifier.position_opened(p.symbol, p.direction.value, p.quantity, p.entry_price)
        if self.journal is not None:
            self.journal.position_opened(
                p.symbol, p.direction.value, p.quantity, p.entry_price,
                stop_loss=p.stop_loss, target=p.target, expected_entry=p.expected_entry_price,
            )

    async def _on_position_closed(self, event: PositionClosed) -> None:
        p = event.position
        self.risk.record_trade(event.realized_pnl)
        self.notifier.position_closed(
            p.symbol, p.direction.value, p.quantity, p.entry_price, event.exit_price, event.realized_pnl, event.reason
        )
        if self.journal is not None:
            self.journal.position_closed(
                p.symbol, p.direction.value, p.quantity, p.entry_price, event.exit_price,
                event.realized_pnl, event.reason, entry_slippage=event.entry_slippage,
            )
        await self.stop_losses.cancel(p.symbol, "position closed")

    async def _close_on_trigger(self, symbol: str, reason: str) -> None:
        report = await self.pipeline.close_position(symbol, reason)
        if report.status is ExecutionStatus.SKIPPED and self.positions.has_position(symbol):
            self.positions.rearm(symbol)

    async def _on_stop_loss(self, event: StopLossTriggered) -> None:
        self.notifier.risk_alert(f"Stop loss triggered: {event.symbol} @ {event.price:.2f} (stop {event.stop_loss:.2f})")
        await self._close_on_trigger(event.symbol, "Stop loss triggered")

    async def _on_target(self, event: TargetReached) -> None:
        self.notifier.risk_alert(f"Target reached: {event.symbol} @ {event.price:.2f} (target {event.target:.2f})")
        await self._close_on_trigger(event.symbol, "Target reached")

    def _on_protective_fill(self, event: ProtectiveOrderFilled) -> None:
        logger.info("Protective %s leg filled for %s (%s)", event.leg, event.symbol, event.order_id)
        if self.journal is not None:
            self.journal.risk_event("protective_fill", f"{event.leg} filled for {event.symbol}", order_id=event.order_id)

    async def _on_daily_loss_limit(self, event: DailyLossLimitReached) -> None:
        message = f"Daily loss limit reached: pnl {event.daily_pnl:.2f}, limit {event.limit:.2f}"
        self.notifier.risk_alert(message)
        if self.journal is not None:
            self.journal.risk_event("daily_loss_limit", message, daily_pnl=event.daily_pnl, limit=event.limit)
        await self.emergency_shutdown("Daily loss limit reached")

    def _on_daily_loss_warning(self, event: DailyLossWarning) -> None:
        message = f"Approaching daily loss limit: pnl {event.daily_pnl:.2f} ({event.loss_pct:.2f}%), limit {event.limit:.2f}"
        self.notifier.risk_alert(message)
        if self.journal is not None:
            self.journal.risk_event("daily_loss_warning", message, daily_pnl=event.daily_pnl)

    def _on_max_trades_warning(self, event: MaxTradesWarning) -> None:
        self.notifier.risk_alert(f"Approaching max trades per day: {event.trades_today}/{event.max_trades}")

    def _on_reconciliation_mismatch(self, event: ReconciliationMismatch) -> None:
        lines = [m.describe() for m in event.mismatches]
        self.notifier.reconciliation_alert(f"{len(lines)} position mismatch(es): " + "; ".join(lines))
        if self.journal is not None:
            self.journal.reconciliation(event.consecutive, lines)

    def _on_reconciliation_critical(self, event: ReconciliationCritical) -> None:
        lines = [m.describe() for m in event.mismatches]
        self.notifier.reconciliation_alert(
            f"{event.consecutive} consecutive reconciliation failures; manual review required", critical=True
        )
        if self.journal is not None:
            self.journal.reconciliation(event.consecutive, lines, critical=True)

    def _on_reconciliation_error(self, event: ReconciliationError) -> None:
        self.notifier.error("Reconciliation failed", event.error)

    async def _on_data_feed_dead(self, event: DataFeedDead) -> None:
        silence = event.seconds_since_data
        self.notifier.error("Data feed dead", f"No market data for {silence:.0f}s")
        if silence > self.config.heartbeat.shutdown_after_seconds:
            await self.emergency_shutdown(f"Data feed dead for {silence:.0f}s")

    def _on_broker_error(self, event: BrokerErrorEvent) -> None:
        self.notifier.error("Broker error", event.message)

    def _on_circuit_change(self, event: CircuitStateChanged) -> None:
        message = f"Broker circuit {event.name} {event.previous} -> {event.state}: {event.reason}"
        if event.state == "open":
            self.notifier.risk_alert(message)
        if self.journal is not None:
            self.journal.risk_event("circuit_breaker", message, state=event.state)

    def _on_order_status(self, event: OrderStatusChanged) -> None:
        o = event.order
        message = f"Order {o.order_id} {o.symbol} {event.previous.value} -> {o.status.value} ({o.filled_quantity}/{o.quantity})"
        if o.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
            self.notifier.error(f"Order {o.order_id} for {o.symbol} {o.status.value.lower()}", message)
        if self.journal is not None:
            self.journal.risk_event("order_status", message, order_id=o.order_id, status=o.status.value)

    def _on_order_reconciliation_failed(self, event: OrderReconciliationFailed) -> None:
        o = event.order
        message = f"Order {o.order_id} ({o.symbol}) missing from broker for {event.checks} checks; no longer tracked"
        self.notifier.reconciliation_alert(message, critical=True)
        if self.journal is not None:
            self.journal.risk_event("order_reconciliation_failed", message, order_id=o.order_id)

    def _on_untracked_order(self, event: UntrackedOrderFound) -> None:
        o = event.order
        message = f"Untracked live order {o.order_id}: {o.side.value} {o.quantity} {o.symbol} ({o.status.value})"
        self.notifier.reconciliation_alert(message)
        if self.journal is not None:
            self.journal.risk_event("untracked_order", message, order_id=o.order_id)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def add_strategy(self, strategy: Strategy) -> None:
        strategy.bind(self.submit_signal)
        self._strategies[strategy.name] = strategy
        logger.info("Strategy added: %s", strategy.name)

    @property
    def strategies_active(self) -> bool:
        return self._strategies_active

    async def start_strategies(self) -> None:
        if self._strategies_active:
            return
        for strategy in self._strategies.values():
            try:
                await strategy.initialize()
                logger.info("Strategy started: %s", strategy.name)
            except Exception:
                logger.exception("Failed to start strategy %s", strategy.name)
        self._strategies_active = True

    async def stop_strategies(self) -> None:
        if not self._strategies_active:
            return
        self._strategies_active = False
        for strategy in self._strategies.values():
            try:
                await strategy.shutdown()
                logger.info("Strategy stopped: %s", strategy.name)
            except Exception:
                logger.exception("Failed to stop strategy %s", strategy.name)

    async def submit_signal(self, signal: Signal) -> ExecutionReport:
        """Entry point for strategies and operators."""
        if not self.running:
            logger.warning("Signal for %s ignored: engine not running", signal.symbol)
            return ExecutionReport(signal.symbol, signal.action, ExecutionStatus.REJECTED, "Engine not running")
        return await self.pipeline.handle_signal(signal, self._clock())

    # ------------------------------------------------------------------
    # Scheduler callbacks
    # ------------------------------------------------------------------

    def _trading_day(self, event: str) -> bool:
        if self.gate.calendar.is_trading_day(self._clock()):
            return True
        logger.info("Ignoring %s: not a trading day", event)
        return False

    async def on_market_open(self) -> None:
        if not self._trading_day("market_open"):
            return
        logger.info("Market opened: starting strategies")
        await self.start_strategies()

    async def on_market_close(self) -> None:
        if not self._trading_day("market_close"):
            return
        logger.info("Market closed: stopping strategies")
        await self.stop_strategies()

    async def on_auto_square_off(self) -> None:
        if not self._trading_day("auto_square_off"):
            return
        logger.info("Auto square-off triggered")
        self.notifier.risk_alert("Auto square-off: closing all open positions")
        await self.pipeline.close_all("Auto square-off")

    async def on_update_prices(self) -> None:
        if not self._trading_day("update_prices"):
            return
        poll_fills = getattr(self.broker, "poll_fills", None)
        if poll_fills is not None:
            try:
                await poll_fills()
            except Exception:
                logger.exception("Polling broker fills failed")
        await self.positions.update_market_prices()
        self.idempotency.purge_expired()
        self.orders.tracker.purge(self.config.reconciliation.order_history_seconds)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info("Starting trading engine (%s mode)", self.runtime.mode.value)
        if not await self.broker.connect():
            raise BrokerError("Failed to connect to broker")

        ex = self.config.execution
        balance = await retry_async(
            self.broker.get_account_balance,
            attempts=ex.quote_retry_attempts,
            delay=ex.quote_retry_delay_seconds,
            label="account balance",
        )
        self.risk.reset_starting_balance(balance)
        await self.positions.sync_positions()

        if self.config.reconciliation.enabled:
            self.reconciliation.start()
            try:
                await self.orders.full_reconcile()
            except Exception:
                logger.exception("Initial order reconciliation failed")
            self.orders.start()
        if self.config.heartbeat.enabled:
            self.heartbeat.start()
        if not self.pipeline.uses_bracket_orders:
            self.stop_losses.start()

        self.running = True
        logger.info(
            "Trading engine started: balance %.2f, %d open position(s), brackets=%s",
            balance, len(self.positions), self.pipeline.uses_bracket_orders,
        )

    async def _stop_monitors(self) -> None:
        await self.heartbeat.stop()
        await self.stop_losses.stop()

    async def stop(self) -> None:
        if not self.running:
            return
        logger.info("Stopping trading engine")
        self.running = False
        await self.stop_strategies()
        await self.pipeline.close_all("Engine stopped")
        await self.reconciliation.stop()
        await self.orders.stop()
        await self._stop_monitors()
        await self.stop_losses.cancel_all("Engine stopped")
        released = self.locks.release_all()
        if released:
            logger.info("Released %d symbol lock(s)", released)
        await self.broker.disconnect()
        logger.info("Trading engine stopped")

    async def emergency_shutdown(self, reason: str) -> ShutdownRecord | None:
        record = await self.shutdown.trigger(reason)
        if record is not None and self.journal is not None:
            self.journal.shutdown(record.reason, record.closed, record.failed)
        return record

    async def close_position(self, symbol: str, reason: str = "Manual close") -> ExecutionReport:
        return await self.pipeline.close_position(symbol, reason)

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "mode": self.runtime.mode.value,
            "kill_switch": self.runtime.is_kill_switch_active(),
            "kill_reason": self.runtime.kill_reason,
            "strategies": sorted(self._strategies),
            "strategies_active": self._strategies_active,
            "risk": self.risk.stats(),
            "positions": self.positions.stats(),
            "reconciliation": self.reconciliation.status(),
            "orders": self.orders.status(),
            "circuit": self.broker.status() if isinstance(self.broker, ResilientBroker) else None,
            "heartbeat": self.heartbeat.status(),
            "stop_losses": self.stop_losses.status(),
            "held_locks": self.locks.held_symbols(),
        }


__all__ = ["SignalSink", "Strategy", "TradingEngine"]
