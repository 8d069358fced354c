"""
trade-core: pure pipeline state for signal execution.

Contracts, per-symbol locks, idempotency, risk, positions, reconciliation
and the typed event bus. No broker I/O lives here; broker access goes
through the small protocols each component declares.
"""

from trade_core.contracts import (
    Action,
    Direction,
    ExecutionReport,
    ExecutionStatus,
    FillOutcome,
    FillResult,
    MarketTick,
    MismatchKind,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionMismatch,
    RiskCheckResult,
    Signal,
    Trade,
    TradingMode,
)
from trade_core.events import EventBus
from trade_core.idempotency import IdempotencyRegistry, IdempotencyState, make_key
from trade_core.position_manager import PositionManager
from trade_core.reconciliation import ReconciliationService, diff_positions
from trade_core.retry import RetryError, retry_async
from trade_core.risk_manager import RiskLimits, RiskManager
from trade_core.signal_gate import GateResult, SignalGate, TradingCalendar, TradingWindows
from trade_core.symbol_lock import LOCK_BUSY, SymbolLockManager

__all__ = [
    "Action",
    "Direction",
    "EventBus",
    "ExecutionReport",
    "ExecutionStatus",
    "FillOutcome",
    "FillResult",
    "GateResult",
    "IdempotencyRegistry",
    "IdempotencyState",
    "LOCK_BUSY",
    "MarketTick",
    "MismatchKind",
    "Order",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "PositionManager",
    "PositionMismatch",
    "ReconciliationService",
    "RetryError",
    "RiskCheckResult",
    "RiskLimits",
    "RiskManager",
    "Signal",
    "SignalGate",
    "SymbolLockManager",
    "Trade",
    "TradingCalendar",
    "TradingMode",
    "TradingWindows",
    "diff_positions",
    "make_key",
    "retry_async",
]
