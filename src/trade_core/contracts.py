"""
Data contracts for trade-core: Signal, Order, Trade, Position, fill outcomes.

Signals are produced externally (strategies); Orders and Trades are owned by
the broker and only observed here; Positions are owned by the PositionManager.
No I/O; these are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TradingMode(str, Enum):
    """PAPER uses the simulated broker; REAL routes to a live broker."""

    PAPER = "PAPER"
    REAL = "REAL"


class Action(str, Enum):
    """What a strategy asks for."""

    BUY = "BUY"
    SELL = "SELL"
    CLOSE = "CLOSE"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> OrderSide:
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """MARKET/LIMIT entries, BRACKET entries with attached legs, STOP protective exits."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"
    BRACKET = "BRACKET"
    STOP = "STOP"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.REJECTED, OrderStatus.CANCELLED)


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def from_side(cls, side: OrderSide) -> Direction:
        return cls.LONG if side is OrderSide.BUY else cls.SHORT

    @property
    def entry_side(self) -> OrderSide:
        return OrderSide.BUY if self is Direction.LONG else OrderSide.SELL

    @property
    def exit_side(self) -> OrderSide:
        return self.entry_side.opposite


class ExecutionStatus(str, Enum):
    """Outcome of one signal passing through the pipeline."""

    EXECUTED = "EXECUTED"
    CLOSED = "CLOSED"
    SKIPPED = "SKIPPED"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"
    ABORTED = "ABORTED"
    NOT_FILLED = "NOT_FILLED"
    UNCONFIRMED = "UNCONFIRMED"
    CANCELLED_TIMEOUT = "CANCELLED_TIMEOUT"
    PROTECTION_FAILED = "PROTECTION_FAILED"
    ERROR = "ERROR"


class FillOutcome(str, Enum):
    """Terminal result of waiting on an order."""

    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


# ---------------------------------------------------------------------------
# Signal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signal:
    """Trading intent from a strategy. Consumed once per lock acquisition."""

    symbol: str
    action: Action
    reason: str = ""
    quantity: int | None = None
    stop_loss: float | None = None
    target: float | None = None
    margin_multiplier: float | None = None
    confidence: float = 0.0

    @property
    def side(self) -> OrderSide | None:
        if self.action is Action.BUY:
            return OrderSide.BUY
        if self.action is Action.SELL:
            return OrderSide.SELL
        return None


# ---------------------------------------------------------------------------
# Broker-owned records
# ---------------------------------------------------------------------------


@dataclass
class Order:
    """An order as reported by the broker. The pipeline only observes it."""

    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: int
    status: OrderStatus = OrderStatus.PENDING
    filled_quantity: int = 0
    average_price: float | None = None
    limit_price: float | None = None
    stop_price: float | None = None
    target_price: float | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class Trade:
    """One broker fill. Arrives on the broker event stream."""

    trade_id: str
    order_id: str
    symbol: str
    side: OrderSide
    quantity: int
    price: float
    timestamp: datetime


@dataclass(frozen=True)
class MarketTick:
    symbol: str
    ltp: float
    timestamp: datetime
    volume: int = 0


# ---------------------------------------------------------------------------
# Position
# ---------------------------------------------------------------------------


@dataclass
class Position:
    """Open position. quantity > 0 while it exists; one per symbol."""

    symbol: str
    direction: Direction
    quantity: int
    entry_price: float
    current_price: float
    entry_time: datetime
    stop_loss: float | None = None
    target: float | None = None
    unrealized_pnl: float = 0.0
    pnl_percent: float = 0.0
    realized_pnl: float = 0.0
    expected_entry_price: float | None = None
    exit_price: float | None = None
    exit_time: datetime | None = None
    exit_reason: str | None = None

    @property
    def notional(self) -> float:
        return self.entry_price * self.quantity


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FillResult:
    outcome: FillOutcome
    filled: int = 0
    average_price: float | None = None
    order_status: OrderStatus | None = None


@dataclass(frozen=True)
class RiskCheckResult:
    allowed: bool
    reason: str = ""


@dataclass(frozen=True)
class ExecutionReport:
    """What happened to one signal. Returned by the pipeline for callers and tests."""

    symbol: str
    action: Action
    status: ExecutionStatus
    reason: str = ""
    order_id: str | None = None
    filled: int = 0
    fill_price: float | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def executed(self) -> bool:
        return self.status is ExecutionStatus.EXECUTED


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class MismatchKind(str, Enum):
    MISSING_IN_BOT = "MISSING_IN_BOT"
    MISSING_IN_BROKER = "MISSING_IN_BROKER"
    QUANTITY_MISMATCH = "QUANTITY_MISMATCH"
    PRICE_MISMATCH = "PRICE_MISMATCH"


@dataclass(frozen=True)
class PositionMismatch:
    """One discrepancy between internal and broker position state."""

    symbol: str
    kind: MismatchKind
    bot_quantity: int | None = None
    broker_quantity: int | None = None
    bot_price: float | None = None
    broker_price: float | None = None

    def describe(self) -> str:
        if self.kind is MismatchKind.MISSING_IN_BOT:
            return f"{self.symbol}: broker holds {self.broker_quantity}, bot has none"
        if self.kind is MismatchKind.MISSING_IN_BROKER:
            return f"{self.symbol}: bot holds {self.bot_quantity}, broker has none"
        if self.kind is MismatchKind.QUANTITY_MISMATCH:
            return f"{self.symbol}: quantity bot={self.bot_quantity} broker={self.broker_quantity}"
        return f"{self.symbol}: entry price bot={self.bot_price} broker={self.broker_price}"
