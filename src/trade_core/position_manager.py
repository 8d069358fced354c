"""
Position manager: aggregates broker trade events into one position per symbol.

Trade application rules:
  - no position            -> open (direction from trade side, entry = trade price)
  - same-side trade        -> increase; entry = volume-weighted average
  - opposite-side trade    -> close min(position qty, trade qty); realised PnL
                              LONG (exit - entry) * qty, SHORT (entry - exit) * qty.
                              Zero remaining deletes the position. Excess quantity
                              opens a position in the trade's direction.

Trades are applied at most once per trade id, so replayed broker events and
interleaving with in-flight orders for the same symbol cannot double count.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Protocol

from trade_core.contracts import Direction, Position, Trade
from trade_core.events import (
    BrokerPositionUpdate,
    EventBus,
    PositionClosed,
    PositionIncreased,
    PositionOpened,
    PositionReduced,
    PositionUpdated,
    StopLossTriggered,
    TargetReached,
    TradeExecuted,
)

logger = logging.getLogger(__name__)

_SEEN_TRADES_MAX = 10_000


class PositionSource(Protocol):
    def get_positions(self) -> Awaitable[list[Position]]: ...

    def get_ltp(self, symbol: str) -> Awaitable[float | None]: ...


def _pnl(direction: Direction, entry: float, exit_price: float, qty: int) -> float:
    if direction is Direction.LONG:
        return (exit_price - entry) * qty
    return (entry - exit_price) * qty


def entry_slippage(position: Position) -> float | None:
    """Per-share adverse difference between actual entry and expected entry."""
    if position.expected_entry_price is None:
        return None
    if position.direction is Direction.LONG:
        return position.entry_price - position.expected_entry_price
    return position.expected_entry_price - position.entry_price


class PositionManager:
    """Owns open positions. Subscribes to broker trade and position events on *bus*."""

    def __init__(self, bus: EventBus, broker: PositionSource | None = None) -> None:
        self._bus = bus
        self._broker = broker
        self._positions: dict[str, Position] = {}
        self._seen: set[str] = set()
        self._seen_order: deque[str] = deque()
        self._stop_fired: set[str] = set()
        self._target_fired: set[str] = set()
        self._pending: dict[str, dict[str, float]] = {}
        self._pending_exit: dict[str, str] = {}
        bus.subscribe(TradeExecuted, lambda ev: self.handle_trade(ev.trade))
        bus.subscribe(BrokerPositionUpdate, lambda ev: self.apply_position_update(ev.position))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, symbol: str) -> Position | None:
        return self._positions.get(symbol)

    def all_positions(self) -> list[Position]:
        return list(self._positions.values())

    def has_position(self, symbol: str) -> bool:
        return symbol in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def total_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self._positions.values())

    def stats(self) -> dict[str, Any]:
        positions = self.all_positions()
        total = self.total_pnl()
        return {
            "total_positions": len(positions),
            "long_positions": sum(1 for p in positions if p.direction is Direction.LONG),
            "short_positions": sum(1 for p in positions if p.direction is Direction.SHORT),
            "total_pnl": total,
            "profitable_positions": sum(1 for p in positions if p.unrealized_pnl > 0),
            "losing_positions": sum(1 for p in positions if p.unrealized_pnl < 0),
            "avg_pnl_per_position": total / len(positions) if positions else 0.0,
        }

    # ------------------------------------------------------------------
    # Trade application
    # ------------------------------------------------------------------

    def _remember(self, trade_id: str) -> bool:
        if trade_id in self._seen:
            return False
        self._seen.add(trade_id)
        self._seen_order.append(trade_id)
        if len(self._seen_order) > _SEEN_TRADES_MAX:
            self._seen.discard(self._seen_order.popleft())
        return True

    def handle_trade(self, trade: Trade) -> Position | None:
        """Apply one fill. Returns the resulting position (None when closed or duplicate)."""
        if not self._remember(trade.trade_id):
            logger.debug("Ignoring duplicate trade %s", trade.trade_id)
            return None
        if trade.quantity <= 0:
            logger.warning("Ignoring trade %s with non-positive quantity", trade.trade_id)
            return None

        logger.info(
            "Processing trade %s: %s %s %d @ %.2f",
            trade.trade_id, trade.symbol, trade.side.value, trade.quantity, trade.price,
        )
        existing = self._positions.get(trade.symbol)
        if existing is None:
            return self._open(trade.symbol, Direction.from_side(trade.side), trade.quantity, trade.price, trade.timestamp)
        if existing.direction.entry_side is trade.side:
            return self._increase(existing, trade)
        return self._reduce(existing, trade)

    def _open(self, symbol: str, direction: Direction, qty: int, price: float, ts: datetime) -> Position:
        position = Position(
            symbol=symbol,
            direction=direction,
            quantity=qty,
            entry_price=price,
            current_price=price,
            entry_time=ts,
        )
        pending = self._pending.pop(symbol, {})
        position.stop_loss = pending.get("stop_loss")
        position.target = pending.get("target")
        position.expected_entry_price = pending.get("expected_entry")
        position.exit_reason = self._pending_exit.pop(symbol, None)
        self._positions[symbol] = position
        self._stop_fired.discard(symbol)
        self._target_fired.discard(symbol)
        logger.info("Position opened: %s %s %d @ %.2f", symbol, direction.value, qty, price)
        self._bus.publish(PositionOpened(position=position))
        return position

    def _increase(self, position: Position, trade: Trade) -> Position:
        total = position.quantity + trade.quantity
        position.entry_price = (
            position.entry_price * position.quantity + trade.price * trade.quantity
        ) / total
        position.quantity = total
        logger.info(
            "Position increased: %s qty=%d avg=%.4f", position.symbol, total, position.entry_price
        )
        self._bus.publish(PositionIncreased(position=position, added_quantity=trade.quantity, price=trade.price))
        return position

    def _reduce(self, position: Position, trade: Trade) -> Position | None:
        closed_qty = min(position.quantity, trade.quantity)
        pnl = _pnl(position.direction, position.entry_price, trade.price, closed_qty)
        remaining = position.quantity - closed_qty
        position.realized_pnl += pnl
        position.current_price = trade.price

        if remaining > 0:
            position.quantity = remaining
            logger.info(
                "Position reduced: %s remaining=%d pnl=%.2f", position.symbol, position.quantity, pnl
            )
            self._bus.publish(
                PositionReduced(position=position, closed_quantity=closed_qty, exit_price=trade.price, realized_pnl=pnl)
            )
            return position

        # The closed record keeps its last held quantity for reporting.
        del self._positions[position.symbol]
        position.exit_price = trade.price
        position.exit_time = trade.timestamp
        position.exit_reason = position.exit_reason or "Closed by trade"
        position.unrealized_pnl = 0.0
        slip = entry_slippage(position)
        logger.info(
            "Position closed: %s entry=%.2f exit=%.2f pnl=%.2f (%s)",
            position.symbol, position.entry_price, trade.price, position.realized_pnl, position.exit_reason,
        )
        self._bus.publish(
            PositionClosed(
                position=position,
                exit_price=trade.price,
                realized_pnl=position.realized_pnl,
                reason=position.exit_reason,
                entry_slippage=slip,
            )
        )

        excess = trade.quantity - closed_qty
        if excess > 0:
            logger.warning("Trade %s reverses %s; opening %d on the other side", trade.trade_id, trade.symbol, excess)
            return self._open(trade.symbol, Direction.from_side(trade.side), excess, trade.price, trade.timestamp)
        return None

    # ------------------------------------------------------------------
    # External updates
    # ------------------------------------------------------------------

    def apply_position_update(self, position: Position) -> None:
        """Replace the tracked position with the broker's view; quantity 0 removes it."""
        if position.quantity <= 0:
            self._positions.pop(position.symbol, None)
            return
        self._positions[position.symbol] = position
        self._bus.publish(PositionUpdated(position=position))

    def annotate(
        self,
        symbol: str,
        *,
        stop_loss: float | None = None,
        target: float | None = None,
        expected_entry: float | None = None,
        exit_reason: str | None = None,
    ) -> bool:
        """
        Attach protective levels, expected entry or a pending exit reason.

        Returns False when no position exists yet; every given value is then
        held and applied when the symbol's next position opens, so a close
        that races its own entry fill still reports the intended reason.
        """
        position = self._positions.get(symbol)
        if position is None:
            levels = {
                k: v
                for k, v in (("stop_loss", stop_loss), ("target", target), ("expected_entry", expected_entry))
                if v is not None
            }
            if levels:
                self._pending.setdefault(symbol, {}).update(levels)
            if exit_reason is not None:
                self._pending_exit[symbol] = exit_reason
            return False
        if stop_loss is not None:
            position.stop_loss = stop_loss
            self._stop_fired.discard(symbol)
        if target is not None:
            position.target = target
            self._target_fired.discard(symbol)
        if expected_entry is not None:
            position.expected_entry_price = expected_entry
        if exit_reason is not None:
            position.exit_reason = exit_reason
        return True

    def discard_pending(self, symbol: str) -> None:
        """Drop levels held for an entry that never filled."""
        self._pending.pop(symbol, None)
        self._pending_exit.pop(symbol, None)

    def rearm(self, symbol: str) -> None:
        """Allow stop and target events to fire again, e.g. after a close attempt was skipped."""
        self._stop_fired.discard(symbol)
        self._target_fired.discard(symbol)

    async def sync_positions(self) -> int:
        """Replace internal state with the broker's positions. Returns the count."""
        if self._broker is None:
            raise RuntimeError("PositionManager has no broker to sync from")
        positions = await self._broker.get_positions()
        self._positions = {p.symbol: p for p in positions if p.quantity > 0}
        self._stop_fired.clear()
        self._target_fired.clear()
        logger.info("Positions synced with broker: %d open", len(self._positions))
        return len(self._positions)

    # ------------------------------------------------------------------
    # Mark to market
    # ------------------------------------------------------------------

    def apply_price(self, symbol: str, ltp: float) -> None:
        """Refresh one position's price and PnL, then evaluate stop and target crossings."""
        position = self._positions.get(symbol)
        if position is None:
            return
        position.current_price = ltp
        position.unrealized_pnl = _pnl(position.direction, position.entry_price, ltp, position.quantity)
        notional = position.entry_price * position.quantity
        position.pnl_percent = position.unrealized_pnl / notional * 100.0 if notional else 0.0
        self._bus.publish(PositionUpdated(position=position))

        long = position.direction is Direction.LONG
        if position.stop_loss and symbol not in self._stop_fired:
            hit = ltp <= position.stop_loss if long else ltp >= position.stop_loss
            if hit:
                self._stop_fired.add(symbol)
                logger.warning("Stop loss triggered: %s ltp=%.2f stop=%.2f", symbol, ltp, position.stop_loss)
                self._bus.publish(
                    StopLossTriggered(symbol=symbol, direction=position.direction, price=ltp, stop_loss=position.stop_loss)
                )
        if position.target and symbol not in self._target_fired:
            hit = ltp >= position.target if long else ltp <= position.target
            if hit:
                self._target_fired.add(symbol)
                logger.info("Target reached: %s ltp=%.2f target=%.2f", symbol, ltp, position.target)
                self._bus.publish(
                    TargetReached(symbol=symbol, direction=position.direction, price=ltp, target=position.target)
                )

    async def update_market_prices(self) -> None:
        if self._broker is None:
            raise RuntimeError("PositionManager has no broker for prices")
        for symbol in list(self._positions):
            try:
                ltp = await self._broker.get_ltp(symbol)
            except Exception:
                logger.exception("Failed to update price for %s", symbol)
                continue
            if ltp is not None:
                self.apply_price(symbol, ltp)
