"""
Risk manager: daily counters, pre-trade checks, position sizing.

Daily state (trades executed, realised PnL) is keyed on the venue-local
calendar date and resets lazily on first access after the date changes.

Check order for ``check_order_risk`` (first failure wins):
  1. trades today vs max_trades_per_day
  2. daily loss vs max_daily_loss_pct of the starting balance
  3. order notional vs position_size_pct of buying power (margin-adjusted when enabled)
  4. (entry - stop) * qty vs max_risk_per_trade_pct of the current balance

The daily-loss limit event is published once per breach. The latch clears
on the daily reset or when daily PnL recovers above the limit.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from trade_core.contracts import OrderSide, RiskCheckResult
from trade_core.events import (
    DailyLossLimitReached,
    DailyLossWarning,
    EventBus,
    MaxTradesWarning,
)

logger = logging.getLogger(__name__)

WARNING_FRACTION = 0.8


@dataclass(frozen=True)
class RiskLimits:
    """Read-only risk configuration. Percentages are 0-100."""

    max_trades_per_day: int = 5
    max_daily_loss_pct: float = 5.0
    position_size_pct: float = 10.0
    max_risk_per_trade_pct: float = 2.0
    margin_enabled: bool = True
    margin_multiplier: float = 5.0


class RiskManager:
    """Stateful daily risk gate for one account."""

    def __init__(
        self,
        limits: RiskLimits,
        *,
        starting_balance: float = 0.0,
        bus: EventBus | None = None,
        timezone_name: str = "Asia/Kolkata",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._limits = limits
        self._bus = bus
        self._tz = ZoneInfo(timezone_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._starting_balance = starting_balance
        self._balance = starting_balance
        self._trades_today = 0
        self._daily_pnl = 0.0
        self._day: date | None = None
        self._limit_latched = False
        self._loss_warned = False
        self._trades_warned = False
        self._roll_day()

    # ------------------------------------------------------------------
    # Daily state
    # ------------------------------------------------------------------

    def _today(self) -> date:
        return self._clock().astimezone(self._tz).date()

    def _roll_day(self) -> None:
        today = self._today()
        if self._day == today:
            return
        self._day = today
        self._trades_today = 0
        self._daily_pnl = 0.0
        self._limit_latched = False
        self._loss_warned = False
        self._trades_warned = False
        logger.info("Daily risk counters reset for %s", today.isoformat())

    @property
    def limits(self) -> RiskLimits:
        return self._limits

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def starting_balance(self) -> float:
        return self._starting_balance

    @property
    def trades_today(self) -> int:
        self._roll_day()
        return self._trades_today

    @property
    def daily_pnl(self) -> float:
        self._roll_day()
        return self._daily_pnl

    @property
    def daily_loss_limit(self) -> float:
        return self._starting_balance * self._limits.max_daily_loss_pct / 100.0

    def _buying_power(self) -> float:
        if self._limits.margin_enabled:
            return self._balance * self._limits.margin_multiplier
        return self._balance

    def _at_loss_limit(self) -> bool:
        return self._daily_pnl < 0 and abs(self._daily_pnl) >= self.daily_loss_limit

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    def _signal_limit_reached(self) -> None:
        if self._limit_latched:
            return
        self._limit_latched = True
        logger.error(
            "Daily loss limit reached: pnl=%.2f limit=%.2f", self._daily_pnl, self.daily_loss_limit
        )
        self._publish(DailyLossLimitReached(daily_pnl=self._daily_pnl, limit=self.daily_loss_limit))

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_order_risk(
        self,
        symbol: str,
        side: OrderSide,
        quantity: int,
        price: float,
        stop_loss: float | None = None,
    ) -> RiskCheckResult:
        self._roll_day()
        lim = self._limits

        if self._trades_today >= lim.max_trades_per_day:
            reason = f"Max trades per day limit reached ({lim.max_trades_per_day})"
            logger.warning("Risk check failed for %s: %s", symbol, reason)
            return RiskCheckResult(allowed=False, reason=reason)

        if self._at_loss_limit():
            reason = f"Max daily loss limit reached ({lim.max_daily_loss_pct}%)"
            logger.warning("Risk check failed for %s: %s", symbol, reason)
            self._signal_limit_reached()
            return RiskCheckResult(allowed=False, reason=reason)

        order_value = quantity * price
        max_position = lim.position_size_pct / 100.0 * self._buying_power()
        if order_value > max_position:
            basis = "margin-adjusted balance" if lim.margin_enabled else "balance"
            reason = f"Position size exceeds limit ({lim.position_size_pct}% of {basis})"
            logger.warning(
                "Risk check failed for %s: %s (value=%.2f max=%.2f)",
                symbol, reason, order_value, max_position,
            )
            return RiskCheckResult(allowed=False, reason=reason)

        if stop_loss:
            total_risk = abs(price - stop_loss) * quantity
            max_risk = lim.max_risk_per_trade_pct / 100.0 * self._balance
            if total_risk > max_risk:
                reason = f"Risk per trade exceeds limit ({lim.max_risk_per_trade_pct}%)"
                logger.warning(
                    "Risk check failed for %s: %s (risk=%.2f max=%.2f)",
                    symbol, reason, total_risk, max_risk,
                )
                return RiskCheckResult(allowed=False, reason=reason)

        return RiskCheckResult(allowed=True)

    def calculate_position_size(
        self,
        entry_price: float,
        stop_loss: float,
        max_risk_amount: float | None = None,
    ) -> int:
        """floor(risk budget / |entry - stop|), capped by the position-size ceiling."""
        if max_risk_amount is None:
            risk_amount = self._limits.max_risk_per_trade_pct / 100.0 * self._balance
        else:
            risk_amount = max_risk_amount
        risk_per_share = abs(entry_price - stop_loss)
        if risk_per_share == 0:
            logger.warning("Cannot size position: stop loss equals entry price (%.2f)", entry_price)
            return 0

        by_risk = math.floor(risk_amount / risk_per_share)
        max_value = self._limits.position_size_pct / 100.0 * self._buying_power()
        by_position = math.floor(max_value / entry_price) if entry_price > 0 else 0
        qty = max(0, min(by_risk, by_position))
        logger.debug(
            "Position size: entry=%.2f stop=%.2f by_risk=%d by_position=%d -> %d",
            entry_price, stop_loss, by_risk, by_position, qty,
        )
        return qty

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def record_trade(self, pnl: float) -> None:
        """Record a completed round trip and evaluate the warning thresholds."""
        self._roll_day()
        self._trades_today += 1
        self._daily_pnl += pnl
        logger.info(
            "Trade recorded: pnl=%.2f trades_today=%d daily_pnl=%.2f",
            pnl, self._trades_today, self._daily_pnl,
        )
        self._check_thresholds()

    def _check_thresholds(self) -> None:
        limit = self.daily_loss_limit
        if self._daily_pnl < 0 and limit > 0:
            loss = abs(self._daily_pnl)
            if loss >= limit:
                self._signal_limit_reached()
            elif loss >= limit * WARNING_FRACTION and not self._loss_warned:
                self._loss_warned = True
                pct = loss / self._starting_balance * 100.0 if self._starting_balance else 0.0
                logger.warning("Approaching daily loss limit: pnl=%.2f limit=%.2f", self._daily_pnl, limit)
                self._publish(DailyLossWarning(daily_pnl=self._daily_pnl, limit=limit, loss_pct=pct))
        if not self._at_loss_limit():
            self._limit_latched = False

        max_trades = self._limits.max_trades_per_day
        if self._trades_today >= max_trades * WARNING_FRACTION and not self._trades_warned:
            self._trades_warned = True
            logger.warning("Approaching max trades per day: %d/%d", self._trades_today, max_trades)
            self._publish(MaxTradesWarning(trades_today=self._trades_today, max_trades=max_trades))

    def update_balance(self, balance: float) -> None:
        self._balance = balance

    def reset_starting_balance(self, balance: float) -> None:
        self._starting_balance = balance
        self._balance = balance
        logger.info("Starting balance reset to %.2f", balance)

    def update_limits(self, **changes: Any) -> RiskLimits:
        self._limits = replace(self._limits, **changes)
        logger.info("Risk limits updated: %s", asdict(self._limits))
        return self._limits

    def stats(self) -> dict[str, Any]:
        self._roll_day()
        limit = self.daily_loss_limit
        loss_pct = (
            abs(self._daily_pnl) / self._starting_balance * 100.0
            if self._daily_pnl < 0 and self._starting_balance
            else 0.0
        )
        return {
            "trades_today": self._trades_today,
            "max_trades_per_day": self._limits.max_trades_per_day,
            "trades_remaining": max(0, self._limits.max_trades_per_day - self._trades_today),
            "daily_pnl": self._daily_pnl,
            "daily_loss_limit": limit,
            "daily_loss_pct": loss_pct,
            "max_daily_loss_pct": self._limits.max_daily_loss_pct,
            "at_risk_limit": self._at_loss_limit(),
            "balance": self._balance,
        }
