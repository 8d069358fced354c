"""
Operator notification sink.

The engine and pipeline talk to a Notifier; the CLI supplies the structured
JSON logger. Every call goes through SafeNotifier so a failing sink is logged
and never interrupts order handling.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def trade_executed(self, symbol: str, side: str, quantity: int, price: float | None, order_id: str) -> Any: ...

    def position_opened(self, symbol: str, direction: str, quantity: int, entry_price: float) -> Any: ...

    def position_closed(
        self,
        symbol: str,
        direction: str,
        quantity: int,
        entry_price: float,
        exit_price: float,
        pnl: float,
        reason: str,
    ) -> Any: ...

    def risk_alert(self, message: str) -> Any: ...

    def reconciliation_alert(self, message: str, critical: bool = False) -> Any: ...

    def emergency_shutdown(self, reason: str) -> Any: ...

    def error(self, message: str, detail: str = "") -> Any: ...


class NullNotifier:
    """Discards everything. Default when no sink is configured."""

    def trade_executed(self, symbol, side, quantity, price, order_id):
        return None

    def position_opened(self, symbol, direction, quantity, entry_price):
        return None

    def position_closed(self, symbol, direction, quantity, entry_price, exit_price, pnl, reason):
        return None

    def risk_alert(self, message):
        return None

    def reconciliation_alert(self, message, critical=False):
        return None

    def emergency_shutdown(self, reason):
        return None

    def error(self, message, detail=""):
        return None


class SafeNotifier:
    """Wraps a Notifier; exceptions from the sink are logged as warnings."""

    def __init__(self, inner: Notifier | None = None) -> None:
        self._inner = inner if inner is not None else NullNotifier()

    @property
    def inner(self) -> Notifier:
        return self._inner

    def __getattr__(self, name: str):
        target = getattr(self._inner, name)

        def _call(*args: Any, **kwargs: Any) -> Any:
            try:
                return target(*args, **kwargs)
            except Exception as exc:
                logger.warning("Notification %s failed: %s", name, exc)
                return None

        return _call
