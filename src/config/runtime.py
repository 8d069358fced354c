"""
Runtime state: the shared, mutable handle for the kill switch and trading mode.

Injected into every component that needs it; never a module-level singleton.
Reads and writes go through a lock so the handle is safe from worker threads
(webhook delivery, broker SDK calls) as well as the event loop.
"""

from __future__ import annotations

import logging
import threading

from trade_core.contracts import TradingMode

logger = logging.getLogger(__name__)


class RuntimeState:
    """Thread-safe get/set for process-wide trading switches."""

    def __init__(self, mode: TradingMode = TradingMode.PAPER, kill_switch: bool = False) -> None:
        self._lock = threading.Lock()
        self._mode = mode
        self._kill_switch = kill_switch
        self._kill_reason = "configured" if kill_switch else ""

    @property
    def mode(self) -> TradingMode:
        with self._lock:
            return self._mode

    def set_mode(self, mode: TradingMode) -> None:
        with self._lock:
            self._mode = mode
        logger.info("Trading mode set to %s", mode.value)

    def is_kill_switch_active(self) -> bool:
        with self._lock:
            return self._kill_switch

    @property
    def kill_reason(self) -> str:
        with self._lock:
            return self._kill_reason

    def set_kill_switch(self, active: bool, reason: str = "") -> bool:
        """Set the switch. Returns the previous value."""
        with self._lock:
            previous = self._kill_switch
            self._kill_switch = active
            self._kill_reason = reason if active else ""
        if active and not previous:
            logger.warning("Kill switch ACTIVATED: %s", reason or "no reason given")
        elif previous and not active:
            logger.info("Kill switch cleared")
        return previous
