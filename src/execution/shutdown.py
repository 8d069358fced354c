"""
Emergency shutdown: one idempotent procedure for catastrophic conditions.

Steps, in order: kill switch on, operator alert, close every position through
the normal closing path, stop strategies, stop monitors. A second trigger
while the first is running (or after it finished) is logged and ignored
until ``reset()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from config.runtime import RuntimeState
from trade_core.contracts import ExecutionReport, ExecutionStatus

from execution.notify import Notifier, SafeNotifier

logger = logging.getLogger(__name__)

Step = Callable[[], Awaitable[None]]


@dataclass
class ShutdownRecord:
    reason: str
    started_at: datetime
    closed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    finished_at: datetime | None = None


class EmergencyShutdown:
    """
    Parameters
    ----------
    close_all:
        Coroutine function taking a reason and returning close reports
        (``ExecutionPipeline.close_all``).
    stop_strategies, stop_monitors:
        Optional coroutine functions run after positions are closed.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        close_all: Callable[[str], Awaitable[list[ExecutionReport]]],
        *,
        notifier: Notifier | None = None,
        stop_strategies: Step | None = None,
        stop_monitors: Step | None = None,
    ) -> None:
        self._runtime = runtime
        self._close_all = close_all
        self._notifier = notifier if isinstance(notifier, SafeNotifier) else SafeNotifier(notifier)
        self._stop_strategies = stop_strategies
        self._stop_monitors = stop_monitors
        self._active: ShutdownRecord | None = None
        self.history: list[ShutdownRecord] = []

    @property
    def triggered(self) -> bool:
        return self._active is not None

    async def _run_step(self, name: str, step: Step | None) -> None:
        if step is None:
            return
        try:
            await step()
        except Exception:
            logger.exception("Emergency shutdown step '%s' failed", name)

    async def trigger(self, reason: str) -> ShutdownRecord | None:
        """Run the shutdown. Returns None when one has already been triggered."""
        if self._active is not None:
            logger.warning("Emergency shutdown already triggered (%s); ignoring: %s", self._active.reason, reason)
            return None
        record = ShutdownRecord(reason=reason, started_at=datetime.now(timezone.utc))
        self._active = record
        self.history.append(record)

        logger.critical("EMERGENCY SHUTDOWN: %s", reason)
        self._runtime.set_kill_switch(True, reason)
        self._notifier.emergency_shutdown(reason)

        try:
            reports = await self._close_all(f"Emergency shutdown: {reason}")
        except Exception:
            logger.exception("Closing positions during emergency shutdown failed")
            reports = []
        for report in reports:
            if report.status is ExecutionStatus.CLOSED:
                record.closed.append(report.symbol)
            else:
                record.failed.append(report.symbol)
        if record.failed:
            self._notifier.error("Emergency close failed", ", ".join(record.failed))

        await self._run_step("stop strategies", self._stop_strategies)
        await self._run_step("stop monitors", self._stop_monitors)

        record.finished_at = datetime.now(timezone.utc)
        logger.critical(
            "Emergency shutdown complete: closed=%s failed=%s", record.closed or "none", record.failed or "none"
        )
        return record

    def reset(self) -> None:
        """Re-arm after an operator has reviewed the shutdown. The kill switch stays as it is."""
        self._active = None
