"""
Heartbeat monitor: detects a silent market-data feed.

Nothing is checked until the first tick arrives. After that, silence longer
than ``alert_after`` publishes DataFeedDead, at most once per ``realert``
period. The engine decides what a dead feed means (alert, or shutdown past
its own threshold).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from trade_core.events import DataFeedDead, EventBus

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    def __init__(
        self,
        bus: EventBus,
        *,
        check_interval: float = 10.0,
        alert_after: float = 60.0,
        realert: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._interval = check_interval
        self._alert_after = alert_after
        self._realert = realert
        self._clock = clock
        self._last_data: float | None = None
        self._last_alert: float | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def record_data(self) -> None:
        if self._last_data is None:
            logger.info("First market data received; heartbeat monitoring active")
        self._last_data = self._clock()

    def seconds_since_data(self) -> float:
        if self._last_data is None:
            return 0.0
        return self._clock() - self._last_data

    def is_alive(self) -> bool:
        return self.seconds_since_data() < self._alert_after

    def check(self) -> float | None:
        """Publish DataFeedDead if the feed is silent. Returns the silence in seconds when alerted."""
        if self._last_data is None:
            return None
        now = self._clock()
        silence = now - self._last_data
        if silence <= self._alert_after:
            return None
        if self._last_alert is not None and now - self._last_alert < self._realert:
            return None
        self._last_alert = now
        logger.error("NO DATA RECEIVED for %.0fs: data feed dead", silence)
        self._bus.publish(DataFeedDead(seconds_since_data=silence))
        return silence

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.check()

    def start(self) -> None:
        if self.running:
            return
        logger.info(
            "Heartbeat monitor started (alert after %.0fs, check every %.0fs)", self._alert_after, self._interval
        )
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Heartbeat monitor stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "seconds_since_data": round(self.seconds_since_data(), 1),
            "alive": self.is_alive(),
        }
