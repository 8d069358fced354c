"""
Market scheduler: turns the trading calendar and session times into engine
callbacks.

Daily triggers (venue-local time, once per trigger per day):
  market_open      at market_start (only while the market is still open)
  auto_square_off  at square_off
  market_close     at market_end
and ``update_prices`` every N seconds during market hours.

Nothing fires on weekends or configured holidays. Starting mid-session
fires market_open immediately so strategies come up.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Protocol
from zoneinfo import ZoneInfo

from trade_core.signal_gate import TradingCalendar, TradingWindows, parse_hhmm

logger = logging.getLogger(__name__)

MARKET_OPEN = "market_open"
AUTO_SQUARE_OFF = "auto_square_off"
MARKET_CLOSE = "market_close"
UPDATE_PRICES = "update_prices"


class ScheduleHandlers(Protocol):
    def on_market_open(self) -> Awaitable[None]: ...

    def on_market_close(self) -> Awaitable[None]: ...

    def on_auto_square_off(self) -> Awaitable[None]: ...

    def on_update_prices(self) -> Awaitable[None]: ...


def next_occurrence(now: datetime, hhmm: str, timezone: str = "Asia/Kolkata") -> datetime:
    """Next datetime strictly after *now* at local HH:MM in *timezone* (aware)."""
    tz = ZoneInfo(timezone)
    local = now.astimezone(tz)
    at = parse_hhmm(hhmm)
    candidate = local.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate


def next_trading_open(now: datetime, windows: TradingWindows, calendar: TradingCalendar) -> datetime:
    """Next market_start on a trading day, strictly after *now*."""
    tz = ZoneInfo(windows.timezone)
    local = now.astimezone(tz)
    candidate = local.replace(
        hour=windows.market_start.hour, minute=windows.market_start.minute, second=0, microsecond=0
    )
    if candidate <= local:
        candidate += timedelta(days=1)
    for _ in range(366):
        if calendar.is_trading_day(candidate.date()):
            return candidate
        candidate += timedelta(days=1)
    raise ValueError("No trading day within a year")


class MarketScheduler:
    """
    Parameters
    ----------
    handlers:
        Object exposing the four coroutine callbacks (the TradingEngine).
    update_prices_seconds:
        Mark-to-market cadence during market hours.
    clock:
        Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        windows: TradingWindows,
        calendar: TradingCalendar,
        handlers: ScheduleHandlers,
        *,
        update_prices_seconds: float = 60.0,
        poll_seconds: float = 1.0,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._windows = windows
        self._calendar = calendar
        self._handlers = handlers
        self._update_every = update_prices_seconds
        self._poll = poll_seconds
        self._tz = ZoneInfo(windows.timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self._monotonic = monotonic
        self._fired: set[tuple[date, str]] = set()
        self._last_update: float | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _in_market_hours(self, local: datetime) -> bool:
        t = local.time()
        return self._windows.market_start <= t < self._windows.market_end

    async def _fire(self, name: str, callback: Callable[[], Awaitable[None]]) -> None:
        logger.info("Scheduler event: %s", name)
        try:
            await callback()
        except Exception:
            logger.exception("Scheduler callback %s failed", name)

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Evaluate triggers at *now*. Returns the names of events fired."""
        local = (now or self._clock()).astimezone(self._tz)
        today = local.date()
        if not self._calendar.is_trading_day(today):
            return []

        t = local.time()
        w = self._windows
        fired: list[str] = []
        daily = (
            (MARKET_OPEN, w.market_start, self._handlers.on_market_open),
            (AUTO_SQUARE_OFF, w.square_off, self._handlers.on_auto_square_off),
            (MARKET_CLOSE, w.market_end, self._handlers.on_market_close),
        )
        for name, at, callback in daily:
            key = (today, name)
            if key in self._fired or t < at:
                continue
            self._fired.add(key)
            if name == MARKET_OPEN and not self._in_market_hours(local):
                continue
            await self._fire(name, callback)
            fired.append(name)

        if self._in_market_hours(local):
            mono = self._monotonic()
            if self._last_update is None or mono - self._last_update >= self._update_every:
                self._last_update = mono
                await self._fire(UPDATE_PRICES, self._handlers.on_update_prices)
                fired.append(UPDATE_PRICES)

        self._fired = {k for k in self._fired if k[0] >= today}
        return fired

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self._poll)

    def start(self) -> None:
        if self.running:
            return
        now = self._clock()
        logger.info(
            "Market scheduler started (%s): market %s-%s, square-off %s, next open %s",
            self._windows.timezone,
            self._windows.market_start.strftime("%H:%M"),
            self._windows.market_end.strftime("%H:%M"),
            self._windows.square_off.strftime("%H:%M"),
            next_trading_open(now, self._windows, self._calendar).strftime("%Y-%m-%d %H:%M"),
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
        logger.info("Market scheduler stopped")
