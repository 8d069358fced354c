"""
Signal gate: side-effect-free admission checks before any execution work.

Checked in order; the first failure is final for that signal instance:
  1. kill switch active
  2. not a trading day (weekend or configured holiday)
  3. outside the data-collection window (market hours)
  4. outside the signal-generation window
  5. at or past the auto square-off cutoff

All checks are pure functions of the supplied time plus calendar state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Callable, Iterable
from zoneinfo import ZoneInfo


def parse_hhmm(value: str) -> time:
    """Parse ``HH:MM`` (24h) into a ``time``. Raises ValueError on bad input."""
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Time must be HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return time(hour, minute)


@dataclass(frozen=True)
class TradingWindows:
    """Venue-local session boundaries."""

    market_start: time = time(9, 15)
    market_end: time = time(15, 30)
    signal_start: time = time(9, 30)
    signal_end: time = time(15, 0)
    square_off: time = time(15, 20)
    timezone: str = "Asia/Kolkata"


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: str = ""


@dataclass
class TradingCalendar:
    """Weekends and configured holidays are not trading days."""

    holidays: frozenset[date] = field(default_factory=frozenset)
    timezone: str = "Asia/Kolkata"

    @classmethod
    def from_strings(cls, holidays: Iterable[str], timezone: str = "Asia/Kolkata") -> TradingCalendar:
        return cls(frozenset(date.fromisoformat(h) for h in holidays), timezone)

    def local_date(self, now: datetime) -> date:
        return now.astimezone(ZoneInfo(self.timezone)).date()

    def is_trading_day(self, day: date | datetime) -> bool:
        if isinstance(day, datetime):
            day = self.local_date(day)
        if day.weekday() >= 5:
            return False
        return day not in self.holidays


class SignalGate:
    """Admission checks for incoming strategy signals."""

    def __init__(
        self,
        windows: TradingWindows,
        calendar: TradingCalendar,
        kill_switch: Callable[[], bool] = lambda: False,
    ) -> None:
        self._windows = windows
        self._calendar = calendar
        self._kill_switch = kill_switch
        self._tz = ZoneInfo(windows.timezone)

    @property
    def windows(self) -> TradingWindows:
        return self._windows

    @property
    def calendar(self) -> TradingCalendar:
        return self._calendar

    def _local_time(self, now: datetime) -> time:
        return now.astimezone(self._tz).time()

    def in_market_hours(self, now: datetime) -> bool:
        t = self._local_time(now)
        return self._windows.market_start <= t < self._windows.market_end

    def in_signal_hours(self, now: datetime) -> bool:
        t = self._local_time(now)
        return self._windows.signal_start <= t < self._windows.signal_end

    def after_square_off(self, now: datetime) -> bool:
        return self._local_time(now) >= self._windows.square_off

    def check(self, now: datetime) -> GateResult:
        if self._kill_switch():
            return GateResult(False, "Kill switch active")
        if not self._calendar.is_trading_day(now.astimezone(self._tz).date()):
            return GateResult(False, "Not a trading day")
        if not self.in_market_hours(now):
            return GateResult(False, "Outside market hours")
        if not self.in_signal_hours(now):
            return GateResult(False, "Outside signal window")
        if self.after_square_off(now):
            return GateResult(False, "After auto square-off time")
        return GateResult(True)
