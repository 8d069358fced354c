"""Tests for the market scheduler (no network, no real sleeping on the clock)."""

import asyncio
from datetime import datetime, time
from zoneinfo import ZoneInfo

import pytest

from cli.scheduler import (
    AUTO_SQUARE_OFF,
    MARKET_CLOSE,
    MARKET_OPEN,
    UPDATE_PRICES,
    MarketScheduler,
    next_occurrence,
    next_trading_open,
)
from trade_core.signal_gate import TradingCalendar, TradingWindows

IST = ZoneInfo("Asia/Kolkata")


def at(day: int, hh: int, mm: int) -> datetime:
    """March 2026, venue-local. The 9th is a Monday."""
    return datetime(2026, 3, day, hh, mm, tzinfo=IST)


class Handlers:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def on_market_open(self) -> None:
        self.calls.append(MARKET_OPEN)

    async def on_market_close(self) -> None:
        self.calls.append(MARKET_CLOSE)

    async def on_auto_square_off(self) -> None:
        self.calls.append(AUTO_SQUARE_OFF)

    async def on_update_prices(self) -> None:
        self.calls.append(UPDATE_PRICES)


class Mono:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def scheduler(handlers: Handlers, mono: Mono | None = None, holidays=()) -> MarketScheduler:
    return MarketScheduler(
        TradingWindows(),
        TradingCalendar.from_strings(holidays),
        handlers,
        update_prices_seconds=60.0,
        monotonic=mono or Mono(),
    )


# ---------------------------------------------------------------------------
# next_occurrence / next_trading_open
# ---------------------------------------------------------------------------


def test_next_occurrence_later_today() -> None:
    assert next_occurrence(at(10, 9, 0), "09:15") == at(10, 9, 15)


def test_next_occurrence_rolls_to_tomorrow() -> None:
    assert next_occurrence(at(10, 9, 15), "09:15") == at(11, 9, 15)


def test_next_occurrence_converts_timezone() -> None:
    utc_now = datetime(2026, 3, 10, 3, 0, tzinfo=ZoneInfo("UTC"))  # 08:30 IST
    assert next_occurrence(utc_now, "09:15").time() == time(9, 15)
    assert next_occurrence(utc_now, "09:15").date() == utc_now.date()


def test_next_trading_open_skips_weekend() -> None:
    friday_evening = at(13, 16, 0)
    assert next_trading_open(friday_evening, TradingWindows(), TradingCalendar()) == at(16, 9, 15)


def test_next_trading_open_skips_holiday() -> None:
    cal = TradingCalendar.from_strings(["2026-03-16"])
    assert next_trading_open(at(13, 16, 0), TradingWindows(), cal) == at(17, 9, 15)


# ---------------------------------------------------------------------------
# MarketScheduler.tick
# ---------------------------------------------------------------------------


class TestTick:
    @pytest.mark.asyncio
    async def test_full_day(self) -> None:
        handlers, mono = Handlers(), Mono()
        sched = scheduler(handlers, mono)

        assert await sched.tick(at(10, 9, 0)) == []
        assert await sched.tick(at(10, 9, 15)) == [MARKET_OPEN, UPDATE_PRICES]
        assert await sched.tick(at(10, 9, 16)) == []

        mono.value += 60
        assert await sched.tick(at(10, 9, 17)) == [UPDATE_PRICES]
        mono.value += 60
        assert await sched.tick(at(10, 15, 20)) == [AUTO_SQUARE_OFF, UPDATE_PRICES]
        mono.value += 60
        assert await sched.tick(at(10, 15, 30)) == [MARKET_CLOSE]
        assert await sched.tick(at(10, 15, 31)) == []

    @pytest.mark.asyncio
    async def test_each_trigger_once_per_day(self) -> None:
        handlers = Handlers()
        sched = scheduler(handlers)
        await sched.tick(at(10, 10, 0))
        await sched.tick(at(10, 10, 0))
        assert handlers.calls.count(MARKET_OPEN) == 1
        await sched.tick(at(11, 10, 0))
        assert handlers.calls.count(MARKET_OPEN) == 2

    @pytest.mark.asyncio
    async def test_mid_session_start_opens_market(self) -> None:
        handlers = Handlers()
        fired = await scheduler(handlers).tick(at(10, 11, 0))
        assert fired == [MARKET_OPEN, UPDATE_PRICES]

    @pytest.mark.asyncio
    async def test_after_close_does_not_open(self) -> None:
        handlers = Handlers()
        fired = await scheduler(handlers).tick(at(10, 16, 0))
        assert MARKET_OPEN not in fired
        assert UPDATE_PRICES not in fired

    @pytest.mark.asyncio
    async def test_weekend_and_holiday_silent(self) -> None:
        handlers = Handlers()
        sched = scheduler(handlers, holidays=["2026-03-10"])
        assert await sched.tick(at(8, 10, 0)) == []  # Sunday
        assert await sched.tick(at(10, 10, 0)) == []  # holiday
        assert handlers.calls == []

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self) -> None:
        handlers = Handlers()

        async def boom() -> None:
            raise RuntimeError("strategy init failed")

        handlers.on_market_open = boom
        fired = await scheduler(handlers).tick(at(10, 9, 30))
        assert fired == [MARKET_OPEN, UPDATE_PRICES]
        assert handlers.calls == [UPDATE_PRICES]


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        handlers = Handlers()
        sched = MarketScheduler(
            TradingWindows(),
            TradingCalendar(),
            handlers,
            poll_seconds=0.01,
            clock=lambda: at(10, 10, 0),
        )
        sched.start()
        assert sched.running
        await asyncio.sleep(0.03)
        await sched.stop()
        assert not sched.running
        assert handlers.calls[:2] == [MARKET_OPEN, UPDATE_PRICES]
