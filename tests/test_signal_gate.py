"""Tests for the side-effect-free signal admission gate."""

from datetime import date, datetime, time, timezone

import pytest

from trade_core.signal_gate import SignalGate, TradingCalendar, TradingWindows, parse_hhmm

from conftest import IST


def at(hour: int, minute: int, day: int = 10) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=IST)


@pytest.fixture
def gate() -> SignalGate:
    return SignalGate(TradingWindows(), TradingCalendar.from_strings(["2026-03-11"]))


class TestParseHhmm:
    def test_valid(self) -> None:
        assert parse_hhmm("09:15") == time(9, 15)

    @pytest.mark.parametrize("bad", ["9", "25:00", "10:61", "ab:cd", "10:00:00"])
    def test_invalid(self, bad: str) -> None:
        with pytest.raises(ValueError):
            parse_hhmm(bad)


class TestCalendar:
    def test_weekend_is_not_trading_day(self) -> None:
        assert not TradingCalendar().is_trading_day(date(2026, 3, 14))

    def test_holiday_is_not_trading_day(self) -> None:
        cal = TradingCalendar.from_strings(["2026-03-11"])
        assert not cal.is_trading_day(date(2026, 3, 11))
        assert cal.is_trading_day(date(2026, 3, 10))

    def test_datetime_uses_venue_date(self) -> None:
        cal = TradingCalendar()
        # 2026-03-13 20:00 UTC is already Saturday in Kolkata.
        assert not cal.is_trading_day(datetime(2026, 3, 13, 20, 0, tzinfo=timezone.utc))


class TestGate:
    def test_allows_inside_signal_window(self, gate: SignalGate) -> None:
        assert gate.check(at(10, 0)).allowed

    def test_kill_switch_checked_first(self) -> None:
        gate = SignalGate(TradingWindows(), TradingCalendar(), kill_switch=lambda: True)
        result = gate.check(datetime(2026, 3, 14, 3, 0, tzinfo=IST))
        assert result.reason == "Kill switch active"

    def test_holiday(self, gate: SignalGate) -> None:
        assert gate.check(at(10, 0, day=11)).reason == "Not a trading day"

    def test_weekend(self, gate: SignalGate) -> None:
        assert gate.check(at(10, 0, day=14)).reason == "Not a trading day"

    def test_before_market(self, gate: SignalGate) -> None:
        assert gate.check(at(9, 0)).reason == "Outside market hours"

    def test_market_open_but_before_signal_window(self, gate: SignalGate) -> None:
        assert gate.check(at(9, 20)).reason == "Outside signal window"

    def test_after_signal_window(self, gate: SignalGate) -> None:
        assert gate.check(at(15, 5)).reason == "Outside signal window"

    def test_square_off_inside_signal_window(self) -> None:
        windows = TradingWindows(signal_end=time(15, 25), square_off=time(15, 20))
        gate = SignalGate(windows, TradingCalendar())
        assert gate.check(at(15, 21)).reason == "After auto square-off time"

    def test_pure_function_of_time(self, gate: SignalGate) -> None:
        assert gate.check(at(10, 0)) == gate.check(at(10, 0))
