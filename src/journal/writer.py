"""
Trade journal: append-only JSON lines of fills, position opens/closes, risk
events, reconciliation alerts and shutdowns. ``read_journal`` and
``summarize`` back the ``status`` command.
"""

import json
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator


def _serialize(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if hasattr(obj, "__dict__") and not isinstance(obj, type):
        return {k: _serialize(v) for k, v in vars(obj).items() if not k.startswith("_")}
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(x) for x in obj]
    return obj


class JournalWriter:
    """Append-only journal. Each line is a JSON object with event type and payload."""

    def __init__(self, path: str | Path, *, echo_stdout: bool = False) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._echo = echo_stdout

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, event_type: str, payload: dict) -> None:
        record = {"ts_utc": datetime.now(timezone.utc).isoformat(), "event": event_type, **payload}
        line = json.dumps(_serialize(record)) + "\n"
        with open(self._path, "a") as f:
            f.write(line)
        if self._echo:
            print(line.rstrip())

    def fill(self, order_id: str, symbol: str, side: str, qty: int, price: float, trade_id: str | None = None, **extra: Any) -> None:
        self._write("fill", {"order_id": order_id, "symbol": symbol, "side": side, "qty": qty, "price": price, "trade_id": trade_id, **extra})

    def position_opened(self, symbol: str, direction: str, qty: int, entry_price: float, **extra: Any) -> None:
        self._write("position_opened", {"symbol": symbol, "direction": direction, "qty": qty, "entry_price": entry_price, **extra})

    def position_closed(self, symbol: str, direction: str, qty: int, entry_price: float, exit_price: float, pnl: float, reason: str, **extra: Any) -> None:
        self._write(
            "position_closed",
            {"symbol": symbol, "direction": direction, "qty": qty, "entry_price": entry_price, "exit_price": exit_price, "pnl": pnl, "reason": reason, **extra},
        )

    def risk_event(self, kind: str, message: str, **extra: Any) -> None:
        self._write("risk_event", {"kind": kind, "message": message, **extra})

    def reconciliation(self, consecutive: int, mismatches: list[str], critical: bool = False, **extra: Any) -> None:
        self._write("reconciliation", {"consecutive": consecutive, "mismatches": mismatches, "critical": critical, **extra})

    def shutdown(self, reason: str, closed: list[str], failed: list[str], **extra: Any) -> None:
        self._write("shutdown", {"reason": reason, "closed": closed, "failed": failed, **extra})


def read_journal(path: str | Path, *, day: date | None = None) -> Iterator[dict]:
    """Yield journal records, optionally only those written on *day* (UTC). Bad lines are skipped."""
    journal = Path(path)
    if not journal.exists():
        return
    with open(journal) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if day is not None and not str(record.get("ts_utc", "")).startswith(day.isoformat()):
                continue
            yield record


def summarize(records: Iterator[dict]) -> dict[str, Any]:
    """Aggregate journal records into the figures shown by ``status``."""
    summary: dict[str, Any] = {
        "fills": 0,
        "positions_opened": 0,
        "positions_closed": 0,
        "realized_pnl": 0.0,
        "winners": 0,
        "losers": 0,
        "risk_events": 0,
        "reconciliation_alerts": 0,
        "shutdowns": [],
    }
    for record in records:
        event = record.get("event")
        if event == "fill":
            summary["fills"] += 1
        elif event == "position_opened":
            summary["positions_opened"] += 1
        elif event == "position_closed":
            pnl = float(record.get("pnl", 0.0))
            summary["positions_closed"] += 1
            summary["realized_pnl"] += pnl
            if pnl > 0:
                summary["winners"] += 1
            elif pnl < 0:
                summary["losers"] += 1
        elif event == "risk_event":
            summary["risk_events"] += 1
        elif event == "reconciliation":
            summary["reconciliation_alerts"] += 1
        elif event == "shutdown":
            summary["shutdowns"].append(record.get("reason", ""))
    return summary
