"""
Structured JSON event logger: the operator notification sink.

Emits one JSON object per line to stderr. Events are designed to be
parsed by log aggregators (Grafana Loki, CloudWatch, ELK).

Optional webhook: when configured, alert-class events (trade_executed,
risk_alert, reconciliation_alert, emergency_shutdown, error) are POSTed to
the URL from a worker thread, so a slow endpoint never stalls order
handling.
"""

from __future__ import annotations

import json
import logging
import sys
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("sigexec.events")


class StructuredEventLogger:
    """Emit structured JSON events to stderr and optional webhook."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        webhook_url: str = "",
        stream: Any = None,
    ) -> None:
        self._enabled = enabled
        self._webhook_url = webhook_url.strip()
        self._stream = stream or sys.stderr
        self._pool: ThreadPoolExecutor | None = None
        self._ALERT_EVENTS = {
            "trade_executed",
            "risk_alert",
            "reconciliation_alert",
            "emergency_shutdown",
            "error",
        }

    def _emit(self, event_type: str, **fields: Any) -> dict:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            **fields,
        }
        if self._enabled:
            self._stream.write(json.dumps(record) + "\n")
            self._stream.flush()

        if self._webhook_url and event_type in self._ALERT_EVENTS:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="webhook")
            self._pool.submit(self._post_webhook, record)

        return record

    def _post_webhook(self, record: dict) -> None:
        try:
            data = json.dumps(record).encode("utf-8")
            req = urllib.request.Request(
                self._webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            urllib.request.urlopen(req, timeout=5)
        except Exception as exc:
            logger.warning("Webhook POST failed: %s", exc)

    def close(self) -> None:
        """Wait for queued webhook deliveries."""
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def trade_executed(
        self,
        symbol: str,
        side: str,
        quantity: int,
        price: float | None,
        order_id: str,
    ) -> dict:
        return self._emit(
            "trade_executed",
            symbol=symbol,
            side=side,
            qty=quantity,
            price=price,
            order_id=order_id,
        )

    def position_opened(self, symbol: str, direction: str, quantity: int, entry_price: float) -> dict:
        return self._emit(
            "position_opened",
            symbol=symbol,
            direction=direction,
            qty=quantity,
            entry_price=entry_price,
        )

    def position_closed(
        self,
        symbol: str,
        direction: str,
        quantity: int,
        entry_price: float,
        exit_price: float,
        pnl: float,
        reason: str,
    ) -> dict:
        notional = entry_price * quantity
        return self._emit(
            "position_closed",
            symbol=symbol,
            direction=direction,
            qty=quantity,
            entry_price=entry_price,
            exit_price=exit_price,
            pnl=round(pnl, 2),
            pnl_pct=round(pnl / notional * 100.0, 2) if notional else 0.0,
            reason=reason,
        )

    def risk_alert(self, message: str) -> dict:
        return self._emit("risk_alert", message=message)

    def reconciliation_alert(self, message: str, critical: bool = False) -> dict:
        return self._emit("reconciliation_alert", message=message, critical=critical)

    def emergency_shutdown(self, reason: str) -> dict:
        return self._emit("emergency_shutdown", reason=reason)

    def error(self, message: str, detail: str = "") -> dict:
        return self._emit("error", message=message, detail=detail)

    def engine_started(self, mode: str, broker: str, balance: float) -> dict:
        return self._emit("engine_started", mode=mode, broker=broker, balance=balance)

    def engine_stopped(self, reason: str) -> dict:
        return self._emit("engine_stopped", reason=reason)
