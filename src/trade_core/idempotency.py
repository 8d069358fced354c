"""
Order idempotency registry.

A key derived from (symbol, action, quantity) is registered PENDING before
any order-affecting work. While a PENDING or COMPLETED record is inside the
validity window, the same key is rejected as a duplicate. FAILED records
never block a later signal.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from trade_core.contracts import Action

logger = logging.getLogger(__name__)


class IdempotencyState(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class IdempotencyRecord:
    key: str
    state: IdempotencyState
    created_at: float
    order_id: str | None = None


def make_key(symbol: str, action: Action | str, quantity: int | None) -> str:
    """``SYMBOL:ACTION:qty``; an unspecified quantity becomes ``auto``."""
    action_str = action.value if isinstance(action, Action) else str(action).upper()
    qty = "auto" if quantity is None else str(int(quantity))
    return f"{symbol.strip().upper()}:{action_str}:{qty}"


class IdempotencyRegistry:
    """Keyed records with a bounded lifetime, independent of lock expiry."""

    def __init__(
        self,
        window_seconds: float = 120.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._records: dict[str, IdempotencyRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, r in self._records.items() if now - r.created_at >= self._window]
        for key in stale:
            del self._records[key]
        return len(stale)

    def get(self, key: str) -> IdempotencyRecord | None:
        self.purge_expired()
        return self._records.get(key)

    def is_duplicate(self, key: str) -> bool:
        record = self.get(key)
        return record is not None and record.state is not IdempotencyState.FAILED

    def begin(self, key: str) -> bool:
        """Register *key* as PENDING. Returns False if it is a live duplicate."""
        if self.is_duplicate(key):
            logger.warning("Duplicate order attempt rejected: %s", key)
            return False
        self._records[key] = IdempotencyRecord(
            key=key, state=IdempotencyState.PENDING, created_at=self._clock()
        )
        return True

    def complete(self, key: str, order_id: str) -> None:
        record = self._records.get(key)
        if record is None:
            logger.debug("complete() for unknown key %s", key)
            return
        record.state = IdempotencyState.COMPLETED
        record.order_id = order_id

    def fail(self, key: str) -> None:
        record = self._records.get(key)
        if record is None:
            return
        record.state = IdempotencyState.FAILED

    def clear(self) -> None:
        self._records.clear()
