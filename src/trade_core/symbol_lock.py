"""
Per-symbol lock: non-blocking try-acquire with TTL auto-release.

A symbol is either free or held by exactly one in-flight operation. Acquire
never waits; a busy symbol means the caller skips the signal. A held lock
older than the TTL is treated as abandoned and may be taken over, so an
unhandled exception can never wedge a symbol for the rest of the session.

Each acquisition gets a token; a release carrying a stale token (the holder
whose lock already expired and was re-acquired) is ignored. A holder that is
still making progress refreshes its lease with ``touch``; the TTL only reclaims
holders that stopped doing so.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _LockBusy:
    """Sentinel returned by ``with_lock`` when the symbol is already held."""

    _instance: _LockBusy | None = None

    def __new__(cls) -> _LockBusy:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "LOCK_BUSY"


LOCK_BUSY = _LockBusy()


@dataclass
class _Hold:
    token: int
    acquired_at: float


class SymbolLockManager:
    """
    Lock table keyed by symbol.

    Parameters
    ----------
    ttl_seconds:
        Age after which a held lock is considered abandoned.
    clock:
        Monotonic seconds source; injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 5.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._held: dict[str, _Hold] = {}
        self._tokens = itertools.count(1)

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _expire(self, symbol: str) -> None:
        hold = self._held.get(symbol)
        if hold is not None and self._clock() - hold.acquired_at >= self._ttl:
            del self._held[symbol]
            logger.warning("Lock for %s auto-released after %.1fs TTL", symbol, self._ttl)

    def acquire(self, symbol: str) -> int | None:
        """Take the lock for *symbol*. Returns a release token, or None if busy."""
        self._expire(symbol)
        if symbol in self._held:
            logger.debug("Lock busy for %s", symbol)
            return None
        token = next(self._tokens)
        self._held[symbol] = _Hold(token=token, acquired_at=self._clock())
        return token

    def release(self, symbol: str, token: int | None = None) -> bool:
        """Release *symbol*. With a token, only the matching holder may release."""
        hold = self._held.get(symbol)
        if hold is None:
            return False
        if token is not None and hold.token != token:
            logger.debug("Ignoring stale release for %s (token %s)", symbol, token)
            return False
        del self._held[symbol]
        return True

    def touch(self, symbol: str, token: int) -> bool:
        """Restart the TTL for the holder of *token*. False if the lock was lost."""
        self._expire(symbol)
        hold = self._held.get(symbol)
        if hold is None or hold.token != token:
            logger.warning("Lock for %s no longer held by token %s", symbol, token)
            return False
        hold.acquired_at = self._clock()
        return True

    def is_locked(self, symbol: str) -> bool:
        self._expire(symbol)
        return symbol in self._held

    def held_symbols(self) -> list[str]:
        for symbol in list(self._held):
            self._expire(symbol)
        return sorted(self._held)

    def release_all(self) -> int:
        count = len(self._held)
        self._held.clear()
        if count:
            logger.info("Released %d symbol lock(s)", count)
        return count

    async def with_lock(
        self, symbol: str, fn: Callable[[Callable[[], bool]], Awaitable[T]]
    ) -> T | _LockBusy:
        """
        Run *fn* while holding the lock for *symbol*.

        *fn* receives a zero-argument keep-alive that refreshes the lease; long
        operations call it as they make progress.

        Returns LOCK_BUSY without calling *fn* when the symbol is held.
        The lock is released on every exit path.
        """
        token = self.acquire(symbol)
        if token is None:
            return LOCK_BUSY
        try:
            return await fn(lambda: self.touch(symbol, token))
        finally:
            self.release(symbol, token)
