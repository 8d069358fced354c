"""
ResilientBroker: a BrokerPort that routes every call to another BrokerPort
through one circuit breaker.

Reads (balance, orders, positions) are also retried with backoff; a refused
call is never retried. Writes are not retried here; the pipeline owns order
retries. While the circuit is open the soft-failure contract of the port is
kept: ``get_ltp`` and ``place_order`` return None, ``cancel_order`` returns
False and the listing calls raise CircuitOpenError, a BrokerError.

Attributes the port does not define (``poll_fills``, the paper broker's
``update_price``) are delegated to the wrapped adapter unchanged.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from trade_core.contracts import Order, OrderSide, OrderType, Position
from trade_core.events import CircuitStateChanged, EventBus
from trade_core.retry import RetryError, retry_async

from broker.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from broker.port import BrokerPort

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilientBroker:
    """
    Parameters
    ----------
    inner:
        The adapter doing the actual I/O.
    failure_threshold, success_threshold, reset_timeout:
        Circuit settings, see CircuitBreaker.
    read_attempts, read_delay:
        Retry budget for read calls.
    clock:
        Monotonic seconds source for the breaker; injectable for tests.
    """

    def __init__(
        self,
        inner: BrokerPort,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 60.0,
        read_attempts: int = 2,
        read_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._breaker = CircuitBreaker(
            type(inner).__name__,
            failure_threshold=failure_threshold,
            success_threshold=success_threshold,
            reset_timeout=reset_timeout,
            on_state_change=self._on_state_change,
            clock=clock,
        )
        self._read_attempts = read_attempts
        self._read_delay = read_delay
        self._bus: EventBus | None = None

    @property
    def inner(self) -> BrokerPort:
        return self._inner

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def supports_bracket_orders(self) -> bool:
        return bool(getattr(self._inner, "supports_bracket_orders", False))

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._inner, name)

    def _on_state_change(self, previous: CircuitState, state: CircuitState, reason: str) -> None:
        if self._bus is not None:
            self._bus.publish(
                CircuitStateChanged(name=self._breaker.name, previous=previous.value, state=state.value, reason=reason)
            )

    def attach(self, bus: EventBus) -> None:
        self._bus = bus
        self._inner.attach(bus)

    async def _read(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await retry_async(
                lambda: self._breaker.call(fn),
                attempts=self._read_attempts,
                delay=self._read_delay,
                give_up_on=(CircuitOpenError,),
                label=label,
            )
        except RetryError as exc:
            if exc.last_error is None:
                raise
            raise exc.last_error from None

    # ------------------------------------------------------------------
    # BrokerPort
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        try:
            return await self._breaker.call(self._inner.connect)
        except CircuitOpenError as exc:
            logger.error("Broker connect refused: %s", exc)
            return False

    async def disconnect(self) -> None:
        await self._inner.disconnect()

    async def get_ltp(self, symbol: str) -> float | None:
        try:
            return await self._breaker.call(lambda: self._inner.get_ltp(symbol))
        except CircuitOpenError as exc:
            logger.warning("No quote for %s: %s", symbol, exc)
            return None

    async def get_account_balance(self) -> float:
        return await self._read("account balance", self._inner.get_account_balance)

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: int,
        limit_price: float | None = None,
        stop_loss: float | None = None,
        target: float | None = None,
    ) -> Order | None:
        try:
            return await self._breaker.call(
                lambda: self._inner.place_order(
                    symbol, side, order_type, quantity, limit_price=limit_price, stop_loss=stop_loss, target=target
                )
            )
        except CircuitOpenError as exc:
            logger.error("Order %s %d %s refused: %s", side.value, quantity, symbol, exc)
            return None

    async def cancel_order(self, order_id: str) -> bool:
        try:
            return await self._breaker.call(lambda: self._inner.cancel_order(order_id))
        except CircuitOpenError as exc:
            logger.error("Cancel of %s refused: %s", order_id, exc)
            return False

    async def get_orders(self) -> list[Order]:
        return await self._read("order listing", self._inner.get_orders)

    async def get_positions(self) -> list[Position]:
        return await self._read("position listing", self._inner.get_positions)

    def status(self) -> dict[str, Any]:
        return self._breaker.stats()
