"""
Broker port: the contracted interface every broker adapter implements.

All I/O methods are coroutines. ``get_ltp`` and ``place_order`` return None
on a soft failure (no quote, order refused); adapters raise BrokerError for
transport-level failures. Fills, position pushes and connectivity errors are
published on the EventBus passed to ``attach``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from trade_core.contracts import Order, OrderSide, OrderType, Position
from trade_core.events import EventBus


class BrokerError(Exception):
    """Adapter-level failure talking to a broker."""


@runtime_checkable
class BrokerPort(Protocol):
    supports_bracket_orders: bool

    def attach(self, bus: EventBus) -> None: ...

    async def connect(self) -> bool: ...

    async def disconnect(self) -> None: ...

    async def get_ltp(self, symbol: str) -> float | None: ...

    async def get_account_balance(self) -> float: ...

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
        """
        Submit an order.

        MARKET / LIMIT: plain entry or exit. BRACKET: market entry with
        stop_loss and target legs attached broker-side. STOP: protective
        exit triggered at ``stop_loss``.
        """
        ...

    async def cancel_order(self, order_id: str) -> bool: ...

    async def get_orders(self) -> list[Order]: ...

    async def get_positions(self) -> list[Position]: ...
