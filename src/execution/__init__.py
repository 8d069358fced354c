"""
Async execution layer: signal pipeline, fill monitoring, protective orders,
heartbeat, emergency shutdown and the engine that wires them to a broker.
"""

from execution.engine import Strategy, TradingEngine
from execution.fill_monitor import FillMonitor, OrderTimeoutGuard
from execution.heartbeat import HeartbeatMonitor
from execution.notify import Notifier, NullNotifier, SafeNotifier
from execution.pipeline import ExecutionPipeline, apply_slippage, default_stop, limit_price
from execution.shutdown import EmergencyShutdown, ShutdownRecord
from execution.stop_loss import ProtectiveOrders, StopLossManager

__all__ = [
    "EmergencyShutdown",
    "ExecutionPipeline",
    "FillMonitor",
    "HeartbeatMonitor",
    "Notifier",
    "NullNotifier",
    "OrderTimeoutGuard",
    "ProtectiveOrders",
    "SafeNotifier",
    "ShutdownRecord",
    "StopLossManager",
    "Strategy",
    "TradingEngine",
    "apply_slippage",
    "default_stop",
    "limit_price",
]
