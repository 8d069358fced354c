"""
Configuration loading.

App config:  reads config.yaml, validates against app_config.schema.json,
             resolves broker secrets and overrides from the environment.
Runtime:     RuntimeState, the injected kill-switch / trading-mode handle.
"""

from config.loader import (
    AlertingConfig,
    AppConfig,
    BrokerConfig,
    ConfigError,
    ExecutionConfig,
    HeartbeatConfig,
    JournalConfig,
    ReconciliationConfig,
    ResilienceConfig,
    TradingConfig,
    load_config,
    validate_config,
)
from config.runtime import RuntimeState

__all__ = [
    "AlertingConfig",
    "AppConfig",
    "BrokerConfig",
    "ConfigError",
    "ExecutionConfig",
    "HeartbeatConfig",
    "JournalConfig",
    "ReconciliationConfig",
    "ResilienceConfig",
    "RuntimeState",
    "TradingConfig",
    "load_config",
    "validate_config",
]
