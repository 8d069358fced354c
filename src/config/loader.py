"""
Config loader: YAML file -> frozen dataclass tree, validated against JSON Schema.

Broker secrets resolved from environment variables (APCA_API_KEY_ID,
APCA_API_SECRET_KEY). The config file holds only non-secret values.
TRADING_MODE and KILL_SWITCH in the environment override the file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema
import yaml

from trade_core.contracts import TradingMode
from trade_core.risk_manager import RiskLimits
from trade_core.signal_gate import TradingCalendar, TradingWindows, parse_hhmm

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "app_config.schema.json"

_TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Raised when config loading or validation fails."""


# ---------------------------------------------------------------------------
# Frozen dataclass tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradingConfig:
    mode: TradingMode = TradingMode.PAPER
    kill_switch: bool = False
    timezone: str = "Asia/Kolkata"
    market_start: str = "09:15"
    market_end: str = "15:30"
    signal_start: str = "09:30"
    signal_end: str = "15:00"
    square_off: str = "15:20"
    holidays: tuple[str, ...] = ()
    update_prices_seconds: float = 60.0

    def windows(self) -> TradingWindows:
        return TradingWindows(
            market_start=parse_hhmm(self.market_start),
            market_end=parse_hhmm(self.market_end),
            signal_start=parse_hhmm(self.signal_start),
            signal_end=parse_hhmm(self.signal_end),
            square_off=parse_hhmm(self.square_off),
            timezone=self.timezone,
        )

    def calendar(self) -> TradingCalendar:
        return TradingCalendar.from_strings(self.holidays, self.timezone)


@dataclass(frozen=True)
class ExecutionConfig:
    slippage_buffer: float = 0.001
    default_stop_pct: float = 0.005
    max_capital_per_trade: float = 10_000.0
    default_margin_multiplier: float = 5.0
    limit_tolerance: float = 0.002
    limit_order_timeout_seconds: float = 20.0
    fill_poll_seconds: float = 2.0
    fill_timeout_seconds: float = 30.0
    lock_ttl_seconds: float = 5.0
    idempotency_window_seconds: float = 120.0
    order_retry_attempts: int = 3
    order_retry_delay_seconds: float = 1.0
    quote_retry_attempts: int = 3
    quote_retry_delay_seconds: float = 0.5
    stop_monitor_seconds: float = 10.0
    bracket_orders: bool | None = None


@dataclass(frozen=True)
class ReconciliationConfig:
    enabled: bool = True
    interval_seconds: float = 30.0
    price_tolerance: float = 0.05
    critical_threshold: int = 3
    order_interval_seconds: float = 5.0
    order_max_missing_checks: int = 60
    order_history_seconds: float = 3600.0


@dataclass(frozen=True)
class ResilienceConfig:
    circuit_breaker: bool = True
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_seconds: float = 60.0
    read_retry_attempts: int = 2
    read_retry_delay_seconds: float = 0.5


@dataclass(frozen=True)
class HeartbeatConfig:
    enabled: bool = True
    check_seconds: float = 10.0
    alert_after_seconds: float = 60.0
    shutdown_after_seconds: float = 300.0
    realert_seconds: float = 300.0


@dataclass(frozen=True)
class JournalConfig:
    path: str = "data/journal.jsonl"
    echo_stdout: bool = False


@dataclass(frozen=True)
class AlertingConfig:
    structured_logs: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class BrokerConfig:
    name: str = "paper"
    initial_cash: float = 100_000.0
    paper_fill_delay_seconds: float = 0.0
    alpaca_paper: bool = True
    api_key: str = ""
    api_secret: str = ""


@dataclass(frozen=True)
class AppConfig:
    trading: TradingConfig = TradingConfig()
    risk: RiskLimits = RiskLimits()
    execution: ExecutionConfig = ExecutionConfig()
    reconciliation: ReconciliationConfig = ReconciliationConfig()
    resilience: ResilienceConfig = ResilienceConfig()
    heartbeat: HeartbeatConfig = HeartbeatConfig()
    journal: JournalConfig = JournalConfig()
    alerting: AlertingConfig = AlertingConfig()
    broker: BrokerConfig = BrokerConfig()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_schema(data: dict[str, Any], schema_path: Path = SCHEMA_PATH) -> None:
    """Validate *data* against the JSON Schema at *schema_path*."""
    if not schema_path.exists():
        raise ConfigError(f"Schema file not found: {schema_path}")
    with open(schema_path) as f:
        schema = json.load(f)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        where = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise ConfigError(f"Config validation failed at {where}: {exc.message}") from exc


def validate_config(cfg: AppConfig) -> list[str]:
    """Cross-field rules the schema cannot express. Returns a list of problems."""
    errors: list[str] = []
    t = cfg.trading
    try:
        w = t.windows()
    except ValueError as exc:
        return [str(exc)]

    if w.market_start >= w.market_end:
        errors.append("market_start must be before market_end")
    if not (w.market_start <= w.signal_start < w.signal_end <= w.market_end):
        errors.append("signal window must lie inside market hours")
    if not (w.market_start < w.square_off < w.market_end):
        errors.append("square_off must fall inside market hours, before market_end")

    try:
        ZoneInfo(t.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"unknown timezone: {t.timezone}")

    try:
        t.calendar()
    except ValueError as exc:
        errors.append(f"invalid holiday date: {exc}")

    hb = cfg.heartbeat
    if hb.shutdown_after_seconds < hb.alert_after_seconds:
        errors.append("heartbeat.shutdown_after_seconds must be >= alert_after_seconds")

    ex = cfg.execution
    if ex.fill_poll_seconds > ex.fill_timeout_seconds:
        errors.append("execution.fill_poll_seconds must not exceed fill_timeout_seconds")
    if ex.limit_order_timeout_seconds >= ex.fill_timeout_seconds:
        errors.append("execution.limit_order_timeout_seconds must be less than fill_timeout_seconds")
    if ex.fill_poll_seconds >= ex.lock_ttl_seconds:
        errors.append("execution.fill_poll_seconds must be less than lock_ttl_seconds")

    if cfg.broker.name == "alpaca" and not (cfg.broker.api_key and cfg.broker.api_secret):
        errors.append("alpaca broker requires APCA_API_KEY_ID and APCA_API_SECRET_KEY")
    if t.mode is TradingMode.REAL and cfg.broker.name == "paper":
        errors.append("REAL mode requires a live broker (broker.name: alpaca)")
    return errors


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip().lower() in _TRUTHY


def _build_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict (already validated) into the frozen dataclass tree."""
    t_raw = dict(raw.get("trading") or {})
    env_mode = os.environ.get("TRADING_MODE", "").strip()
    if env_mode:
        t_raw["mode"] = env_mode
    env_kill = _env_flag("KILL_SWITCH")
    if env_kill is not None:
        t_raw["kill_switch"] = env_kill

    try:
        mode = TradingMode(str(t_raw.get("mode", "PAPER")).upper())
    except ValueError as exc:
        raise ConfigError(f"Unknown trading mode: {t_raw.get('mode')!r}") from exc

    t_def = TradingConfig()
    trading = TradingConfig(
        mode=mode,
        kill_switch=bool(t_raw.get("kill_switch", False)),
        timezone=str(t_raw.get("timezone", t_def.timezone)),
        market_start=str(t_raw.get("market_start", t_def.market_start)),
        market_end=str(t_raw.get("market_end", t_def.market_end)),
        signal_start=str(t_raw.get("signal_start", t_def.signal_start)),
        signal_end=str(t_raw.get("signal_end", t_def.signal_end)),
        square_off=str(t_raw.get("square_off", t_def.square_off)),
        holidays=tuple(str(h) for h in t_raw.get("holidays", ())),
        update_prices_seconds=float(t_raw.get("update_prices_seconds", t_def.update_prices_seconds)),
    )

    r_raw = raw.get("risk") or {}
    r_def = RiskLimits()
    risk = RiskLimits(
        max_trades_per_day=int(r_raw.get("max_trades_per_day", r_def.max_trades_per_day)),
        max_daily_loss_pct=float(r_raw.get("max_daily_loss_pct", r_def.max_daily_loss_pct)),
        position_size_pct=float(r_raw.get("position_size_pct", r_def.position_size_pct)),
        max_risk_per_trade_pct=float(r_raw.get("max_risk_per_trade_pct", r_def.max_risk_per_trade_pct)),
        margin_enabled=bool(r_raw.get("margin_enabled", r_def.margin_enabled)),
        margin_multiplier=float(r_raw.get("margin_multiplier", r_def.margin_multiplier)),
    )

    ex_raw = raw.get("execution") or {}
    ex_def = ExecutionConfig()
    execution = ExecutionConfig(
        slippage_buffer=float(ex_raw.get("slippage_buffer", ex_def.slippage_buffer)),
        default_stop_pct=float(ex_raw.get("default_stop_pct", ex_def.default_stop_pct)),
        max_capital_per_trade=float(ex_raw.get("max_capital_per_trade", ex_def.max_capital_per_trade)),
        default_margin_multiplier=float(ex_raw.get("default_margin_multiplier", ex_def.default_margin_multiplier)),
        limit_tolerance=float(ex_raw.get("limit_tolerance", ex_def.limit_tolerance)),
        limit_order_timeout_seconds=float(ex_raw.get("limit_order_timeout_seconds", ex_def.limit_order_timeout_seconds)),
        fill_poll_seconds=float(ex_raw.get("fill_poll_seconds", ex_def.fill_poll_seconds)),
        fill_timeout_seconds=float(ex_raw.get("fill_timeout_seconds", ex_def.fill_timeout_seconds)),
        lock_ttl_seconds=float(ex_raw.get("lock_ttl_seconds", ex_def.lock_ttl_seconds)),
        idempotency_window_seconds=float(ex_raw.get("idempotency_window_seconds", ex_def.idempotency_window_seconds)),
        order_retry_attempts=int(ex_raw.get("order_retry_attempts", ex_def.order_retry_attempts)),
        order_retry_delay_seconds=float(ex_raw.get("order_retry_delay_seconds", ex_def.order_retry_delay_seconds)),
        quote_retry_attempts=int(ex_raw.get("quote_retry_attempts", ex_def.quote_retry_attempts)),
        quote_retry_delay_seconds=float(ex_raw.get("quote_retry_delay_seconds", ex_def.quote_retry_delay_seconds)),
        stop_monitor_seconds=float(ex_raw.get("stop_monitor_seconds", ex_def.stop_monitor_seconds)),
        bracket_orders=ex_raw.get("bracket_orders", ex_def.bracket_orders),
    )

    rec_raw = raw.get("reconciliation") or {}
    rec_def = ReconciliationConfig()
    reconciliation = ReconciliationConfig(
        enabled=bool(rec_raw.get("enabled", rec_def.enabled)),
        interval_seconds=float(rec_raw.get("interval_seconds", rec_def.interval_seconds)),
        price_tolerance=float(rec_raw.get("price_tolerance", rec_def.price_tolerance)),
        critical_threshold=int(rec_raw.get("critical_threshold", rec_def.critical_threshold)),
        order_interval_seconds=float(rec_raw.get("order_interval_seconds", rec_def.order_interval_seconds)),
        order_max_missing_checks=int(rec_raw.get("order_max_missing_checks", rec_def.order_max_missing_checks)),
        order_history_seconds=float(rec_raw.get("order_history_seconds", rec_def.order_history_seconds)),
    )

    res_raw = raw.get("resilience") or {}
    res_def = ResilienceConfig()
    resilience = ResilienceConfig(
        circuit_breaker=bool(res_raw.get("circuit_breaker", res_def.circuit_breaker)),
        failure_threshold=int(res_raw.get("failure_threshold", res_def.failure_threshold)),
        success_threshold=int(res_raw.get("success_threshold", res_def.success_threshold)),
        reset_timeout_seconds=float(res_raw.get("reset_timeout_seconds", res_def.reset_timeout_seconds)),
        read_retry_attempts=int(res_raw.get("read_retry_attempts", res_def.read_retry_attempts)),
        read_retry_delay_seconds=float(res_raw.get("read_retry_delay_seconds", res_def.read_retry_delay_seconds)),
    )

    hb_raw = raw.get("heartbeat") or {}
    hb_def = HeartbeatConfig()
    heartbeat = HeartbeatConfig(
        enabled=bool(hb_raw.get("enabled", hb_def.enabled)),
        check_seconds=float(hb_raw.get("check_seconds", hb_def.check_seconds)),
        alert_after_seconds=float(hb_raw.get("alert_after_seconds", hb_def.alert_after_seconds)),
        shutdown_after_seconds=float(hb_raw.get("shutdown_after_seconds", hb_def.shutdown_after_seconds)),
        realert_seconds=float(hb_raw.get("realert_seconds", hb_def.realert_seconds)),
    )

    j_raw = raw.get("journal") or {}
    journal = JournalConfig(
        path=str(j_raw.get("path", "data/journal.jsonl")),
        echo_stdout=bool(j_raw.get("echo_stdout", False)),
    )

    a_raw = raw.get("alerting") or {}
    alerting = AlertingConfig(
        structured_logs=bool(a_raw.get("structured_logs", True)),
        webhook_url=str(a_raw.get("webhook_url", "")),
    )

    b_raw = raw.get("broker") or {}
    b_def = BrokerConfig()
    broker = BrokerConfig(
        name=str(b_raw.get("name", b_def.name)),
        initial_cash=float(b_raw.get("initial_cash", b_def.initial_cash)),
        paper_fill_delay_seconds=float(b_raw.get("paper_fill_delay_seconds", b_def.paper_fill_delay_seconds)),
        alpaca_paper=bool(b_raw.get("alpaca_paper", b_def.alpaca_paper)),
        api_key=os.environ.get("APCA_API_KEY_ID", ""),
        api_secret=os.environ.get("APCA_API_SECRET_KEY", ""),
    )

    return AppConfig(
        trading=trading,
        risk=risk,
        execution=execution,
        reconciliation=reconciliation,
        resilience=resilience,
        heartbeat=heartbeat,
        journal=journal,
        alerting=alerting,
        broker=broker,
    )


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """
    Load configuration from a YAML file.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ConfigError
        If the document is not a mapping, fails schema validation, or
        breaks a cross-field rule.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file is not valid YAML: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    _validate_schema(raw)
    cfg = _build_config(raw)

    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))

    logger.info(
        "Config loaded from %s (mode=%s broker=%s)", config_path, cfg.trading.mode.value, cfg.broker.name
    )
    return cfg
