"""
Human-readable terminal output for the sigexec CLI.

The engine must explain itself: every command prints through these
formatters, and the journal receives the same data as JSON.
"""

from __future__ import annotations

from typing import Any

from config.loader import AppConfig
from trade_core.contracts import ExecutionReport


def _money(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:,.2f}"


def format_report(report: ExecutionReport) -> str:
    """One line per signal outcome, with notes indented below."""
    line = f"{report.symbol:<10s} {report.action.value:<5s} {report.status.value}"
    if report.order_id:
        line += f"  order={report.order_id}"
    if report.filled:
        line += f"  filled={report.filled} @ {_money(report.fill_price)}"
    if report.reason:
        line += f"  ({report.reason})"
    lines = [line]
    for note in report.notes:
        lines.append(f"    - {note}")
    return "\n".join(lines)


def format_limits(cfg: AppConfig) -> str:
    """Effective limits after file, environment and defaults are merged."""
    t, r, ex = cfg.trading, cfg.risk, cfg.execution
    brackets = "auto" if ex.bracket_orders is None else ("on" if ex.bracket_orders else "off")
    lines = [
        "=== Effective configuration ===",
        f"Mode         : {t.mode.value}  (kill switch {'ON' if t.kill_switch else 'off'})",
        f"Broker       : {cfg.broker.name}  initial cash {_money(cfg.broker.initial_cash)}",
        f"Timezone     : {t.timezone}",
        f"Market hours : {t.market_start}-{t.market_end}  signals {t.signal_start}-{t.signal_end}  square-off {t.square_off}",
        f"Holidays     : {len(t.holidays)} configured",
        "",
        "--- Risk ---",
        f"Max trades/day       : {r.max_trades_per_day}",
        f"Max daily loss       : {r.max_daily_loss_pct:.2f}%",
        f"Position size        : {r.position_size_pct:.2f}%",
        f"Max risk per trade   : {r.max_risk_per_trade_pct:.2f}%",
        f"Margin               : {'x%.1f' % r.margin_multiplier if r.margin_enabled else 'disabled'}",
        "",
        "--- Execution ---",
        f"Slippage buffer      : {ex.slippage_buffer:.4f}",
        f"Default stop         : {ex.default_stop_pct:.4f}",
        f"Max capital/trade    : {_money(ex.max_capital_per_trade)}",
        f"Limit tolerance      : {ex.limit_tolerance:.4f}  timeout {ex.limit_order_timeout_seconds:.0f}s",
        f"Fill monitor         : every {ex.fill_poll_seconds:.0f}s, up to {ex.fill_timeout_seconds:.0f}s",
        f"Symbol lock TTL      : {ex.lock_ttl_seconds:.0f}s",
        f"Dedup window         : {ex.idempotency_window_seconds:.0f}s",
        f"Bracket orders       : {brackets}",
        "",
        "--- Monitors ---",
        f"Reconciliation       : {'every %.0fs' % cfg.reconciliation.interval_seconds if cfg.reconciliation.enabled else 'disabled'}"
        f"  (critical after {cfg.reconciliation.critical_threshold})",
        f"Heartbeat            : {'alert after %.0fs' % cfg.heartbeat.alert_after_seconds if cfg.heartbeat.enabled else 'disabled'}"
        f"  (shutdown after {cfg.heartbeat.shutdown_after_seconds:.0f}s)",
        f"Journal              : {cfg.journal.path}",
        "===",
    ]
    return "\n".join(lines)


def format_engine_status(status: dict[str, Any]) -> str:
    """Format TradingEngine.status() for the terminal."""
    risk = status.get("risk", {})
    positions = status.get("positions", {})
    rec = status.get("reconciliation", {})
    hb = status.get("heartbeat", {})
    orders = status.get("orders") or {}
    circuit = status.get("circuit")
    lines = [
        "=== Engine Status ===",
        f"Running      : {status.get('running')}  mode={status.get('mode')}",
    ]
    if status.get("kill_switch"):
        lines.append(f"Kill switch  : ACTIVE ({status.get('kill_reason') or 'no reason'})")
    lines += [
        f"Strategies   : {', '.join(status.get('strategies', [])) or '(none)'}"
        f"  active={status.get('strategies_active')}",
        f"Trades today : {risk.get('trades_today', 0)}/{risk.get('max_trades_per_day', 0)}",
        f"Daily PnL    : {_money(risk.get('daily_pnl'))}  limit {_money(risk.get('daily_loss_limit'))}",
        f"Positions    : {positions.get('total_positions', 0)}"
        f" (long {positions.get('long_positions', 0)}, short {positions.get('short_positions', 0)})"
        f"  unrealised {_money(positions.get('total_pnl'))}",
        f"Reconcile    : failures={rec.get('consecutive_failures', 0)} healthy={rec.get('healthy', True)}",
        f"Data feed    : alive={hb.get('alive')} last={hb.get('seconds_since_data')}s",
        f"Orders       : pending={orders.get('pending_orders', 0)} tracked={orders.get('total_orders', 0)}",
        "===",
    ]
    if circuit:
        lines.insert(-1, f"Broker       : circuit {circuit.get('state')} (failures {circuit.get('failures', 0)})")
    return "\n".join(lines)


def format_journal_summary(summary: dict[str, Any], day: str) -> str:
    """Format journal.summarize() output for one trading day."""
    lines = [
        f"=== Journal: {day} ===",
        f"Fills        : {summary['fills']}",
        f"Opened       : {summary['positions_opened']}",
        f"Closed       : {summary['positions_closed']} (W:{summary['winners']} / L:{summary['losers']})",
        f"Realised PnL : {summary['realized_pnl']:+,.2f}",
        f"Risk events  : {summary['risk_events']}",
        f"Reconcile    : {summary['reconciliation_alerts']} alert(s)",
    ]
    if summary["shutdowns"]:
        lines.append("Shutdowns    :")
        for reason in summary["shutdowns"]:
            lines.append(f"  - {reason}")
    else:
        lines.append("Shutdowns    : none")
    lines.append("===")
    return "\n".join(lines)
