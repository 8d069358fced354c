"""
CLI entry point: sigexec run | submit | check | status.

Every command loads config from --config (default config.yaml). ``run``
drives the trading engine from the market scheduler until interrupted;
``submit`` pushes one signal through the pipeline on the paper broker and
explains the outcome.
"""

import asyncio
import importlib
import logging
import signal as os_signal
import sys
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import click
from dotenv import load_dotenv

from config import ConfigError, load_config

load_dotenv()

logger = logging.getLogger("sigexec")


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _load(ctx: click.Context):
    try:
        return load_config(ctx.obj["config_path"])
    except (FileNotFoundError, ConfigError) as exc:
        raise click.ClickException(str(exc)) from exc


def _build_broker(cfg):
    from broker import PaperBroker, get_alpaca_broker

    if cfg.broker.name == "alpaca":
        return get_alpaca_broker(cfg.broker.api_key, cfg.broker.api_secret, paper=cfg.broker.alpaca_paper)
    return PaperBroker(cfg.broker.initial_cash, fill_delay=cfg.broker.paper_fill_delay_seconds)


def _load_strategy(spec: str):
    """Import ``package.module:Name`` and instantiate it with no arguments."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise click.BadParameter(f"expected module:Name, got {spec!r}", param_hint="--strategy")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise click.BadParameter(f"cannot load {spec}: {exc}", param_hint="--strategy") from exc
    return factory()


@click.group()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file.")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level for stderr output.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str, log_level: str) -> None:
    """sigexec: signal execution engine with risk, locking and reconciliation guards."""
    _setup_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------- sigexec run ----------


async def _run_engine(cfg, strategies: list) -> None:
    from cli.output import format_engine_status
    from cli.scheduler import MarketScheduler
    from cli.structured_log import StructuredEventLogger
    from execution import TradingEngine
    from journal import JournalWriter

    broker = _build_broker(cfg)
    notifier = StructuredEventLogger(enabled=cfg.alerting.structured_logs, webhook_url=cfg.alerting.webhook_url)
    journal = JournalWriter(cfg.journal.path, echo_stdout=cfg.journal.echo_stdout)
    engine = TradingEngine(cfg, broker, notifier=notifier, journal=journal)
    for strategy in strategies:
        engine.add_strategy(strategy)
    scheduler = MarketScheduler(
        cfg.trading.windows(),
        cfg.trading.calendar(),
        engine,
        update_prices_seconds=cfg.trading.update_prices_seconds,
    )

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (os_signal.SIGINT, os_signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await engine.start()
    notifier.engine_started(cfg.trading.mode.value, cfg.broker.name, engine.risk.stats()["balance"])
    scheduler.start()
    click.echo("Engine running. Press Ctrl+C to stop.")
    try:
        await stop_requested.wait()
    finally:
        logger.info("Stop requested; shutting down")
        await scheduler.stop()
        await engine.stop()
        await engine.bus.drain()
        notifier.engine_stopped("operator stop")
        notifier.close()
        click.echo(format_engine_status(engine.status()))


@cli.command()
@click.option(
    "--strategy",
    "strategy_specs",
    multiple=True,
    help="Strategy to attach, as package.module:ClassName. Repeatable.",
)
@click.pass_context
def run(ctx: click.Context, strategy_specs: tuple[str, ...]) -> None:
    """Run the engine until Ctrl+C: scheduler, monitors and attached strategies."""
    cfg = _load(ctx)
    strategies = [_load_strategy(spec) for spec in strategy_specs]
    if not strategies:
        click.echo("No strategies attached; the engine will only manage existing positions.")
    click.echo(f"Starting sigexec: mode={cfg.trading.mode.value} broker={cfg.broker.name}")
    asyncio.run(_run_engine(cfg, strategies))


# ---------- sigexec submit ----------


async def _submit_once(cfg, sig, price: float, at: datetime):
    from broker import PaperBroker
    from execution import TradingEngine

    broker = PaperBroker(cfg.broker.initial_cash, prices={sig.symbol: price}, clock=lambda: at)
    engine = TradingEngine(cfg, broker, clock=lambda: at)
    await engine.start()
    try:
        report = await engine.submit_signal(sig)
        await engine.bus.drain()
        position = engine.positions.get_position(sig.symbol)
    finally:
        await engine.stop()
        await engine.bus.drain()
    return report, position


@cli.command()
@click.argument("symbol")
@click.argument("action", type=click.Choice(["BUY", "SELL", "CLOSE"], case_sensitive=False))
@click.option("--price", required=True, type=float, help="Last traded price to simulate.")
@click.option("--qty", default=None, type=int, help="Explicit quantity (default: sized by risk).")
@click.option("--stop", "stop_loss", default=None, type=float, help="Stop-loss price.")
@click.option("--target", default=None, type=float, help="Target price.")
@click.option("--at", "at_hhmm", default=None, help="Venue-local time HH:MM to simulate (default: now).")
@click.option("--date", "on_str", default=None, help="Venue-local date to simulate (ISO, default: today).")
@click.pass_context
def submit(
    ctx: click.Context,
    symbol: str,
    action: str,
    price: float,
    qty: int | None,
    stop_loss: float | None,
    target: float | None,
    at_hhmm: str | None,
    on_str: str | None,
) -> None:
    """Dry-run one signal through the full pipeline on the paper broker."""
    cfg = _load(ctx)
    from cli.output import format_report
    from trade_core.contracts import Action, Signal
    from trade_core.signal_gate import parse_hhmm

    tz = ZoneInfo(cfg.trading.timezone)
    at = datetime.now(tz)
    if on_str:
        try:
            day = date.fromisoformat(on_str)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--date") from exc
        at = at.replace(year=day.year, month=day.month, day=day.day)
    if at_hhmm:
        try:
            t = parse_hhmm(at_hhmm)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--at") from exc
        at = at.replace(hour=t.hour, minute=t.minute, second=0, microsecond=0)

    sig = Signal(
        symbol=symbol.upper(),
        action=Action(action.upper()),
        reason="Manual submit",
        quantity=qty,
        stop_loss=stop_loss,
        target=target,
    )
    report, position = asyncio.run(_submit_once(cfg, sig, price, at))
    click.echo(f"Signal @ {at.strftime('%Y-%m-%d %H:%M %Z')}:")
    click.echo(format_report(report))
    if position is not None:
        click.echo(
            f"  Position: {position.direction.value} {position.quantity} @ {position.entry_price:.2f}"
            f"  stop={position.stop_loss}  target={position.target}"
        )


# ---------- sigexec check ----------


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Validate the config file and print the effective limits."""
    cfg = _load(ctx)
    from cli.output import format_limits

    click.echo(format_limits(cfg))
    click.echo("Config OK")


# ---------- sigexec status ----------


@cli.command()
@click.option("--day", "day_str", default=None, help="UTC day to summarise (ISO, default: today).")
@click.pass_context
def status(ctx: click.Context, day_str: str | None) -> None:
    """Summarise one day of the trade journal: fills, PnL, alerts, shutdowns."""
    cfg = _load(ctx)
    from cli.output import format_journal_summary
    from journal import read_journal, summarize

    try:
        day = date.fromisoformat(day_str) if day_str else datetime.now(timezone.utc).date()
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--day") from exc

    summary = summarize(read_journal(cfg.journal.path, day=day))
    click.echo(format_journal_summary(summary, day.isoformat()))


if __name__ == "__main__":
    cli()
