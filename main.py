#!/usr/bin/env python3
"""
TradeCore — Automated Options Trading Core
==========================================

Scans a watchlist for put credit spreads, call credit spreads and iron
condors, gates every order through the risk engine and submits the
selected trades to a tastytrade-style brokerage API.

Usage:
    # One scan, printed as a table
    python3 main.py scan

    # Scheduled scans every few minutes while the market is open
    python3 main.py run

    # Portfolio risk status and protection settings
    python3 main.py status

    # Halt trading / resume after review
    python3 main.py emergency-stop "manual halt"
    python3 main.py clear-stop --by alice --confirm

    # Mirror broker positions locally
    python3 main.py sync-positions
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from tradecore.alerts import AlertManager
from tradecore.broker_client import BrokerClient
from tradecore.config import BotConfig, load_config
from tradecore.emergency_stop import EmergencyStopRegistry
from tradecore.errors import BrokerError, EmergencyStopClearRefused
from tradecore.market_scanner import MarketScanner, ScanResult
from tradecore.positions import PositionSync
from tradecore.protection import PortfolioProtection
from tradecore.risk_manager import RiskManager
from tradecore.scan_job import MarketScanJob
from tradecore.storage import (
    OrderStore,
    PositionStore,
    ProtectionStore,
    ScanResultStore,
)
from tradecore.trade_executor import TradeExecutor

logger = logging.getLogger(__name__)


def setup_logging(
    level: str = "INFO",
    console_level: Optional[str] = None,
    log_file: str = "logs/tradecore.log",
    max_bytes: int = 10_485_760,
    backup_count: int = 5,
) -> None:
    """Configure logging to both console and file."""
    log_dir = Path(log_file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, level.upper(), logging.INFO)
    resolved_console_level = getattr(
        logging,
        (console_level or level).upper(),
        log_level,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(resolved_console_level)
    console.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
        datefmt="%H:%M:%S",
    ))
    root_logger.addHandler(console)

    try:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max(1024, int(max_bytes)),
            backupCount=max(1, int(backup_count)),
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root_logger.addHandler(file_handler)
    except PermissionError:
        root_logger.warning(
            f"Permission denied writing to {log_file}, skipping file logging."
        )


# ── Wiring ─────────────────────────────────────────────────────────


@dataclass
class App:
    config: BotConfig
    broker: BrokerClient
    alerts: AlertManager
    risk_manager: RiskManager
    scanner: MarketScanner
    executor: TradeExecutor
    job: MarketScanJob
    order_store: OrderStore
    position_store: PositionStore
    protection_store: ProtectionStore
    scan_store: ScanResultStore


def build_app(config: BotConfig, broker: Optional[BrokerClient] = None) -> App:
    """Wire the trading components for the configured user and account."""
    broker = broker or BrokerClient(config.broker)
    account_id = config.broker.account_id
    data_dir = config.storage.data_dir

    order_store = OrderStore(data_dir)
    position_store = PositionStore(data_dir)
    protection_store = ProtectionStore(data_dir)
    scan_store = ScanResultStore(data_dir)
    alerts = AlertManager(config.alerts)
    stops = EmergencyStopRegistry(expiry_hours=config.risk.emergency_stop_expiry_hours)

    risk_manager = RiskManager(
        config.user_id,
        account_id,
        broker,
        config.risk,
        stops,
        protection_store=protection_store,
        alerts=alerts,
    )
    scanner = MarketScanner(broker, config.scanner, risk_manager=risk_manager, account_id=account_id)
    executor = TradeExecutor(
        broker, risk_manager, order_store, account_id, config.user_id, alerts=alerts
    )
    job = MarketScanJob(config, broker, scanner, risk_manager, executor, scan_store, alerts=alerts)
    return App(
        config=config,
        broker=broker,
        alerts=alerts,
        risk_manager=risk_manager,
        scanner=scanner,
        executor=executor,
        job=job,
        order_store=order_store,
        position_store=position_store,
        protection_store=protection_store,
        scan_store=scan_store,
    )


# ── Commands ───────────────────────────────────────────────────────


def render_scan(result: ScanResult, console: Optional[Console] = None) -> Table:
    """Print scan candidates as a table and return it."""
    console = console or Console()
    meta = result.metadata
    table = Table(
        title=f"Scan ({meta.get('scan_mode') or 'n/a'}): {len(result.candidates)} trades",
        expand=True,
        box=box.SIMPLE_HEAVY,
        header_style="dim bold",
    )
    table.add_column("Symbol", no_wrap=True)
    table.add_column("Strategy", overflow="fold")
    table.add_column("Legs", no_wrap=True)
    table.add_column("Exp", no_wrap=True)
    table.add_column("Credit", justify="right")
    table.add_column("Max Loss", justify="right")
    table.add_column("R/R", justify="right")
    table.add_column("POP", justify="right")
    table.add_column("Score", justify="right")

    for trade in result.candidates:
        table.add_row(
            trade.symbol,
            trade.strategy,
            trade.legs,
            trade.expiration,
            f"{trade.credit:.2f}",
            f"{trade.max_loss:,.0f}",
            f"{trade.risk_reward:.2f}",
            f"{trade.pop:.0%}",
            f"{trade.model_score:.1f}",
        )
    if not result.candidates:
        table.add_row("-", "no trades met the criteria", "", "", "", "", "", "", "")

    console.print(table)
    return table


def cmd_scan(app: App, args: argparse.Namespace) -> int:
    result = app.scanner.scan(app.config.user_id)
    if result.candidates:
        app.scan_store.append(app.config.user_id, result.to_dict(), len(result.candidates))
    render_scan(result)
    if args.execute:
        for trade in result.candidates:
            outcome = app.executor.execute_trade(trade)
            print(f"  {trade.symbol} {trade.strategy}: {outcome.message}"
                  + (f" ({outcome.error})" if outcome.error else ""))
    return 0


def cmd_run(app: App, args: argparse.Namespace) -> int:
    if args.once:
        summary = app.job.perform(app.config.user_id)
        print(json.dumps(summary, indent=2))
        return 0
    app.job.run(app.config.user_id)
    return 0


def cmd_status(app: App, args: argparse.Namespace) -> int:
    status = app.risk_manager.portfolio_status()
    protection = PortfolioProtection.for_user_account(
        app.protection_store, app.config.user_id, app.config.broker.account_id
    )
    report = {
        "portfolio": status,
        "protection": protection.risk_status_report(app.risk_manager.account_snapshot()),
    }
    print(json.dumps(report, indent=2, default=str))
    return 0


def cmd_emergency_stop(app: App, args: argparse.Namespace) -> int:
    app.risk_manager.emergency_stop(args.reason, triggered_by=args.by or "cli")
    print(f"  Emergency stop active for account {app.config.broker.account_id}: {args.reason}")
    return 0


def cmd_clear_stop(app: App, args: argparse.Namespace) -> int:
    try:
        app.risk_manager.clear_emergency_stop(args.by, confirm=args.confirm)
    except EmergencyStopClearRefused as exc:
        print(f"  Refused: {exc}")
        return 2
    print(f"  Emergency stop cleared by {args.by}")
    return 0


def cmd_sync_positions(app: App, args: argparse.Namespace) -> int:
    sync = PositionSync(app.broker, app.position_store, app.config.user_id)
    counts = sync.sync(app.config.broker.account_id)
    print(f"  Positions updated: {counts['updated']}, closed: {counts['closed']}")
    return 0


COMMANDS = {
    "scan": cmd_scan,
    "run": cmd_run,
    "status": cmd_status,
    "emergency-stop": cmd_emergency_stop,
    "clear-stop": cmd_clear_stop,
    "sync-positions": cmd_sync_positions,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Automated options trading core for tastytrade-style brokers"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to YAML config file (default: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from config",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Run one market scan and print the trades")
    scan.add_argument(
        "--execute",
        action="store_true",
        help="Submit the selected trades after scanning",
    )

    run = subparsers.add_parser("run", help="Run scheduled scans while the market is open")
    run.add_argument("--once", action="store_true", help="Run one scan cycle and exit")

    subparsers.add_parser("status", help="Show portfolio risk status")

    stop = subparsers.add_parser("emergency-stop", help="Halt all opening trades")
    stop.add_argument("reason", help="Why trading is being halted")
    stop.add_argument("--by", default=None, help="Who triggered the stop")

    clear = subparsers.add_parser("clear-stop", help="Clear an emergency stop")
    clear.add_argument("--by", required=True, help="Name of the person clearing the stop")
    clear.add_argument(
        "--confirm",
        action="store_true",
        help="Confirm the stop should be cleared",
    )

    subparsers.add_parser("sync-positions", help="Mirror broker positions locally")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(args.log_level or config.log_level, log_file=config.log_file)

    app = build_app(config)
    handler = COMMANDS[args.command]
    try:
        return handler(app, args)
    except KeyboardInterrupt:
        print("\n  Interrupted.")
        return 130
    except BrokerError as exc:
        logger.error("Broker request failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
