"""
VPS Billing CLI

Commands:
  serve     - Run the API server (hosts the embedded scheduler)
  daemon    - Run the standalone billing daemon
  sweep     - Run a single billing sweep
  status    - Show executor heartbeat records
  history   - Show the billing cycles of an instance
  init-db   - Create the database schema
"""

import argparse
import json
import logging
import sys

import structlog

from .config import BillingConfig
from .core.errors import ConfigurationError
from .persistence.models import EMBEDDED_EXECUTOR_ID


def configure_logging(config: BillingConfig) -> None:
    """Route structlog output to stderr through a level filter and a console or JSON renderer."""
    level = logging.getLevelName(config.log_level.upper())
    renderer = (
        structlog.processors.JSONRenderer()
        if config.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _engine(config: BillingConfig):
    from .billing.sweep import SweepEngine
    from .persistence.database import Database

    db = Database(config.database_url)
    db.initialize()
    return SweepEngine(db, config=config)


def cmd_serve(args, config: BillingConfig):
    """Run the API server."""
    import uvicorn

    print(f"Starting VPS Billing on {args.host}:{args.port}")
    print(f"  Embedded billing: {'enabled' if config.embedded_billing_enabled else 'disabled'}")

    uvicorn.run(
        "vpsbilling.api.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


def cmd_daemon(args, config: BillingConfig):
    """Run the standalone billing daemon until SIGINT/SIGTERM."""
    from .billing.scheduler import BillingDaemon

    daemon = BillingDaemon(_engine(config), config=config, executor_id=args.executor_id)
    print(f"Billing daemon {daemon.executor_id}")
    print(f"  Sweep every {config.billing_interval_seconds}s, heartbeat every {config.heartbeat_interval_seconds}s")
    print("  Press Ctrl+C to stop gracefully")
    try:
        daemon.run()
    except ConnectionError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_sweep(args, config: BillingConfig):
    """Run one sweep and print its summary."""
    result = _engine(config).run_sweep(args.executor_id)
    print(json.dumps(result.to_dict(), indent=2))
    if result.outcome.value == "failure":
        sys.exit(1)


def cmd_status(args, config: BillingConfig):
    """Show executor heartbeat records and the daemon status view."""
    coordinator = _engine(config).coordinator

    executors = coordinator.statuses()
    daemon = coordinator.daemon_status(config.billing_interval)

    if args.json:
        print(json.dumps({"executors": executors, "daemon": daemon}, indent=2))
        return

    print("Billing Executors")
    print("=" * 40)
    if not executors:
        print("(no heartbeat records)")
    for row in executors:
        live = "live" if row["is_live"] else "stale"
        print(f"{row['executor_id']}: {row['status']} ({live})")
        print(f"  Heartbeat: {row['heartbeat_at']}")
        print(f"  Last run: {row['last_run_at']} [{row['last_run_outcome']}]")
        print(f"  Billed: {row['instances_billed']} instances, {row['total_amount']} {config.currency}")
    print()
    print(f"Daemon: {daemon['status']}{' (WARNING)' if daemon['warning'] else ''}")
    if daemon["next_scheduled_run"]:
        print(f"  Next run: {daemon['next_scheduled_run']}")


def cmd_history(args, config: BillingConfig):
    """Show the billing cycles of an instance in period order."""
    tracker = _engine(config).tracker
    cycles = tracker.history(args.instance_id, limit=args.limit, offset=args.offset)

    if args.json:
        print(json.dumps([c.to_dict() for c in cycles], indent=2))
        return

    if not cycles:
        print(f"No billing cycles for {args.instance_id}")
        return
    for cycle in cycles:
        print(
            f"{cycle.period_start.isoformat()} -> {cycle.period_end.isoformat()}  "
            f"{cycle.hours:.4f}h x {cycle.hourly_rate} = {cycle.amount} {config.currency}  "
            f"[{cycle.status.value}]"
        )


def cmd_init_db(args, config: BillingConfig):
    """Create the database schema."""
    from .persistence.database import Database

    db = Database(config.database_url)
    db.initialize()
    print(f"Database initialized ({'postgres' if db.is_postgres else 'sqlite'})")


COMMANDS = {
    "serve": cmd_serve,
    "daemon": cmd_daemon,
    "sweep": cmd_sweep,
    "status": cmd_status,
    "history": cmd_history,
    "init-db": cmd_init_db,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vpsbilling",
        description="VPS Billing - usage-based billing reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")

    # daemon
    daemon_parser = subparsers.add_parser("daemon", help="Run the standalone billing daemon")
    daemon_parser.add_argument("--executor-id", default=None, help="Defaults to <hostname>-<pid>")

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Run a single billing sweep")
    sweep_parser.add_argument(
        "--executor-id",
        default=EMBEDDED_EXECUTOR_ID,
        help="Executor identity; the default defers to a live standalone daemon",
    )

    # status
    status_parser = subparsers.add_parser("status", help="Show executor status")
    status_parser.add_argument("--json", action="store_true")

    # history
    history_parser = subparsers.add_parser("history", help="Show billing cycles of an instance")
    history_parser.add_argument("instance_id")
    history_parser.add_argument("--limit", type=int, default=100)
    history_parser.add_argument("--offset", type=int, default=0)
    history_parser.add_argument("--json", action="store_true")

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return

    try:
        config = BillingConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    configure_logging(config)
    handler(args, config)


if __name__ == "__main__":
    main()
