# =============================================================================
# TASK TRACKER OBSERVABILITY - COMMAND LINE ENTRY POINT
# =============================================================================
"""
Monitoring Command Line

Inspects the observability data of a task tracker installation.

Commands:
    report        Start monitoring, sample for a while, print the JSON report
    query         Search the structured log files
    audit-report  Risk report over persisted audit snapshots
    metrics       Print a Prometheus exposition of one process sample

Usage:
    python -m monitoring report --duration 5
    python -m monitoring query --level ERROR --since 2024-01-01T00:00:00Z
    python -m monitoring --config config/monitoring.yaml audit-report
    python -m monitoring metrics
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, List, Optional

from monitoring.audit import AuditEntry, AuditQuery, AuditTracker
from monitoring.config import DEFAULT_CONFIG_PATH, load_config
from monitoring.exceptions import ConfigError
from monitoring.logger import Logger, LogQuery, setup_logging
from monitoring.metrics import render_prometheus
from monitoring.system import MonitoringConfig, create_monitoring_system

logger = logging.getLogger(__name__)


# =============================================================================
# COMMANDS
# =============================================================================


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


async def run_report(config: MonitoringConfig, duration: float, period: Optional[str]) -> None:
    """Sample the running process for ``duration`` seconds and print a report."""
    system = create_monitoring_system(config)
    await system.start()
    try:
        system.collect_system_metrics()
        await asyncio.sleep(duration)
        system.collect_system_metrics()
        system.perform_health_check()
        _print_json(system.generate_report(period))
    finally:
        await system.stop()


async def run_query(config: MonitoringConfig, args: argparse.Namespace) -> None:
    """Print log records matching the command line filters."""
    query = LogQuery(
        level=args.level,
        type=args.type,
        category=args.category,
        start_time=args.since,
        end_time=args.until,
        user_id=args.user,
        session_id=args.session,
        message=args.message,
        limit=args.limit,
    )
    log = Logger(config.logger)
    _print_json(await log.query_logs(query))


async def run_audit_report(config: MonitoringConfig, args: argparse.Namespace) -> None:
    """Print a risk report over the persisted audit trail."""
    log = Logger(config.logger)
    tracker = AuditTracker(log, config.audit)
    query = AuditQuery(
        action=args.action,
        user_id=args.user,
        start_time=args.since,
        end_time=args.until,
    )
    records = await tracker.query_history(query)
    entries = [AuditEntry.from_dict(record) for record in records]
    _print_json(tracker.generate_audit_report(args.period, entries=entries))


def run_metrics(config: MonitoringConfig) -> None:
    """Print one process sample in the Prometheus text format."""
    system = create_monitoring_system(config)
    system.collect_system_metrics()
    sys.stdout.write(render_prometheus(system.metrics, config.metrics_namespace))


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="python -m monitoring",
        description="Task tracker observability tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Format of diagnostic output on stderr",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    report = commands.add_parser("report", help="Print a monitoring report")
    report.add_argument("--duration", type=float, default=1.0,
                        help="Seconds to sample before reporting (default: 1)")
    report.add_argument("--period", default=None, help="Period label for the report")

    query = commands.add_parser("query", help="Search the log files")
    query.add_argument("--level", help="ERROR, WARN, INFO, DEBUG or TRACE")
    query.add_argument("--type", help="system, user, security, audit, performance, business")
    query.add_argument("--category")
    query.add_argument("--since", help="ISO-8601 lower bound")
    query.add_argument("--until", help="ISO-8601 upper bound")
    query.add_argument("--user")
    query.add_argument("--session")
    query.add_argument("--message", help="Case-insensitive substring")
    query.add_argument("--limit", type=int, default=1000)

    audit = commands.add_parser("audit-report", help="Risk report over the audit trail")
    audit.add_argument("--action")
    audit.add_argument("--user")
    audit.add_argument("--since", help="ISO-8601 lower bound")
    audit.add_argument("--until", help="ISO-8601 upper bound")
    audit.add_argument("--period", default=None, help="Period label for the report")

    commands.add_parser("metrics", help="Print Prometheus metrics of one sample")

    return parser.parse_args(argv)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


async def async_main(args: argparse.Namespace) -> None:
    """Async entry point for the CLI."""
    config = load_config(args.config)
    if args.command != "report":
        # inspection commands must not write log files of their own
        config.logger.enable_file = False
        config.logger.enable_console = False

    if args.command == "report":
        await run_report(config, args.duration, args.period)
    elif args.command == "query":
        await run_query(config, args)
    elif args.command == "audit-report":
        await run_audit_report(config, args)
    elif args.command == "metrics":
        run_metrics(config)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(level="DEBUG" if args.debug else "WARNING", fmt=args.log_format)

    try:
        asyncio.run(async_main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except Exception as e:
        logger.critical(f"Command failed: {e}", exc_info=args.debug)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
