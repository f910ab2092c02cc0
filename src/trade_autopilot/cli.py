"""Command-line launcher.

    trade-autopilot serve              # API + scan loop (default)
    trade-autopilot once               # single scan cycle then exit
    trade-autopilot once --interval 5  # persist a new scan interval first
    trade-autopilot status             # print persisted status
"""

from __future__ import annotations

import argparse
import json

from .logging_config import configure_logging
from .main import build_orchestrator, run_service
from .orchestrator import ScanReport
from .settings import settings


def print_report(report: ScanReport) -> None:
    print()
    print("=" * 62)
    print(f"  SCAN  {report.started_at:%Y-%m-%d %H:%M:%S}")
    print("=" * 62)
    if report.skipped:
        print(f"  Skipped:     {report.skipped}")
    if report.error:
        print(f"  Error:       {report.error}")
    if report.intake_skipped:
        print(f"  No intake:   {report.intake_skipped}")
    if report.provider_used:
        print(f"  Provider:    {report.provider_used.upper()}")
    print(f"  Decisions:   {len(report.decisions)}")
    for decision in report.decisions:
        print(f"    {decision.symbol:8s} {decision.outcome:24s} {decision.reason[:60]}")
    print(f"  Protective:  {len(report.protective_trades)} sells queued")
    print(f"  Executed:    {len(report.executed)}")
    for trade in report.executed:
        print(f"    {trade.action:4s} {trade.symbol:8s} x{trade.quantity:<6d} {trade.status}")
    print("=" * 62)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Trade autopilot launcher")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the API and scan loop")
    once = sub.add_parser("once", help="Run a single scan cycle then exit")
    once.add_argument("--interval", type=int, default=None, help="Persist a new scan interval (minutes)")
    sub.add_parser("status", help="Print persisted bot status")
    args = parser.parse_args(argv)

    if args.command in (None, "serve"):
        run_service()
        return

    configure_logging(
        settings.log_level,
        settings.log_file_path,
        settings.log_rotation_mb,
        settings.log_retention_files,
    )
    orchestrator = build_orchestrator(autostart=False)
    try:
        if args.command == "once":
            if args.interval:
                orchestrator.update_config(scan_interval_minutes=args.interval)
            print_report(orchestrator.run_once())
        else:
            print(json.dumps(orchestrator.status(), indent=2, default=str))
    finally:
        orchestrator.shutdown()


if __name__ == "__main__":
    main()
