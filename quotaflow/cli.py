"""
Command-line interface for quotaflow.

Provides commands for:
- Listing the plan catalog
- Checking and recording usage
- Showing quota status
- Running recommendation analysis
- Sweeping closed usage counters
"""

import argparse
import json
import logging
import sys
from datetime import datetime

from quotaflow.config import get_db_path
from quotaflow.enforcement import EnforcementGate
from quotaflow.errors import QuotaflowError
from quotaflow.recommendations import RecommendationEngine
from quotaflow.reports import quota_status
from quotaflow.storage import SQLiteStorage


def _setup_logging(verbose: bool) -> None:
    logger = logging.getLogger("quotaflow")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _parse_time(value):
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _gate(args) -> EnforcementGate:
    gate = EnforcementGate(SQLiteStorage(args.db))
    gate.catalog.seed_defaults()
    return gate


def cmd_plans(args):
    """List active plans."""
    gate = _gate(args)
    plans = gate.catalog.list_plans(include_inactive=args.all)

    print("\n" + "=" * 60)
    print("PLAN CATALOG")
    print("=" * 60)
    for plan in plans:
        status = "" if plan.is_active else " (retired)"
        print(f"\n{plan.name} [{plan.code} v{plan.version}]{status}")
        print(f"  Price: ${plan.price_monthly:.2f}/month  Priority: {plan.priority_level}")
        for resource, limit in plan.decoded_limits().items():
            print(f"  {resource.value:<22} {limit}")
    print("=" * 60)


def cmd_check(args):
    """Check whether work may proceed."""
    gate = _gate(args)
    decision = gate.check_quota(args.subject, args.resource, args.qty, _parse_time(args.at))

    if args.json:
        print(json.dumps(decision.to_dict(), indent=2))
        return 0 if decision.allowed else 2

    print("\n" + "=" * 60)
    print("QUOTA CHECK")
    print("=" * 60)
    print(f"Subject: {args.subject}")
    print(f"Resource: {decision.resource}  Requested: {decision.requested:g}")
    print(f"Allowed: {'yes' if decision.allowed else 'no'}")
    if not decision.allowed:
        print(f"Reason: {decision.reason.value}")
        print(f"Message: {decision.message}")
        print(f"Suggestion: {decision.suggestion}")
    if decision.remaining is not None:
        print(f"Remaining: {decision.remaining:g}")
    if decision.period_end:
        print(f"Period ends: {decision.period_end.isoformat()}")
    print("=" * 60)
    return 0 if decision.allowed else 2


def cmd_record(args):
    """Record completed work."""
    gate = _gate(args)
    consumed = gate.record_usage(args.subject, args.resource, args.qty, _parse_time(args.at))
    print(f"{args.subject} {args.resource}: {consumed:g} consumed this period")
    return 0


def cmd_status(args):
    """Show current quota status."""
    gate = _gate(args)
    report = quota_status(gate.ledger, gate.resolver, args.subject, _parse_time(args.at))

    if args.json:
        print(json.dumps(report, indent=2))
        return 0

    print("\n" + "=" * 60)
    print(f"QUOTA STATUS: {args.subject} ({report['plan']})")
    print("=" * 60)
    for row in report["resources"]:
        limit = row["limit"]
        shown = "unlimited" if limit == -1 else ("disabled" if limit == 0 else str(limit))
        print(f"  {row['resource']:<22} {row['consumed']:>10g} / {shown:<10} {row['percent_used']:>6.1f}%")
    print("=" * 60)
    return 0


def cmd_analyze(args):
    """Analyze usage and print a recommendation."""
    gate = _gate(args)
    engine = RecommendationEngine(gate.storage, gate.catalog)
    at = _parse_time(args.at)

    if args.subject:
        recs = [engine.analyze(args.subject, args.window_days, at)]
    else:
        recs = engine.analyze_all(window_days=args.window_days, as_of=at)

    recs = [r for r in recs if r is not None]
    print("\n" + "=" * 60)
    print("RECOMMENDATIONS")
    print("=" * 60)
    if not recs:
        print("No recommendations.")
    for rec in recs:
        plan = gate.catalog.get(rec.recommended_plan_id)
        print(f"\n{rec.subject_id}: {rec.reason.value} -> {plan.name}")
        print(f"  Confidence: {rec.confidence:.0%}  Cost delta: ${rec.monthly_cost_delta:+.2f}/month")
        print(f"  Trend: {rec.growth_trend}")
        for benefit in rec.benefits:
            print(f"  - {benefit}")
    print("=" * 60)
    return 0


def cmd_sweep(args):
    """Delete closed counters, finished reservations and old denials."""
    gate = _gate(args)
    before = _parse_time(args.before)
    removed = gate.sweep(before)
    print(f"Removed {removed['counters']} closed counters, "
          f"{removed['reservations']} reservations, {removed['denials']} denials")
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="quotaflow: usage quota and plan enforcement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the plan catalog
  quotaflow plans

  # Can ws-1 upload one more file?
  quotaflow check ws-1 filesDaily --qty 1

  # Record one finished transcription
  quotaflow record ws-1 transcriptions --qty 1

  # Analyze everybody
  quotaflow analyze
""",
    )
    parser.add_argument("--db", default=get_db_path(), help="SQLite database path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    plans_parser = subparsers.add_parser("plans", help="List plans")
    plans_parser.add_argument("--all", action="store_true", help="Include retired plans")

    check_parser = subparsers.add_parser("check", help="Check quota")
    check_parser.add_argument("subject", help="Workspace or user id")
    check_parser.add_argument("resource", help="Resource name, e.g. transcriptions")
    check_parser.add_argument("--qty", type=float, default=1, help="Requested quantity")
    check_parser.add_argument("--at", help="ISO timestamp (default: now)")
    check_parser.add_argument("--json", action="store_true", help="Print JSON")

    record_parser = subparsers.add_parser("record", help="Record usage")
    record_parser.add_argument("subject", help="Workspace or user id")
    record_parser.add_argument("resource", help="Resource name")
    record_parser.add_argument("--qty", type=float, default=1, help="Actual quantity")
    record_parser.add_argument("--at", help="ISO timestamp (default: now)")

    status_parser = subparsers.add_parser("status", help="Show quota status")
    status_parser.add_argument("subject", help="Workspace or user id")
    status_parser.add_argument("--at", help="ISO timestamp (default: now)")
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    analyze_parser = subparsers.add_parser("analyze", help="Generate recommendations")
    analyze_parser.add_argument("subject", nargs="?", help="Subject id (default: all)")
    analyze_parser.add_argument("--window-days", type=int, default=90,
                                help="Days of history to analyze")
    analyze_parser.add_argument("--at", help="ISO timestamp (default: now)")

    sweep_parser = subparsers.add_parser("sweep", help="Delete stale usage data")
    sweep_parser.add_argument("--before", required=True,
                              help="ISO timestamp; counters ending before it are removed")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    _setup_logging(args.verbose)

    commands = {
        "plans": cmd_plans,
        "check": cmd_check,
        "record": cmd_record,
        "status": cmd_status,
        "analyze": cmd_analyze,
        "sweep": cmd_sweep,
    }

    handler = commands[args.command]
    try:
        return handler(args) or 0
    except (QuotaflowError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
