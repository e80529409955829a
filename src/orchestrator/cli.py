"""
SQP Sync CLI
============

Command-line interface for the SQP sync pipeline.

Commands:
    sync        - Run the sync pipeline once
    status      - Show pipeline state
    history     - Show state transitions
    health      - Check pipeline health
    unlock      - Release a stuck lock
    cleanup     - Prune old state transitions
    keywords    - Show keyword performance for an ASIN
    init-db     - Create tables and views
    schedule    - Run the weekly scheduler

Usage:
    python -m src.orchestrator.cli sync --start 2024-01-01 --end 2024-01-07
    python -m src.orchestrator.cli sync --resume
    python -m src.orchestrator.cli status
    python -m src.orchestrator.cli keywords --asin B0XXXXXXX --start 2024-01-01 --end 2024-01-28
    python -m src.orchestrator.cli health --json
"""

import argparse
import json
import logging
import sys
from datetime import date

from ..aggregation.keyword_aggregation import KeywordPerformanceService
from ..data.schema import ensure_schema
from ..data.store import RelationalStore
from .logging_config import setup_logging
from .monitoring import PipelineMonitor
from .state import PipelineStateManager
from .sync_pipeline import RunStatus, SyncPipeline


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def cmd_sync(args):
    """Run the sync pipeline once."""
    if (args.start is None) != (args.end is None):
        print("ERROR: --start and --end must be given together")
        return 1

    print("=" * 60)
    print("SQP SYNC PIPELINE")
    print("=" * 60)
    print()

    try:
        with SyncPipeline.from_settings() as pipeline:
            result = pipeline.run(
                start_date=args.start,
                end_date=args.end,
                asins=args.asin,
                keywords=args.keyword,
                resume_from_failure=args.resume,
            )

        print()
        print("=" * 60)
        print("PIPELINE COMPLETE")
        print("=" * 60)
        print(f"Run ID: {result.run_id}")
        print(f"Window: {result.start_date} -> {result.end_date}")
        print(f"Status: {result.status.value}")
        print(f"Duration: {result.duration_seconds:.1f} seconds")
        print(f"Records processed: {result.total_records_processed}")
        if result.error:
            print(f"Error: {result.error}")
        print()

        print("Step Results:")
        for step, step_result in result.steps.items():
            status_icon = "✓" if step_result.completed else "✗"
            note = " (resumed)" if step_result.skipped else ""
            duration = f"{step_result.duration_seconds:.1f}s" if step_result.duration_seconds else "N/A"
            print(f"  {status_icon} {step.value}: {step_result.records_processed} records ({duration}){note}")

        if args.json:
            print()
            print(json.dumps(result.get_summary(), indent=2, default=str))

        return 0 if result.status == RunStatus.COMPLETED else 1

    except Exception as e:
        print(f"\nERROR: Pipeline execution failed: {e}")
        logging.exception("Pipeline failed")
        return 1


def cmd_status(args):
    """Show pipeline state."""
    try:
        with RelationalStore() as store:
            summary = PipelineStateManager(store).get_summary()

        print("=" * 60)
        print("PIPELINE STATE")
        print("=" * 60)
        print(f"Pipeline: {summary['pipeline_id']}")
        print(f"Status: {summary['status']}")
        print(f"Current step: {summary['current_step'] or 'N/A'}")
        print(f"Last run: {summary['last_run_time'] or 'N/A'}")
        print(f"Last success: {summary['last_success_time'] or 'N/A'}")
        print(f"Lock: {summary['lock_id'] or 'none'}")
        print(f"Consecutive failures: {summary['consecutive_failures']}")
        if summary["last_error"]:
            print(f"Last error: {summary['last_error']}")

        if args.json:
            print()
            print(json.dumps(summary, indent=2, default=str))

        return 0

    except Exception as e:
        print(f"ERROR: Failed to get status: {e}")
        return 1


def cmd_history(args):
    """Show state transitions, newest first."""
    try:
        with RelationalStore() as store:
            history = PipelineStateManager(store).get_history(limit=args.limit, offset=args.offset)

        if not history:
            print("No transitions recorded.")
            return 0

        if args.json:
            print(json.dumps(history, indent=2, default=str))
            return 0

        for entry in history:
            print(f"{entry['timestamp']}  {entry['from_status']:>10} -> {entry['to_status']}")
        return 0

    except Exception as e:
        print(f"ERROR: Failed to get history: {e}")
        return 1


def cmd_health(args):
    """Check pipeline health."""
    try:
        with RelationalStore() as store:
            health = PipelineMonitor(store).get_pipeline_health()

        print("=" * 60)
        print("PIPELINE HEALTH CHECK")
        print("=" * 60)
        print()

        overall_status = "HEALTHY" if health.get("is_healthy", False) else "UNHEALTHY"
        status_icon = "✓" if health.get("is_healthy", False) else "✗"
        print(f"Overall Status: {status_icon} {overall_status}")
        print()

        print("Component Status:")
        for component, status in health.get("components", {}).items():
            icon = "✓" if status.get("healthy", False) else "✗"
            print(f"  {icon} {component}: {status.get('message', 'Unknown')}")

        alerts = health.get("alerts", [])
        if alerts:
            print()
            print("Alerts:")
            for alert in alerts:
                print(f"  [{alert['severity']}] {alert['name']}: {alert['message']}")

        if args.json:
            print()
            print(json.dumps(health, indent=2, default=str))

        return 0 if health.get("is_healthy", False) else 1

    except Exception as e:
        print(f"ERROR: Health check failed: {e}")
        return 1


def cmd_unlock(args):
    """Release the pipeline lock."""
    try:
        with RelationalStore() as store:
            state = PipelineStateManager(store)
            if args.reset:
                state.reset()
                print(f"Pipeline {state.pipeline_id} reset to idle")
            else:
                state.unlock(reset_status=not args.keep_status)
                print(f"Pipeline {state.pipeline_id} unlocked")
        return 0

    except Exception as e:
        print(f"ERROR: Failed to unlock: {e}")
        return 1


def cmd_cleanup(args):
    """Prune old state transitions."""
    try:
        with RelationalStore() as store:
            deleted = PipelineStateManager(store).cleanup_history(days_to_keep=args.days)
        print(f"Deleted {deleted} transitions")
        return 0

    except Exception as e:
        print(f"ERROR: Cleanup failed: {e}")
        return 1


def cmd_keywords(args):
    """Show keyword performance for an ASIN."""
    if (args.compare_start is None) != (args.compare_end is None):
        print("ERROR: --compare-start and --compare-end must be given together")
        return 1

    try:
        with RelationalStore() as store:
            payload = KeywordPerformanceService(store).get_asin_keywords(
                args.asin,
                args.start,
                args.end,
                comparison_start=args.compare_start,
                comparison_end=args.compare_end,
                limit=args.limit,
            )

        if args.json:
            print(json.dumps(payload, indent=2, default=str))
            return 0

        print("=" * 60)
        print(f"KEYWORDS: {args.asin} ({args.start} -> {args.end})")
        print("=" * 60)
        print()

        queries = payload["topQueries"]
        if not queries:
            print("No keyword data for this range.")
            return 0

        print(f"{'Search query':40} {'Impr':>10} {'Clicks':>8} {'Purch':>6} {'CTR':>7} {'CVR':>7}")
        for row in queries:
            query = row["searchQuery"][:40]
            print(
                f"{query:40} {row['impressions']:>10} {row['clicks']:>8} {row['purchases']:>6} "
                f"{row['ctr']:>7.2%} {row['cvr']:>7.2%}"
            )
        print()
        print(f"Total: {len(queries)} keywords")
        return 0

    except Exception as e:
        print(f"ERROR: Failed to load keywords: {e}")
        return 1


def cmd_init_db(args):
    """Create tables and views."""
    try:
        with RelationalStore() as store:
            ensure_schema(store, seed_refresh_config=not args.no_seed)
        print("Database schema ready")
        return 0

    except Exception as e:
        print(f"ERROR: Schema creation failed: {e}")
        return 1


def cmd_schedule(args):
    """Run the weekly scheduler."""
    from .scheduler import PipelineScheduler, SchedulerConfig

    config = SchedulerConfig()
    if args.day is not None:
        config.day_of_week = args.day
    if args.hour is not None:
        config.cron_hour = args.hour

    scheduler = PipelineScheduler(config)
    if args.once:
        result = scheduler.trigger_now(resume_from_failure=args.resume)
        return 0 if result is not None and result.status == RunStatus.COMPLETED else 1

    scheduler.start(blocking=True)
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="sqp-sync",
        description="SQP BigQuery to Postgres sync",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Run the sync pipeline once")
    sync_parser.add_argument("--start", type=parse_date, help="Window start (YYYY-MM-DD)")
    sync_parser.add_argument("--end", type=parse_date, help="Window end (YYYY-MM-DD)")
    sync_parser.add_argument("--asin", action="append", help="Restrict to ASIN (repeatable)")
    sync_parser.add_argument("--keyword", action="append", help="Restrict to search query (repeatable)")
    sync_parser.add_argument("--resume", action="store_true", help="Resume a failed run")
    sync_parser.add_argument("--json", action="store_true", help="Output summary as JSON")

    status_parser = subparsers.add_parser("status", help="Show pipeline state")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    history_parser = subparsers.add_parser("history", help="Show state transitions")
    history_parser.add_argument("--limit", type=int, default=50, help="Rows to show (default: 50)")
    history_parser.add_argument("--offset", type=int, default=0, help="Rows to skip")
    history_parser.add_argument("--json", action="store_true", help="Output as JSON")

    health_parser = subparsers.add_parser("health", help="Check pipeline health")
    health_parser.add_argument("--json", action="store_true", help="Output as JSON")

    unlock_parser = subparsers.add_parser("unlock", help="Release a stuck lock")
    unlock_parser.add_argument("--keep-status", action="store_true", help="Keep the current status")
    unlock_parser.add_argument("--reset", action="store_true", help="Also clear step data")

    cleanup_parser = subparsers.add_parser("cleanup", help="Prune old state transitions")
    cleanup_parser.add_argument("--days", type=int, help="Days to keep (default: retention setting)")

    keywords_parser = subparsers.add_parser("keywords", help="Show keyword performance for an ASIN")
    keywords_parser.add_argument("--asin", required=True, help="ASIN")
    keywords_parser.add_argument("--start", type=parse_date, required=True, help="Range start")
    keywords_parser.add_argument("--end", type=parse_date, required=True, help="Range end")
    keywords_parser.add_argument("--compare-start", type=parse_date, help="Comparison range start")
    keywords_parser.add_argument("--compare-end", type=parse_date, help="Comparison range end")
    keywords_parser.add_argument("--limit", type=int, default=None, help="Maximum keywords")
    keywords_parser.add_argument("--json", action="store_true", help="Output as JSON")

    init_parser = subparsers.add_parser("init-db", help="Create tables and views")
    init_parser.add_argument("--no-seed", action="store_true", help="Skip refresh_config seed rows")

    schedule_parser = subparsers.add_parser("schedule", help="Run the weekly scheduler")
    schedule_parser.add_argument("--day", help="Day of week (e.g. sun)")
    schedule_parser.add_argument("--hour", type=int, help="Hour (0-23)")
    schedule_parser.add_argument("--once", action="store_true", help="Run once now and exit")
    schedule_parser.add_argument("--resume", action="store_true", help="With --once, resume a failed run")

    args = parser.parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else None)

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "sync": cmd_sync,
        "status": cmd_status,
        "history": cmd_history,
        "health": cmd_health,
        "unlock": cmd_unlock,
        "cleanup": cmd_cleanup,
        "keywords": cmd_keywords,
        "init-db": cmd_init_db,
        "schedule": cmd_schedule,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
