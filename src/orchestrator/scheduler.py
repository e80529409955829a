"""
SQP Pipeline Scheduler
======================

Weekly scheduling of the SQP sync pipeline with APScheduler.

Features:
    - Weekly execution at a configurable day and time (default: Sunday 06:00 UTC)
    - Manual trigger support
    - Retry of failed runs, resuming from the last checkpoint
    - Run history tracking

Usage:
    # Start scheduler daemon
    python -m src.orchestrator.scheduler

    # Or use programmatically
    from src.orchestrator.scheduler import PipelineScheduler

    scheduler = PipelineScheduler()
    scheduler.start()

Configuration:
    SCHEDULER_DAY_OF_WEEK: Day for the weekly run (default: sun)
    SCHEDULER_CRON_HOUR: Hour for the weekly run (default: 6)
    SCHEDULER_CRON_MINUTE: Minute for the weekly run (default: 0)
    SCHEDULER_TIMEZONE: Timezone (default: UTC)
"""

import json
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Event
from typing import Any, Callable, Dict, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..data.config import get_env, get_env_int
from .sync_pipeline import PipelineRunResult, RunStatus, SyncPipeline

logger = logging.getLogger(__name__)

JOB_ID = "sqp_weekly_sync"


@dataclass
class SchedulerConfig:
    """Scheduler configuration."""

    # Weekly cron schedule
    day_of_week: str = field(default_factory=lambda: get_env("SCHEDULER_DAY_OF_WEEK", "sun"))
    cron_hour: int = field(default_factory=lambda: get_env_int("SCHEDULER_CRON_HOUR", 6))
    cron_minute: int = field(default_factory=lambda: get_env_int("SCHEDULER_CRON_MINUTE", 0))
    timezone: str = field(default_factory=lambda: get_env("SCHEDULER_TIMEZONE", "UTC"))

    # Retry settings
    max_retries: int = field(default_factory=lambda: get_env_int("SCHEDULER_MAX_RETRIES", 3))
    retry_delay_minutes: int = field(default_factory=lambda: get_env_int("SCHEDULER_RETRY_DELAY", 30))

    # Misfire grace time (seconds to consider a missed job)
    misfire_grace_time: int = field(default_factory=lambda: get_env_int("SCHEDULER_MISFIRE_GRACE", 3600))

    def __post_init__(self):
        if not 0 <= self.cron_hour <= 23:
            raise ValueError("cron_hour must be between 0 and 23")
        if not 0 <= self.cron_minute <= 59:
            raise ValueError("cron_minute must be between 0 and 59")

    def get_cron_expression(self) -> str:
        """Get cron expression for logging."""
        return f"{self.cron_minute} {self.cron_hour} * * {self.day_of_week}"


@dataclass
class RunHistory:
    """Tracks scheduler run history."""
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_run_duration: Optional[float] = None
    consecutive_failures: int = 0
    total_runs: int = 0
    total_successes: int = 0
    total_failures: int = 0

    def record_run(self, status: RunStatus, duration: float):
        """Record a pipeline run; skipped runs do not affect the counters."""
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = status.value
        self.last_run_duration = duration
        self.total_runs += 1

        if status == RunStatus.COMPLETED:
            self.total_successes += 1
            self.consecutive_failures = 0
        elif status in (RunStatus.FAILED, RunStatus.CANCELLED):
            self.total_failures += 1
            self.consecutive_failures += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration": self.last_run_duration,
            "consecutive_failures": self.consecutive_failures,
            "total_runs": self.total_runs,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "success_rate": (
                self.total_successes / self.total_runs * 100
                if self.total_runs > 0 else 0
            ),
        }


class PipelineScheduler:
    """
    Scheduler for the weekly SQP sync.

    Failed runs are retried after retry_delay_minutes with
    resume_from_failure, until max_retries consecutive failures.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        pipeline_factory: Callable[[], SyncPipeline] = SyncPipeline.from_settings,
    ):
        """
        Initialize the scheduler.

        Args:
            config: Scheduler configuration (uses defaults if None)
            pipeline_factory: Builds a fresh pipeline for each run
        """
        self.config = config or SchedulerConfig()
        self.pipeline_factory = pipeline_factory
        self._scheduler: Optional[BackgroundScheduler] = None
        self._stop_event = Event()
        self._history = RunHistory()
        self._current_pipeline: Optional[SyncPipeline] = None
        self._on_complete_callback: Optional[Callable[[PipelineRunResult], None]] = None

        logger.info(
            f"PipelineScheduler initialized: "
            f"schedule={self.config.get_cron_expression()} {self.config.timezone}"
        )

    @property
    def is_running(self) -> bool:
        """Check if scheduler is currently running."""
        if self._scheduler is None:
            return False
        return self._scheduler.running

    def set_on_complete_callback(self, callback: Callable[[PipelineRunResult], None]):
        self._on_complete_callback = callback

    # =========================================================================
    # APScheduler-based Scheduling
    # =========================================================================

    def start(self, blocking: bool = False):
        """
        Start the scheduler.

        Args:
            blocking: If True, blocks until scheduler is stopped
        """
        if self._scheduler is not None and self._scheduler.running:
            logger.warning("Scheduler is already running")
            return

        self._stop_event.clear()
        self._scheduler = BackgroundScheduler(timezone=self.config.timezone)

        self._scheduler.add_job(
            self._execute_pipeline,
            trigger=CronTrigger(
                day_of_week=self.config.day_of_week,
                hour=self.config.cron_hour,
                minute=self.config.cron_minute,
                timezone=self.config.timezone,
            ),
            id=JOB_ID,
            name="SQP Weekly Sync",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.config.misfire_grace_time,
        )

        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._scheduler.start()
        logger.info(f"Scheduler started. Next run at: {self._get_next_run_time()}")

        if blocking:
            self._run_blocking()

    def stop(self, wait: bool = True):
        """
        Stop the scheduler.

        A run in progress is asked to shut down after its current batch.

        Args:
            wait: If True, waits for running jobs to complete
        """
        if self._current_pipeline is not None:
            self._current_pipeline.request_shutdown()

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Scheduler stopped")

        self._stop_event.set()

    def _run_blocking(self):
        """Block until stop signal received."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, stopping scheduler...")
            self.stop(wait=False)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        logger.info("Scheduler running in blocking mode. Press Ctrl+C to stop.")
        self._stop_event.wait()

    def trigger_now(self, resume_from_failure: bool = False) -> Optional[PipelineRunResult]:
        """
        Trigger an immediate pipeline run.

        Returns:
            PipelineRunResult, or None if the pipeline could not be built
        """
        logger.info("Triggering immediate pipeline run")
        return self._execute_pipeline(resume_from_failure=resume_from_failure)

    def _execute_pipeline(self, resume_from_failure: bool = False) -> Optional[PipelineRunResult]:
        """Execute the sync pipeline."""
        logger.info("=== Scheduled Pipeline Execution Starting ===")

        try:
            with self.pipeline_factory() as pipeline:
                self._current_pipeline = pipeline
                result = pipeline.run(resume_from_failure=resume_from_failure)
        except Exception as e:
            logger.exception(f"Pipeline execution failed: {e}")
            self._history.record_run(RunStatus.FAILED, 0)
            self._handle_failure()
            return None
        finally:
            self._current_pipeline = None

        self._history.record_run(result.status, result.duration_seconds or 0)

        if self._on_complete_callback:
            try:
                self._on_complete_callback(result)
            except Exception as e:
                logger.warning(f"Callback failed: {e}")

        if result.status == RunStatus.FAILED:
            self._handle_failure()

        return result

    def _handle_failure(self):
        if self._history.consecutive_failures >= self.config.max_retries:
            logger.error(
                f"Pipeline has failed {self._history.consecutive_failures} "
                f"consecutive times. Manual intervention required."
            )
        else:
            self._schedule_retry()

    def _schedule_retry(self):
        """Schedule a resuming retry after failure."""
        if self._scheduler is None:
            return

        now = datetime.now(timezone.utc)
        retry_time = now + timedelta(minutes=self.config.retry_delay_minutes)

        self._scheduler.add_job(
            self._execute_pipeline,
            trigger="date",
            run_date=retry_time,
            kwargs={"resume_from_failure": True},
            id=f"retry_{now.timestamp()}",
            name="SQP Sync Retry",
            max_instances=1,
        )

        logger.info(f"Scheduled retry at {retry_time}")

    def _get_next_run_time(self) -> Optional[datetime]:
        """Get the next scheduled run time."""
        if self._scheduler is None:
            return None

        job = self._scheduler.get_job(JOB_ID)
        if job is None:
            return None

        return job.next_run_time

    def _on_job_executed(self, event: JobExecutionEvent):
        logger.info(f"Job {event.job_id} executed successfully")

    def _on_job_error(self, event: JobExecutionEvent):
        logger.error(f"Job {event.job_id} raised an exception: {event.exception}")

    def _on_job_missed(self, event: JobExecutionEvent):
        logger.warning(f"Job {event.job_id} missed its scheduled time")

    # =========================================================================
    # Status and Monitoring
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """
        Get current scheduler status.

        Returns:
            Status dictionary with scheduler state and history
        """
        next_run = self._get_next_run_time()
        return {
            "is_running": self.is_running,
            "config": {
                "schedule": self.config.get_cron_expression(),
                "timezone": self.config.timezone,
                "max_retries": self.config.max_retries,
                "retry_delay_minutes": self.config.retry_delay_minutes,
            },
            "next_run": next_run.isoformat() if next_run else None,
            "history": self._history.to_dict(),
        }

    def get_run_history(self) -> RunHistory:
        return self._history


# =============================================================================
# Cron Integration
# =============================================================================

def generate_cron_entry(
    python_path: str = "python",
    module_path: str = "-m src.orchestrator.cli sync",
    log_file: str = "/var/log/sqp-sync/pipeline.log",
    day_of_week: str = "0",
    hour: int = 6,
    minute: int = 0,
) -> str:
    """
    Generate a weekly crontab entry for the pipeline.

    Example:
        print(generate_cron_entry())
        # Output: 0 6 * * 0 python -m src.orchestrator.cli sync >> /var/log/sqp-sync/pipeline.log 2>&1
    """
    return f"{minute} {hour} * * {day_of_week} {python_path} {module_path} >> {log_file} 2>&1"


# =============================================================================
# CLI Entry Point
# =============================================================================

def main():
    """Command-line entry point for scheduler."""
    import argparse

    from .logging_config import setup_logging

    parser = argparse.ArgumentParser(description="SQP Sync Pipeline Scheduler")
    parser.add_argument(
        "--mode",
        choices=["daemon", "once", "status", "cron-entry"],
        default="daemon",
        help="Scheduler mode"
    )
    parser.add_argument("--day", default=None, help="Day of week for the weekly run (e.g. sun)")
    parser.add_argument("--hour", type=int, default=None, help="Hour for scheduled run (0-23)")
    parser.add_argument("--minute", type=int, default=None, help="Minute for scheduled run (0-59)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()
    setup_logging(level="DEBUG" if args.verbose else None)

    config = SchedulerConfig()
    if args.day is not None:
        config.day_of_week = args.day
    if args.hour is not None:
        config.cron_hour = args.hour
    if args.minute is not None:
        config.cron_minute = args.minute

    if args.mode == "daemon":
        scheduler = PipelineScheduler(config)
        scheduler.start(blocking=True)

    elif args.mode == "once":
        scheduler = PipelineScheduler(config)
        result = scheduler.trigger_now()
        if result is None or result.status != RunStatus.COMPLETED:
            print("Pipeline execution failed")
            return 1
        print(f"\nPipeline completed: {result.status.value}")
        print(f"Duration: {result.duration_seconds:.1f}s")
        print(f"Records: {result.total_records_processed}")

    elif args.mode == "status":
        scheduler = PipelineScheduler(config)
        print(json.dumps(scheduler.get_status(), indent=2, default=str))

    elif args.mode == "cron-entry":
        entry = generate_cron_entry(
            day_of_week=config.day_of_week,
            hour=config.cron_hour,
            minute=config.cron_minute,
        )
        print("Add the following to your crontab (crontab -e):")
        print(entry)

    return 0


if __name__ == "__main__":
    exit(main())
