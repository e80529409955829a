"""
Tests for the weekly pipeline scheduler.

Pipelines are mocked through the scheduler's pipeline factory.
"""

import pytest
from unittest.mock import MagicMock
from datetime import datetime, timedelta, timezone

from src.orchestrator.scheduler import (
    PipelineScheduler,
    RunHistory,
    SchedulerConfig,
    generate_cron_entry,
)
from src.orchestrator.sync_pipeline import PipelineRunResult, RunStatus


def run_result(status):
    started = datetime(2024, 1, 7, 6, 0, tzinfo=timezone.utc)
    return PipelineRunResult(
        run_id="run-1",
        status=status,
        started_at=started,
        completed_at=started + timedelta(seconds=42),
    )


def make_factory(*results):
    """Factory yielding mocked pipelines that return the given results in order."""
    pipeline = MagicMock()
    pipeline.__enter__.return_value = pipeline
    pipeline.__exit__.return_value = False
    pipeline.run.side_effect = list(results)
    return MagicMock(return_value=pipeline), pipeline


class TestSchedulerConfig:
    """Tests for SchedulerConfig."""

    def test_cron_expression(self):
        config = SchedulerConfig(day_of_week="sun", cron_hour=6, cron_minute=30)
        assert config.get_cron_expression() == "30 6 * * sun"

    def test_invalid_hour(self):
        with pytest.raises(ValueError):
            SchedulerConfig(cron_hour=24)

    def test_invalid_minute(self):
        with pytest.raises(ValueError):
            SchedulerConfig(cron_minute=60)


class TestRunHistory:
    """Tests for RunHistory."""

    def test_counters(self):
        history = RunHistory()
        history.record_run(RunStatus.FAILED, 10)
        history.record_run(RunStatus.FAILED, 10)
        assert history.consecutive_failures == 2

        history.record_run(RunStatus.COMPLETED, 30)
        assert history.consecutive_failures == 0
        assert history.to_dict()["success_rate"] == pytest.approx(100 / 3)

    def test_skipped_does_not_count(self):
        """Test a skipped run changes neither successes nor failures."""
        history = RunHistory()
        history.record_run(RunStatus.SKIPPED, 0)
        assert history.total_runs == 1
        assert history.total_successes == 0
        assert history.total_failures == 0


class TestPipelineScheduler:
    """Tests for PipelineScheduler."""

    def setup_method(self):
        self.config = SchedulerConfig(
            day_of_week="sun", cron_hour=6, cron_minute=0, timezone="UTC",
            max_retries=2, retry_delay_minutes=30, misfire_grace_time=3600,
        )

    def test_trigger_now_success(self):
        """Test a manual run builds, runs and closes a pipeline."""
        factory, pipeline = make_factory(run_result(RunStatus.COMPLETED))
        scheduler = PipelineScheduler(self.config, pipeline_factory=factory)

        result = scheduler.trigger_now()

        assert result.status == RunStatus.COMPLETED
        pipeline.run.assert_called_once_with(resume_from_failure=False)
        pipeline.__exit__.assert_called_once()
        history = scheduler.get_run_history()
        assert history.total_successes == 1
        assert history.last_run_duration == 42

    def test_failure_schedules_resuming_retry(self):
        """Test a failed run schedules a retry with resume_from_failure."""
        factory, _ = make_factory(run_result(RunStatus.FAILED))
        scheduler = PipelineScheduler(self.config, pipeline_factory=factory)
        scheduler._scheduler = MagicMock()

        scheduler.trigger_now()

        scheduler._scheduler.add_job.assert_called_once()
        kwargs = scheduler._scheduler.add_job.call_args[1]
        assert kwargs["trigger"] == "date"
        assert kwargs["kwargs"] == {"resume_from_failure": True}

    def test_no_retry_after_max_failures(self):
        """Test retries stop once max_retries consecutive failures occur."""
        factory, _ = make_factory(run_result(RunStatus.FAILED), run_result(RunStatus.FAILED))
        scheduler = PipelineScheduler(self.config, pipeline_factory=factory)
        scheduler._scheduler = MagicMock()

        scheduler.trigger_now()
        scheduler.trigger_now(resume_from_failure=True)

        assert scheduler._scheduler.add_job.call_count == 1
        assert scheduler.get_run_history().consecutive_failures == 2

    def test_skipped_run_not_retried(self):
        factory, _ = make_factory(run_result(RunStatus.SKIPPED))
        scheduler = PipelineScheduler(self.config, pipeline_factory=factory)
        scheduler._scheduler = MagicMock()

        scheduler.trigger_now()

        scheduler._scheduler.add_job.assert_not_called()

    def test_factory_error_recorded(self):
        """Test a pipeline that cannot be built counts as a failure."""
        factory = MagicMock(side_effect=ValueError("DATABASE_PASSWORD is required"))
        scheduler = PipelineScheduler(self.config, pipeline_factory=factory)

        assert scheduler.trigger_now() is None
        assert scheduler.get_run_history().total_failures == 1

    def test_callback_invoked(self):
        factory, _ = make_factory(run_result(RunStatus.COMPLETED))
        scheduler = PipelineScheduler(self.config, pipeline_factory=factory)
        received = []
        scheduler.set_on_complete_callback(received.append)

        scheduler.trigger_now()

        assert [r.status for r in received] == [RunStatus.COMPLETED]

    def test_stop_requests_pipeline_shutdown(self):
        """Test stopping asks the running pipeline to shut down."""
        scheduler = PipelineScheduler(self.config, pipeline_factory=MagicMock())
        current = MagicMock()
        scheduler._current_pipeline = current

        scheduler.stop(wait=False)

        current.request_shutdown.assert_called_once()

    def test_status_when_not_started(self):
        scheduler = PipelineScheduler(self.config, pipeline_factory=MagicMock())
        status = scheduler.get_status()
        assert status["is_running"] is False
        assert status["next_run"] is None
        assert status["config"]["schedule"] == "0 6 * * sun"

    def test_cron_entry(self):
        entry = generate_cron_entry(day_of_week="sun", hour=6, minute=15)
        assert entry.startswith("15 6 * * sun python -m src.orchestrator.cli sync")
