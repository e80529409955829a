"""
SQP Sync Pipeline Orchestrator
==============================

Runs the weekly SQP refresh as a sequence of checkpointed steps:
1. Sync (extract from the warehouse, reconcile parents then children)
2. Refresh schedule (advance next_refresh_at for both tables)
3. Cleanup (prune old state transitions)

Features:
    - Cross-run exclusion through the pipeline state lock
    - Resumable (completed steps of a failed run are skipped on resume)
    - Graceful shutdown between steps and between batches
    - Run metrics persisted to pipeline_metrics

Usage:
    from src.orchestrator.sync_pipeline import SyncPipeline

    pipeline = SyncPipeline(engine, state)
    result = pipeline.run()
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..data.config import SyncConfig
from ..data.errors import ReconciliationError
from .logging_config import bind_run_context
from .state import PipelineStateManager, PipelineStatus, utcnow

logger = logging.getLogger(__name__)

METRICS_TABLE = "pipeline_metrics"


class PipelineStep(Enum):
    """Pipeline steps, in execution order."""
    SYNC = "sync"
    REFRESH_SCHEDULE = "refresh_schedule"
    CLEANUP = "cleanup"


class RunStatus(Enum):
    """Outcome of a pipeline run."""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """Result of a single pipeline step."""
    step: PipelineStep
    started_at: datetime
    completed_at: Optional[datetime] = None
    completed: bool = False
    skipped: bool = False
    records_processed: int = 0
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class PipelineRunResult:
    """Complete pipeline run result."""
    run_id: str
    status: RunStatus
    started_at: datetime
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    completed_at: Optional[datetime] = None
    steps: Dict[PipelineStep, StepResult] = field(default_factory=dict)
    error: Optional[str] = None
    resumed: bool = False

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def total_records_processed(self) -> int:
        return sum(r.records_processed for r in self.steps.values())

    def get_summary(self) -> Dict[str, Any]:
        """Get pipeline run summary."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "window": {"start": self.start_date, "end": self.end_date},
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "resumed": self.resumed,
            "total_records_processed": self.total_records_processed,
            "error": self.error,
            "steps": {
                step.value: {
                    "completed": r.completed,
                    "skipped": r.skipped,
                    "duration_seconds": r.duration_seconds,
                    "records_processed": r.records_processed,
                    "metrics": r.metrics,
                    "error": r.error,
                }
                for step, r in self.steps.items()
            },
        }


class PipelineCancelled(Exception):
    """Raised inside a run when shutdown was requested."""


def default_window(today: date, lookback_days: int) -> Tuple[date, date]:
    """The lookback_days days ending yesterday."""
    end = today - timedelta(days=1)
    return end - timedelta(days=lookback_days - 1), end


class SyncPipeline:
    """
    SQP sync orchestrator.

    Each step runs between set_current_step and a save_step_data
    checkpoint. The lock is always released in finally; a failed run keeps
    its status so get_recovery_point can find it.
    """

    def __init__(
        self,
        engine,
        state: PipelineStateManager,
        config: Optional[SyncConfig] = None,
        store=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the pipeline.

        Args:
            engine: SyncEngine
            state: Pipeline state manager
            config: Sync settings (engine's config if None)
            store: Store for run metrics (engine's store if None)
            clock: Current UTC time
        """
        self.engine = engine
        self.state = state
        self.config = config or engine.config
        self.store = store or engine.store
        self.clock = clock
        self._shutdown = threading.Event()
        self._owned: List[Any] = []

    @classmethod
    def from_settings(cls, settings=None) -> "SyncPipeline":
        """
        Wire warehouse, store, engine and state from settings.

        The returned pipeline owns its clients; close() releases them.
        """
        from ..data.config import get_settings
        from ..data.store import RelationalStore
        from ..data.warehouse_client import WarehouseClient
        from ..sync.reconciler import SyncEngine

        settings = settings or get_settings()
        warehouse = WarehouseClient(settings.warehouse)
        store = RelationalStore()
        engine = SyncEngine(warehouse, store, config=settings.sync)
        state = PipelineStateManager(
            store,
            pipeline_id=settings.state.pipeline_id,
            lock_timeout_seconds=settings.state.lock_timeout_seconds,
            retention_days=settings.state.retention_days,
        )
        pipeline = cls(engine, state, config=settings.sync, store=store)
        pipeline._owned = [warehouse, store]
        return pipeline

    def close(self):
        """Clean up owned clients."""
        for resource in self._owned:
            resource.close()
        self._owned = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def request_shutdown(self):
        """Stop after the current batch; the run ends cancelled."""
        logger.info("Shutdown requested")
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    # =========================================================================
    # MAIN ORCHESTRATION
    # =========================================================================

    def run(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        asins: Optional[Sequence[str]] = None,
        keywords: Optional[Sequence[str]] = None,
        resume_from_failure: bool = False,
    ) -> PipelineRunResult:
        """
        Run the pipeline once.

        Args:
            start_date: Window start (default: lookback window ending yesterday)
            end_date: Window end
            asins: Optional ASIN filter
            keywords: Optional search query filter
            resume_from_failure: Skip steps a failed run already completed

        Returns:
            PipelineRunResult; status is skipped when another run holds the lock
        """
        run_id = str(uuid.uuid4())
        result = PipelineRunResult(run_id=run_id, status=RunStatus.FAILED, started_at=self.clock())

        recovery = self.state.get_recovery_point() if resume_from_failure else None
        completed_steps = set(recovery.completed_steps) if recovery else set()

        if start_date is None or end_date is None:
            saved_window = {}
            if recovery:
                saved_window = (recovery.step_data.get(PipelineStep.SYNC.value) or {}).get("data") or {}
            if saved_window.get("start_date") and saved_window.get("end_date"):
                start_date = date.fromisoformat(saved_window["start_date"])
                end_date = date.fromisoformat(saved_window["end_date"])
            else:
                start_date, end_date = default_window(self.clock().date(), self.config.lookback_days)
        result.start_date = start_date.isoformat()
        result.end_date = end_date.isoformat()

        if not self.state.lock():
            logger.warning(f"Pipeline {self.state.pipeline_id} is busy, skipping run {run_id}")
            result.status = RunStatus.SKIPPED
            result.completed_at = self.clock()
            return result

        self._shutdown.clear()
        log_context = bind_run_context(run_id, self.state.pipeline_id)
        logger.info(
            f"=== Starting SQP pipeline (run_id={run_id}) "
            f"{result.start_date} -> {result.end_date} ==="
        )

        try:
            if recovery:
                result.resumed = True
                logger.info(
                    f"Resuming from failure at step {recovery.next_step} "
                    f"(completed: {sorted(completed_steps)})"
                )
            else:
                self.state.clear_step_data()

            self.state.transition(PipelineStatus.RUNNING, {"run_id": run_id})

            steps = [
                (PipelineStep.SYNC, lambda: self._run_sync_step(start_date, end_date, asins, keywords)),
                (PipelineStep.REFRESH_SCHEDULE, self._run_refresh_schedule_step),
                (PipelineStep.CLEANUP, self._run_cleanup_step),
            ]

            for step, func in steps:
                if self.shutdown_requested:
                    raise PipelineCancelled(f"Shutdown requested before {step.value}")

                if step.value in completed_steps:
                    logger.info(f"Skipping {step.value} (completed in previous run)")
                    result.steps[step] = StepResult(
                        step=step,
                        started_at=self.clock(),
                        completed_at=self.clock(),
                        completed=True,
                        skipped=True,
                    )
                    continue

                result.steps[step] = self._execute_step(step, func)

            self.state.transition(PipelineStatus.COMPLETED, {"run_id": run_id})
            self.state.record_success(run_id, result.total_records_processed)
            self.state.set_current_step(None)
            result.status = RunStatus.COMPLETED

        except PipelineCancelled as e:
            logger.warning(f"Pipeline run {run_id} cancelled: {e}")
            result.status = RunStatus.CANCELLED
            result.error = str(e)
            self._finish_unsuccessful(PipelineStatus.CANCELLED, run_id, str(e))

        except Exception as e:
            logger.exception(f"Pipeline run {run_id} failed: {e}")
            result.status = RunStatus.FAILED
            result.error = f"{type(e).__name__}: {e}"
            self._finish_unsuccessful(PipelineStatus.FAILED, run_id, result.error)

        finally:
            result.completed_at = self.clock()
            try:
                self.state.unlock(reset_status=result.status != RunStatus.FAILED)
            finally:
                log_context.release()

        logger.info(
            f"=== Pipeline Complete ===\n"
            f"  Run ID: {run_id}\n"
            f"  Status: {result.status.value}\n"
            f"  Duration: {result.duration_seconds:.1f}s\n"
            f"  Records: {result.total_records_processed}"
        )

        self._persist_run_metrics(result)
        return result

    def _finish_unsuccessful(self, status: PipelineStatus, run_id: str, error: str):
        try:
            if self.state.status == PipelineStatus.RUNNING:
                self.state.transition(status, {"run_id": run_id, "error": error})
            self.state.record_failure(error, run_id)
        except Exception as e:
            logger.error(f"Failed to record {status.value} state for run {run_id}: {e}")

    def _execute_step(self, step: PipelineStep, func: Callable[[], StepResult]) -> StepResult:
        """Run one step between its start marker and completion checkpoint."""
        logger.info(f"--- STEP: {step.value} ---")
        self.state.set_current_step(step.value)

        step_result = func()
        step_result.completed_at = self.clock()

        if step_result.error:
            self.state.save_step_data(step.value, {
                "completed": False,
                "error": step_result.error,
                "data": step_result.metrics,
            })
            raise ReconciliationError(step_result.error, details={"step": step.value})

        step_result.completed = True
        self.state.save_step_data(step.value, {
            "completed": True,
            "data": step_result.metrics,
            "duration": step_result.duration_seconds,
            "recordsProcessed": step_result.records_processed,
        })
        logger.info(
            f"Step {step.value} complete: {step_result.records_processed} records "
            f"in {step_result.duration_seconds:.1f}s"
        )
        return step_result

    # =========================================================================
    # STEPS
    # =========================================================================

    def _run_sync_step(
        self,
        start_date: date,
        end_date: date,
        asins: Optional[Sequence[str]],
        keywords: Optional[Sequence[str]],
    ) -> StepResult:
        """
        Reconcile the window.

        Child batch errors fail the step unless continue_on_error is set.
        """
        step_result = StepResult(step=PipelineStep.SYNC, started_at=self.clock())
        self.state.save_step_data(PipelineStep.SYNC.value, {
            "completed": False,
            "data": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        })

        sync_result = self.engine.sync(
            start_date,
            end_date,
            asins=asins,
            keywords=keywords,
            cancel_event=self._shutdown,
            advance_schedule=False,
        )

        step_result.metrics = dict(
            sync_result.get_summary(),
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
        step_result.records_processed = sync_result.parents_upserted + sync_result.children_upserted

        if sync_result.cancelled:
            raise PipelineCancelled("Shutdown requested during sync")

        if sync_result.errors and not self.config.continue_on_error:
            step_result.error = (
                f"{len(sync_result.errors)} batch error(s): "
                + "; ".join(e["message"] for e in sync_result.errors[:3])
            )
        elif sync_result.errors:
            logger.warning(f"Sync finished with {len(sync_result.errors)} batch error(s), continuing")

        return step_result

    def _run_refresh_schedule_step(self) -> StepResult:
        step_result = StepResult(step=PipelineStep.REFRESH_SCHEDULE, started_at=self.clock())
        advanced = self.engine.advance_schedule()
        step_result.metrics = {"tables": advanced}
        step_result.records_processed = len(advanced)
        return step_result

    def _run_cleanup_step(self) -> StepResult:
        step_result = StepResult(step=PipelineStep.CLEANUP, started_at=self.clock())
        deleted = self.state.cleanup_history()
        step_result.metrics = {"transitions_deleted": deleted}
        return step_result

    # =========================================================================
    # METRICS
    # =========================================================================

    def _persist_run_metrics(self, result: PipelineRunResult):
        """Persist pipeline run metrics for monitoring."""
        summary = result.get_summary()
        try:
            self.store.upsert(
                METRICS_TABLE,
                [{
                    "pipeline_id": self.state.pipeline_id,
                    "run_id": result.run_id,
                    "status": result.status.value,
                    "start_time": result.started_at,
                    "end_time": result.completed_at,
                    "duration": int((result.duration_seconds or 0) * 1000),
                    "steps": summary["steps"],
                    "total_records_processed": result.total_records_processed,
                    "error": result.error,
                }],
                conflict_columns=("run_id",),
            )
        except Exception as e:
            logger.warning(f"Failed to persist run metrics: {e}")

    def get_recent_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Latest persisted runs, newest first."""
        return self.store.select(
            METRICS_TABLE,
            filters={"pipeline_id": self.state.pipeline_id},
            order_by=["-start_time"],
            limit=limit,
        )
