"""
SQP Pipeline State Manager
==========================

Persists pipeline status in the relational store so scheduled runs can
exclude each other and resume after a crash.

Provides:
- A lock with a TTL, acquired by a single conditional UPDATE
- A status state machine with an append-only transition history
- Per-step checkpoints and a recovery point after failures
- Health derived from recent run outcomes

Status transitions:
    idle      -> locked, running
    locked    -> running, idle
    running   -> completed, failed, cancelled
    completed -> idle, running
    failed    -> idle, running
    cancelled -> idle

lock(), unlock() and reset() manage the lock columns directly and are not
subject to the transition table; every other status change goes through
transition().

Usage:
    from src.orchestrator.state import PipelineStateManager, PipelineStatus

    state = PipelineStateManager(store)
    if state.lock():
        try:
            state.transition(PipelineStatus.RUNNING)
            ...
            state.transition(PipelineStatus.COMPLETED)
        finally:
            state.unlock()
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..data.errors import InvalidTransitionError, LockContention

logger = logging.getLogger(__name__)

STATE_TABLE = "pipeline_states"
TRANSITIONS_TABLE = "pipeline_transitions"

DEFAULT_LOCK_TIMEOUT_SECONDS = 300
DEFAULT_RETENTION_DAYS = 30

# Rolling window of run outcomes kept in metadata
OUTCOME_WINDOW = 20
RECENT_ERROR_WINDOW = 10


class PipelineStatus(Enum):
    """Pipeline status."""
    IDLE = "idle"
    LOCKED = "locked"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


VALID_TRANSITIONS = {
    PipelineStatus.IDLE: {PipelineStatus.LOCKED, PipelineStatus.RUNNING},
    PipelineStatus.LOCKED: {PipelineStatus.RUNNING, PipelineStatus.IDLE},
    PipelineStatus.RUNNING: {
        PipelineStatus.COMPLETED,
        PipelineStatus.FAILED,
        PipelineStatus.CANCELLED,
    },
    PipelineStatus.COMPLETED: {PipelineStatus.IDLE, PipelineStatus.RUNNING},
    PipelineStatus.FAILED: {PipelineStatus.IDLE, PipelineStatus.RUNNING},
    PipelineStatus.CANCELLED: {PipelineStatus.IDLE},
}

BUSY_STATUSES = (PipelineStatus.LOCKED.value, PipelineStatus.RUNNING.value)

# Health thresholds
UNHEALTHY_RECENT_ERRORS = 5
UNHEALTHY_SUCCESS_RATE = 0.8
DEGRADED_RECENT_ERRORS = 2
DEGRADED_SUCCESS_RATE = 0.95
DEGRADED_HOURS_SINCE_SUCCESS = 24


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_transition(from_status: PipelineStatus, to_status: PipelineStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def _as_datetime(value: Any) -> Optional[datetime]:
    """Timestamps may come back as datetimes or ISO strings."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class RecoveryPoint:
    """Where a failed run can resume."""
    last_completed_step: Optional[str]
    next_step: str
    step_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed_steps(self) -> List[str]:
        return [name for name, data in self.step_data.items() if (data or {}).get("completed")]


class PipelineStateManager:
    """
    Store-backed state for a single pipeline id.

    Survives process restarts; all state lives in pipeline_states and
    pipeline_transitions.
    """

    def __init__(
        self,
        store,
        pipeline_id: Optional[str] = None,
        lock_timeout_seconds: Optional[int] = None,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the state manager.

        Args:
            store: RelationalStore
            pipeline_id: State row id (from settings if None)
            lock_timeout_seconds: Lock TTL (default 300)
            retention_days: Transition history retention (default 30)
            clock: Current UTC time
        """
        if pipeline_id is None or lock_timeout_seconds is None or retention_days is None:
            from ..data.config import get_settings
            state_config = get_settings().state
            pipeline_id = pipeline_id or state_config.pipeline_id
            lock_timeout_seconds = lock_timeout_seconds or state_config.lock_timeout_seconds
            retention_days = retention_days or state_config.retention_days

        self.store = store
        self.pipeline_id = pipeline_id
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self.retention_days = retention_days
        self.clock = clock
        self.lock_id: Optional[str] = None

    # =========================================================================
    # State Row
    # =========================================================================

    def _ensure_state(self):
        """Create the state row on first use."""
        self.store.upsert(
            STATE_TABLE,
            [{
                "pipeline_id": self.pipeline_id,
                "status": PipelineStatus.IDLE.value,
                "step_data": {},
                "metadata": {},
                "updated_at": self.clock(),
            }],
            conflict_columns=("pipeline_id",),
            ignore_duplicates=True,
        )

    def get_state(self) -> Dict[str, Any]:
        """Current state row, created if missing."""
        rows = self.store.select(STATE_TABLE, filters={"pipeline_id": self.pipeline_id}, limit=1)
        if not rows:
            self._ensure_state()
            rows = self.store.select(STATE_TABLE, filters={"pipeline_id": self.pipeline_id}, limit=1)
        state = rows[0]
        state["step_data"] = state.get("step_data") or {}
        state["metadata"] = state.get("metadata") or {}
        return state

    @property
    def status(self) -> PipelineStatus:
        return PipelineStatus(self.get_state()["status"])

    def _record_transition(self, from_status: str, to_status: str, metadata: Optional[Dict[str, Any]] = None):
        self.store.insert(
            TRANSITIONS_TABLE,
            [{
                "pipeline_id": self.pipeline_id,
                "from_status": from_status,
                "to_status": to_status,
                "timestamp": self.clock(),
                "metadata": metadata or {},
            }],
        )

    # =========================================================================
    # Locking
    # =========================================================================

    def lock(self) -> bool:
        """
        Try to acquire the pipeline lock.

        Succeeds when the pipeline is neither locked nor running, or when the
        existing lock is older than the TTL. The check and the write are a
        single UPDATE, so two concurrent callers cannot both succeed.

        Returns:
            True if acquired
        """
        self._ensure_state()
        previous = self.get_state()

        now = self.clock()
        lock_id = str(uuid.uuid4())
        rows = self.store.update(
            STATE_TABLE,
            {
                "status": PipelineStatus.LOCKED.value,
                "lock_id": lock_id,
                "locked_at": now,
                "updated_at": now,
            },
            {
                "pipeline_id": self.pipeline_id,
                "ANY_OF": [
                    {"status__not_in": list(BUSY_STATUSES)},
                    {"locked_at__is_null": True},
                    {"locked_at__lte": now - self.lock_timeout},
                ],
            },
        )

        if not rows:
            logger.info(
                f"Pipeline {self.pipeline_id} is {previous['status']} "
                f"(lock {previous.get('lock_id')}), lock not acquired"
            )
            return False

        stale = previous["status"] in BUSY_STATUSES
        if stale:
            logger.warning(
                f"Overriding stale lock {previous.get('lock_id')} on {self.pipeline_id} "
                f"(locked at {previous.get('locked_at')})"
            )

        self.lock_id = lock_id
        self._record_transition(
            previous["status"],
            PipelineStatus.LOCKED.value,
            {"lock_id": lock_id, "stale_lock_override": stale},
        )
        logger.info(f"Pipeline {self.pipeline_id} locked (lock_id={lock_id})")
        return True

    def _owner_filters(self) -> Dict[str, Any]:
        """Row filter that only matches while this manager still holds its lock."""
        filters: Dict[str, Any] = {"pipeline_id": self.pipeline_id}
        if self.lock_id:
            filters["lock_id"] = self.lock_id
        return filters

    def acquire(self) -> str:
        """
        Acquire the lock or raise.

        Raises:
            LockContention: If another run holds a fresh lock
        """
        if not self.lock():
            state = self.get_state()
            raise LockContention(self.pipeline_id, state.get("lock_id"))
        return self.lock_id

    def unlock(self, reset_status: bool = True):
        """
        Release the lock.

        Args:
            reset_status: Return status to idle; False keeps the current
                status (used to leave a failed run recoverable)
        """
        previous = self.get_state()
        values: Dict[str, Any] = {
            "lock_id": None,
            "locked_at": None,
            "updated_at": self.clock(),
        }
        if reset_status:
            values["status"] = PipelineStatus.IDLE.value

        held_lock = self.lock_id
        rows = self.store.update(STATE_TABLE, values, self._owner_filters())
        self.lock_id = None

        if not rows and held_lock:
            logger.warning(
                f"Lock {held_lock} on {self.pipeline_id} was lost to "
                f"{previous.get('lock_id')}, leaving state untouched"
            )
            return

        if reset_status and previous["status"] != PipelineStatus.IDLE.value:
            self._record_transition(previous["status"], PipelineStatus.IDLE.value, {"reason": "unlock"})
        logger.info(f"Pipeline {self.pipeline_id} unlocked")

    def is_locked(self) -> bool:
        """True while a fresh lock is held."""
        state = self.get_state()
        if state["status"] not in BUSY_STATUSES:
            return False
        locked_at = _as_datetime(state.get("locked_at"))
        return locked_at is not None and self.clock() - locked_at < self.lock_timeout

    # =========================================================================
    # State Machine
    # =========================================================================

    def transition(self, to_status: PipelineStatus, metadata: Optional[Dict[str, Any]] = None):
        """
        Move to a new status.

        Raises:
            InvalidTransitionError: If the change is not allowed from the
                current status
            LockContention: If the lock this manager took was overridden
        """
        state = self.get_state()
        from_status = PipelineStatus(state["status"])
        if not is_valid_transition(from_status, to_status):
            raise InvalidTransitionError(from_status.value, to_status.value)

        now = self.clock()
        values: Dict[str, Any] = {"status": to_status.value, "updated_at": now}
        if to_status == PipelineStatus.RUNNING:
            values["last_run_time"] = now
        elif to_status == PipelineStatus.COMPLETED:
            values["last_success_time"] = now

        filters = self._owner_filters()
        filters["status"] = from_status.value
        rows = self.store.update(STATE_TABLE, values, filters)
        if not rows:
            current = self.get_state()
            if self.lock_id and current.get("lock_id") != self.lock_id:
                logger.warning(
                    f"Lock {self.lock_id} on {self.pipeline_id} was lost to "
                    f"{current.get('lock_id')}, cannot move to {to_status.value}"
                )
                raise LockContention(self.pipeline_id, current.get("lock_id"))
            # status changed underneath us
            raise InvalidTransitionError(current["status"], to_status.value)

        self._record_transition(from_status.value, to_status.value, metadata)
        logger.debug(f"Pipeline {self.pipeline_id}: {from_status.value} -> {to_status.value}")

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def set_current_step(self, step: Optional[str]):
        self.store.update(
            STATE_TABLE,
            {"current_step": step, "updated_at": self.clock()},
            self._owner_filters(),
        )

    def save_step_data(self, step: str, data: Dict[str, Any]):
        """
        Merge a step's checkpoint into the step-data map.

        A payload with completed=True is stamped with completed_at.
        """
        step_data = dict(self.get_state()["step_data"])
        entry = dict(step_data.get(step) or {})
        entry.update(data)
        if entry.get("completed") and "completed_at" not in data:
            entry["completed_at"] = self.clock().isoformat()
        step_data[step] = entry

        self.store.update(
            STATE_TABLE,
            {"step_data": step_data, "updated_at": self.clock()},
            self._owner_filters(),
        )

    def get_step_data(self, step: Optional[str] = None) -> Dict[str, Any]:
        step_data = self.get_state()["step_data"]
        if step is None:
            return step_data
        return step_data.get(step) or {}

    def clear_step_data(self):
        self.store.update(
            STATE_TABLE,
            {"step_data": {}, "current_step": None, "updated_at": self.clock()},
            self._owner_filters(),
        )

    def get_recovery_point(self) -> Optional[RecoveryPoint]:
        """
        Resume information after a failed run.

        Returns:
            RecoveryPoint when status is failed and a current step is
            recorded, otherwise None
        """
        state = self.get_state()
        if state["status"] != PipelineStatus.FAILED.value or not state.get("current_step"):
            return None

        step_data = state["step_data"]
        completed = [
            (data.get("completed_at") or "", name)
            for name, data in step_data.items()
            if (data or {}).get("completed")
        ]
        last_completed = max(completed)[1] if completed else None

        return RecoveryPoint(
            last_completed_step=last_completed,
            next_step=state["current_step"],
            step_data=step_data,
        )

    # =========================================================================
    # Run Outcomes
    # =========================================================================

    def _append_outcome(
        self,
        outcome: Dict[str, Any],
        extra: Optional[Dict[str, Any]] = None,
        columns: Optional[Dict[str, Any]] = None,
    ):
        metadata = dict(self.get_state()["metadata"])
        runs = list(metadata.get("recent_runs") or [])
        runs.append(outcome)
        metadata["recent_runs"] = runs[-OUTCOME_WINDOW:]
        if extra:
            metadata.update(extra)
        values = {"metadata": metadata, "updated_at": self.clock()}
        values.update(columns or {})
        self.store.update(
            STATE_TABLE,
            values,
            self._owner_filters(),
        )

    def record_success(self, run_id: Optional[str] = None, records_processed: int = 0):
        self._append_outcome(
            {
                "status": "success",
                "run_id": run_id,
                "at": self.clock().isoformat(),
                "records_processed": records_processed,
            },
            {"last_error": None, "consecutive_failures": 0},
            {"last_success_time": self.clock()},
        )

    def record_failure(self, error: str, run_id: Optional[str] = None):
        metadata = self.get_state()["metadata"]
        self._append_outcome(
            {"status": "failed", "run_id": run_id, "at": self.clock().isoformat(), "error": error},
            {
                "last_error": error,
                "last_error_at": self.clock().isoformat(),
                "consecutive_failures": (metadata.get("consecutive_failures") or 0) + 1,
            },
        )

    def needs_catchup_run(self, max_age_hours: float = 7 * 24 + 2) -> bool:
        """
        True when no successful run happened within max_age_hours or the
        last run stopped mid-way.
        """
        state = self.get_state()
        if state["status"] in BUSY_STATUSES and not self.is_locked():
            logger.info("Previous run was interrupted, catch-up needed")
            return True

        last_success = _as_datetime(state.get("last_success_time"))
        if last_success is None:
            return True
        age_hours = (self.clock() - last_success).total_seconds() / 3600
        if age_hours > max_age_hours:
            logger.info(f"Last successful run was {age_hours:.1f}h ago, catch-up needed")
            return True
        return False

    # =========================================================================
    # History and Health
    # =========================================================================

    def get_history(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Transitions, newest first."""
        return self.store.select(
            TRANSITIONS_TABLE,
            filters={"pipeline_id": self.pipeline_id},
            order_by=["-timestamp", "-id"],
            limit=limit,
            offset=offset,
        )

    def cleanup_history(self, days_to_keep: Optional[int] = None) -> int:
        """
        Delete transitions older than the retention window.

        Returns:
            Number of rows deleted
        """
        days = days_to_keep if days_to_keep is not None else self.retention_days
        cutoff = self.clock() - timedelta(days=days)
        deleted = self.store.delete(
            TRANSITIONS_TABLE,
            {"pipeline_id": self.pipeline_id, "timestamp__lt": cutoff},
        )
        logger.info(f"Pruned {deleted} transitions older than {days} days")
        return deleted

    def get_health(self) -> Dict[str, Any]:
        """
        Derive health from recent outcomes.

        unhealthy: more than 5 recent errors or success rate below 0.8
        degraded:  more than 2 recent errors, success rate below 0.95 or
                   no success in the last 24 hours
        """
        state = self.get_state()
        runs = state["metadata"].get("recent_runs") or []
        last_success = _as_datetime(state.get("last_success_time"))
        hours_since_success = (
            (self.clock() - last_success).total_seconds() / 3600 if last_success else None
        )

        recent_errors = sum(1 for r in runs[-RECENT_ERROR_WINDOW:] if r.get("status") == "failed")
        success_rate = (
            sum(1 for r in runs if r.get("status") == "success") / len(runs) if runs else 1.0
        )

        if not runs:
            health = HealthStatus.HEALTHY
        elif recent_errors > UNHEALTHY_RECENT_ERRORS or success_rate < UNHEALTHY_SUCCESS_RATE:
            health = HealthStatus.UNHEALTHY
        elif (
            recent_errors > DEGRADED_RECENT_ERRORS
            or success_rate < DEGRADED_SUCCESS_RATE
            or hours_since_success is None
            or hours_since_success > DEGRADED_HOURS_SINCE_SUCCESS
        ):
            health = HealthStatus.DEGRADED
        else:
            health = HealthStatus.HEALTHY

        return {
            "pipeline_id": self.pipeline_id,
            "status": health.value,
            "pipeline_status": state["status"],
            "recent_errors": recent_errors,
            "success_rate": success_rate,
            "total_runs": len(runs),
            "hours_since_success": hours_since_success,
            "last_error": state["metadata"].get("last_error"),
            "stale_lock": state["status"] in BUSY_STATUSES and not self.is_locked(),
        }

    def reset(self):
        """Return to idle with no lock, step or step data."""
        previous = self.get_state()
        self.store.update(
            STATE_TABLE,
            {
                "status": PipelineStatus.IDLE.value,
                "current_step": None,
                "step_data": {},
                "lock_id": None,
                "locked_at": None,
                "updated_at": self.clock(),
            },
            {"pipeline_id": self.pipeline_id},
        )
        self.lock_id = None
        self._record_transition(previous["status"], PipelineStatus.IDLE.value, {"reason": "reset"})
        logger.info(f"Pipeline {self.pipeline_id} state reset")

    def get_summary(self) -> Dict[str, Any]:
        """Human-readable state summary."""
        state = self.get_state()
        return {
            "pipeline_id": self.pipeline_id,
            "status": state["status"],
            "current_step": state.get("current_step"),
            "last_run_time": state.get("last_run_time"),
            "last_success_time": state.get("last_success_time"),
            "lock_id": state.get("lock_id"),
            "locked_at": state.get("locked_at"),
            "last_error": state["metadata"].get("last_error"),
            "consecutive_failures": state["metadata"].get("consecutive_failures", 0),
            "completed_steps": [
                name for name, data in state["step_data"].items() if (data or {}).get("completed")
            ],
        }
