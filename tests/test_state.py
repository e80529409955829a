"""
Tests for the pipeline state manager.
"""

import pytest

from src.data.errors import InvalidTransitionError, LockContention
from src.orchestrator.state import (
    STATE_TABLE,
    TRANSITIONS_TABLE,
    HealthStatus,
    PipelineStateManager,
    PipelineStatus,
    is_valid_transition,
)


@pytest.fixture
def state(store, clock):
    return PipelineStateManager(
        store,
        pipeline_id="test_pipeline",
        lock_timeout_seconds=300,
        retention_days=30,
        clock=clock,
    )


def start_run(state):
    assert state.lock()
    state.transition(PipelineStatus.RUNNING)


class TestStateRow:
    """Tests for state row creation."""

    def test_created_idle_on_first_read(self, state, store):
        """Test the state row is created idle on first use."""
        row = state.get_state()
        assert row["status"] == "idle"
        assert row["step_data"] == {}
        assert len(store.rows(STATE_TABLE)) == 1

    def test_ensure_state_does_not_overwrite(self, state, store):
        """Test re-creating the row keeps the existing status."""
        start_run(state)
        state._ensure_state()
        assert state.status == PipelineStatus.RUNNING
        assert len(store.rows(STATE_TABLE)) == 1


class TestLocking:
    """Tests for the TTL lock."""

    def test_lock_acquired_when_idle(self, state):
        """Test locking an idle pipeline."""
        assert state.lock() is True
        row = state.get_state()
        assert row["status"] == "locked"
        assert row["lock_id"] == state.lock_id
        assert row["locked_at"] is not None

    def test_second_lock_within_ttl_fails(self, state, clock):
        """Test a fresh lock blocks other callers."""
        assert state.lock()
        clock.advance(seconds=1)
        assert state.lock() is False

    def test_stale_lock_is_overridden(self, state, clock):
        """Test a lock older than the TTL can be taken over."""
        assert state.lock()
        first_lock = state.lock_id
        clock.advance(minutes=6)

        assert state.lock() is True
        assert state.lock_id != first_lock

        latest = state.get_history(limit=1)[0]
        assert latest["to_status"] == "locked"
        assert latest["metadata"]["stale_lock_override"] is True

    def test_running_pipeline_blocks_lock(self, state, clock):
        """Test a running pipeline with a fresh lock cannot be locked."""
        start_run(state)
        clock.advance(minutes=2)
        assert state.lock() is False

    def test_acquire_raises_on_contention(self, state, clock):
        """Test acquire raises LockContention instead of returning False."""
        holder = state.acquire()
        clock.advance(seconds=10)

        other = PipelineStateManager(
            state.store, pipeline_id="test_pipeline",
            lock_timeout_seconds=300, retention_days=30, clock=clock,
        )
        with pytest.raises(LockContention) as exc_info:
            other.acquire()
        assert exc_info.value.holder == holder

    def test_unlock_resets_to_idle(self, state):
        """Test unlock clears the lock and returns to idle."""
        state.lock()
        state.unlock()

        row = state.get_state()
        assert row["status"] == "idle"
        assert row["lock_id"] is None
        assert row["locked_at"] is None

    def test_unlock_can_keep_failed_status(self, state):
        """Test unlock(reset_status=False) keeps a failed status."""
        start_run(state)
        state.transition(PipelineStatus.FAILED)
        state.unlock(reset_status=False)

        row = state.get_state()
        assert row["status"] == "failed"
        assert row["lock_id"] is None

    def test_lock_after_failure(self, state):
        """Test a failed pipeline can be locked again."""
        start_run(state)
        state.transition(PipelineStatus.FAILED)
        state.unlock(reset_status=False)
        assert state.lock() is True

    def test_overridden_run_cannot_release_new_holder(self, state, store, clock):
        """Test a run whose stale lock was taken over leaves the new holder alone."""
        start_run(state)
        clock.advance(minutes=6)

        other = PipelineStateManager(
            store, pipeline_id="test_pipeline",
            lock_timeout_seconds=300, retention_days=30, clock=clock,
        )
        start_run(other)

        with pytest.raises(LockContention) as exc_info:
            state.transition(PipelineStatus.COMPLETED)
        assert exc_info.value.holder == other.lock_id

        state.unlock()
        assert state.lock_id is None

        row = other.get_state()
        assert row["status"] == "running"
        assert row["lock_id"] == other.lock_id

        third = PipelineStateManager(
            store, pipeline_id="test_pipeline",
            lock_timeout_seconds=300, retention_days=30, clock=clock,
        )
        assert third.lock() is False

    def test_lost_lock_unlock_records_no_transition(self, state, store, clock):
        start_run(state)
        clock.advance(minutes=6)
        other = PipelineStateManager(
            store, pipeline_id="test_pipeline",
            lock_timeout_seconds=300, retention_days=30, clock=clock,
        )
        assert other.lock()
        before = len(store.rows(TRANSITIONS_TABLE))

        state.unlock()

        assert len(store.rows(TRANSITIONS_TABLE)) == before
        assert other.get_state()["status"] == "locked"

    def test_lost_lock_checkpoints_are_dropped(self, state, store, clock):
        """Test step data and outcomes from an overtaken run leave the new holder's row alone."""
        start_run(state)
        clock.advance(minutes=6)
        other = PipelineStateManager(
            store, pipeline_id="test_pipeline",
            lock_timeout_seconds=300, retention_days=30, clock=clock,
        )
        start_run(other)
        other.set_current_step("sync")

        state.set_current_step("cleanup")
        state.save_step_data("cleanup", {"completed": True})
        state.record_failure("stale run")

        row = other.get_state()
        assert row["current_step"] == "sync"
        assert "cleanup" not in row["step_data"]
        assert row["metadata"].get("consecutive_failures") is None

    def test_manual_unlock_without_lock_id_forces_release(self, state, store):
        """Test a manager that never locked (e.g. the CLI) can clear a stuck lock."""
        start_run(state)
        operator = PipelineStateManager(
            store, pipeline_id="test_pipeline",
            lock_timeout_seconds=300, retention_days=30, clock=state.clock,
        )
        operator.unlock()
        assert operator.get_state()["status"] == "idle"
        assert operator.get_state()["lock_id"] is None

    def test_is_locked(self, state, clock):
        """Test is_locked respects the TTL."""
        assert state.is_locked() is False
        state.lock()
        assert state.is_locked() is True
        clock.advance(minutes=10)
        assert state.is_locked() is False


class TestTransitions:
    """Tests for the status state machine."""

    def test_transition_table(self):
        """Test selected valid and invalid transitions."""
        assert is_valid_transition(PipelineStatus.IDLE, PipelineStatus.RUNNING)
        assert is_valid_transition(PipelineStatus.FAILED, PipelineStatus.RUNNING)
        assert not is_valid_transition(PipelineStatus.RUNNING, PipelineStatus.IDLE)
        assert not is_valid_transition(PipelineStatus.CANCELLED, PipelineStatus.RUNNING)
        assert not is_valid_transition(PipelineStatus.IDLE, PipelineStatus.COMPLETED)

    def test_running_to_idle_rejected(self, state):
        """Test running -> idle raises and leaves status unchanged."""
        start_run(state)
        with pytest.raises(InvalidTransitionError) as exc_info:
            state.transition(PipelineStatus.IDLE)

        assert exc_info.value.from_status == "running"
        assert exc_info.value.to_status == "idle"
        assert state.status == PipelineStatus.RUNNING

    def test_completed_then_running_again(self, state):
        """Test running -> completed -> running is accepted."""
        start_run(state)
        state.transition(PipelineStatus.COMPLETED)
        state.transition(PipelineStatus.RUNNING)
        assert state.status == PipelineStatus.RUNNING

    def test_transition_timestamps(self, state, clock):
        """Test running stamps last_run_time and completed stamps last_success_time."""
        start_run(state)
        assert state.get_state()["last_run_time"] == clock.now

        clock.advance(minutes=3)
        state.transition(PipelineStatus.COMPLETED)
        assert state.get_state()["last_success_time"] == clock.now

    def test_transitions_are_recorded(self, state):
        """Test each change appends to the history with metadata."""
        start_run(state)
        state.transition(PipelineStatus.COMPLETED, {"run_id": "r1"})

        history = state.get_history()
        assert [h["to_status"] for h in history] == ["completed", "running", "locked"]
        assert history[0]["from_status"] == "running"
        assert history[0]["metadata"] == {"run_id": "r1"}


class TestCheckpoints:
    """Tests for step data and recovery."""

    def test_save_step_data_merges(self, state):
        """Test step data is merged per step."""
        state.save_step_data("sync", {"completed": False, "data": {"start_date": "2024-01-01"}})
        state.save_step_data("sync", {"recordsProcessed": 10})

        entry = state.get_step_data("sync")
        assert entry["data"] == {"start_date": "2024-01-01"}
        assert entry["recordsProcessed"] == 10
        assert "completed_at" not in entry

    def test_completed_step_is_stamped(self, state, clock):
        """Test completed steps get a completed_at timestamp."""
        state.save_step_data("sync", {"completed": True})
        assert state.get_step_data("sync")["completed_at"] == clock.now.isoformat()

    def test_no_recovery_point_unless_failed(self, state):
        """Test recovery requires failed status and a current step."""
        start_run(state)
        state.set_current_step("sync")
        assert state.get_recovery_point() is None

    def test_recovery_point_after_failure(self, state, clock):
        """Test the recovery point names the last completed and next step."""
        start_run(state)
        state.set_current_step("sync")
        state.save_step_data("sync", {"completed": True})
        clock.advance(seconds=30)
        state.set_current_step("refresh_schedule")
        state.transition(PipelineStatus.FAILED)

        point = state.get_recovery_point()
        assert point is not None
        assert point.last_completed_step == "sync"
        assert point.next_step == "refresh_schedule"
        assert point.completed_steps == ["sync"]

    def test_failed_without_step_has_no_recovery(self, state):
        """Test a failure before any step has nothing to resume."""
        start_run(state)
        state.transition(PipelineStatus.FAILED)
        assert state.get_recovery_point() is None

    def test_reset(self, state):
        """Test reset returns to idle with empty step data."""
        start_run(state)
        state.set_current_step("sync")
        state.save_step_data("sync", {"completed": True})
        state.reset()

        row = state.get_state()
        assert row["status"] == "idle"
        assert row["step_data"] == {}
        assert row["current_step"] is None
        assert row["lock_id"] is None


class TestHistory:
    """Tests for history paging and retention."""

    def test_history_paging(self, state):
        """Test limit and offset over newest-first history."""
        start_run(state)
        state.transition(PipelineStatus.COMPLETED)

        page = state.get_history(limit=1, offset=1)
        assert len(page) == 1
        assert page[0]["to_status"] == "running"

    def test_cleanup_removes_old_transitions(self, state, store, clock):
        """Test transitions older than the retention window are deleted."""
        start_run(state)
        clock.advance(days=31)
        state.transition(PipelineStatus.COMPLETED)

        deleted = state.cleanup_history()

        assert deleted == 2
        remaining = store.rows(TRANSITIONS_TABLE)
        assert [r["to_status"] for r in remaining] == ["completed"]

    def test_cleanup_custom_days(self, state, clock):
        """Test an explicit retention overrides the default."""
        start_run(state)
        clock.advance(days=2)
        assert state.cleanup_history(days_to_keep=1) == 2


class TestHealth:
    """Tests for derived health."""

    def test_no_runs_is_healthy(self, state):
        """Test a pipeline without history is healthy."""
        health = state.get_health()
        assert health["status"] == HealthStatus.HEALTHY.value
        assert health["total_runs"] == 0

    def test_recent_success_is_healthy(self, state):
        """Test a recent success is healthy."""
        state.record_success("r1", 100)
        health = state.get_health()
        assert health["status"] == "healthy"
        assert health["success_rate"] == 1.0

    def test_many_failures_unhealthy(self, state):
        """Test more than five recent errors is unhealthy."""
        for i in range(6):
            state.record_failure(f"boom {i}")
        health = state.get_health()
        assert health["status"] == "unhealthy"
        assert health["recent_errors"] == 6
        assert health["last_error"] == "boom 5"

    def test_some_failures_degraded(self, state):
        """Test three failures in twenty runs is degraded."""
        for _ in range(17):
            state.record_success()
        for _ in range(3):
            state.record_failure("boom")
        health = state.get_health()
        assert health["success_rate"] == pytest.approx(0.85)
        assert health["status"] == "degraded"

    def test_old_success_degraded(self, state, clock):
        """Test more than 24 hours since the last success is degraded."""
        state.record_success()
        clock.advance(hours=25)
        health = state.get_health()
        assert health["status"] == "degraded"
        assert health["hours_since_success"] == pytest.approx(25)

    def test_outcome_window_is_bounded(self, state):
        """Test only the latest outcomes are kept."""
        for _ in range(25):
            state.record_success()
        assert len(state.get_state()["metadata"]["recent_runs"]) == 20

    def test_consecutive_failures_reset_on_success(self, state):
        """Test a success resets the consecutive failure counter."""
        state.record_failure("a")
        state.record_failure("b")
        assert state.get_summary()["consecutive_failures"] == 2
        state.record_success()
        assert state.get_summary()["consecutive_failures"] == 0

    def test_stale_lock_flag(self, state, clock):
        """Test an expired lock is reported."""
        state.lock()
        clock.advance(minutes=10)
        assert state.get_health()["stale_lock"] is True


class TestCatchup:
    """Tests for catch-up detection."""

    def test_never_succeeded(self, state):
        assert state.needs_catchup_run() is True

    def test_recent_success(self, state, clock):
        state.record_success()
        clock.advance(days=3)
        assert state.needs_catchup_run() is False

    def test_interrupted_run(self, state, clock):
        state.record_success()
        start_run(state)
        clock.advance(hours=1)
        assert state.needs_catchup_run() is True
