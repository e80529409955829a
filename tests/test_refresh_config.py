"""
Tests for the refresh schedule and the refresh audit log.
"""

import pytest
from datetime import timedelta

from src.sync.audit_log import AUDIT_TABLE, MAX_ERROR_LENGTH, AuditLogger
from src.sync.refresh_config import CONFIG_TABLE, RefreshConfigRepository, order_by_dependencies


def config(name, priority=0, dependencies=None, **extra):
    row = {
        "table_schema": "public",
        "table_name": name,
        "priority": priority,
        "dependencies": dependencies or [],
        "is_enabled": True,
        "refresh_frequency_hours": 24,
        "next_refresh_at": None,
    }
    row.update(extra)
    return row


class TestDependencyOrder:
    """Tests for order_by_dependencies."""

    def test_dependencies_first(self):
        """Test a child table never precedes its dependency."""
        ordered = order_by_dependencies([
            config("search_query_performance", priority=90, dependencies=["asin_performance_data"]),
            config("asin_performance_data", priority=10),
        ])
        assert [c["table_name"] for c in ordered] == [
            "asin_performance_data", "search_query_performance",
        ]

    def test_priority_among_ready_tables(self):
        ordered = order_by_dependencies([config("low", priority=1), config("high", priority=5)])
        assert [c["table_name"] for c in ordered] == ["high", "low"]

    def test_unknown_dependency_ignored(self):
        ordered = order_by_dependencies([config("a", dependencies=["not_configured"])])
        assert [c["table_name"] for c in ordered] == ["a"]

    def test_cycle_rejected(self):
        with pytest.raises(ValueError):
            order_by_dependencies([
                config("a", dependencies=["b"]),
                config("b", dependencies=["a"]),
            ])


class TestRefreshConfigRepository:
    """Tests for RefreshConfigRepository."""

    @pytest.fixture(autouse=True)
    def setup(self, store, clock):
        self.store = store
        self.clock = clock
        self.repo = RefreshConfigRepository(store, clock=clock)

    def test_due_tables(self):
        """Test enabled tables with no or past next_refresh_at are due."""
        now = self.clock.now
        self.store.seed(CONFIG_TABLE, [
            config("never_run"),
            config("overdue", next_refresh_at=now - timedelta(hours=1)),
            config("future", next_refresh_at=now + timedelta(hours=1)),
            config("disabled", is_enabled=False),
        ])
        due = [c["table_name"] for c in self.repo.get_due_tables()]
        assert sorted(due) == ["never_run", "overdue"]

    def test_mark_refreshed(self):
        """Test the schedule moves forward by the configured frequency."""
        self.store.seed(CONFIG_TABLE, [config("asin_performance_data", refresh_frequency_hours=168)])

        next_refresh = self.repo.mark_refreshed("asin_performance_data")

        assert next_refresh == self.clock.now + timedelta(hours=168)
        row = self.repo.get("asin_performance_data")
        assert row["last_refresh_at"] == self.clock.now
        assert row["next_refresh_at"] == next_refresh

    def test_mark_refreshed_default_frequency(self):
        self.store.seed(CONFIG_TABLE, [config("t", refresh_frequency_hours=None)])
        assert self.repo.mark_refreshed("t") == self.clock.now + timedelta(hours=24)

    def test_mark_refreshed_unknown_table(self):
        assert self.repo.mark_refreshed("missing") is None

    def test_get_all_by_priority(self):
        self.store.seed(CONFIG_TABLE, [config("b", priority=1), config("a", priority=9)])
        assert [c["table_name"] for c in self.repo.get_all()] == ["a", "b"]


class TestAuditLogger:
    """Tests for AuditLogger."""

    @pytest.fixture(autouse=True)
    def setup(self, store, clock):
        self.store = store
        self.clock = clock
        self.audit = AuditLogger(store, clock=clock)

    def test_start_then_complete(self):
        audit_id = self.audit.start("asin_performance_data", sync_id="s1")
        row = self.store.rows(AUDIT_TABLE)[0]
        assert row["status"] == "in_progress"
        assert row["sync_id"] == "s1"

        self.clock.advance(seconds=5)
        self.audit.complete(audit_id, 42)

        row = self.store.rows(AUDIT_TABLE)[0]
        assert row["status"] == "success"
        assert row["rows_processed"] == 42
        assert row["refresh_completed_at"] == self.clock.now

    def test_fail_truncates_message(self):
        audit_id = self.audit.start("search_query_performance")
        self.audit.fail(audit_id, "x" * (MAX_ERROR_LENGTH + 100), rows_processed=3)

        row = self.store.rows(AUDIT_TABLE)[0]
        assert row["status"] == "failed"
        assert len(row["error_message"]) == MAX_ERROR_LENGTH
        assert row["rows_processed"] == 3

    def test_count_failures_window(self):
        """Test only failures inside the window are counted."""
        old = self.audit.start("asin_performance_data")
        self.audit.fail(old, "old failure")
        self.clock.advance(hours=30)
        recent = self.audit.start("asin_performance_data")
        self.audit.fail(recent, "recent failure")
        self.audit.complete(self.audit.start("search_query_performance"), 1)

        assert self.audit.count_failures(hours=24) == 1
        assert self.audit.count_failures(hours=48) == 2

    def test_get_recent_newest_first(self):
        self.audit.start("a")
        self.clock.advance(minutes=1)
        self.audit.start("b")
        assert [r["table_name"] for r in self.audit.get_recent()] == ["b", "a"]
