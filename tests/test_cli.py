"""
Tests for the sqp-sync command-line interface.
"""

import argparse
import json
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from src.data.config import StateConfig
from src.data.data_models import SUMMARY_VIEW
from src.orchestrator import cli
from src.orchestrator.state import STATE_TABLE
from src.orchestrator.sync_pipeline import PipelineRunResult, RunStatus

from conftest import FakeStore


TEST_SETTINGS = SimpleNamespace(
    state=StateConfig(pipeline_id="cli_test", lock_timeout_seconds=300, retention_days=30),
)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture(autouse=True)
def patched(store):
    with patch.object(cli, "RelationalStore", return_value=store), \
            patch.object(cli, "setup_logging"), \
            patch("src.data.config.get_settings", return_value=TEST_SETTINGS):
        yield


class TestParseDate:
    """Tests for date argument parsing."""

    def test_valid(self):
        assert cli.parse_date("2024-01-07") == date(2024, 1, 7)

    def test_invalid(self):
        with pytest.raises(argparse.ArgumentTypeError):
            cli.parse_date("2024-13-01")

    def test_invalid_date_exits(self):
        with pytest.raises(SystemExit):
            cli.main(["sync", "--start", "07/01/2024", "--end", "2024-01-07"])


class TestCommands:
    """Tests for individual commands."""

    def test_no_command(self, capsys):
        assert cli.main([]) == 1

    def test_status(self, capsys):
        assert cli.main(["status"]) == 0
        out = capsys.readouterr().out
        assert "Pipeline: cli_test" in out
        assert "Status: idle" in out

    def test_unlock(self, store):
        """Test unlock clears a held lock."""
        store.seed(STATE_TABLE, [{
            "pipeline_id": "cli_test",
            "status": "running",
            "lock_id": "stuck",
            "locked_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "step_data": {},
            "metadata": {},
        }])

        assert cli.main(["unlock"]) == 0

        row = store.rows(STATE_TABLE)[0]
        assert row["status"] == "idle"
        assert row["lock_id"] is None

    def test_unlock_keep_status(self, store):
        store.seed(STATE_TABLE, [{
            "pipeline_id": "cli_test", "status": "failed", "lock_id": "x",
            "step_data": {}, "metadata": {},
        }])
        assert cli.main(["unlock", "--keep-status"]) == 0
        assert store.rows(STATE_TABLE)[0]["status"] == "failed"

    def test_health_without_data_fails(self, capsys):
        """Test a store with no synced periods reports unhealthy."""
        assert cli.main(["health"]) == 1
        out = capsys.readouterr().out
        assert "UNHEALTHY" in out
        assert "stale_data" in out

    def test_health_database_down(self, store, capsys):
        store.down = True
        assert cli.main(["health"]) == 1
        assert "database_down" in capsys.readouterr().out

    def test_keywords_json(self, store, capsys):
        store.seed(SUMMARY_VIEW, [
            {"asin": "B0TEST0001", "search_query": "knife sharpener",
             "start_date": date(2024, 1, 1), "end_date": date(2024, 1, 7),
             "impressions": 1000, "clicks": 100, "cart_adds": 30, "purchases": 10},
            {"asin": "B0TEST0001", "search_query": "knife sharpener",
             "start_date": date(2024, 1, 8), "end_date": date(2024, 1, 14),
             "impressions": 1500, "clicks": 120, "cart_adds": 20, "purchases": 14},
        ])

        code = cli.main([
            "keywords", "--asin", "B0TEST0001",
            "--start", "2024-01-01", "--end", "2024-01-14", "--json",
        ])

        assert code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["topQueries"][0]["impressions"] == 2500

    def test_keywords_comparison_needs_both_bounds(self):
        code = cli.main([
            "keywords", "--asin", "B0TEST0001",
            "--start", "2024-01-01", "--end", "2024-01-14",
            "--compare-start", "2023-12-01",
        ])
        assert code == 1

    def test_init_db(self, store):
        assert cli.main(["init-db"]) == 0
        assert len(store.scripts) == 2

    def test_init_db_without_seed(self, store):
        assert cli.main(["init-db", "--no-seed"]) == 0
        assert len(store.scripts) == 1


class TestSyncCommand:
    """Tests for the sync command."""

    def test_window_bounds_required_together(self):
        with patch.object(cli.SyncPipeline, "from_settings") as from_settings:
            assert cli.main(["sync", "--start", "2024-01-01"]) == 1
        from_settings.assert_not_called()

    def test_sync_runs_pipeline(self, capsys):
        started = datetime(2024, 1, 8, tzinfo=timezone.utc)
        result = PipelineRunResult(
            run_id="run-1",
            status=RunStatus.COMPLETED,
            started_at=started,
            completed_at=started,
            start_date="2024-01-01",
            end_date="2024-01-07",
        )
        pipeline = MagicMock()
        pipeline.__enter__.return_value = pipeline
        pipeline.__exit__.return_value = False
        pipeline.run.return_value = result

        with patch.object(cli.SyncPipeline, "from_settings", return_value=pipeline):
            code = cli.main([
                "sync", "--start", "2024-01-01", "--end", "2024-01-07",
                "--asin", "B0TEST0001", "--asin", "B0TEST0002",
            ])

        assert code == 0
        kwargs = pipeline.run.call_args[1]
        assert kwargs["start_date"] == date(2024, 1, 1)
        assert kwargs["asins"] == ["B0TEST0001", "B0TEST0002"]
        assert kwargs["resume_from_failure"] is False
        assert "Status: completed" in capsys.readouterr().out
