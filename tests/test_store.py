"""
Tests for the PostgreSQL store.

The connection pool is mocked; these tests cover parameter binding,
transaction handling and guard rails, not SQL text rendering.
"""

import pytest
from unittest.mock import MagicMock, patch
from datetime import date

from psycopg2 import sql

from src.data.errors import DatabaseError, DuplicateFieldError
from src.data.store import ANY_OF, RelationalStore, build_where, chunked, split_filter_key


def mock_pool():
    """Pool whose connection yields a single mocked cursor."""
    db_pool = MagicMock()
    conn = db_pool.getconn.return_value
    cursor = conn.cursor.return_value.__enter__.return_value
    return db_pool, conn, cursor


class TestFilters:
    """Tests for filter parsing."""

    def test_split_filter_key(self):
        assert split_filter_key("asin") == ("asin", "eq")
        assert split_filter_key("start_date__gte") == ("start_date", "gte")
        assert split_filter_key("locked_at__is_null") == ("locked_at", "is_null")

    def test_empty_filters(self):
        clause, params = build_where(None)
        assert params == []
        assert clause == sql.SQL("")

    def test_params_in_order(self):
        """Test values are bound in filter order, OR branches included."""
        _, params = build_where({
            "pipeline_id": "bigquery_sync",
            ANY_OF: [
                {"status__not_in": ("locked", "running")},
                {"locked_at__is_null": True},
                {"locked_at__lte": date(2024, 1, 1)},
            ],
            "id__in": (1, 2),
        })
        assert params == ["bigquery_sync", ["locked", "running"], date(2024, 1, 1), [1, 2]]

    def test_unsupported_operator(self):
        with pytest.raises(ValueError):
            build_where({"asin__like": "B0%"})

    def test_chunked(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(chunked([], 3)) == []


class TestRelationalStore:
    """Tests for RelationalStore with a mocked pool."""

    def setup_method(self):
        self.db_pool, self.conn, self.cursor = mock_pool()
        self.store = RelationalStore(db_pool=self.db_pool)

    def test_connection_committed_and_returned(self):
        """Test a successful block commits and returns the connection."""
        with self.store.get_db_connection():
            pass
        self.conn.commit.assert_called_once()
        self.db_pool.putconn.assert_called_once_with(self.conn)

    def test_failure_rolls_back(self):
        """Test errors roll back and surface as DatabaseError."""
        with pytest.raises(DatabaseError):
            with self.store.get_db_connection():
                raise RuntimeError("boom")
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()
        self.db_pool.putconn.assert_called_once_with(self.conn)

    def test_select_binds_limit_and_offset(self):
        """Test limit and offset follow the filter params."""
        self.cursor.fetchall.return_value = [{"id": 1, "asin": "B0TEST0001"}]

        rows = self.store.select("asin_performance_data", filters={"asin": "B0TEST0001"}, limit=5, offset=10)

        assert rows == [{"id": 1, "asin": "B0TEST0001"}]
        _, params = self.cursor.execute.call_args[0]
        assert params == ["B0TEST0001", 5, 10]

    def test_update_wraps_dicts_as_json(self):
        """Test dict values are adapted for JSONB columns."""
        self.cursor.fetchall.return_value = [{"pipeline_id": "p"}]

        rows = self.store.update("pipeline_states", {"step_data": {"sync": {}}}, {"pipeline_id": "p"})

        assert rows == [{"pipeline_id": "p"}]
        _, params = self.cursor.execute.call_args[0]
        assert params[0].adapted == {"sync": {}}
        assert params[1] == "p"

    def test_update_requires_values(self):
        with pytest.raises(ValueError):
            self.store.update("pipeline_states", {}, {"pipeline_id": "p"})

    def test_delete_requires_filters(self):
        """Test an unfiltered delete is refused."""
        with pytest.raises(ValueError):
            self.store.delete("pipeline_transitions", {})
        self.db_pool.getconn.assert_not_called()

    def test_delete_returns_rowcount(self):
        self.cursor.rowcount = 3
        assert self.store.delete("pipeline_transitions", {"pipeline_id": "p"}) == 3

    def test_empty_upsert_is_noop(self):
        assert self.store.upsert("search_query_performance", [], ("asin_performance_id", "search_query")) == []
        self.db_pool.getconn.assert_not_called()

    def test_add_columns_rejects_existing(self):
        """Test DuplicateFieldError lists the existing columns."""
        with patch.object(self.store, "get_columns", return_value=["id", "asin"]):
            with pytest.raises(DuplicateFieldError) as exc_info:
                self.store.add_columns("asin_performance_data", {"asin": "TEXT", "brand": "TEXT"})
        assert exc_info.value.fields == ["asin"]

    def test_ping(self):
        self.cursor.fetchone.return_value = (1,)
        assert self.store.ping() is True

    def test_close_keeps_injected_pool(self):
        """Test an injected pool is not closed by the store."""
        self.store.close()
        self.db_pool.closeall.assert_not_called()
