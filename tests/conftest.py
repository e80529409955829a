"""
Shared fixtures for the SQP sync tests.

FakeStore implements the RelationalStore interface in memory, with the
same filter and ordering semantics, so sync, state and aggregation code
can be exercised without a database.
"""

import copy
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from src.data.config import SyncConfig, WarehouseConfig
from src.data.errors import DuplicateFieldError
from src.data.store import ANY_OF, split_filter_key


# =============================================================================
# In-memory Store
# =============================================================================

def _compare(op, actual, expected):
    if op == "is_null":
        return (actual is None) == bool(expected)
    # SQL: comparisons against NULL are never true
    if actual is None:
        return False
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "lt":
        return actual < expected
    if op == "lte":
        return actual <= expected
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    if op == "in":
        return actual in list(expected)
    if op == "not_in":
        return actual not in list(expected)
    raise ValueError(f"Unsupported filter operator: {op}")


def matches(row, filters):
    for key, value in (filters or {}).items():
        if key == ANY_OF:
            if not any(matches(row, branch) for branch in value):
                return False
            continue
        column, op = split_filter_key(key)
        if not _compare(op, row.get(column), value):
            return False
    return True


class FakeStore:
    """In-memory stand-in for RelationalStore."""

    def __init__(self):
        self.tables = defaultdict(list)
        self.columns = {}
        self.scripts = []
        self.closed = False
        self.down = False
        self._next_id = defaultdict(int)
        self._failures = defaultdict(list)
        self.calls = []

    # Test helpers

    def fail(self, method, table, *errors):
        """Queue errors raised by the next calls of method on table; None lets a call through."""
        self._failures[(method, table)].extend(errors)

    def _maybe_fail(self, method, table):
        self.calls.append((method, table))
        queue = self._failures.get((method, table))
        if queue:
            error = queue.pop(0)
            if error is not None:
                raise error

    def rows(self, table):
        return copy.deepcopy(self.tables[table])

    def seed(self, table, rows):
        return self.insert(table, rows, returning=["*"])

    def _new_row(self, table, row):
        stored = copy.deepcopy(row)
        if "id" not in stored:
            self._next_id[table] += 1
            stored["id"] = self._next_id[table]
        return stored

    # Store interface

    def select(self, table, columns=None, filters=None, order_by=None, limit=None, offset=None):
        self._maybe_fail("select", table)
        rows = [r for r in self.tables[table] if matches(r, filters)]

        for term in reversed(list(order_by or [])):
            descending = term.startswith("-")
            column = term[1:] if descending else term
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=descending)
            # Postgres: NULLS LAST ascending, NULLS FIRST descending
            rows = missing + present if descending else present + missing

        if offset:
            rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]

        if columns:
            return [{c: copy.deepcopy(r.get(c)) for c in columns} for r in rows]
        return copy.deepcopy(rows)

    def insert(self, table, rows, returning=None):
        self._maybe_fail("insert", table)
        inserted = [self._new_row(table, row) for row in rows]
        self.tables[table].extend(inserted)
        return copy.deepcopy(inserted) if returning else []

    def upsert(self, table, rows, conflict_columns, ignore_duplicates=False, returning=None):
        self._maybe_fail("upsert", table)
        written = []
        for row in rows:
            key = tuple(row.get(c) for c in conflict_columns)
            existing = next(
                (r for r in self.tables[table] if tuple(r.get(c) for c in conflict_columns) == key),
                None,
            )
            if existing is None:
                stored = self._new_row(table, row)
                self.tables[table].append(stored)
                written.append(stored)
            elif not ignore_duplicates:
                existing.update(copy.deepcopy({k: v for k, v in row.items() if k not in conflict_columns}))
                written.append(existing)
        return copy.deepcopy(written) if returning else []

    def update(self, table, values, filters, returning=("*",)):
        self._maybe_fail("update", table)
        if not values:
            raise ValueError("update requires at least one value")
        updated = []
        for row in self.tables[table]:
            if matches(row, filters):
                row.update(copy.deepcopy(values))
                updated.append(row)
        return copy.deepcopy(updated) if returning else []

    def delete(self, table, filters):
        self._maybe_fail("delete", table)
        if not filters:
            raise ValueError("delete requires filters")
        before = len(self.tables[table])
        self.tables[table] = [r for r in self.tables[table] if not matches(r, filters)]
        return before - len(self.tables[table])

    def get_columns(self, table):
        if table in self.columns:
            return list(self.columns[table])
        seen = []
        for row in self.tables[table]:
            seen.extend(c for c in row if c not in seen)
        return seen

    def add_columns(self, table, columns):
        existing = set(self.get_columns(table))
        duplicates = [c for c in columns if c in existing]
        if duplicates:
            raise DuplicateFieldError(table, duplicates)
        self.columns[table] = self.get_columns(table) + list(columns)

    def execute_script(self, script):
        self.scripts.append(script)

    def ping(self):
        if self.down:
            raise ConnectionError("database unreachable")
        return True

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# =============================================================================
# Fake Warehouse
# =============================================================================

class FakeWarehouse:
    """Returns canned rows; queued errors are raised first, one per query."""

    def __init__(self, rows=None, errors=None, query_limit=10000):
        self.config = WarehouseConfig(
            project_id="test-project",
            dataset="sqp",
            table="search_query_performance",
            location="US",
            credentials_file=None,
            query_limit=query_limit,
        )
        self.rows = rows or []
        self.errors = list(errors or [])
        self.queries = []
        self.closed = False

    @property
    def table_ref(self):
        return self.config.table_ref

    @property
    def query_limit(self):
        return self.config.query_limit

    def query(self, sql, params=None):
        self.queries.append((sql, params))
        if self.errors:
            raise self.errors.pop(0)
        return copy.deepcopy(self.rows)

    def close(self):
        self.closed = True


def make_row(
    asin="B0TEST0001",
    query="knife sharpener",
    row_date="2024-01-07",
    score=10,
    impressions=1000,
    clicks=100,
    cart_adds=20,
    purchases=10,
    **overrides,
):
    """Extracted warehouse row with sensible defaults."""
    row = {
        "date": row_date,
        "parent_asin": asin,
        "child_asin": None,
        "search_query": query,
        "search_query_score": score,
        "search_query_volume": 5000,
        "total_query_impression_count": impressions * 10,
        "asin_impression_count": impressions,
        "asin_impression_share": 0.1,
        "total_click_count": clicks * 5,
        "asin_click_count": clicks,
        "asin_click_share": 0.2,
        "total_cart_add_count": cart_adds * 4,
        "asin_cart_add_count": cart_adds,
        "asin_cart_add_share": 0.25,
        "total_purchase_count": purchases * 4,
        "asin_purchase_count": purchases,
        "asin_purchase_share": 0.25,
        "asin_median_purchase_price": 19.99,
    }
    row.update(overrides)
    return row


class Clock:
    """Settable UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sync_config():
    return SyncConfig(
        batch_size=2,
        parent_batch_size=10,
        max_retries=3,
        retry_base_delay=1.0,
        continue_on_error=False,
        lookback_days=7,
        dedupe_in_query=False,
    )
