"""
SQP Sync Relational Store
=========================

Table-scoped access to PostgreSQL for the sync pipeline.

Every public method runs in its own transaction. SQL is composed with
psycopg2.sql so table and column names are quoted identifiers and all
values travel as parameters.

Filters are plain dicts keyed by column name with an optional operator
suffix:

    {"asin": "B0TEST"}                 asin = 'B0TEST'
    {"start_date__gte": "2024-01-01"}  start_date >= ...
    {"asin__in": ["A", "B"]}           asin = ANY(...)
    {"status__not_in": ["locked"]}     NOT (status = ANY(...))
    {"locked_at__is_null": True}       locked_at IS NULL
    {"ANY_OF": [{...}, {...}]}         (...) OR (...)

Usage:
    from src.data.store import RelationalStore

    with RelationalStore() as store:
        store.upsert("asin_performance_data", rows,
                     conflict_columns=("asin", "start_date", "end_date"),
                     ignore_duplicates=True)
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from psycopg2 import pool, sql
from psycopg2.extras import execute_values, RealDictCursor, Json

from .errors import DatabaseError, DuplicateFieldError


logger = logging.getLogger(__name__)

ANY_OF = "ANY_OF"

_OPERATORS = {
    "eq": "=",
    "ne": "<>",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
}


def _identifier(name: str) -> sql.Identifier:
    """Quote a possibly schema-qualified name."""
    return sql.Identifier(*name.split("."))


def _adapt(value: Any) -> Any:
    """Wrap dict payloads for JSONB columns."""
    if isinstance(value, dict):
        return Json(value)
    return value


def split_filter_key(key: str) -> Tuple[str, str]:
    """Split 'column__op' into (column, op); op defaults to 'eq'."""
    if "__" in key:
        column, op = key.rsplit("__", 1)
        return column, op
    return key, "eq"


def build_where(filters: Optional[Dict[str, Any]]) -> Tuple[sql.Composable, List[Any]]:
    """
    Build a WHERE clause from a filter dict.

    Returns:
        (composed clause, params); the clause is empty when filters is empty
    """
    if not filters:
        return sql.SQL(""), []
    condition, params = _build_conditions(filters)
    return sql.SQL(" WHERE ") + condition, params


def _build_conditions(filters: Dict[str, Any]) -> Tuple[sql.Composable, List[Any]]:
    parts: List[sql.Composable] = []
    params: List[Any] = []

    for key, value in filters.items():
        if key == ANY_OF:
            branches = []
            for branch in value:
                clause, branch_params = _build_conditions(branch)
                branches.append(sql.SQL("(") + clause + sql.SQL(")"))
                params.extend(branch_params)
            parts.append(sql.SQL("(") + sql.SQL(" OR ").join(branches) + sql.SQL(")"))
            continue

        column, op = split_filter_key(key)
        ident = _identifier(column)

        if op in _OPERATORS:
            parts.append(sql.SQL("{} {} %s").format(ident, sql.SQL(_OPERATORS[op])))
            params.append(value)
        elif op == "in":
            parts.append(sql.SQL("{} = ANY(%s)").format(ident))
            params.append(list(value))
        elif op == "not_in":
            parts.append(sql.SQL("NOT ({} = ANY(%s))").format(ident))
            params.append(list(value))
        elif op == "is_null":
            template = "{} IS NULL" if value else "{} IS NOT NULL"
            parts.append(sql.SQL(template).format(ident))
        else:
            raise ValueError(f"Unsupported filter operator: {op}")

    if not parts:
        return sql.SQL("TRUE"), params
    return sql.SQL(" AND ").join(parts), params


def _build_order(order_by: Optional[Sequence[str]]) -> sql.Composable:
    if not order_by:
        return sql.SQL("")
    terms = []
    for term in order_by:
        if term.startswith("-"):
            terms.append(sql.SQL("{} DESC").format(_identifier(term[1:])))
        else:
            terms.append(sql.SQL("{} ASC").format(_identifier(term)))
    return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(terms)


def _returning(returning: Optional[Sequence[str]]) -> sql.Composable:
    if not returning:
        return sql.SQL("")
    if list(returning) == ["*"]:
        return sql.SQL(" RETURNING *")
    return sql.SQL(" RETURNING ") + sql.SQL(", ").join(_identifier(c) for c in returning)


class RelationalStore:
    """
    PostgreSQL store used by the reconciler, audit log and state manager.

    Owns its connection pool unless one is injected.
    """

    def __init__(self, db_pool: Optional[pool.ThreadedConnectionPool] = None, page_size: int = 100):
        """
        Initialize the store.

        Args:
            db_pool: Database connection pool (creates new if None)
            page_size: Rows per execute_values statement
        """
        self._db_pool = db_pool
        self._own_pool = db_pool is None
        self.page_size = page_size

    @property
    def db_pool(self) -> pool.ThreadedConnectionPool:
        """Lazy-initialize database connection pool."""
        if self._db_pool is None:
            from .config import get_settings
            db_config = get_settings().database
            self._db_pool = pool.ThreadedConnectionPool(
                minconn=db_config.pool_min_size,
                maxconn=db_config.pool_max_size,
                **db_config.connection_dict
            )
            logger.info("Database connection pool created")
        return self._db_pool

    @contextmanager
    def get_db_connection(self):
        """
        Get a database connection from the pool.

        Commits on success, rolls back and raises DatabaseError on failure.
        """
        conn = None
        try:
            conn = self.db_pool.getconn()
            yield conn
            conn.commit()
        except Exception as e:
            if conn:
                conn.rollback()
            raise DatabaseError(f"Database operation failed: {e}") from e
        finally:
            if conn:
                self.db_pool.putconn(conn)

    def close(self):
        """Clean up resources."""
        if self._own_pool and self._db_pool is not None:
            self._db_pool.closeall()
            self._db_pool = None
            logger.info("Database connection pool closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # =========================================================================
    # Table Operations
    # =========================================================================

    def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Select rows as dicts.

        Args:
            table: Table or view name
            columns: Columns to return (all when None)
            filters: Filter dict (see module docstring)
            order_by: Column names, prefix with '-' for descending
            limit: Maximum rows
            offset: Rows to skip
        """
        if columns:
            column_sql = sql.SQL(", ").join(_identifier(c) for c in columns)
        else:
            column_sql = sql.SQL("*")

        where, params = build_where(filters)
        query = sql.SQL("SELECT {} FROM {}").format(column_sql, _identifier(table))
        query = query + where + _build_order(order_by)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(limit)
        if offset:
            query = query + sql.SQL(" OFFSET %s")
            params.append(offset)

        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(r) for r in cur.fetchall()]

    def insert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        returning: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Insert rows; returns the RETURNING rows when requested."""
        if not rows:
            return []
        columns = list(rows[0].keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES %s").format(
            _identifier(table),
            sql.SQL(", ").join(_identifier(c) for c in columns),
        ) + _returning(returning)
        return self._execute_values(query, columns, rows, fetch=bool(returning))

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        conflict_columns: Sequence[str],
        ignore_duplicates: bool = False,
        returning: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Insert-or-update keyed by a unique constraint.

        Args:
            table: Target table
            rows: Row dicts sharing the same keys
            conflict_columns: Columns of the unique constraint
            ignore_duplicates: ON CONFLICT DO NOTHING instead of DO UPDATE
            returning: Columns to return for written rows

        Returns:
            RETURNING rows (rows skipped by DO NOTHING are not returned)
        """
        if not rows:
            return []
        columns = list(rows[0].keys())
        conflict_sql = sql.SQL(", ").join(_identifier(c) for c in conflict_columns)
        update_columns = [c for c in columns if c not in conflict_columns]

        if ignore_duplicates or not update_columns:
            action = sql.SQL("DO NOTHING")
        else:
            action = sql.SQL("DO UPDATE SET ") + sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(_identifier(c)) for c in update_columns
            )

        query = sql.SQL("INSERT INTO {} ({}) VALUES %s ON CONFLICT ({}) ").format(
            _identifier(table),
            sql.SQL(", ").join(_identifier(c) for c in columns),
            conflict_sql,
        ) + action + _returning(returning)
        return self._execute_values(query, columns, rows, fetch=bool(returning))

    def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Dict[str, Any],
        returning: Optional[Sequence[str]] = ("*",),
    ) -> List[Dict[str, Any]]:
        """
        Update rows matching filters in a single statement.

        Returns:
            Updated rows (the statement's RETURNING output)
        """
        if not values:
            raise ValueError("update requires at least one value")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(_identifier(c)) for c in values
        )
        params = [_adapt(v) for v in values.values()]
        where, where_params = build_where(filters)
        query = sql.SQL("UPDATE {} SET ").format(_identifier(table)) + assignments + where
        query = query + _returning(returning)

        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params + where_params)
                if returning:
                    return [dict(r) for r in cur.fetchall()]
                return []

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete rows matching filters; returns the deleted row count."""
        if not filters:
            raise ValueError("delete requires filters")
        where, params = build_where(filters)
        query = sql.SQL("DELETE FROM {}").format(_identifier(table)) + where
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount

    def _execute_values(
        self,
        query: sql.Composable,
        columns: List[str],
        rows: List[Dict[str, Any]],
        fetch: bool,
    ) -> List[Dict[str, Any]]:
        values = [tuple(_adapt(row.get(c)) for c in columns) for row in rows]
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                result = execute_values(
                    cur,
                    query.as_string(conn),
                    values,
                    page_size=self.page_size,
                    fetch=fetch,
                )
                if fetch:
                    return [dict(r) for r in result]
                return []

    # =========================================================================
    # Schema
    # =========================================================================

    def get_columns(self, table: str) -> List[str]:
        """Column names of a table in the current schema."""
        schema, _, name = table.rpartition(".")
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT column_name FROM information_schema.columns
                    WHERE table_name = %s AND table_schema = COALESCE(%s, current_schema())
                    ORDER BY ordinal_position
                    """,
                    (name, schema or None),
                )
                return [r[0] for r in cur.fetchall()]

    def add_columns(self, table: str, columns: Dict[str, str]):
        """
        Add columns to an existing table.

        Args:
            table: Target table
            columns: Column name -> SQL type (e.g. {"median_price": "NUMERIC"})

        Raises:
            DuplicateFieldError: If any column already exists
        """
        existing = set(self.get_columns(table))
        duplicates = [c for c in columns if c in existing]
        if duplicates:
            raise DuplicateFieldError(table, duplicates)

        clauses = sql.SQL(", ").join(
            sql.SQL("ADD COLUMN {} {}").format(_identifier(name), sql.SQL(col_type))
            for name, col_type in columns.items()
        )
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql.SQL("ALTER TABLE {} ").format(_identifier(table)) + clauses)
        logger.info(f"Added columns to {table}: {', '.join(columns)}")

    def execute_script(self, script: str):
        """Run a DDL script in one transaction."""
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(script)

    def ping(self) -> bool:
        """Check database connectivity."""
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return cur.fetchone()[0] == 1


def chunked(items: List[Any], size: int) -> Iterable[List[Any]]:
    """Yield consecutive slices of at most size items."""
    for i in range(0, len(items), size):
        yield items[i:i + size]
