"""
SQP Query Builder
=================

Builds parameterized BigQuery SQL for the search query performance extract.

Values never enter the SQL text: dates, ASIN lists and keyword lists are
returned as named parameters (@start_date, @end_date, @asins, @keywords)
that the warehouse client binds as query parameters.

Usage:
    builder = SQPQueryBuilder("my-project.sqp_dataset.sqp_weekly")
    sql, params = builder.build(date(2024, 1, 1), date(2024, 1, 7), asins=["B0TEST"])
"""

import re
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .data_models import WAREHOUSE_COLUMNS

DEFAULT_LIMIT = 10000

_TABLE_REF_RE = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+){1,2}$")

ENTITY_EXPR = "COALESCE(`Parent ASIN`, `Child ASIN`)"
DATE_EXPR = "DATE(`Date`)"


class SQPQueryBuilder:
    """Parameterized query builder for the SQP warehouse table."""

    def __init__(self, table_ref: str):
        if not _TABLE_REF_RE.match(table_ref):
            raise ValueError(f"Invalid table reference: {table_ref!r}")
        self.table_ref = table_ref

    def _select_list(self) -> str:
        columns = [f"  {DATE_EXPR} AS date"]
        columns.extend(
            f"  `{source}` AS {alias}" for source, alias in WAREHOUSE_COLUMNS.items()
        )
        return ",\n".join(columns)

    def _where(
        self,
        asins: Optional[Sequence[str]],
        keywords: Optional[Sequence[str]],
    ) -> str:
        clauses = [f"{DATE_EXPR} BETWEEN @start_date AND @end_date"]
        if asins:
            clauses.append(f"{ENTITY_EXPR} IN UNNEST(@asins)")
        if keywords:
            clauses.append("`Search Query` IN UNNEST(@keywords)")
        return "WHERE " + "\n  AND ".join(clauses)

    def build(
        self,
        start_date: date,
        end_date: date,
        asins: Optional[Sequence[str]] = None,
        keywords: Optional[Sequence[str]] = None,
        limit: Optional[int] = DEFAULT_LIMIT,
        deduplicate: bool = False,
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Build the extraction query.

        Args:
            start_date: First date of the window (inclusive)
            end_date: Last date of the window (inclusive)
            asins: Restrict to these parent/child ASINs
            keywords: Restrict to these search queries
            limit: Row cap (None for no cap)
            deduplicate: Keep only the highest-scored row per
                (date, asin, search query) inside the warehouse

        Returns:
            (sql, parameters)
        """
        if end_date < start_date:
            raise ValueError("end_date must not be before start_date")

        params: Dict[str, Any] = {"start_date": start_date, "end_date": end_date}
        if asins:
            params["asins"] = list(asins)
        if keywords:
            params["keywords"] = list(keywords)

        where = self._where(asins, keywords)

        if deduplicate:
            sql = (
                "SELECT * EXCEPT(row_num) FROM (\n"
                f"SELECT\n{self._select_list()},\n"
                f"  ROW_NUMBER() OVER (\n"
                f"    PARTITION BY {DATE_EXPR}, {ENTITY_EXPR}, `Search Query`\n"
                f"    ORDER BY `Search Query Score` DESC\n"
                f"  ) AS row_num\n"
                f"FROM `{self.table_ref}`\n"
                f"{where}\n"
                ")\nWHERE row_num = 1\n"
                "ORDER BY date, parent_asin, search_query"
            )
        else:
            sql = (
                f"SELECT\n{self._select_list()}\n"
                f"FROM `{self.table_ref}`\n"
                f"{where}\n"
                "ORDER BY date, parent_asin, search_query"
            )

        if limit is not None:
            sql += f"\nLIMIT {int(limit)}"
        return sql, params

    def build_latest_date(self) -> Tuple[str, Dict[str, Any]]:
        """Query returning the most recent date present in the table."""
        return f"SELECT MAX({DATE_EXPR}) AS latest_date FROM `{self.table_ref}`", {}


def parameter_types(params: Dict[str, Any]) -> List[Tuple[str, str, Any]]:
    """
    Map parameter values to BigQuery types.

    Returns:
        [(name, type, value)]; list values are reported with their element type
        and prefixed with 'ARRAY:'
    """
    typed = []
    for name, value in params.items():
        if isinstance(value, (list, tuple)):
            typed.append((name, "ARRAY:" + _scalar_type(value[0] if value else ""), list(value)))
        else:
            typed.append((name, _scalar_type(value), value))
    return typed


def _scalar_type(value: Any) -> str:
    if isinstance(value, bool):
        return "BOOL"
    if isinstance(value, int):
        return "INT64"
    if isinstance(value, float):
        return "FLOAT64"
    if isinstance(value, date):
        return "DATE"
    return "STRING"
