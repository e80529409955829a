"""
SQP Data Quality Validation
===========================

Per-record checks on extracted warehouse rows. Findings are collected into
a DataQualityReport; validation never aborts a sync.

Checks:
    - required fields (date, asin, search query)
    - negative counts
    - funnel order: impressions >= clicks >= cart adds, clicks >= purchases
    - shares within [0, 1]
    - search query length (warning)
"""

import logging
from typing import Any, Dict, List

from .data_models import (
    COUNT_FIELDS,
    SHARE_FIELDS,
    DataQualityReport,
    entity_id,
    parse_float,
    parse_int,
    unwrap_date,
)

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2

# (larger stage, smaller stage)
FUNNEL_PAIRS = (
    ("asin_impression_count", "asin_click_count"),
    ("asin_click_count", "asin_cart_add_count"),
    ("asin_click_count", "asin_purchase_count"),
)


class DataQualityValidator:
    """Validates extracted SQP rows."""

    def __init__(self, min_query_length: int = MIN_QUERY_LENGTH):
        self.min_query_length = min_query_length

    def validate(self, rows: List[Dict[str, Any]]) -> DataQualityReport:
        report = DataQualityReport(total_rows=len(rows))

        for index, row in enumerate(rows):
            self._check_required(index, row, report)
            self._check_counts(index, row, report)
            self._check_shares(index, row, report)

        if report.issues:
            logger.warning(
                f"Data quality: {report.error_count} errors, "
                f"{report.warning_count} warnings in {report.total_rows} rows"
            )
        return report

    def _check_required(self, index: int, row: Dict[str, Any], report: DataQualityReport):
        if not unwrap_date(row.get("date")):
            report.add(index, "date", "error", "Missing date")
        if not entity_id(row):
            report.add(index, "asin", "error", "Missing parent and child ASIN")

        query = (row.get("search_query") or "").strip()
        if not query:
            report.add(index, "search_query", "error", "Missing search query")
        elif len(query) < self.min_query_length:
            report.add(
                index, "search_query", "warning",
                f"Search query shorter than {self.min_query_length} characters",
            )

    def _check_counts(self, index: int, row: Dict[str, Any], report: DataQualityReport):
        for name in COUNT_FIELDS:
            if parse_int(row.get(name)) < 0:
                report.add(index, name, "error", f"Negative value: {row.get(name)}")

        for larger, smaller in FUNNEL_PAIRS:
            if parse_int(row.get(smaller)) > parse_int(row.get(larger)):
                report.add(
                    index, smaller, "error",
                    f"{smaller} ({row.get(smaller)}) exceeds {larger} ({row.get(larger)})",
                )

    def _check_shares(self, index: int, row: Dict[str, Any], report: DataQualityReport):
        for name in SHARE_FIELDS:
            value = parse_float(row.get(name))
            if value < 0 or value > 1:
                report.add(index, name, "error", f"Share outside [0, 1]: {value}")
