"""
SQP Aggregation Module
======================

Per-keyword rollups of search query performance for dashboard consumption.

Usage:
    from src.aggregation import KeywordPerformanceService

    service = KeywordPerformanceService(store)
    payload = service.get_asin_keywords("B0TEST", "2024-01-01", "2024-01-14")
"""

from .keyword_aggregation import (
    AggregatedKeywordMetric,
    KeywordPerformanceService,
    aggregate_search_queries,
    build_keyword_rows,
    days_between,
    safe_divide,
    should_aggregate,
    to_api_rows,
    transform_search_query_data,
)

__all__ = [
    "AggregatedKeywordMetric",
    "KeywordPerformanceService",
    "aggregate_search_queries",
    "build_keyword_rows",
    "days_between",
    "safe_divide",
    "should_aggregate",
    "to_api_rows",
    "transform_search_query_data",
]
