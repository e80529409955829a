"""
Keyword Aggregation Engine
==========================

Collapses multi-period search query rows into one summary row per keyword
when the requested date range spans more than a week.

Rules:
    - Aggregate only when (end - start) in days > 7. Exactly 7 days passes
      rows through unchanged.
    - Volumes (impressions, clicks, cart adds, purchases) are summed.
    - Rates are recomputed from the summed volumes, never averaged:
        ctr = clicks / impressions
        cvr = purchases / clicks
        cart_add_rate = cart_adds / clicks
        purchase_rate = purchases / cart_adds
    - Shares are weighted by the volume of the same funnel stage:
        impression_share = sum(share_i * impressions_i) / sum(impressions_i)
    - Any zero denominator yields 0.
    - Output is sorted by impressions descending; ties keep input order.

Usage:
    from src.aggregation import build_keyword_rows, to_api_rows

    rows = transform_search_query_data(view_rows)
    top_queries = to_api_rows(build_keyword_rows(rows, "2024-01-01", "2024-01-14"))
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from ..data.data_models import SUMMARY_VIEW, parse_float, parse_int

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]

AGGREGATION_THRESHOLD_DAYS = 7

VOLUME_FIELDS = ("impressions", "clicks", "cart_adds", "purchases")

RATE_FIELDS = ("click_through_rate", "conversion_rate", "cart_add_rate", "purchase_rate")

# share field -> volume it is weighted by
SHARE_WEIGHTS = {
    "impression_share": "impressions",
    "click_share": "clicks",
    "cart_add_share": "cart_adds",
    "purchase_share": "purchases",
}


def to_date(value: DateLike) -> date:
    """Parse a date, datetime or ISO string into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).split("T")[0])


def days_between(start: DateLike, end: DateLike) -> int:
    return (to_date(end) - to_date(start)).days


def should_aggregate(start: DateLike, end: DateLike) -> bool:
    """True when the range spans more than a week."""
    return days_between(start, end) > AGGREGATION_THRESHOLD_DAYS


def safe_divide(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


def transform_search_query_data(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Normalize summary-view rows into canonical keyword rows.

    Missing or null metrics become 0; dates become YYYY-MM-DD strings.
    """
    transformed = []
    for row in rows:
        item = {
            "search_query": row.get("search_query") or "",
            "start_date": _date_str(row.get("start_date")),
            "end_date": _date_str(row.get("end_date")),
        }
        for name in VOLUME_FIELDS:
            item[name] = parse_int(row.get(name))
        for name in RATE_FIELDS:
            item[name] = parse_float(row.get(name))
        for name in SHARE_WEIGHTS:
            item[name] = parse_float(row.get(name))
        transformed.append(item)
    return transformed


def _date_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return to_date(value).isoformat()
    return str(value).split("T")[0]


@dataclass
class AggregatedKeywordMetric:
    """Per-keyword summary across periods."""
    search_query: str
    start_date: Optional[str]
    end_date: Optional[str]
    impressions: int = 0
    clicks: int = 0
    cart_adds: int = 0
    purchases: int = 0
    click_through_rate: float = 0.0
    conversion_rate: float = 0.0
    cart_add_rate: float = 0.0
    purchase_rate: float = 0.0
    impression_share: float = 0.0
    click_share: float = 0.0
    cart_add_share: float = 0.0
    purchase_share: float = 0.0
    period_count: int = 0

    def to_row(self) -> Dict[str, Any]:
        """Canonical snake_case row, same shape as transform_search_query_data."""
        return {
            "search_query": self.search_query,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "cart_adds": self.cart_adds,
            "purchases": self.purchases,
            "click_through_rate": self.click_through_rate,
            "conversion_rate": self.conversion_rate,
            "cart_add_rate": self.cart_add_rate,
            "purchase_rate": self.purchase_rate,
            "impression_share": self.impression_share,
            "click_share": self.click_share,
            "cart_add_share": self.cart_add_share,
            "purchase_share": self.purchase_share,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Downstream API representation."""
        return to_api_row(self.to_row())


def aggregate_search_queries(rows: List[Dict[str, Any]]) -> List[AggregatedKeywordMetric]:
    """
    Roll canonical rows up to one metric per search query.

    Args:
        rows: Output of transform_search_query_data

    Returns:
        Aggregated metrics sorted by impressions descending (stable)
    """
    if not rows:
        return []

    groups: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        query = row.get("search_query") or ""
        group = groups.get(query)
        if group is None:
            group = {
                "start_date": row.get("start_date"),
                "end_date": row.get("end_date"),
                "count": 0,
                "volumes": {name: 0 for name in VOLUME_FIELDS},
                "weighted": {name: 0.0 for name in SHARE_WEIGHTS},
            }
            groups[query] = group

        group["count"] += 1
        group["start_date"] = _min_date(group["start_date"], row.get("start_date"))
        group["end_date"] = _max_date(group["end_date"], row.get("end_date"))

        for name in VOLUME_FIELDS:
            group["volumes"][name] += parse_int(row.get(name))
        for share, volume in SHARE_WEIGHTS.items():
            group["weighted"][share] += parse_float(row.get(share)) * parse_int(row.get(volume))

    metrics = []
    for query, group in groups.items():
        v = group["volumes"]
        w = group["weighted"]
        metrics.append(AggregatedKeywordMetric(
            search_query=query,
            start_date=group["start_date"],
            end_date=group["end_date"],
            impressions=v["impressions"],
            clicks=v["clicks"],
            cart_adds=v["cart_adds"],
            purchases=v["purchases"],
            click_through_rate=safe_divide(v["clicks"], v["impressions"]),
            conversion_rate=safe_divide(v["purchases"], v["clicks"]),
            cart_add_rate=safe_divide(v["cart_adds"], v["clicks"]),
            purchase_rate=safe_divide(v["purchases"], v["cart_adds"]),
            impression_share=safe_divide(w["impression_share"], v["impressions"]),
            click_share=safe_divide(w["click_share"], v["clicks"]),
            cart_add_share=safe_divide(w["cart_add_share"], v["cart_adds"]),
            purchase_share=safe_divide(w["purchase_share"], v["purchases"]),
            period_count=group["count"],
        ))

    metrics.sort(key=lambda m: m.impressions, reverse=True)
    logger.debug(f"Aggregated {len(rows)} rows into {len(metrics)} keywords")
    return metrics


def _min_date(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _max_date(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def build_keyword_rows(
    rows: List[Dict[str, Any]],
    start: DateLike,
    end: DateLike,
) -> List[Dict[str, Any]]:
    """
    Apply the aggregation decision rule.

    Returns:
        Aggregated canonical rows for ranges over 7 days, otherwise the
        input rows unchanged and in input order
    """
    if not should_aggregate(start, end):
        return rows
    return [m.to_row() for m in aggregate_search_queries(rows)]


def to_api_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Canonical row to the camelCase dashboard contract."""
    return {
        "searchQuery": row.get("search_query") or "",
        "impressions": row.get("impressions") or 0,
        "clicks": row.get("clicks") or 0,
        "cartAdds": row.get("cart_adds") or 0,
        "purchases": row.get("purchases") or 0,
        "ctr": row.get("click_through_rate") or 0,
        "cvr": row.get("conversion_rate") or 0,
        "cartAddRate": row.get("cart_add_rate") or 0,
        "purchaseRate": row.get("purchase_rate") or 0,
        "impressionShare": row.get("impression_share") or 0,
        "clickShare": row.get("click_share") or 0,
        "cartAddShare": row.get("cart_add_share") or 0,
        "purchaseShare": row.get("purchase_share") or 0,
    }


def to_api_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [to_api_row(row) for row in rows]


class KeywordPerformanceService:
    """
    Read side of the dashboard: keyword rows for an ASIN and date range,
    with an optional comparison range.
    """

    DEFAULT_LIMIT = 100

    def __init__(self, store):
        self.store = store

    def fetch_rows(self, asin: str, start: DateLike, end: DateLike) -> List[Dict[str, Any]]:
        """Canonical rows from the summary view, impressions descending."""
        raw = self.store.select(
            SUMMARY_VIEW,
            filters={
                "asin": asin,
                "start_date__gte": to_date(start),
                "end_date__lte": to_date(end),
            },
            order_by=["-impressions"],
        )
        return transform_search_query_data(raw)

    def get_keywords(
        self,
        asin: str,
        start: DateLike,
        end: DateLike,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = build_keyword_rows(self.fetch_rows(asin, start, end), start, end)
        limit = self.DEFAULT_LIMIT if limit is None else limit
        return to_api_rows(rows[:limit])

    def get_asin_keywords(
        self,
        asin: str,
        start: DateLike,
        end: DateLike,
        comparison_start: Optional[DateLike] = None,
        comparison_end: Optional[DateLike] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Build the ASIN keyword payload.

        Returns:
            {asin, dateRange, topQueries, comparisonDateRange, topQueriesComparison}
        """
        if days_between(start, end) < 0:
            raise ValueError("end must not be before start")

        payload = {
            "asin": asin,
            "dateRange": {"start": to_date(start).isoformat(), "end": to_date(end).isoformat()},
            "topQueries": self.get_keywords(asin, start, end, limit),
            "comparisonDateRange": None,
            "topQueriesComparison": None,
        }

        if comparison_start is not None and comparison_end is not None:
            payload["comparisonDateRange"] = {
                "start": to_date(comparison_start).isoformat(),
                "end": to_date(comparison_end).isoformat(),
            }
            payload["topQueriesComparison"] = self.get_keywords(
                asin, comparison_start, comparison_end, limit
            )

        return payload
