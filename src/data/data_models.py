"""
SQP Sync Data Models
====================

Dataclasses representing the core data structures moving between the
warehouse extract and the relational store.

Models:
    - ParentRecord: One row per (asin, period) in asin_performance_data
    - ChildRecord: One row per (parent, search query) in search_query_performance
    - ExtractionResult: Rows plus metadata returned by the Extractor
    - DataQualityIssue / DataQualityReport: Non-fatal validation findings
    - SyncResult: Outcome of a reconciliation run
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


# Store tables
PARENT_TABLE = "asin_performance_data"
CHILD_TABLE = "search_query_performance"
SUMMARY_VIEW = "search_performance_summary"

PARENT_CONFLICT_COLUMNS = ("asin", "start_date", "end_date")
CHILD_CONFLICT_COLUMNS = ("asin_performance_id", "search_query")

# Warehouse column -> extract alias
WAREHOUSE_COLUMNS = {
    "Parent ASIN": "parent_asin",
    "Child ASIN": "child_asin",
    "Search Query": "search_query",
    "Search Query Score": "search_query_score",
    "Search Query Volume": "search_query_volume",
    "Total Query Impression Count": "total_query_impression_count",
    "ASIN Impression Count": "asin_impression_count",
    "ASIN Impression Share": "asin_impression_share",
    "Total Click Count": "total_click_count",
    "ASIN Click Count": "asin_click_count",
    "ASIN Click Share": "asin_click_share",
    "Total Cart Add Count": "total_cart_add_count",
    "ASIN Cart Add Count": "asin_cart_add_count",
    "ASIN Cart Add Share": "asin_cart_add_share",
    "Total Purchase Count": "total_purchase_count",
    "ASIN Purchase Count": "asin_purchase_count",
    "ASIN Purchase Share": "asin_purchase_share",
    "ASIN Median Purchase Price Amount": "asin_median_purchase_price",
}

COUNT_FIELDS = (
    "search_query_score",
    "search_query_volume",
    "total_query_impression_count",
    "asin_impression_count",
    "total_click_count",
    "asin_click_count",
    "total_cart_add_count",
    "asin_cart_add_count",
    "total_purchase_count",
    "asin_purchase_count",
)

SHARE_FIELDS = (
    "asin_impression_share",
    "asin_click_share",
    "asin_cart_add_share",
    "asin_purchase_share",
)


class AuditStatus(Enum):
    """Refresh audit log status."""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


def unwrap_date(value: Any) -> Optional[str]:
    """
    Normalize a warehouse/store date value to YYYY-MM-DD.

    BigQuery rows may carry plain strings, date/datetime objects or
    wrapped values such as {"value": "2024-01-07"}.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        return unwrap_date(value.get("value"))
    if hasattr(value, "value") and not isinstance(value, (date, str)):
        return unwrap_date(value.value)
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    return text.split("T")[0].split(" ")[0]


def parse_int(value: Any) -> int:
    """Coerce to int, 0 on missing or unparseable input."""
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def parse_float(value: Any) -> float:
    """Coerce to float, 0.0 on missing or unparseable input."""
    if value is None or value == "":
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    # NaN
    if result != result:
        return 0.0
    return result


def entity_id(row: Dict[str, Any]) -> Optional[str]:
    """Attributed product id: parent ASIN, falling back to child ASIN."""
    return row.get("parent_asin") or row.get("child_asin") or row.get("asin")


@dataclass(frozen=True)
class ParentRecord:
    """
    Parent performance record keyed by (asin, start_date, end_date).

    Weekly warehouse rows map to a single-day period where
    start_date == end_date == the row's date.
    """
    asin: str
    start_date: str
    end_date: str

    @property
    def key(self) -> tuple:
        """Lookup key used to resolve child foreign keys."""
        return (self.asin, self.start_date)

    def to_db_dict(self) -> Dict[str, Any]:
        return {
            "asin": self.asin,
            "start_date": self.start_date,
            "end_date": self.end_date,
        }


@dataclass
class ChildRecord:
    """Search query performance row attached to a parent record."""
    asin_performance_id: Any
    search_query: str
    search_query_score: int = 0
    search_query_volume: int = 0
    total_query_impression_count: int = 0
    asin_impression_count: int = 0
    asin_impression_share: float = 0.0
    total_click_count: int = 0
    asin_click_count: int = 0
    asin_click_share: float = 0.0
    total_cart_add_count: int = 0
    asin_cart_add_count: int = 0
    asin_cart_add_share: float = 0.0
    total_purchase_count: int = 0
    asin_purchase_count: int = 0
    asin_purchase_share: float = 0.0
    asin_median_purchase_price: float = 0.0

    @classmethod
    def from_warehouse_row(cls, row: Dict[str, Any], parent_id: Any) -> "ChildRecord":
        """
        Build a child record from an extracted warehouse row.

        Args:
            row: Row keyed by extract aliases (see WAREHOUSE_COLUMNS)
            parent_id: Resolved asin_performance_data id

        Returns:
            ChildRecord with numeric fields coerced (0 when missing)
        """
        values = {name: parse_int(row.get(name)) for name in COUNT_FIELDS}
        values.update({name: parse_float(row.get(name)) for name in SHARE_FIELDS})
        return cls(
            asin_performance_id=parent_id,
            search_query=row.get("search_query") or "",
            asin_median_purchase_price=parse_float(row.get("asin_median_purchase_price")),
            **values,
        )

    def to_db_dict(self) -> Dict[str, Any]:
        return {
            "asin_performance_id": self.asin_performance_id,
            "search_query": self.search_query,
            "search_query_score": self.search_query_score,
            "search_query_volume": self.search_query_volume,
            "total_query_impression_count": self.total_query_impression_count,
            "asin_impression_count": self.asin_impression_count,
            "asin_impression_share": self.asin_impression_share,
            "total_click_count": self.total_click_count,
            "asin_click_count": self.asin_click_count,
            "asin_click_share": self.asin_click_share,
            "total_cart_add_count": self.total_cart_add_count,
            "asin_cart_add_count": self.asin_cart_add_count,
            "asin_cart_add_share": self.asin_cart_add_share,
            "total_purchase_count": self.total_purchase_count,
            "asin_purchase_count": self.asin_purchase_count,
            "asin_purchase_share": self.asin_purchase_share,
            "asin_median_purchase_price": self.asin_median_purchase_price,
        }


@dataclass
class ExtractionResult:
    """Rows extracted from the warehouse plus extraction metadata."""
    rows: List[Dict[str, Any]]
    record_count: int
    last_data_timestamp: Optional[str] = None
    execution_time_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DataQualityIssue:
    """Single validation finding."""
    row_index: int
    field: str
    severity: str  # "error" or "warning"
    message: str


@dataclass
class DataQualityReport:
    """Non-fatal validation report attached to a sync run."""
    total_rows: int = 0
    issues: List[DataQualityIssue] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == "error")

    @property
    def warning_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == "warning")

    @property
    def valid_rows(self) -> int:
        """Rows without any error-level issue."""
        bad = {i.row_index for i in self.issues if i.severity == "error"}
        return self.total_rows - len(bad)

    @property
    def is_clean(self) -> bool:
        return not self.issues

    def add(self, row_index: int, field_name: str, severity: str, message: str):
        self.issues.append(DataQualityIssue(row_index, field_name, severity, message))

    def to_dict(self, max_issues: int = 20) -> Dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "valid_rows": self.valid_rows,
            "errors": self.error_count,
            "warnings": self.warning_count,
            "issues": [
                {
                    "row": i.row_index,
                    "field": i.field,
                    "severity": i.severity,
                    "message": i.message,
                }
                for i in self.issues[:max_issues]
            ],
        }


@dataclass
class SyncResult:
    """Result of a single reconciliation run."""
    sync_id: str
    started_at: datetime
    start_date: str
    end_date: str
    completed_at: Optional[datetime] = None

    rows_extracted: int = 0
    parents_upserted: int = 0
    children_upserted: int = 0
    children_skipped: int = 0
    duplicates_removed: int = 0
    batches_failed: int = 0
    cancelled: bool = False

    data_quality: Optional[DataQualityReport] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    def add_error(self, table: str, error_type: str, message: str, batch: Optional[int] = None):
        """Record a batch or table error."""
        self.errors.append({
            "table": table,
            "error_type": error_type,
            "message": message,
            "batch": batch,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def get_summary(self) -> Dict[str, Any]:
        """Get sync run summary."""
        return {
            "sync_id": self.sync_id,
            "window": {"start": self.start_date, "end": self.end_date},
            "duration_seconds": self.duration_seconds,
            "rows_extracted": self.rows_extracted,
            "parents_upserted": self.parents_upserted,
            "children_upserted": self.children_upserted,
            "children_skipped": self.children_skipped,
            "duplicates_removed": self.duplicates_removed,
            "batches_failed": self.batches_failed,
            "cancelled": self.cancelled,
            "error_count": len(self.errors),
            "data_quality": self.data_quality.to_dict() if self.data_quality else None,
        }
