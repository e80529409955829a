"""
Refresh Audit Log
=================

One refresh_audit_log row per table per sync run. Rows move
in_progress -> success | failed and carry the rows-processed count and,
on failure, the error text.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..data.data_models import AuditStatus

logger = logging.getLogger(__name__)

AUDIT_TABLE = "refresh_audit_log"

MAX_ERROR_LENGTH = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogger:
    """Writes refresh audit entries through the relational store."""

    def __init__(
        self,
        store,
        table_schema: str = "public",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.table_schema = table_schema
        self.clock = clock

    def start(self, table_name: str, sync_id: Optional[str] = None, refresh_type: str = "sync") -> Any:
        """
        Open an audit entry for a table.

        Returns:
            Audit row id
        """
        rows = self.store.insert(
            AUDIT_TABLE,
            [{
                "table_schema": self.table_schema,
                "table_name": table_name,
                "refresh_type": refresh_type,
                "status": AuditStatus.IN_PROGRESS.value,
                "refresh_started_at": self.clock(),
                "rows_processed": 0,
                "sync_id": sync_id,
            }],
            returning=["id"],
        )
        audit_id = rows[0]["id"]
        logger.debug(f"Audit entry {audit_id} opened for {table_name}")
        return audit_id

    def complete(self, audit_id: Any, rows_processed: int):
        """Mark an entry successful."""
        self.store.update(
            AUDIT_TABLE,
            {
                "status": AuditStatus.SUCCESS.value,
                "refresh_completed_at": self.clock(),
                "rows_processed": rows_processed,
            },
            {"id": audit_id},
        )

    def fail(self, audit_id: Any, error_message: str, rows_processed: int = 0):
        """Mark an entry failed with its error text."""
        self.store.update(
            AUDIT_TABLE,
            {
                "status": AuditStatus.FAILED.value,
                "refresh_completed_at": self.clock(),
                "rows_processed": rows_processed,
                "error_message": error_message[:MAX_ERROR_LENGTH],
            },
            {"id": audit_id},
        )
        logger.warning(f"Audit entry {audit_id} marked failed: {error_message}")

    def get_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent audit entries, newest first."""
        return self.store.select(
            AUDIT_TABLE,
            order_by=["-refresh_started_at"],
            limit=limit,
        )

    def count_failures(self, hours: int = 24) -> int:
        """Failed entries within the last N hours."""
        cutoff = self.clock() - timedelta(hours=hours)
        rows = self.store.select(
            AUDIT_TABLE,
            columns=["id"],
            filters={
                "status": AuditStatus.FAILED.value,
                "refresh_started_at__gte": cutoff,
            },
        )
        return len(rows)
