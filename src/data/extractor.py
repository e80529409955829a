"""
SQP Extractor
=============

Pulls search query performance rows for a date window from the warehouse.

The Extractor does not retry: failures surface as ExtractionError so the
caller can decide which failure classes are safe to retry.
"""

import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from .data_models import ExtractionResult, unwrap_date
from .errors import ExtractionError
from .query_builder import SQPQueryBuilder, DEFAULT_LIMIT

logger = logging.getLogger(__name__)


class Extractor:
    """Date, ASIN and keyword bounded extraction from the SQP warehouse."""

    def __init__(
        self,
        warehouse,
        query_builder: Optional[SQPQueryBuilder] = None,
        limit: Optional[int] = DEFAULT_LIMIT,
    ):
        """
        Initialize the extractor.

        Args:
            warehouse: WarehouseClient (anything with query(sql, params) and table_ref)
            query_builder: Builder for the warehouse table
            limit: Row cap per extraction
        """
        self.warehouse = warehouse
        self.query_builder = query_builder or SQPQueryBuilder(warehouse.table_ref)
        self.limit = limit

    def extract(
        self,
        start_date: date,
        end_date: date,
        asins: Optional[Sequence[str]] = None,
        keywords: Optional[Sequence[str]] = None,
        deduplicate: bool = False,
    ) -> ExtractionResult:
        """
        Extract rows for a window.

        Args:
            start_date: Window start (inclusive)
            end_date: Window end (inclusive)
            asins: Optional ASIN filter
            keywords: Optional search query filter
            deduplicate: Deduplicate inside the warehouse query

        Returns:
            ExtractionResult with rows, record_count and last_data_timestamp

        Raises:
            ExtractionError: On query or network failure
        """
        sql, params = self.query_builder.build(
            start_date,
            end_date,
            asins=asins,
            keywords=keywords,
            limit=self.limit,
            deduplicate=deduplicate,
        )

        logger.info(
            f"Extracting SQP rows {start_date} -> {end_date}"
            f"{f' for {len(asins)} ASINs' if asins else ''}"
            f"{f' and {len(keywords)} keywords' if keywords else ''}"
        )

        started = time.monotonic()
        try:
            raw_rows = self.warehouse.query(sql, params)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"Extraction failed: {e}") from e
        elapsed_ms = (time.monotonic() - started) * 1000

        rows = [self._normalize(row) for row in raw_rows]
        dates = [row["date"] for row in rows if row.get("date")]

        if self.limit is not None and len(rows) >= self.limit:
            logger.warning(f"Extraction hit row limit ({self.limit}); window may be truncated")

        logger.info(f"Extracted {len(rows)} rows in {elapsed_ms:.0f}ms")

        return ExtractionResult(
            rows=rows,
            record_count=len(rows),
            last_data_timestamp=max(dates) if dates else None,
            execution_time_ms=elapsed_ms,
            metadata={
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "asins": list(asins) if asins else None,
                "keywords": list(keywords) if keywords else None,
                "limit": self.limit,
                "truncated": self.limit is not None and len(rows) >= self.limit,
            },
        )

    def get_latest_date(self) -> Optional[str]:
        """Most recent date available in the warehouse."""
        sql, params = self.query_builder.build_latest_date()
        rows = self.warehouse.query(sql, params)
        if not rows:
            return None
        return unwrap_date(rows[0].get("latest_date"))

    @staticmethod
    def _normalize(row: Dict[str, Any]) -> Dict[str, Any]:
        """Unwrap the date column to YYYY-MM-DD."""
        normalized = dict(row)
        normalized["date"] = unwrap_date(row.get("date"))
        return normalized
