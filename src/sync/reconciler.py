"""
SQP Reconciler (Sync Engine)
============================

Keeps the relational store's parent/child tables consistent with the
warehouse extract, which has no parent table of its own.

Two-phase protocol:
    1. Parents: derive distinct (asin, date) pairs, upsert them idempotently
       on (asin, start_date, end_date), then read back their ids.
    2. Children: deduplicate rows on (date, asin, search query) keeping the
       highest search_query_score, resolve parent ids, drop rows whose parent
       did not resolve, and upsert the rest in sequential batches on
       (asin_performance_id, search_query).

Rate-limit responses from the warehouse or store are retried with
exponential backoff (base * 2^attempt). Every table gets one audit row per
run.

Usage:
    engine = SyncEngine(WarehouseClient(), RelationalStore())
    result = engine.sync(date(2024, 1, 1), date(2024, 1, 7))
"""

import logging
import threading
import time
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..data.config import SyncConfig
from ..data.data_models import (
    CHILD_CONFLICT_COLUMNS,
    CHILD_TABLE,
    PARENT_CONFLICT_COLUMNS,
    PARENT_TABLE,
    ChildRecord,
    ParentRecord,
    SyncResult,
    entity_id,
    parse_int,
    unwrap_date,
)
from ..data.errors import RateLimitError, ReconciliationError, is_rate_limit_error
from ..data.extractor import Extractor
from ..data.store import chunked
from ..data.validator import DataQualityValidator
from .audit_log import AuditLogger, utcnow
from .refresh_config import RefreshConfigRepository

logger = logging.getLogger(__name__)

PARENT_LOOKUP_CHUNK = 500


# =============================================================================
# Row Transformations
# =============================================================================

def derive_parents(rows: Sequence[Dict[str, Any]]) -> List[ParentRecord]:
    """
    Distinct parent records referenced by extract rows.

    The parent entity is the parent ASIN, falling back to the child ASIN.
    Rows missing a date or entity produce no parent. Order follows first
    appearance.
    """
    seen: Dict[Tuple[str, str], ParentRecord] = {}
    for row in rows:
        asin = entity_id(row)
        row_date = unwrap_date(row.get("date"))
        if not asin or not row_date:
            continue
        key = (asin, row_date)
        if key not in seen:
            seen[key] = ParentRecord(asin=asin, start_date=row_date, end_date=row_date)
    return list(seen.values())


def deduplicate_rows(rows: Sequence[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """
    Collapse rows colliding on (date, asin, search query).

    The row with the highest search_query_score wins; on equal scores the
    earliest row is kept. Output keeps first-appearance order of keys.

    Returns:
        (surviving rows, number of rows removed)
    """
    kept: Dict[Tuple[Any, Any, Any], Dict[str, Any]] = {}
    for row in rows:
        key = (
            unwrap_date(row.get("date")),
            entity_id(row),
            row.get("search_query") or "",
        )
        current = kept.get(key)
        if current is None:
            kept[key] = row
        elif parse_int(row.get("search_query_score")) > parse_int(current.get("search_query_score")):
            kept[key] = row
    return list(kept.values()), len(rows) - len(kept)


class SyncEngine:
    """
    Reconciles warehouse SQP rows into asin_performance_data and
    search_query_performance.

    Clients are injected; the engine holds no module-level state.
    """

    def __init__(
        self,
        warehouse,
        store,
        config: Optional[SyncConfig] = None,
        audit: Optional[AuditLogger] = None,
        refresh_config: Optional[RefreshConfigRepository] = None,
        extractor: Optional[Extractor] = None,
        validator: Optional[DataQualityValidator] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the sync engine.

        Args:
            warehouse: WarehouseClient
            store: RelationalStore
            config: Sync settings (loaded from settings if None)
            audit: Audit logger (built on the store if None)
            refresh_config: Refresh schedule repository (built on the store if None)
            extractor: Extractor (built on the warehouse with its query_limit if None)
            validator: Data quality validator
            sleep: Sleep function used between retries
            clock: Current UTC time
        """
        if config is None:
            from ..data.config import get_settings
            config = get_settings().sync
        self.config = config
        self.warehouse = warehouse
        self.store = store
        self.clock = clock
        self.audit = audit or AuditLogger(store, clock=clock)
        self.refresh_config = refresh_config or RefreshConfigRepository(store, clock=clock)
        self.extractor = extractor or Extractor(warehouse, limit=warehouse.query_limit)
        self.validator = validator or DataQualityValidator()
        self._sleep = sleep

        logger.info(
            f"SyncEngine initialized: batch_size={self.config.batch_size}, "
            f"max_retries={self.config.max_retries}, "
            f"continue_on_error={self.config.continue_on_error}"
        )

    # =========================================================================
    # Retry
    # =========================================================================

    def _with_retry(self, operation: str, func: Callable, *args, **kwargs) -> Any:
        """
        Execute func, retrying rate-limit failures with exponential backoff.

        Raises:
            RateLimitError: If the retry budget is exhausted
            Exception: Any non rate-limit failure, unchanged
        """
        max_retries = self.config.max_retries

        for attempt in range(max_retries + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not is_rate_limit_error(e):
                    raise
                if attempt >= max_retries:
                    raise RateLimitError(operation, attempt + 1) from e

                wait_time = self.config.retry_base_delay * (2 ** attempt)
                logger.warning(
                    f"Rate limit hit during {operation} "
                    f"(attempt {attempt + 1}/{max_retries + 1}), waiting {wait_time:.1f}s"
                )
                self._sleep(wait_time)

    # =========================================================================
    # Main Sync
    # =========================================================================

    def sync(
        self,
        start_date: date,
        end_date: date,
        asins: Optional[Sequence[str]] = None,
        keywords: Optional[Sequence[str]] = None,
        cancel_event: Optional[threading.Event] = None,
        advance_schedule: bool = True,
    ) -> SyncResult:
        """
        Sync one window from the warehouse into the store.

        Args:
            start_date: Window start (inclusive)
            end_date: Window end (inclusive)
            asins: Optional ASIN filter
            keywords: Optional search query filter
            cancel_event: Set to stop before the next batch
            advance_schedule: Move next_refresh_at forward after a clean run

        Returns:
            SyncResult; child batch failures are reported in result.errors

        Raises:
            ReconciliationError: Parent upsert or lookup failed
            RateLimitError: Retry budget exhausted
            ExtractionError: Non rate-limit warehouse failure
        """
        sync_id = str(uuid.uuid4())
        result = SyncResult(
            sync_id=sync_id,
            started_at=self.clock(),
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

        logger.info(f"=== Starting SQP sync {start_date} -> {end_date} (sync_id={sync_id}) ===")

        parent_audit = self.audit.start(PARENT_TABLE, sync_id=sync_id)
        child_audit = self.audit.start(CHILD_TABLE, sync_id=sync_id)
        parent_done = False

        try:
            extraction = self._with_retry(
                "extract",
                self.extractor.extract,
                start_date,
                end_date,
                asins=asins,
                keywords=keywords,
                deduplicate=self.config.dedupe_in_query,
            )
            rows = extraction.rows
            result.rows_extracted = extraction.record_count
            result.data_quality = self.validator.validate(rows)

            # Phase 1: parents
            parents = derive_parents(rows)
            parent_ids = self._sync_parents(parents, result, cancel_event)
            parent_done = True

            if result.cancelled:
                self.audit.fail(parent_audit, "Cancelled", result.parents_upserted)
                self.audit.fail(child_audit, "Cancelled before child sync")
                return result

            parent_errors = [e for e in result.errors if e["table"] == PARENT_TABLE]
            if parent_errors:
                self.audit.fail(
                    parent_audit,
                    "; ".join(e["message"] for e in parent_errors[:5]),
                    result.parents_upserted,
                )
            else:
                self.audit.complete(parent_audit, result.parents_upserted)

            # Phase 2: children
            unique_rows, removed = deduplicate_rows(rows)
            result.duplicates_removed = removed
            if removed:
                logger.info(f"Removed {removed} duplicate (date, asin, query) rows")

            children = self._build_children(unique_rows, parent_ids, result)
            self._sync_children(children, result, cancel_event)

            child_errors = [e for e in result.errors if e["table"] == CHILD_TABLE]
            if result.cancelled:
                self.audit.fail(child_audit, "Cancelled", result.children_upserted)
            elif child_errors:
                self.audit.fail(
                    child_audit,
                    "; ".join(e["message"] for e in child_errors[:5]),
                    result.children_upserted,
                )
            else:
                self.audit.complete(child_audit, result.children_upserted)

            if result.success and advance_schedule:
                self.advance_schedule()

            return result

        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            if not parent_done:
                self.audit.fail(parent_audit, message, result.parents_upserted)
            self.audit.fail(child_audit, message, result.children_upserted)
            logger.error(f"SQP sync {sync_id} failed: {message}")
            raise

        finally:
            result.completed_at = self.clock()
            logger.info(
                f"=== SQP sync complete ===\n"
                f"  Sync ID: {sync_id}\n"
                f"  Rows extracted: {result.rows_extracted}\n"
                f"  Parents: {result.parents_upserted}\n"
                f"  Children: {result.children_upserted} "
                f"(skipped {result.children_skipped}, duplicates {result.duplicates_removed})\n"
                f"  Errors: {len(result.errors)}"
            )

    # =========================================================================
    # Phase 1: Parents
    # =========================================================================

    def _sync_parents(
        self,
        parents: List[ParentRecord],
        result: SyncResult,
        cancel_event: Optional[threading.Event],
    ) -> Dict[Tuple[str, str], Any]:
        """Upsert parents in batches and return their ids keyed by (asin, start_date)."""
        if not parents:
            return {}

        logger.info(f"Upserting {len(parents)} parent records")
        batch_size = self.config.parent_batch_size

        for batch_num, batch in enumerate(chunked(parents, batch_size), start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Cancellation requested before parent batch {batch_num}")
                result.cancelled = True
                return {}

            try:
                self._with_retry(
                    f"{PARENT_TABLE} batch {batch_num}",
                    self.store.upsert,
                    PARENT_TABLE,
                    [p.to_db_dict() for p in batch],
                    conflict_columns=PARENT_CONFLICT_COLUMNS,
                    ignore_duplicates=True,
                )
                result.parents_upserted += len(batch)
            except RateLimitError:
                raise
            except Exception as e:
                result.batches_failed += 1
                result.add_error(PARENT_TABLE, type(e).__name__, str(e), batch=batch_num)
                if not self.config.continue_on_error:
                    raise ReconciliationError(
                        f"Parent upsert failed on batch {batch_num}: {e}",
                        table=PARENT_TABLE,
                    ) from e
                logger.warning(f"Parent batch {batch_num} failed, continuing: {e}")

        return self._resolve_parent_ids(parents)

    def _resolve_parent_ids(self, parents: List[ParentRecord]) -> Dict[Tuple[str, str], Any]:
        """Read back ids for the given parents."""
        asins = sorted({p.asin for p in parents})
        dates = [p.start_date for p in parents]
        wanted = {p.key for p in parents}
        parent_ids: Dict[Tuple[str, str], Any] = {}

        try:
            for asin_chunk in chunked(asins, PARENT_LOOKUP_CHUNK):
                rows = self._with_retry(
                    f"{PARENT_TABLE} lookup",
                    self.store.select,
                    PARENT_TABLE,
                    columns=["id", "asin", "start_date"],
                    filters={
                        "asin__in": asin_chunk,
                        "start_date__gte": min(dates),
                        "start_date__lte": max(dates),
                    },
                )
                for row in rows:
                    key = (row["asin"], unwrap_date(row["start_date"]))
                    if key in wanted:
                        parent_ids[key] = row["id"]
        except RateLimitError:
            raise
        except Exception as e:
            raise ReconciliationError(
                f"Parent id lookup failed: {e}", table=PARENT_TABLE
            ) from e

        logger.info(f"Resolved {len(parent_ids)}/{len(wanted)} parent ids")
        return parent_ids

    # =========================================================================
    # Phase 2: Children
    # =========================================================================

    def _build_children(
        self,
        rows: List[Dict[str, Any]],
        parent_ids: Dict[Tuple[str, str], Any],
        result: SyncResult,
    ) -> List[ChildRecord]:
        """Attach parent ids; rows without a resolvable parent are dropped."""
        children = []
        missing: Dict[Tuple[Any, Any], int] = {}

        for row in rows:
            key = (entity_id(row), unwrap_date(row.get("date")))
            parent_id = parent_ids.get(key)
            if parent_id is None:
                missing[key] = missing.get(key, 0) + 1
                continue
            children.append(ChildRecord.from_warehouse_row(row, parent_id))

        for (asin, row_date), count in missing.items():
            logger.warning(f"No parent ID found for {asin}_{row_date}; skipped {count} rows")
        result.children_skipped = sum(missing.values())
        return children

    def _sync_children(
        self,
        children: List[ChildRecord],
        result: SyncResult,
        cancel_event: Optional[threading.Event],
    ):
        """Upsert children in sequential batches."""
        if not children:
            logger.info("No child records to write")
            return

        batch_size = self.config.batch_size
        total_batches = (len(children) + batch_size - 1) // batch_size
        logger.info(f"Upserting {len(children)} child records in {total_batches} batches")

        for batch_num, batch in enumerate(chunked(children, batch_size), start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Cancellation requested before child batch {batch_num}/{total_batches}")
                result.cancelled = True
                return

            try:
                self._with_retry(
                    f"{CHILD_TABLE} batch {batch_num}",
                    self.store.upsert,
                    CHILD_TABLE,
                    [c.to_db_dict() for c in batch],
                    conflict_columns=CHILD_CONFLICT_COLUMNS,
                    ignore_duplicates=True,
                )
                result.children_upserted += len(batch)
                logger.debug(
                    f"Child batch {batch_num}/{total_batches}: "
                    f"{result.children_upserted}/{len(children)} records"
                )
            except RateLimitError:
                raise
            except Exception as e:
                result.batches_failed += 1
                result.add_error(CHILD_TABLE, type(e).__name__, str(e), batch=batch_num)
                if not self.config.continue_on_error:
                    logger.error(
                        f"Child batch {batch_num}/{total_batches} failed, "
                        f"aborting remaining batches: {e}"
                    )
                    return
                logger.warning(f"Child batch {batch_num}/{total_batches} failed, continuing: {e}")

    # =========================================================================
    # Schedule
    # =========================================================================

    def advance_schedule(self) -> List[str]:
        """
        Move next_refresh_at forward for both tables.

        Returns:
            Tables whose schedule was advanced
        """
        now = self.clock()
        advanced = []
        for table in (PARENT_TABLE, CHILD_TABLE):
            try:
                if self.refresh_config.mark_refreshed(table, now) is not None:
                    advanced.append(table)
            except Exception as e:
                logger.warning(f"Failed to advance refresh schedule for {table}: {e}")
        return advanced
