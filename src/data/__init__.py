"""
SQP Sync Data Module
====================

Warehouse extraction, validation and relational storage for Amazon search
query performance data.

This module provides:
    - WarehouseClient / Extractor: Parameterized BigQuery extraction
    - DataQualityValidator: Non-fatal per-record checks
    - RelationalStore: PostgreSQL table access with idempotent upserts
    - Data models: ParentRecord, ChildRecord, ExtractionResult, SyncResult

Quick Start:
    from src.data import Extractor, WarehouseClient
    from datetime import date

    extractor = Extractor(WarehouseClient())
    result = extractor.extract(date(2024, 1, 1), date(2024, 1, 7))
    print(f"Extracted {result.record_count} rows")

Required Environment Variables:
    BIGQUERY_PROJECT_ID: Google Cloud project
    DATABASE_PASSWORD: PostgreSQL password
"""

from .config import settings, get_settings, Settings
from .data_models import (
    ParentRecord,
    ChildRecord,
    ExtractionResult,
    DataQualityIssue,
    DataQualityReport,
    SyncResult,
    AuditStatus,
)
from .errors import (
    SQPSyncError,
    ExtractionError,
    ReconciliationError,
    RateLimitError,
    DuplicateFieldError,
    InvalidTransitionError,
    LockContention,
    DatabaseError,
)
from .extractor import Extractor
from .query_builder import SQPQueryBuilder
from .validator import DataQualityValidator
from .store import RelationalStore
from .warehouse_client import WarehouseClient

__version__ = "1.0.0"

__all__ = [
    # Configuration
    "settings",
    "get_settings",
    "Settings",
    # Data models
    "ParentRecord",
    "ChildRecord",
    "ExtractionResult",
    "DataQualityIssue",
    "DataQualityReport",
    "SyncResult",
    "AuditStatus",
    # Errors
    "SQPSyncError",
    "ExtractionError",
    "ReconciliationError",
    "RateLimitError",
    "DuplicateFieldError",
    "InvalidTransitionError",
    "LockContention",
    "DatabaseError",
    # Extraction
    "Extractor",
    "SQPQueryBuilder",
    "DataQualityValidator",
    "WarehouseClient",
    # Storage
    "RelationalStore",
]
