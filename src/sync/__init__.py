"""
SQP Sync Module
===============

Reconciliation of warehouse rows into the relational store.

Components:
    - SyncEngine: Two-phase parent/child upsert with dedup, batching and retry
    - AuditLogger: Per-table refresh_audit_log entries
    - RefreshConfigRepository: Per-table refresh schedule

Usage:
    from src.sync import SyncEngine

    engine = SyncEngine(warehouse, store)
    result = engine.sync(start_date, end_date)
"""

from .audit_log import AuditLogger
from .refresh_config import RefreshConfigRepository, order_by_dependencies
from .reconciler import SyncEngine, derive_parents, deduplicate_rows

__all__ = [
    "SyncEngine",
    "derive_parents",
    "deduplicate_rows",
    "AuditLogger",
    "RefreshConfigRepository",
    "order_by_dependencies",
]
