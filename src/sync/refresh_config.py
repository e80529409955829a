"""
Refresh Schedule
================

Reads and advances the per-table refresh_config schedule.

A table is due when it is enabled and its next_refresh_at is unset or in
the past. Due tables are returned dependencies-first, then by priority.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .audit_log import utcnow

logger = logging.getLogger(__name__)

CONFIG_TABLE = "refresh_config"

DEFAULT_FREQUENCY_HOURS = 24


def order_by_dependencies(configs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Topologically order configs so dependencies come first.

    Among tables whose dependencies are satisfied, higher priority wins and
    ties keep input order. Dependencies outside the given set are ignored.

    Raises:
        ValueError: On a dependency cycle
    """
    by_name = {c["table_name"]: c for c in configs}
    remaining = list(configs)
    done: set = set()
    ordered = []

    while remaining:
        ready = [
            c for c in remaining
            if all(d in done or d not in by_name for d in (c.get("dependencies") or []))
        ]
        if not ready:
            cycle = ", ".join(c["table_name"] for c in remaining)
            raise ValueError(f"Dependency cycle in refresh_config: {cycle}")
        ready.sort(key=lambda c: -(c.get("priority") or 0))
        chosen = ready[0]
        ordered.append(chosen)
        done.add(chosen["table_name"])
        remaining.remove(chosen)

    return ordered


class RefreshConfigRepository:
    """Access to refresh_config rows."""

    def __init__(self, store, table_schema: str = "public", clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.table_schema = table_schema
        self.clock = clock

    def get_all(self) -> List[Dict[str, Any]]:
        return self.store.select(
            CONFIG_TABLE,
            filters={"table_schema": self.table_schema},
            order_by=["-priority", "table_name"],
        )

    def get(self, table_name: str) -> Optional[Dict[str, Any]]:
        rows = self.store.select(
            CONFIG_TABLE,
            filters={"table_schema": self.table_schema, "table_name": table_name},
            limit=1,
        )
        return rows[0] if rows else None

    def get_due_tables(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Enabled tables due for refresh, dependencies first."""
        now = now or self.clock()
        rows = self.store.select(
            CONFIG_TABLE,
            filters={
                "table_schema": self.table_schema,
                "is_enabled": True,
                "ANY_OF": [
                    {"next_refresh_at__is_null": True},
                    {"next_refresh_at__lte": now},
                ],
            },
        )
        return order_by_dependencies(rows)

    def mark_refreshed(self, table_name: str, refreshed_at: Optional[datetime] = None) -> Optional[datetime]:
        """
        Advance a table's schedule after a successful refresh.

        Returns:
            The new next_refresh_at, or None if the table has no config row
        """
        refreshed_at = refreshed_at or self.clock()
        config = self.get(table_name)
        if config is None:
            logger.debug(f"No refresh_config row for {table_name}")
            return None

        hours = config.get("refresh_frequency_hours") or DEFAULT_FREQUENCY_HOURS
        next_refresh = refreshed_at + timedelta(hours=hours)
        self.store.update(
            CONFIG_TABLE,
            {"last_refresh_at": refreshed_at, "next_refresh_at": next_refresh},
            {"table_schema": self.table_schema, "table_name": table_name},
        )
        logger.info(f"Next refresh for {table_name} at {next_refresh.isoformat()}")
        return next_refresh
