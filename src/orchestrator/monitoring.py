"""
SQP Pipeline Monitoring
=======================

Health monitoring for the SQP sync pipeline.

Features:
    - Store connectivity check
    - Data freshness of asin_performance_data
    - Recent refresh audit failures
    - Pipeline state health (lock, recent outcomes)
    - Alert generation

Usage:
    from src.orchestrator.monitoring import PipelineMonitor

    monitor = PipelineMonitor(store, state)
    health = monitor.get_pipeline_health()
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from ..data.data_models import PARENT_TABLE, unwrap_date
from ..sync.audit_log import AuditLogger
from .state import HealthStatus, PipelineStateManager, utcnow

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    component: str
    healthy: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utcnow)


class PipelineMonitor:
    """
    Health monitoring for the SQP sync.

    Monitors:
        - Store connectivity
        - Data freshness (SQP periods are weekly)
        - Audit log failures
        - Pipeline state health
    """

    # Thresholds
    MAX_DATA_AGE_DAYS = 14
    WARN_DATA_AGE_DAYS = 8
    MAX_AUDIT_FAILURES_24H = 2

    def __init__(
        self,
        store,
        state: Optional[PipelineStateManager] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the monitor.

        Args:
            store: RelationalStore
            state: Pipeline state manager (built on the store if None)
            audit: Audit logger (built on the store if None)
            clock: Current UTC time
        """
        self.store = store
        self.state = state or PipelineStateManager(store, clock=clock)
        self.audit = audit or AuditLogger(store, clock=clock)
        self.clock = clock

    # =========================================================================
    # Health Checks
    # =========================================================================

    def get_pipeline_health(self) -> Dict[str, Any]:
        """
        Get comprehensive pipeline health status.

        Returns:
            Dictionary with health status and component details
        """
        checks = [self._check_store_connectivity()]

        # Everything else needs the store
        if checks[0].healthy:
            checks.append(self._check_data_freshness())
            checks.append(self._check_audit_failures())
            checks.append(self._check_state_health())

        all_healthy = all(c.healthy for c in checks)

        return {
            "is_healthy": all_healthy,
            "checked_at": self.clock().isoformat(),
            "components": {
                c.component: {
                    "healthy": c.healthy,
                    "message": c.message,
                    "details": c.details,
                }
                for c in checks
            },
            "alerts": self._check_alert_conditions(checks),
        }

    def _check_store_connectivity(self) -> HealthCheckResult:
        try:
            self.store.ping()
            return HealthCheckResult(
                component="database",
                healthy=True,
                message="Database connection successful",
            )
        except Exception as e:
            return HealthCheckResult(
                component="database",
                healthy=False,
                message=f"Database connection failed: {e}",
            )

    def latest_period_end(self) -> Optional[date]:
        """End date of the newest synced period, if any."""
        rows = self.store.select(PARENT_TABLE, columns=["end_date"], order_by=["-end_date"], limit=1)
        if not rows or rows[0].get("end_date") is None:
            return None
        return date.fromisoformat(unwrap_date(rows[0]["end_date"]))

    def _check_data_freshness(self) -> HealthCheckResult:
        """Check the newest synced period is recent."""
        try:
            latest = self.latest_period_end()
            if latest is None:
                return HealthCheckResult(
                    component="data_freshness",
                    healthy=False,
                    message="No synced periods found",
                )

            age_days = (self.clock().date() - latest).days
            details = {"latest_period_end": latest.isoformat(), "age_days": age_days}

            if age_days > self.MAX_DATA_AGE_DAYS:
                return HealthCheckResult(
                    component="data_freshness",
                    healthy=False,
                    message=f"Data is stale ({age_days} days old)",
                    details=details,
                )

            return HealthCheckResult(
                component="data_freshness",
                healthy=True,
                message=f"Data is fresh ({age_days} days old)",
                details=details,
            )
        except Exception as e:
            return HealthCheckResult(
                component="data_freshness",
                healthy=False,
                message=f"Failed to check data freshness: {e}",
            )

    def _check_audit_failures(self) -> HealthCheckResult:
        try:
            failures = self.audit.count_failures(hours=24)
            return HealthCheckResult(
                component="audit_log",
                healthy=failures <= self.MAX_AUDIT_FAILURES_24H,
                message=f"{failures} failed refreshes in 24h",
                details={"failures_24h": failures},
            )
        except Exception as e:
            return HealthCheckResult(
                component="audit_log",
                healthy=False,
                message=f"Failed to check audit log: {e}",
            )

    def _check_state_health(self) -> HealthCheckResult:
        try:
            health = self.state.get_health()
            return HealthCheckResult(
                component="pipeline_state",
                healthy=health["status"] != HealthStatus.UNHEALTHY.value and not health["stale_lock"],
                message=f"Pipeline is {health['status']} ({health['pipeline_status']})",
                details=health,
            )
        except Exception as e:
            return HealthCheckResult(
                component="pipeline_state",
                healthy=False,
                message=f"Failed to check pipeline state: {e}",
            )

    def _check_alert_conditions(self, checks: List[HealthCheckResult]) -> List[Dict[str, Any]]:
        """Derive alerts from the component checks."""
        alerts = []
        by_component = {c.component: c for c in checks}

        database = by_component["database"]
        if not database.healthy:
            alerts.append({"name": "database_down", "severity": "critical", "message": database.message})

        freshness = by_component.get("data_freshness")
        if freshness is not None:
            age_days = freshness.details.get("age_days")
            if not freshness.healthy:
                alerts.append({"name": "stale_data", "severity": "critical", "message": freshness.message})
            elif age_days is not None and age_days > self.WARN_DATA_AGE_DAYS:
                alerts.append({"name": "aging_data", "severity": "warning", "message": freshness.message})

        audit = by_component.get("audit_log")
        if audit is not None and not audit.healthy:
            alerts.append({"name": "multiple_failures", "severity": "critical", "message": audit.message})

        state = by_component.get("pipeline_state")
        if state is not None:
            if state.details.get("stale_lock"):
                alerts.append({
                    "name": "stale_lock",
                    "severity": "warning",
                    "message": "Pipeline lock expired without release",
                })
            if state.details.get("status") == HealthStatus.DEGRADED.value:
                alerts.append({"name": "degraded", "severity": "warning", "message": state.message})
            elif not state.healthy and not state.details.get("stale_lock"):
                alerts.append({"name": "unhealthy", "severity": "critical", "message": state.message})

        return alerts

    def check_data_freshness(self) -> bool:
        """Quick check if data is fresh enough."""
        return self._check_data_freshness().healthy
