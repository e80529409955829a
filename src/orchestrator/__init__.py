"""
SQP Orchestrator Module
=======================

Orchestration layer for the SQP sync.

Components:
    - SyncPipeline: Checkpointed run of the sync steps
    - PipelineStateManager: Lock, status machine and run history
    - PipelineScheduler: Weekly scheduling and retries
    - PipelineMonitor: Health checks
    - CLI: Command-line interface

Usage:
    from src.orchestrator import SyncPipeline

    with SyncPipeline.from_settings() as pipeline:
        result = pipeline.run()
"""

from .state import (
    PipelineStateManager,
    PipelineStatus,
    HealthStatus,
    RecoveryPoint,
    VALID_TRANSITIONS,
)
from .sync_pipeline import (
    SyncPipeline,
    PipelineRunResult,
    PipelineStep,
    RunStatus,
    StepResult,
)
from .scheduler import (
    PipelineScheduler,
    SchedulerConfig,
    RunHistory,
)
from .monitoring import PipelineMonitor, HealthCheckResult

__all__ = [
    # State
    "PipelineStateManager",
    "PipelineStatus",
    "HealthStatus",
    "RecoveryPoint",
    "VALID_TRANSITIONS",
    # Pipeline
    "SyncPipeline",
    "PipelineRunResult",
    "PipelineStep",
    "RunStatus",
    "StepResult",
    # Scheduler
    "PipelineScheduler",
    "SchedulerConfig",
    "RunHistory",
    # Monitoring
    "PipelineMonitor",
    "HealthCheckResult",
]
