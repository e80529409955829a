"""
SQP Sync Logging
================

Log setup for the CLI, the scheduler and pipeline runs.

Two output formats share the same context fields:
- SyncTextFormatter: one readable line, suffixed with [pipeline/run] while
  a run is bound
- JSONFormatter: one JSON object per line for log aggregation

A pipeline run binds its ids with bind_run_context(); every handler on the
root logger then stamps run_id and pipeline_id onto records from any
module (reconciler, store, state) until the context is released.

Unset arguments to setup_logging() fall back to LOG_LEVEL, LOG_JSON and
LOG_FILE.

Usage:
    from src.orchestrator.logging_config import bind_run_context, setup_logging

    setup_logging()
    context = bind_run_context(run_id, pipeline_id="bigquery_sync")
    try:
        logger.info("Batch upserted", extra={"table": "search_query_performance", "batch": 3})
    finally:
        context.release()
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from ..data.config import LoggingConfig

# Record attributes copied into JSON output when set
CONTEXT_FIELDS = ("pipeline_id", "run_id")
EXTRA_FIELDS = CONTEXT_FIELDS + ("sync_id", "step", "table", "batch", "rows", "duration")

TEXT_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)-30s | %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request at INFO
QUIET_LOGGERS = {
    "google": logging.WARNING,
    "google.auth": logging.WARNING,
    "urllib3": logging.WARNING,
    "apscheduler": logging.WARNING,
}


class RunContextFilter(logging.Filter):
    """Stamps the bound pipeline run ids onto every record it sees."""

    def __init__(self, run_id: str, pipeline_id: Optional[str] = None):
        super().__init__()
        self.context: Dict[str, str] = {"run_id": run_id}
        if pipeline_id:
            self.context["pipeline_id"] = pipeline_id

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            # explicit extra= values win
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class RunContext:
    """Handle returned by bind_run_context(); release() detaches the filter."""

    def __init__(self, run_filter: RunContextFilter, handlers):
        self.filter = run_filter
        self.handlers = list(handlers)

    def release(self):
        for handler in self.handlers:
            handler.removeFilter(self.filter)
        self.handlers = []


def bind_run_context(run_id: str, pipeline_id: Optional[str] = None) -> RunContext:
    """
    Attach run ids to all records emitted through the root handlers.

    Records propagated from child loggers skip root logger filters, so the
    filter goes on each handler.
    """
    run_filter = RunContextFilter(run_id, pipeline_id)
    handlers = logging.getLogger().handlers
    for handler in handlers:
        handler.addFilter(run_filter)
    return RunContext(run_filter, handlers)


class SyncTextFormatter(logging.Formatter):
    """Readable single-line format with the run context appended."""

    def __init__(self):
        super().__init__(TEXT_FORMAT, datefmt=TEXT_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        run_id = getattr(record, "run_id", None)
        if run_id is None:
            return line
        pipeline_id = getattr(record, "pipeline_id", None)
        tag = f"{pipeline_id}/{run_id[:8]}" if pipeline_id else run_id[:8]
        first, newline, rest = line.partition("\n")
        return f"{first} [{tag}]{newline}{rest}"


class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Output format:
        {"ts": "2025-...", "level": "INFO", "logger": "src.sync.reconciler",
         "msg": "...", "run_id": "...", "table": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
):
    """
    Configure root logging for a CLI or scheduler process.

    Args:
        level: Root log level (LOG_LEVEL if None)
        json_output: JSON lines instead of text (LOG_JSON if None)
        log_file: Rotating log file path (LOG_FILE if None)
        max_bytes: Max file size before rotation
        backup_count: Number of rotated files to keep
    """
    defaults = LoggingConfig()
    level = level or defaults.level
    json_output = defaults.json_logs if json_output is None else json_output
    log_file = log_file or defaults.log_file

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    formatter = JSONFormatter() if json_output else SyncTextFormatter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name, lib_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(lib_level)

    root.info(
        "Logging configured: level=%s json=%s file=%s",
        level, json_output, log_file or "none",
    )
