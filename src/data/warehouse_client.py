"""
BigQuery Warehouse Client
=========================

Thin wrapper over google.cloud.bigquery.Client that binds named query
parameters and returns rows as plain dicts.

The underlying client is injected or created lazily from WarehouseConfig;
there is no module-level client cache.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import bigquery

from .config import WarehouseConfig
from .errors import ExtractionError, is_rate_limit_error
from .query_builder import parameter_types

logger = logging.getLogger(__name__)


def build_query_parameters(params: Dict[str, Any]) -> List[Any]:
    """Convert a name -> value mapping to BigQuery query parameters."""
    query_params = []
    for name, type_name, value in parameter_types(params):
        if type_name.startswith("ARRAY:"):
            query_params.append(
                bigquery.ArrayQueryParameter(name, type_name.split(":", 1)[1], value)
            )
        else:
            query_params.append(bigquery.ScalarQueryParameter(name, type_name, value))
    return query_params


class WarehouseClient:
    """
    Query interface to the SQP warehouse.

    Tracks simple query statistics for health reporting.
    """

    def __init__(
        self,
        config: Optional[WarehouseConfig] = None,
        client: Optional[bigquery.Client] = None,
    ):
        """
        Initialize the warehouse client.

        Args:
            config: Warehouse configuration (loaded from settings if None)
            client: Pre-built bigquery.Client (created lazily if None)
        """
        if config is None:
            from .config import get_settings
            config = get_settings().warehouse
        self.config = config
        self._client = client

        self._stats = {
            "queries": 0,
            "rows_returned": 0,
            "errors": 0,
            "bytes_processed": 0,
        }

    @property
    def client(self) -> bigquery.Client:
        """Lazy-initialize the BigQuery client."""
        if self._client is None:
            if self.config.credentials_file:
                self._client = bigquery.Client.from_service_account_json(
                    self.config.credentials_file,
                    project=self.config.project_id,
                    location=self.config.location,
                )
            else:
                self._client = bigquery.Client(
                    project=self.config.project_id,
                    location=self.config.location,
                )
            logger.info(f"BigQuery client created for project {self.config.project_id}")
        return self._client

    @property
    def table_ref(self) -> str:
        return self.config.table_ref

    @property
    def query_limit(self) -> int:
        return self.config.query_limit

    def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a parameterized query.

        Args:
            sql: Query text using @name placeholders
            params: Parameter values keyed by name

        Returns:
            Rows as dicts in result order

        Raises:
            ExtractionError: On any query or transport failure
        """
        job_config = bigquery.QueryJobConfig(
            query_parameters=build_query_parameters(params or {})
        )
        started = time.monotonic()
        self._stats["queries"] += 1

        try:
            job = self.client.query(sql, job_config=job_config)
            rows = [dict(row.items()) for row in job.result()]
        except google_exceptions.TooManyRequests as e:
            self._stats["errors"] += 1
            raise ExtractionError(f"BigQuery rate limit: {e}", rate_limited=True) from e
        except Exception as e:
            self._stats["errors"] += 1
            raise ExtractionError(
                f"BigQuery query failed: {e}",
                rate_limited=is_rate_limit_error(e),
            ) from e

        self._stats["rows_returned"] += len(rows)
        self._stats["bytes_processed"] += getattr(job, "total_bytes_processed", None) or 0

        logger.debug(
            f"BigQuery returned {len(rows)} rows in {time.monotonic() - started:.2f}s"
        )
        return rows

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None
