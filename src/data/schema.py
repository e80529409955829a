"""
SQP Sync Database Schema
========================

DDL for the relational store. All statements are idempotent so
ensure_schema() can run on every deployment.

Tables:
    - asin_performance_data: parent records, unique (asin, start_date, end_date)
    - search_query_performance: child records, unique (asin_performance_id, search_query)
    - refresh_audit_log: one row per table per sync run
    - refresh_config: per-table refresh schedule
    - pipeline_states / pipeline_transitions: state manager
    - pipeline_metrics: run metrics

Views:
    - search_performance_summary: per (asin, period, search query) metrics
      with rates and shares, read by the keyword service
"""

import logging

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS asin_performance_data (
    id BIGSERIAL PRIMARY KEY,
    asin VARCHAR(20) NOT NULL,
    start_date DATE NOT NULL,
    end_date DATE NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (asin, start_date, end_date)
);

CREATE INDEX IF NOT EXISTS idx_asin_performance_asin_start
    ON asin_performance_data (asin, start_date);

CREATE TABLE IF NOT EXISTS search_query_performance (
    id BIGSERIAL PRIMARY KEY,
    asin_performance_id BIGINT NOT NULL REFERENCES asin_performance_data (id) ON DELETE CASCADE,
    search_query TEXT NOT NULL,
    search_query_score INTEGER DEFAULT 0,
    search_query_volume INTEGER DEFAULT 0,
    total_query_impression_count INTEGER DEFAULT 0,
    asin_impression_count INTEGER DEFAULT 0,
    asin_impression_share NUMERIC(10, 6) DEFAULT 0,
    total_click_count INTEGER DEFAULT 0,
    asin_click_count INTEGER DEFAULT 0,
    asin_click_share NUMERIC(10, 6) DEFAULT 0,
    total_cart_add_count INTEGER DEFAULT 0,
    asin_cart_add_count INTEGER DEFAULT 0,
    asin_cart_add_share NUMERIC(10, 6) DEFAULT 0,
    total_purchase_count INTEGER DEFAULT 0,
    asin_purchase_count INTEGER DEFAULT 0,
    asin_purchase_share NUMERIC(10, 6) DEFAULT 0,
    asin_median_purchase_price NUMERIC(12, 2) DEFAULT 0,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (asin_performance_id, search_query)
);

CREATE TABLE IF NOT EXISTS refresh_audit_log (
    id BIGSERIAL PRIMARY KEY,
    table_schema TEXT NOT NULL,
    table_name TEXT NOT NULL,
    refresh_type TEXT NOT NULL DEFAULT 'sync',
    status TEXT NOT NULL CHECK (status IN ('in_progress', 'success', 'failed')),
    refresh_started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    refresh_completed_at TIMESTAMPTZ,
    rows_processed INTEGER DEFAULT 0,
    error_message TEXT,
    sync_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_refresh_audit_started
    ON refresh_audit_log (refresh_started_at);

CREATE TABLE IF NOT EXISTS refresh_config (
    id BIGSERIAL PRIMARY KEY,
    table_schema TEXT NOT NULL,
    table_name TEXT NOT NULL,
    refresh_frequency_hours INTEGER NOT NULL DEFAULT 24,
    priority INTEGER NOT NULL DEFAULT 50,
    dependencies TEXT[] DEFAULT '{}',
    is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    last_refresh_at TIMESTAMPTZ,
    next_refresh_at TIMESTAMPTZ,
    UNIQUE (table_schema, table_name)
);

CREATE TABLE IF NOT EXISTS pipeline_states (
    pipeline_id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'idle'
        CHECK (status IN ('idle', 'locked', 'running', 'completed', 'failed', 'cancelled')),
    last_run_time TIMESTAMPTZ,
    last_success_time TIMESTAMPTZ,
    current_step TEXT,
    step_data JSONB DEFAULT '{}',
    metadata JSONB DEFAULT '{}',
    lock_id TEXT,
    locked_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS pipeline_transitions (
    id BIGSERIAL PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    from_status TEXT NOT NULL,
    to_status TEXT NOT NULL,
    timestamp TIMESTAMPTZ DEFAULT NOW(),
    metadata JSONB DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_pipeline_transitions_pipeline
    ON pipeline_transitions (pipeline_id, timestamp);

CREATE TABLE IF NOT EXISTS pipeline_metrics (
    id BIGSERIAL PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    run_id TEXT UNIQUE NOT NULL,
    status TEXT NOT NULL,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ,
    duration INTEGER,
    steps JSONB DEFAULT '{}',
    total_records_processed INTEGER DEFAULT 0,
    error TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE OR REPLACE VIEW search_performance_summary AS
SELECT
    apd.asin,
    apd.start_date,
    apd.end_date,
    sqp.search_query,
    sqp.search_query_score,
    sqp.search_query_volume,
    sqp.asin_impression_count AS impressions,
    sqp.asin_click_count AS clicks,
    sqp.asin_cart_add_count AS cart_adds,
    sqp.asin_purchase_count AS purchases,
    CASE WHEN sqp.asin_impression_count > 0
        THEN sqp.asin_click_count::FLOAT / sqp.asin_impression_count ELSE 0 END AS click_through_rate,
    CASE WHEN sqp.asin_click_count > 0
        THEN sqp.asin_purchase_count::FLOAT / sqp.asin_click_count ELSE 0 END AS conversion_rate,
    CASE WHEN sqp.asin_click_count > 0
        THEN sqp.asin_cart_add_count::FLOAT / sqp.asin_click_count ELSE 0 END AS cart_add_rate,
    CASE WHEN sqp.asin_cart_add_count > 0
        THEN sqp.asin_purchase_count::FLOAT / sqp.asin_cart_add_count ELSE 0 END AS purchase_rate,
    sqp.asin_impression_share::FLOAT AS impression_share,
    sqp.asin_click_share::FLOAT AS click_share,
    sqp.asin_cart_add_share::FLOAT AS cart_add_share,
    sqp.asin_purchase_share::FLOAT AS purchase_share
FROM search_query_performance sqp
JOIN asin_performance_data apd ON apd.id = sqp.asin_performance_id;
"""

DEFAULT_REFRESH_CONFIG = """
INSERT INTO refresh_config (table_schema, table_name, priority, dependencies)
VALUES
    ('public', 'asin_performance_data', 100, '{}'),
    ('public', 'search_query_performance', 90, '{asin_performance_data}')
ON CONFLICT (table_schema, table_name) DO NOTHING;
"""


def ensure_schema(store, seed_refresh_config: bool = True):
    """
    Create tables, indexes and views if missing.

    Args:
        store: RelationalStore
        seed_refresh_config: Insert default refresh_config rows
    """
    store.execute_script(SCHEMA_SQL)
    if seed_refresh_config:
        store.execute_script(DEFAULT_REFRESH_CONFIG)
    logger.info("Database schema verified")
