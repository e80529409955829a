"""
SQP Scoring Module
==================

Downstream analytics over aggregated keyword rows.

Components:
    - TrendCalculator: Week-over-week growth, moving averages, anomalies
    - PerformanceScorer: Weighted 0-100 keyword score and tier
    - MarketShareCalculator: Purchase share and HHI concentration per keyword

Usage:
    from src.scoring import PerformanceScorer

    scores = PerformanceScorer().score_keywords(rows)
"""

from .trend_calculator import (
    TrendCalculator,
    WeeklyTrend,
    Anomaly,
    calculate_growth,
    moving_average,
    cagr,
)
from .performance_scorer import (
    PerformanceScorer,
    KeywordScore,
    KeywordTier,
    calculate_competitiveness,
    determine_tier,
)
from .market_share import (
    MarketShareCalculator,
    KeywordConcentration,
    herfindahl_index,
    competitiveness_bucket,
)

__all__ = [
    # Trends
    "TrendCalculator",
    "WeeklyTrend",
    "Anomaly",
    "calculate_growth",
    "moving_average",
    "cagr",
    # Performance
    "PerformanceScorer",
    "KeywordScore",
    "KeywordTier",
    "calculate_competitiveness",
    "determine_tier",
    # Market share
    "MarketShareCalculator",
    "KeywordConcentration",
    "herfindahl_index",
    "competitiveness_bucket",
]
