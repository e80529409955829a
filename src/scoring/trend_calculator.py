"""
SQP Trend Calculator
====================

Week-over-week growth, moving averages, anomaly detection and trend
pattern classification over keyword performance series.

All growth values are percentages; a missing or zero previous value
yields 0 growth.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..aggregation.keyword_aggregation import safe_divide
from ..data.data_models import parse_int

TREND_METRICS = ("impressions", "clicks", "cart_adds", "purchases")

VOLATILITY_THRESHOLD = 0.5
PATTERN_CHANGE_THRESHOLD = 20.0
MIN_PATTERN_POINTS = 4

# Recent weeks weigh more
FORECAST_WEIGHTS = (0.1, 0.2, 0.3, 0.4)


def calculate_growth(current: Optional[float], previous: Optional[float]) -> float:
    """(current - previous) / previous * 100, or 0 without a usable baseline."""
    if current is None or not previous:
        return 0.0
    return (current - previous) / previous * 100


def moving_average(values: Sequence[float], window: int) -> List[float]:
    """
    Simple trailing moving average.

    Emits nothing until the window has filled, so the output has
    len(values) - window + 1 entries (or none).
    """
    if window <= 0:
        raise ValueError("window must be positive")
    if len(values) < window:
        return []
    averages = []
    running = sum(values[:window])
    averages.append(running / window)
    for i in range(window, len(values)):
        running += values[i] - values[i - window]
        averages.append(running / window)
    return averages


@dataclass
class SeriesStats:
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    min: float = 0.0
    max: float = 0.0


def series_stats(values: Sequence[float]) -> SeriesStats:
    """Population statistics; all zero for an empty series."""
    if not values:
        return SeriesStats()
    n = len(values)
    mean = sum(values) / n
    ordered = sorted(values)
    mid = n // 2
    median = ordered[mid] if n % 2 else (ordered[mid - 1] + ordered[mid]) / 2
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / n)
    return SeriesStats(mean=mean, median=median, std_dev=std_dev, min=ordered[0], max=ordered[-1])


@dataclass
class WeeklyTrend:
    """One period of a keyword or ASIN series with growth vs the previous period."""
    week: str
    impressions: int = 0
    clicks: int = 0
    cart_adds: int = 0
    purchases: int = 0
    unique_queries: int = 0
    growth: Dict[str, float] = field(default_factory=dict)

    @property
    def ctr(self) -> float:
        return safe_divide(self.clicks, self.impressions)

    @property
    def cvr(self) -> float:
        return safe_divide(self.purchases, self.clicks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week": self.week,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "cartAdds": self.cart_adds,
            "purchases": self.purchases,
            "uniqueQueries": self.unique_queries,
            "impressionsGrowth": self.growth.get("impressions", 0.0),
            "clicksGrowth": self.growth.get("clicks", 0.0),
            "cartAddsGrowth": self.growth.get("cart_adds", 0.0),
            "purchasesGrowth": self.growth.get("purchases", 0.0),
            "ctr": self.ctr,
            "cvr": self.cvr,
        }


@dataclass
class Anomaly:
    week: str
    metric: str
    value: float
    z_score: float
    lower: float
    upper: float
    severity: str  # "low", "medium", "high"


class TrendCalculator:
    """
    Trend analytics over canonical keyword rows.

    Rows are grouped into periods by start_date; see
    src.aggregation.transform_search_query_data for the row shape.
    """

    def weekly_trends(self, rows: List[Dict[str, Any]]) -> List[WeeklyTrend]:
        """Per-period totals, oldest first, with growth vs the prior period."""
        periods: Dict[str, WeeklyTrend] = {}
        queries: Dict[str, set] = {}

        for row in rows:
            week = row.get("start_date")
            if week is None:
                continue
            trend = periods.get(week)
            if trend is None:
                trend = WeeklyTrend(week=week)
                periods[week] = trend
                queries[week] = set()
            for metric in TREND_METRICS:
                setattr(trend, metric, getattr(trend, metric) + parse_int(row.get(metric)))
            queries[week].add(row.get("search_query"))

        ordered = [periods[w] for w in sorted(periods)]
        previous: Optional[WeeklyTrend] = None
        for trend in ordered:
            trend.unique_queries = len(queries[trend.week])
            trend.growth = {
                metric: calculate_growth(
                    getattr(trend, metric),
                    getattr(previous, metric) if previous else None,
                )
                for metric in TREND_METRICS
            }
            previous = trend
        return ordered

    def week_over_week(self, series: Sequence[Dict[str, Any]], metric: str) -> List[float]:
        """Growth of a metric for each period; the first period is 0."""
        growth = []
        previous = None
        for point in series:
            value = point.get(metric)
            growth.append(calculate_growth(value, previous))
            previous = value
        return growth

    def detect_anomalies(
        self,
        trends: List[WeeklyTrend],
        sensitivity: float = 2.0,
        metrics: Sequence[str] = ("impressions", "clicks", "purchases"),
    ) -> List[Anomaly]:
        """
        Z-score anomalies per metric.

        Severity is high above 3 standard deviations, medium above 2.5,
        low otherwise. A flat series has no anomalies.
        """
        anomalies = []
        for metric in metrics:
            values = [getattr(t, metric) for t in trends]
            stats = series_stats(values)
            if stats.std_dev == 0:
                continue
            lower = stats.mean - sensitivity * stats.std_dev
            upper = stats.mean + sensitivity * stats.std_dev
            for trend, value in zip(trends, values):
                z = abs(value - stats.mean) / stats.std_dev
                if z > sensitivity:
                    severity = "high" if z > 3 else "medium" if z > 2.5 else "low"
                    anomalies.append(Anomaly(trend.week, metric, value, z, lower, upper, severity))
        return anomalies

    def classify_trend(self, values: Sequence[float]) -> Dict[str, Any]:
        """
        Classify a series as growth, decline, stable or volatile.

        Compares the average of the second half to the first half. Series
        shorter than four points are reported stable with 0.5 confidence.
        """
        if len(values) < MIN_PATTERN_POINTS:
            return {"pattern": "stable", "confidence": 0.5, "details": {}}

        stats = series_stats(values)
        half = len(values) // 2
        first_avg = sum(values[:half]) / half
        second_avg = sum(values[half:]) / (len(values) - half)
        change_percent = calculate_growth(second_avg, first_avg)
        volatility = safe_divide(stats.std_dev, stats.mean)

        if volatility > VOLATILITY_THRESHOLD:
            pattern, confidence = "volatile", min(0.9, volatility)
        elif change_percent > PATTERN_CHANGE_THRESHOLD:
            pattern, confidence = "growth", min(0.9, change_percent / 100)
        elif change_percent < -PATTERN_CHANGE_THRESHOLD:
            pattern, confidence = "decline", min(0.9, abs(change_percent) / 100)
        else:
            pattern, confidence = "stable", max(0.0, 1 - volatility)

        return {
            "pattern": pattern,
            "confidence": confidence,
            "details": {
                "change_percent": change_percent,
                "volatility": volatility,
                "mean": stats.mean,
                "std_dev": stats.std_dev,
            },
        }

    def forecast(self, trends: List[WeeklyTrend], weeks: int = 4) -> List[Dict[str, float]]:
        """
        Weighted moving average forecast from the last four periods.

        Raises:
            ValueError: With fewer than four periods of history
        """
        if len(trends) < len(FORECAST_WEIGHTS):
            raise ValueError("Insufficient historical data for forecasting")

        recent = trends[-len(FORECAST_WEIGHTS):]
        base = {
            metric: sum(getattr(t, metric) * w for t, w in zip(recent, FORECAST_WEIGHTS))
            for metric in ("impressions", "clicks", "purchases")
        }
        return [
            dict(base, weeks_ahead=i, confidence=max(0.5, 0.9 - i * 0.1))
            for i in range(1, weeks + 1)
        ]


def cagr(start_value: float, end_value: float, periods: float) -> float:
    """Compound growth rate per period as a percentage; 0 when undefined."""
    if start_value <= 0 or end_value < 0 or periods <= 0:
        return 0.0
    return ((end_value / start_value) ** (1 / periods) - 1) * 100
