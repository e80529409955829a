"""
Keyword Performance Scorer
==========================

Deterministic 0-100 performance score per keyword.

Each component is normalized against the batch maximum:

    component = min(100, value / batch_max * 100)    (0 if batch_max is 0)

    volume      impressions                  weight 0.2
    engagement  CTR  = clicks / impressions  weight 0.3
    conversion  CVR  = purchases / clicks    weight 0.4
    efficiency  purchases / impressions      weight 0.1

Tiers: >= 80 top, >= 60 high, >= 40 medium, else low.

Usage:
    scorer = PerformanceScorer()
    for score in scorer.score_keywords(rows):
        print(score.search_query, score.performance_score, score.tier.value)
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence

from ..aggregation.keyword_aggregation import safe_divide
from ..data.data_models import parse_int


class KeywordTier(Enum):
    """Performance tier."""
    TOP = "top"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


COMPONENT_WEIGHTS = {
    "volume": 0.2,
    "engagement": 0.3,
    "conversion": 0.4,
    "efficiency": 0.1,
}

TIER_THRESHOLDS = (
    (80.0, KeywordTier.TOP),
    (60.0, KeywordTier.HIGH),
    (40.0, KeywordTier.MEDIUM),
)


def normalize(value: float, maximum: float) -> float:
    if not maximum:
        return 0.0
    return min(100.0, value / maximum * 100)


def determine_tier(score: float) -> KeywordTier:
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return KeywordTier.LOW


@dataclass
class KeywordScore:
    """Scored keyword with its component breakdown."""
    search_query: str
    performance_score: float
    tier: KeywordTier
    components: Dict[str, float] = field(default_factory=dict)
    metrics: Dict[str, float] = field(default_factory=dict)
    opportunity_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "searchQuery": self.search_query,
            "performanceScore": round(self.performance_score, 2),
            "tier": self.tier.value,
            "components": self.components,
            "metrics": self.metrics,
            "opportunityScore": round(self.opportunity_score, 2),
        }


class PerformanceScorer:
    """Scores keyword rows relative to each other."""

    def __init__(self, weights: Dict[str, float] = None):
        self.weights = dict(weights or COMPONENT_WEIGHTS)
        if abs(sum(self.weights.values()) - 1.0) > 1e-9:
            raise ValueError("Component weights must sum to 1.0")

    def score_keywords(self, rows: Sequence[Dict[str, Any]]) -> List[KeywordScore]:
        """
        Score keywords against the batch.

        Args:
            rows: Canonical keyword rows (search_query, impressions, clicks, purchases)

        Returns:
            KeywordScore per row, in input order
        """
        if not rows:
            return []

        metrics = [self._metrics(row) for row in rows]
        maxima = {
            name: max(m[name] for m in metrics)
            for name in ("impressions", "ctr", "cvr", "efficiency")
        }
        avg_ctr = sum(m["ctr"] for m in metrics) / len(metrics)
        avg_cvr = sum(m["cvr"] for m in metrics) / len(metrics)

        scores = []
        for row, m in zip(rows, metrics):
            components = {
                "volume": normalize(m["impressions"], maxima["impressions"]),
                "engagement": normalize(m["ctr"], maxima["ctr"]),
                "conversion": normalize(m["cvr"], maxima["cvr"]),
                "efficiency": normalize(m["efficiency"], maxima["efficiency"]),
            }
            score = sum(components[name] * weight for name, weight in self.weights.items())
            scores.append(KeywordScore(
                search_query=row.get("search_query") or "",
                performance_score=score,
                tier=determine_tier(score),
                components=components,
                metrics={"ctr": m["ctr"], "cvr": m["cvr"], "efficiency": m["efficiency"]},
                opportunity_score=self._opportunity_score(m, avg_ctr, avg_cvr),
            ))
        return scores

    @staticmethod
    def _metrics(row: Dict[str, Any]) -> Dict[str, float]:
        impressions = parse_int(row.get("impressions"))
        clicks = parse_int(row.get("clicks"))
        purchases = parse_int(row.get("purchases"))
        return {
            "impressions": impressions,
            "ctr": safe_divide(clicks, impressions),
            "cvr": safe_divide(purchases, clicks),
            "efficiency": safe_divide(purchases, impressions),
        }

    @staticmethod
    def _opportunity_score(m: Dict[str, float], avg_ctr: float, avg_cvr: float) -> float:
        """High volume with below-average engagement or conversion scores higher."""
        volume = min(40.0, math.log10(m["impressions"] + 1) * 10)
        ctr_gap = safe_divide(max(0.0, avg_ctr - m["ctr"]), avg_ctr)
        cvr_gap = safe_divide(max(0.0, avg_cvr - m["cvr"]), avg_cvr)
        return min(100.0, volume + ctr_gap * 30 + cvr_gap * 30)


def calculate_competitiveness(shares: Sequence[float]) -> float:
    """
    Competitiveness from fractional market shares: 1 - HHI / 10000.

    1.0 is a perfectly fragmented market, 0.0 a monopoly.
    """
    hhi = sum((share * 100) ** 2 for share in shares)
    return 1 - hhi / 10000
