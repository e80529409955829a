"""
Market Share Calculator
=======================

Purchase-based market share and concentration per keyword.

    share(asin, keyword) = purchases(asin, keyword) / sum(purchases in keyword)
    HHI(keyword)         = sum((share * 100) ** 2)

Competitiveness buckets follow the HHI directly: above 2500 is 'low'
(concentrated), above 1500 'moderate', otherwise 'high'.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..data.data_models import parse_int

TOP_COMPETITORS = 5
DOMINANT_SHARE_PERCENT = 5.0
MAX_DOMINANT_PLAYERS = 10

HHI_CONCENTRATED = 2500
HHI_MODERATE = 1500


def herfindahl_index(shares: Sequence[float]) -> float:
    return sum((share * 100) ** 2 for share in shares)


def competitiveness_bucket(hhi: float) -> str:
    if hhi > HHI_CONCENTRATED:
        return "low"
    if hhi > HHI_MODERATE:
        return "moderate"
    return "high"


@dataclass
class KeywordConcentration:
    """Concentration metrics for one keyword."""
    search_query: str
    total_purchases: int
    shares: Dict[str, float]
    hhi: float
    cr3: float
    cr5: float
    competitiveness: str
    top_competitors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "searchQuery": self.search_query,
            "totalPurchases": self.total_purchases,
            "hhi": self.hhi,
            "cr3": self.cr3,
            "cr5": self.cr5,
            "competitiveness": self.competitiveness,
            "topCompetitors": self.top_competitors,
        }


class MarketShareCalculator:
    """
    Computes shares from rows with search_query, asin and purchases.

    Rows for the same (keyword, asin) are summed before shares are taken.
    """

    def _group(self, rows: Sequence[Dict[str, Any]]) -> Dict[str, Dict[str, int]]:
        by_keyword: Dict[str, Dict[str, int]] = {}
        for row in rows:
            query = row.get("search_query") or ""
            asin = row.get("asin")
            if asin is None:
                continue
            purchases = by_keyword.setdefault(query, {})
            purchases[asin] = purchases.get(asin, 0) + parse_int(row.get("purchases"))
        return by_keyword

    def keyword_concentration(self, rows: Sequence[Dict[str, Any]]) -> Dict[str, KeywordConcentration]:
        """Shares, HHI, CR3/CR5 and top competitors per keyword."""
        results = {}
        for query, purchases in self._group(rows).items():
            total = sum(purchases.values())
            shares = {
                asin: (count / total if total > 0 else 0.0)
                for asin, count in purchases.items()
            }
            ranked = sorted(shares.items(), key=lambda item: item[1], reverse=True)
            hhi = herfindahl_index(shares.values())
            results[query] = KeywordConcentration(
                search_query=query,
                total_purchases=total,
                shares=shares,
                hhi=hhi,
                cr3=sum(s for _, s in ranked[:3]) * 100,
                cr5=sum(s for _, s in ranked[:5]) * 100,
                competitiveness=competitiveness_bucket(hhi),
                top_competitors=[
                    {"asin": asin, "share": share}
                    for asin, share in ranked[:TOP_COMPETITORS]
                ],
            )
        return results

    def overall_shares(self, rows: Sequence[Dict[str, Any]]) -> Dict[str, float]:
        """Share of all purchases across keywords per ASIN."""
        totals: Dict[str, int] = {}
        for purchases in self._group(rows).values():
            for asin, count in purchases.items():
                totals[asin] = totals.get(asin, 0) + count
        grand_total = sum(totals.values())
        return {
            asin: (count / grand_total if grand_total > 0 else 0.0)
            for asin, count in totals.items()
        }

    def dominant_players(self, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """ASINs holding at least 5% of all purchases, largest first, at most 10."""
        keywords: Dict[str, set] = {}
        for query, purchases in self._group(rows).items():
            for asin in purchases:
                keywords.setdefault(asin, set()).add(query)

        players = [
            {
                "asin": asin,
                "keywords": sorted(keywords.get(asin, ())),
                "totalShare": share * 100,
            }
            for asin, share in self.overall_shares(rows).items()
            if share * 100 >= DOMINANT_SHARE_PERCENT
        ]
        players.sort(key=lambda p: p["totalShare"], reverse=True)
        return players[:MAX_DOMINANT_PLAYERS]
