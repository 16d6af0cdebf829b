"""
Opportunity Scoring Agent
--------------------------
Scores every sufficiently large cluster from five factors:

  Score = 2 * complaint_count
        + 1 * days_active
        + 0.5 * growth_percentage
        + 5 * workaround_count
        + 3 * platform_count

rounded half-up and clamped to [0, 100]. Clusters scoring at or above
`min_score_threshold` get an Opportunity (created once, refreshed after).
Clusters that later fall below the threshold are skipped, never deleted.

Input:  RuntimeSettings
Output: ScoringStats
"""

import math
import re
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from agents.base import Agent
from config.settings import settings
from db.models import utcnow
from models.schemas import ItemError, ScoringFactors, ScoringResult, ScoringStats

logger = logging.getLogger(__name__)

WORKAROUND_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\bended up using\b",
    r"\bmanually\b",
    r"\bspreadsheet\b",
    r"\bscript\b",
    r"\bworkaround\b",
    r"\bwork around\b",
    r"\bDIY\b",
    r"\bbuilt my own\b",
    r"\bmade my own\b",
    r"\bcreated my own\b",
    r"\bhacked together\b",
    r"\bwrote a script\b",
    r"\bwrote my own\b",
    r"\broll my own\b",
    r"\brolled my own\b",
    r"\bhad to build\b",
    r"\bhad to create\b",
    r"\bhad to make\b",
    r"\bfor now i\b",
    r"\bas a stopgap\b",
    r"\btemporary fix\b",
    r"\btemporary solution\b",
)]

DEFAULT_WEIGHTS: Dict[str, float] = {
    "complaint_count": settings.WEIGHT_COMPLAINT_COUNT,
    "days_active": settings.WEIGHT_DAYS_ACTIVE,
    "growth_percentage": settings.WEIGHT_GROWTH_PERCENTAGE,
    "workaround_count": settings.WEIGHT_WORKAROUND_COUNT,
    "platform_count": settings.WEIGHT_PLATFORM_COUNT,
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ScoringEngine:

    def __init__(
        self,
        store,
        weights: Optional[Dict[str, float]] = None,
        min_score_threshold: int = settings.MIN_SCORE_THRESHOLD,
        growth_window_days: int = settings.GROWTH_WINDOW_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.weights = {**DEFAULT_WEIGHTS, **(weights or {})}
        self.min_score_threshold = min_score_threshold
        self.growth_window = timedelta(days=growth_window_days)
        self._clock = clock

    # ─── Factors ─────────────────────────────────────────────────────────────

    @staticmethod
    def count_workarounds(members: Sequence) -> int:
        """Members mentioning at least one workaround; each counted once."""
        return sum(
            1 for m in members
            if any(p.search(m.text or "") for p in WORKAROUND_PATTERNS)
        )

    @staticmethod
    def calculate_days_active(cluster) -> int:
        if not cluster.first_seen or not cluster.last_seen:
            return 0
        delta = cluster.last_seen - cluster.first_seen
        return max(0, math.floor(delta.total_seconds() / 86400))

    def calculate_growth_percentage(self, members: Sequence, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        recent_start = now - self.growth_window
        previous_start = now - 2 * self.growth_window

        recent = previous = 0
        for m in members:
            if m.created_at >= recent_start:
                recent += 1
            elif m.created_at >= previous_start:
                previous += 1

        if previous == 0:
            return 100.0 if recent > 0 else 0.0
        return (recent - previous) / previous * 100

    @staticmethod
    def calculate_platform_count(cluster) -> int:
        return len(cluster.platform_distribution or {})

    def calculate_score(self, factors: ScoringFactors) -> int:
        w = self.weights
        raw = (
            factors.complaint_count * w["complaint_count"]
            + factors.days_active * w["days_active"]
            + factors.growth_percentage * w["growth_percentage"]
            + factors.workaround_count * w["workaround_count"]
            + factors.platform_count * w["platform_count"]
        )
        return min(100, max(0, round_half_up(raw)))

    def find_representative_quote(self, cluster, members: Sequence) -> Optional[int]:
        """Member nearest the centroid; first member if none are embedded."""
        if not members:
            return None
        if cluster.centroid_embedding:
            embedded = [m.complaint_id for m in members if m.embedding]
            nearest = self.store.find_nearest_complaint(cluster.centroid_embedding, embedded)
            if nearest is not None:
                return nearest[0]
        return members[0].complaint_id

    # ─── Scoring ─────────────────────────────────────────────────────────────

    def score_cluster(self, cluster, threshold: Optional[float] = None) -> ScoringResult:
        threshold = self.min_score_threshold if threshold is None else threshold
        members = self.store.get_complaints_by_cluster(cluster.cluster_id)

        factors = ScoringFactors(
            complaint_count=cluster.complaint_count,
            days_active=self.calculate_days_active(cluster),
            growth_percentage=self.calculate_growth_percentage(members),
            workaround_count=self.count_workarounds(members),
            platform_count=self.calculate_platform_count(cluster),
        )
        score = self.calculate_score(factors)
        return ScoringResult(
            cluster_id=cluster.cluster_id,
            score=score,
            factors=factors,
            meets_threshold=score >= threshold,
            representative_quote_id=self.find_representative_quote(cluster, members),
        )

    def score_all_clusters(
        self,
        min_complaint_count: int = settings.MIN_COMPLAINT_COUNT,
        threshold: Optional[float] = None,
        should_stop: Optional[Callable[[], None]] = None,
    ) -> ScoringStats:
        threshold = self.min_score_threshold if threshold is None else threshold
        stats = ScoringStats()
        clusters = self.store.get_active_clusters(min_complaint_count)
        if not clusters:
            return stats

        scores: List[int] = []
        for cluster in clusters:
            if should_stop is not None:
                should_stop()
            try:
                result = self.score_cluster(cluster, threshold)
                stats.total_clusters_scored += 1
                scores.append(result.score)

                if result.meets_threshold:
                    _, created = self.store.upsert_opportunity(
                        cluster.cluster_id,
                        result.score,
                        result.factors.to_dict(),
                        result.representative_quote_id,
                    )
                    if created:
                        stats.opportunities_created += 1
                    else:
                        stats.opportunities_updated += 1
                else:
                    stats.clusters_below_threshold += 1
            except Exception as e:
                logger.error(f"❌ Failed to score cluster {cluster.cluster_id}: {e}")
                stats.errors.append(ItemError(item_id=cluster.cluster_id, message=str(e)))

        if scores:
            stats.top_score = max(scores)
            stats.average_score = round_half_up(sum(scores) / len(scores))
        return stats


class ScoringAgent(Agent):
    """
    Stage 5: Opportunity scoring

    Input:  RuntimeSettings
    Output: ScoringStats
    """

    def __init__(self, engine: ScoringEngine):
        super().__init__(name="ScoringAgent")
        self.engine = engine

    def run(self, runtime=None) -> ScoringStats:
        if runtime is not None:
            min_count, threshold = runtime.min_complaint_count, runtime.min_score_threshold
        else:
            min_count, threshold = settings.MIN_COMPLAINT_COUNT, None
        stats = self.engine.score_all_clusters(
            min_complaint_count=min_count, threshold=threshold, should_stop=self.check_cancelled,
        )
        self.logger.info(
            f"Scored {stats.total_clusters_scored} cluster(s): "
            f"{stats.opportunities_created} new / {stats.opportunities_updated} updated "
            f"opportunities, top={stats.top_score} avg={stats.average_score}"
        )
        return stats
