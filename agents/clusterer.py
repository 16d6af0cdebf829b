"""
Clustering Agent
-----------------
Greedy incremental clustering over complaint embeddings.

For each unclustered complaint (insertion order):
  1. find the single most similar cluster centroid (cosine >= threshold)
  2. if found  → assign, then recompute the cluster from all its members
     (centroid = per-dimension mean, platform distribution recount,
     first/last seen = min/max created_at)
  3. otherwise → new cluster seeded from the complaint, plus a summary

Summaries come from an injected SummaryProvider; any provider failure
falls back to a keyword-frequency sentence.

Input:  RuntimeSettings
Output: ClusteringStats
"""

import re
import logging
import threading
import time
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from agents.base import Agent
from config.settings import settings
from models.schemas import ClusteringResult, ClusteringStats, ItemError
from providers.base import ProviderError, RateLimiter, call_with_retries
from utils.vectors import mean_vector

logger = logging.getLogger(__name__)

GENERIC_SUMMARY = "Multiple users report issues with this functionality."

STOPWORDS = frozenset("""
    the a an is are was were be been being have has had do does did will would
    could should may might must shall can need dare ought used to of in for on
    with at by from up about into through during before after above below
    between under again further then once here there when where why how all
    each few more most other some such no nor not only own same so than too
    very just and but if or because as until while this that these those it
    its i me my we our you your he him his she her they them their what which
    who whom any both either neither
""".split())

_WORD_RE = re.compile(r"\b[a-z]{3,}\b")


def fallback_summary(texts: Sequence[str], top_n: int = 5) -> str:
    """Deterministic summary from the most frequent non-stopword tokens."""
    counts: Counter = Counter()
    for text in texts:
        for word in _WORD_RE.findall((text or "").lower()):
            if word not in STOPWORDS:
                counts[word] += 1
    keywords = [word for word, _ in counts.most_common(top_n)]
    if not keywords:
        return GENERIC_SUMMARY
    return f"Multiple users report issues with {', '.join(keywords)}."


def compute_cluster_stats(members: Sequence) -> Dict:
    """Cluster columns derived from its current member complaints."""
    embeddings = [m.embedding for m in members if m.embedding]
    distribution: Dict[str, int] = {}
    for m in members:
        distribution[m.category] = distribution.get(m.category, 0) + 1

    stats = {
        "complaint_count": len(members),
        "platform_distribution": distribution,
    }
    if embeddings:
        stats["centroid_embedding"] = mean_vector(embeddings)
    if members:
        dates = [m.created_at for m in members]
        stats["first_seen"] = min(dates)
        stats["last_seen"] = max(dates)
    return stats


def refresh_cluster_stats(store, cluster_id: int) -> Dict:
    """Re-read a cluster's members and rewrite its derived columns."""
    stats = compute_cluster_stats(store.get_complaints_by_cluster(cluster_id))
    store.update_cluster(cluster_id, **stats)
    return stats


class ClusteringEngine:
    """Assignment, cluster maintenance and summary policy."""

    def __init__(
        self,
        store,
        summary_provider=None,
        rate_limiter: Optional[RateLimiter] = None,
        similarity_threshold: float = settings.SIMILARITY_THRESHOLD,
        max_retries: int = settings.SUMMARY_MAX_RETRIES,
        retry_base_delay: float = settings.EMBEDDING_RETRY_BASE_DELAY,
        sample_size: int = settings.SUMMARY_SAMPLE_SIZE,
        sample_text_length: int = settings.SUMMARY_TEXT_LENGTH,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.summary_provider = summary_provider
        self.rate_limiter = rate_limiter
        self.similarity_threshold = similarity_threshold
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.sample_size = sample_size
        self.sample_text_length = sample_text_length
        self._sleep = sleep
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _cluster_lock(self, cluster_id: int) -> threading.Lock:
        with self._locks_guard:
            if cluster_id not in self._locks:
                self._locks[cluster_id] = threading.Lock()
            return self._locks[cluster_id]

    # ─── Summaries ───────────────────────────────────────────────────────────

    def summarize(self, texts: Sequence[str]) -> Tuple[str, bool]:
        """Returns (summary, generated_by_provider)."""
        sample = [(t or "")[: self.sample_text_length] for t in list(texts)[: self.sample_size]]
        if self.summary_provider is None:
            return fallback_summary(sample), False
        try:
            summary = call_with_retries(
                lambda: self.summary_provider.summarize(sample),
                max_attempts=self.max_retries,
                base_delay=self.retry_base_delay,
                rate_limiter=self.rate_limiter,
                sleep=self._sleep,
                description="Summary generation",
            )
            return summary, True
        except ProviderError as e:
            logger.warning(f"Summary generation failed, using keyword fallback: {e}")
            return fallback_summary(sample), False

    def generate_cluster_summary(self, texts: Sequence[str]) -> str:
        return self.summarize(texts)[0]

    # ─── Assignment ──────────────────────────────────────────────────────────

    def cluster_complaint(self, complaint, threshold: Optional[float] = None) -> Tuple[ClusteringResult, bool]:
        """
        Assign one complaint. Returns (result, summary_generated) where the
        second value is only meaningful for new clusters.
        """
        if not complaint.embedding:
            raise ValueError(f"Complaint {complaint.complaint_id} has no embedding")
        threshold = self.similarity_threshold if threshold is None else threshold

        match = self.store.find_most_similar_cluster(complaint.embedding, threshold)
        if match is not None:
            cluster, similarity = match
            with self._cluster_lock(cluster.cluster_id):
                self.store.assign_complaint_to_cluster(complaint.complaint_id, cluster.cluster_id)
                refresh_cluster_stats(self.store, cluster.cluster_id)
            return ClusteringResult(
                complaint_id=complaint.complaint_id,
                cluster_id=cluster.cluster_id,
                is_new_cluster=False,
                similarity=similarity,
            ), False

        summary, generated = self.summarize([complaint.text])
        cluster = self.store.create_cluster_for_complaint(
            complaint.complaint_id,
            summary=summary,
            first_seen=complaint.created_at,
            last_seen=complaint.created_at,
            platform_distribution={complaint.category: 1},
            centroid_embedding=complaint.embedding,
        )
        return ClusteringResult(
            complaint_id=complaint.complaint_id,
            cluster_id=cluster.cluster_id,
            is_new_cluster=True,
        ), generated

    def process_unclustered(
        self,
        limit: Optional[int] = settings.CLUSTERING_LIMIT,
        threshold: Optional[float] = None,
        should_stop: Optional[Callable[[], None]] = None,
    ) -> ClusteringStats:
        stats = ClusteringStats()
        pending = self.store.get_unclustered_complaints(limit)
        logger.info(f"Clustering {len(pending)} complaint(s)")

        for complaint in pending:
            if should_stop is not None:
                should_stop()
            try:
                result, generated = self.cluster_complaint(complaint, threshold)
            except Exception as e:
                logger.error(f"❌ Failed to cluster complaint {complaint.complaint_id}: {e}")
                stats.errors.append(ItemError(item_id=complaint.complaint_id, message=str(e)))
                continue

            stats.total_processed += 1
            if result.is_new_cluster:
                stats.new_clusters_created += 1
                if generated:
                    stats.summaries_generated += 1
                else:
                    stats.summary_generation_failed += 1
            else:
                stats.assigned_to_existing += 1

        return stats

    def regenerate_cluster_summary(self, cluster_id: int) -> str:
        members = self.store.get_complaints_by_cluster(cluster_id)
        if not members:
            raise ValueError(f"Cluster {cluster_id} has no complaints")
        summary = self.generate_cluster_summary([m.text for m in members])
        self.store.update_cluster(cluster_id, summary=summary)
        return summary


class ClusteringAgent(Agent):
    """
    Stage 4: Clustering

    Input:  RuntimeSettings
    Output: ClusteringStats
    """

    def __init__(self, engine: ClusteringEngine, limit: Optional[int] = settings.CLUSTERING_LIMIT):
        super().__init__(name="ClusteringAgent")
        self.engine = engine
        self.limit = limit

    def run(self, runtime=None) -> ClusteringStats:
        threshold = runtime.similarity_threshold if runtime else None
        stats = self.engine.process_unclustered(
            limit=self.limit, threshold=threshold, should_stop=self.check_cancelled,
        )
        self.logger.info(
            f"Clustered {stats.total_processed}: {stats.assigned_to_existing} into existing, "
            f"{stats.new_clusters_created} new, {len(stats.errors)} error(s)"
        )
        return stats
