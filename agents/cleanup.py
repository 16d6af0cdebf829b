"""
Cleanup Agent
--------------
Enforces data retention:
  1. delete complaints older than `data_retention_days`
  2. recompute every cluster that lost members
  3. delete clusters left empty (and their opportunities)
  4. delete orphaned opportunities

A failing step is recorded and the remaining steps still run.
"""

from datetime import datetime, timedelta
from typing import Callable

from agents.base import Agent
from agents.clusterer import refresh_cluster_stats
from db.models import utcnow
from models.schemas import CleanupStats


class CleanupAgent(Agent):
    """
    Stage 6: Retention cleanup

    Input:  RuntimeSettings
    Output: CleanupStats
    """

    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        super().__init__(name="CleanupAgent")
        self.store = store
        self._clock = clock

    def _record(self, stats: CleanupStats, operation: str, error: Exception) -> None:
        self.logger.error(f"  ❌ {operation} failed: {error}")
        stats.errors.append({"operation": operation, "message": str(error)})

    def run(self, runtime) -> CleanupStats:
        stats = CleanupStats(cutoff_date=self._clock() - timedelta(days=runtime.data_retention_days))
        self.logger.info(f"Removing data older than {stats.cutoff_date.isoformat()}")

        affected = []
        try:
            stats.complaints_deleted, affected = self.store.delete_old_complaints(stats.cutoff_date)
        except Exception as e:
            self._record(stats, "delete_old_complaints", e)

        for cluster_id in affected:
            try:
                refresh_cluster_stats(self.store, cluster_id)
                stats.clusters_refreshed += 1
            except Exception as e:
                self._record(stats, f"refresh_cluster[{cluster_id}]", e)

        try:
            clusters, opps = self.store.delete_empty_clusters()
            stats.clusters_deleted = clusters
            stats.opportunities_deleted += opps
        except Exception as e:
            self._record(stats, "delete_empty_clusters", e)

        try:
            stats.opportunities_deleted += self.store.delete_orphaned_opportunities()
        except Exception as e:
            self._record(stats, "delete_orphaned_opportunities", e)

        self.logger.info(
            f"Deleted {stats.complaints_deleted} complaint(s), {stats.clusters_deleted} "
            f"cluster(s), {stats.opportunities_deleted} opportunit(ies)"
        )
        return stats
