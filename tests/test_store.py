"""
Store, runtime settings and retention cleanup tests.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import timedelta

import pytest
from agents.cleanup import CleanupAgent
from agents.clusterer import ClusteringEngine
from agents.scorer import ScoringEngine
from config.runtime import RuntimeSettings, load_runtime_settings, validate_setting
from db.models import JobRun, utcnow
from db.seed import DEFAULT_SETTINGS, seed_settings
from utils.vectors import cosine_similarities, mean_vector
from conftest import NOW, add_complaints, days_ago, make_item, similar_vectors


class TestComplaints:
    def test_duplicate_source_ids_are_skipped(self, store):
        assert store.insert_complaints([make_item("1"), make_item("2")]) == (2, 0)
        assert store.insert_complaints([make_item("2"), make_item("3"), make_item("3")]) == (1, 2)
        assert store.count_complaints() == 3

    def test_same_id_on_another_platform_is_distinct(self, store):
        store.insert_complaints([make_item("1"), make_item("1", platform="reddit")])
        assert store.count_complaints() == 2

    def test_set_embedding_never_overwrites(self, store):
        ids = add_complaints(store, ["a"], [[1.0, 0.0]])
        store.set_embedding(ids[0], [0.0, 1.0])
        assert store.get_complaint(ids[0]).embedding == [1.0, 0.0]

    def test_find_nearest_complaint(self, store):
        ids = add_complaints(store, ["a", "b"], [[1.0, 0.0], [0.0, 1.0]])
        nearest_id, similarity = store.find_nearest_complaint([0.1, 0.9], ids)
        assert nearest_id == ids[1]
        assert similarity > 0.9

    def test_find_nearest_without_candidates(self, store):
        assert store.find_nearest_complaint([1.0, 0.0], []) is None


class TestSettings:
    def test_seed_is_idempotent(self, store):
        assert seed_settings(store) == len(DEFAULT_SETTINGS)
        assert seed_settings(store) == 0

    def test_seed_keeps_operator_values(self, store):
        store.set_setting("similarity_threshold", 0.9)
        seed_settings(store)
        assert store.get_setting("similarity_threshold") == 0.9

    def test_runtime_snapshot_reads_store(self, store):
        seed_settings(store)
        store.set_setting("min_score_threshold", 55)
        runtime = load_runtime_settings(store)
        assert runtime.min_score_threshold == 55
        assert runtime.min_complaint_count == 10
        assert runtime.monitored_categories == ["ask", "show"]

    def test_wrong_type_falls_back_to_default(self, store):
        store.set_setting("similarity_threshold", "high")
        store.set_setting("data_retention_days", True)
        runtime = load_runtime_settings(store)
        assert runtime.similarity_threshold == RuntimeSettings().similarity_threshold
        assert runtime.data_retention_days == RuntimeSettings().data_retention_days

    def test_batch_size_floor(self, store):
        store.set_setting("embedding_batch_size", 0)
        assert load_runtime_settings(store).embedding_batch_size == 1

    @pytest.mark.parametrize("key,value", [
        ("similarity_threshold", 1.5),
        ("min_score_threshold", 101),
        ("min_complaint_count", "ten"),
        ("monitored_categories", ["ask", 3]),
        ("data_retention_days", -1),
    ])
    def test_validate_rejects(self, key, value):
        assert validate_setting(key, value) is not None

    def test_validate_accepts(self):
        assert validate_setting("similarity_threshold", 0.8) is None
        assert validate_setting("monitored_categories", ["top"]) is None
        assert validate_setting("some_operator_note", "anything") is None


class TestJobRuns:
    def test_running_detection(self, store):
        run = store.start_job_run("daily_pipeline")
        assert store.is_job_running("daily_pipeline")
        store.complete_job_run(run.run_id, 5)
        assert not store.is_job_running("daily_pipeline")
        assert store.get_job_run(run.run_id).items_processed == 5

    def test_stale_running_rows_are_ignored(self, store):
        run = store.start_job_run("daily_pipeline")
        with store.session() as db:
            db.get(JobRun, run.run_id).started_at = utcnow() - timedelta(hours=5)
        assert store.is_job_running("daily_pipeline")
        assert not store.is_job_running("daily_pipeline", stale_after=timedelta(hours=2))

    def test_fail_with_timeout_status(self, store):
        run = store.start_job_run("daily_pipeline")
        store.fail_job_run(run.run_id, [{"stage": "scoring", "message": "late"}], status="timeout")
        row = store.get_job_run(run.run_id)
        assert row.status == "timeout"
        assert row.errors[0]["stage"] == "scoring"
        assert row.completed_at is not None


class TestOpportunities:
    def test_upsert_keeps_one_row_per_cluster(self, store):
        ids = add_complaints(store, ["a"], [[1.0, 0.0]])
        ClusteringEngine(store).process_unclustered()
        cluster_id = store.get_complaint(ids[0]).cluster_id

        _, created = store.upsert_opportunity(cluster_id, 80, {"complaint_count": 1}, ids[0])
        _, created_again = store.upsert_opportunity(cluster_id, 85, {"complaint_count": 1}, ids[0])
        assert created and not created_again
        assert store.count_opportunities() == 1
        assert store.get_opportunity_for_cluster(cluster_id).score == 85

    def test_listing_joins_summary_and_quote(self, store):
        ids = add_complaints(store, ["Exports keep failing"], [[1.0, 0.0]])
        ClusteringEngine(store).process_unclustered()
        cluster_id = store.get_complaint(ids[0]).cluster_id
        store.upsert_opportunity(cluster_id, 90, {}, ids[0])
        store.upsert_opportunity(cluster_id, 90, {}, ids[0])

        [view] = store.list_opportunities(min_score=70)
        assert view["summary"]
        assert view["representative_quote"]["text"] == "Exports keep failing"
        assert store.list_opportunities(min_score=95) == []
        assert store.list_opportunities(bookmarked_only=True) == []

    def test_toggle_bookmark(self, store):
        ids = add_complaints(store, ["a"], [[1.0, 0.0]])
        ClusteringEngine(store).process_unclustered()
        opp, _ = store.upsert_opportunity(store.get_complaint(ids[0]).cluster_id, 75, {}, None)

        assert store.toggle_bookmark(opp.opportunity_id).is_bookmarked is True
        assert store.toggle_bookmark(opp.opportunity_id).is_bookmarked is False
        assert store.toggle_bookmark(9999) is None


class TestCleanup:
    def run_cleanup(self, store, retention_days=30):
        return CleanupAgent(store, clock=lambda: NOW).run(
            RuntimeSettings(data_retention_days=retention_days)
        )

    def test_old_complaints_removed_and_cluster_refreshed(self, store):
        old = add_complaints(store, ["old one"], [[1.0, 0.0, 0.0]], prefix="o",
                             created_at=days_ago(45))
        recent = add_complaints(store, ["new one", "newer one"], similar_vectors(2), prefix="n",
                                created_at=days_ago(3))
        ClusteringEngine(store).process_unclustered(threshold=0.75)
        cluster_id = store.get_complaint(recent[0]).cluster_id
        assert store.get_cluster(cluster_id).complaint_count == 3

        stats = self.run_cleanup(store)

        assert stats.complaints_deleted == 1
        assert stats.clusters_refreshed == 1
        assert store.get_complaint(old[0]) is None
        cluster = store.get_cluster(cluster_id)
        assert cluster.complaint_count == 2
        assert cluster.first_seen == days_ago(3)

    def test_emptied_cluster_and_opportunity_deleted(self, store):
        add_complaints(store, [f"ancient {i}" for i in range(35)], similar_vectors(35),
                       created_at=days_ago(60))
        ClusteringEngine(store).process_unclustered(threshold=0.75)
        ScoringEngine(store, clock=lambda: NOW).score_all_clusters(threshold=70)
        assert store.count_opportunities() == 1

        stats = self.run_cleanup(store)

        assert stats.complaints_deleted == 35
        assert stats.clusters_deleted == 1
        assert stats.opportunities_deleted == 1
        assert store.count_clusters() == 0
        assert store.count_opportunities() == 0

    def test_nothing_to_clean(self, store):
        add_complaints(store, ["fresh"], [[1.0, 0.0]], created_at=days_ago(1))
        stats = self.run_cleanup(store)
        assert stats.complaints_deleted == 0
        assert stats.errors == []


class TestVectors:
    def test_zero_vectors_score_zero(self):
        sims = cosine_similarities([[0.0, 0.0], [3.0, 4.0]], [3.0, 4.0])
        assert sims[0] == 0.0
        assert sims[1] == pytest.approx(1.0)

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarities([[1.0, 0.0, 0.0]], [1.0, 0.0])

    def test_mean_vector(self):
        assert mean_vector([[1.0, 2.0], [3.0, 4.0]]) == [2.0, 3.0]
        with pytest.raises(ValueError):
            mean_vector([])
