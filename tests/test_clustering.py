"""
Incremental clustering tests.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
from agents.clusterer import (
    ClusteringAgent, ClusteringEngine, GENERIC_SUMMARY, fallback_summary,
)
from config.runtime import RuntimeSettings
from conftest import (
    FakeSummaryProvider, add_complaints, days_ago, no_sleep, similar_vectors,
)


@pytest.fixture
def engine(store):
    return ClusteringEngine(store, summary_provider=FakeSummaryProvider(), sleep=no_sleep,
                            retry_base_delay=0.0)


class TestAssignment:
    def test_similar_complaints_form_one_cluster(self, store, engine):
        vectors = similar_vectors(12)
        ids = add_complaints(store, [f"export is broken {i}" for i in range(12)], vectors)

        stats = engine.process_unclustered(threshold=0.75)

        assert stats.total_processed == 12
        assert stats.new_clusters_created == 1
        assert stats.assigned_to_existing == 11
        assert store.count_clusters() == 1
        cluster_id = store.get_complaint(ids[0]).cluster_id
        cluster = store.get_cluster(cluster_id)
        assert cluster.complaint_count == 12
        assert cluster.platform_distribution == {"ask": 12}

    def test_centroid_is_mean_of_members(self, store, engine):
        vectors = similar_vectors(7)
        ids = add_complaints(store, [f"sync fails {i}" for i in range(7)], vectors)
        engine.process_unclustered(threshold=0.75)

        cluster = store.get_cluster(store.get_complaint(ids[0]).cluster_id)
        expected = np.mean(np.array(vectors), axis=0)
        assert np.allclose(cluster.centroid_embedding, expected)

    def test_dissimilar_complaints_get_separate_clusters(self, store, engine):
        add_complaints(store, ["billing is broken", "login is broken"],
                       [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        stats = engine.process_unclustered(threshold=0.75)
        assert stats.new_clusters_created == 2
        assert store.count_clusters() == 2

    def test_most_similar_cluster_wins(self, store, engine):
        add_complaints(store, ["a", "b"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], prefix="seed")
        engine.process_unclustered(threshold=0.9)
        # above threshold for both clusters, closer to the second
        ids = add_complaints(store, ["c"], [[0.6, 0.8, 0.0]], prefix="new")
        engine.process_unclustered(threshold=0.5)

        target = store.get_complaint(ids[0]).cluster_id
        second = store.get_complaint_by_source("hackernews", "seed1").cluster_id
        assert target == second

    def test_first_and_last_seen_track_members(self, store, engine):
        add_complaints(store, ["old"], [[1.0, 0.0]], prefix="o", created_at=days_ago(10))
        add_complaints(store, ["new"], [[1.0, 0.01]], prefix="n", created_at=days_ago(2))
        engine.process_unclustered(threshold=0.75)

        cluster = store.get_active_clusters()[0]
        assert cluster.first_seen == days_ago(10)
        assert cluster.last_seen == days_ago(2)
        assert cluster.last_seen >= cluster.first_seen

    def test_rerun_is_a_noop(self, store, engine):
        add_complaints(store, ["a", "b"], similar_vectors(2))
        engine.process_unclustered(threshold=0.75)
        stats = engine.process_unclustered(threshold=0.75)
        assert stats.total_processed == 0
        assert store.get_active_clusters()[0].complaint_count == 2

    def test_missing_embedding_is_an_item_error(self, store, engine):
        class Bare:
            complaint_id = 99
            embedding = None

        with pytest.raises(ValueError):
            engine.cluster_complaint(Bare())

    def test_new_cluster_is_rolled_back_if_complaint_cannot_join(self, store):
        with pytest.raises(ValueError):
            store.create_cluster_for_complaint(
                9999, summary="orphan", first_seen=days_ago(1), last_seen=days_ago(1),
                platform_distribution={"ask": 1}, centroid_embedding=[1.0, 0.0],
            )
        assert store.count_clusters() == 0

    def test_stale_complaint_never_leaves_an_empty_cluster(self, store, engine):
        ids = add_complaints(store, ["export fails"], [[1.0, 0.0]])
        stale = store.get_complaint(ids[0])
        engine.cluster_complaint(stale)

        # no cluster is close enough, so this takes the new-cluster path
        with pytest.raises(ValueError):
            engine.cluster_complaint(stale, threshold=1.5)

        assert store.count_clusters() == 1
        cluster = store.get_active_clusters()[0]
        assert cluster.complaint_count == len(store.get_complaints_by_cluster(cluster.cluster_id)) == 1

    def test_complaint_is_never_moved_between_clusters(self, store, engine):
        add_complaints(store, ["a", "b"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        engine.process_unclustered(threshold=0.9)
        first, second = store.get_active_clusters()
        member = store.get_complaints_by_cluster(first.cluster_id)[0]

        with pytest.raises(ValueError):
            store.assign_complaint_to_cluster(member.complaint_id, second.cluster_id)
        assert store.get_complaint(member.complaint_id).cluster_id == first.cluster_id


class TestConcurrentAssignment:
    def test_parallel_assignments_to_one_cluster(self, file_store):
        engine = ClusteringEngine(file_store, summary_provider=FakeSummaryProvider(),
                                  sleep=no_sleep, retry_base_delay=0.0)
        n = 16
        vectors = similar_vectors(n + 1)
        seed = add_complaints(file_store, ["seed: export is broken"], vectors[:1], prefix="seed")
        engine.process_unclustered(threshold=0.75)
        cluster_id = file_store.get_complaint(seed[0]).cluster_id

        ids = add_complaints(file_store, [f"export is broken {i}" for i in range(n)], vectors[1:])
        pending = file_store.get_unclustered_complaints()
        assert len(pending) == n

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda c: engine.cluster_complaint(c, threshold=0.75)[0], pending
            ))

        assert all(r.cluster_id == cluster_id and not r.is_new_cluster for r in results)
        assert file_store.count_clusters() == 1
        members = file_store.get_complaints_by_cluster(cluster_id)
        assert sorted(m.complaint_id for m in members) == sorted(seed + ids)
        cluster = file_store.get_cluster(cluster_id)
        assert cluster.complaint_count == n + 1
        assert np.allclose(cluster.centroid_embedding, np.mean(np.array(vectors), axis=0))


class TestSummaries:
    def test_provider_summary_used_for_new_cluster(self, store, engine):
        ids = add_complaints(store, ["export fails"], [[1.0, 0.0]])
        stats = engine.process_unclustered()
        cluster = store.get_cluster(store.get_complaint(ids[0]).cluster_id)
        assert cluster.summary == "Users cannot export their data."
        assert stats.summaries_generated == 1

    def test_provider_failure_falls_back_to_keywords(self, store):
        engine = ClusteringEngine(store, summary_provider=FakeSummaryProvider(fail=True),
                                  sleep=no_sleep, retry_base_delay=0.0)
        ids = add_complaints(store, ["Export export export keeps failing"], [[1.0, 0.0]])
        stats = engine.process_unclustered()
        cluster = store.get_cluster(store.get_complaint(ids[0]).cluster_id)
        assert cluster.summary.startswith("Multiple users report issues with export")
        assert stats.summary_generation_failed == 1

    def test_fallback_keywords_by_frequency(self):
        texts = ["the sync sync sync is slow", "sync is slow", "the dashboard"]
        assert fallback_summary(texts) == "Multiple users report issues with sync, slow, dashboard."

    def test_fallback_without_keywords(self):
        assert fallback_summary(["it is to be", "a b"]) == GENERIC_SUMMARY

    def test_sample_is_limited_and_truncated(self, store):
        provider = FakeSummaryProvider()
        engine = ClusteringEngine(store, summary_provider=provider, sample_size=10,
                                  sample_text_length=500)
        engine.summarize(["y" * 900] * 15)
        sent = provider.calls[0]
        assert len(sent) == 10
        assert all(len(t) == 500 for t in sent)

    def test_regenerate_summary(self, store, engine):
        ids = add_complaints(store, ["a", "b"], similar_vectors(2))
        engine.process_unclustered()
        cluster_id = store.get_complaint(ids[0]).cluster_id
        engine.summary_provider = FakeSummaryProvider("Exports time out for large files.")

        assert engine.regenerate_cluster_summary(cluster_id) == "Exports time out for large files."
        assert store.get_cluster(cluster_id).summary == "Exports time out for large files."


class TestClusteringAgent:
    def test_threshold_comes_from_runtime_settings(self, store):
        add_complaints(store, ["a", "b"], [[1.0, 0.0], [0.8, 0.6]])
        agent = ClusteringAgent(ClusteringEngine(store))
        # cosine is 0.8: separate at 0.9, together at 0.75
        stats = agent.run(RuntimeSettings(similarity_threshold=0.9))
        assert stats.new_clusters_created == 2
