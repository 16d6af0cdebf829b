"""
Pipeline orchestration tests: stage state machine, critical precondition,
timeout, cancellation and the run trigger.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading
import time

import pytest
from agents.base import Agent
from agents.cleanup import CleanupAgent
from agents.clusterer import ClusteringAgent, ClusteringEngine
from agents.detector import DetectionAgent
from agents.embedder import EmbeddingAgent
from agents.orchestrator import PipelineOrchestrator
from agents.scorer import ScoringAgent, ScoringEngine
from db.models import utcnow
from db.seed import seed_settings
from db.store import Store, StoreUnavailableError
from models.schemas import DetectionStats
from utils.pipeline import PipelineTrigger, build_orchestrator
from conftest import FakeEmbeddingProvider, add_complaints, make_item, no_sleep


class ExplodingAgent(Agent):
    def __init__(self):
        super().__init__(name="ExplodingAgent")

    def run(self, runtime):
        raise RuntimeError("pattern table corrupted")


class SlowAgent(Agent):
    """Blocks until cancelled."""

    def __init__(self):
        super().__init__(name="SlowAgent")
        self.started = threading.Event()

    def run(self, runtime):
        self.started.set()
        while not self.cancelled:
            time.sleep(0.01)
        self.check_cancelled()
        return DetectionStats()


class DownStore(Store):
    def health_check(self):
        return False


class SettingsDownStore(Store):
    def get_all_settings(self):
        raise RuntimeError("settings table locked")


class BlockingEmbeddingProvider(FakeEmbeddingProvider):
    """The first embed() call blocks until `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, texts):
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(10)
        return super().embed(texts)


def core_agents(store, **overrides):
    agents = {
        "detection": DetectionAgent(store),
        "embedding": EmbeddingAgent(store, FakeEmbeddingProvider(), sleep=no_sleep,
                                    retry_base_delay=0.0),
        "clustering": ClusteringAgent(ClusteringEngine(store)),
        "scoring": ScoringAgent(ScoringEngine(store)),
        "cleanup": CleanupAgent(store),
    }
    agents.update(overrides)
    return agents


@pytest.fixture
def seeded(store):
    seed_settings(store)
    store.insert_complaints([
        make_item("1", "The CSV export keeps crashing", created_at=utcnow()),
        make_item("2", "Just shipped a new release", created_at=utcnow()),
    ])
    return store


class TestPipelineRun:
    def test_full_run_completes(self, seeded):
        result = PipelineOrchestrator(seeded, core_agents(seeded), poll_interval=0.01).run()

        assert result.status == "completed"
        assert result.stages["collection"].status == "skipped"
        for name in ("detection", "embedding", "clustering", "scoring", "cleanup"):
            assert result.stages[name].status == "completed"
        assert result.stages["detection"].stats["complaints_detected"] == 1
        assert seeded.count_clusters() == 1

        run = seeded.get_job_run(result.run_id)
        assert run.status == "completed"
        assert run.items_processed == result.total_items_processed

    def test_failed_stage_does_not_block_later_stages(self, seeded):
        agents = core_agents(seeded, detection=ExplodingAgent())
        result = PipelineOrchestrator(seeded, agents, poll_interval=0.01).run()

        assert result.stages["detection"].status == "failed"
        assert "pattern table corrupted" in result.stages["detection"].error
        for name in ("embedding", "clustering", "scoring", "cleanup"):
            assert result.stages[name].status == "completed"
        assert result.status == "completed"
        assert any(e.stage == "detection" for e in result.errors)
        assert seeded.get_job_run(result.run_id).errors[0]["stage"] == "detection"

    def test_store_down_skips_everything(self):
        store = DownStore.from_url("sqlite://")
        result = PipelineOrchestrator(store, core_agents(store), poll_interval=0.01).run()

        assert result.status == "failed"
        assert all(s.status == "skipped" for s in result.stages.values())
        assert "Critical" in result.errors[0].message
        assert result.errors[0].stage == "pipeline"
        assert store.get_job_run(result.run_id).status == "failed"

    def test_timeout_skips_pending_stages(self, seeded):
        agents = core_agents(seeded, embedding=SlowAgent())
        result = PipelineOrchestrator(seeded, agents, timeout_seconds=1.0, poll_interval=0.01).run()

        assert result.status == "timeout"
        assert result.stages["detection"].status == "completed"
        assert result.stages["embedding"].status == "failed"
        for name in ("clustering", "scoring", "cleanup"):
            assert result.stages[name].status == "skipped"
        assert seeded.get_job_run(result.run_id).status == "timeout"

    def test_cancel_aborts_in_flight_stage(self, seeded):
        slow = SlowAgent()
        orchestrator = PipelineOrchestrator(seeded, core_agents(seeded, clustering=slow),
                                            poll_interval=0.01)
        results = []
        worker = threading.Thread(target=lambda: results.append(orchestrator.run()))
        worker.start()
        assert slow.started.wait(5)
        assert orchestrator.cancel()
        worker.join(5)

        result = results[0]
        assert result.status == "failed"
        assert result.stages["clustering"].status == "failed"
        assert result.stages["scoring"].status == "skipped"
        assert orchestrator.cancel() is False

    def test_runtime_settings_failure_is_a_run_level_error(self):
        store = SettingsDownStore.from_url("sqlite://")
        result = PipelineOrchestrator(store, core_agents(store), poll_interval=0.01).run()

        assert result.status == "completed"
        assert result.errors[0].stage == "pipeline"
        assert "Runtime settings unavailable" in result.errors[0].message
        assert result.stages["detection"].status == "completed"

    def test_unknown_stage_rejected(self, store):
        with pytest.raises(ValueError):
            PipelineOrchestrator(store, {"reporting": DetectionAgent(store)})

    def test_run_single_stage(self, seeded):
        orchestrator = PipelineOrchestrator(seeded, core_agents(seeded))
        result = orchestrator.run_stage("detection")
        assert result.success
        assert seeded.get_latest_job_run("detection_stage").status == "completed"

    def test_single_stage_needs_a_healthy_store(self):
        store = DownStore.from_url("sqlite://")
        with pytest.raises(StoreUnavailableError):
            PipelineOrchestrator(store, core_agents(store)).run_stage("detection")


class TestAbandonedStages:
    TEXTS = ["export keeps crashing", "sync loses my data", "login page loops forever"]

    def embedding_only(self, store, provider, **kwargs):
        store.set_setting("embedding_batch_size", 1)
        agents = {"embedding": EmbeddingAgent(store, provider, sleep=no_sleep, retry_base_delay=0.0)}
        return PipelineOrchestrator(store, agents, poll_interval=0.01, **kwargs)

    def test_cancelled_stage_does_no_work_in_the_next_run(self, file_store):
        add_complaints(file_store, self.TEXTS, created_at=utcnow())
        provider = BlockingEmbeddingProvider()
        orchestrator = self.embedding_only(file_store, provider)

        results = []
        worker = threading.Thread(target=lambda: results.append(orchestrator.run()))
        worker.start()
        try:
            assert provider.entered.wait(5)
            assert orchestrator.cancel()
            worker.join(5)
            assert results[0].status == "failed"
        finally:
            provider.release.set()

        second = orchestrator.run()

        assert second.status == "completed"
        assert second.stages["embedding"].stats["successful_embeddings"] == 2
        # one call finished for the cancelled run, two for the second run
        assert len(provider.calls) == 3
        assert sorted(t for call in provider.calls for t in call) == sorted(self.TEXTS)
        assert file_store.get_complaints_needing_embedding() == []

    def test_next_run_waits_for_a_stuck_stage(self, file_store):
        add_complaints(file_store, self.TEXTS[:1], created_at=utcnow())
        provider = BlockingEmbeddingProvider()
        orchestrator = self.embedding_only(file_store, provider, timeout_seconds=0.5)

        try:
            first = orchestrator.run()
            second = orchestrator.run()
        finally:
            provider.release.set()

        assert first.status == "timeout"
        assert second.status == "failed"
        assert second.stages["embedding"].status == "skipped"
        assert second.errors[0].stage == "pipeline"
        assert file_store.get_job_run(second.run_id).status == "failed"

        third = orchestrator.run()
        assert third.status == "completed"
        assert len(provider.calls) == 1
        assert file_store.get_complaints_needing_embedding() == []


class TestPipelineTrigger:
    def make_trigger(self, store):
        orchestrator = build_orchestrator(store, embedding_provider=FakeEmbeddingProvider(),
                                          summary_provider=None, collect=False)
        return PipelineTrigger(orchestrator, store)

    def test_trigger_runs_and_tracks_state(self, seeded):
        trigger = self.make_trigger(seeded)
        result = trigger.trigger()

        assert result.status == "completed"
        state = trigger.state()
        assert state["total_runs"] == 1
        assert state["successful_runs"] == 1
        assert state["is_pipeline_running"] is False

    def test_skips_when_a_run_is_recorded_running(self, seeded):
        seeded.start_job_run("daily_pipeline")
        assert self.make_trigger(seeded).trigger() is None

    def test_run_if_missed_only_once_per_day(self, seeded):
        trigger = self.make_trigger(seeded)
        assert trigger.run_if_missed() is not None
        assert trigger.run_if_missed() is None
        assert trigger.total_runs == 1

    def test_async_trigger(self, seeded):
        trigger = self.make_trigger(seeded)
        assert trigger.trigger_async()
        trigger.wait(10)
        assert trigger.last_result.status == "completed"
