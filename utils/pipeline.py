"""
Pipeline runner — builds the agents with their providers and exposes a
trigger that starts runs on demand.

Architecture:
  CollectionAgent → DetectionAgent → EmbeddingAgent → ClusteringAgent
                  → ScoringAgent → CleanupAgent
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

from agents.cleanup import CleanupAgent
from agents.clusterer import ClusteringAgent, ClusteringEngine
from agents.collector import CollectionAgent, HackerNewsSource
from agents.detector import DetectionAgent
from agents.embedder import EmbeddingAgent
from agents.orchestrator import PipelineOrchestrator
from agents.scorer import ScoringAgent, ScoringEngine
from config.settings import settings
from db.store import Store
from models.schemas import PipelineRunResult
from providers.base import ProviderError, RateLimiter
from providers.embedding import build_embedding_provider
from providers.summary import AnthropicSummaryProvider

logger = logging.getLogger(__name__)

_DEFAULT = object()


def default_summary_provider():
    """Anthropic provider if a key is configured, else None (keyword fallback)."""
    if not settings.ANTHROPIC_API_KEY:
        logger.warning("ANTHROPIC_API_KEY not set — cluster summaries will use keyword fallback")
        return None
    return AnthropicSummaryProvider()


def default_embedding_provider():
    try:
        return build_embedding_provider()
    except ProviderError as e:
        logger.warning(f"Embedding provider unavailable, embedding stage disabled: {e}")
        return None


def build_clustering_engine(store: Store, summary_provider: Any = _DEFAULT,
                            rate_limiter: Optional[RateLimiter] = None) -> ClusteringEngine:
    if summary_provider is _DEFAULT:
        summary_provider = default_summary_provider()
    return ClusteringEngine(
        store,
        summary_provider=summary_provider,
        rate_limiter=rate_limiter or RateLimiter(settings.PROVIDER_REQUEST_DELAY_SECONDS),
    )


def build_orchestrator(
    store: Optional[Store] = None,
    embedding_provider: Any = _DEFAULT,
    summary_provider: Any = _DEFAULT,
    sources: Optional[Sequence] = None,
    collect: bool = True,
    timeout_seconds: float = settings.PIPELINE_TIMEOUT_SECONDS,
) -> PipelineOrchestrator:
    """
    Wire every stage. Providers left at their default are built from
    `settings`; passing None disables the stage (embedding) or the
    provider-backed summary (clustering).
    """
    store = store or Store()
    if embedding_provider is _DEFAULT:
        embedding_provider = default_embedding_provider()

    # one limiter shared by all model-provider calls
    limiter = RateLimiter(settings.PROVIDER_REQUEST_DELAY_SECONDS)

    agents = {
        "detection": DetectionAgent(store),
        "clustering": ClusteringAgent(build_clustering_engine(store, summary_provider, limiter)),
        "scoring": ScoringAgent(ScoringEngine(store)),
        "cleanup": CleanupAgent(store),
    }
    if collect:
        agents["collection"] = CollectionAgent(store, sources if sources is not None else [HackerNewsSource()])
    if embedding_provider is not None:
        agents["embedding"] = EmbeddingAgent(store, embedding_provider, rate_limiter=limiter)

    return PipelineOrchestrator(store, agents, timeout_seconds=timeout_seconds)


class PipelineTrigger:
    """
    External "run pipeline now" trigger with best-effort overlap protection:
    an in-process flag plus the store's `is_job_running` check. Stale
    `running` rows older than the pipeline timeout are ignored.
    """

    def __init__(self, orchestrator: PipelineOrchestrator, store: Optional[Store] = None):
        self.orchestrator = orchestrator
        self.store = store or orchestrator.store
        self.job_type = orchestrator.job_type
        self.stale_after = timedelta(seconds=orchestrator.timeout_seconds)
        self._lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self.total_runs = 0
        self.successful_runs = 0
        self.failed_runs = 0
        self.last_result: Optional[PipelineRunResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _claim(self) -> bool:
        with self._lock:
            if self._running:
                logger.info("[Trigger] Pipeline already running, skipping")
                return False
            try:
                if self.store.is_job_running(self.job_type, stale_after=self.stale_after):
                    logger.info("[Trigger] Pipeline running in another process, skipping")
                    return False
            except Exception as e:
                logger.error(f"[Trigger] Could not check running jobs: {e}")
            self._running = True
            return True

    def _execute(self) -> PipelineRunResult:
        try:
            result = self.orchestrator.run()
        finally:
            with self._lock:
                self._running = False
        self.total_runs += 1
        if result.status == "completed":
            self.successful_runs += 1
        else:
            self.failed_runs += 1
        self.last_result = result
        return result

    def trigger(self) -> Optional[PipelineRunResult]:
        """Run synchronously. Returns None when another run is in progress."""
        if not self._claim():
            return None
        return self._execute()

    def trigger_async(self) -> bool:
        """Start a run on a background thread. Returns False if skipped."""
        if not self._claim():
            return False
        self._thread = threading.Thread(target=self._execute, name="pipeline-run", daemon=True)
        self._thread.start()
        return True

    def run_if_missed(self) -> Optional[PipelineRunResult]:
        """Run now unless a run already completed, or is running, today."""
        try:
            if self.store.is_job_running(self.job_type, stale_after=self.stale_after):
                logger.info("A pipeline is already running, skipping missed-run check")
                return None
            todays = self.store.get_todays_job_runs(self.job_type)
        except Exception as e:
            logger.error(f"Error checking for missed runs: {e}")
            return None

        if any(run.status == "completed" for run in todays):
            logger.info("Pipeline already ran successfully today, no action needed")
            return None
        logger.info("No successful run found for today — executing pipeline now")
        return self.trigger()

    def cancel(self) -> bool:
        return self.orchestrator.cancel()

    def wait(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def state(self) -> Dict[str, Any]:
        return {
            "is_pipeline_running": self._running,
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
