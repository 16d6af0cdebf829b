"""
Pipeline Orchestrator
----------------------
Runs the daily batch pipeline:

  collection → detection → embedding → clustering → scoring → cleanup

  - the store health check is the only critical precondition; if it fails
    every stage is skipped and the run is recorded `failed`
  - a failing stage is recorded and the next stage still runs
  - the whole run is bounded by PIPELINE_TIMEOUT_SECONDS; on timeout the
    in-flight stage is failed, pending stages skipped, status `timeout`
  - `cancel()` aborts the in-flight stage the same way (status `failed`)

Each stage runs on a worker thread so the orchestrator can enforce the
deadline; agents watch the run's cancel event and stop cooperatively.
A stage abandoned by a cancelled or timed-out run keeps its own event, and
the next run waits for that thread to finish before starting any stage.
"""

import dataclasses
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from typing import Dict, List, Optional

from agents.base import Agent, AgentResult
from config.runtime import RuntimeSettings, load_runtime_settings
from config.settings import settings
from db.models import utcnow
from db.store import StoreUnavailableError
from models.schemas import STAGES, PipelineRunResult, RunError, StageStatus

logger = logging.getLogger("orchestrator")

MAX_ITEM_ERRORS_PER_STAGE = 50


def _run_error(stage: str, message: str, stack: Optional[str] = None) -> RunError:
    return RunError(stage=stage, message=message, timestamp=utcnow().isoformat(), stack=stack)


def _item_errors(stage: str, stats) -> List[RunError]:
    """Item-level errors a stage caught, lifted onto the run record."""
    errors = getattr(stats, "errors", None) or []
    out = []
    for err in errors[:MAX_ITEM_ERRORS_PER_STAGE]:
        if isinstance(err, dict):
            out.append(_run_error(stage, f"{err.get('operation')}: {err.get('message')}"))
        else:
            out.append(_run_error(stage, f"item {err.item_id}: {err.message}"))
    if len(errors) > MAX_ITEM_ERRORS_PER_STAGE:
        out.append(_run_error(stage, f"... and {len(errors) - MAX_ITEM_ERRORS_PER_STAGE} more item error(s)"))
    return out


class PipelineOrchestrator:

    def __init__(
        self,
        store,
        agents: Dict[str, Agent],
        timeout_seconds: float = settings.PIPELINE_TIMEOUT_SECONDS,
        job_type: str = settings.PIPELINE_JOB_TYPE,
        poll_interval: float = 0.5,
    ):
        unknown = set(agents) - set(STAGES)
        if unknown:
            raise ValueError(f"Unknown pipeline stage(s): {sorted(unknown)}")
        self.store = store
        self.agents = agents
        self.timeout_seconds = timeout_seconds
        self.job_type = job_type
        self.poll_interval = poll_interval
        self._cancel_event: Optional[threading.Event] = None
        self._abandoned: List[Future] = []
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """Abort the run in progress. Returns False if nothing is running."""
        with self._lock:
            if self._cancel_event is None:
                return False
            logger.warning("🛑 Pipeline cancellation requested")
            self._cancel_event.set()
            return True

    # ─── Helpers ─────────────────────────────────────────────────────────────

    def _load_runtime(self, errors: List[RunError]) -> RuntimeSettings:
        try:
            return load_runtime_settings(self.store)
        except Exception as e:
            logger.error(f"Could not load runtime settings, using defaults: {e}")
            errors.append(_run_error("pipeline", f"Runtime settings unavailable: {e}"))
            return RuntimeSettings()

    def _start_job(self, metadata: Dict) -> Optional[int]:
        try:
            return self.store.start_job_run(self.job_type, metadata).run_id
        except Exception as e:
            logger.error(f"Could not record job run start: {e}")
            return None

    def _wait(self, future, deadline: float, cancel_event: threading.Event):
        """Returns (result, reason) where reason is None, 'timeout' or 'cancelled'."""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                cancel_event.set()
                return None, "timeout"
            try:
                return future.result(timeout=min(self.poll_interval, remaining)), None
            except FutureTimeout:
                if cancel_event.is_set():
                    return None, "cancelled"

    def _drain_abandoned(self, deadline: float) -> bool:
        """Wait for stage threads left behind by earlier runs. False if any outlive the deadline."""
        pending = [f for f in self._abandoned if not f.done()]
        if pending:
            logger.warning(f"⏳ Waiting for {len(pending)} stage(s) left over from a previous run")
            wait(pending, timeout=max(0.0, deadline - time.monotonic()))
        self._abandoned = [f for f in pending if not f.done()]
        return not self._abandoned

    # ─── Run ─────────────────────────────────────────────────────────────────

    def run(self) -> PipelineRunResult:
        cancel_event = threading.Event()
        with self._lock:
            self._cancel_event = cancel_event

        result = PipelineRunResult(
            run_id=None,
            status="completed",
            started_at=utcnow(),
            stages={name: StageStatus(stage=name) for name in STAGES},
        )
        deadline = time.monotonic() + self.timeout_seconds
        result.run_id = self._start_job({
            "started_at": result.started_at.isoformat(),
            "timeout_seconds": self.timeout_seconds,
        })

        logger.info("=" * 60)
        logger.info(f"🚀 PIPELINE STARTED — run {result.run_id}")
        logger.info("=" * 60)

        runtime = None
        ready = False
        if not self.store.health_check():
            result.status = "failed"
            result.errors.append(_run_error(
                "pipeline", "Critical: store unavailable, database health check failed"
            ))
            logger.error("❌ Store health check failed — aborting pipeline")
        else:
            runtime = self._load_runtime(result.errors)
            if not self._drain_abandoned(deadline):
                result.status = "failed"
                result.errors.append(_run_error(
                    "pipeline", "A stage from a previous run is still running"
                ))
                logger.error("❌ Previous run's stage still running — aborting pipeline")
            else:
                ready = True

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline-stage")
        try:
            if ready:
                self._run_stages(result, runtime, executor, deadline, cancel_event)
        finally:
            executor.shutdown(wait=False)
            with self._lock:
                self._cancel_event = None

        for stage in result.stages.values():
            if stage.status == "pending":
                stage.status = "skipped"

        result.completed_at = utcnow()
        result.duration_seconds = (result.completed_at - result.started_at).total_seconds()
        self._record(result, runtime)

        logger.info("=" * 60)
        logger.info(result.summary())
        logger.info("=" * 60)
        return result

    def _run_stages(self, result, runtime, executor, deadline, cancel_event) -> None:
        for name in STAGES:
            stage = result.stages[name]
            if cancel_event.is_set():
                result.status = "failed"
                result.errors.append(_run_error(name, "Pipeline cancelled"))
                return
            if time.monotonic() >= deadline:
                result.status = "timeout"
                result.errors.append(_run_error(name, f"Pipeline timeout after {self.timeout_seconds}s"))
                return

            agent = self.agents.get(name)
            if agent is None:
                stage.status = "skipped"
                logger.info(f"--- {name.upper()}: no agent configured, skipped")
                continue

            logger.info(f"--- Stage: {name.upper()} ---")
            stage.status = "running"
            stage.started_at = utcnow()
            future = executor.submit(agent.execute, runtime, cancel_event)
            agent_result, reason = self._wait(future, deadline, cancel_event)
            if reason is not None and not future.done():
                self._abandoned.append(future)
            stage.completed_at = utcnow()

            if reason is None and agent_result.cancelled:
                reason = "timeout" if time.monotonic() >= deadline else "cancelled"

            if reason is not None:
                message = (
                    f"Pipeline timeout after {self.timeout_seconds}s"
                    if reason == "timeout" else "Pipeline cancelled"
                )
                stage.status = "failed"
                stage.error = message
                result.errors.append(_run_error(name, message))
                result.status = "timeout" if reason == "timeout" else "failed"
                logger.error(f"❌ {message} during {name}")
                return

            self._finish_stage(result, stage, agent_result)

    def _finish_stage(self, result: PipelineRunResult, stage: StageStatus, agent_result: AgentResult) -> None:
        if agent_result.success:
            stats = agent_result.data
            stage.status = "completed"
            stage.stats = stats.to_dict() if hasattr(stats, "to_dict") else stats
            result.total_items_processed += getattr(stats, "items_processed", 0) or 0
            result.errors.extend(_item_errors(stage.stage, stats))
            logger.info(f"✅ Stage {stage.stage} completed")
        else:
            stage.status = "failed"
            stage.error = agent_result.error
            result.errors.append(_run_error(stage.stage, agent_result.error or "unknown error", agent_result.stack))
            logger.error(f"❌ Stage {stage.stage} failed: {agent_result.error}")

    def _record(self, result: PipelineRunResult, runtime: Optional[RuntimeSettings]) -> None:
        if result.run_id is None:
            return
        metadata = {
            "stages": {
                name: {"status": s.status, "stats": s.stats, "error": s.error}
                for name, s in result.stages.items()
            },
            "runtime_settings": runtime.to_dict() if runtime else None,
            "completed_at": result.completed_at.isoformat(),
            "duration_seconds": result.duration_seconds,
        }
        errors = [dataclasses.asdict(e) for e in result.errors]
        try:
            if result.status == "completed":
                self.store.complete_job_run(result.run_id, result.total_items_processed, metadata, errors)
            else:
                self.store.fail_job_run(
                    result.run_id, errors, result.total_items_processed,
                    status=result.status, metadata=metadata,
                )
        except Exception as e:
            logger.error(f"Could not record job run {result.run_id}: {e}")

    # ─── Single stage ────────────────────────────────────────────────────────

    def run_stage(self, name: str) -> AgentResult:
        """Run one stage on its own, recorded as a `<name>_stage` job run."""
        agent = self.agents.get(name)
        if agent is None:
            raise ValueError(f"No agent configured for stage '{name}'")
        if not self.store.health_check():
            raise StoreUnavailableError("Store unavailable, database health check failed")
        if not self._drain_abandoned(time.monotonic() + self.timeout_seconds):
            raise RuntimeError("A stage from a previous run is still running")

        errors: List[RunError] = []
        runtime = self._load_runtime(errors)
        job = self.store.start_job_run(f"{name}_stage", {"runtime_settings": runtime.to_dict()})
        agent_result = agent.execute(runtime)

        if agent_result.success:
            stats = agent_result.data
            errors.extend(_item_errors(name, stats))
            self.store.complete_job_run(
                job.run_id,
                getattr(stats, "items_processed", 0) or 0,
                {"stats": stats.to_dict() if hasattr(stats, "to_dict") else stats},
                [dataclasses.asdict(e) for e in errors],
            )
        else:
            errors.append(_run_error(name, agent_result.error or "unknown error", agent_result.stack))
            self.store.fail_job_run(job.run_id, [dataclasses.asdict(e) for e in errors])
        return agent_result
