"""
Base Agent class
Idea Getter — complaint intelligence pipeline
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Dict
from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading
import traceback

from db.models import utcnow

logger = logging.getLogger(__name__)


class PipelineCancelled(Exception):
    """Raised inside a stage when its run has been cancelled or timed out."""


@dataclass
class AgentResult:
    """Standardized result envelope returned by every agent."""
    agent_name: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    stack: Optional[str] = None
    cancelled: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def __repr__(self):
        status = "✅" if self.success else "❌"
        dur = f" ({self.duration_seconds:.1f}s)" if self.duration_seconds else ""
        return f"{status} {self.agent_name}{dur}"


class Agent(ABC):
    """
    Abstract base class for all pipeline agents.
    Subclasses must implement `run(data)`; `data` is the run's
    RuntimeSettings snapshot.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"agent.{name}")
        # Each execute() call watches its own event, so a stage thread left
        # behind by a cancelled run never sees the next run's event.
        self._local = threading.local()

    @property
    def cancelled(self) -> bool:
        event = getattr(self._local, "cancel_event", None)
        return event is not None and event.is_set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelled(f"{self.name} cancelled")

    @abstractmethod
    def run(self, data: Any) -> Any:
        raise NotImplementedError

    def execute(self, data: Any, cancel_event: Optional[threading.Event] = None) -> AgentResult:
        """
        Wraps `run()` with timing, structured logging, and error handling.
        `cancel_event` is visible to `cancelled` only on the calling thread
        and only for this call.
        """
        started_at = utcnow()
        self.logger.info(f"[{self.name}] Starting...")
        self._local.cancel_event = cancel_event
        try:
            result = self.run(data)
            finished_at = utcnow()
            duration = (finished_at - started_at).total_seconds()
            self.logger.info(f"[{self.name}] Completed in {duration:.2f}s")
            return AgentResult(
                agent_name=self.name,
                success=True,
                data=result,
                started_at=started_at,
                finished_at=finished_at,
            )
        except PipelineCancelled as e:
            self.logger.warning(f"[{self.name}] Cancelled: {e}")
            return AgentResult(
                agent_name=self.name,
                success=False,
                error=str(e),
                cancelled=True,
                started_at=started_at,
                finished_at=utcnow(),
            )
        except Exception as e:
            finished_at = utcnow()
            stack = traceback.format_exc()
            self.logger.error(f"[{self.name}] Failed: {e}\n{stack}")
            return AgentResult(
                agent_name=self.name,
                success=False,
                error=str(e),
                stack=stack,
                started_at=started_at,
                finished_at=finished_at,
            )
        finally:
            self._local.cancel_event = None

    def __repr__(self):
        return f"<Agent: {self.name}>"
