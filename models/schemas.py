"""
Core data models / schemas for the complaint intelligence pipeline.

These are the plain result envelopes passed between stages and recorded on
job runs; persistent entities live in `db.models`.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Dict, Any
from datetime import datetime


def _to_dict(obj) -> Dict[str, Any]:
    """asdict() with datetimes rendered as ISO strings (JSON-safe)."""
    def convert(value):
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        if isinstance(value, list):
            return [convert(v) for v in value]
        return value
    return convert(asdict(obj))


# ---------------------------------------------------------------------------
# Raw ingestion
# ---------------------------------------------------------------------------

@dataclass
class RawItem:
    """One collected forum item with the immutable Complaint fields."""
    source_platform: str
    source_id: str
    source_url: str
    category: str
    author: str
    text: str
    created_at: datetime


@dataclass
class ItemError:
    item_id: Optional[int]
    message: str


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

@dataclass
class MatchedPatterns:
    frustration: List[str] = field(default_factory=list)
    failure: List[str] = field(default_factory=list)
    problem: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.frustration) + len(self.failure) + len(self.problem)

    @property
    def categories_hit(self) -> int:
        return sum(1 for hits in (self.frustration, self.failure, self.problem) if hits)


@dataclass
class DetectionResult:
    is_complaint: bool
    matched_patterns: MatchedPatterns
    confidence: int
    complaint_id: Optional[int] = None


@dataclass
class DetectionStats:
    total_processed: int = 0
    complaints_detected: int = 0
    non_complaints: int = 0
    pattern_breakdown: Dict[str, int] = field(
        default_factory=lambda: {"frustration": 0, "failure": 0, "problem": 0}
    )

    @property
    def items_processed(self) -> int:
        return self.total_processed

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingResult:
    complaint_id: int
    success: bool
    embedding: Optional[List[float]] = None
    cached: bool = False
    error: Optional[str] = None


@dataclass
class EmbeddingStats:
    total_processed: int = 0
    successful_embeddings: int = 0
    failed_embeddings: int = 0
    cached_embeddings: int = 0
    batches_processed: int = 0
    errors: List[ItemError] = field(default_factory=list)

    @property
    def items_processed(self) -> int:
        return self.total_processed

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------

@dataclass
class ClusteringResult:
    complaint_id: int
    cluster_id: int
    is_new_cluster: bool
    similarity: Optional[float] = None


@dataclass
class ClusteringStats:
    total_processed: int = 0
    assigned_to_existing: int = 0
    new_clusters_created: int = 0
    summaries_generated: int = 0
    summary_generation_failed: int = 0
    errors: List[ItemError] = field(default_factory=list)

    @property
    def items_processed(self) -> int:
        return self.total_processed

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

@dataclass
class ScoringFactors:
    complaint_count: int
    days_active: int
    growth_percentage: float
    workaround_count: int
    platform_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScoringResult:
    cluster_id: int
    score: int
    factors: ScoringFactors
    meets_threshold: bool
    representative_quote_id: Optional[int] = None


@dataclass
class ScoringStats:
    total_clusters_scored: int = 0
    opportunities_created: int = 0
    opportunities_updated: int = 0
    clusters_below_threshold: int = 0
    average_score: int = 0
    top_score: int = 0
    errors: List[ItemError] = field(default_factory=list)

    @property
    def items_processed(self) -> int:
        return self.total_clusters_scored

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


# ---------------------------------------------------------------------------
# Collection / cleanup
# ---------------------------------------------------------------------------

@dataclass
class CollectionStats:
    total_fetched: int = 0
    new_items: int = 0
    duplicates_skipped: int = 0
    errors_encountered: int = 0
    category_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)
    errors: List[ItemError] = field(default_factory=list)

    @property
    def items_processed(self) -> int:
        return self.new_items

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass
class CleanupStats:
    complaints_deleted: int = 0
    clusters_refreshed: int = 0
    clusters_deleted: int = 0
    opportunities_deleted: int = 0
    cutoff_date: Optional[datetime] = None
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def items_processed(self) -> int:
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


# ---------------------------------------------------------------------------
# Pipeline run
# ---------------------------------------------------------------------------

STAGES = ("collection", "detection", "embedding", "clustering", "scoring", "cleanup")


@dataclass
class StageStatus:
    stage: str
    status: str = "pending"          # pending | running | completed | failed | skipped
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed", "skipped")


@dataclass
class RunError:
    stage: str
    message: str
    timestamp: str
    stack: Optional[str] = None


@dataclass
class PipelineRunResult:
    run_id: Optional[int]
    status: str                       # completed | failed | timeout
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    stages: Dict[str, StageStatus] = field(default_factory=dict)
    total_items_processed: int = 0
    errors: List[RunError] = field(default_factory=list)

    def summary(self) -> str:
        lines = [f"Pipeline run {self.run_id}: {self.status.upper()} in {self.duration_seconds:.1f}s"]
        for name in STAGES:
            stage = self.stages.get(name)
            if stage is None:
                continue
            suffix = f" — {stage.error}" if stage.error else ""
            lines.append(f"  {name:<11} {stage.status}{suffix}")
        lines.append(f"  items processed: {self.total_items_processed}, errors: {len(self.errors)}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)
