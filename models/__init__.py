"""
Core data models for the complaint intelligence pipeline.
"""

from .schemas import (
    RawItem,
    ItemError,
    MatchedPatterns,
    DetectionResult,
    DetectionStats,
    EmbeddingResult,
    EmbeddingStats,
    ClusteringResult,
    ClusteringStats,
    ScoringFactors,
    ScoringResult,
    ScoringStats,
    CollectionStats,
    CleanupStats,
    STAGES,
    StageStatus,
    RunError,
    PipelineRunResult,
)

__all__ = [
    "RawItem",
    "ItemError",
    "MatchedPatterns",
    "DetectionResult",
    "DetectionStats",
    "EmbeddingResult",
    "EmbeddingStats",
    "ClusteringResult",
    "ClusteringStats",
    "ScoringFactors",
    "ScoringResult",
    "ScoringStats",
    "CollectionStats",
    "CleanupStats",
    "STAGES",
    "StageStatus",
    "RunError",
    "PipelineRunResult",
]
