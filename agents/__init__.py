from .base import Agent, AgentResult, PipelineCancelled
from .collector import CollectionAgent, HackerNewsSource
from .detector import ComplaintDetector, DetectionAgent
from .embedder import EmbeddingAgent
from .clusterer import ClusteringAgent, ClusteringEngine
from .scorer import ScoringAgent, ScoringEngine
from .cleanup import CleanupAgent
from .orchestrator import PipelineOrchestrator

__all__ = [
    "Agent", "AgentResult", "PipelineCancelled",
    "CollectionAgent", "HackerNewsSource",
    "ComplaintDetector", "DetectionAgent",
    "EmbeddingAgent",
    "ClusteringAgent", "ClusteringEngine",
    "ScoringAgent", "ScoringEngine",
    "CleanupAgent", "PipelineOrchestrator",
]
