from .base import ProviderError, RateLimiter, call_with_retries
from .embedding import (
    EmbeddingProvider, OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider, build_embedding_provider,
)
from .summary import SummaryProvider, AnthropicSummaryProvider, build_summary_prompt

__all__ = [
    "ProviderError", "RateLimiter", "call_with_retries",
    "EmbeddingProvider", "OpenAIEmbeddingProvider",
    "SentenceTransformerEmbeddingProvider", "build_embedding_provider",
    "SummaryProvider", "AnthropicSummaryProvider", "build_summary_prompt",
]
