"""
Embedding providers.

A provider turns a list of texts into one vector per text, in order. It
does no batching, truncation or retrying of its own; the EmbeddingAgent
owns that policy.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from config.settings import settings
from providers.base import ProviderError

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    name: str = "embedding"

    @abstractmethod
    def embed(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings endpoint (`text-embedding-3-small` by default)."""

    name = "openai"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        self.model = model or settings.EMBEDDING_MODEL
        if client is None:
            from openai import OpenAI

            api_key = api_key or settings.OPENAI_API_KEY
            if not api_key:
                raise ProviderError("OPENAI_API_KEY is required for embedding generation")
            client = OpenAI(api_key=api_key)
        self.client = client

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            response = self.client.embeddings.create(model=self.model, input=texts)
        except Exception as e:
            raise ProviderError(f"OpenAI embeddings request failed: {e}") from e

        data = sorted(response.data, key=lambda d: d.index)
        vectors = [list(d.embedding) for d in data]
        if len(vectors) != len(texts):
            raise ProviderError(
                f"OpenAI returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers model; no network or API key needed."""

    name = "sentence-transformers"

    def __init__(self, model_name: Optional[str] = None, model=None):
        self.model_name = model_name or settings.LOCAL_EMBEDDING_MODEL
        if model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading sentence-transformer model '{self.model_name}'...")
            model = SentenceTransformer(self.model_name)
        self.model = model

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            vectors = self.model.encode(texts, show_progress_bar=False)
        except Exception as e:
            raise ProviderError(f"Local embedding failed: {e}") from e
        return [[float(v) for v in row] for row in vectors]


def build_embedding_provider(backend: Optional[str] = None) -> EmbeddingProvider:
    backend = (backend or settings.EMBEDDING_BACKEND).lower()
    if backend == "openai":
        return OpenAIEmbeddingProvider()
    if backend in ("local", "sentence-transformers"):
        return SentenceTransformerEmbeddingProvider()
    raise ValueError(f"Unknown embedding backend: {backend}")
