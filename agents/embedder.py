"""
Embedding Agent
----------------
Turns complaint text into vectors through an injected EmbeddingProvider.

  - texts are truncated to EMBEDDING_MAX_TEXT_LENGTH characters
  - one provider call per batch of `embedding_batch_size` complaints
  - retries with exponential backoff (base * 2**attempt), rate limited
  - items that already carry an embedding are cache hits, never re-embedded
  - a batch that still fails after all retries is marked is_complaint=False
    so it is never picked up again (fail closed)

Input:  RuntimeSettings
Output: EmbeddingStats
"""

import logging
import time
from typing import Callable, List, Optional, Sequence

from agents.base import Agent
from config.settings import settings
from models.schemas import EmbeddingResult, EmbeddingStats, ItemError
from providers.base import ProviderError, RateLimiter, call_with_retries

logger = logging.getLogger(__name__)


class EmbeddingAgent(Agent):
    """
    Stage 3: Embedding generation

    Input:  RuntimeSettings
    Output: EmbeddingStats
    """

    def __init__(
        self,
        store,
        provider,
        rate_limiter: Optional[RateLimiter] = None,
        max_retries: int = settings.EMBEDDING_MAX_RETRIES,
        retry_base_delay: float = settings.EMBEDDING_RETRY_BASE_DELAY,
        max_text_length: int = settings.EMBEDDING_MAX_TEXT_LENGTH,
        limit: Optional[int] = settings.EMBEDDING_LIMIT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(name="EmbeddingAgent")
        self.store = store
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_text_length = max_text_length
        self.limit = limit
        self._sleep = sleep

    def generate_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed `texts` in a single provider call, with retries."""
        truncated = [(t or "")[: self.max_text_length] for t in texts]

        def attempt() -> List[List[float]]:
            vectors = self.provider.embed(truncated)
            if len(vectors) != len(truncated):
                raise ProviderError(
                    f"Provider returned {len(vectors)} vectors for {len(truncated)} texts"
                )
            dims = {len(v) for v in vectors}
            if len(dims) > 1 or 0 in dims:
                raise ProviderError(f"Inconsistent embedding dimensions: {sorted(dims)}")
            return [[float(x) for x in v] for v in vectors]

        return call_with_retries(
            attempt,
            max_attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            rate_limiter=self.rate_limiter,
            sleep=self._sleep,
            description="Embedding generation",
        )

    def process_batch(self, complaints: Sequence) -> List[EmbeddingResult]:
        results: List[EmbeddingResult] = []
        to_embed = []

        for complaint in complaints:
            if complaint.embedding:
                results.append(EmbeddingResult(
                    complaint_id=complaint.complaint_id,
                    success=True,
                    embedding=list(complaint.embedding),
                    cached=True,
                ))
            else:
                to_embed.append(complaint)

        if not to_embed:
            return results

        try:
            vectors = self.generate_embeddings([c.text for c in to_embed])
        except ProviderError as e:
            ids = [c.complaint_id for c in to_embed]
            self.logger.error(
                f"❌ Batch of {len(ids)} failed permanently, marking as non-complaints: {e}"
            )
            self.store.mark_not_complaint(ids)
            results.extend(
                EmbeddingResult(complaint_id=cid, success=False, error=str(e)) for cid in ids
            )
            return results

        for complaint, vector in zip(to_embed, vectors):
            try:
                self.store.set_embedding(complaint.complaint_id, vector)
                results.append(EmbeddingResult(
                    complaint_id=complaint.complaint_id, success=True, embedding=vector,
                ))
            except Exception as e:
                self.logger.error(f"Failed to store embedding for {complaint.complaint_id}: {e}")
                results.append(EmbeddingResult(
                    complaint_id=complaint.complaint_id, success=False, error=str(e),
                ))
        return results

    def run(self, runtime=None) -> EmbeddingStats:
        batch_size = runtime.embedding_batch_size if runtime else settings.EMBEDDING_BATCH_SIZE
        batch_size = max(1, batch_size)
        stats = EmbeddingStats()

        pending = self.store.get_complaints_needing_embedding(self.limit)
        if not pending:
            self.logger.info("No complaints need embeddings")
            return stats
        self.logger.info(f"Embedding {len(pending)} complaint(s) in batches of {batch_size}")

        for start in range(0, len(pending), batch_size):
            self.check_cancelled()
            batch = pending[start:start + batch_size]
            results = self.process_batch(batch)

            stats.batches_processed += 1
            stats.total_processed += len(results)
            for r in results:
                if r.success:
                    stats.successful_embeddings += 1
                    if r.cached:
                        stats.cached_embeddings += 1
                else:
                    stats.failed_embeddings += 1
                    stats.errors.append(ItemError(item_id=r.complaint_id, message=r.error or ""))

        self.logger.info(
            f"Embeddings: {stats.successful_embeddings} ok, {stats.failed_embeddings} failed, "
            f"{stats.cached_embeddings} cached, {stats.batches_processed} batch(es)"
        )
        return stats
