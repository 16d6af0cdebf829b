"""
Shared fixtures: in-memory store, fake providers and complaint builders.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

import pytest

from db.store import Store
from models.schemas import RawItem
from providers.base import ProviderError

NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeEmbeddingProvider:
    """Deterministic vectors; records every call."""

    name = "fake"

    def __init__(self, vector_fn: Optional[Callable[[str], List[float]]] = None, fail_times: int = 0):
        self.vector_fn = vector_fn or (lambda text: [float(len(text) % 7 + 1), 1.0, 0.5])
        self.fail_times = fail_times
        self.calls: List[List[str]] = []

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProviderError("quota exceeded")
        return [self.vector_fn(t) for t in texts]


class FailingEmbeddingProvider(FakeEmbeddingProvider):
    def embed(self, texts):
        self.calls.append(list(texts))
        raise ProviderError("invalid api key")


class FakeSummaryProvider:
    name = "fake"

    def __init__(self, summary: str = "Users cannot export their data.", fail: bool = False):
        self.summary = summary
        self.fail = fail
        self.calls: List[List[str]] = []

    def summarize(self, texts):
        self.calls.append(list(texts))
        if self.fail:
            raise ProviderError("malformed response")
        return self.summary


def no_sleep(seconds):
    pass


@pytest.fixture
def store():
    return Store.from_url("sqlite://")


@pytest.fixture
def file_store(tmp_path):
    """SQLite on disk: one connection per thread, for tests that write concurrently."""
    return Store.from_url(f"sqlite:///{tmp_path / 'ideas.db'}")


def make_item(source_id: str, text: str = "The export is broken", category: str = "ask",
              created_at: Optional[datetime] = None, platform: str = "hackernews") -> RawItem:
    return RawItem(
        source_platform=platform,
        source_id=source_id,
        source_url=f"https://news.ycombinator.com/item?id={source_id}",
        category=category,
        author="alice",
        text=text,
        created_at=created_at or NOW,
    )


def add_complaints(store: Store, texts: Sequence[str], embeddings: Optional[Sequence] = None,
                   prefix: str = "c", category: str = "ask",
                   created_at: Optional[datetime] = None) -> List[int]:
    """Insert detected complaints (optionally embedded); returns their ids."""
    items = [
        make_item(f"{prefix}{i}", text, category=category, created_at=created_at)
        for i, text in enumerate(texts)
    ]
    store.insert_complaints(items)
    ids = []
    for i, item in enumerate(items):
        row = store.get_complaint_by_source(item.source_platform, item.source_id)
        store.mark_detection(row.complaint_id, True)
        if embeddings is not None:
            store.set_embedding(row.complaint_id, embeddings[i])
        ids.append(row.complaint_id)
    return ids


def similar_vectors(n: int) -> List[List[float]]:
    """n vectors with pairwise cosine similarity well above 0.8."""
    return [[1.0, 0.05 * (i % 4), 0.02 * (i % 3)] for i in range(n)]


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)
