"""
Collection Agent
-----------------
Pulls raw forum items from one or more sources and persists the new ones.

Supported sources (v1):
  - Hacker News (public Firebase API): stories plus top-level comments

A source implements `collect(categories, since, max_items)` and yields
RawItem records; recoverable per-item failures are kept on `source.errors`.
Persistence deduplicates on (source_platform, source_id).

Input:  RuntimeSettings
Output: CollectionStats
"""

import re
import time
import random
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, List, Optional, Sequence

import requests
from bs4 import BeautifulSoup

from agents.base import Agent
from config.settings import settings
from db.models import utcnow
from models.schemas import CollectionStats, ItemError, RawItem
from providers.base import RateLimiter

logger = logging.getLogger(__name__)

HN_PLATFORM = "hackernews"

HN_CATEGORY_ENDPOINTS = {
    "ask": "askstories",
    "show": "showstories",
    "top": "topstories",
    "new": "newstories",
}


class CollectionError(RuntimeError):
    """A source could not be read after all retries."""


def html_to_text(html: str) -> str:
    """Flatten an HN HTML fragment: paragraphs, line breaks, `label (href)` links."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for a in soup.find_all("a"):
        href = a.get("href")
        label = a.get_text()
        a.replace_with(f"{label} ({href})" if href else label)
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for p in soup.find_all("p"):
        p.insert_before("\n\n")
        p.unwrap()
    text = soup.get_text()
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _from_unix(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


# ─── Sources ─────────────────────────────────────────────────────────────────


class HackerNewsSource:
    platform = HN_PLATFORM

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        api_base: str = settings.HN_API_BASE,
        web_base: str = settings.HN_WEB_BASE,
        max_comments_per_story: int = settings.MAX_COMMENTS_PER_STORY,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": settings.USER_AGENT})
        self.api_base = api_base.rstrip("/")
        self.web_base = web_base.rstrip("/")
        self.max_comments_per_story = max_comments_per_story
        self.rate_limiter = rate_limiter or RateLimiter(settings.SCRAPE_DELAY_SECONDS)
        self._sleep = sleep
        self.errors: List[ItemError] = []

    def _get_json(self, url: str):
        """HTTP GET with retry + exponential backoff."""
        for attempt in range(settings.MAX_RETRIES):
            self.rate_limiter.wait()
            try:
                resp = self.session.get(url, timeout=settings.REQUEST_TIMEOUT)
                resp.raise_for_status()
                return resp.json()
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status is not None and status < 500 and status != 429:
                    raise CollectionError(f"GET {url} returned HTTP {status}") from e
                self._backoff(url, attempt, e)
            except (requests.RequestException, ValueError) as e:
                self._backoff(url, attempt, e)
        raise CollectionError(f"Failed to fetch {url} after {settings.MAX_RETRIES} attempts")

    def _backoff(self, url: str, attempt: int, error: Exception) -> None:
        if attempt >= settings.MAX_RETRIES - 1:
            logger.warning(f"Attempt {attempt+1} failed for {url}: {error}")
            return
        wait = (2 ** attempt) + random.uniform(0, 1)
        logger.warning(f"Attempt {attempt+1} failed for {url}: {error}. Retrying in {wait:.1f}s")
        self._sleep(wait)

    def item_url(self, item_id: int) -> str:
        return f"{self.web_base}/item?id={item_id}"

    def get_story_ids(self, category: str) -> List[int]:
        endpoint = HN_CATEGORY_ENDPOINTS.get(category)
        if endpoint is None:
            raise ValueError(f"Unknown Hacker News category: {category}")
        return self._get_json(f"{self.api_base}/{endpoint}.json") or []

    def get_item(self, item_id: int) -> Optional[dict]:
        return self._get_json(f"{self.api_base}/item/{item_id}.json")

    def _story_item(self, story: dict, category: str) -> Optional[RawItem]:
        title = (story.get("title") or "").strip()
        body = html_to_text((story.get("text") or "").strip())
        text = f"{title}\n\n{body}" if body else title
        if not text or not story.get("by"):
            return None
        return RawItem(
            source_platform=self.platform,
            source_id=f"hn_story_{story['id']}",
            source_url=self.item_url(story["id"]),
            category=category,
            author=story["by"],
            text=text,
            created_at=_from_unix(story["time"]),
        )

    def _comment_item(self, comment: dict, category: str) -> Optional[RawItem]:
        text = html_to_text((comment.get("text") or "").strip())
        if not text or not comment.get("by"):
            return None
        return RawItem(
            source_platform=self.platform,
            source_id=f"hn_comment_{comment['id']}",
            source_url=self.item_url(comment["id"]),
            category=category,
            author=comment["by"],
            text=text,
            created_at=_from_unix(comment["time"]),
        )

    @staticmethod
    def _usable(item: Optional[dict]) -> bool:
        return bool(item) and not item.get("deleted") and not item.get("dead") and "time" in item

    def collect(self, categories: Sequence[str], since: datetime, max_items: int) -> Iterator[RawItem]:
        self.errors = []
        for category in categories:
            story_ids = self.get_story_ids(category)[:max_items]
            logger.info(f"  Fetching {len(story_ids)} stories from {category}...")

            for story_id in story_ids:
                try:
                    story = self.get_item(story_id)
                except CollectionError as e:
                    self.errors.append(ItemError(item_id=story_id, message=str(e)))
                    continue
                if not self._usable(story) or _from_unix(story["time"]) < since:
                    continue

                item = self._story_item(story, category)
                if item:
                    yield item

                for comment_id in (story.get("kids") or [])[: self.max_comments_per_story]:
                    try:
                        comment = self.get_item(comment_id)
                    except CollectionError as e:
                        logger.warning(f"  Could not fetch comment {comment_id}: {e}")
                        self.errors.append(ItemError(item_id=comment_id, message=str(e)))
                        continue
                    if not self._usable(comment) or comment.get("type") != "comment":
                        continue
                    if _from_unix(comment["time"]) < since:
                        continue
                    item = self._comment_item(comment, category)
                    if item:
                        yield item


# ─── CollectionAgent ─────────────────────────────────────────────────────────


class CollectionAgent(Agent):
    """
    Stage 1: Collection

    Input:  RuntimeSettings
    Output: CollectionStats
    """

    def __init__(self, store, sources: Sequence, clock: Callable[[], datetime] = utcnow):
        super().__init__(name="CollectionAgent")
        self.store = store
        self.sources = list(sources)
        self._clock = clock

    def run(self, runtime) -> CollectionStats:
        categories = list(runtime.monitored_categories or [])
        if not categories:
            raise ValueError("No monitored categories configured. Run `python run.py seed` first.")

        since = self._clock() - timedelta(days=runtime.scrape_lookback_days)
        stats = CollectionStats()
        self.logger.info(
            f"Collecting {categories} since {since.isoformat()} "
            f"(max {runtime.max_items_per_category} stories/category)"
        )

        for source in self.sources:
            for category in categories:
                self.check_cancelled()
                try:
                    items = list(source.collect([category], since, runtime.max_items_per_category))
                except Exception as e:
                    self.logger.error(f"  ❌ {category}: {e}")
                    stats.errors_encountered += 1
                    stats.errors.append(ItemError(item_id=None, message=f"{category}: {e}"))
                    continue

                item_errors = list(getattr(source, "errors", []) or [])
                stats.errors.extend(item_errors)
                new, skipped = self.store.insert_complaints(items)

                stats.total_fetched += len(items)
                stats.new_items += new
                stats.duplicates_skipped += skipped
                stats.category_stats[category] = {
                    "fetched": len(items),
                    "new": new,
                    "duplicates": skipped,
                    "errors": len(item_errors),
                }
                self.logger.info(
                    f"  → {category}: {len(items)} fetched, {new} new, {skipped} duplicates"
                )

        self.logger.info(
            f"Collection complete: {stats.new_items} new, "
            f"{stats.duplicates_skipped} duplicates, {stats.errors_encountered} error(s)"
        )
        return stats
