"""
Seed the settings table with default runtime configuration.

Only missing keys are inserted, so re-seeding never overwrites a value an
operator has changed.
"""

import logging
from typing import Any, Dict, List

from config.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: List[Dict[str, Any]] = [
    {
        "key": "min_score_threshold",
        "value": settings.MIN_SCORE_THRESHOLD,
        "description": "Minimum opportunity score (0-100) for a cluster to become an opportunity.",
    },
    {
        "key": "min_complaint_count",
        "value": 10,
        "description": "Minimum number of complaints a cluster needs before it is scored.",
    },
    {
        "key": "similarity_threshold",
        "value": settings.SIMILARITY_THRESHOLD,
        "description": "Cosine similarity (0-1) required to join an existing cluster.",
    },
    {
        "key": "data_retention_days",
        "value": settings.DATA_RETENTION_DAYS,
        "description": "Days to retain complaint data before cleanup deletes it.",
    },
    {
        "key": "embedding_batch_size",
        "value": settings.EMBEDDING_BATCH_SIZE,
        "description": "Complaints per embedding provider request.",
    },
    {
        "key": "monitored_categories",
        "value": list(settings.MONITORED_CATEGORIES),
        "description": "Hacker News lists to collect from (ask, show, top, new).",
    },
    {
        "key": "scrape_lookback_days",
        "value": settings.SCRAPE_LOOKBACK_DAYS,
        "description": "Days to look back when collecting new content.",
    },
    {
        "key": "max_items_per_category",
        "value": settings.MAX_ITEMS_PER_CATEGORY,
        "description": "Maximum stories to fetch per category per run.",
    },
]


def seed_settings(store) -> int:
    """Insert any missing default settings. Returns the number inserted."""
    existing = store.get_all_settings()
    inserted = 0
    for entry in DEFAULT_SETTINGS:
        if entry["key"] in existing:
            continue
        store.set_setting(entry["key"], entry["value"], entry["description"])
        inserted += 1
    logger.info(f"Seeded {inserted} setting(s); {len(existing)} already present")
    return inserted
