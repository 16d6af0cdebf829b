"""
Runtime settings snapshot.

Operator-editable values live in the `settings` table and are read fresh at
the start of every pipeline run. Missing keys, or values of the wrong type,
fall back to the process defaults in `config.settings`.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class RuntimeSettings:
    min_score_threshold: int = settings.MIN_SCORE_THRESHOLD
    min_complaint_count: int = settings.MIN_COMPLAINT_COUNT
    similarity_threshold: float = settings.SIMILARITY_THRESHOLD
    data_retention_days: int = settings.DATA_RETENTION_DAYS
    embedding_batch_size: int = settings.EMBEDDING_BATCH_SIZE
    monitored_categories: List[str] = field(
        default_factory=lambda: list(settings.MONITORED_CATEGORIES)
    )
    scrape_lookback_days: int = settings.SCRAPE_LOOKBACK_DAYS
    max_items_per_category: int = settings.MAX_ITEMS_PER_CATEGORY

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# key -> accepted python types
_RUNTIME_KEYS = {
    "min_score_threshold": (int, float),
    "min_complaint_count": (int,),
    "similarity_threshold": (int, float),
    "data_retention_days": (int,),
    "embedding_batch_size": (int,),
    "monitored_categories": (list,),
    "scrape_lookback_days": (int,),
    "max_items_per_category": (int,),
}


def load_runtime_settings(store) -> RuntimeSettings:
    """Read every known runtime key from the store into a fresh snapshot."""
    stored = store.get_all_settings()
    runtime = RuntimeSettings()

    for key, types in _RUNTIME_KEYS.items():
        if key not in stored:
            continue
        value = stored[key]
        # bool is an int subclass; never accept it for numeric keys
        if isinstance(value, bool) or not isinstance(value, types):
            logger.warning(f"Ignoring setting {key}={value!r}: unexpected type")
            continue
        setattr(runtime, key, value)

    if runtime.embedding_batch_size < 1:
        logger.warning("embedding_batch_size < 1, using 1")
        runtime.embedding_batch_size = 1

    return runtime


def validate_setting(key: str, value: Any) -> Optional[str]:
    """Error message if `value` is not acceptable for a known runtime key."""
    types = _RUNTIME_KEYS.get(key)
    if types is None:
        return None
    if isinstance(value, bool) or not isinstance(value, types):
        names = " or ".join(t.__name__ for t in types)
        return f"Setting '{key}' must be {names}"
    if key == "monitored_categories" and not all(isinstance(v, str) for v in value):
        return "Setting 'monitored_categories' must be a list of strings"
    if key == "similarity_threshold" and not 0 <= value <= 1:
        return "Setting 'similarity_threshold' must be between 0 and 1"
    if key == "min_score_threshold" and not 0 <= value <= 100:
        return "Setting 'min_score_threshold' must be between 0 and 100"
    if key != "similarity_threshold" and key != "monitored_categories" and value < 0:
        return f"Setting '{key}' must not be negative"
    return None
