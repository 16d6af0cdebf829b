"""
Configuration & Settings
Idea Getter — complaint intelligence pipeline
"""

from pydantic import BaseModel
from typing import List, Optional
import os


class Settings(BaseModel):
    # App
    APP_NAME: str = "Idea Getter"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./idea_getter.db")

    # Providers
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    ANTHROPIC_API_KEY: Optional[str] = os.getenv("ANTHROPIC_API_KEY")
    EMBEDDING_BACKEND: str = os.getenv("EMBEDDING_BACKEND", "openai")  # openai | local
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    LOCAL_EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"
    SUMMARY_MODEL: str = "claude-3-5-haiku-latest"
    SUMMARY_MAX_TOKENS: int = 150
    PROVIDER_REQUEST_DELAY_SECONDS: float = 0.2

    # Embedding
    EMBEDDING_BATCH_SIZE: int = 50
    EMBEDDING_MAX_TEXT_LENGTH: int = 8000
    EMBEDDING_MAX_RETRIES: int = 3
    EMBEDDING_RETRY_BASE_DELAY: float = 1.0

    # Clustering
    SIMILARITY_THRESHOLD: float = 0.75
    SUMMARY_SAMPLE_SIZE: int = 10
    SUMMARY_TEXT_LENGTH: int = 500
    SUMMARY_MAX_RETRIES: int = 2

    # Scoring
    MIN_SCORE_THRESHOLD: int = 70
    MIN_COMPLAINT_COUNT: int = 1
    GROWTH_WINDOW_DAYS: int = 14
    WEIGHT_COMPLAINT_COUNT: float = 2.0
    WEIGHT_DAYS_ACTIVE: float = 1.0
    WEIGHT_GROWTH_PERCENTAGE: float = 0.5
    WEIGHT_WORKAROUND_COUNT: float = 5.0
    WEIGHT_PLATFORM_COUNT: float = 3.0

    # Pipeline
    PIPELINE_JOB_TYPE: str = "daily_pipeline"
    PIPELINE_TIMEOUT_SECONDS: float = 2 * 60 * 60
    DETECTION_LIMIT: Optional[int] = None
    EMBEDDING_LIMIT: int = 500
    CLUSTERING_LIMIT: int = 500
    DATA_RETENTION_DAYS: int = 30

    # Collection (Hacker News)
    HN_API_BASE: str = "https://hacker-news.firebaseio.com/v0"
    HN_WEB_BASE: str = "https://news.ycombinator.com"
    MONITORED_CATEGORIES: List[str] = ["ask", "show"]
    SCRAPE_LOOKBACK_DAYS: int = 7
    MAX_ITEMS_PER_CATEGORY: int = 100
    MAX_COMMENTS_PER_STORY: int = 10
    SCRAPE_DELAY_SECONDS: float = 0.1
    REQUEST_TIMEOUT: int = 30
    MAX_RETRIES: int = 3
    USER_AGENT: str = "idea-getter/1.0 (+https://news.ycombinator.com)"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000


settings = Settings()
