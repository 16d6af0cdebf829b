"""
Pydantic schemas for API request/response validation.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime


# ─── Request Schemas ─────────────────────────────────────────────────────────

class UpdateSettingRequest(BaseModel):
    value: Any
    description: Optional[str] = None


# ─── Response Schemas ────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    database: str
    version: str
    timestamp: datetime


class QuoteResponse(BaseModel):
    complaint_id: int
    source_platform: str
    source_url: str
    category: str
    author: str
    text: str
    created_at: Optional[str] = None


class OpportunityResponse(BaseModel):
    opportunity_id: int
    cluster_id: int
    score: int
    scoring_factors: Dict[str, Any]
    is_bookmarked: bool
    summary: str
    complaint_count: int
    platform_distribution: Dict[str, int]
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    representative_quote: Optional[QuoteResponse] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class OpportunityDetailResponse(OpportunityResponse):
    quotes: List[QuoteResponse] = []


class BookmarkResponse(BaseModel):
    opportunity_id: int
    is_bookmarked: bool


class SettingResponse(BaseModel):
    key: str
    value: Any
    description: Optional[str] = None
    updated_at: Optional[datetime] = None


class StatusResponse(BaseModel):
    total_complaints: int
    total_clusters: int
    total_opportunities: int
    last_job_run: Optional[Dict[str, Any]] = None
    pipeline: Dict[str, Any] = Field(default_factory=dict)


class PipelineTriggerResponse(BaseModel):
    status: str
    message: str
