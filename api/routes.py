"""
FastAPI Route Handlers
Idea Getter — read-only opportunity queries plus a settings surface.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Depends

from api.schemas import (
    HealthResponse, StatusResponse, OpportunityResponse, OpportunityDetailResponse,
    BookmarkResponse, SettingResponse, UpdateSettingRequest, PipelineTriggerResponse,
)
from config.runtime import validate_setting
from config.settings import settings
from db.models import utcnow
from db.store import Store
from utils.pipeline import PipelineTrigger, build_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

# Process-wide instances, created on first use (tests override the dependencies)
_store: Optional[Store] = None
_trigger: Optional[PipelineTrigger] = None


def get_store() -> Store:
    global _store
    if _store is None:
        _store = Store()
    return _store


def get_trigger(store: Store = Depends(get_store)) -> PipelineTrigger:
    global _trigger
    if _trigger is None:
        _trigger = PipelineTrigger(build_orchestrator(store), store)
    return _trigger


# ─── System ──────────────────────────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(store: Store = Depends(get_store)):
    healthy = store.health_check()
    if not healthy:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return HealthResponse(
        status="ok",
        database="connected",
        version=settings.APP_VERSION,
        timestamp=utcnow(),
    )


@router.get("/status", response_model=StatusResponse, tags=["System"])
def get_status(store: Store = Depends(get_store), trigger: PipelineTrigger = Depends(get_trigger)):
    stats = store.get_system_stats(settings.PIPELINE_JOB_TYPE)
    return StatusResponse(**stats, pipeline=trigger.state())


# ─── Opportunities ───────────────────────────────────────────────────────────

@router.get("/opportunities", response_model=List[OpportunityResponse], tags=["Opportunities"])
def list_opportunities(
    min_score: int = 0,
    bookmarked: bool = False,
    limit: int = 50,
    store: Store = Depends(get_store),
):
    """Opportunities sorted by score, with cluster summary and representative quote."""
    return store.list_opportunities(min_score=min_score, bookmarked_only=bookmarked, limit=limit)


@router.get("/opportunities/{opportunity_id}", response_model=OpportunityDetailResponse,
            tags=["Opportunities"])
def get_opportunity(opportunity_id: int, store: Store = Depends(get_store)):
    details = store.get_opportunity_details(opportunity_id)
    if details is None:
        raise HTTPException(status_code=404, detail=f"Opportunity {opportunity_id} not found")
    return details


@router.post("/opportunities/{opportunity_id}/bookmark", response_model=BookmarkResponse,
             tags=["Opportunities"])
def toggle_bookmark(opportunity_id: int, store: Store = Depends(get_store)):
    opp = store.toggle_bookmark(opportunity_id)
    if opp is None:
        raise HTTPException(status_code=404, detail=f"Opportunity {opportunity_id} not found")
    return BookmarkResponse(opportunity_id=opp.opportunity_id, is_bookmarked=opp.is_bookmarked)


# ─── Settings ────────────────────────────────────────────────────────────────

@router.get("/settings", response_model=List[SettingResponse], tags=["Settings"])
def list_settings(store: Store = Depends(get_store)):
    return [
        SettingResponse(key=s.key, value=s.value, description=s.description, updated_at=s.updated_at)
        for s in store.list_settings()
    ]


@router.put("/settings/{key}", response_model=SettingResponse, tags=["Settings"])
def update_setting(key: str, request: UpdateSettingRequest, store: Store = Depends(get_store)):
    error = validate_setting(key, request.value)
    if error:
        raise HTTPException(status_code=400, detail=error)
    row = store.set_setting(key, request.value, request.description)
    logger.info(f"Setting '{key}' updated")
    return SettingResponse(key=row.key, value=row.value, description=row.description,
                           updated_at=row.updated_at)


# ─── Pipeline ────────────────────────────────────────────────────────────────

@router.post("/pipeline/run", response_model=PipelineTriggerResponse, status_code=202,
             tags=["Pipeline"])
def run_pipeline(trigger: PipelineTrigger = Depends(get_trigger)):
    """Start a pipeline run in the background."""
    if not trigger.trigger_async():
        raise HTTPException(status_code=409, detail="A pipeline run is already in progress")
    return PipelineTriggerResponse(status="started", message="Pipeline run started")
