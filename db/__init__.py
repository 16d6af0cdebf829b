from .database import init_db, make_engine, make_session_factory, engine, SessionLocal
from .models import (
    Base, Complaint, Cluster, Opportunity, Setting, JobRun, utcnow
)
from .store import Store, StoreUnavailableError
from .seed import DEFAULT_SETTINGS, seed_settings

__all__ = [
    "init_db", "make_engine", "make_session_factory", "engine", "SessionLocal",
    "Base", "Complaint", "Cluster", "Opportunity", "Setting", "JobRun", "utcnow",
    "Store", "StoreUnavailableError", "DEFAULT_SETTINGS", "seed_settings",
]
