#!/usr/bin/env python3
"""
CLI runner for the Idea Getter pipeline.

Usage:
    python run.py pipeline              # Full pipeline run (collection → cleanup)
    python run.py pipeline --if-missed  # Only if no run completed today
    python run.py stage clustering      # A single stage
    python run.py seed                  # Create tables and default settings
    python run.py api                   # Start FastAPI server
    python run.py resummarize 42        # Regenerate one cluster's summary
"""

import sys
import os
import argparse
import json
import logging

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")

STAGE_CHOICES = ["collection", "detection", "embedding", "clustering", "scoring", "cleanup"]


def _store():
    from db.database import init_db
    from db.store import Store

    init_db()
    return Store()


def run_pipeline(if_missed: bool = False, no_collect: bool = False) -> int:
    from utils.pipeline import PipelineTrigger, build_orchestrator

    store = _store()
    trigger = PipelineTrigger(build_orchestrator(store, collect=not no_collect), store)
    result = trigger.run_if_missed() if if_missed else trigger.trigger()
    if result is None:
        print("⏭️  Pipeline not started (already running, or already completed today)")
        return 0

    print("\n" + result.summary())
    for err in result.errors:
        print(f"   ❌ [{err.stage}] {err.message}")
    return 0 if result.status == "completed" else 1


def run_stage(name: str) -> int:
    from utils.pipeline import build_orchestrator

    store = _store()
    orchestrator = build_orchestrator(store)
    try:
        result = orchestrator.run_stage(name)
    except (ValueError, RuntimeError) as e:
        print(f"❌ {e}")
        return 1

    print(result)
    if result.success:
        print(json.dumps(result.data.to_dict(), indent=2, default=str))
        return 0
    print(f"❌ {result.error}")
    return 1


def seed() -> int:
    from db.seed import seed_settings

    inserted = seed_settings(_store())
    print(f"✅ Seeded {inserted} setting(s)")
    return 0


def resummarize(cluster_id: int) -> int:
    from utils.pipeline import build_clustering_engine

    store = _store()
    if store.get_cluster(cluster_id) is None:
        print(f"❌ Cluster {cluster_id} not found")
        return 1
    try:
        summary = build_clustering_engine(store).regenerate_cluster_summary(cluster_id)
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    print(f"✅ Cluster {cluster_id}: {summary}")
    return 0


def start_api() -> int:
    import uvicorn
    from config.settings import settings

    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
    )
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Idea Getter — complaint intelligence pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("pipeline", help="Run the full pipeline")
    p.add_argument("--if-missed", action="store_true",
                   help="Only run if no pipeline completed today")
    p.add_argument("--no-collect", action="store_true",
                   help="Skip collection and process what is already stored")

    p = sub.add_parser("stage", help="Run a single stage")
    p.add_argument("name", choices=STAGE_CHOICES)

    sub.add_parser("seed", help="Create tables and seed default settings")
    sub.add_parser("api", help="Start the FastAPI server")

    p = sub.add_parser("resummarize", help="Regenerate a cluster summary")
    p.add_argument("cluster_id", type=int)

    args = parser.parse_args(argv)

    if args.command == "pipeline":
        return run_pipeline(args.if_missed, args.no_collect)
    if args.command == "stage":
        return run_stage(args.name)
    if args.command == "seed":
        return seed()
    if args.command == "resummarize":
        return resummarize(args.cluster_id)
    return start_api()


if __name__ == "__main__":
    sys.exit(main())
