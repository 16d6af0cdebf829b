"""
Store — the persistence capability used by every pipeline stage.

Wraps a SQLAlchemy session factory and exposes the CRUD, upsert and
nearest-neighbour operations the agents need. Each call runs in its own
short transaction; returned ORM objects are detached snapshots
(`expire_on_commit=False`), so callers may read their columns freely.

Vector search is cosine similarity computed in-process with numpy, which
keeps the store portable across SQLite (tests, local runs) and Postgres.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, text as sql_text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.database import SessionLocal, init_db, make_engine, make_session_factory
from db.models import Cluster, Complaint, JobRun, Opportunity, Setting, utcnow
from models.schemas import RawItem
from utils.vectors import cosine_similarities

logger = logging.getLogger(__name__)


def _new_complaint(item: RawItem) -> Complaint:
    return Complaint(
        source_platform=item.source_platform,
        source_id=item.source_id,
        source_url=item.source_url,
        category=item.category,
        author=item.author,
        text=item.text,
        created_at=item.created_at,
    )


def _claim_complaint(db, complaint_id: int, cluster_id: int) -> None:
    updated = (
        db.query(Complaint)
        .filter(Complaint.complaint_id == complaint_id, Complaint.cluster_id.is_(None))
        .update({"cluster_id": cluster_id}, synchronize_session=False)
    )
    if updated == 0:
        raise ValueError(f"Complaint {complaint_id} is missing or already clustered")


class StoreUnavailableError(RuntimeError):
    """The persistent store cannot be reached (critical pipeline precondition)."""


class Store:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    @classmethod
    def from_url(cls, url: str, create_tables: bool = True) -> "Store":
        engine = make_engine(url)
        if create_tables:
            init_db(engine)
        return cls(make_session_factory(engine))

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def health_check(self) -> bool:
        try:
            with self.session() as db:
                db.execute(sql_text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # ─── Complaints ──────────────────────────────────────────────────────────

    def insert_complaints(self, items: Iterable[RawItem]) -> Tuple[int, int]:
        """
        Insert raw items, skipping any whose (platform, source id) already
        exists. Returns (inserted, skipped).
        """
        skipped = 0
        fresh: Dict[Tuple[str, str], RawItem] = {}
        for item in items:
            key = (item.source_platform, item.source_id)
            if key in fresh:
                skipped += 1
                continue
            fresh[key] = item
        if not fresh:
            return 0, skipped

        with self.session() as db:
            for platform, source_id in list(fresh):
                exists = (
                    db.query(Complaint.complaint_id)
                    .filter(Complaint.source_platform == platform,
                            Complaint.source_id == source_id)
                    .first()
                )
                if exists:
                    del fresh[(platform, source_id)]
                    skipped += 1

        try:
            with self.session() as db:
                db.add_all([_new_complaint(item) for item in fresh.values()])
            return len(fresh), skipped
        except IntegrityError:
            logger.warning("Bulk insert hit a unique constraint, inserting one by one")

        inserted = 0
        for item in fresh.values():
            try:
                with self.session() as db:
                    db.add(_new_complaint(item))
                inserted += 1
            except IntegrityError:
                skipped += 1
        return inserted, skipped

    def get_complaint(self, complaint_id: int) -> Optional[Complaint]:
        with self.session() as db:
            return db.get(Complaint, complaint_id)

    def get_complaint_by_source(self, source_platform: str, source_id: str) -> Optional[Complaint]:
        with self.session() as db:
            return (
                db.query(Complaint)
                .filter(Complaint.source_platform == source_platform,
                        Complaint.source_id == source_id)
                .first()
            )

    def get_undetected_complaints(self, limit: Optional[int] = None) -> List[Complaint]:
        """Items not yet through detection: no embedding and never evaluated."""
        with self.session() as db:
            query = (
                db.query(Complaint)
                .filter(Complaint.embedding.is_(None), Complaint.detected_at.is_(None))
                .order_by(Complaint.complaint_id)
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def mark_detection(self, complaint_id: int, is_complaint: bool) -> None:
        with self.session() as db:
            db.query(Complaint).filter(Complaint.complaint_id == complaint_id).update(
                {"is_complaint": is_complaint, "detected_at": utcnow()},
                synchronize_session=False,
            )

    def get_complaints_needing_embedding(self, limit: Optional[int] = None) -> List[Complaint]:
        with self.session() as db:
            query = (
                db.query(Complaint)
                .filter(Complaint.is_complaint.is_(True), Complaint.embedding.is_(None))
                .order_by(Complaint.complaint_id)
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def set_embedding(self, complaint_id: int, embedding: Sequence[float]) -> None:
        with self.session() as db:
            db.query(Complaint).filter(
                Complaint.complaint_id == complaint_id,
                Complaint.embedding.is_(None),
            ).update({"embedding": [float(v) for v in embedding]}, synchronize_session=False)

    def mark_not_complaint(self, complaint_ids: Sequence[int]) -> None:
        if not complaint_ids:
            return
        with self.session() as db:
            db.query(Complaint).filter(Complaint.complaint_id.in_(list(complaint_ids))).update(
                {"is_complaint": False}, synchronize_session=False
            )

    def get_unclustered_complaints(self, limit: Optional[int] = None) -> List[Complaint]:
        with self.session() as db:
            query = (
                db.query(Complaint)
                .filter(Complaint.is_complaint.is_(True),
                        Complaint.cluster_id.is_(None),
                        Complaint.embedding.is_not(None))
                .order_by(Complaint.complaint_id)
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def get_complaints_by_cluster(self, cluster_id: int) -> List[Complaint]:
        with self.session() as db:
            return (
                db.query(Complaint)
                .filter(Complaint.cluster_id == cluster_id)
                .order_by(Complaint.complaint_id)
                .all()
            )

    def assign_complaint_to_cluster(self, complaint_id: int, cluster_id: int) -> None:
        """Attach an unclustered complaint to a cluster. A complaint is never moved."""
        with self.session() as db:
            _claim_complaint(db, complaint_id, cluster_id)

    def find_nearest_complaint(
        self, vector: Sequence[float], complaint_ids: Sequence[int]
    ) -> Optional[Tuple[int, float]]:
        """Most similar complaint to `vector` among `complaint_ids` that have embeddings."""
        if not complaint_ids:
            return None
        with self.session() as db:
            rows = (
                db.query(Complaint.complaint_id, Complaint.embedding)
                .filter(Complaint.complaint_id.in_(list(complaint_ids)),
                        Complaint.embedding.is_not(None))
                .order_by(Complaint.complaint_id)
                .all()
            )
        if not rows:
            return None
        sims = cosine_similarities([r.embedding for r in rows], vector)
        best = int(sims.argmax())
        return rows[best].complaint_id, float(sims[best])

    def delete_old_complaints(self, older_than: datetime) -> Tuple[int, List[int]]:
        """Delete complaints created before `older_than`. Returns (count, affected cluster ids)."""
        with self.session() as db:
            old = db.query(Complaint.complaint_id, Complaint.cluster_id).filter(
                Complaint.created_at < older_than
            ).all()
            if not old:
                return 0, []
            ids = [r.complaint_id for r in old]
            affected = sorted({r.cluster_id for r in old if r.cluster_id is not None})

            db.query(Opportunity).filter(Opportunity.representative_quote_id.in_(ids)).update(
                {"representative_quote_id": None}, synchronize_session=False
            )
            db.query(Complaint).filter(Complaint.complaint_id.in_(ids)).delete(
                synchronize_session=False
            )
            return len(ids), affected

    def count_complaints(self) -> int:
        with self.session() as db:
            return db.query(Complaint).count()

    # ─── Clusters ────────────────────────────────────────────────────────────

    def create_cluster_for_complaint(
        self,
        complaint_id: int,
        summary: str,
        first_seen: datetime,
        last_seen: datetime,
        platform_distribution: Dict[str, int],
        centroid_embedding: Sequence[float],
    ) -> Cluster:
        """
        Create a one-member cluster and attach the complaint to it in a single
        transaction. If the complaint is gone or already clustered nothing is
        written and ValueError is raised.
        """
        with self.session() as db:
            cluster = Cluster(
                summary=summary,
                first_seen=first_seen,
                last_seen=last_seen,
                complaint_count=1,
                platform_distribution=dict(platform_distribution),
                centroid_embedding=list(centroid_embedding),
            )
            db.add(cluster)
            db.flush()
            _claim_complaint(db, complaint_id, cluster.cluster_id)
            return cluster

    def get_cluster(self, cluster_id: int) -> Optional[Cluster]:
        with self.session() as db:
            return db.get(Cluster, cluster_id)

    def update_cluster(self, cluster_id: int, **fields: Any) -> None:
        fields["updated_at"] = utcnow()
        with self.session() as db:
            db.query(Cluster).filter(Cluster.cluster_id == cluster_id).update(
                fields, synchronize_session=False
            )

    def get_active_clusters(self, min_complaint_count: int = 1) -> List[Cluster]:
        with self.session() as db:
            return (
                db.query(Cluster)
                .filter(Cluster.complaint_count >= min_complaint_count)
                .order_by(Cluster.last_seen.desc(), Cluster.cluster_id)
                .all()
            )

    def find_most_similar_cluster(
        self, embedding: Sequence[float], threshold: float
    ) -> Optional[Tuple[Cluster, float]]:
        """Single most similar cluster with similarity >= threshold, or None."""
        with self.session() as db:
            candidates = (
                db.query(Cluster)
                .filter(Cluster.centroid_embedding.is_not(None))
                .order_by(Cluster.cluster_id)
                .all()
            )
        if not candidates:
            return None
        sims = cosine_similarities([c.centroid_embedding for c in candidates], embedding)
        best = int(sims.argmax())
        if sims[best] < threshold:
            return None
        return candidates[best], float(sims[best])

    def delete_empty_clusters(self) -> Tuple[int, int]:
        """Delete clusters with no members and their opportunities. Returns (clusters, opportunities)."""
        with self.session() as db:
            empty_ids = [
                r.cluster_id for r in
                db.query(Cluster.cluster_id).filter(Cluster.complaint_count <= 0).all()
            ]
            if not empty_ids:
                return 0, 0
            opps = db.query(Opportunity).filter(Opportunity.cluster_id.in_(empty_ids)).delete(
                synchronize_session=False
            )
            db.query(Complaint).filter(Complaint.cluster_id.in_(empty_ids)).update(
                {"cluster_id": None}, synchronize_session=False
            )
            clusters = db.query(Cluster).filter(Cluster.cluster_id.in_(empty_ids)).delete(
                synchronize_session=False
            )
            return clusters, opps

    def count_clusters(self) -> int:
        with self.session() as db:
            return db.query(Cluster).count()

    # ─── Opportunities ───────────────────────────────────────────────────────

    def upsert_opportunity(
        self,
        cluster_id: int,
        score: int,
        scoring_factors: Dict[str, Any],
        representative_quote_id: Optional[int],
    ) -> Tuple[Opportunity, bool]:
        """Create or refresh the single opportunity for a cluster. Returns (row, created)."""
        with self.session() as db:
            opp = db.query(Opportunity).filter(Opportunity.cluster_id == cluster_id).first()
            created = opp is None
            if created:
                opp = Opportunity(cluster_id=cluster_id, is_bookmarked=False)
                db.add(opp)
            opp.score = score
            opp.scoring_factors = dict(scoring_factors)
            opp.representative_quote_id = representative_quote_id
            opp.updated_at = utcnow()
            db.flush()
            return opp, created

    def get_opportunity_for_cluster(self, cluster_id: int) -> Optional[Opportunity]:
        with self.session() as db:
            return db.query(Opportunity).filter(Opportunity.cluster_id == cluster_id).first()

    def count_opportunities(self) -> int:
        with self.session() as db:
            return db.query(Opportunity).count()

    def list_opportunities(
        self,
        min_score: int = 0,
        bookmarked_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Opportunities joined with cluster summary and representative quote, best first."""
        with self.session() as db:
            query = (
                db.query(Opportunity, Cluster)
                .join(Cluster, Cluster.cluster_id == Opportunity.cluster_id)
                .filter(Opportunity.score >= min_score)
            )
            if bookmarked_only:
                query = query.filter(Opportunity.is_bookmarked.is_(True))
            query = query.order_by(Opportunity.score.desc(), Opportunity.opportunity_id)
            if limit is not None:
                query = query.limit(limit)
            rows = query.all()

            quote_ids = [o.representative_quote_id for o, _ in rows if o.representative_quote_id]
            quotes = {}
            if quote_ids:
                quotes = {
                    c.complaint_id: c for c in
                    db.query(Complaint).filter(Complaint.complaint_id.in_(quote_ids)).all()
                }
            return [_opportunity_view(o, c, quotes.get(o.representative_quote_id)) for o, c in rows]

    def get_opportunity_details(self, opportunity_id: int) -> Optional[Dict[str, Any]]:
        with self.session() as db:
            opp = db.get(Opportunity, opportunity_id)
            if opp is None:
                return None
            cluster = db.get(Cluster, opp.cluster_id)
            if cluster is None:
                return None
            quote = db.get(Complaint, opp.representative_quote_id) if opp.representative_quote_id else None
            members = (
                db.query(Complaint)
                .filter(Complaint.cluster_id == cluster.cluster_id)
                .order_by(Complaint.created_at.desc())
                .all()
            )
            view = _opportunity_view(opp, cluster, quote)
            view["quotes"] = [_complaint_view(c) for c in members]
            return view

    def toggle_bookmark(self, opportunity_id: int) -> Optional[Opportunity]:
        with self.session() as db:
            opp = db.get(Opportunity, opportunity_id)
            if opp is None:
                return None
            opp.is_bookmarked = not opp.is_bookmarked
            opp.updated_at = utcnow()
            db.flush()
            return opp

    def delete_orphaned_opportunities(self) -> int:
        with self.session() as db:
            cluster_ids = select(Cluster.cluster_id)
            return db.query(Opportunity).filter(~Opportunity.cluster_id.in_(cluster_ids)).delete(
                synchronize_session=False
            )

    # ─── Settings ────────────────────────────────────────────────────────────

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self.session() as db:
            row = db.query(Setting).filter(Setting.key == key).first()
            return row.value if row is not None else default

    def get_all_settings(self) -> Dict[str, Any]:
        with self.session() as db:
            return {row.key: row.value for row in db.query(Setting).all()}

    def list_settings(self) -> List[Setting]:
        with self.session() as db:
            return db.query(Setting).order_by(Setting.key).all()

    def set_setting(self, key: str, value: Any, description: Optional[str] = None) -> Setting:
        with self.session() as db:
            row = db.query(Setting).filter(Setting.key == key).first()
            if row is None:
                row = Setting(key=key)
                db.add(row)
            row.value = value
            if description is not None:
                row.description = description
            row.updated_at = utcnow()
            db.flush()
            return row

    def delete_setting(self, key: str) -> bool:
        with self.session() as db:
            return db.query(Setting).filter(Setting.key == key).delete(synchronize_session=False) > 0

    # ─── Job runs ────────────────────────────────────────────────────────────

    def start_job_run(self, job_type: str, metadata: Optional[Dict[str, Any]] = None) -> JobRun:
        with self.session() as db:
            run = JobRun(job_type=job_type, status="running", started_at=utcnow(),
                         items_processed=0, run_metadata=metadata)
            db.add(run)
            db.flush()
            return run

    def complete_job_run(
        self,
        run_id: int,
        items_processed: int,
        metadata: Optional[Dict[str, Any]] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[JobRun]:
        return self._finish_job_run(run_id, "completed", items_processed, errors, metadata)

    def fail_job_run(
        self,
        run_id: int,
        errors: List[Dict[str, Any]],
        items_processed: int = 0,
        status: str = "failed",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[JobRun]:
        return self._finish_job_run(run_id, status, items_processed, errors, metadata)

    def _finish_job_run(self, run_id, status, items_processed, errors, metadata) -> Optional[JobRun]:
        with self.session() as db:
            run = db.get(JobRun, run_id)
            if run is None:
                return None
            run.status = status
            run.completed_at = utcnow()
            run.items_processed = items_processed
            run.errors = errors or None
            if metadata is not None:
                run.run_metadata = metadata
            db.flush()
            return run

    def get_job_run(self, run_id: int) -> Optional[JobRun]:
        with self.session() as db:
            return db.get(JobRun, run_id)

    def get_latest_job_run(self, job_type: str) -> Optional[JobRun]:
        with self.session() as db:
            return (
                db.query(JobRun)
                .filter(JobRun.job_type == job_type)
                .order_by(JobRun.started_at.desc(), JobRun.run_id.desc())
                .first()
            )

    def get_todays_job_runs(self, job_type: Optional[str] = None) -> List[JobRun]:
        start_of_day = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        with self.session() as db:
            query = db.query(JobRun).filter(JobRun.started_at >= start_of_day)
            if job_type:
                query = query.filter(JobRun.job_type == job_type)
            return query.order_by(JobRun.started_at.desc()).all()

    def is_job_running(self, job_type: str, stale_after: Optional[timedelta] = None) -> bool:
        """
        True if a run of `job_type` is marked running. Rows older than
        `stale_after` are ignored (left behind by a crashed process).
        """
        with self.session() as db:
            query = db.query(JobRun.run_id).filter(
                JobRun.job_type == job_type, JobRun.status == "running"
            )
            if stale_after is not None:
                query = query.filter(JobRun.started_at >= utcnow() - stale_after)
            return query.first() is not None

    def get_system_stats(self, job_type: str) -> Dict[str, Any]:
        latest = self.get_latest_job_run(job_type)
        return {
            "total_complaints": self.count_complaints(),
            "total_clusters": self.count_clusters(),
            "total_opportunities": self.count_opportunities(),
            "last_job_run": job_run_view(latest) if latest else None,
        }


# ─── Views ───────────────────────────────────────────────────────────────────


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _complaint_view(c: Complaint) -> Dict[str, Any]:
    return {
        "complaint_id": c.complaint_id,
        "source_platform": c.source_platform,
        "source_url": c.source_url,
        "category": c.category,
        "author": c.author,
        "text": c.text,
        "created_at": _iso(c.created_at),
    }


def _opportunity_view(opp: Opportunity, cluster: Cluster, quote: Optional[Complaint]) -> Dict[str, Any]:
    return {
        "opportunity_id": opp.opportunity_id,
        "cluster_id": cluster.cluster_id,
        "score": opp.score,
        "scoring_factors": opp.scoring_factors or {},
        "is_bookmarked": opp.is_bookmarked,
        "summary": cluster.summary,
        "complaint_count": cluster.complaint_count,
        "platform_distribution": cluster.platform_distribution or {},
        "first_seen": _iso(cluster.first_seen),
        "last_seen": _iso(cluster.last_seen),
        "representative_quote": _complaint_view(quote) if quote else None,
        "created_at": _iso(opp.created_at),
        "updated_at": _iso(opp.updated_at),
    }


def job_run_view(run: JobRun) -> Dict[str, Any]:
    return {
        "run_id": run.run_id,
        "job_type": run.job_type,
        "status": run.status,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
        "items_processed": run.items_processed,
        "errors": run.errors or [],
        "metadata": run.run_metadata or {},
    }
