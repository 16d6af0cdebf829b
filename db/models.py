"""
SQLAlchemy ORM Models
Idea Getter — complaint intelligence pipeline
"""

from sqlalchemy import (
    Column, Integer, String, Text, Boolean,
    DateTime, ForeignKey, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship, declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Complaint(Base):
    __tablename__ = "complaint"

    complaint_id = Column(Integer, primary_key=True, autoincrement=True)
    source_platform = Column(String(50), nullable=False, default="hackernews")
    source_id = Column(String(255), nullable=False)
    source_url = Column(String(1000), nullable=False)
    category = Column(String(100), nullable=False)
    author = Column(String(100), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)
    scraped_at = Column(DateTime, default=utcnow)

    # Derived by the pipeline
    is_complaint = Column(Boolean, nullable=False, default=False)
    detected_at = Column(DateTime)
    embedding = Column(JSON(none_as_null=True))
    cluster_id = Column(Integer, ForeignKey("cluster.cluster_id", ondelete="SET NULL"))

    cluster = relationship("Cluster", back_populates="complaints")

    __table_args__ = (
        UniqueConstraint("source_platform", "source_id", name="uq_complaint_source"),
        Index("ix_complaint_created_at", "created_at"),
        Index("ix_complaint_cluster", "cluster_id"),
        Index("ix_complaint_is_complaint", "is_complaint"),
    )


class Cluster(Base):
    __tablename__ = "cluster"

    cluster_id = Column(Integer, primary_key=True, autoincrement=True)
    summary = Column(Text, nullable=False)
    first_seen = Column(DateTime, nullable=False)
    last_seen = Column(DateTime, nullable=False)
    complaint_count = Column(Integer, nullable=False, default=0)
    platform_distribution = Column(JSON, nullable=False, default=dict)
    centroid_embedding = Column(JSON(none_as_null=True))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    complaints = relationship("Complaint", back_populates="cluster")
    opportunity = relationship("Opportunity", back_populates="cluster", uselist=False)

    __table_args__ = (
        Index("ix_cluster_last_seen", "last_seen"),
        Index("ix_cluster_complaint_count", "complaint_count"),
    )


class Opportunity(Base):
    __tablename__ = "opportunity"

    opportunity_id = Column(Integer, primary_key=True, autoincrement=True)
    cluster_id = Column(
        Integer, ForeignKey("cluster.cluster_id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    score = Column(Integer, nullable=False, default=0)
    scoring_factors = Column(JSON, nullable=False, default=dict)
    representative_quote_id = Column(
        Integer, ForeignKey("complaint.complaint_id", ondelete="SET NULL")
    )
    is_bookmarked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    cluster = relationship("Cluster", back_populates="opportunity")
    representative_quote = relationship("Complaint")

    __table_args__ = (
        Index("ix_opportunity_score", "score"),
        Index("ix_opportunity_bookmarked", "is_bookmarked"),
    )


class Setting(Base):
    __tablename__ = "setting"

    setting_id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, unique=True)
    value = Column(JSON, nullable=False)
    description = Column(Text)
    updated_at = Column(DateTime, default=utcnow)


class JobRun(Base):
    __tablename__ = "job_run"

    run_id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="running")  # running | completed | failed | timeout
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)
    items_processed = Column(Integer, nullable=False, default=0)
    errors = Column(JSON(none_as_null=True))
    run_metadata = Column("metadata", JSON(none_as_null=True))

    __table_args__ = (
        Index("ix_job_run_type_started", "job_type", "started_at"),
        Index("ix_job_run_status", "status"),
    )
