"""ORM models for the marketing agent."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Boolean,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketing_agent.constants import EMBEDDING_DIMENSIONS
from marketing_agent.db.base import JSON_VARIANT, Base, utcnow

# pgvector column on Postgres, plain JSON float list elsewhere
EMBEDDING_VARIANT = JSON().with_variant(Vector(EMBEDDING_DIMENSIONS), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class Organization(Base):
    """Nonprofit tenant. All posts, fragments and metrics belong to one."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_type: Mapped[str] = mapped_column(String(50), default="other", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    mission: Mapped[str] = mapped_column(Text, default="", nullable=False)
    keywords: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    schedule: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    # Per-channel account references
    image_feed_account: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    micro_post_account: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    blog_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    # Relationships
    posts: Mapped[List["Post"]] = relationship(back_populates="organization")


class Post(Base):
    """One unit of content for one organization on one channel."""

    __tablename__ = "posts"

    __table_args__ = (
        Index("idx_posts_status_scheduled", "status", "scheduled_at"),
        Index("idx_posts_org_created", "organization_id", "created_at"),
        Index(
            "uq_posts_org_idempotency_key",
            "organization_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="draft", nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    images: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    published_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    # Relationships
    organization: Mapped["Organization"] = relationship(back_populates="posts")
    metrics: Mapped[List["PostMetric"]] = relationship(back_populates="post")


class ContentFragment(Base):
    """One chunk of indexed text used for retrieval-augmented generation."""

    __tablename__ = "content_fragments"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "source_type", "source_id", "chunk_index",
            name="uq_fragments_source_chunk",
        ),
        Index("idx_fragments_org_category", "organization_id", "category"),
        Index("idx_fragments_org_source", "organization_id", "source_type", "source_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    channel: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    performance: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    text_content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list]] = mapped_column(EMBEDDING_VARIANT, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON_VARIANT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class PostMetric(Base):
    """Append-only engagement snapshot. Latest row per post is authoritative."""

    __tablename__ = "post_metrics"

    __table_args__ = (
        Index("idx_post_metrics_post_collected", "post_id", "collected_at"),
        Index("idx_post_metrics_collected_at", "collected_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    post_id: Mapped[str] = mapped_column(ForeignKey("posts.id", ondelete="CASCADE"), nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)

    impressions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    saves: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    performance: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    # Relationships
    post: Mapped["Post"] = relationship(back_populates="metrics")


class PublishJob(Base):
    """Durable publish queue entry. The job id is the dedupe key."""

    __tablename__ = "publish_jobs"

    __table_args__ = (
        Index("idx_publish_jobs_status_available", "status", "available_at"),
        Index("idx_publish_jobs_status_finished", "status", "finished_at"),
        Index("idx_publish_jobs_status_locked", "status", "locked_at"),
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default="waiting", nullable=False)
    attempts_made: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    backoff_seconds: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)

    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    locked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
