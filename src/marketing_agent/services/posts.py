"""Post repository and lifecycle state machine."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketing_agent.constants import (
    ALL_CHANNELS,
    ALLOWED_STATUS_TRANSITIONS,
    CHANNEL_BLOG_MANUAL,
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_FAILED,
    STATUS_PUBLISHED,
    STATUS_PUBLISHING,
    STATUS_REVIEW,
)
from marketing_agent.db.base import to_utc, utcnow
from marketing_agent.db.models import Organization, Post
from marketing_agent.errors import InvalidTransition, NotFound, ValidationError

# Statuses a post may be created in
INITIAL_STATUSES = (STATUS_DRAFT, STATUS_REVIEW, STATUS_APPROVED, STATUS_PUBLISHED)

# Columns a transition may set alongside the status
TRANSITION_FIELDS = ("published_at", "published_url", "error_message", "retry_count", "scheduled_at")


class PublishedPostIngestor(Protocol):
    def ingest_published_post(self, post: Post) -> Any:
        ...


class PostDraft(BaseModel):
    """Validated input for creating a post."""

    organization_id: str = Field(min_length=1)
    channel: str
    title: str = Field(min_length=1, max_length=500)
    body: str = Field(min_length=1)
    status: str = STATUS_DRAFT
    images: List[str] = []
    tags: List[str] = []
    scheduled_at: datetime
    idempotency_key: Optional[str] = None
    published_url: Optional[str] = None

    @field_validator("channel")
    @classmethod
    def _known_channel(cls, value: str) -> str:
        if value not in ALL_CHANNELS:
            raise ValueError(f"unknown channel {value!r}")
        return value

    @field_validator("status")
    @classmethod
    def _initial_status(cls, value: str) -> str:
        if value not in INITIAL_STATUSES:
            raise ValueError(f"posts cannot be created in status {value!r}")
        return value

    @field_validator("title", "body")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("idempotency_key")
    @classmethod
    def _strip_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class PostRepository:
    """Single writer of Post state.

    Every status change goes through a compare-and-set UPDATE so concurrent
    writers on the same post are linearized by the database.
    """

    def __init__(self, session: Session, ingestor: Optional[PublishedPostIngestor] = None):
        self.session = session
        self.ingestor = ingestor

    # ── Reads ──

    def find(self, post_id: str) -> Optional[Post]:
        return self.session.get(Post, post_id)

    def require(self, post_id: str) -> Post:
        post = self.find(post_id)
        if post is None:
            raise NotFound(f"Post {post_id} not found", code="POST_NOT_FOUND")
        return post

    def find_due(
        self,
        now: Optional[datetime] = None,
        limit: int = 50,
        channels: Optional[Sequence[str]] = None,
    ) -> List[Post]:
        """Approved posts whose scheduled time has passed, oldest first."""
        now = to_utc(now or utcnow())
        query = select(Post).where(
            Post.status == STATUS_APPROVED,
            Post.scheduled_at <= now,
        )
        if channels is not None:
            query = query.where(Post.channel.in_(list(channels)))
        query = query.order_by(Post.scheduled_at.asc(), Post.created_at.asc()).limit(limit)
        return list(self.session.execute(query).scalars().all())

    def find_by_idempotency_key(self, organization_id: str, key: str) -> Optional[Post]:
        return self.session.execute(
            select(Post).where(
                Post.organization_id == organization_id,
                Post.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def list_for_manual_review(self, organization_id: Optional[str] = None) -> List[Post]:
        """Manual-channel posts waiting for a human to copy them out."""
        query = select(Post).where(
            Post.channel == CHANNEL_BLOG_MANUAL,
            Post.status == STATUS_REVIEW,
        )
        if organization_id:
            query = query.where(Post.organization_id == organization_id)
        query = query.order_by(Post.scheduled_at.asc())
        return list(self.session.execute(query).scalars().all())

    # ── Writes ──

    def insert(self, draft: Union[PostDraft, Dict[str, Any]]) -> Tuple[Post, bool]:
        """Create a post. Returns (post, created).

        With an idempotency key, a second submission for the same organization
        returns the stored post and ``created=False``.
        """
        if not isinstance(draft, PostDraft):
            try:
                draft = PostDraft(**draft)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid post: {e}") from e

        if draft.idempotency_key:
            existing = self.find_by_idempotency_key(draft.organization_id, draft.idempotency_key)
            if existing is not None:
                logger.info(f"[POSTS] Idempotent replay for key {draft.idempotency_key} -> {existing.id}")
                return existing, False

        if self.session.get(Organization, draft.organization_id) is None:
            raise NotFound(f"Organization {draft.organization_id} not found", code="ORGANIZATION_NOT_FOUND")

        now = utcnow()
        post = Post(
            organization_id=draft.organization_id,
            channel=draft.channel,
            status=draft.status,
            title=draft.title.strip(),
            body=draft.body,
            images=list(draft.images),
            tags=list(draft.tags),
            scheduled_at=to_utc(draft.scheduled_at),
            idempotency_key=draft.idempotency_key,
            published_url=draft.published_url,
            published_at=now if draft.status == STATUS_PUBLISHED else None,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(post)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if draft.idempotency_key:
                existing = self.find_by_idempotency_key(draft.organization_id, draft.idempotency_key)
                if existing is not None:
                    logger.info(f"[POSTS] Lost idempotency race for key {draft.idempotency_key} -> {existing.id}")
                    return existing, False
            raise ValidationError(f"Could not store post: {e.orig}") from e

        self.session.refresh(post)
        logger.info(f"[POSTS] Created post {post.id} ({post.channel}, {post.status})")

        if post.status == STATUS_PUBLISHED:
            self._ingest(post)
        return post, True

    def update_status(self, post_id: str, status: str, **fields: Any) -> Post:
        """Move a post to ``status``.

        Raises InvalidTransition (and writes nothing) when the target is not
        allowed from the current status.
        """
        unknown = set(fields) - set(TRANSITION_FIELDS)
        if unknown:
            raise ValidationError(f"Unsupported post fields: {sorted(unknown)}")

        post = self.require(post_id)
        current = post.status
        if status not in ALLOWED_STATUS_TRANSITIONS.get(current, []):
            raise InvalidTransition(current, status, post_id)

        values: Dict[str, Any] = {k: v for k, v in fields.items() if k != "error_message"}
        if status == STATUS_PUBLISHED:
            values["published_at"] = to_utc(fields.get("published_at") or utcnow())
            values["published_url"] = fields.get("published_url")
            values["error_message"] = None
        elif status == STATUS_FAILED:
            values["error_message"] = fields.get("error_message") or "Unknown error"
        elif "error_message" in fields:
            values["error_message"] = fields["error_message"]

        if not self._compare_and_set(post_id, current, status, values):
            self.session.rollback()
            latest = self.require(post_id)
            raise InvalidTransition(latest.status, status, post_id)

        post = self.require(post_id)
        logger.info(f"[POSTS] Post {post_id}: {current} -> {status}")

        if status == STATUS_PUBLISHED:
            self._ingest(post)
        return post

    def claim_for_publishing(self, post_id: str) -> bool:
        """Atomically move an approved post to publishing. False if someone else won."""
        claimed = self._compare_and_set(post_id, STATUS_APPROVED, STATUS_PUBLISHING, {})
        if not claimed:
            self.session.rollback()
            logger.warning(f"[POSTS] Post {post_id} was not claimable (no longer approved)")
        return claimed

    def reclaim_failed(self, post_id: str) -> Post:
        """failed -> approved -> publishing with retry_count + 1."""
        post = self.require(post_id)
        if post.status != STATUS_FAILED:
            raise InvalidTransition(post.status, STATUS_APPROVED, post_id)

        retry_count = (post.retry_count or 0) + 1
        if not self._compare_and_set(post_id, STATUS_FAILED, STATUS_APPROVED, {"retry_count": retry_count}, commit=False):
            self.session.rollback()
            latest = self.require(post_id)
            raise InvalidTransition(latest.status, STATUS_APPROVED, post_id)
        if not self._compare_and_set(post_id, STATUS_APPROVED, STATUS_PUBLISHING, {}):
            self.session.rollback()
            latest = self.require(post_id)
            raise InvalidTransition(latest.status, STATUS_PUBLISHING, post_id)

        logger.info(f"[POSTS] Reclaimed failed post {post_id} (retry {retry_count})")
        return self.require(post_id)

    # ── Internals ──

    def _compare_and_set(
        self,
        post_id: str,
        current: str,
        target: str,
        values: Dict[str, Any],
        commit: bool = True,
    ) -> bool:
        result = self.session.execute(
            update(Post)
            .where(Post.id == post_id, Post.status == current)
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        if commit:
            self.session.commit()
        # Drop the cached row so the next read sees the new status
        self.session.expire_all()
        return True

    def _ingest(self, post: Post) -> None:
        if self.ingestor is None:
            return
        try:
            self.ingestor.ingest_published_post(post)
        except Exception:
            self.session.rollback()
            logger.exception(f"[INGEST] Failed to ingest published post {post.id}")
