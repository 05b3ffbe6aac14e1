"""Chunk, embed and upsert text sources into the retrieval index."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from marketing_agent.config import RagConfig
from marketing_agent.constants import (
    SOURCE_PAST_CONTENT,
    SOURCE_PROFILE,
    SOURCE_PROJECT_DOC,
    SOURCE_TYPES,
    STATUS_PUBLISHED,
)
from marketing_agent.db.base import to_utc, utcnow
from marketing_agent.db.models import ContentFragment, Organization, Post
from marketing_agent.errors import ExternalServiceError, NotFound, ValidationError
from marketing_agent.services.embeddings import EmbeddingClient

PARAGRAPH_BREAK_RE = re.compile(r"\n{2,}")

DEFAULT_CATEGORY = "general"


def chunk_text(text: str, max_length: int = 500) -> List[str]:
    """Split text into paragraph-packed chunks of at most ``max_length`` chars.

    A single paragraph longer than ``max_length`` is hard-split.
    """
    if max_length < 1:
        raise ValueError("max_length must be positive")

    cleaned = (text or "").replace("\r\n", "\n").strip()
    if not cleaned:
        return []

    paragraphs = [part.strip() for part in PARAGRAPH_BREAK_RE.split(cleaned)]
    chunks: List[str] = []
    current = ""

    for paragraph in paragraphs:
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= max_length:
            current = candidate
            continue

        if current:
            chunks.append(current)

        if len(paragraph) <= max_length:
            current = paragraph
            continue

        for start in range(0, len(paragraph), max_length):
            chunks.append(paragraph[start:start + max_length])
        current = ""

    if current:
        chunks.append(current)
    return chunks


def infer_category(value: Optional[str]) -> str:
    if value and value.strip():
        return value.strip()
    return DEFAULT_CATEGORY


def build_profile_text(organization: Organization) -> str:
    keywords = ", ".join(k for k in (organization.keywords or []) if isinstance(k, str)) or "(none)"
    schedule = organization.schedule
    schedule_text = schedule if isinstance(schedule, str) else json.dumps(schedule or {}, ensure_ascii=False)
    return "\n".join([
        f"Organization: {organization.name}",
        f"Organization type: {organization.organization_type}",
        f"Mission: {organization.mission}",
        f"About: {organization.description}",
        f"Key topics: {keywords}",
        f"Location: {organization.location}",
        f"Schedule: {schedule_text}",
    ]).strip()


@dataclass
class IngestSource:
    organization_id: str
    source_type: str
    source_id: str
    text: str
    category: Optional[str] = None
    channel: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestOutcome:
    source_id: str
    chunk_count: int = 0
    embedded_count: int = 0
    deleted_count: int = 0
    noop: bool = False


class RagIngestor:
    """Writes fragments keyed by (organization, source type, source id, chunk index)."""

    def __init__(
        self,
        session: Session,
        embedder: Optional[EmbeddingClient] = None,
        config: Optional[RagConfig] = None,
    ):
        self.session = session
        self.embedder = embedder
        self.config = config or RagConfig()

    def ingest(self, source: IngestSource) -> IngestOutcome:
        if source.source_type not in SOURCE_TYPES:
            raise ValidationError(f"Unknown source type: {source.source_type}")
        if not source.source_id:
            raise ValidationError("source_id is required")

        chunks = chunk_text(source.text, self.config.chunk_max_length)
        if not chunks:
            logger.info(f"[INGEST] Nothing to ingest for {source.source_type}:{source.source_id}")
            return IngestOutcome(source_id=source.source_id, noop=True)

        embeddings = self._embed(chunks)
        ingested_at = utcnow().isoformat()
        metadata = {**source.metadata, "ingestedAt": ingested_at}

        existing = {
            fragment.chunk_index: fragment
            for fragment in self.session.execute(
                select(ContentFragment).where(
                    ContentFragment.organization_id == source.organization_id,
                    ContentFragment.source_type == source.source_type,
                    ContentFragment.source_id == source.source_id,
                    ContentFragment.chunk_index < len(chunks),
                )
            ).scalars()
        }

        for index, chunk in enumerate(chunks):
            fragment = existing.get(index)
            if fragment is None:
                fragment = ContentFragment(
                    organization_id=source.organization_id,
                    source_type=source.source_type,
                    source_id=source.source_id,
                    chunk_index=index,
                )
                self.session.add(fragment)
            fragment.text_content = chunk
            fragment.embedding = embeddings[index]
            fragment.category = source.category
            fragment.channel = source.channel
            fragment.meta = dict(metadata)

        deleted = self.session.execute(
            delete(ContentFragment)
            .where(
                ContentFragment.organization_id == source.organization_id,
                ContentFragment.source_type == source.source_type,
                ContentFragment.source_id == source.source_id,
                ContentFragment.chunk_index >= len(chunks),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        self.session.commit()

        outcome = IngestOutcome(
            source_id=source.source_id,
            chunk_count=len(chunks),
            embedded_count=sum(1 for vector in embeddings if vector),
            deleted_count=deleted or 0,
        )
        logger.info(
            f"[INGEST] {source.source_type}:{source.source_id} -> {outcome.chunk_count} chunk(s), "
            f"{outcome.embedded_count} embedded, {outcome.deleted_count} stale removed"
        )
        return outcome

    def ingest_published_post(self, post: Union[Post, str], category: Optional[str] = None) -> IngestOutcome:
        """Index a published post as past content. Other statuses are skipped."""
        if isinstance(post, str):
            found = self.session.get(Post, post)
            if found is None:
                raise NotFound(f"Post {post} not found")
            post = found

        if post.status != STATUS_PUBLISHED:
            logger.debug(f"[INGEST] Post {post.id} is {post.status}; not ingesting")
            return IngestOutcome(source_id=post.id, noop=True)

        published_at = to_utc(post.published_at or utcnow()).isoformat()
        body = "\n\n".join(part for part in [post.title, post.body] if part).strip()
        return self.ingest(IngestSource(
            organization_id=post.organization_id,
            source_type=SOURCE_PAST_CONTENT,
            source_id=post.id,
            text=body,
            category=infer_category(category),
            channel=post.channel,
            metadata={
                "title": post.title,
                "tags": list(post.tags or []),
                "images": list(post.images or []),
                "publishedAt": published_at,
            },
        ))

    def ingest_organization_profile(self, organization_id: str) -> IngestOutcome:
        organization = self.session.get(Organization, organization_id)
        if organization is None:
            raise NotFound(f"Organization {organization_id} not found")

        return self.ingest(IngestSource(
            organization_id=organization.id,
            source_type=SOURCE_PROFILE,
            source_id=f"profile:{organization.id}",
            text=build_profile_text(organization),
            category="profile",
            metadata={
                "organizationName": organization.name,
                "organizationType": organization.organization_type,
            },
        ))

    def ingest_project_document(
        self,
        organization_id: str,
        source_id: str,
        text: str,
        title: Optional[str] = None,
        category: Optional[str] = None,
        channel: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestOutcome:
        clean_title = title.strip() if title else None
        body = "\n\n".join(part for part in [clean_title, (text or "").strip()] if part)
        return self.ingest(IngestSource(
            organization_id=organization_id,
            source_type=SOURCE_PROJECT_DOC,
            source_id=source_id,
            text=body,
            category=infer_category(category),
            channel=channel,
            metadata={"title": clean_title, **(metadata or {})},
        ))

    def _embed(self, chunks: List[str]) -> List[Optional[List[float]]]:
        if self.embedder is None:
            return [None for _ in chunks]
        try:
            vectors = self.embedder.embed(chunks)
        except ExternalServiceError as e:
            logger.warning(f"[INGEST] Embedding failed, storing chunks without vectors: {e}")
            return [None for _ in chunks]
        return [vectors[i] if i < len(vectors) else None for i in range(len(chunks))]
