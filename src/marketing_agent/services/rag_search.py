"""Similarity search over the retrieval index."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pgvector.sqlalchemy import Vector
from pydantic import BaseModel, Field
from sqlalchemy import Float, case, func, literal, or_, select, update
from sqlalchemy.orm import Session

from marketing_agent.config import RagConfig
from marketing_agent.constants import (
    EMBEDDING_DIMENSIONS,
    PERFORMANCE_HIGH,
    PERFORMANCE_LEVELS,
    PERFORMANCE_MEDIUM,
    SOURCE_PAST_CONTENT,
    SOURCE_PROFILE,
    SOURCE_PROJECT_DOC,
    SOURCE_TYPES,
)
from marketing_agent.db.base import to_utc, utcnow
from marketing_agent.db.models import ContentFragment
from marketing_agent.errors import ValidationError
from marketing_agent.services.embeddings import EmbeddingClient

# (pattern, replacement). Replacements never match any pattern, so the scrub terminates.
SANITIZE_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(
        r"\b(?:ignore|disregard|forget|override|bypass)\s+(?:all\s+|any\s+)?(?:of\s+)?(?:the\s+|your\s+|my\s+)?"
        r"(?:previous|prior|above|earlier|preceding)(?:\s+(?:instructions?|rules|prompts?|directions|messages?))?",
        re.I,
    ), "[removed: instruction-like text]"),
    (re.compile(r"\bsystem\s*:\s*", re.I), "[removed: system-mimic text] "),
    (re.compile(r"\b(?:developer|assistant|user|human)\s*:\s*", re.I), "[removed: role-mimic text] "),
    (re.compile(r"<\|[^|<>]{0,40}\|>"), "[removed: chat-control marker]"),
    (re.compile(r"\[\s*/?\s*INST\s*\]|<<\s*/?\s*(?:SYS|RAG_SOURCE_\d+)\s*>>", re.I), "[removed: chat-control marker]"),
    (re.compile(r"tool[_ -]?call", re.I), "[removed: tool-invocation text]"),
    (re.compile(r"function[_ -]?call", re.I), "[removed: tool-invocation text]"),
    (re.compile(r"api[_ -]?key", re.I), "[removed: credential-like token]"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{16,}"), "[removed: credential-like token]"),
    (re.compile(r"\bbearer\s+[A-Za-z0-9._~+/=-]{16,}", re.I), "[removed: credential-like token]"),
]

WHITESPACE_RE = re.compile(r"\s+")

SOURCE_PRIORITY = {SOURCE_PAST_CONTENT: 1, SOURCE_PROJECT_DOC: 2, SOURCE_PROFILE: 3}


def sanitize_rag_text(value: str) -> str:
    """Scrub instruction-mimicking text from an untrusted fragment."""
    text = value or ""
    while True:
        scrubbed = text
        for pattern, replacement in SANITIZE_RULES:
            scrubbed = pattern.sub(replacement, scrubbed)
        if scrubbed == text:
            break
        text = scrubbed
    return WHITESPACE_RE.sub(" ", text).strip()


def contains_instruction_pattern(value: str) -> bool:
    return any(pattern.search(value or "") for pattern, _ in SANITIZE_RULES)


def allowed_performance(performance_min: Optional[str]) -> Optional[List[str]]:
    if not performance_min:
        return None
    if performance_min == PERFORMANCE_HIGH:
        return [PERFORMANCE_HIGH]
    return [PERFORMANCE_HIGH, PERFORMANCE_MEDIUM]


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Same metric as pgvector's ``<=>``. None when the vectors are not comparable."""
    if not a or not b or len(a) != len(b):
        return None
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


class RagFilters(BaseModel):
    categories: List[str] = []
    performance_min: Optional[str] = None
    exclude_post_ids: List[str] = []


class RagQuery(BaseModel):
    organization_id: str = Field(min_length=1)
    channel: str
    topic: str = ""
    category: Optional[str] = None
    filters: RagFilters = RagFilters()
    limit: Optional[int] = None


@dataclass
class RagReference:
    id: str
    source_type: str
    text: str
    source_id: Optional[str] = None
    category: Optional[str] = None
    channel: Optional[str] = None
    performance: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    distance: Optional[float] = None


def format_rag_prompt_context(references: Sequence[RagReference]) -> str:
    """Wrap each fragment in numbered delimiters with its source metadata."""
    if not references:
        return "RAG references: none"

    blocks = []
    for index, item in enumerate(references, start=1):
        meta = [
            f"sourceType={item.source_type}",
            f"category={item.category}" if item.category else None,
            f"channel={item.channel}" if item.channel else None,
            f"performance={item.performance}" if item.performance else None,
            f"sourceId={item.source_id}" if item.source_id else None,
        ]
        meta_line = ", ".join(entry for entry in meta if entry) or "metadata=none"
        blocks.append("\n".join([
            f"<<RAG_SOURCE_{index}>>",
            meta_line,
            item.text,
            f"<</RAG_SOURCE_{index}>>",
        ]))
    return "\n\n".join(blocks)


def update_performance_for_post(session: Session, post_id: str, performance: str) -> int:
    """Annotate a published post's past-content fragments with its performance."""
    if performance not in PERFORMANCE_LEVELS:
        raise ValidationError(f"Unknown performance level: {performance}")
    result = session.execute(
        update(ContentFragment)
        .where(
            ContentFragment.source_type == SOURCE_PAST_CONTENT,
            ContentFragment.source_id == post_id,
        )
        .values(performance=performance, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    logger.info(f"[RAG] Marked {result.rowcount} fragment(s) of post {post_id} as {performance}")
    return result.rowcount


class RagSearcher:
    """Ranks an organization's fragments against a topic.

    Vector path when the topic embeds, case-insensitive substring match
    otherwise. Both share filters and tie-breaks.
    """

    def __init__(
        self,
        session: Session,
        embedder: Optional[EmbeddingClient] = None,
        config: Optional[RagConfig] = None,
    ):
        self.session = session
        self.embedder = embedder
        self.config = config or RagConfig()

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_limit
        return max(1, min(self.config.max_limit, int(limit)))

    def search(self, query: RagQuery) -> List[RagReference]:
        limit = self.clamp_limit(query.limit)
        vector = self.embedder.embed_query(query.topic) if self.embedder else None

        if vector:
            if self._is_postgres():
                ranked = self._vector_search_sql(query, vector, limit)
            else:
                ranked = self._vector_search_local(query, vector, limit)
            logger.info(f"[RAG] Vector search for {query.organization_id} returned {len(ranked)} fragment(s)")
        else:
            ranked = self._text_search(query, limit)
            logger.info(f"[RAG] Text fallback search for {query.organization_id} returned {len(ranked)} fragment(s)")

        return [self._to_reference(fragment, distance) for fragment, distance in ranked]

    # ── Query building ──

    def _is_postgres(self) -> bool:
        return self.session.get_bind().dialect.name == "postgresql"

    def _filtered(self, query: RagQuery):
        stmt = select(ContentFragment).where(
            ContentFragment.organization_id == query.organization_id,
            ContentFragment.source_type.in_(SOURCE_TYPES),
            # Only past content is channel specific
            or_(
                ContentFragment.source_type != SOURCE_PAST_CONTENT,
                ContentFragment.channel.is_(None),
                ContentFragment.channel == query.channel,
            ),
        )
        if query.category:
            stmt = stmt.where(ContentFragment.category == query.category)
        if query.filters.categories:
            stmt = stmt.where(ContentFragment.category.in_(query.filters.categories))
        levels = allowed_performance(query.filters.performance_min)
        if levels:
            stmt = stmt.where(ContentFragment.performance.in_(levels))
        if query.filters.exclude_post_ids:
            stmt = stmt.where(ContentFragment.source_id.not_in(query.filters.exclude_post_ids))
        return stmt

    @staticmethod
    def _priority():
        return case(
            (ContentFragment.source_type == SOURCE_PAST_CONTENT, 1),
            (ContentFragment.source_type == SOURCE_PROJECT_DOC, 2),
            (ContentFragment.source_type == SOURCE_PROFILE, 3),
            else_=4,
        )

    def _vector_search_sql(self, query: RagQuery, vector: List[float], limit: int):
        query_vector = literal(vector, type_=Vector(EMBEDDING_DIMENSIONS))
        distance = ContentFragment.embedding.op("<=>", return_type=Float)(query_vector)
        stmt = (
            self._filtered(query)
            .add_columns(distance.label("distance"))
            .order_by(
                case((ContentFragment.embedding.is_(None), 1), else_=0).asc(),
                distance.asc(),
                self._priority().asc(),
                ContentFragment.created_at.desc(),
            )
            .limit(limit)
        )
        return [(row[0], row[1]) for row in self.session.execute(stmt).all()]

    def _vector_search_local(self, query: RagQuery, vector: List[float], limit: int):
        candidates = self.session.execute(self._filtered(query)).scalars().all()
        scored = [(fragment, cosine_distance(vector, fragment.embedding or [])) for fragment in candidates]

        # Two stable sorts: recency first, then the primary keys
        scored.sort(key=lambda item: to_utc(item[0].created_at), reverse=True)
        scored.sort(key=lambda item: (
            item[1] is None,
            item[1] if item[1] is not None else 0.0,
            SOURCE_PRIORITY.get(item[0].source_type, 4),
        ))
        return scored[:limit]

    def _text_search(self, query: RagQuery, limit: int):
        stmt = (
            self._filtered(query)
            .where(func.lower(ContentFragment.text_content).contains(query.topic.strip().lower(), autoescape=True))
            .order_by(self._priority().asc(), ContentFragment.created_at.desc())
            .limit(limit)
        )
        return [(fragment, None) for fragment in self.session.execute(stmt).scalars().all()]

    @staticmethod
    def _to_reference(fragment: ContentFragment, distance: Optional[float]) -> RagReference:
        return RagReference(
            id=fragment.id,
            source_type=fragment.source_type,
            text=sanitize_rag_text(fragment.text_content),
            source_id=fragment.source_id,
            category=fragment.category,
            channel=fragment.channel,
            performance=fragment.performance,
            metadata=dict(fragment.meta or {}),
            distance=distance,
        )
