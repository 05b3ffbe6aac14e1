"""Engagement metrics collection and the performance feedback loop."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from marketing_agent.config import MetricsConfig
from marketing_agent.constants import PERFORMANCE_HIGH, PERFORMANCE_LOW, PERFORMANCE_MEDIUM, STATUS_PUBLISHED
from marketing_agent.db.base import to_utc, utcnow
from marketing_agent.db.models import Post, PostMetric
from marketing_agent.errors import NotFound
from marketing_agent.services.rag_search import update_performance_for_post

SCORE_WEIGHTS = {
    "comments": 4,
    "shares": 3,
    "saves": 2,
    "likes": 1,
    "clicks": 1,
}


@dataclass
class EngagementSnapshot:
    impressions: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    saves: int = 0
    clicks: int = 0


class MetricsSource(Protocol):
    def fetch(self, post: Post) -> EngagementSnapshot:
        ...


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class SyntheticMetricsSource:
    """Deterministic stand-in until channel insight APIs are wired up.

    Numbers derive from body length and tag count only.
    """

    def fetch(self, post: Post) -> EngagementSnapshot:
        content_length = len(post.body or "")
        tag_count = len(post.tags or [])

        impressions = max(100, _round_half_up(content_length * 2 + tag_count * 35))
        likes = max(3, _round_half_up(impressions * 0.06))
        return EngagementSnapshot(
            impressions=impressions,
            likes=likes,
            comments=_round_half_up(likes * 0.16),
            shares=_round_half_up(likes * 0.08),
            saves=_round_half_up(likes * 0.11),
            clicks=_round_half_up(impressions * 0.03),
        )


def score_metric(snapshot: EngagementSnapshot) -> float:
    return float(sum(getattr(snapshot, name) * weight for name, weight in SCORE_WEIGHTS.items()))


def classify_performance(score: float, high_threshold: float = 120.0, medium_threshold: float = 40.0) -> str:
    if score >= high_threshold:
        return PERFORMANCE_HIGH
    if score >= medium_threshold:
        return PERFORMANCE_MEDIUM
    return PERFORMANCE_LOW


def _latest_snapshots():
    """Subquery: (post_id, latest collected_at)."""
    return (
        select(PostMetric.post_id, func.max(PostMetric.collected_at).label("latest_at"))
        .group_by(PostMetric.post_id)
        .subquery()
    )


class MetricsCollector:
    def __init__(
        self,
        session: Session,
        source: Optional[MetricsSource] = None,
        config: Optional[MetricsConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.source = source or SyntheticMetricsSource()
        self.config = config or MetricsConfig()
        self.clock = clock

    def collect_for_post(self, post_id: str) -> Optional[PostMetric]:
        """Append a snapshot for a published post and feed back its performance."""
        post = self.session.get(Post, post_id)
        if post is None:
            raise NotFound(f"Post {post_id} not found")
        if post.status != STATUS_PUBLISHED:
            logger.info(f"[METRICS] Post {post_id} is {post.status}; skipping")
            return None

        snapshot = self.source.fetch(post)
        score = score_metric(snapshot)
        performance = classify_performance(score, self.config.high_threshold, self.config.medium_threshold)

        metric = PostMetric(
            post_id=post.id,
            channel=post.channel,
            score=score,
            performance=performance,
            collected_at=self.clock(),
            **asdict(snapshot),
        )
        self.session.add(metric)
        self.session.commit()
        self.session.refresh(metric)

        update_performance_for_post(self.session, post.id, performance)
        logger.info(f"[METRICS] Post {post_id}: score={score:.0f} -> {performance}")
        return metric

    def find_stale(self, limit: Optional[int] = None) -> List[str]:
        """Published posts with no snapshot or one older than the refresh window."""
        limit = max(1, min(500, limit or self.config.collect_limit))
        cutoff = to_utc(self.clock()) - timedelta(hours=self.config.refresh_hours)
        latest = _latest_snapshots()
        query = (
            select(Post.id)
            .outerjoin(latest, latest.c.post_id == Post.id)
            .where(
                Post.status == STATUS_PUBLISHED,
                or_(latest.c.latest_at.is_(None), latest.c.latest_at < cutoff),
            )
            .order_by(Post.published_at.desc(), Post.updated_at.desc())
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all())

    def collect_recent(self, limit: Optional[int] = None) -> List[PostMetric]:
        collected: List[PostMetric] = []
        for post_id in self.find_stale(limit):
            metric = self.collect_for_post(post_id)
            if metric is not None:
                collected.append(metric)
        logger.info(f"[METRICS] Collected {len(collected)} snapshot(s)")
        return collected


def get_metrics_summary(
    session: Session,
    organization_id: Optional[str] = None,
    days: int = 30,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Totals and per-channel breakdown over the trailing window.

    Only the latest snapshot of each post counts.
    """
    days = max(1, min(90, int(days)))
    since = to_utc(now or utcnow()) - timedelta(days=days)

    latest = _latest_snapshots()
    base = (
        select(PostMetric)
        .join(latest, (latest.c.post_id == PostMetric.post_id) & (latest.c.latest_at == PostMetric.collected_at))
        .join(Post, Post.id == PostMetric.post_id)
        .where(PostMetric.collected_at >= since)
    )
    if organization_id:
        base = base.where(Post.organization_id == organization_id)
    rows = base.subquery()

    sums = [
        func.count(func.distinct(rows.c.post_id)).label("post_count"),
        *[func.coalesce(func.sum(getattr(rows.c, name)), 0).label(name)
          for name in ("impressions", "likes", "comments", "shares", "saves", "clicks")],
    ]

    totals_row = session.execute(select(*sums)).one()
    channel_rows = session.execute(
        select(rows.c.channel, *sums)
        .group_by(rows.c.channel)
        .order_by(func.coalesce(func.sum(rows.c.impressions), 0).desc())
    ).all()

    def _as_dict(row) -> Dict[str, int]:
        return {
            "postCount": int(row.post_count or 0),
            "impressions": int(row.impressions or 0),
            "likes": int(row.likes or 0),
            "comments": int(row.comments or 0),
            "shares": int(row.shares or 0),
            "saves": int(row.saves or 0),
            "clicks": int(row.clicks or 0),
        }

    return {
        "days": days,
        "totals": _as_dict(totals_row),
        "byChannel": [{"channel": row.channel, **_as_dict(row)} for row in channel_rows],
    }
