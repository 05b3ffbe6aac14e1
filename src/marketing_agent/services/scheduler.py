"""Periodic promotion of due, approved posts into publish jobs."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from marketing_agent.config import SchedulerConfig
from marketing_agent.constants import AUTO_CHANNELS, JOB_PUBLISH_POST
from marketing_agent.db.base import to_utc, utcnow
from marketing_agent.db.models import Post
from marketing_agent.services.posts import PostRepository
from marketing_agent.services.publish_queue import PublishQueue


def publish_job_id(post: Post) -> str:
    """Deterministic job id so re-enqueuing the same post is a queue no-op."""
    if post.retry_count:
        return f"publish-post:{post.id}:retry-{post.retry_count}"
    return f"publish-post:{post.id}"


def schedule_due_posts(
    session: Session,
    queue: PublishQueue,
    now: Optional[datetime] = None,
    batch_size: int = 50,
) -> int:
    """Claim due approved posts and enqueue one publish job per post.

    Manual channels are never picked up. Returns the number scheduled.
    """
    now = to_utc(now or utcnow())
    repository = PostRepository(session)
    due = repository.find_due(now, limit=batch_size, channels=AUTO_CHANNELS)
    if not due:
        logger.debug("[SCHEDULER] No due posts")
        return 0

    scheduled = 0
    for post in due:
        # Read everything needed before the claim expires the instance
        post_id = post.id
        job_id = publish_job_id(post)
        payload = {
            "postId": post_id,
            "organizationId": post.organization_id,
            "channel": post.channel,
            "scheduledAt": to_utc(post.scheduled_at).isoformat(),
        }

        if not repository.claim_for_publishing(post_id):
            continue

        queue.enqueue(JOB_PUBLISH_POST, payload, job_id=job_id)
        scheduled += 1
        logger.info(f"[SCHEDULER] Scheduled post {post_id} ({payload['channel']}) as {job_id}")

    logger.info(f"[SCHEDULER] Tick scheduled {scheduled}/{len(due)} due post(s)")
    return scheduled


class PublishingScheduler:
    """Runs ``schedule_due_posts`` on an interval, one tick at a time."""

    def __init__(
        self,
        session_factory: sessionmaker,
        queue: PublishQueue,
        config: Optional[SchedulerConfig] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.config = config or SchedulerConfig()
        self._tick_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._tick_lock.locked()

    def tick(self, now: Optional[datetime] = None) -> int:
        """Schedule due posts. A tick requested while another runs returns 0."""
        if not self._tick_lock.acquire(blocking=False):
            logger.info("[SCHEDULER] Previous tick still running; skipping")
            return 0
        try:
            with self.session_factory() as session:
                return schedule_due_posts(session, self.queue, now=now, batch_size=self.config.batch_size)
        finally:
            self._tick_lock.release()

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(f"[SCHEDULER] Started (interval={self.config.interval_seconds}s, batch={self.config.batch_size})")
        if self.config.run_on_start:
            self._safe_tick()
        while not stop_event.wait(self.config.interval_seconds):
            self._safe_tick()
        logger.info("[SCHEDULER] Stopped")

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception("[SCHEDULER] Tick failed")
