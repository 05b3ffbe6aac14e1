"""Queue handlers that move claimed posts through a channel publisher."""

from __future__ import annotations

from typing import Any, Dict, Optional

import requests
from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from marketing_agent.config import Settings, load_settings
from marketing_agent.constants import (
    JOB_PUBLISH_POST,
    JOB_RETRY_PUBLISH,
    MAX_RETRY_COUNT,
    STATUS_FAILED,
)
from marketing_agent.errors import ValidationError
from marketing_agent.publishers import get_publisher_class
from marketing_agent.publishers.base import PublishResult
from marketing_agent.services.embeddings import EmbeddingClient
from marketing_agent.services.posts import PostRepository
from marketing_agent.services.publish_queue import JobContext, JobHandler, PublishQueue
from marketing_agent.services.rag_ingest import RagIngestor


def retry_job_id(post_id: str, retry_count: int) -> str:
    return f"{JOB_RETRY_PUBLISH}:{post_id}:{retry_count}"


def enqueue_retry(session: Session, queue: PublishQueue, post_id: str, reason: Optional[str] = None):
    """Queue a manual retry for a failed post."""
    post = PostRepository(session).require(post_id)
    if post.status != STATUS_FAILED:
        raise ValidationError(f"Post {post_id} is {post.status}, only failed posts can be retried")
    if (post.retry_count or 0) >= MAX_RETRY_COUNT:
        raise ValidationError(f"Post {post_id} reached the retry limit ({MAX_RETRY_COUNT})")

    payload = {"postId": post.id, "reason": reason, "retryCount": post.retry_count or 0}
    return queue.enqueue(JOB_RETRY_PUBLISH, payload, job_id=retry_job_id(post.id, post.retry_count or 0))


class PublishingJobHandlers:
    """Builds one session per job and wires the publisher to RAG ingest."""

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        http: Optional[requests.Session] = None,
        embedder: Optional[EmbeddingClient] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or load_settings()
        self.http = http
        self.embedder = embedder if embedder is not None else EmbeddingClient(self.settings.openai)

    def handlers(self) -> Dict[str, JobHandler]:
        return {
            JOB_PUBLISH_POST: self.publish_post,
            JOB_RETRY_PUBLISH: self.retry_publish,
        }

    def publish_post(self, ctx: JobContext) -> Dict[str, Any]:
        post_id = self._post_id(ctx)
        with self.session_factory() as session:
            repository = self._repository(session)
            post = repository.require(post_id)

            # A redelivered attempt finds the post failed by the previous one
            if ctx.attempts_made > 0 and post.status == STATUS_FAILED:
                repository.reclaim_failed(post_id)

            result = self._publish(session, repository, post.channel, post_id)
            return result.to_dict()

    def retry_publish(self, ctx: JobContext) -> Dict[str, Any]:
        post_id = self._post_id(ctx)
        with self.session_factory() as session:
            repository = self._repository(session)
            post = repository.require(post_id)

            retry_count = post.retry_count or 0
            if retry_count >= MAX_RETRY_COUNT:
                raise ValidationError(f"Post {post_id} reached the retry limit ({MAX_RETRY_COUNT})")

            if post.status == STATUS_FAILED:
                reason = ctx.payload.get("reason")
                logger.info(f"[JOB] Retrying post {post_id} (retry {retry_count + 1}){f': {reason}' if reason else ''}")
                repository.reclaim_failed(post_id)

            result = self._publish(session, repository, post.channel, post_id)
            return result.to_dict()

    def _publish(self, session: Session, repository: PostRepository, channel: str, post_id: str) -> PublishResult:
        publisher_cls = get_publisher_class(channel)
        publisher = publisher_cls(session, self.settings, http=self.http, repository=repository)
        return publisher.publish(post_id)

    def _repository(self, session: Session) -> PostRepository:
        ingestor = RagIngestor(session, embedder=self.embedder, config=self.settings.rag)
        return PostRepository(session, ingestor=ingestor)

    @staticmethod
    def _post_id(ctx: JobContext) -> str:
        post_id = ctx.payload.get("postId")
        if not post_id:
            raise ValidationError(f"Job {ctx.id} has no postId")
        return str(post_id)
