from unittest.mock import MagicMock

import pytest

from marketing_agent.config import MicroPostConfig, QueueConfig, Settings
from marketing_agent.db.models import ContentFragment
from marketing_agent.errors import ChannelMismatch, ExternalServiceError, ValidationError
from marketing_agent.jobs.publishing import PublishingJobHandlers, enqueue_retry
from marketing_agent.services.posts import PostRepository
from marketing_agent.services.publish_queue import JobContext, PublishQueue, PublishWorker
from marketing_agent.services.scheduler import schedule_due_posts


def _response(status_code=200, data=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.json.return_value = data or {}
    resp.text = ""
    return resp


def _settings():
    return Settings(micro_post=MicroPostConfig(access_token="th-token", account_id="9876543210"))


def _handlers(session_factory, http):
    embedder = MagicMock()
    embedder.embed.side_effect = lambda texts: [None for _ in texts]
    return PublishingJobHandlers(session_factory, _settings(), http=http, embedder=embedder)


def _reload(session, post_id):
    session.expire_all()
    return PostRepository(session).require(post_id)


def test_scheduled_post_is_published_and_indexed(session, session_factory, make_post):
    post = make_post(channel="micro-post", status="approved")
    queue = PublishQueue(session_factory)
    http = MagicMock()
    http.request.side_effect = [_response(data={"id": "c-1"}), _response(data={"id": "m-1"})]

    assert schedule_due_posts(session, queue) == 1
    stats = PublishWorker(queue, _handlers(session_factory, http).handlers()).drain()

    assert stats["completed"] == 1
    stored = _reload(session, post.id)
    assert stored.status == "published"
    assert stored.published_url == "https://www.threads.net/t/m-1"

    fragments = session.query(ContentFragment).filter_by(source_id=post.id).all()
    assert len(fragments) == 1
    assert fragments[0].source_type == "past-content"
    assert fragments[0].channel == "micro-post"


def test_redelivered_job_reclaims_failed_post(session, session_factory, make_post):
    post = make_post(channel="micro-post", status="approved")
    queue = PublishQueue(session_factory, QueueConfig(backoff_seconds=0))
    http = MagicMock()
    http.request.side_effect = [
        _response(status_code=503),
        _response(data={"id": "c-2"}),
        _response(data={"id": "m-2"}),
    ]
    worker = PublishWorker(queue, _handlers(session_factory, http).handlers())

    schedule_due_posts(session, queue)
    assert worker.process_next() == "waiting"
    assert _reload(session, post.id).status == "failed"

    assert worker.process_next() == "completed"
    stored = _reload(session, post.id)
    assert stored.status == "published"
    assert stored.retry_count == 1


def test_retry_publish_respects_retry_limit(session, session_factory, make_post):
    post = make_post(channel="micro-post", status="failed", retry_count=3)
    handlers = _handlers(session_factory, MagicMock())

    with pytest.raises(ValidationError):
        handlers.retry_publish(JobContext(id="retry-publish:x", kind="retry-publish", payload={"postId": post.id}))

    assert _reload(session, post.id).status == "failed"


def test_retry_publish_reclaims_and_publishes(session, session_factory, make_post):
    post = make_post(channel="micro-post", status="failed", retry_count=1, error_message="HTTP 503")
    http = MagicMock()
    http.request.side_effect = [_response(data={"id": "c-1"}), _response(data={"id": "m-9"})]
    handlers = _handlers(session_factory, http)

    result = handlers.retry_publish(JobContext(
        id="retry-publish:x", kind="retry-publish", payload={"postId": post.id, "retryCount": 1},
    ))

    assert result["published_url"] == "https://www.threads.net/t/m-9"
    stored = _reload(session, post.id)
    assert stored.retry_count == 2
    assert stored.error_message is None


def test_manual_channel_job_is_rejected(session, session_factory, make_post):
    post = make_post(channel="blog-manual", status="publishing")
    handlers = _handlers(session_factory, MagicMock())

    with pytest.raises(ChannelMismatch):
        handlers.publish_post(JobContext(id="publish-post:x", kind="publish-post", payload={"postId": post.id}))


def test_publish_failure_propagates_for_queue_retry(session, session_factory, make_post):
    post = make_post(channel="micro-post", status="publishing")
    http = MagicMock()
    http.request.return_value = _response(status_code=502)
    handlers = _handlers(session_factory, http)

    with pytest.raises(ExternalServiceError):
        handlers.publish_post(JobContext(id="publish-post:x", kind="publish-post", payload={"postId": post.id}))


def test_enqueue_retry_only_for_failed_posts(session, session_factory, make_post):
    queue = PublishQueue(session_factory)
    approved = make_post(status="approved")
    failed = make_post(status="failed", retry_count=1)

    with pytest.raises(ValidationError):
        enqueue_retry(session, queue, approved.id)

    job = enqueue_retry(session, queue, failed.id, reason="token refreshed")
    assert job.id == f"retry-publish:{failed.id}:1"
    assert job.payload == {"postId": failed.id, "reason": "token refreshed", "retryCount": 1}
