import os
import tempfile
import unittest
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketing_agent.config import QueueConfig
from marketing_agent.db.base import Base, utcnow
from marketing_agent.errors import ExternalServiceError, JobFailedError, ValidationError
from marketing_agent.services.publish_queue import (
    PublishQueue,
    PublishWorker,
    RetryPolicy,
    run_queue_smoke_test,
)


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


def _payload(post_id="post-1"):
    return {"postId": post_id, "organizationId": "org-1", "channel": "micro-post", "scheduledAt": utcnow().isoformat()}


def test_retry_policy_backoff_is_exponential():
    policy = RetryPolicy(attempts=3, backoff_seconds=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]


def test_enqueue_same_job_id_is_noop(session_factory):
    queue = PublishQueue(session_factory)
    first = queue.enqueue("publish-post", _payload(), job_id="publish-post:post-1")
    second = queue.enqueue("publish-post", _payload("other"), job_id="publish-post:post-1")

    assert first.id == second.id
    assert second.payload["postId"] == "post-1"
    assert queue.counts()["waiting"] == 1


def test_enqueue_rejects_unknown_kind(session_factory):
    with pytest.raises(ValidationError):
        PublishQueue(session_factory).enqueue("send-fax", {})


def test_worker_completes_job_with_handler_result(session_factory):
    queue = PublishQueue(session_factory)
    queue.enqueue("publish-post", _payload(), job_id="publish-post:post-1")
    seen = []

    def handler(ctx):
        seen.append((ctx.id, ctx.attempts_made, ctx.payload["postId"]))
        return {"publishedUrl": "https://example.org/p/1"}

    stats = PublishWorker(queue, {"publish-post": handler}).drain()

    assert stats == {"processed": 1, "completed": 1, "retrying": 0, "failed": 0}
    assert seen == [("publish-post:post-1", 0, "post-1")]
    job = queue.get("publish-post:post-1")
    assert job.status == "completed"
    assert job.attempts_made == 1
    assert job.result == {"publishedUrl": "https://example.org/p/1"}


def test_transient_failure_retries_with_backoff(session_factory):
    clock = FakeClock()
    queue = PublishQueue(session_factory, QueueConfig(attempts=3, backoff_seconds=5.0), clock=clock)
    queue.enqueue("publish-post", _payload(), job_id="job-1")
    attempts = []

    def handler(ctx):
        attempts.append(ctx.attempts_made)
        if len(attempts) < 3:
            raise ExternalServiceError("HTTP 503", service="micro-post", status_code=503)
        return {"ok": True}

    worker = PublishWorker(queue, {"publish-post": handler})

    assert worker.process_next() == "waiting"
    # Not available again until the backoff elapses
    assert worker.process_next() is None
    clock.advance(5)
    assert worker.process_next() == "waiting"
    clock.advance(9)
    assert worker.process_next() is None
    clock.advance(1)
    assert worker.process_next() == "completed"

    assert attempts == [0, 1, 2]
    assert queue.get("job-1").attempts_made == 3


def test_attempts_exhausted_fails_permanently(session_factory):
    queue = PublishQueue(session_factory)
    queue.enqueue("publish-post", _payload(), job_id="job-1", retry_policy=RetryPolicy(attempts=2, backoff_seconds=0))

    def handler(ctx):
        raise RuntimeError("boom")

    stats = PublishWorker(queue, {"publish-post": handler}).drain()

    assert stats["processed"] == 2
    assert stats["failed"] == 1
    job = queue.get("job-1")
    assert job.status == "failed"
    assert job.last_error == "boom"


def test_non_retryable_error_fails_on_first_attempt(session_factory):
    queue = PublishQueue(session_factory)
    queue.enqueue("publish-post", _payload(), job_id="job-1")

    def handler(ctx):
        raise ValidationError("post has no image")

    assert PublishWorker(queue, {"publish-post": handler}).process_next() == "failed"
    assert queue.get("job-1").attempts_made == 1


def test_missing_handler_fails_permanently(session_factory):
    queue = PublishQueue(session_factory)
    queue.enqueue("retry-publish", {"postId": "post-1", "retryCount": 0}, job_id="job-1")

    assert PublishWorker(queue, {}).process_next() == "failed"
    assert "No handler" in queue.get("job-1").last_error


def test_retention_keeps_newest_finished_jobs(session_factory):
    clock = FakeClock()
    queue = PublishQueue(session_factory, QueueConfig(keep_completed=2, keep_failed=1), clock=clock)
    for index in range(4):
        clock.advance(1)
        queue.enqueue("publish-post", _payload(f"post-{index}"), job_id=f"job-{index}")

    worker = PublishWorker(queue, {"publish-post": lambda ctx: {"ok": True}})
    for _ in range(4):
        clock.advance(1)
        worker.process_next()

    counts = queue.counts()
    assert counts["completed"] == 2
    assert queue.get("job-0") is None
    assert queue.get("job-3") is not None


def test_wait_until_finished(session_factory):
    queue = PublishQueue(session_factory)
    queue.enqueue("publish-post", _payload(), job_id="ok-job")
    queue.enqueue("publish-post", _payload(), job_id="bad-job", retry_policy=RetryPolicy(attempts=1))

    def handler(ctx):
        if ctx.id == "bad-job":
            raise RuntimeError("nope")
        return {"done": True}

    PublishWorker(queue, {"publish-post": handler}).drain()

    assert queue.wait_until_finished("ok-job", timeout=1) == {"done": True}
    with pytest.raises(JobFailedError):
        queue.wait_until_finished("bad-job", timeout=1)


def test_wait_until_finished_times_out(session_factory):
    queue = PublishQueue(session_factory)
    queue.enqueue("publish-post", _payload(), job_id="stuck")

    with pytest.raises(TimeoutError):
        queue.wait_until_finished("stuck", timeout=0.05, poll_interval=0.01)


def test_abandoned_job_is_redelivered_after_lease_expires(session_factory):
    clock = FakeClock()
    queue = PublishQueue(session_factory, QueueConfig(lock_timeout_seconds=300), clock=clock)
    queue.enqueue("publish-post", _payload("p1"), job_id="publish-post:p1")
    seen = []

    # worker-a claims the job and dies without settling it
    assert queue.claim_next("worker-a").id == "publish-post:p1"
    assert queue.get("publish-post:p1").locked_by == "worker-a"

    worker_b = PublishWorker(queue, {"publish-post": lambda ctx: seen.append(ctx.attempts_made) or {"ok": True}})

    clock.advance(299)
    assert worker_b.drain()["processed"] == 0
    assert queue.get("publish-post:p1").status == "active"

    clock.advance(2)
    stats = worker_b.drain()

    assert stats == {"processed": 1, "completed": 1, "retrying": 0, "failed": 0}
    assert seen == [1]
    job = queue.get("publish-post:p1")
    assert job.status == "completed"
    assert job.attempts_made == 2
    assert job.locked_at is None


def test_expired_lease_on_last_attempt_fails_job(session_factory):
    clock = FakeClock()
    queue = PublishQueue(session_factory, QueueConfig(lock_timeout_seconds=60), clock=clock)
    queue.enqueue("publish-post", _payload(), job_id="job-1", retry_policy=RetryPolicy(attempts=1))
    queue.claim_next("worker-a")

    clock.advance(61)

    assert queue.release_expired() == 1
    job = queue.get("job-1")
    assert job.status == "failed"
    assert "worker-a" in job.last_error
    assert queue.claim_next("worker-b") is None


def test_regular_workers_skip_smoke_jobs(session_factory):
    queue = PublishQueue(session_factory)
    queue.enqueue("publish-post", _payload(), job_id="smoke:abc")

    assert queue.claim_next("worker-1") is None
    ctx = queue.claim_next("smoke-worker", id_prefix="smoke:")
    assert ctx is not None
    assert ctx.id == "smoke:abc"


class QueueSmokeTest(unittest.TestCase):
    def test_smoke_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            engine = create_engine(
                f"sqlite:///{os.path.join(tmp, 'queue.db')}",
                connect_args={"check_same_thread": False},
            )
            Base.metadata.create_all(engine)
            factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)

            result = run_queue_smoke_test(factory, QueueConfig(), timeout=10)

            self.assertTrue(result["jobId"].startswith("smoke:"))
            self.assertTrue(result["result"]["ok"])
            engine.dispose()
