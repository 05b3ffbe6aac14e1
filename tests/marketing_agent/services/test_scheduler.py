import threading
from datetime import timedelta
from unittest.mock import patch

from marketing_agent.config import QueueConfig, SchedulerConfig
from marketing_agent.db.base import utcnow
from marketing_agent.db.models import PublishJob
from marketing_agent.services.posts import PostRepository
from marketing_agent.services.publish_queue import PublishQueue
from marketing_agent.services.scheduler import PublishingScheduler, publish_job_id, schedule_due_posts


def test_due_post_is_claimed_and_enqueued_once(session, session_factory, make_post):
    now = utcnow()
    post = make_post(channel="micro-post", status="approved", scheduled_at=now - timedelta(minutes=1))
    queue = PublishQueue(session_factory, QueueConfig())

    first = schedule_due_posts(session, queue, now=now)
    second = schedule_due_posts(session, queue, now=now)

    assert first == 1
    assert second == 0
    session.expire_all()
    assert PostRepository(session).require(post.id).status == "publishing"

    job = queue.get(f"publish-post:{post.id}")
    assert job is not None
    assert job.kind == "publish-post"
    assert job.payload["postId"] == post.id
    assert job.payload["organizationId"] == "org-1"
    assert job.payload["channel"] == "micro-post"
    assert session.query(PublishJob).count() == 1


def test_future_and_manual_posts_are_skipped(session, session_factory, make_post):
    now = utcnow()
    make_post(scheduled_at=now + timedelta(hours=1))
    manual = make_post(channel="blog-manual", scheduled_at=now - timedelta(hours=1))
    queue = PublishQueue(session_factory, QueueConfig())

    assert schedule_due_posts(session, queue, now=now) == 0
    session.expire_all()
    assert PostRepository(session).require(manual.id).status == "approved"


def test_batch_size_caps_a_tick(session, session_factory, make_post):
    now = utcnow()
    for minutes in range(5):
        make_post(scheduled_at=now - timedelta(minutes=minutes + 1))
    queue = PublishQueue(session_factory, QueueConfig())

    assert schedule_due_posts(session, queue, now=now, batch_size=2) == 2
    assert queue.counts()["waiting"] == 2


def test_retry_job_id_includes_retry_count(make_post):
    post = make_post(retry_count=2)
    assert publish_job_id(post) == f"publish-post:{post.id}:retry-2"


def test_tick_is_single_flight(session_factory):
    queue = PublishQueue(session_factory, QueueConfig())
    scheduler = PublishingScheduler(session_factory, queue, SchedulerConfig())

    entered = threading.Event()
    release = threading.Event()

    def slow_tick(*args, **kwargs):
        entered.set()
        release.wait(5)
        return 3

    with patch("marketing_agent.services.scheduler.schedule_due_posts", side_effect=slow_tick) as mock_schedule:
        results = []
        worker = threading.Thread(target=lambda: results.append(scheduler.tick()))
        worker.start()
        assert entered.wait(5)

        assert scheduler.running is True
        assert scheduler.tick() == 0

        release.set()
        worker.join(5)

    assert results == [3]
    assert mock_schedule.call_count == 1
    assert scheduler.running is False


def test_overlapping_ticks_enqueue_each_due_post_once(session, session_factory, make_post):
    now = utcnow()
    post_ids = [make_post(scheduled_at=now - timedelta(minutes=3 - i)).id for i in range(3)]
    queue = PublishQueue(session_factory, QueueConfig())
    scheduler = PublishingScheduler(session_factory, queue, SchedulerConfig())
    other_process = PublishingScheduler(session_factory, queue, SchedulerConfig())

    real_enqueue = queue.enqueue
    enqueued = []
    entered = threading.Event()
    release = threading.Event()

    def blocking_enqueue(kind, payload, job_id=None, retry_policy=None):
        enqueued.append(payload["postId"])
        if threading.current_thread() is not threading.main_thread() and not entered.is_set():
            entered.set()
            release.wait(5)
        return real_enqueue(kind, payload, job_id=job_id, retry_policy=retry_policy)

    queue.enqueue = blocking_enqueue

    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.tick(now=now)))
    worker.start()
    assert entered.wait(5)

    # Same scheduler: the overlapping tick is skipped outright
    assert scheduler.tick(now=now) == 0
    # Another scheduler instance only gets the posts the first tick has not claimed yet
    assert other_process.tick(now=now) == 2

    release.set()
    worker.join(5)

    assert results == [1]
    assert sorted(enqueued) == sorted(post_ids)
    assert session.query(PublishJob).count() == 3
    session.expire_all()
    repository = PostRepository(session)
    assert {repository.require(post_id).status for post_id in post_ids} == {"publishing"}


def test_run_forever_survives_tick_errors(session_factory):
    queue = PublishQueue(session_factory, QueueConfig())
    scheduler = PublishingScheduler(
        session_factory, queue, SchedulerConfig(interval_seconds=0.01, run_on_start=True)
    )
    stop_event = threading.Event()
    calls = []

    def flaky_tick(*args, **kwargs):
        calls.append(1)
        if len(calls) >= 3:
            stop_event.set()
        raise RuntimeError("db went away")

    with patch("marketing_agent.services.scheduler.schedule_due_posts", side_effect=flaky_tick):
        scheduler.run_forever(stop_event)

    assert len(calls) >= 3
