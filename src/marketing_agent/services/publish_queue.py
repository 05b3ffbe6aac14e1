"""Durable publish queue backed by the ``publish_jobs`` table.

Delivery is at-least-once: a job is claimed with a compare-and-set on its
status, and a failed attempt goes back to ``waiting`` with exponential
backoff until its attempts run out. A claim is a lease: a job left
``active`` longer than ``lock_timeout_seconds`` (its worker died) is handed
out again and the lost attempt counts against ``max_attempts``.
"""

from __future__ import annotations

import socket
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from marketing_agent.config import QueueConfig
from marketing_agent.constants import (
    CHANNEL_BLOG_AUTO,
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_KINDS,
    JOB_PUBLISH_POST,
    JOB_WAITING,
)
from marketing_agent.db.base import utcnow
from marketing_agent.db.models import PublishJob
from marketing_agent.errors import JobFailedError, MarketingAgentError, NotFound, ValidationError

SMOKE_JOB_PREFIX = "smoke:"


@dataclass
class RetryPolicy:
    attempts: int = 3
    backoff_seconds: float = 5.0

    def delay_for(self, attempts_made: int) -> float:
        """Exponential backoff: 5s, 10s, 20s ... for attempts 1, 2, 3 ..."""
        return self.backoff_seconds * (2 ** max(0, attempts_made - 1))


@dataclass
class JobContext:
    """What a handler sees of a claimed job."""

    id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0


JobHandler = Callable[[JobContext], Optional[Dict[str, Any]]]


class PublishQueue:
    """Enqueue, claim and settle publish jobs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.config = config or QueueConfig()
        self.clock = clock

    @property
    def default_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.config.attempts, backoff_seconds=self.config.backoff_seconds)

    def enqueue(
        self,
        kind: str,
        payload: Dict[str, Any],
        job_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> PublishJob:
        """Add a job. An existing ``job_id`` is a no-op returning the stored job."""
        if kind not in JOB_KINDS:
            raise ValidationError(f"Unknown job kind: {kind}")

        policy = retry_policy or self.default_policy
        job_id = job_id or f"{kind}:{uuid.uuid4()}"

        with self.session_factory() as session:
            existing = session.get(PublishJob, job_id)
            if existing is not None:
                logger.info(f"[QUEUE] Job {job_id} already exists ({existing.status}); skipping enqueue")
                return existing

            now = self.clock()
            job = PublishJob(
                id=job_id,
                kind=kind,
                payload=dict(payload),
                status=JOB_WAITING,
                attempts_made=0,
                max_attempts=policy.attempts,
                backoff_seconds=policy.backoff_seconds,
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.get(PublishJob, job_id)
                if existing is None:
                    raise
                logger.info(f"[QUEUE] Job {job_id} enqueued concurrently; skipping")
                return existing

            session.refresh(job)
            logger.info(f"[QUEUE] Enqueued {kind} job {job_id}")
            return job

    def get(self, job_id: str) -> Optional[PublishJob]:
        with self.session_factory() as session:
            return session.get(PublishJob, job_id)

    def release_expired(self, now: Optional[datetime] = None) -> int:
        """Take back jobs whose lease expired. Returns how many were released.

        Each expiry counts as an attempt; a job with no attempts left fails.
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.config.lock_timeout_seconds)
        released = 0
        exhausted = 0
        with self.session_factory() as session:
            expired = session.execute(
                select(PublishJob).where(PublishJob.status == JOB_ACTIVE, PublishJob.locked_at < cutoff)
            ).scalars().all()

            for job in expired:
                attempts = job.attempts_made + 1
                gave_up = attempts >= job.max_attempts
                result = session.execute(
                    update(PublishJob)
                    .where(
                        PublishJob.id == job.id,
                        PublishJob.status == JOB_ACTIVE,
                        PublishJob.locked_at < cutoff,
                    )
                    .values(
                        status=JOB_FAILED if gave_up else JOB_WAITING,
                        attempts_made=attempts,
                        last_error=f"Lease held by {job.locked_by} expired",
                        locked_by=None,
                        locked_at=None,
                        available_at=now,
                        finished_at=now if gave_up else None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                released += 1
                if gave_up:
                    exhausted += 1
                    logger.error(f"[QUEUE] Job {job.id} lease expired on its last attempt; marking failed")
                else:
                    logger.warning(
                        f"[QUEUE] Job {job.id} lease held by {job.locked_by} expired "
                        f"(attempt {attempts}/{job.max_attempts}); redelivering"
                    )

            if released:
                session.commit()
            if exhausted:
                self._prune(session, JOB_FAILED, self.config.keep_failed)
        return released

    def claim_next(self, worker_id: str, id_prefix: Optional[str] = None) -> Optional[JobContext]:
        """Claim the oldest available job for ``worker_id``.

        Without a prefix, smoke-test jobs are left for the smoke worker.
        """
        now = self.clock()
        self.release_expired(now)
        with self.session_factory() as session:
            query = select(PublishJob.id).where(
                PublishJob.status == JOB_WAITING,
                PublishJob.available_at <= now,
            )
            if id_prefix:
                query = query.where(PublishJob.id.startswith(id_prefix, autoescape=True))
            else:
                query = query.where(~PublishJob.id.startswith(SMOKE_JOB_PREFIX, autoescape=True))
            candidates = session.execute(
                query.order_by(PublishJob.available_at.asc(), PublishJob.created_at.asc()).limit(10)
            ).scalars().all()

            for job_id in candidates:
                result = session.execute(
                    update(PublishJob)
                    .where(PublishJob.id == job_id, PublishJob.status == JOB_WAITING)
                    .values(status=JOB_ACTIVE, locked_by=worker_id, locked_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another worker got there first
                    continue
                session.commit()
                job = session.get(PublishJob, job_id)
                return JobContext(
                    id=job.id,
                    kind=job.kind,
                    payload=dict(job.payload or {}),
                    attempts_made=job.attempts_made,
                )
        return None

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        now = self.clock()
        with self.session_factory() as session:
            job = session.get(PublishJob, job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found")
            job.status = JOB_COMPLETED
            job.attempts_made += 1
            job.result = result or {}
            job.locked_by = None
            job.locked_at = None
            job.finished_at = now
            job.updated_at = now
            session.commit()
            self._prune(session, JOB_COMPLETED, self.config.keep_completed)
        logger.info(f"[QUEUE] Job {job_id} completed")

    def fail(self, job_id: str, error: str, retryable: bool = True) -> str:
        """Record a failed attempt. Returns the job's resulting status."""
        now = self.clock()
        with self.session_factory() as session:
            job = session.get(PublishJob, job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found")
            job.attempts_made += 1
            job.last_error = error
            job.locked_by = None
            job.locked_at = None
            job.updated_at = now

            if retryable and job.attempts_made < job.max_attempts:
                policy = RetryPolicy(attempts=job.max_attempts, backoff_seconds=job.backoff_seconds)
                delay = policy.delay_for(job.attempts_made)
                job.status = JOB_WAITING
                job.available_at = now + timedelta(seconds=delay)
                session.commit()
                logger.warning(
                    f"[QUEUE] Job {job_id} failed (attempt {job.attempts_made}/{job.max_attempts}); "
                    f"retrying in {delay:.1f}s: {error}"
                )
                return JOB_WAITING

            job.status = JOB_FAILED
            job.finished_at = now
            session.commit()
            logger.error(f"[QUEUE] Job {job_id} failed permanently after {job.attempts_made} attempt(s): {error}")
            self._prune(session, JOB_FAILED, self.config.keep_failed)
            return JOB_FAILED

    def counts(self) -> Dict[str, int]:
        with self.session_factory() as session:
            jobs = session.execute(select(PublishJob.status)).scalars().all()
        stats = {JOB_WAITING: 0, JOB_ACTIVE: 0, JOB_COMPLETED: 0, JOB_FAILED: 0}
        for status in jobs:
            stats[status] = stats.get(status, 0) + 1
        return stats

    def wait_until_finished(self, job_id: str, timeout: float = 30.0, poll_interval: float = 0.2) -> Dict[str, Any]:
        """Block until the job settles. Returns its result or raises JobFailedError/TimeoutError."""
        deadline = time.monotonic() + timeout
        while True:
            with self.session_factory() as session:
                job = session.get(PublishJob, job_id)
                if job is None:
                    raise NotFound(f"Job {job_id} not found")
                if job.status == JOB_COMPLETED:
                    return dict(job.result or {})
                if job.status == JOB_FAILED:
                    raise JobFailedError(job_id, job.last_error)
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Job {job_id} did not finish within {timeout}s")
            time.sleep(poll_interval)

    def _prune(self, session: Session, status: str, keep: int) -> int:
        stale_ids = session.execute(
            select(PublishJob.id)
            .where(PublishJob.status == status)
            .order_by(PublishJob.finished_at.desc(), PublishJob.updated_at.desc())
            .offset(keep)
        ).scalars().all()
        if not stale_ids:
            return 0
        session.execute(delete(PublishJob).where(PublishJob.id.in_(stale_ids)))
        session.commit()
        logger.debug(f"[QUEUE] Pruned {len(stale_ids)} {status} job(s)")
        return len(stale_ids)


class PublishWorker:
    """Dispatches claimed jobs to handlers registered by job kind."""

    def __init__(
        self,
        queue: PublishQueue,
        handlers: Optional[Dict[str, JobHandler]] = None,
        concurrency: Optional[int] = None,
        worker_id: Optional[str] = None,
        id_prefix: Optional[str] = None,
    ):
        self.queue = queue
        self.handlers: Dict[str, JobHandler] = dict(handlers or {})
        self.concurrency = concurrency or queue.config.concurrency
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self.id_prefix = id_prefix

    def register(self, kind: str, handler: JobHandler) -> None:
        self.handlers[kind] = handler

    def process(self, ctx: JobContext) -> str:
        """Run one claimed job and settle it. Returns completed/waiting/failed."""
        handler = self.handlers.get(ctx.kind)
        if handler is None:
            # Configuration error, retrying would not help
            return self.queue.fail(ctx.id, f"No handler registered for job kind {ctx.kind}", retryable=False)

        logger.info(f"[QUEUE] Processing {ctx.kind} job {ctx.id} (attempts so far: {ctx.attempts_made})")
        try:
            result = handler(ctx)
        except MarketingAgentError as e:
            return self.queue.fail(ctx.id, str(e), retryable=e.retryable)
        except Exception as e:
            logger.exception(f"[QUEUE] Unexpected error in job {ctx.id}")
            return self.queue.fail(ctx.id, str(e) or e.__class__.__name__, retryable=True)

        self.queue.complete(ctx.id, result)
        return JOB_COMPLETED

    def process_next(self) -> Optional[str]:
        ctx = self.queue.claim_next(self.worker_id, id_prefix=self.id_prefix)
        if ctx is None:
            return None
        return self.process(ctx)

    def drain(self, max_jobs: Optional[int] = None) -> Dict[str, int]:
        """Process available jobs sequentially until none are left (or max_jobs)."""
        stats = {"processed": 0, "completed": 0, "retrying": 0, "failed": 0}
        while max_jobs is None or stats["processed"] < max_jobs:
            outcome = self.process_next()
            if outcome is None:
                break
            stats["processed"] += 1
            if outcome == JOB_COMPLETED:
                stats["completed"] += 1
            elif outcome == JOB_WAITING:
                stats["retrying"] += 1
            else:
                stats["failed"] += 1
        if stats["processed"]:
            logger.info(f"[QUEUE] Drain complete: {stats}")
        return stats

    def run_forever(self, stop_event: threading.Event, poll_interval: Optional[float] = None) -> None:
        """Keep up to ``concurrency`` jobs in flight until ``stop_event`` is set."""
        poll_interval = poll_interval or self.queue.config.poll_interval_seconds
        in_flight: Set[Future] = set()
        logger.info(f"[QUEUE] Worker {self.worker_id} started (concurrency={self.concurrency})")

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="publish-worker") as pool:
            while not stop_event.is_set():
                in_flight = {f for f in in_flight if not f.done()}
                if len(in_flight) < self.concurrency:
                    try:
                        ctx = self.queue.claim_next(self.worker_id, id_prefix=self.id_prefix)
                    except Exception:
                        logger.exception("[QUEUE] Failed to claim next job")
                        ctx = None
                    if ctx is not None:
                        in_flight.add(pool.submit(self._process_safely, ctx))
                        continue
                stop_event.wait(poll_interval)

        logger.info(f"[QUEUE] Worker {self.worker_id} stopped")

    def _process_safely(self, ctx: JobContext) -> Optional[str]:
        try:
            return self.process(ctx)
        except Exception:
            # Settling the job itself failed; it stays active until its lease expires
            logger.exception(f"[QUEUE] Could not settle job {ctx.id}")
            return None


def run_queue_smoke_test(
    session_factory: sessionmaker,
    config: Optional[QueueConfig] = None,
    timeout: float = 30.0,
) -> Dict[str, Any]:
    """Round-trip one smoke job through a dedicated worker thread."""
    queue = PublishQueue(session_factory, config)
    token = uuid.uuid4().hex[:12]

    def handle_smoke(ctx: JobContext) -> Dict[str, Any]:
        logger.info(f"[QUEUE] Smoke job {ctx.id} handled")
        return {"ok": True, "postId": ctx.payload.get("postId"), "handledAt": utcnow().isoformat()}

    worker = PublishWorker(
        queue,
        {JOB_PUBLISH_POST: handle_smoke},
        concurrency=1,
        worker_id=f"smoke-worker:{token}",
        id_prefix=SMOKE_JOB_PREFIX,
    )

    job = queue.enqueue(
        JOB_PUBLISH_POST,
        {
            "postId": f"smoke-post-{token}",
            "organizationId": "smoke-organization",
            "channel": CHANNEL_BLOG_AUTO,
            "scheduledAt": utcnow().isoformat(),
        },
        job_id=f"{SMOKE_JOB_PREFIX}{token}",
        retry_policy=RetryPolicy(attempts=1, backoff_seconds=0.0),
    )

    stop_event = threading.Event()
    thread = threading.Thread(target=worker.run_forever, args=(stop_event, 0.1), daemon=True)
    thread.start()
    try:
        result = queue.wait_until_finished(job.id, timeout=timeout, poll_interval=0.1)
    finally:
        stop_event.set()
        thread.join(timeout=5)

    logger.info(f"[QUEUE] Smoke test passed for job {job.id}")
    return {"jobId": job.id, "result": result}
