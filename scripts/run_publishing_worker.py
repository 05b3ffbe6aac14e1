#!/usr/bin/env python3
import sys
import os

# Add src to path
sys.path.append(os.path.join(os.path.dirname(__file__), '../src'))

from loguru import logger
from sqlalchemy import select

from marketing_agent.config import load_settings
from marketing_agent.constants import JOB_WAITING
from marketing_agent.db.base import SessionLocal, utcnow
from marketing_agent.db.models import PublishJob
from marketing_agent.jobs.publishing import PublishingJobHandlers
from marketing_agent.services.publish_queue import PublishQueue, PublishWorker
from marketing_agent.services.scheduler import PublishingScheduler

MAX_JOBS_PER_INVOCATION = 10


def has_waiting_jobs(session) -> bool:
    stmt = select(PublishJob.id).where(
        PublishJob.status == JOB_WAITING,
        PublishJob.available_at <= utcnow(),
    ).limit(1)
    return session.execute(stmt).scalar_one_or_none() is not None


def main() -> int:
    # Setup logger to stdout/stderr for systemd
    logger.remove()
    logger.add(sys.stdout, level="INFO")

    settings = load_settings()
    queue = PublishQueue(SessionLocal, settings.queue)

    try:
        PublishingScheduler(SessionLocal, queue, settings.scheduler).tick()

        with SessionLocal() as session:
            if not has_waiting_jobs(session):
                print("[worker] No waiting jobs, exiting")
                return 0

        handlers = PublishingJobHandlers(SessionLocal, settings)
        stats = PublishWorker(queue, handlers.handlers()).drain(max_jobs=MAX_JOBS_PER_INVOCATION)
        print(f"[worker] Result: {stats}")
    except Exception as exc:
        print(f"[worker] ERROR: {exc}", file=sys.stderr)
        logger.exception("Worker failed")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
