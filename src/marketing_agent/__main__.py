#!/usr/bin/env python3
"""CLI entrypoint for the nonprofit marketing agent."""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import threading
from dataclasses import asdict
from pathlib import Path

from loguru import logger

from marketing_agent.config import load_settings
from marketing_agent.content.generator import ContentGenerator
from marketing_agent.content.llm import ChatClient
from marketing_agent.db.base import SessionLocal
from marketing_agent.jobs.publishing import PublishingJobHandlers, enqueue_retry
from marketing_agent.services.embeddings import EmbeddingClient
from marketing_agent.services.metrics import MetricsCollector, get_metrics_summary
from marketing_agent.services.publish_queue import PublishQueue, PublishWorker, run_queue_smoke_test
from marketing_agent.services.rag_ingest import RagIngestor
from marketing_agent.services.rag_search import RagSearcher
from marketing_agent.services.scheduler import PublishingScheduler


def _stop_event() -> threading.Event:
    stop_event = threading.Event()

    def _handle(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    return stop_event


def _print(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def cmd_scheduler(args, settings) -> int:
    queue = PublishQueue(SessionLocal, settings.queue)
    scheduler = PublishingScheduler(SessionLocal, queue, settings.scheduler)
    if args.loop:
        scheduler.run_forever(_stop_event())
        return 0
    count = scheduler.tick()
    logger.info(f"Scheduled {count} post(s)")
    return 0


def cmd_worker(args, settings) -> int:
    queue = PublishQueue(SessionLocal, settings.queue)
    handlers = PublishingJobHandlers(SessionLocal, settings)
    worker = PublishWorker(queue, handlers.handlers(), concurrency=args.concurrency)
    if args.loop:
        worker.run_forever(_stop_event())
        return 0
    stats = worker.drain(max_jobs=args.max_jobs)
    _print(stats)
    return 1 if stats["failed"] else 0


def cmd_retry(args, settings) -> int:
    queue = PublishQueue(SessionLocal, settings.queue)
    with SessionLocal() as session:
        job = enqueue_retry(session, queue, args.post_id, reason=args.reason)
    logger.info(f"Queued retry job {job.id}")
    return 0


def cmd_collect_metrics(args, settings) -> int:
    with SessionLocal() as session:
        collector = MetricsCollector(session, config=settings.metrics)
        if args.post_id:
            metric = collector.collect_for_post(args.post_id)
            _print({"postId": args.post_id, "performance": metric.performance if metric else None})
        else:
            collected = collector.collect_recent(args.limit)
            _print({"collected": len(collected)})
    return 0


def cmd_metrics_summary(args, settings) -> int:
    with SessionLocal() as session:
        _print(get_metrics_summary(session, organization_id=args.organization_id, days=args.days))
    return 0


def cmd_ingest_profile(args, settings) -> int:
    with SessionLocal() as session:
        ingestor = RagIngestor(session, EmbeddingClient(settings.openai), settings.rag)
        outcome = ingestor.ingest_organization_profile(args.organization_id)
    _print(asdict(outcome))
    return 0


def cmd_ingest_doc(args, settings) -> int:
    if not args.file.exists():
        raise SystemExit(f"Document not found: {args.file}")

    with SessionLocal() as session:
        ingestor = RagIngestor(session, EmbeddingClient(settings.openai), settings.rag)
        outcome = ingestor.ingest_project_document(
            args.organization_id,
            args.source_id or args.file.stem,
            args.file.read_text(encoding="utf-8"),
            title=args.title,
            category=args.category,
            channel=args.channel,
            metadata={"path": str(args.file)},
        )
    _print(asdict(outcome))
    return 0


def cmd_generate(args, settings) -> int:
    with SessionLocal() as session:
        embedder = EmbeddingClient(settings.openai)
        generator = ContentGenerator(
            session,
            ChatClient(settings.openai),
            searcher=RagSearcher(session, embedder, settings.rag),
            config=settings.generation,
        )
        content = generator.generate({
            "organization_id": args.organization_id,
            "channel": args.channel,
            "topic": args.topic,
            "category": args.category,
            "angle": args.angle,
            "target_length": args.length,
        })
    _print(content.model_dump())
    return 0


def cmd_queue_smoke(args, settings) -> int:
    result = run_queue_smoke_test(SessionLocal, settings.queue, timeout=args.timeout)
    _print(result)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Nonprofit marketing agent CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("scheduler", help="Enqueue due approved posts")
    p.add_argument("--loop", action="store_true", help="Keep ticking on the configured interval")
    p.set_defaults(func=cmd_scheduler)

    p = sub.add_parser("worker", help="Process publish jobs")
    p.add_argument("--loop", action="store_true", help="Run until interrupted")
    p.add_argument("--max-jobs", type=int, default=None)
    p.add_argument("--concurrency", type=int, default=None)
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("retry", help="Queue a retry for a failed post")
    p.add_argument("post_id")
    p.add_argument("--reason", default=None)
    p.set_defaults(func=cmd_retry)

    p = sub.add_parser("collect-metrics", help="Collect engagement snapshots")
    p.add_argument("--post-id", default=None)
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_collect_metrics)

    p = sub.add_parser("metrics-summary", help="Print engagement totals")
    p.add_argument("--organization-id", default=None)
    p.add_argument("--days", type=int, default=30)
    p.set_defaults(func=cmd_metrics_summary)

    p = sub.add_parser("ingest-profile", help="Index an organization profile")
    p.add_argument("organization_id")
    p.set_defaults(func=cmd_ingest_profile)

    p = sub.add_parser("ingest-doc", help="Index a project document")
    p.add_argument("organization_id")
    p.add_argument("file", type=Path)
    p.add_argument("--source-id", default=None)
    p.add_argument("--title", default=None)
    p.add_argument("--category", default=None)
    p.add_argument("--channel", default=None)
    p.set_defaults(func=cmd_ingest_doc)

    p = sub.add_parser("generate", help="Generate a draft for a channel")
    p.add_argument("organization_id")
    p.add_argument("channel")
    p.add_argument("topic")
    p.add_argument("--category", default=None)
    p.add_argument("--angle", default=None)
    p.add_argument("--length", choices=["short", "medium", "long"], default=None)
    p.set_defaults(func=cmd_generate)

    p = sub.add_parser("queue-smoke", help="Round-trip one job through the queue")
    p.add_argument("--timeout", type=float, default=30.0)
    p.set_defaults(func=cmd_queue_smoke)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logger.remove()
    logger.add(sys.stdout, level=os.getenv("LOG_LEVEL", "INFO"))

    settings = load_settings()
    return args.func(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
