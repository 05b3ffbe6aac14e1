#!/usr/bin/env python3
"""Round-trip one job through the publish queue and report the result."""
import sys
from pathlib import Path

# Add src manually because -I flag ignores PYTHONPATH
sys.path.append(str(Path(__file__).resolve().parent.parent / "src"))

from dotenv import load_dotenv

load_dotenv()

from loguru import logger

from marketing_agent.config import load_settings
from marketing_agent.db.base import SessionLocal
from marketing_agent.services.publish_queue import run_queue_smoke_test


def main() -> int:
    logger.remove()
    logger.add(sys.stdout, level="INFO")

    settings = load_settings()
    try:
        result = run_queue_smoke_test(SessionLocal, settings.queue)
    except Exception as exc:
        print(f"[smoke] FAILED: {exc}", file=sys.stderr)
        return 1

    print(f"[smoke] OK job={result['jobId']} result={result['result']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
