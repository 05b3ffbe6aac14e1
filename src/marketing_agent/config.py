"""Configuration models for the marketing agent."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env automatically on import (local dev)
load_dotenv()


class OpenAIConfig(BaseModel):
    """LLM and embedding endpoint configuration."""

    api_key: Optional[str] = None
    base_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-4.1-mini"
    embedding_model: str = "text-embedding-3-small"
    temperature: float = Field(default=0.2, ge=0.0, le=1.0)
    timeout_seconds: float = 60.0
    embedding_timeout_seconds: float = 20.0


class ImageFeedConfig(BaseModel):
    """Image-feed channel (Graph API) credentials and endpoints."""

    access_token: Optional[str] = None
    account_id: Optional[str] = None
    api_base_url: str = "https://graph.instagram.com"
    api_version: str = "v21.0"
    timeout_seconds: float = 30.0


class MicroPostConfig(BaseModel):
    """Micro-post channel (Threads API) credentials and endpoints."""

    access_token: Optional[str] = None
    account_id: Optional[str] = None
    api_base_url: str = "https://graph.threads.net"
    api_version: str = "v1.0"
    timeout_seconds: float = 30.0


class BlogConfig(BaseModel):
    """Auto-published blog endpoint."""

    publish_url: Optional[str] = None
    api_token: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: float = 30.0


class QueueConfig(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=5.0, ge=0.0)
    keep_completed: int = Field(default=100, ge=0)
    keep_failed: int = Field(default=100, ge=0)
    concurrency: int = Field(default=2, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)
    lock_timeout_seconds: float = Field(default=300.0, gt=0.0)


class SchedulerConfig(BaseModel):
    interval_seconds: float = Field(default=30.0, gt=0.0)
    batch_size: int = Field(default=50, ge=1)
    run_on_start: bool = True


class GenerationConfig(BaseModel):
    rate_limit_requests: int = Field(default=5, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0.0)
    guidelines_path: Optional[Path] = None


class RagConfig(BaseModel):
    chunk_max_length: int = Field(default=500, ge=1)
    default_limit: int = Field(default=7, ge=1)
    max_limit: int = Field(default=10, ge=1)


class MetricsConfig(BaseModel):
    high_threshold: float = 120.0
    medium_threshold: float = 40.0
    refresh_hours: float = Field(default=24.0, gt=0.0)
    collect_limit: int = Field(default=100, ge=1, le=500)


class Settings(BaseModel):
    """Global settings for the marketing agent."""

    openai: OpenAIConfig = OpenAIConfig()
    image_feed: ImageFeedConfig = ImageFeedConfig()
    micro_post: MicroPostConfig = MicroPostConfig()
    blog: BlogConfig = BlogConfig()
    queue: QueueConfig = QueueConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    generation: GenerationConfig = GenerationConfig()
    rag: RagConfig = RagConfig()
    metrics: MetricsConfig = MetricsConfig()


def _env_optional_path(name: str) -> Path | None:
    value = os.environ.get(name)
    if not value:
        return None
    return Path(value).expanduser().resolve()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() == "true"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def load_settings() -> Settings:
    """Build Settings from environment variables (.env for local dev)."""
    try:
        openai = OpenAIConfig(
            api_key=os.getenv("OPENAI_API_KEY") or None,
            base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4.1-mini"),
            embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            timeout_seconds=_env_float("OPENAI_TIMEOUT_SECONDS", 60.0),
            embedding_timeout_seconds=_env_float("OPENAI_EMBEDDING_TIMEOUT_SECONDS", 20.0),
        )

        image_feed = ImageFeedConfig(
            access_token=os.getenv("IMAGE_FEED_ACCESS_TOKEN") or None,
            account_id=os.getenv("IMAGE_FEED_ACCOUNT_ID") or None,
            api_base_url=os.getenv("IMAGE_FEED_API_BASE_URL", "https://graph.instagram.com"),
            api_version=os.getenv("IMAGE_FEED_API_VERSION", "v21.0"),
            timeout_seconds=_env_float("IMAGE_FEED_TIMEOUT_SECONDS", 30.0),
        )

        micro_post = MicroPostConfig(
            access_token=os.getenv("MICRO_POST_ACCESS_TOKEN") or None,
            account_id=os.getenv("MICRO_POST_ACCOUNT_ID") or None,
            api_base_url=os.getenv("MICRO_POST_API_BASE_URL", "https://graph.threads.net"),
            api_version=os.getenv("MICRO_POST_API_VERSION", "v1.0"),
            timeout_seconds=_env_float("MICRO_POST_TIMEOUT_SECONDS", 30.0),
        )

        blog = BlogConfig(
            publish_url=os.getenv("BLOG_PUBLISH_URL") or None,
            api_token=os.getenv("BLOG_API_TOKEN") or None,
            base_url=os.getenv("BLOG_BASE_URL") or None,
            timeout_seconds=_env_float("BLOG_TIMEOUT_SECONDS", 30.0),
        )

        queue = QueueConfig(
            attempts=_env_int("QUEUE_ATTEMPTS", 3),
            backoff_seconds=_env_float("QUEUE_BACKOFF_SECONDS", 5.0),
            keep_completed=_env_int("QUEUE_KEEP_COMPLETED", 100),
            keep_failed=_env_int("QUEUE_KEEP_FAILED", 100),
            concurrency=_env_int("QUEUE_CONCURRENCY", 2),
            poll_interval_seconds=_env_float("QUEUE_POLL_INTERVAL_SECONDS", 1.0),
            lock_timeout_seconds=_env_float("QUEUE_LOCK_TIMEOUT_SECONDS", 300.0),
        )

        scheduler = SchedulerConfig(
            interval_seconds=_env_float("SCHEDULER_INTERVAL_SECONDS", 30.0),
            batch_size=_env_int("SCHEDULER_BATCH_SIZE", 50),
            run_on_start=_env_bool("SCHEDULER_RUN_ON_START", default=True),
        )

        generation = GenerationConfig(
            rate_limit_requests=_env_int("GENERATION_RATE_LIMIT", 5),
            rate_limit_window_seconds=_env_float("GENERATION_RATE_WINDOW_SECONDS", 60.0),
            guidelines_path=_env_optional_path("CHANNEL_GUIDELINES_PATH"),
        )

        rag = RagConfig(
            chunk_max_length=_env_int("RAG_CHUNK_MAX_LENGTH", 500),
            default_limit=_env_int("RAG_DEFAULT_LIMIT", 7),
            max_limit=_env_int("RAG_MAX_LIMIT", 10),
        )

        metrics = MetricsConfig(
            high_threshold=_env_float("METRICS_HIGH_THRESHOLD", 120.0),
            medium_threshold=_env_float("METRICS_MEDIUM_THRESHOLD", 40.0),
            refresh_hours=_env_float("METRICS_REFRESH_HOURS", 24.0),
            collect_limit=_env_int("METRICS_COLLECT_LIMIT", 100),
        )

        return Settings(
            openai=openai,
            image_feed=image_feed,
            micro_post=micro_post,
            blog=blog,
            queue=queue,
            scheduler=scheduler,
            generation=generation,
            rag=rag,
            metrics=metrics,
        )
    except ValidationError as e:
        raise RuntimeError(f"Invalid settings: {e}") from e
