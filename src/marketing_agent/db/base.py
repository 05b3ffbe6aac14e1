"""Database configuration and session management."""

from __future__ import annotations

import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from sqlalchemy import JSON, MetaData, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

# Load environment variables
load_dotenv()


class Base(DeclarativeBase):
    """Shared base for all models."""

    metadata = MetaData()


# Cross-dialect JSON support (JSONB on Postgres, JSON on SQLite)
JSON_VARIANT = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_engine(database_url: str):
    """Create an engine with settings tuned for the target dialect."""
    is_postgres = database_url.startswith("postgresql")

    connect_args = {}
    engine_kwargs = {
        "echo": False,
        "future": True,
    }

    if is_postgres:
        # Production PostgreSQL Settings
        engine_kwargs.update({
            "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
            "pool_pre_ping": True,
        })

        ssl_mode = os.getenv("DB_SSL_MODE", "prefer")  # 'require' for strict RDS
        if ssl_mode:
            connect_args["sslmode"] = ssl_mode
            engine_kwargs["connect_args"] = connect_args
    else:
        # SQLite Settings for Dev
        connect_args["check_same_thread"] = False
        engine_kwargs["connect_args"] = connect_args

    return create_engine(database_url, **engine_kwargs)


# Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///marketing_agent.db")

engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
