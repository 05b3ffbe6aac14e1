from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketing_agent.db.base import Base, utcnow
from marketing_agent.db.models import Organization, Post
from marketing_agent.publishers.base import clear_account_id_cache


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def organization(session):
    org = Organization(
        id="org-1",
        name="Green River Trust",
        organization_type="environment",
        description="Volunteer river cleanups and watershed education.",
        mission="Keep the river clean for the next generation",
        keywords=["river", "cleanup", "volunteers"],
        location="Portland",
        schedule={"image-feed": ["tue", "fri"]},
        blog_url="https://blog.greenriver.example/",
    )
    session.add(org)
    session.commit()
    return org


@pytest.fixture
def make_post(session, organization):
    """Insert a post row directly, bypassing the repository."""

    def _make(**overrides):
        now = utcnow()
        values = {
            "organization_id": organization.id,
            "channel": "micro-post",
            "status": "approved",
            "title": "Spring cleanup",
            "body": "Join us Saturday at the north bank.",
            "images": [],
            "tags": ["cleanup"],
            "scheduled_at": now - timedelta(minutes=1),
            "retry_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        post = Post(**values)
        session.add(post)
        session.commit()
        return post

    return _make


@pytest.fixture(autouse=True)
def _reset_account_cache():
    clear_account_id_cache()
    yield
    clear_account_id_cache()
