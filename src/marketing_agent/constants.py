"""Shared identifiers for channels, statuses and sources."""

from __future__ import annotations

from typing import Dict, List

# ── Channels ──

CHANNEL_BLOG_AUTO = "blog-auto"
CHANNEL_IMAGE_FEED = "image-feed"
CHANNEL_MICRO_POST = "micro-post"
CHANNEL_BLOG_MANUAL = "blog-manual"

ALL_CHANNELS: List[str] = [
    CHANNEL_BLOG_AUTO,
    CHANNEL_IMAGE_FEED,
    CHANNEL_MICRO_POST,
    CHANNEL_BLOG_MANUAL,
]

# Published by the server without human involvement
AUTO_CHANNELS: List[str] = [CHANNEL_BLOG_AUTO, CHANNEL_IMAGE_FEED, CHANNEL_MICRO_POST]

# Reviewed and copied out by a human operator
MANUAL_CHANNELS: List[str] = [CHANNEL_BLOG_MANUAL]

# ── Post status ──

STATUS_DRAFT = "draft"
STATUS_REVIEW = "review"
STATUS_APPROVED = "approved"
STATUS_PUBLISHING = "publishing"
STATUS_PUBLISHED = "published"
STATUS_FAILED = "failed"

ALL_STATUSES: List[str] = [
    STATUS_DRAFT,
    STATUS_REVIEW,
    STATUS_APPROVED,
    STATUS_PUBLISHING,
    STATUS_PUBLISHED,
    STATUS_FAILED,
]

ALLOWED_STATUS_TRANSITIONS: Dict[str, List[str]] = {
    STATUS_DRAFT: [STATUS_REVIEW, STATUS_APPROVED, STATUS_FAILED],
    STATUS_REVIEW: [STATUS_APPROVED, STATUS_FAILED, STATUS_DRAFT],
    STATUS_APPROVED: [STATUS_PUBLISHING, STATUS_FAILED],
    STATUS_PUBLISHING: [STATUS_PUBLISHED, STATUS_FAILED],
    STATUS_PUBLISHED: [],
    STATUS_FAILED: [STATUS_DRAFT, STATUS_APPROVED],
}

# Channel-level publish retries recorded on the post itself
MAX_RETRY_COUNT = 3

# ── Retrieval index ──

SOURCE_PAST_CONTENT = "past-content"
SOURCE_PROJECT_DOC = "project-doc"
SOURCE_PROFILE = "profile"

# Order is the tie-break priority for search results
SOURCE_TYPES: List[str] = [SOURCE_PAST_CONTENT, SOURCE_PROJECT_DOC, SOURCE_PROFILE]

PERFORMANCE_HIGH = "high"
PERFORMANCE_MEDIUM = "medium"
PERFORMANCE_LOW = "low"

PERFORMANCE_LEVELS: List[str] = [PERFORMANCE_HIGH, PERFORMANCE_MEDIUM, PERFORMANCE_LOW]

EMBEDDING_DIMENSIONS = 1536

# ── Organizations ──

ORGANIZATION_TYPES: List[str] = [
    "environment",
    "education",
    "human-rights",
    "animal",
    "welfare",
    "health",
    "culture",
    "community",
    "international",
    "other",
]

# ── Publish queue ──

JOB_PUBLISH_POST = "publish-post"
JOB_RETRY_PUBLISH = "retry-publish"

JOB_KINDS: List[str] = [JOB_PUBLISH_POST, JOB_RETRY_PUBLISH]

JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
