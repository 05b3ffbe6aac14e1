from __future__ import annotations

import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type

import requests
from loguru import logger
from sqlalchemy.orm import Session

from marketing_agent.config import Settings
from marketing_agent.constants import STATUS_FAILED, STATUS_PUBLISHED, STATUS_PUBLISHING
from marketing_agent.db.base import to_utc, utcnow
from marketing_agent.db.models import Organization, Post
from marketing_agent.errors import (
    ChannelCredentialMissing,
    ChannelMismatch,
    ExternalServiceError,
    InvalidTransition,
    MarketingAgentError,
    NotFound,
)
from marketing_agent.services.posts import PostRepository

NUMERIC_ID_RE = re.compile(r"^\d+$")
WHITESPACE_RE = re.compile(r"\s+")

ELLIPSIS = "…"


@dataclass
class PublishResult:
    post_id: str
    channel: str
    published_url: str
    published_at: datetime
    external_id: Optional[str] = None
    creation_id: Optional[str] = None
    already_published: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["published_at"] = to_utc(self.published_at).isoformat()
        return data


@dataclass
class Delivery:
    """What a channel returns after its remote calls succeed."""

    published_url: str
    external_id: Optional[str] = None
    creation_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


# channel id -> publisher class
PUBLISHERS: Dict[str, Type["ChannelPublisher"]] = {}


def register_publisher(cls: Type["ChannelPublisher"]) -> Type["ChannelPublisher"]:
    if not cls.channel:
        raise ValueError(f"{cls.__name__} does not declare a channel")
    PUBLISHERS[cls.channel] = cls
    return cls


def get_publisher_class(channel: str) -> Type["ChannelPublisher"]:
    try:
        return PUBLISHERS[channel]
    except KeyError:
        raise ChannelMismatch(f"No automated publisher for channel {channel}", actual=channel) from None


def normalize_numeric_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    return value if NUMERIC_ID_RE.match(value) else None


def to_hashtags(tags: Optional[List[str]], limit: int) -> List[str]:
    hashtags = []
    for tag in tags or []:
        if not isinstance(tag, str) or not tag.strip():
            continue
        tag = tag.strip()
        hashtags.append(tag if tag.startswith("#") else f"#{WHITESPACE_RE.sub('', tag)}")
    return hashtags[:limit]


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit - 1]}{ELLIPSIS}"


def compose_text(post: Post, hashtag_limit: int, length_limit: int) -> str:
    """Title, body and hashtags separated by blank lines, then truncated."""
    tags = " ".join(to_hashtags(post.tags, hashtag_limit))
    parts = [part for part in (post.title, post.body, tags) if part and part.strip()]
    return truncate("\n\n".join(parts), length_limit)


class ChannelPublisher:
    """Common publish contract: load, check, build payload, deliver, record.

    Subclasses provide ``resolve_credentials``, ``build_payload`` and ``deliver``.
    Any failure after the checks marks the post failed and is re-raised.
    """

    channel: str = ""
    service_name: str = ""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        http: Optional[requests.Session] = None,
        repository: Optional[PostRepository] = None,
    ):
        self.session = session
        self.settings = settings
        self.http = http or requests.Session()
        self.repository = repository or PostRepository(session)

    # ── Contract ──

    def publish(self, post_id: str) -> PublishResult:
        post = self.repository.require(post_id)

        if post.channel != self.channel:
            error = ChannelMismatch(
                f"Post {post_id} is on channel {post.channel}, not {self.channel}",
                expected=self.channel,
                actual=post.channel,
            )
            self._mark_failed(post_id, str(error))
            raise error

        if post.status == STATUS_PUBLISHED:
            logger.info(f"[PUBLISH] Post {post_id} already published; returning stored result")
            return PublishResult(
                post_id=post.id,
                channel=post.channel,
                published_url=post.published_url or "",
                published_at=post.published_at or post.updated_at,
                already_published=True,
            )
        if post.status != STATUS_PUBLISHING:
            raise InvalidTransition(post.status, STATUS_PUBLISHED, post_id)

        organization = self.session.get(Organization, post.organization_id)
        if organization is None:
            raise NotFound(f"Organization {post.organization_id} not found", code="ORGANIZATION_NOT_FOUND")

        logger.info(f"[PUBLISH] Publishing post {post_id} to {self.channel}")
        try:
            credentials = self.resolve_credentials(organization)
            payload = self.build_payload(post)
            delivery = self.deliver(post, organization, credentials, payload)
        except MarketingAgentError as e:
            self._mark_failed(post_id, str(e))
            raise
        except requests.RequestException as e:
            error = ExternalServiceError(f"{self.service_name} request failed: {e}", service=self.service_name)
            self._mark_failed(post_id, str(error))
            raise error from e

        published_at = utcnow()
        post = self.repository.update_status(
            post_id,
            STATUS_PUBLISHED,
            published_url=delivery.published_url,
            published_at=published_at,
        )
        logger.info(f"[PUBLISH] Post {post_id} published at {delivery.published_url}")
        return PublishResult(
            post_id=post_id,
            channel=self.channel,
            published_url=delivery.published_url,
            published_at=published_at,
            external_id=delivery.external_id,
            creation_id=delivery.creation_id,
        )

    def resolve_credentials(self, organization: Organization) -> Any:
        raise NotImplementedError

    def build_payload(self, post: Post) -> Dict[str, Any]:
        raise NotImplementedError

    def deliver(self, post: Post, organization: Organization, credentials: Any, payload: Dict[str, Any]) -> Delivery:
        raise NotImplementedError

    # ── Helpers ──

    def request_json(self, method: str, url: str, step: str, **kwargs: Any) -> Dict[str, Any]:
        """Call a channel endpoint; non-2xx and transport errors become ExternalServiceError."""
        try:
            resp = self.http.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise ExternalServiceError(f"{self.service_name} {step} failed: {e}", service=self.service_name) from e

        if not resp.ok:
            raise ExternalServiceError(
                f"{self.service_name} {step} failed ({resp.status_code}): {resp.text[:500]}",
                service=self.service_name,
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"{self.service_name} {step} returned invalid JSON",
                service=self.service_name,
                status_code=resp.status_code,
            ) from e
        return data if isinstance(data, dict) else {}

    def _mark_failed(self, post_id: str, message: str) -> None:
        try:
            self.repository.update_status(post_id, STATUS_FAILED, error_message=message)
        except InvalidTransition as e:
            logger.warning(f"[PUBLISH] Could not mark post {post_id} failed ({e})")
        else:
            logger.error(f"[PUBLISH] Post {post_id} failed on {self.channel}: {message}")


@dataclass
class GraphCredentials:
    access_token: str
    account_id: str


# (channel, token) -> account id, for the process lifetime
_account_id_cache: Dict[Tuple[str, str], str] = {}
_account_id_lock = threading.Lock()


def clear_account_id_cache() -> None:
    with _account_id_lock:
        _account_id_cache.clear()


class GraphChannelPublisher(ChannelPublisher):
    """Two-phase channels: create a media container, then publish it."""

    account_attribute: str = ""

    @property
    def channel_config(self):
        raise NotImplementedError

    def api_url(self, path: str) -> str:
        config = self.channel_config
        return f"{config.api_base_url.rstrip('/')}/{config.api_version}/{path.lstrip('/')}"

    def resolve_credentials(self, organization: Organization) -> GraphCredentials:
        config = self.channel_config
        if not config.access_token:
            raise ChannelCredentialMissing(f"{self.service_name} access token is not configured", channel=self.channel)

        account_id = (
            normalize_numeric_id(getattr(organization, self.account_attribute, None))
            or normalize_numeric_id(config.account_id)
            or self._lookup_account_id(config.access_token)
        )
        return GraphCredentials(access_token=config.access_token, account_id=account_id)

    def _lookup_account_id(self, token: str) -> str:
        key = (self.channel, token)
        with _account_id_lock:
            cached = _account_id_cache.get(key)
        if cached:
            return cached

        data = self.request_json(
            "GET",
            self.api_url("me"),
            "account lookup",
            params={"fields": "id", "access_token": token},
            timeout=self.channel_config.timeout_seconds,
        )
        account_id = data.get("id")
        if not account_id:
            raise ChannelCredentialMissing(f"{self.service_name} account lookup returned no id", channel=self.channel)

        with _account_id_lock:
            _account_id_cache[key] = str(account_id)
        logger.info(f"[PUBLISH] Resolved {self.channel} account id {account_id} via lookup")
        return str(account_id)
