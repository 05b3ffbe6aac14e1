"""Auto-published blog: one JSON POST to the site's publish endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from marketing_agent.constants import CHANNEL_BLOG_AUTO
from marketing_agent.db.models import Organization, Post
from marketing_agent.errors import ChannelCredentialMissing
from marketing_agent.publishers.base import ChannelPublisher, Delivery, register_publisher

PUBLISH_PATH = "/api/publish"


@dataclass
class BlogCredentials:
    publish_url: str
    base_url: Optional[str]
    api_token: Optional[str]


@register_publisher
class BlogPublisher(ChannelPublisher):
    channel = CHANNEL_BLOG_AUTO
    service_name = "blog"

    def resolve_credentials(self, organization: Organization) -> BlogCredentials:
        config = self.settings.blog
        base_url = (organization.blog_url or config.base_url or "").rstrip("/") or None

        if config.publish_url:
            publish_url = config.publish_url
        elif base_url:
            publish_url = f"{base_url}{PUBLISH_PATH}"
        else:
            raise ChannelCredentialMissing(
                f"Organization {organization.id} has no blog URL and BLOG_PUBLISH_URL is not set",
                channel=self.channel,
            )
        return BlogCredentials(publish_url=publish_url, base_url=base_url, api_token=config.api_token)

    def build_payload(self, post: Post) -> Dict[str, Any]:
        return {
            "postId": post.id,
            "title": post.title,
            "content": post.body,
            "tags": [tag for tag in (post.tags or []) if isinstance(tag, str)],
        }

    def deliver(
        self,
        post: Post,
        organization: Organization,
        credentials: BlogCredentials,
        payload: Dict[str, Any],
    ) -> Delivery:
        headers = {}
        if credentials.api_token:
            headers["Authorization"] = f"Bearer {credentials.api_token}"

        data = self.request_json(
            "POST",
            credentials.publish_url,
            "publish",
            json=payload,
            headers=headers,
            timeout=self.settings.blog.timeout_seconds,
        )
        published_url = data.get("publishedUrl") or f"{credentials.base_url or ''}/posts/{post.id}"
        return Delivery(published_url=published_url, external_id=data.get("id"))
