"""Image-feed channel: single-image posts through the Graph API."""

from __future__ import annotations

from typing import Any, Dict

from marketing_agent.constants import CHANNEL_IMAGE_FEED
from marketing_agent.db.models import Organization, Post
from marketing_agent.errors import ExternalServiceError, ValidationError
from marketing_agent.publishers.base import (
    Delivery,
    GraphChannelPublisher,
    GraphCredentials,
    compose_text,
    register_publisher,
)

CAPTION_LIMIT = 2200
HASHTAG_LIMIT = 20


def build_caption(post: Post) -> str:
    return compose_text(post, HASHTAG_LIMIT, CAPTION_LIMIT)


def media_url(media_id: str) -> str:
    return f"https://www.instagram.com/p/{media_id}/"


@register_publisher
class ImageFeedPublisher(GraphChannelPublisher):
    channel = CHANNEL_IMAGE_FEED
    service_name = "image-feed"
    account_attribute = "image_feed_account"

    @property
    def channel_config(self):
        return self.settings.image_feed

    def build_payload(self, post: Post) -> Dict[str, Any]:
        images = [image for image in (post.images or []) if isinstance(image, str) and image.strip()]
        if not images:
            raise ValidationError(f"Image-feed post {post.id} has no image")
        return {"image_url": images[0].strip(), "caption": build_caption(post)}

    def deliver(
        self,
        post: Post,
        organization: Organization,
        credentials: GraphCredentials,
        payload: Dict[str, Any],
    ) -> Delivery:
        timeout = self.channel_config.timeout_seconds

        created = self.request_json(
            "POST",
            self.api_url(f"{credentials.account_id}/media"),
            "media create",
            data={**payload, "access_token": credentials.access_token},
            timeout=timeout,
        )
        creation_id = created.get("id")
        if not creation_id:
            raise ExternalServiceError("image-feed media create response missing id", service=self.service_name)

        published = self.request_json(
            "POST",
            self.api_url(f"{credentials.account_id}/media_publish"),
            "media publish",
            data={"creation_id": creation_id, "access_token": credentials.access_token},
            timeout=timeout,
        )
        media_id = published.get("id")
        if not media_id:
            raise ExternalServiceError("image-feed media publish response missing id", service=self.service_name)

        return Delivery(published_url=media_url(str(media_id)), external_id=str(media_id), creation_id=str(creation_id))
