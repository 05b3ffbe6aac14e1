"""Micro-post channel: short text posts through the Threads API."""

from __future__ import annotations

from typing import Any, Dict

from marketing_agent.constants import CHANNEL_MICRO_POST
from marketing_agent.db.models import Organization, Post
from marketing_agent.errors import ExternalServiceError
from marketing_agent.publishers.base import (
    Delivery,
    GraphChannelPublisher,
    GraphCredentials,
    compose_text,
    register_publisher,
)

TEXT_LIMIT = 500
HASHTAG_LIMIT = 8


def build_text(post: Post) -> str:
    return compose_text(post, HASHTAG_LIMIT, TEXT_LIMIT)


def thread_url(media_id: str) -> str:
    return f"https://www.threads.net/t/{media_id}"


@register_publisher
class MicroPostPublisher(GraphChannelPublisher):
    channel = CHANNEL_MICRO_POST
    service_name = "micro-post"
    account_attribute = "micro_post_account"

    @property
    def channel_config(self):
        return self.settings.micro_post

    def build_payload(self, post: Post) -> Dict[str, Any]:
        return {"media_type": "TEXT", "text": build_text(post)}

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
            self.api_url(f"{credentials.account_id}/threads"),
            "container create",
            data={**payload, "access_token": credentials.access_token},
            timeout=timeout,
        )
        creation_id = created.get("id")
        if not creation_id:
            raise ExternalServiceError("micro-post container create response missing id", service=self.service_name)

        published = self.request_json(
            "POST",
            self.api_url(f"{credentials.account_id}/threads_publish"),
            "container publish",
            data={"creation_id": creation_id, "access_token": credentials.access_token},
            timeout=timeout,
        )
        media_id = published.get("id")
        if not media_id:
            raise ExternalServiceError("micro-post container publish response missing id", service=self.service_name)

        return Delivery(published_url=thread_url(str(media_id)), external_id=str(media_id), creation_id=str(creation_id))
