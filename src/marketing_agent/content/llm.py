"""Chat completion client."""

from __future__ import annotations

from typing import Optional

import requests
from loguru import logger

from marketing_agent.config import OpenAIConfig
from marketing_agent.errors import ExternalServiceError


class ChatClient:
    def __init__(self, config: OpenAIConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        """One chat completion at the configured (fixed) temperature."""
        if not self.config.api_key:
            raise ExternalServiceError("OPENAI_API_KEY is not configured", service="llm")

        try:
            resp = self.http.post(
                f"{self.config.base_url.rstrip('/')}/chat/completions",
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                json={
                    "model": self.config.chat_model,
                    "temperature": self.config.temperature,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                },
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as e:
            raise ExternalServiceError(f"LLM request failed: {e}", service="llm") from e

        if not resp.ok:
            raise ExternalServiceError(
                f"LLM request failed ({resp.status_code}): {resp.text[:500]}",
                service="llm",
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise ExternalServiceError(
                "LLM returned invalid JSON", service="llm", status_code=resp.status_code
            ) from e

        choices = body.get("choices") if isinstance(body, dict) else None
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not content or not isinstance(content, str):
            raise ExternalServiceError("LLM returned empty content", service="llm")

        logger.debug(f"[GENERATE] LLM returned {len(content)} chars")
        return content
