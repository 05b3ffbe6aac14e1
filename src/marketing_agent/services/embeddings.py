"""Embedding client for the retrieval index."""

from __future__ import annotations

from typing import List, Optional, Sequence

import requests
from loguru import logger

from marketing_agent.config import OpenAIConfig
from marketing_agent.errors import ExternalServiceError


class EmbeddingClient:
    """Thin wrapper over the OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(self, config: OpenAIConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()

    @property
    def available(self) -> bool:
        return bool(self.config.api_key)

    def embed(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        """Embed a batch of texts, one vector (or None) per input, in order.

        Raises ExternalServiceError on transport failures and non-2xx responses.
        Without an API key every slot is None.
        """
        if not texts:
            return []
        if not self.available:
            logger.warning("[RAG] OPENAI_API_KEY is not set; embeddings will be null")
            return [None for _ in texts]

        try:
            resp = self.http.post(
                f"{self.config.base_url.rstrip('/')}/embeddings",
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                json={"model": self.config.embedding_model, "input": list(texts)},
                timeout=self.config.embedding_timeout_seconds,
            )
        except requests.RequestException as e:
            raise ExternalServiceError(f"Embedding request failed: {e}", service="embedding") from e

        if not resp.ok:
            raise ExternalServiceError(
                f"Embedding request failed ({resp.status_code}): {resp.text[:500]}",
                service="embedding",
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise ExternalServiceError(
                "Embedding service returned invalid JSON", service="embedding", status_code=resp.status_code
            ) from e
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise ExternalServiceError(
                "Embedding response has no data list", service="embedding", status_code=resp.status_code
            )

        vectors: List[Optional[List[float]]] = []
        for index in range(len(texts)):
            item = data[index] if index < len(data) else None
            embedding = item.get("embedding") if isinstance(item, dict) else None
            vectors.append(list(embedding) if isinstance(embedding, list) and embedding else None)
        return vectors

    def embed_query(self, text: str) -> Optional[List[float]]:
        """Embed a single query. Any failure yields None so callers can fall back."""
        if not text.strip() or not self.available:
            return None
        try:
            return self.embed([text])[0]
        except ExternalServiceError as e:
            logger.warning(f"[RAG] Query embedding unavailable: {e}")
            return None
