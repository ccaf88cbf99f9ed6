"""Embedding API client and vector similarity."""

import json
import math
from collections.abc import Sequence

import httpx

from .errors import ProviderError


class EmbeddingClient:
    """Client for an OpenAI-compatible /embeddings endpoint."""

    def __init__(self, api_key: str, api_base: str, model: str,
                 client: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.model = model
        self._client = client

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for a single text."""
        url = f"{self.api_base}/embeddings"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = json.dumps({"model": self.model, "input": text})

        if self._client is not None:
            response = await self._client.post(url, headers=headers, content=body)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, headers=headers, content=body)

        if not response.is_success:
            raise ProviderError(
                f"embedding API error {response.status_code} {response.reason_phrase}: "
                f"{response.text}"
            )

        try:
            payload = json.loads(response.text)
        except json.JSONDecodeError as exc:
            raise ProviderError(f"invalid embedding response: {exc}") from exc

        try:
            vector = payload["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            vector = None
        if not isinstance(vector, list):
            raise ProviderError("unexpected embedding response format")

        return [
            float(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else 0.0
            for v in vector
        ]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-length vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    denom = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return 0.0 if denom == 0.0 else dot / denom