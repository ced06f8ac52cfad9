"""Embedding client abstraction with an OpenAI-compatible HTTP backend."""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx

from shop_agent.config import EmbeddingsConfig
from shop_agent.errors import EmbeddingError
from shop_agent.log import get_logger

logger = get_logger(__name__)

# Inputs longer than this are truncated before embedding.
MAX_INPUT_CHARS = 8000


class EmbeddingClient(ABC):
    """Turns text into fixed-length float vectors."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts; backends with a batch endpoint override this."""
        return [await self.embed(text) for text in texts]

    async def close(self) -> None:
        return None


class OpenAIEmbeddingClient(EmbeddingClient):
    """``/embeddings`` endpoint of OpenAI or any compatible provider."""

    def __init__(self, config: EmbeddingsConfig, client: httpx.AsyncClient | None = None):
        self._model = config.model
        self._dimensions = config.dimensions
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=config.timeout,
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        vectors = await self._request([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await self._request(texts)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, texts: list[str]) -> list[list[float]]:
        payload = {"model": self._model, "input": [t[:MAX_INPUT_CHARS] for t in texts]}
        try:
            response = await self._client.post("/embeddings", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise EmbeddingError(
                f"embedding API error ({e.response.status_code}): {e.response.text[:500]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise EmbeddingError(f"embedding request failed: {e}") from e

        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        vectors = [item["embedding"] for item in items]
        if len(vectors) != len(texts):
            raise EmbeddingError(f"expected {len(texts)} embeddings, got {len(vectors)}")
        for i, vector in enumerate(vectors):
            if len(vector) != self._dimensions:
                raise EmbeddingError(
                    f"embedding {i} has {len(vector)} dimensions, expected {self._dimensions}"
                )
        logger.debug("embeddings_generated", count=len(vectors), model=self._model)
        return vectors
