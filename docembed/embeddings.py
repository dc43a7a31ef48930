# docembed/embeddings.py
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import httpx

from docembed.config import settings
from docembed.errors import PermanentContentError, TransientProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


class EmbeddingClient(ABC):
    """Turns text chunks into fixed-dimension vectors, in input order."""

    @abstractmethod
    async def embed(self, texts: Sequence[str], model: str) -> List[List[float]]:
        """
        Raises TransientProviderError for rate limits / outages and
        PermanentContentError when the provider rejects the input.
        """

    async def aclose(self) -> None:
        pass


class HTTPEmbeddingClient(EmbeddingClient):
    """OpenAI-compatible ``POST {base}/embeddings`` client (DeepInfra, vLLM, OpenAI)."""

    def __init__(
        self,
        base_url: str = None,
        token: str = None,
        timeout: float = None,
        retries: int = None,
        backoff: float = 1.0,
        dimensions: int = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.embedding_base_url).rstrip("/")
        self.token = settings.embedding_api_token if token is None else token
        self.timeout = timeout or settings.embed_timeout
        self.retries = settings.embed_http_retries if retries is None else retries
        self.backoff = backoff
        self.dimensions = dimensions or settings.embedding_dimensions
        self._client = client or httpx.AsyncClient(timeout=self.timeout)
        if not self.token:
            logger.warning("EMBEDDING_API_TOKEN is not set; embedding calls will likely be rejected.")

    async def _post(self, url, payload):
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        try:
            resp = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientProviderError(f"embedding request failed: {e!r}") from e
        if resp.status_code in RETRYABLE_STATUS or resp.status_code >= 500:
            raise TransientProviderError(f"embedding provider returned {resp.status_code}: {resp.text[:300]}")
        if resp.status_code >= 400:
            raise PermanentContentError(f"embedding provider rejected input ({resp.status_code}): {resp.text[:300]}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransientProviderError("embedding provider returned non-JSON body") from e

    async def _post_with_retry(self, url, payload):
        delay = self.backoff
        for attempt in range(1, self.retries + 2):
            try:
                return await self._post(url, payload)
            except TransientProviderError as e:
                if attempt > self.retries:
                    raise
                logger.warning("Embedding attempt %s failed, retrying in %.1fs: %s", attempt, delay, e)
                await asyncio.sleep(delay)
                delay *= 2

    def _parse(self, data, expected: int) -> List[List[float]]:
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or len(items) != expected:
            raise PermanentContentError(
                f"embedding response has {len(items) if isinstance(items, list) else 'no'} vectors, expected {expected}"
            )
        # providers may return items out of order; "index" is authoritative when present
        if all(isinstance(it, dict) and "index" in it for it in items):
            items = sorted(items, key=lambda it: it["index"])
        vectors = []
        for it in items:
            vec = it.get("embedding") if isinstance(it, dict) else None
            if not isinstance(vec, list) or len(vec) != self.dimensions:
                raise PermanentContentError(
                    f"embedding has dimension {len(vec) if isinstance(vec, list) else 'n/a'}, expected {self.dimensions}"
                )
            vectors.append([float(x) for x in vec])
        return vectors

    async def embed(self, texts, model):
        if not texts:
            return []
        if any(not (t or "").strip() for t in texts):
            raise PermanentContentError("cannot embed empty text")
        payload = {"model": model, "input": list(texts), "encoding_format": "float"}
        data = await self._post_with_retry(f"{self.base_url}/embeddings", payload)
        return self._parse(data, len(texts))

    async def aclose(self):
        await self._client.aclose()
