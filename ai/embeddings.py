"""Embedding providers and the batching/retry client in front of them.

Providers turn one batch of texts into vectors over the network (Cohere,
OpenAI) or in-process (sentence-transformers). ``EmbeddingClient`` splits
input into provider-sized batches, retries transient failures with
exponential backoff and reassembles vectors in input order.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from functools import lru_cache
from typing import Callable, Protocol, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from boq.config import EmbeddingSettings
from boq.errors import ProviderUnavailable, TransientProviderError

logger = logging.getLogger(__name__)

BatchCallback = Callable[[int, int], None]

_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


class InputType(str, Enum):
    """Role of the texts being embedded (asymmetric retrieval models)."""
    DOCUMENT = "search_document"
    QUERY = "search_query"


class EmbeddingProvider(Protocol):
    """One network (or local) operation: embed a single batch."""

    name: str

    async def embed_batch(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        ...


def _check_response(response: httpx.Response, provider: str) -> None:
    """Classify a non-2xx response as transient or final."""
    if response.is_success:
        return
    body = response.text[:500]
    if response.status_code in _TRANSIENT_STATUS:
        logger.warning(f"{provider} returned {response.status_code}: {body}")
        raise TransientProviderError(f"{provider} HTTP {response.status_code}")
    logger.error(f"{provider} rejected request with {response.status_code}: {body}")
    raise ProviderUnavailable()


class _HttpProvider:
    """Shared request plumbing for HTTP embedding APIs."""

    name = "http"

    def __init__(
        self,
        api_key: str,
        url: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(f"{self.name} API key is required")
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self._client = http_client

    async def _post(self, payload: dict) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, json=payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.name} request timed out") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.name} transport error: {e}") from e

        _check_response(response, self.name)
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"{self.name} returned a non-JSON body")
            raise ProviderUnavailable() from e


class CohereProvider(_HttpProvider):
    """Cohere v2 embed endpoint."""

    name = "cohere"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "embed-v4.0",
        dimension: int = 1536,
        url: str = "https://api.cohere.ai/v2/embed",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(api_key, url, timeout=timeout, http_client=http_client)
        self.model = model
        self.dimension = dimension

    async def embed_batch(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        data = await self._post({
            "texts": texts,
            "model": self.model,
            "input_type": input_type.value,
            "output_dimension": self.dimension,
            "embedding_types": ["float"],
        })
        try:
            return data["embeddings"]["float"]
        except (KeyError, TypeError) as e:
            logger.error(f"Unexpected Cohere response shape: {list(data)[:5]}")
            raise ProviderUnavailable() from e


class OpenAIProvider(_HttpProvider):
    """OpenAI embeddings endpoint. Input type is ignored (symmetric model)."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "text-embedding-3-large",
        url: str = "https://api.openai.com/v1/embeddings",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(api_key, url, timeout=timeout, http_client=http_client)
        self.model = model

    async def embed_batch(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        data = await self._post({"model": self.model, "input": texts})
        try:
            rows = sorted(data["data"], key=lambda row: row["index"])
            return [row["embedding"] for row in rows]
        except (KeyError, TypeError) as e:
            logger.error("Unexpected OpenAI response shape")
            raise ProviderUnavailable() from e


@lru_cache(maxsize=4)
def _load_model(model_name: str, device: str):
    """Load and cache a sentence-transformers model."""
    from sentence_transformers import SentenceTransformer

    logger.info(f"Loading embedding model: {model_name} on device: {device}")
    return SentenceTransformer(model_name, device=device)


class LocalProvider:
    """Offline provider backed by sentence-transformers (``local`` extra)."""

    name = "local"

    def __init__(self, model_name: str, device: str = "cpu") -> None:
        self.model_name = model_name
        self.device = device

    def _encode(self, texts: list[str]) -> list[list[float]]:
        model = _load_model(self.model_name, self.device)
        embeddings = model.encode(
            texts,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed_batch(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        try:
            return await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            logger.error(f"Local embedding failed: {e}", exc_info=True)
            raise ProviderUnavailable() from e


class EmbeddingClient:
    """Batches texts, retries transient failures, preserves order.

    A batch either yields exactly one vector per text or the whole call fails
    with ``ProviderUnavailable``. Blank texts are not sent to the provider and
    come back as empty vectors.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        batch_size: int = 96,
        max_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 8.0,
        inter_batch_delay: float = 0.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.provider = provider
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.inter_batch_delay = inter_batch_delay

    @classmethod
    def from_settings(cls, provider: EmbeddingProvider, cfg: EmbeddingSettings) -> "EmbeddingClient":
        return cls(
            provider,
            batch_size=cfg.batch_size,
            max_attempts=cfg.max_attempts,
            backoff_min=cfg.backoff_min_seconds,
            backoff_max=cfg.backoff_max_seconds,
            inter_batch_delay=cfg.inter_batch_delay_seconds,
        )

    @property
    def name(self) -> str:
        return self.provider.name

    def batch_count(self, texts: Sequence[str]) -> int:
        """Number of provider calls ``embed`` will make for these texts."""
        non_blank = sum(1 for t in texts if t and t.strip())
        return -(-non_blank // self.batch_size)

    async def embed(
        self,
        texts: Sequence[str],
        input_type: InputType = InputType.QUERY,
        on_batch: BatchCallback | None = None,
    ) -> list[list[float]]:
        """Embed ``texts`` and return one vector per input, in input order.

        Args:
            texts: Texts to embed
            input_type: Document or query role
            on_batch: Called with (batches_done, batches_total) after each batch

        Raises:
            ProviderUnavailable: A batch failed permanently, exhausted retries,
                or returned vectors of inconsistent dimension
        """
        vectors: list[list[float]] = [[] for _ in texts]
        dim: int | None = None
        positions = [i for i, t in enumerate(texts) if t and t.strip()]
        total = -(-len(positions) // self.batch_size)

        for done, start in enumerate(range(0, len(positions), self.batch_size), start=1):
            if done > 1 and self.inter_batch_delay:
                await asyncio.sleep(self.inter_batch_delay)

            chunk = positions[start:start + self.batch_size]
            batch = [texts[i] for i in chunk]
            result = await self._embed_with_retry(batch, input_type)

            if len(result) != len(batch):
                logger.error(
                    f"{self.name} returned {len(result)} vectors for {len(batch)} texts"
                )
                raise ProviderUnavailable()

            for i, vec in zip(chunk, result):
                dim = len(vec) if dim is None else dim
                if len(vec) == 0 or len(vec) != dim:
                    logger.error(
                        f"{self.name} returned a {len(vec)}-d vector, expected {dim}"
                    )
                    raise ProviderUnavailable()
                vectors[i] = list(vec)

            logger.debug(f"{self.name} batch {done}/{total} embedded ({len(batch)} texts)")
            if on_batch is not None:
                on_batch(done, total)

        return vectors

    async def _embed_with_retry(self, batch: list[str], input_type: InputType) -> list[list[float]]:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
                retry=retry_if_exception_type(TransientProviderError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    return await self.provider.embed_batch(batch, input_type)
        except TransientProviderError as e:
            logger.error(
                f"{self.name} unavailable after {self.max_attempts} attempts: {e}"
            )
            raise ProviderUnavailable() from e
        raise ProviderUnavailable()
