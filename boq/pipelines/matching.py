"""Matching pipeline: BoQ descriptions → best price-list entries.

For every inquiry the matcher blends embedding cosine similarity with lexical
overlap against every catalog entry and keeps the argmax. The catalog and the
inquiries are each embedded once per call.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol, Sequence

import httpx
import numpy as np

from ai.embeddings import (
    CohereProvider,
    EmbeddingClient,
    EmbeddingProvider,
    InputType,
    LocalProvider,
    OpenAIProvider,
)
from ai.similarity import as_matrix, blend, cosine_matrix, jaccard, token_set
from boq.config import Settings, settings as default_settings
from boq.errors import NoReferenceData, ProviderUnavailable, ValidationError
from boq.pipelines.normalization import DEFAULT_OPTIONS, NormalizerOptions, normalize
from boq.schemas import MatchingModel, MatchOutcome, PriceListEntry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

# Progress milestones within one match() call
_CATALOG_START, _CATALOG_END = 10, 50
_INQUIRY_END = 70


class MonotonicProgress:
    """Wraps a progress callback so reported percentages never decrease."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self.last = 0

    def __call__(self, percent: float, message: str) -> None:
        value = min(100, max(self.last, int(percent)))
        self.last = value
        if self._callback is not None:
            self._callback(value, message)


class SimilarityMatcher:
    """Blended cosine + lexical matcher over one embedding client."""

    def __init__(
        self,
        client: EmbeddingClient,
        *,
        cosine_weight: float = 0.85,
        chunk_size: int = 64,
        options: NormalizerOptions = DEFAULT_OPTIONS,
    ) -> None:
        if not 0.0 <= cosine_weight <= 1.0:
            raise ValueError("cosine_weight must be within [0, 1]")
        self.client = client
        self.cosine_weight = cosine_weight
        self.chunk_size = chunk_size
        self.options = options

    @property
    def name(self) -> str:
        return self.client.name

    async def match(
        self,
        inquiries: Sequence[str],
        catalog: Sequence[PriceListEntry],
        on_progress: ProgressCallback | None = None,
    ) -> list[MatchOutcome]:
        """Pick the best catalog entry for each inquiry, preserving order.

        Args:
            inquiries: Raw inquiry descriptions
            catalog: Immutable price-list snapshot
            on_progress: Receives (percent, message); percent never decreases

        Returns:
            One MatchOutcome per inquiry

        Raises:
            NoReferenceData: Catalog is empty and there is something to match
            ProviderUnavailable: Embedding failed permanently
        """
        if not inquiries:
            return []
        if not catalog:
            raise NoReferenceData()

        notify = MonotonicProgress(on_progress)
        total = len(inquiries)
        logger.info(f"Matching {total} items against {len(catalog)} price-list entries via {self.name}")

        notify(5, "Preprocessing text data...")
        norm_inquiries = [normalize(text, self.options) for text in inquiries]
        norm_catalog = [normalize(entry.description, self.options) for entry in catalog]

        def catalog_batch(done: int, batches: int) -> None:
            notify(
                _CATALOG_START + (_CATALOG_END - _CATALOG_START) * done / batches,
                f"Getting embeddings batch {done}/{batches} for price list items...",
            )

        def inquiry_batch(done: int, batches: int) -> None:
            notify(
                _CATALOG_END + (_INQUIRY_END - _CATALOG_END) * done / batches,
                f"Getting embeddings batch {done}/{batches} for inquiry items...",
            )

        notify(_CATALOG_START, "Getting embeddings for price list items...")
        catalog_vectors = await self.client.embed(
            _embedding_texts(norm_catalog, [entry.description for entry in catalog]),
            InputType.DOCUMENT,
            on_batch=catalog_batch,
        )
        notify(_CATALOG_END, f"Embedded {len(catalog)} price list items")

        inquiry_vectors = await self.client.embed(
            _embedding_texts(norm_inquiries, inquiries),
            InputType.QUERY,
            on_batch=inquiry_batch,
        )
        notify(_INQUIRY_END, "Calculating similarity scores...")

        catalog_matrix = as_matrix(catalog_vectors)
        dim = catalog_matrix.shape[1]
        if any(vec and len(vec) != dim for vec in inquiry_vectors):
            logger.error(f"{self.name} returned inquiry vectors that are not {dim}-dimensional")
            raise ProviderUnavailable()
        inquiry_matrix = as_matrix(inquiry_vectors, dim)
        catalog_tokens = [token_set(text) for text in norm_catalog]
        inquiry_tokens = [token_set(text) for text in norm_inquiries]

        results: list[MatchOutcome] = []
        for start in range(0, total, self.chunk_size):
            end = min(start + self.chunk_size, total)
            chunk = await asyncio.to_thread(
                self._score_chunk,
                inquiry_matrix[start:end],
                inquiry_tokens[start:end],
                catalog_matrix,
                catalog_tokens,
                catalog,
            )
            for outcome in chunk:
                results.append(outcome)
                notify(
                    _INQUIRY_END + (100 - _INQUIRY_END) * len(results) / total,
                    f"Matched {len(results)}/{total} items",
                )

        logger.info(
            f"{self.name} matching done: average confidence "
            f"{100 * sum(r.confidence for r in results) / total:.1f}%"
        )
        return results

    def _score_chunk(
        self,
        queries: np.ndarray,
        query_tokens: list[frozenset[str]],
        documents: np.ndarray,
        document_tokens: list[frozenset[str]],
        catalog: Sequence[PriceListEntry],
    ) -> list[MatchOutcome]:
        cosines = cosine_matrix(queries, documents)
        outcomes = []
        for row, tokens in enumerate(query_tokens):
            cos = cosines[row]
            lexical = np.fromiter(
                (jaccard(tokens, doc) for doc in document_tokens),
                dtype=np.float64,
                count=len(document_tokens),
            )
            scores = blend(cos, lexical, self.cosine_weight)
            best = select_best(scores, cos)
            entry = catalog[best]
            outcomes.append(MatchOutcome(
                best_match=entry.description,
                best_rate=entry.rate,
                confidence=clamp(float(scores[best])),
                similarity=float(cos[best]),
                lexical=float(lexical[best]),
                matched_index=best,
                source=self.name,
            ))
        return outcomes


def _embedding_texts(normalized: Sequence[str], raw: Sequence[str]) -> list[str]:
    """Normalized text, falling back to the raw text when normalization empties it."""
    return [n or (r or "").strip().lower() for n, r in zip(normalized, raw)]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def select_best(scores: np.ndarray, cosines: np.ndarray) -> int:
    """Index of the highest score; ties go to higher cosine, then lower index."""
    top = scores.max()
    tied = np.flatnonzero(scores == top)
    if len(tied) == 1:
        return int(tied[0])
    return int(tied[np.argmax(cosines[tied])])


class MatchingStrategy(Protocol):
    """Matching behaviour selected by ``MatchingModel``."""

    model: MatchingModel

    async def match(
        self,
        inquiries: Sequence[str],
        catalog: Sequence[PriceListEntry],
        on_progress: ProgressCallback | None = None,
    ) -> list[MatchOutcome]:
        ...


class EmbeddingStrategy:
    """Single-provider strategy (cohere, openai, local)."""

    def __init__(self, model: MatchingModel, matcher: SimilarityMatcher) -> None:
        self.model = model
        self.matcher = matcher

    async def match(self, inquiries, catalog, on_progress=None):
        return await self.matcher.match(inquiries, catalog, on_progress)


class HybridStrategy:
    """Runs two matchers concurrently and reconciles their picks.

    When both agree on a catalog entry the confidences are blended; otherwise
    the more confident pick wins, with ties going to the secondary matcher.
    """

    model = MatchingModel.HYBRID

    def __init__(
        self,
        primary: SimilarityMatcher,
        secondary: SimilarityMatcher,
        *,
        primary_weight: float = 0.6,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.primary_weight = primary_weight

    async def match(self, inquiries, catalog, on_progress=None):
        if not inquiries:
            return []
        if not catalog:
            raise NoReferenceData()

        notify = MonotonicProgress(on_progress)
        seen = [0, 0]

        def track(slot: int, label: str) -> ProgressCallback:
            def report(percent: int, message: str) -> None:
                seen[slot] = percent
                notify((seen[0] + seen[1]) / 2, f"{label}: {message}")
            return report

        primary_task = asyncio.create_task(
            self.primary.match(inquiries, catalog, track(0, self.primary.name))
        )
        secondary_task = asyncio.create_task(
            self.secondary.match(inquiries, catalog, track(1, self.secondary.name))
        )
        try:
            first, second = await asyncio.gather(primary_task, secondary_task)
        except BaseException:
            primary_task.cancel()
            secondary_task.cancel()
            await asyncio.wait({primary_task, secondary_task})
            raise

        notify(100, "Combined results from both models")
        return [self._reconcile(a, b) for a, b in zip(first, second)]

    def _reconcile(self, a: MatchOutcome, b: MatchOutcome) -> MatchOutcome:
        if a.matched_index == b.matched_index:
            blended = blend(a.confidence, b.confidence, self.primary_weight)
            return MatchOutcome(
                best_match=a.best_match,
                best_rate=a.best_rate,
                confidence=clamp(blended),
                similarity=max(a.similarity, b.similarity),
                lexical=a.lexical,
                matched_index=a.matched_index,
                source="consensus",
            )
        return a if a.confidence > b.confidence else b


def build_provider(
    kind: MatchingModel,
    cfg: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> EmbeddingProvider:
    """Instantiate the provider for a single-provider model, checking credentials."""
    emb = cfg.embeddings
    if kind is MatchingModel.COHERE:
        if not emb.cohere_api_key:
            raise ValidationError("Cohere API key not configured")
        return CohereProvider(
            emb.cohere_api_key,
            model=emb.cohere_model,
            dimension=emb.cohere_dimension,
            url=emb.cohere_url,
            timeout=emb.request_timeout_seconds,
            http_client=http_client,
        )
    if kind is MatchingModel.OPENAI:
        if not emb.openai_api_key:
            raise ValidationError("OpenAI API key not configured")
        return OpenAIProvider(
            emb.openai_api_key,
            model=emb.openai_model,
            url=emb.openai_url,
            timeout=emb.request_timeout_seconds,
            http_client=http_client,
        )
    if kind is MatchingModel.LOCAL:
        return LocalProvider(emb.local_model_name, device=emb.device)
    raise ValidationError(f"Model '{kind.value}' has no single provider")


def build_strategy(
    model: MatchingModel | str,
    cfg: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> MatchingStrategy:
    """Strategy for ``model``; raises ValidationError when credentials are missing."""
    cfg = cfg or default_settings
    model = MatchingModel.parse(model)

    def matcher(kind: MatchingModel) -> SimilarityMatcher:
        provider = build_provider(kind, cfg, http_client=http_client)
        return SimilarityMatcher(
            EmbeddingClient.from_settings(provider, cfg.embeddings),
            cosine_weight=cfg.matching.cosine_weight,
            chunk_size=cfg.matching.scoring_chunk_size,
        )

    if model is MatchingModel.HYBRID:
        return HybridStrategy(
            matcher(MatchingModel.COHERE),
            matcher(MatchingModel.OPENAI),
            primary_weight=cfg.matching.hybrid_primary_weight,
        )
    return EmbeddingStrategy(model, matcher(model))
