"""Ranking of candidate documents.

``Ranker.rank`` combines normalized similarity with literal-match and
query-term boosts. ``rank_with_multiple_factors`` takes a weighted list of
named factors and keeps the per-factor breakdown. ``rerank`` applies
recency, source and popularity boosts, then an optional greedy diversity
filter that drops near-duplicates of already selected results.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from loguru import logger
from pydantic import BaseModel, Field

from vector_engine.models import Document, RankedResult
from vector_engine.similarity import SimilarityMetric, VectorLike, cosine

EXACT_MATCH_BOOST = 1.2
TERM_MATCH_BOOST = 0.3
SECONDS_PER_DAY = 86400


def _terms(text: str) -> list[str]:
    return text.lower().split()


def relevance_score(similarity: float, query: str, content: str) -> float:
    """Boost a normalized similarity by literal and per-term matches, capped at 1.0."""
    relevance = similarity
    query_lower = query.lower().strip()
    content_lower = content.lower()

    if query_lower and query_lower in content_lower:
        relevance *= EXACT_MATCH_BOOST

    terms = _terms(query)
    if terms:
        matched = sum(1 for term in terms if term in content_lower)
        relevance *= 1 + (matched / len(terms)) * TERM_MATCH_BOOST

    return min(relevance, 1.0)


class FactorKind(str, Enum):
    """Built-in ranking factor strategies."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    LENGTH = "length"
    CUSTOM = "custom"


FactorFunction = Callable[[str, VectorLike, Document], float]


@dataclass(frozen=True)
class RankingFactor:
    """A named, weighted scoring factor.

    Attributes:
        name: Label used in the factor breakdown
        weight: Multiplier applied to the factor score
        kind: Strategy to evaluate
        ideal_length: Target content length for ``LENGTH``
        function: Scoring callable for ``CUSTOM``
    """

    name: str
    weight: float
    kind: FactorKind = FactorKind.CUSTOM
    ideal_length: int = 200
    function: FactorFunction | None = None

    def __post_init__(self) -> None:
        if self.kind is FactorKind.CUSTOM and self.function is None:
            raise ValueError(f"Custom factor {self.name!r} requires a function")
        if self.ideal_length <= 0:
            raise ValueError(f"ideal_length must be positive, got {self.ideal_length}")

    def evaluate(self, query: str, query_embedding: VectorLike, candidate: Document) -> float:
        match self.kind:
            case FactorKind.SEMANTIC:
                return cosine(query_embedding, candidate.embedding)
            case FactorKind.KEYWORD:
                query_terms = set(_terms(query))
                if not query_terms:
                    return 0.0
                content_terms = set(_terms(candidate.content))
                return len(query_terms & content_terms) / len(query_terms)
            case FactorKind.LENGTH:
                deviation = abs(len(candidate.content) - self.ideal_length)
                return max(0.0, 1 - deviation / self.ideal_length)
            case FactorKind.CUSTOM:
                if self.function is None:
                    raise ValueError(f"Custom factor {self.name!r} requires a function")
                return float(self.function(query, query_embedding, candidate))


def default_factors(ideal_length: int = 200) -> list[RankingFactor]:
    """Semantic similarity 0.7, keyword overlap 0.2, length penalty 0.1."""
    return [
        RankingFactor("Semantic Similarity", 0.7, FactorKind.SEMANTIC),
        RankingFactor("Keyword Match", 0.2, FactorKind.KEYWORD),
        RankingFactor("Length Penalty", 0.1, FactorKind.LENGTH, ideal_length=ideal_length),
    ]


def _default_source_boosts() -> dict[str, float]:
    return {"official": 1.2, "verified": 1.1, "community": 0.9}


@dataclass(frozen=True)
class RerankingContext:
    """Boosts and diversity settings for ``Ranker.rerank``.

    Attributes:
        diversity_enabled: Apply the greedy diversity filter after re-sorting
        diversity_threshold: Drop a result whose cosine similarity to any kept
            result reaches this value
        source_boosts: Multiplier per document source
        now: Reference time for recency (defaults to the current UTC time)
    """

    diversity_enabled: bool = True
    diversity_threshold: float = 0.85
    source_boosts: dict[str, float] = field(default_factory=_default_source_boosts)
    now: datetime | None = None

    def recency_boost(self, age_seconds: float) -> float:
        days = age_seconds / SECONDS_PER_DAY
        if days < 7:
            return 1.2
        if days < 30:
            return 1.1
        if days < 365:
            return 1.0
        return 0.9

    def popularity_boost(self, view_count: int) -> float:
        if view_count > 1000:
            return 1.1
        if view_count > 100:
            return 1.05
        return 1.0


class RankingConfig(BaseModel):
    """Ranking configuration.

    Attributes:
        diversity_enabled: Default for ``RerankingContext.diversity_enabled``
        diversity_threshold: Default diversity cutoff
        ideal_length: Ideal content length for the length-penalty factor
        source_boosts: Multiplier per source
    """

    diversity_enabled: bool = True
    diversity_threshold: float = Field(default=0.85, ge=-1.0, le=1.0)
    ideal_length: int = Field(default=200, ge=1)
    source_boosts: dict[str, float] = Field(default_factory=_default_source_boosts)

    def reranking_context(self, now: datetime | None = None) -> RerankingContext:
        return RerankingContext(
            diversity_enabled=self.diversity_enabled,
            diversity_threshold=self.diversity_threshold,
            source_boosts=dict(self.source_boosts),
            now=now,
        )


def _created_at(document: Document) -> datetime | None:
    value = document.metadata.get("created_at")
    if isinstance(value, datetime):
        created = value
    elif isinstance(value, str):
        try:
            created = datetime.fromisoformat(value)
        except ValueError:
            return document.created_at
    else:
        return document.created_at
    return created if created.tzinfo is not None else created.replace(tzinfo=UTC)


class Ranker:
    """Orders candidates by relevance."""

    def rank(
        self,
        query: str,
        query_embedding: VectorLike,
        candidates: Sequence[Document],
        metric: SimilarityMetric | None = None,
        top_k: int | None = None,
    ) -> list[RankedResult]:
        """Rank by normalized similarity boosted by literal and term matches.

        ``score`` holds the raw metric value; ``relevance_score`` is the sort key.
        """
        metric = metric or SimilarityMetric.cosine()
        results = []
        for candidate in candidates:
            raw = metric.calculate(query_embedding, candidate.embedding)
            normalized = metric.normalize(raw)
            results.append(
                RankedResult(
                    item=candidate,
                    score=raw,
                    relevance_score=relevance_score(normalized, query, candidate.content),
                )
            )

        results.sort(key=lambda r: r.relevance_score, reverse=True)
        if top_k is not None:
            results = results[:top_k]
        return results

    def rank_with_multiple_factors(
        self,
        query: str,
        query_embedding: VectorLike,
        candidates: Sequence[Document],
        factors: Sequence[RankingFactor] | None = None,
        top_k: int | None = None,
    ) -> list[RankedResult]:
        """Rank by the weighted sum of factor scores, keeping the breakdown."""
        factors = list(factors) if factors is not None else default_factors()
        results = []
        for candidate in candidates:
            factor_scores = {}
            total = 0.0
            for factor in factors:
                value = factor.evaluate(query, query_embedding, candidate)
                factor_scores[factor.name] = value
                total += value * factor.weight
            results.append(
                RankedResult(
                    item=candidate,
                    score=total,
                    relevance_score=total,
                    factor_scores=factor_scores,
                )
            )

        results.sort(key=lambda r: r.relevance_score, reverse=True)
        if top_k is not None:
            results = results[:top_k]
        return results

    def rerank(
        self, results: Sequence[RankedResult], context: RerankingContext | None = None
    ) -> list[RankedResult]:
        """Apply recency, source and popularity boosts, re-sort, then diversify."""
        context = context or RerankingContext()
        now = context.now or datetime.now(UTC)

        boosted = []
        for result in results:
            item = result.item
            score = result.relevance_score

            created = _created_at(item)
            if created is not None:
                score *= context.recency_boost((now - created).total_seconds())

            source = item.source or item.metadata.get("source")
            if isinstance(source, str) and source in context.source_boosts:
                score *= context.source_boosts[source]

            view_count = item.metadata.get("view_count")
            if isinstance(view_count, int) and not isinstance(view_count, bool):
                score *= context.popularity_boost(view_count)

            boosted.append(result.model_copy(update={"relevance_score": score}))

        boosted.sort(key=lambda r: r.relevance_score, reverse=True)

        if context.diversity_enabled:
            boosted = self.apply_diversity(boosted, context.diversity_threshold)
        return boosted

    @staticmethod
    def apply_diversity(results: Sequence[RankedResult], threshold: float) -> list[RankedResult]:
        """Greedy filter: keep a result only if its cosine similarity to every
        already kept result is below ``threshold``."""
        if not results:
            return []
        kept = [results[0]]
        for candidate in results[1:]:
            if all(
                cosine(candidate.item.embedding, selected.item.embedding) < threshold
                for selected in kept
            ):
                kept.append(candidate)
        dropped = len(results) - len(kept)
        if dropped:
            logger.debug(f"Diversity filter dropped {dropped} near-duplicate results")
        return kept
