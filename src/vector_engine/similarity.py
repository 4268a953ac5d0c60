"""Vector similarity primitives and score normalization.

Provides the four metrics used throughout the engine (cosine, Euclidean,
Manhattan, dot product), normalization of raw scores into [0, 1], and a
``SimilarityEngine`` that scores one query against many targets or builds a
full pairwise similarity matrix.

Dimension mismatches follow an explicit ``DimensionPolicy``: ``STRICT`` raises
``DimensionMismatch``; ``DEGRADE`` logs a warning and scores the pair as
"not similar" (0.0 similarity, infinite distance).
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field

from vector_engine.errors import DimensionMismatch

VectorLike = Sequence[float] | np.ndarray


class MetricKind(str, Enum):
    """Supported similarity metrics."""

    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"
    DOT_PRODUCT = "dot_product"


class DimensionPolicy(str, Enum):
    """What to do when two vectors have different dimensions."""

    STRICT = "strict"
    DEGRADE = "degrade"


def as_vector(values: VectorLike) -> np.ndarray:
    """Convert a sequence of floats to a 1-D float64 array."""
    array = np.asarray(values, dtype=np.float64)
    if array.ndim != 1:
        raise ValueError(f"Expected a 1-D vector, got shape {array.shape}")
    return array


def _dimensions_match(a: np.ndarray, b: np.ndarray, policy: DimensionPolicy) -> bool:
    if a.shape[0] == b.shape[0]:
        return True
    if policy is DimensionPolicy.STRICT:
        raise DimensionMismatch(a.shape[0], b.shape[0])
    logger.warning(f"Vector dimensions don't match ({a.shape[0]} vs {b.shape[0]}); scoring as 0")
    return False


def cosine(a: VectorLike, b: VectorLike, policy: DimensionPolicy = DimensionPolicy.STRICT) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero magnitude."""
    va, vb = as_vector(a), as_vector(b)
    if not _dimensions_match(va, vb, policy):
        return 0.0
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(va, vb) / magnitude)


def euclidean(
    a: VectorLike, b: VectorLike, policy: DimensionPolicy = DimensionPolicy.STRICT
) -> float:
    """Euclidean (L2) distance."""
    va, vb = as_vector(a), as_vector(b)
    if not _dimensions_match(va, vb, policy):
        return math.inf
    return float(np.linalg.norm(va - vb))


def manhattan(
    a: VectorLike, b: VectorLike, policy: DimensionPolicy = DimensionPolicy.STRICT
) -> float:
    """Manhattan (L1) distance."""
    va, vb = as_vector(a), as_vector(b)
    if not _dimensions_match(va, vb, policy):
        return math.inf
    return float(np.abs(va - vb).sum())


def dot_product(
    a: VectorLike, b: VectorLike, policy: DimensionPolicy = DimensionPolicy.STRICT
) -> float:
    """Plain inner product."""
    va, vb = as_vector(a), as_vector(b)
    if not _dimensions_match(va, vb, policy):
        return 0.0
    return float(np.dot(va, vb))


@dataclass(frozen=True)
class SimilarityMetric:
    """A metric plus the calibration constant needed to normalize its scores.

    Attributes:
        kind: Which metric to compute
        scale: ``maxDistance`` for Euclidean/Manhattan, ``maxValue`` for dot
            product; unused for cosine
    """

    kind: MetricKind = MetricKind.COSINE
    scale: float | None = None

    def __post_init__(self) -> None:
        if self.kind is not MetricKind.COSINE:
            if self.scale is None or self.scale <= 0:
                raise ValueError(f"{self.kind.value} metric requires a positive scale")

    @classmethod
    def cosine(cls) -> SimilarityMetric:
        return cls(MetricKind.COSINE)

    @classmethod
    def euclidean(cls, max_distance: float) -> SimilarityMetric:
        return cls(MetricKind.EUCLIDEAN, max_distance)

    @classmethod
    def manhattan(cls, max_distance: float) -> SimilarityMetric:
        return cls(MetricKind.MANHATTAN, max_distance)

    @classmethod
    def dot_product(cls, max_value: float) -> SimilarityMetric:
        return cls(MetricKind.DOT_PRODUCT, max_value)

    def required_scale(self) -> float:
        """The calibration constant; only cosine can be normalized without one."""
        if self.scale is None:
            raise ValueError(f"{self.kind.value} metric has no scale to normalize with")
        return self.scale

    @property
    def is_distance(self) -> bool:
        """True when lower raw scores mean more similar."""
        return self.kind in (MetricKind.EUCLIDEAN, MetricKind.MANHATTAN)

    @property
    def name(self) -> str:
        match self.kind:
            case MetricKind.COSINE:
                return "Cosine Similarity"
            case MetricKind.EUCLIDEAN:
                return "Euclidean Distance"
            case MetricKind.MANHATTAN:
                return "Manhattan Distance"
            case MetricKind.DOT_PRODUCT:
                return "Dot Product"

    def calculate(
        self, a: VectorLike, b: VectorLike, policy: DimensionPolicy = DimensionPolicy.STRICT
    ) -> float:
        """Compute the raw metric value for a pair of vectors."""
        match self.kind:
            case MetricKind.COSINE:
                return cosine(a, b, policy)
            case MetricKind.EUCLIDEAN:
                return euclidean(a, b, policy)
            case MetricKind.MANHATTAN:
                return manhattan(a, b, policy)
            case MetricKind.DOT_PRODUCT:
                return dot_product(a, b, policy)

    def normalize(self, score: float) -> float:
        """Map a raw score into [0, 1], higher meaning more similar."""
        return normalize(score, self)

    def sort_key(self, score: float) -> float:
        """Ascending sort key: distances as-is, similarities negated."""
        return score if self.is_distance else -score


def normalize(score: float, metric: SimilarityMetric) -> float:
    """Normalize a raw metric score to [0, 1].

    Cosine maps ``[-1, 1] -> [0, 1]`` via ``(s + 1) / 2``. Distances map to
    ``1 - min(d / maxDistance, 1)``. Dot product is scaled by ``maxValue`` and
    clamped.
    """
    match metric.kind:
        case MetricKind.COSINE:
            return min(max((score + 1.0) / 2.0, 0.0), 1.0)
        case MetricKind.EUCLIDEAN | MetricKind.MANHATTAN:
            return 1.0 - min(score / metric.required_scale(), 1.0)
        case MetricKind.DOT_PRODUCT:
            return min(max(score / metric.required_scale(), 0.0), 1.0)


def similarity_band(normalized_score: float) -> str:
    """Bucket a normalized score into ``high`` (>0.8), ``medium`` (>0.6) or ``low``."""
    if normalized_score > 0.8:
        return "high"
    if normalized_score > 0.6:
        return "medium"
    return "low"


class SimilarityConfig(BaseModel):
    """Similarity configuration.

    Attributes:
        metric: Metric name (cosine, euclidean, manhattan, dot_product)
        scale: Calibration constant for non-cosine metrics
        dimension_policy: ``strict`` raises on mismatch, ``degrade`` scores 0
    """

    metric: MetricKind = MetricKind.COSINE
    scale: float | None = Field(default=None, gt=0.0)
    dimension_policy: DimensionPolicy = DimensionPolicy.STRICT

    def build_metric(self) -> SimilarityMetric:
        return SimilarityMetric(self.metric, self.scale)


@dataclass(frozen=True)
class SimilarityScore:
    """Score of one target vector against a query."""

    index: int
    score: float
    normalized_score: float

    @property
    def percentage(self) -> float:
        return self.normalized_score * 100


class SimilarityEngine:
    """Scores vectors with a fixed metric and dimension policy.

    Work fans out over an injected executor when one is provided; otherwise
    everything runs on the calling thread.
    """

    def __init__(
        self,
        metric: SimilarityMetric | None = None,
        policy: DimensionPolicy = DimensionPolicy.STRICT,
        executor: Executor | None = None,
    ):
        self.metric = metric or SimilarityMetric.cosine()
        self.policy = policy
        self.executor = executor

    @classmethod
    def from_config(
        cls, config: SimilarityConfig, executor: Executor | None = None
    ) -> SimilarityEngine:
        return cls(config.build_metric(), config.dimension_policy, executor)

    def raw(self, a: VectorLike, b: VectorLike) -> float:
        """Raw metric value for a pair."""
        return self.metric.calculate(a, b, self.policy)

    def score(self, a: VectorLike, b: VectorLike) -> float:
        """Normalized similarity in [0, 1]; 0.0 for mismatched pairs under DEGRADE."""
        va, vb = as_vector(a), as_vector(b)
        if not _dimensions_match(va, vb, self.policy):
            return 0.0
        return self.metric.normalize(self.metric.calculate(va, vb, self.policy))

    def _score_one(self, index: int, query: np.ndarray, target: VectorLike) -> SimilarityScore:
        vt = as_vector(target)
        if not _dimensions_match(query, vt, self.policy):
            return SimilarityScore(index=index, score=0.0, normalized_score=0.0)
        raw = self.metric.calculate(query, vt, self.policy)
        return SimilarityScore(index=index, score=raw, normalized_score=self.metric.normalize(raw))

    def batch_scores(
        self, query: VectorLike, targets: Sequence[VectorLike]
    ) -> list[SimilarityScore]:
        """Score ``query`` against every target, sorted by normalized score descending."""
        vq = as_vector(query)
        if self.executor is not None and len(targets) > 1:
            futures = [
                self.executor.submit(self._score_one, i, vq, target)
                for i, target in enumerate(targets)
            ]
            results = [future.result() for future in futures]
        else:
            results = [self._score_one(i, vq, target) for i, target in enumerate(targets)]
        results.sort(key=lambda r: (-r.normalized_score, r.index))
        return results

    def _matrix_row(self, i: int, vectors: list[np.ndarray]) -> list[float]:
        return [self.score(vectors[i], vectors[j]) for j in range(i + 1, len(vectors))]

    def similarity_matrix(self, vectors: Sequence[VectorLike]) -> np.ndarray:
        """Symmetric matrix of normalized similarities with a unit diagonal.

        Only the upper triangle is computed; rows are distributed over the
        executor when one is available.
        """
        arrays = [as_vector(v) for v in vectors]
        n = len(arrays)
        matrix = np.eye(n, dtype=np.float64)
        if n < 2:
            return matrix

        if self.executor is not None:
            futures = [self.executor.submit(self._matrix_row, i, arrays) for i in range(n - 1)]
            rows = [future.result() for future in futures]
        else:
            rows = [self._matrix_row(i, arrays) for i in range(n - 1)]

        for i, row in enumerate(rows):
            for offset, value in enumerate(row):
                j = i + 1 + offset
                matrix[i, j] = value
                matrix[j, i] = value
        return matrix
