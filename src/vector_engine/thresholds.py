"""Relevance threshold calibration.

Turns a distribution of similarity scores into a cutoff, validates a cutoff
against labelled pairs, and grid-searches the cutoff that maximizes a chosen
metric (precision, recall, F1, accuracy or a caller-supplied scorer).
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field, model_validator

EMPTY_THRESHOLD = 0.5
OTSU_BINS = 100

LabelledPair = tuple[float, bool]


class MethodKind(str, Enum):
    PERCENTILE = "percentile"
    MEAN = "mean"
    STANDARD_DEVIATION = "standard_deviation"
    ELBOW = "elbow"
    OTSU = "otsu"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True)
class AdaptiveContext:
    """Scaling applied to the base (80th percentile) threshold.

    Attributes:
        query_complexity_factor: Multiplier for query complexity
        domain_specificity_factor: Multiplier for domain specificity
        user_feedback_adjustment: Additive shift learned from user feedback
    """

    query_complexity_factor: float = 1.0
    domain_specificity_factor: float = 1.0
    user_feedback_adjustment: float | None = None


@dataclass(frozen=True)
class ThresholdMethod:
    """How to derive a threshold from a score distribution.

    Build instances with the classmethods, e.g. ``ThresholdMethod.percentile(0.9)``.
    """

    kind: MethodKind
    value: float | None = None
    context: AdaptiveContext | None = None

    def __post_init__(self) -> None:
        if self.kind in (MethodKind.PERCENTILE, MethodKind.STANDARD_DEVIATION) and self.value is None:
            raise ValueError(f"{self.kind.value} threshold method requires a value")

    def required_value(self) -> float:
        if self.value is None:
            raise ValueError(f"{self.kind.value} threshold method has no value")
        return self.value

    @classmethod
    def percentile(cls, p: float = 0.8) -> ThresholdMethod:
        if not 0.0 <= p <= 1.0:
            raise ValueError(f"percentile must be in [0, 1], got {p}")
        return cls(MethodKind.PERCENTILE, value=p)

    @classmethod
    def mean(cls) -> ThresholdMethod:
        return cls(MethodKind.MEAN)

    @classmethod
    def standard_deviation(cls, factor: float) -> ThresholdMethod:
        return cls(MethodKind.STANDARD_DEVIATION, value=factor)

    @classmethod
    def elbow(cls) -> ThresholdMethod:
        return cls(MethodKind.ELBOW)

    @classmethod
    def otsu(cls) -> ThresholdMethod:
        return cls(MethodKind.OTSU)

    @classmethod
    def adaptive(cls, context: AdaptiveContext) -> ThresholdMethod:
        return cls(MethodKind.ADAPTIVE, context=context)


@dataclass(frozen=True)
class ConfusionMatrix:
    true_positives: int
    false_positives: int
    true_negatives: int
    false_negatives: int

    @property
    def total(self) -> int:
        return self.true_positives + self.false_positives + self.true_negatives + self.false_negatives


@dataclass(frozen=True)
class ThresholdValidation:
    """Quality of one threshold against labelled pairs."""

    threshold: float
    precision: float
    recall: float
    f1_score: float
    accuracy: float
    confusion_matrix: ConfusionMatrix


class OptimizationMetric(str, Enum):
    PRECISION = "precision"
    RECALL = "recall"
    F1_SCORE = "f1_score"
    ACCURACY = "accuracy"


ValidationScorer = Callable[[ThresholdValidation], float]


@dataclass(frozen=True)
class OptimalThreshold:
    """Best threshold found by ``optimize_threshold`` plus the full curve."""

    value: float
    score: float
    metric: OptimizationMetric | ValidationScorer
    validation_curve: list[ThresholdValidation] = field(default_factory=list)


@dataclass(frozen=True)
class ThresholdLevel:
    threshold: float
    label: str
    confidence: float

    def categorize(self, similarity: float) -> bool:
        return similarity >= self.threshold


class UseCase(str, Enum):
    DUPLICATE_DETECTION = "duplicate_detection"
    SIMILARITY_SEARCH = "similarity_search"
    CLUSTERING = "clustering"
    RECOMMENDATION = "recommendation"
    ANOMALY_DETECTION = "anomaly_detection"


@dataclass(frozen=True)
class ThresholdRecommendation:
    value: float
    method: ThresholdMethod
    use_case: UseCase
    rationale: str
    confidence: float


class ThresholdConfig(BaseModel):
    """Threshold calibration configuration.

    Attributes:
        default_percentile: Percentile used when no method is given
        optimization_steps: Grid intervals for ``optimize_threshold``
        search_min: Lower bound of the optimisation range
        search_max: Upper bound of the optimisation range
        histogram_bins: Histogram resolution for Otsu's method
    """

    default_percentile: float = Field(default=0.8, ge=0.0, le=1.0)
    optimization_steps: int = Field(default=100, ge=1, le=100_000)
    search_min: float = 0.0
    search_max: float = 1.0
    histogram_bins: int = Field(default=OTSU_BINS, ge=2)

    @model_validator(mode="after")
    def check_range(self) -> ThresholdConfig:
        if self.search_min > self.search_max:
            raise ValueError(
                f"search_min ({self.search_min}) must not exceed search_max ({self.search_max})"
            )
        return self


_LEVEL_LABELS = [
    ("High Similarity", 0.9),
    ("Medium Similarity", 0.7),
    ("Low Similarity", 0.5),
]

_RECOMMENDATIONS: dict[UseCase, tuple[ThresholdMethod, str]] = {
    UseCase.DUPLICATE_DETECTION: (
        ThresholdMethod.percentile(0.95),
        "High threshold for duplicate detection to minimize false positives",
    ),
    UseCase.SIMILARITY_SEARCH: (
        ThresholdMethod.percentile(0.8),
        "Balanced threshold for general similarity search",
    ),
    UseCase.CLUSTERING: (
        ThresholdMethod.elbow(),
        "Elbow method finds natural separation in data",
    ),
    UseCase.RECOMMENDATION: (
        ThresholdMethod.standard_deviation(0.5),
        "Include items within 0.5 standard deviations of mean similarity",
    ),
    UseCase.ANOMALY_DETECTION: (
        ThresholdMethod.percentile(0.1),
        "Low threshold to identify dissimilar/anomalous items",
    ),
}


def _elbow(sorted_desc: list[float]) -> float:
    """Point of maximum perpendicular distance to the first-to-last chord."""
    n = len(sorted_desc)
    if n <= 2:
        return sorted_desc[n // 2]

    x1, y1 = 0.0, sorted_desc[0]
    x2, y2 = float(n - 1), sorted_desc[-1]
    norm = math.hypot(y2 - y1, x2 - x1)

    best_index, best_distance = 0, 0.0
    for index, y in enumerate(sorted_desc):
        distance = abs((y2 - y1) * index - (x2 - x1) * y + x2 * y1 - y2 * x1) / norm
        if distance > best_distance:
            best_distance, best_index = distance, index
    return sorted_desc[best_index]


def _histogram(values: Sequence[float], bins: int) -> np.ndarray:
    histogram = np.zeros(bins, dtype=np.int64)
    for value in values:
        histogram[min(max(int(value * (bins - 1)), 0), bins - 1)] += 1
    return histogram


def _otsu(values: Sequence[float], bins: int) -> float:
    """Threshold maximizing between-class variance over a score histogram."""
    histogram = _histogram(values, bins).astype(np.float64)
    centres = np.arange(bins, dtype=np.float64) / bins

    best_threshold, best_variance = EMPTY_THRESHOLD, 0.0
    for i in range(1, bins):
        w0, w1 = histogram[:i].sum(), histogram[i:].sum()
        if w0 == 0 or w1 == 0:
            continue
        mean0 = (histogram[:i] * centres[:i]).sum() / w0
        mean1 = (histogram[i:] * centres[i:]).sum() / w1
        variance = w0 * w1 * (mean0 - mean1) ** 2
        if variance > best_variance:
            best_variance, best_threshold = float(variance), i / bins
    return best_threshold


def _metric_score(metric: OptimizationMetric | ValidationScorer, validation: ThresholdValidation) -> float:
    if callable(metric):
        return float(metric(validation))
    match OptimizationMetric(metric):
        case OptimizationMetric.PRECISION:
            return validation.precision
        case OptimizationMetric.RECALL:
            return validation.recall
        case OptimizationMetric.F1_SCORE:
            return validation.f1_score
        case OptimizationMetric.ACCURACY:
            return validation.accuracy


class ThresholdCalibrator:
    """Computes, validates and optimizes relevance cutoffs."""

    def __init__(self, config: ThresholdConfig | None = None):
        self.config = config or ThresholdConfig()

    def calculate_dynamic_threshold(
        self, similarities: Sequence[float], method: ThresholdMethod | None = None
    ) -> float:
        """Derive a threshold from a score distribution; 0.5 for empty input."""
        if len(similarities) == 0:
            return EMPTY_THRESHOLD

        method = method or ThresholdMethod.percentile(self.config.default_percentile)
        values = [float(s) for s in similarities]
        sorted_desc = sorted(values, reverse=True)

        match method.kind:
            case MethodKind.PERCENTILE:
                return sorted_desc[int((len(sorted_desc) - 1) * method.required_value())]
            case MethodKind.MEAN:
                return float(np.mean(values))
            case MethodKind.STANDARD_DEVIATION:
                return float(np.mean(values) + method.required_value() * np.std(values))
            case MethodKind.ELBOW:
                return _elbow(sorted_desc)
            case MethodKind.OTSU:
                return _otsu(values, self.config.histogram_bins)
            case MethodKind.ADAPTIVE:
                context = method.context or AdaptiveContext()
                threshold = self.calculate_dynamic_threshold(values, ThresholdMethod.percentile(0.8))
                threshold *= context.query_complexity_factor
                threshold *= context.domain_specificity_factor
                if context.user_feedback_adjustment is not None:
                    threshold += context.user_feedback_adjustment
                return min(max(threshold, 0.0), 1.0)

    def calculate_multi_level_thresholds(
        self, similarities: Sequence[float], levels: int = 3
    ) -> list[ThresholdLevel]:
        """Cutoffs at quantiles ``(i + 1) / (levels + 1)`` from the top, strictest first."""
        if levels <= 0 or len(similarities) == 0:
            return []

        sorted_desc = sorted((float(s) for s in similarities), reverse=True)
        result = []
        for i in range(levels):
            quantile = (i + 1) / (levels + 1)
            index = int((len(sorted_desc) - 1) * quantile)
            label, confidence = (
                _LEVEL_LABELS[i] if i < len(_LEVEL_LABELS) else ("Very Low Similarity", 0.3)
            )
            result.append(
                ThresholdLevel(threshold=sorted_desc[index], label=label, confidence=confidence)
            )
        return result

    def validate_threshold(
        self, threshold: float, labelled_pairs: Sequence[LabelledPair]
    ) -> ThresholdValidation:
        """Confusion matrix and derived metrics for ``similarity >= threshold``."""
        tp = fp = tn = fn = 0
        for similarity, relevant in labelled_pairs:
            predicted = similarity >= threshold
            if predicted and relevant:
                tp += 1
            elif predicted:
                fp += 1
            elif not relevant:
                tn += 1
            else:
                fn += 1

        precision = tp / (tp + fp) if tp else 0.0
        recall = tp / (tp + fn) if tp + fn else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        total = len(labelled_pairs)
        accuracy = (tp + tn) / total if total else 0.0

        return ThresholdValidation(
            threshold=threshold,
            precision=precision,
            recall=recall,
            f1_score=f1,
            accuracy=accuracy,
            confusion_matrix=ConfusionMatrix(tp, fp, tn, fn),
        )

    def optimize_threshold(
        self,
        labelled_pairs: Sequence[LabelledPair],
        metric: OptimizationMetric | ValidationScorer = OptimizationMetric.F1_SCORE,
        search_range: tuple[float, float] | None = None,
        steps: int | None = None,
    ) -> OptimalThreshold:
        """Grid search over ``steps + 1`` evenly spaced thresholds (both ends included).

        Ties keep the lowest threshold.
        """
        low, high = search_range or (self.config.search_min, self.config.search_max)
        steps = steps if steps is not None else self.config.optimization_steps
        if steps < 1:
            raise ValueError(f"steps must be positive, got {steps}")
        if low > high:
            raise ValueError(f"Invalid search range ({low}, {high})")

        curve = []
        best_value, best_score = low, -math.inf
        for threshold in np.linspace(low, high, steps + 1):
            validation = self.validate_threshold(float(threshold), labelled_pairs)
            curve.append(validation)
            score = _metric_score(metric, validation)
            if score > best_score:
                best_value, best_score = float(threshold), score

        metric_name = getattr(metric, "value", getattr(metric, "__name__", "custom"))
        logger.debug(f"Optimal threshold {best_value:.3f} ({metric_name}={best_score:.3f})")
        return OptimalThreshold(
            value=best_value, score=best_score, metric=metric, validation_curve=curve
        )

    def recommend_threshold(
        self, use_case: UseCase, similarities: Sequence[float]
    ) -> ThresholdRecommendation:
        """Pick a method suited to ``use_case`` and apply it."""
        method, rationale = _RECOMMENDATIONS[UseCase(use_case)]
        confidence = min(0.7 + min(len(similarities) / 1000, 0.2), 0.95)
        return ThresholdRecommendation(
            value=self.calculate_dynamic_threshold(similarities, method),
            method=method,
            use_case=UseCase(use_case),
            rationale=rationale,
            confidence=confidence,
        )
