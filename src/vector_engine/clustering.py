"""Clustering over sets of embedding vectors.

Three algorithms, all using Euclidean distance:

- ``kmeans``: k-means with k-means++ seeding; stops when assignments stop
  changing or after ``max_iterations``.
- ``hierarchical``: agglomerative clustering with single, complete or average
  linkage, recording the merge history for dendrogram cuts.
- ``dbscan``: density-based clustering with noise detection. A point's
  eps-neighbourhood includes the point itself.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from loguru import logger

from vector_engine.concurrency import CancellationToken
from vector_engine.similarity import VectorLike

NOISE = -1


def _as_matrix(points: Sequence[VectorLike] | np.ndarray) -> np.ndarray:
    matrix = np.asarray(points, dtype=np.float64)
    if matrix.size == 0:
        return matrix.reshape(0, 0)
    if matrix.ndim != 2:
        raise ValueError(f"Expected a 2-D array of points, got shape {matrix.shape}")
    return matrix


def _squared_distances(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    diff = points[:, None, :] - centroids[None, :, :]
    return np.einsum("ijk,ijk->ij", diff, diff)


def distance_matrix(points: np.ndarray) -> np.ndarray:
    """Symmetric matrix of pairwise Euclidean distances."""
    return np.sqrt(np.maximum(_squared_distances(points, points), 0.0))


def _make_rng(seed: int | np.random.Generator | None) -> np.random.Generator:
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


# K-means


@dataclass(frozen=True)
class KMeansResult:
    """Result of k-means clustering.

    Attributes:
        clusters: Point indices per non-empty cluster
        centroids: One centroid per cluster (mean of its points)
        labels: Cluster index for every input point
        iterations: Number of assignment passes performed
    """

    clusters: list[list[int]]
    centroids: np.ndarray
    labels: np.ndarray
    iterations: int

    @property
    def cluster_sizes(self) -> list[int]:
        return [len(c) for c in self.clusters]


def kmeans_plus_plus(points: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Pick ``k`` initial centroids: the first uniformly, the rest with
    probability proportional to squared distance to the nearest chosen centroid."""
    n = points.shape[0]
    chosen = [int(rng.integers(n))]
    closest = _squared_distances(points, points[chosen])[:, 0]
    for _ in range(1, k):
        total = float(closest.sum())
        if total > 0.0:
            index = int(rng.choice(n, p=closest / total))
        else:
            index = int(rng.integers(n))
        chosen.append(index)
        closest = np.minimum(closest, _squared_distances(points, points[[index]])[:, 0])
    return points[chosen].copy()


def kmeans(
    points: Sequence[VectorLike] | np.ndarray,
    k: int,
    *,
    max_iterations: int = 10,
    seed: int | np.random.Generator | None = None,
) -> KMeansResult:
    """Cluster points into at most ``k`` non-empty groups.

    ``k`` is clamped to the number of points. Every point ends up in exactly one
    cluster, and each returned centroid is the mean of its cluster's points.
    """
    if k < 1:
        raise ValueError(f"k must be positive, got {k}")
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be positive, got {max_iterations}")

    matrix = _as_matrix(points)
    n = matrix.shape[0]
    if n == 0:
        return KMeansResult(clusters=[], centroids=np.empty((0, 0)), labels=np.empty(0, dtype=int), iterations=0)

    k = min(k, n)
    rng = _make_rng(seed)
    centroids = kmeans_plus_plus(matrix, k, rng)
    labels = np.full(n, -1, dtype=int)
    iterations = 0

    for _ in range(max_iterations):
        new_labels = np.argmin(_squared_distances(matrix, centroids), axis=1)
        iterations += 1
        if np.array_equal(new_labels, labels):
            break
        labels = new_labels
        for c in range(k):
            members = labels == c
            if members.any():
                centroids[c] = matrix[members].mean(axis=0)

    clusters: list[list[int]] = []
    kept: list[np.ndarray] = []
    remap = np.full(k, -1, dtype=int)
    for c in range(k):
        members = np.flatnonzero(labels == c)
        if members.size:
            remap[c] = len(clusters)
            clusters.append(members.tolist())
            kept.append(centroids[c])

    logger.debug(f"k-means: {n} points, {len(clusters)} clusters, {iterations} iterations")
    return KMeansResult(
        clusters=clusters,
        centroids=np.vstack(kept),
        labels=remap[labels],
        iterations=iterations,
    )


def silhouette_score(points: Sequence[VectorLike] | np.ndarray, labels: Sequence[int]) -> float:
    """Mean silhouette coefficient; 0.0 when fewer than two clusters exist.

    Points labelled ``NOISE`` are ignored.
    """
    matrix = _as_matrix(points)
    label_array = np.asarray(labels, dtype=int)
    valid = label_array != NOISE
    matrix, label_array = matrix[valid], label_array[valid]
    unique = np.unique(label_array)
    if unique.size < 2:
        return 0.0

    distances = distance_matrix(matrix)
    scores = []
    for i in range(matrix.shape[0]):
        same = label_array == label_array[i]
        same[i] = False
        if not same.any():
            scores.append(0.0)
            continue
        a = distances[i, same].mean()
        b = min(
            distances[i, label_array == other].mean() for other in unique if other != label_array[i]
        )
        denominator = max(a, b)
        scores.append(0.0 if denominator == 0 else (b - a) / denominator)
    return float(np.mean(scores))


# Hierarchical agglomerative clustering


class Linkage(str, Enum):
    """Inter-cluster distance rule."""

    SINGLE = "single"
    COMPLETE = "complete"
    AVERAGE = "average"


@dataclass(frozen=True)
class ClusterMerge:
    """One merge step: two clusters joined at ``distance``."""

    cluster1: frozenset[int]
    cluster2: frozenset[int]
    distance: float
    merged: frozenset[int]


@dataclass(frozen=True)
class Dendrogram:
    """Merge history of an agglomerative clustering run."""

    merges: list[ClusterMerge]
    n_points: int

    def cut(self, height: float) -> list[frozenset[int]]:
        """Clusters obtained by replaying every merge at or below ``height``."""
        clusters = {i: frozenset([i]) for i in range(self.n_points)}
        owner = list(range(self.n_points))
        for merge in self.merges:
            if merge.distance > height:
                continue
            a = owner[min(merge.cluster1)]
            b = owner[min(merge.cluster2)]
            if a == b:
                continue
            union = clusters.pop(a) | clusters.pop(b)
            key = min(a, b)
            clusters[key] = union
            for point in union:
                owner[point] = key
        return sorted(clusters.values(), key=min)


@dataclass(frozen=True)
class HierarchicalResult:
    """Result of agglomerative clustering."""

    clusters: list[frozenset[int]]
    merges: list[ClusterMerge]
    dendrogram: Dendrogram


def _linkage_distance(
    distances: np.ndarray, a: list[int], b: list[int], linkage: Linkage
) -> float:
    block = distances[np.ix_(a, b)]
    match linkage:
        case Linkage.SINGLE:
            return float(block.min())
        case Linkage.COMPLETE:
            return float(block.max())
        case Linkage.AVERAGE:
            return float(block.mean())


def hierarchical(
    points: Sequence[VectorLike] | np.ndarray,
    threshold: float = float("inf"),
    linkage: Linkage = Linkage.AVERAGE,
    cancel: CancellationToken | None = None,
) -> HierarchicalResult:
    """Repeatedly merge the closest pair of clusters.

    Stops when one cluster remains or the closest pair is farther apart than
    ``threshold``.
    """
    matrix = _as_matrix(points)
    n = matrix.shape[0]
    linkage = Linkage(linkage)
    distances = distance_matrix(matrix) if n else np.empty((0, 0))
    clusters: list[list[int]] = [[i] for i in range(n)]
    merges: list[ClusterMerge] = []

    while len(clusters) > 1:
        if cancel is not None:
            cancel.raise_if_cancelled({"merges": len(merges)})
        best = (float("inf"), 0, 0)
        for i in range(len(clusters)):
            for j in range(i + 1, len(clusters)):
                d = _linkage_distance(distances, clusters[i], clusters[j], linkage)
                if d < best[0]:
                    best = (d, i, j)

        min_distance, i, j = best
        if min_distance > threshold:
            break

        merged = sorted(clusters[i] + clusters[j])
        merges.append(
            ClusterMerge(
                cluster1=frozenset(clusters[i]),
                cluster2=frozenset(clusters[j]),
                distance=min_distance,
                merged=frozenset(merged),
            )
        )
        clusters[i] = merged
        del clusters[j]

    return HierarchicalResult(
        clusters=[frozenset(c) for c in clusters],
        merges=merges,
        dendrogram=Dendrogram(merges=merges, n_points=n),
    )


# DBSCAN


@dataclass(frozen=True)
class DBSCANResult:
    """Result of DBSCAN clustering.

    Attributes:
        clusters: Point indices per cluster
        noise: Indices belonging to no cluster
        core_points: Indices whose eps-neighbourhood has at least ``min_points`` members
        labels: Cluster index per point, ``NOISE`` (-1) for noise
    """

    clusters: list[list[int]]
    noise: list[int]
    core_points: list[int]
    labels: list[int] = field(default_factory=list)

    @property
    def cluster_count(self) -> int:
        return len(self.clusters)

    @property
    def noise_ratio(self) -> float:
        total = sum(len(c) for c in self.clusters) + len(self.noise)
        return len(self.noise) / total if total else 0.0


def dbscan(
    points: Sequence[VectorLike] | np.ndarray, eps: float, min_points: int
) -> DBSCANResult:
    """Density-based clustering.

    A point is a core point when at least ``min_points`` points (itself
    included) lie within ``eps``. Points first marked as noise are absorbed
    into a cluster if a core point reaches them.
    """
    if eps < 0:
        raise ValueError(f"eps must be non-negative, got {eps}")
    if min_points < 1:
        raise ValueError(f"min_points must be positive, got {min_points}")

    matrix = _as_matrix(points)
    n = matrix.shape[0]
    if n == 0:
        return DBSCANResult(clusters=[], noise=[], core_points=[], labels=[])

    distances = distance_matrix(matrix)
    neighbourhoods = [np.flatnonzero(distances[i] <= eps).tolist() for i in range(n)]
    is_core = [len(neighbourhoods[i]) >= min_points for i in range(n)]

    labels: list[int | None] = [None] * n
    cluster_id = 0
    for i in range(n):
        if labels[i] is not None:
            continue
        if not is_core[i]:
            labels[i] = NOISE
            continue

        labels[i] = cluster_id
        seeds = deque(neighbourhoods[i])
        while seeds:
            point = seeds.popleft()
            if labels[point] == NOISE:
                labels[point] = cluster_id
            if labels[point] is not None:
                continue
            labels[point] = cluster_id
            if is_core[point]:
                seeds.extend(neighbourhoods[point])
        cluster_id += 1

    clusters: list[list[int]] = [[] for _ in range(cluster_id)]
    noise: list[int] = []
    for i, label in enumerate(labels):
        if label == NOISE:
            noise.append(i)
        else:
            clusters[label].append(i)

    final_labels = [NOISE if label is None else label for label in labels]
    logger.debug(f"DBSCAN: {cluster_id} clusters, {len(noise)} noise points")
    return DBSCANResult(
        clusters=clusters,
        noise=noise,
        core_points=[i for i in range(n) if is_core[i]],
        labels=final_labels,
    )
