"""Hierarchical clustering index for approximate nearest-neighbour search.

The index is a tree of k-means partitions stored as a flat arena of nodes
(children are referenced by position, never by pointer). Every node's centroid
is the mean of all documents beneath it.

Search descends from the root, visiting only the ``ceil(children / pruning_factor)``
children whose centroids are nearest the query. With ``pruning_factor == 1``
every branch is visited and the result equals an exact linear scan.

Builds run into a fresh tree which then replaces the current one in a single
reference assignment, so concurrent searches see either the old or the new
tree.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from vector_engine.clustering import kmeans
from vector_engine.concurrency import CancellationToken
from vector_engine.errors import DimensionMismatch, IndexNotBuilt
from vector_engine.similarity import SimilarityMetric, VectorLike, as_vector


class LeafScoring(str, Enum):
    """How candidates collected from a leaf are scored.

    ``EXACT`` scores each document against the query with the index metric.
    ``CENTROID`` gives every document in a leaf the Euclidean distance from the
    query to the leaf centroid (cheaper, coarser ordering).
    """

    EXACT = "exact"
    CENTROID = "centroid"


class IndexConfig(BaseModel):
    """Hierarchical index configuration.

    Attributes:
        max_points_per_node: Leaf capacity
        max_branching: Upper bound on children per internal node
        kmeans_iterations: Iteration cap for each k-means partition
        pruning_factor: Default search pruning factor (1 = exact)
        leaf_scoring: Candidate scoring mode at leaves
        candidate_multiplier: Over-fetch factor used by the engine before re-scoring
        seed: Random seed for k-means++ seeding (None = non-deterministic)
    """

    max_points_per_node: int = Field(default=100, ge=1)
    max_branching: int = Field(default=4, ge=2, le=64)
    kmeans_iterations: int = Field(default=10, ge=1, le=1000)
    pruning_factor: float = Field(default=2.0, ge=1.0)
    leaf_scoring: LeafScoring = LeafScoring.EXACT
    candidate_multiplier: int = Field(default=3, ge=1, le=100)
    seed: int | None = None


class IndexNode(BaseModel):
    """One node of the index arena.

    Attributes:
        centroid: Mean embedding of every document under this node
        document_ids: Ids of every document under this node
        children: Arena positions of child nodes; None for leaves
        depth: Distance from the root
    """

    centroid: list[float]
    document_ids: frozenset[str]
    children: list[int] | None = None
    depth: int = Field(ge=0)

    @property
    def is_leaf(self) -> bool:
        return self.children is None


class IndexSnapshot(BaseModel):
    """Serialized form of a built index."""

    dimension: int
    root: int
    nodes: list[IndexNode]
    ids: list[str]
    vectors: list[list[float]]
    built_at: datetime


@dataclass(frozen=True)
class _Tree:
    nodes: list[IndexNode]
    root: int
    ids: list[str]
    vectors: np.ndarray
    rows: dict[str, int]
    built_at: datetime


class HierarchicalIndex:
    """Cluster-tree index over a fixed document set.

    Args:
        dimension: Expected embedding dimension (inferred from the first build if None)
        config: Index configuration
        metric: Metric used to score leaf candidates in ``EXACT`` mode
    """

    def __init__(
        self,
        dimension: int | None = None,
        config: IndexConfig | None = None,
        metric: SimilarityMetric | None = None,
    ):
        self.dimension = dimension
        self._configured_dimension = dimension
        self.config = config or IndexConfig()
        self.metric = metric or SimilarityMetric.cosine()
        self._tree: _Tree | None = None
        self._build_lock = threading.Lock()

    @property
    def is_built(self) -> bool:
        return self._tree is not None

    @property
    def built_at(self) -> datetime | None:
        tree = self._tree
        return tree.built_at if tree else None

    def __len__(self) -> int:
        tree = self._tree
        return len(tree.ids) if tree else 0

    # Build

    def build(
        self,
        documents: Mapping[str, VectorLike] | Sequence[tuple[str, VectorLike]],
        cancel: CancellationToken | None = None,
    ) -> None:
        """Build a new tree and swap it in.

        An empty document set clears the index and forgets an inferred
        dimension. Cancellation is checked before
        each node is built; a cancelled build leaves the previous tree in place.

        Raises:
            DimensionMismatch: If embeddings disagree with each other or ``dimension``
            OperationCancelled: If ``cancel`` is triggered mid-build
        """
        items = list(documents.items()) if isinstance(documents, Mapping) else list(documents)

        with self._build_lock:
            if not items:
                self._tree = None
                self.dimension = self._configured_dimension
                logger.info("Index cleared (no documents)")
                return

            ids = [doc_id for doc_id, _ in items]
            if len(set(ids)) != len(ids):
                raise ValueError("Duplicate document ids in index build")
            vectors = [as_vector(vector) for _, vector in items]
            expected = self.dimension if self.dimension is not None else vectors[0].shape[0]
            for vector in vectors:
                if vector.shape[0] != expected:
                    raise DimensionMismatch(expected, vector.shape[0])
            matrix = np.vstack(vectors)

            rng = np.random.default_rng(self.config.seed)
            nodes: list[IndexNode] = []
            root = self._build_node(np.arange(len(ids)), 0, matrix, ids, nodes, rng, cancel)

            tree = _Tree(
                nodes=nodes,
                root=root,
                ids=ids,
                vectors=matrix,
                rows={doc_id: i for i, doc_id in enumerate(ids)},
                built_at=datetime.now(UTC),
            )
            self.dimension = expected
            self._tree = tree

        logger.info(f"Index built: {len(ids)} documents, {len(nodes)} nodes, depth {self.depth()}")

    def _build_node(
        self,
        members: np.ndarray,
        depth: int,
        matrix: np.ndarray,
        ids: list[str],
        nodes: list[IndexNode],
        rng: np.random.Generator,
        cancel: CancellationToken | None,
    ) -> int:
        if cancel is not None:
            cancel.raise_if_cancelled({"nodes_built": len(nodes)})

        count = members.shape[0]
        centroid = matrix[members].mean(axis=0).tolist()
        document_ids = frozenset(ids[i] for i in members)
        max_points = self.config.max_points_per_node

        if count <= max_points:
            nodes.append(IndexNode(centroid=centroid, document_ids=document_ids, depth=depth))
            return len(nodes) - 1

        k = min(self.config.max_branching, count // max_points + 1)
        result = kmeans(
            matrix[members], k, max_iterations=self.config.kmeans_iterations, seed=rng
        )
        groups = [members[np.asarray(cluster)] for cluster in result.clusters]
        if len(groups) < 2:
            # Identical points cannot be separated by distance; split by position.
            groups = [g for g in np.array_split(members, k) if g.size]

        children = [
            self._build_node(group, depth + 1, matrix, ids, nodes, rng, cancel) for group in groups
        ]
        nodes.append(
            IndexNode(centroid=centroid, document_ids=document_ids, children=children, depth=depth)
        )
        return len(nodes) - 1

    # Search

    def search(
        self, query: VectorLike, k: int, pruning_factor: float | None = None
    ) -> list[str]:
        """Ids of the ``k`` best candidates, best first. Empty when unbuilt."""
        return [doc_id for doc_id, _ in self.search_with_scores(query, k, pruning_factor)]

    def search_with_scores(
        self, query: VectorLike, k: int, pruning_factor: float | None = None
    ) -> list[tuple[str, float]]:
        """Like ``search`` but also returns each candidate's score.

        In ``EXACT`` mode the score is the raw metric value against the query;
        in ``CENTROID`` mode it is the Euclidean distance to the leaf centroid.
        """
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")
        factor = self.config.pruning_factor if pruning_factor is None else pruning_factor
        if factor < 1:
            raise ValueError(f"pruning_factor must be >= 1, got {factor}")

        tree = self._tree
        if tree is None:
            return []

        vq = as_vector(query)
        if vq.shape[0] != tree.vectors.shape[1]:
            raise DimensionMismatch(tree.vectors.shape[1], vq.shape[0])

        candidates: list[tuple[float, str, float]] = []
        self._search_node(tree, tree.root, vq, factor, candidates)
        candidates.sort()
        return [(doc_id, score) for _, doc_id, score in candidates[:k]]

    def _search_node(
        self,
        tree: _Tree,
        position: int,
        query: np.ndarray,
        factor: float,
        candidates: list[tuple[float, str, float]],
    ) -> None:
        node = tree.nodes[position]
        if node.children is None:
            if self.config.leaf_scoring is LeafScoring.CENTROID:
                distance = float(np.linalg.norm(query - np.asarray(node.centroid)))
                candidates.extend((distance, doc_id, distance) for doc_id in node.document_ids)
            else:
                for doc_id in node.document_ids:
                    score = self.metric.calculate(query, tree.vectors[tree.rows[doc_id]])
                    candidates.append((self.metric.sort_key(score), doc_id, score))
            return

        ranked = sorted(
            node.children,
            key=lambda child: float(np.linalg.norm(query - np.asarray(tree.nodes[child].centroid))),
        )
        limit = math.ceil(len(ranked) / factor)
        for child in ranked[:limit]:
            self._search_node(tree, child, query, factor, candidates)

    def brute_force(self, query: VectorLike, k: int) -> list[tuple[str, float]]:
        """Exact top-k by linear scan over the indexed vectors."""
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")
        tree = self._tree
        if tree is None:
            return []
        vq = as_vector(query)
        if vq.shape[0] != tree.vectors.shape[1]:
            raise DimensionMismatch(tree.vectors.shape[1], vq.shape[0])
        scored = []
        for doc_id, vector in zip(tree.ids, tree.vectors, strict=True):
            score = self.metric.calculate(vq, vector)
            scored.append((self.metric.sort_key(score), doc_id, score))
        scored.sort()
        return [(doc_id, score) for _, doc_id, score in scored[:k]]

    # Introspection

    def nodes(self) -> list[IndexNode]:
        tree = self._tree
        return list(tree.nodes) if tree else []

    def root(self) -> IndexNode | None:
        tree = self._tree
        return tree.nodes[tree.root] if tree else None

    def node_count(self) -> int:
        return len(self.nodes())

    def leaf_count(self) -> int:
        return sum(1 for node in self.nodes() if node.is_leaf)

    def depth(self) -> int:
        return max((node.depth for node in self.nodes()), default=0)

    # Persistence

    def save(self, path: Path) -> None:
        """Write the current tree as JSON.

        Raises:
            IndexNotBuilt: If there is no tree to save
        """
        tree = self._tree
        if tree is None:
            raise IndexNotBuilt()
        snapshot = IndexSnapshot(
            dimension=tree.vectors.shape[1],
            root=tree.root,
            nodes=tree.nodes,
            ids=tree.ids,
            vectors=tree.vectors.tolist(),
            built_at=tree.built_at,
        )
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(snapshot.model_dump_json())
        logger.debug(f"Saved index ({len(tree.nodes)} nodes) to {path}")

    def load(self, path: Path) -> None:
        """Replace the current tree with one saved by ``save``.

        Raises:
            FileNotFoundError: If ``path`` does not exist
            ValueError: If the file is not a valid snapshot
            DimensionMismatch: If the snapshot dimension differs from ``dimension``
        """
        try:
            snapshot = IndexSnapshot.model_validate_json(Path(path).read_text())
        except ValidationError as e:
            raise ValueError(f"Invalid index snapshot {path}: {e}") from e
        if self.dimension is not None and snapshot.dimension != self.dimension:
            raise DimensionMismatch(self.dimension, snapshot.dimension)

        vectors = np.asarray(snapshot.vectors, dtype=np.float64).reshape(
            len(snapshot.ids), snapshot.dimension
        )
        tree = _Tree(
            nodes=snapshot.nodes,
            root=snapshot.root,
            ids=snapshot.ids,
            vectors=vectors,
            rows={doc_id: i for i, doc_id in enumerate(snapshot.ids)},
            built_at=snapshot.built_at,
        )
        with self._build_lock:
            self.dimension = snapshot.dimension
            self._tree = tree
        logger.info(f"Loaded index with {len(snapshot.ids)} documents from {path}")

