"""Async facade composing storage, the hierarchical index, ranking and
threshold calibration.

Mutations go to ``StorageManager`` first and mark the index stale; the next
search (or an explicit ``rebuild_index``) rebuilds the tree when the
documents fingerprint or the index configuration differs from the last
recorded build. Index candidates are always re-scored exactly with the
configured metric, so approximate leaf ordering never reaches callers.

Blocking storage and index work runs through ``asyncio.to_thread``; the
shared worker pool is reserved for batch stores and batch scoring.
"""

from __future__ import annotations

import asyncio
import tempfile
from collections.abc import Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Any

from loguru import logger

from vector_engine.build_state import (
    BUILD_RECORD_FILE,
    INDEX_FILE,
    RebuildDecision,
    build_record,
    compute_config_fingerprint,
    compute_documents_fingerprint,
    load_build_record,
    plan_rebuild,
    save_build_record,
)
from vector_engine.concurrency import CancellationToken
from vector_engine.config import VectorSearchConfig
from vector_engine.embedding import EmbeddingClient
from vector_engine.errors import (
    ChecksumMismatch,
    ConfigurationError,
    DecompressionFailure,
    DimensionMismatch,
    DocumentNotFound,
    VectorEngineError,
)
from vector_engine.index import HierarchicalIndex
from vector_engine.models import (
    BatchItemResult,
    BuildRecord,
    Document,
    IndexStats,
    RankedResult,
    SearchRequest,
    SearchResult,
    StorageRecord,
)
from vector_engine.ranking import Ranker, RerankingContext
from vector_engine.similarity import DimensionPolicy, SimilarityEngine
from vector_engine.storage import StorageManager
from vector_engine.thresholds import ThresholdCalibrator, ThresholdMethod


class VectorSearchEngine:
    """Embedded vector search over stored documents.

    Args:
        config: Engine configuration
        storage: Document storage
        index: Hierarchical index (its metric should match ``similarity``)
        similarity: Exact scorer used to re-rank index candidates
        embedder: Optional embedding client for text queries and inserts
        state_dir: Directory for the index snapshot and build record (None keeps
            them in memory only)
        executor: Worker pool closed by ``close`` when the engine owns it
    """

    def __init__(
        self,
        config: VectorSearchConfig,
        storage: StorageManager,
        index: HierarchicalIndex,
        similarity: SimilarityEngine,
        *,
        embedder: EmbeddingClient | None = None,
        state_dir: Path | None = None,
        executor: Executor | None = None,
    ):
        self.config = config
        self.storage = storage
        self.index = index
        self.similarity = similarity
        self.embedder = embedder
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self.ranker = Ranker()
        self.calibrator = ThresholdCalibrator(config.thresholds)
        self._executor = executor
        self._config_fingerprint = compute_config_fingerprint(config)
        self._build_record: BuildRecord | None = None
        self._stale = True
        self._generation = 0
        self._unreadable: set[str] = set()
        self._rebuild_lock = asyncio.Lock()
        self._restore_index()

    @classmethod
    def from_config(
        cls, config: VectorSearchConfig, embedder: EmbeddingClient | None = None
    ) -> VectorSearchEngine:
        """Wire storage, index and scorer from configuration.

        The engine owns the worker pool it creates here.
        """
        executor = ThreadPoolExecutor(
            max_workers=config.storage.max_workers, thread_name_prefix="vector-engine"
        )
        dimension = config.embedding.dimensions
        metric = config.similarity.build_metric()
        storage = StorageManager.from_config(config.storage, config.codec, dimension, executor)
        index = HierarchicalIndex(dimension, config.index, metric)
        similarity = SimilarityEngine.from_config(config.similarity, executor)
        state_dir = None if config.storage.in_memory else Path(config.storage.root)
        return cls(
            config,
            storage,
            index,
            similarity,
            embedder=embedder,
            state_dir=state_dir,
            executor=executor,
        )

    async def close(self) -> None:
        """Release the storage pool and the engine's executor."""
        await asyncio.to_thread(self.storage.close)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # Index state

    def _index_path(self) -> Path | None:
        return self.state_dir / INDEX_FILE if self.state_dir else None

    def _record_path(self) -> Path | None:
        return self.state_dir / BUILD_RECORD_FILE if self.state_dir else None

    def _documents_fingerprint(self) -> str:
        return compute_documents_fingerprint(self.storage.records())

    def _restore_index(self) -> None:
        """Reuse the persisted tree when it still matches config and documents."""
        record_path, index_path = self._record_path(), self._index_path()
        if record_path is None or index_path is None:
            return
        record = load_build_record(record_path)
        if record is None:
            return

        self._build_record = record
        plan = plan_rebuild(record, self._config_fingerprint, self._documents_fingerprint())
        if plan["action"] != "skip":
            logger.info(f"Persisted index is outdated ({plan['reason']}); will rebuild")
            return

        if record.document_count:
            try:
                self.index.load(index_path)
            except (OSError, ValueError, VectorEngineError) as e:
                logger.warning(f"Could not load index snapshot {index_path}: {e}")
                return
        self._stale = False

    def _mark_stale(self) -> None:
        self._generation += 1
        self._stale = True

    def _retrieve_intact(self, document_id: str) -> Document | None:
        """Retrieve a document, skipping it (and remembering it) if its package is unreadable."""
        try:
            document = self.storage.retrieve(document_id)
        except (ChecksumMismatch, DecompressionFailure, DocumentNotFound) as e:
            logger.error(f"Skipping unreadable document {document_id!r}: {e}")
            self._unreadable.add(document_id)
            return None
        self._unreadable.discard(document_id)
        return document

    def _collect_vectors(self) -> list[tuple[str, list[float]]]:
        vectors = []
        for document_id in self.storage.list_ids():
            document = self._retrieve_intact(document_id)
            if document is not None:
                vectors.append((document.id, document.embedding))
        return vectors

    def _persist_build(self, record: BuildRecord) -> None:
        record_path, index_path = self._record_path(), self._index_path()
        if record_path is None or index_path is None:
            return
        if self.index.is_built:
            self.index.save(index_path)
        else:
            index_path.unlink(missing_ok=True)
        save_build_record(record_path, record)

    async def rebuild_index(
        self, force: bool = False, cancel: CancellationToken | None = None
    ) -> RebuildDecision:
        """Rebuild the tree if the stored documents or configuration changed.

        Args:
            force: Rebuild even if the last build is up to date
            cancel: Token checked while the tree is built

        Returns:
            The rebuild plan that was applied

        Raises:
            OperationCancelled: If ``cancel`` fires; the previous tree stays active
        """
        async with self._rebuild_lock:
            # Mutations that land while the build runs keep the index stale
            generation = self._generation
            documents_fingerprint = await asyncio.to_thread(self._documents_fingerprint)
            record = self._build_record
            plan = plan_rebuild(
                record, self._config_fingerprint, documents_fingerprint, force=force
            )
            if plan["action"] == "skip" and record is not None and record.document_count:
                if not self.index.is_built:
                    # Recorded build whose snapshot could not be loaded
                    plan = plan_rebuild(None, self._config_fingerprint, documents_fingerprint)
            if plan["action"] == "skip":
                self._stale = self._generation != generation
                return plan

            vectors = await asyncio.to_thread(self._collect_vectors)
            await asyncio.to_thread(self.index.build, vectors, cancel)
            new_record = build_record(self._config_fingerprint, documents_fingerprint, len(vectors))
            await asyncio.to_thread(self._persist_build, new_record)
            self._build_record = new_record
            self._stale = self._generation != generation

        logger.info(f"Index rebuilt ({plan['reason']}): {len(vectors)} documents")
        return plan

    # Mutations

    async def insert(self, document: Document) -> StorageRecord:
        """Store a document (overwriting any previous version)."""
        record = await asyncio.to_thread(self.storage.store, document)
        self._unreadable.discard(document.id)
        self._mark_stale()
        return record

    async def insert_batch(
        self, documents: Sequence[Document], cancel: CancellationToken | None = None
    ) -> list[BatchItemResult]:
        """Store documents with per-item outcomes, then rebuild the index."""
        results = await asyncio.to_thread(self.storage.store_batch, documents, cancel)
        self._unreadable.difference_update(r.id for r in results if r.ok)
        self._mark_stale()
        if any(r.ok for r in results) and not (cancel is not None and cancel.cancelled):
            await self.rebuild_index(cancel=cancel)
        return results

    async def insert_text(
        self,
        document_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        collection: str = "default",
        source: str | None = None,
    ) -> StorageRecord:
        """Embed ``content`` with the configured client and store it."""
        embedding = await self._embed(content)
        document = Document(
            id=document_id,
            content=content,
            embedding=embedding,
            metadata=metadata or {},
            collection=collection,
            source=source,
        )
        return await self.insert(document)

    async def update(self, document_id: str, document: Document) -> StorageRecord:
        """Replace an existing document.

        Raises:
            DocumentNotFound: If ``document_id`` is not stored
            ValueError: If ``document.id`` differs from ``document_id``
        """
        if document.id != document_id:
            raise ValueError(f"Document id {document.id!r} does not match {document_id!r}")
        if self.storage.get_record(document_id) is None:
            raise DocumentNotFound(document_id)
        return await self.insert(document)

    async def delete(self, document_id: str) -> None:
        """Delete a document.

        Raises:
            DocumentNotFound: If ``document_id`` is not stored
        """
        await asyncio.to_thread(self.storage.delete, document_id)
        self._unreadable.discard(document_id)
        self._mark_stale()

    async def delete_collection(self, collection: str) -> int:
        """Delete every document in ``collection``; returns how many were removed."""
        ids = self.storage.list_ids(collection)
        for document_id in ids:
            await asyncio.to_thread(self.storage.delete, document_id)
            self._unreadable.discard(document_id)
        if ids:
            self._mark_stale()
        logger.info(f"Deleted collection {collection!r} ({len(ids)} documents)")
        return len(ids)

    # Queries

    async def get(self, document_id: str) -> Document | None:
        return await asyncio.to_thread(self.storage.retrieve, document_id)

    async def count(self, collection: str | None = None) -> int:
        return len(self.storage.list_ids(collection))

    def _candidate_ids(self, request: SearchRequest) -> list[str]:
        dimension = self.index.dimension
        if dimension is not None and len(request.vector) != dimension:
            if self.similarity.policy is DimensionPolicy.STRICT:
                raise DimensionMismatch(dimension, len(request.vector))
            logger.warning(
                f"Query has {len(request.vector)} dimensions, index has {dimension}; "
                "falling back to a linear scan"
            )
            return self.storage.list_ids(request.collection)

        if not request.use_index or not self.index.is_built:
            return self.storage.list_ids(request.collection)

        k = request.limit * self.config.index.candidate_multiplier
        return self.index.search(request.vector, k, request.pruning_factor)

    def _fetch(self, ids: Sequence[str]) -> list[Document]:
        documents = []
        for document_id in ids:
            document = self._retrieve_intact(document_id)
            if document is not None:
                documents.append(document)
        return documents

    async def search(self, request: SearchRequest) -> list[SearchResult]:
        """Return the best matching documents, best first.

        Candidates come from the index (over-fetched by ``candidate_multiplier``)
        or from a linear scan when no tree is built. Each candidate is re-scored
        with the configured metric; results below ``min_score`` or outside
        ``collection`` are dropped.
        """
        if self._stale:
            await self.rebuild_index()

        ids = await asyncio.to_thread(self._candidate_ids, request)
        documents = await asyncio.to_thread(self._fetch, ids)
        if request.collection is not None:
            documents = [d for d in documents if d.collection == request.collection]
        logger.debug(f"Search: {len(ids)} candidates, {len(documents)} retrieved")

        scores = await asyncio.to_thread(
            self.similarity.batch_scores, request.vector, [d.embedding for d in documents]
        )
        results = []
        for scored in scores:
            if scored.normalized_score < request.min_score:
                continue
            results.append(
                SearchResult(
                    document=documents[scored.index],
                    score=scored.normalized_score,
                    raw_score=scored.score,
                    rank=len(results) + 1,
                )
            )
            if len(results) == request.limit:
                break
        return results

    async def _embed(self, text: str) -> list[float]:
        if self.embedder is None:
            raise ConfigurationError("No embedding client configured for text operations")
        return await self.embedder.embed_single(text)

    async def search_text(
        self,
        query: str,
        limit: int = 10,
        collection: str | None = None,
        rerank: bool = False,
    ) -> list[RankedResult]:
        """Embed ``query``, search, then rank with literal and term boosts."""
        embedding = await self._embed(query)
        hits = await self.search(
            SearchRequest(vector=embedding, limit=limit, collection=collection)
        )
        ranked = self.rank(query, embedding, [hit.document for hit in hits])
        if rerank:
            ranked = self.ranker.rerank(ranked, self.config.ranking.reranking_context())
        return ranked

    def rank(
        self,
        query: str,
        query_embedding: Sequence[float],
        candidates: Sequence[Document],
        top_k: int | None = None,
    ) -> list[RankedResult]:
        """Rank candidates with the engine metric."""
        return self.ranker.rank(
            query, query_embedding, candidates, metric=self.similarity.metric, top_k=top_k
        )

    def rerank(
        self, results: Sequence[RankedResult], context: RerankingContext | None = None
    ) -> list[RankedResult]:
        """Apply recency, source and popularity boosts plus the diversity filter."""
        return self.ranker.rerank(results, context or self.config.ranking.reranking_context())

    def calibrate_threshold(
        self, similarities: Sequence[float], method: ThresholdMethod | None = None
    ) -> float:
        """Relevance cutoff for a distribution of normalized scores."""
        return self.calibrator.calculate_dynamic_threshold(similarities, method)

    # Introspection

    async def stats(self) -> IndexStats:
        """Get engine statistics."""
        records = self.storage.records()
        storage_stats = await asyncio.to_thread(self.storage.get_statistics)
        return IndexStats(
            total_documents=storage_stats.total_documents,
            total_collections=len({r.collection for r in records}),
            node_count=self.index.node_count(),
            leaf_count=self.index.leaf_count(),
            depth=self.index.depth(),
            last_built=self.index.built_at,
            storage_size_mb=storage_stats.total_size_mb,
            unreadable_documents=len(self._unreadable),
        )

    def _root_writable(self) -> bool:
        if self.state_dir is None:
            return True
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=self.state_dir, prefix=".health-"):
                pass
        except OSError as e:
            logger.warning(f"Storage root {self.state_dir} is not writable: {e}")
            return False
        return True

    async def health_check(self) -> bool:
        """Check the storage root is writable, the metadata cache loads and no
        stored document has been found unreadable since it was last written.

        Returns:
            True if healthy, False otherwise
        """
        writable = await asyncio.to_thread(self._root_writable)
        cache_ok = await asyncio.to_thread(self.storage.verify_cache)
        if self._unreadable:
            logger.warning(f"{len(self._unreadable)} stored documents are unreadable")
        return writable and cache_ok and not self._unreadable
