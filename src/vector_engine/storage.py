"""Durable per-document storage with compressed embeddings.

Each document is serialized as a JSON package (content, metadata and the
codec-compressed embedding) and written through a ``Store``. A metadata cache
(id -> ``StorageRecord``) is kept in memory and persisted as a Parquet
snapshot, guarded by a file lock so concurrent processes never interleave
writes.

Concurrency:
    - Mutations (store/delete/cache rewrite) run under the write side of a
      ``ReadWriteLock``; ``retrieve`` and statistics share the read side.
    - ``store_batch`` compresses and writes chunks of documents on a bounded
      executor and reports a per-item outcome instead of aborting.
"""

from __future__ import annotations

import base64
import os
import zlib
from collections.abc import Iterator, Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from vector_engine.codec import FLOAT32_SIZE, CodecConfig, VectorCodec
from vector_engine.concurrency import CancellationToken, ReadWriteLock
from vector_engine.errors import (
    ChecksumMismatch,
    DecompressionFailure,
    DimensionMismatch,
    DocumentNotFound,
    OperationCancelled,
    StorageFull,
    VectorEngineError,
)
from vector_engine.models import BatchItemResult, Document, StorageRecord, StorageStatistics
from vector_engine.stores import FileStore, InMemoryStore, Store

CACHE_FILE_NAME = "metadata.parquet"

CACHE_COLUMNS = [
    "id",
    "dimension",
    "compressed_size",
    "checksum",
    "compression_ratio",
    "created_at",
    "file_size",
    "collection",
]


class StorageConfig(BaseModel):
    """Storage configuration.

    Attributes:
        root: Directory for document packages and the metadata snapshot
        in_memory: Keep everything in memory (no files, no snapshot)
        batch_size: Documents per concurrently stored chunk in ``store_batch``
        max_workers: Size of the worker pool used for batch stores
        max_bytes: Optional quota on the total size of stored packages
    """

    root: str = "data/vector_store"
    in_memory: bool = False
    batch_size: int = Field(default=10, ge=1, le=1000)
    max_workers: int = Field(default=4, ge=1, le=64)
    max_bytes: int | None = Field(default=None, ge=1)


class DocumentPackage(BaseModel):
    """On-disk representation of one document (``<id>.vdoc``)."""

    id: str
    content: str
    embedding: str  # base64 of codec output
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None
    collection: str
    created_at: datetime


def calculate_checksum(data: bytes) -> str:
    """CRC32 of ``data`` as 8 upper-case hex digits."""
    return f"{zlib.crc32(data) & 0xFFFFFFFF:08X}"


class StorageManager:
    """Stores, retrieves and deletes documents through a ``Store``.

    Args:
        store: Byte store for document packages
        codec: Codec used to compress embeddings
        cache_path: Parquet snapshot of the metadata cache (None disables persistence)
        executor: Worker pool for batch stores; one is created if omitted
        batch_size: Chunk size for ``store_batch``
        max_workers: Pool size when the manager creates its own executor
        max_bytes: Optional storage quota in bytes
    """

    def __init__(
        self,
        store: Store,
        codec: VectorCodec,
        *,
        cache_path: Path | None = None,
        executor: Executor | None = None,
        batch_size: int = 10,
        max_workers: int = 4,
        max_bytes: int | None = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.backend = store
        self.codec = codec
        self.cache_path = Path(cache_path) if cache_path is not None else None
        self.batch_size = batch_size
        self.max_bytes = max_bytes
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vector-storage"
        )
        self._lock = ReadWriteLock()
        self._cache: dict[str, StorageRecord] = {}
        self._load_metadata_cache()

    @classmethod
    def from_config(
        cls,
        config: StorageConfig,
        codec_config: CodecConfig | None = None,
        dimension: int | None = None,
        executor: Executor | None = None,
    ) -> StorageManager:
        """Build a manager backed by a ``FileStore`` (or ``InMemoryStore``)."""
        codec = VectorCodec(dimension, codec_config)
        if config.in_memory:
            store: Store = InMemoryStore()
            cache_path = None
        else:
            root = Path(config.root)
            store = FileStore(root)
            cache_path = root / CACHE_FILE_NAME
        return cls(
            store,
            codec,
            cache_path=cache_path,
            executor=executor,
            batch_size=config.batch_size,
            max_workers=config.max_workers,
            max_bytes=config.max_bytes,
        )

    def close(self) -> None:
        """Shut down the worker pool if this manager created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # Storage operations

    def _encode(self, document: Document) -> tuple[bytes, StorageRecord]:
        compressed = self.codec.compress(document.embedding)
        ratio = self.codec.compression_ratio(document.dimension, compressed)
        package = DocumentPackage(
            id=document.id,
            content=document.content,
            embedding=base64.b64encode(compressed).decode("ascii"),
            metadata=document.metadata,
            source=document.source,
            collection=document.collection,
            created_at=document.created_at,
        )
        data = package.model_dump_json().encode("utf-8")
        record = StorageRecord(
            id=document.id,
            dimension=document.dimension,
            compressed_size=len(compressed),
            checksum=calculate_checksum(data),
            compression_ratio=ratio,
            created_at=document.created_at,
            file_size=len(data),
            collection=document.collection,
        )
        return data, record

    def _check_quota(self, record: StorageRecord) -> None:
        if self.max_bytes is None:
            return
        existing = self._cache.get(record.id)
        total = sum(r.file_size for r in self._cache.values())
        total += record.file_size - (existing.file_size if existing else 0)
        if total > self.max_bytes:
            raise StorageFull(
                f"Storing {record.id!r} would use {total} bytes (quota {self.max_bytes})",
                context={"id": record.id, "quota": self.max_bytes},
            )

    def _expected_dimension(self, document_id: str) -> int | None:
        """Dimension a new embedding must have. Caller must hold the lock.

        The codec dimension wins when configured; otherwise the first stored
        document pins it (replacing the only stored document may change it).
        """
        if self.codec.dimension is not None:
            return self.codec.dimension
        for record in self._cache.values():
            if record.id != document_id:
                return record.dimension
        return None

    def _store_one(self, document: Document, persist_cache: bool) -> StorageRecord:
        data, record = self._encode(document)
        with self._lock.write_lock():
            expected = self._expected_dimension(document.id)
            if expected is not None and record.dimension != expected:
                raise DimensionMismatch(expected, record.dimension, context={"id": document.id})
            self._check_quota(record)
            self.backend.put(document.id, data)
            self._cache[document.id] = record
            if persist_cache:
                self._save_metadata_cache()
        return record

    def store(self, document: Document) -> StorageRecord:
        """Compress and persist one document, overwriting any previous version.

        Raises:
            DimensionMismatch: If the embedding does not match the codec dimension
                or the dimension of the documents already stored
            CompressionFailure: If the embedding cannot be encoded
            StorageFull: If the configured quota would be exceeded
        """
        record = self._store_one(document, persist_cache=True)
        logger.debug(
            f"Stored {document.id!r} ({record.file_size} bytes, "
            f"ratio {record.compression_ratio:.2f})"
        )
        return record

    def retrieve(self, document_id: str) -> Document | None:
        """Load a document, verifying its checksum.

        Returns:
            The document, or None if the id is not in the metadata cache

        Raises:
            ChecksumMismatch: If the package bytes do not match the recorded checksum
            DecompressionFailure: If the package or embedding cannot be decoded
            DocumentNotFound: If the cache knows the id but the package is missing
        """
        with self._lock.read_lock():
            record = self._cache.get(document_id)
            if record is None:
                return None
            data = self.backend.get(document_id)

        if data is None:
            raise DocumentNotFound(document_id, context={"reason": "package missing"})

        checksum = calculate_checksum(data)
        if checksum != record.checksum:
            logger.error(
                f"Checksum mismatch for {document_id!r}: "
                f"expected {record.checksum}, got {checksum}"
            )
            raise ChecksumMismatch(
                f"Data integrity check failed for {document_id!r}",
                context={"id": document_id, "expected": record.checksum, "actual": checksum},
            )

        try:
            package = DocumentPackage.model_validate_json(data)
            compressed = base64.b64decode(package.embedding, validate=True)
        except (ValidationError, ValueError) as e:
            raise DecompressionFailure(
                f"Cannot decode package for {document_id!r}: {e}", context={"id": document_id}
            ) from e

        embedding = self.codec.decompress(compressed)
        return Document(
            id=package.id,
            content=package.content,
            embedding=embedding.tolist(),
            metadata=package.metadata,
            source=package.source,
            collection=package.collection,
            created_at=package.created_at,
        )

    def delete(self, document_id: str) -> None:
        """Remove a document and its cache entry.

        Raises:
            DocumentNotFound: If the id is unknown
        """
        with self._lock.write_lock():
            existed = self.backend.delete(document_id)
            cached = self._cache.pop(document_id, None) is not None
            if not existed and not cached:
                raise DocumentNotFound(document_id)
            self._save_metadata_cache()
        logger.debug(f"Deleted {document_id!r}")

    def store_batch(
        self, documents: Sequence[Document], cancel: CancellationToken | None = None
    ) -> list[BatchItemResult]:
        """Store documents in fixed-size chunks, each chunk concurrently.

        A failure for one document does not stop the others; every input gets a
        ``BatchItemResult`` in input order. Cancellation is checked between
        chunks; documents not reached are reported with an ``OperationCancelled``
        error.
        """
        results: list[BatchItemResult] = []
        try:
            for start in range(0, len(documents), self.batch_size):
                chunk = documents[start : start + self.batch_size]
                if cancel is not None and cancel.cancelled:
                    error = str(OperationCancelled())
                    results.extend(
                        BatchItemResult(id=doc.id, error=error) for doc in documents[start:]
                    )
                    logger.warning(
                        f"Batch store cancelled after {start}/{len(documents)} documents"
                    )
                    break

                futures = [self._executor.submit(self._store_one, doc, False) for doc in chunk]
                for doc, future in zip(chunk, futures, strict=True):
                    try:
                        results.append(BatchItemResult(id=doc.id, record=future.result()))
                    except Exception as e:
                        logger.warning(f"Failed to store {doc.id!r} in batch: {e}")
                        results.append(BatchItemResult(id=doc.id, error=str(e)))
        finally:
            with self._lock.write_lock():
                self._save_metadata_cache()

        stored = sum(1 for r in results if r.ok)
        logger.info(f"Batch stored {stored}/{len(documents)} documents")
        return results

    # Queries over the metadata cache

    def get_record(self, document_id: str) -> StorageRecord | None:
        with self._lock.read_lock():
            return self._cache.get(document_id)

    def list_ids(self, collection: str | None = None) -> list[str]:
        """Ids of stored documents, optionally restricted to one collection."""
        with self._lock.read_lock():
            return sorted(
                r.id for r in self._cache.values() if collection is None or r.collection == collection
            )

    def records(self) -> list[StorageRecord]:
        with self._lock.read_lock():
            return list(self._cache.values())

    def iter_documents(self, collection: str | None = None) -> Iterator[Document]:
        """Yield every stored document (retrieving each package)."""
        for document_id in self.list_ids(collection):
            document = self.retrieve(document_id)
            if document is not None:
                yield document

    def get_statistics(self) -> StorageStatistics:
        """Totals and averages over all cached records."""
        with self._lock.read_lock():
            records = list(self._cache.values())

        total_documents = len(records)
        total_bytes = sum(r.file_size for r in records)
        average_ratio = (
            sum(r.compression_ratio for r in records) / total_documents if total_documents else 0.0
        )
        optimal_bytes = sum(r.dimension * FLOAT32_SIZE for r in records)
        efficiency = optimal_bytes / total_bytes if total_bytes else 0.0
        return StorageStatistics(
            total_documents=total_documents,
            total_bytes=total_bytes,
            average_compression_ratio=average_ratio,
            storage_efficiency=efficiency,
        )

    # Metadata cache snapshot

    def verify_cache(self) -> bool:
        """Check that the persisted snapshot can be read back."""
        if self.cache_path is None:
            return True
        if not self.cache_path.exists():
            return not self._cache

        import pandas as pd

        try:
            pd.read_parquet(self.cache_path, engine="pyarrow", columns=["id"])
        except (OSError, ValueError) as e:
            logger.warning(f"Metadata cache {self.cache_path} failed verification: {e}")
            return False
        return True

    def _save_metadata_cache(self) -> None:
        """Write the cache to Parquet. Caller must hold the write lock."""
        if self.cache_path is None:
            return

        import pandas as pd
        from filelock import FileLock

        lock_path = self.cache_path.with_name(f".{self.cache_path.name}.lock")
        tmp_path = self.cache_path.with_name(f".{self.cache_path.name}.tmp")

        with FileLock(lock_path, timeout=30):
            if not self._cache:
                df = pd.DataFrame(columns=CACHE_COLUMNS)
            else:
                df = pd.DataFrame([r.model_dump() for r in self._cache.values()])
            df.to_parquet(tmp_path, engine="pyarrow", compression="snappy", index=False)
            os.replace(tmp_path, self.cache_path)

    def _load_metadata_cache(self) -> None:
        if self.cache_path is None or not self.cache_path.exists():
            return

        import pandas as pd

        try:
            df = pd.read_parquet(self.cache_path, engine="pyarrow")
            cache = {}
            for _, row in df.iterrows():
                record = StorageRecord(
                    id=str(row["id"]),
                    dimension=int(row["dimension"]),
                    compressed_size=int(row["compressed_size"]),
                    checksum=str(row["checksum"]),
                    compression_ratio=float(row["compression_ratio"]),
                    created_at=pd.Timestamp(row["created_at"]).to_pydatetime(),
                    file_size=int(row["file_size"]),
                    collection=str(row["collection"]),
                )
                cache[record.id] = record
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Metadata cache {self.cache_path} unreadable ({e}); rebuilding from store")
            self._cache = self._rebuild_cache()
            return

        self._cache = cache
        logger.info(f"Loaded metadata cache with {len(cache)} records from {self.cache_path}")

    def _rebuild_cache(self) -> dict[str, StorageRecord]:
        """Recreate cache entries by reading every package in the store."""
        cache: dict[str, StorageRecord] = {}
        for key in self.backend.list_keys():
            data = self.backend.get(key)
            if data is None:
                continue
            try:
                package = DocumentPackage.model_validate_json(data)
                compressed = base64.b64decode(package.embedding, validate=True)
                dimension = self.codec.decompress(compressed).shape[0]
            except (ValidationError, ValueError, VectorEngineError) as e:
                logger.warning(f"Skipping unreadable package {key!r}: {e}")
                continue
            cache[key] = StorageRecord(
                id=package.id,
                dimension=dimension,
                compressed_size=len(compressed),
                checksum=calculate_checksum(data),
                compression_ratio=(dimension * FLOAT32_SIZE) / max(len(compressed), 1),
                created_at=package.created_at,
                file_size=len(data),
                collection=package.collection,
            )
        return cache
