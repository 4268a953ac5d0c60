"""Integration tests for StorageManager on a real directory.

Tests the complete store/retrieve cycle, integrity checks, the Parquet
metadata snapshot and batch stores. These tests create real files in a
temporary directory.

Run with: pytest tests/test_vector_engine/integration/test_storage_manager.py -v
"""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from vector_engine.codec import CodecConfig, VectorCodec
from vector_engine.concurrency import CancellationToken
from vector_engine.errors import (
    ChecksumMismatch,
    CompressionFailure,
    DimensionMismatch,
    DocumentNotFound,
    OperationCancelled,
    StorageFull,
)
from vector_engine.storage import CACHE_FILE_NAME, StorageConfig, StorageManager, calculate_checksum
from vector_engine.stores import FileStore


@pytest.fixture
def manager(tmp_path: Path):
    manager = StorageManager.from_config(StorageConfig(root=str(tmp_path)), dimension=16)
    yield manager
    manager.close()


def embedding(seed: int, dim: int = 16) -> list[float]:
    return np.random.default_rng(seed).normal(size=dim).tolist()


class TestStoreRetrieve:
    """Tests for the single-document cycle."""

    def test_round_trip(self, manager, make_doc):
        """Content, metadata and embedding survive storage."""
        doc = make_doc(
            "doc-1",
            embedding(1),
            content="protein aggregation",
            metadata={"view_count": 12, "tags": ["a", "b"]},
            source="official",
            collection="papers",
        )
        record = manager.store(doc)
        restored = manager.retrieve("doc-1")

        assert restored is not None
        assert restored.content == doc.content
        assert restored.metadata == doc.metadata
        assert restored.source == "official"
        assert restored.collection == "papers"
        assert restored.created_at == doc.created_at
        step = (max(doc.embedding) - min(doc.embedding)) / 255
        np.testing.assert_allclose(restored.embedding, doc.embedding, atol=step / 2 + 1e-5)
        assert record.dimension == 16
        assert len(record.checksum) == 8

    def test_package_checksum_matches_record(self, manager, make_doc, tmp_path):
        """The recorded checksum is the CRC32 of the package file."""
        record = manager.store(make_doc("doc-1", embedding(1)))
        data = FileStore(tmp_path).path_for("doc-1").read_bytes()

        assert calculate_checksum(data) == record.checksum
        assert record.file_size == len(data)

    def test_unknown_id_returns_none(self, manager):
        """Retrieving an id that was never stored yields None."""
        assert manager.retrieve("missing") is None

    def test_overwrite_replaces(self, manager, make_doc):
        """Storing the same id again replaces the document."""
        manager.store(make_doc("doc-1", embedding(1), content="old"))
        manager.store(make_doc("doc-1", embedding(2), content="new"))

        assert manager.retrieve("doc-1").content == "new"
        assert manager.list_ids() == ["doc-1"]

    def test_dimension_enforced(self, manager, make_doc):
        """Embeddings must match the configured dimension."""
        with pytest.raises(DimensionMismatch):
            manager.store(make_doc("short", [1.0, 2.0]))

    def test_first_document_pins_dimension(self, make_doc):
        """Without a configured dimension, later stores must match the stored ones."""
        manager = StorageManager.from_config(StorageConfig(in_memory=True))
        try:
            manager.store(make_doc("a", embedding(1, 4)))
            with pytest.raises(DimensionMismatch) as exc_info:
                manager.store(make_doc("z", [1.0, 0.0, 0.0]))

            assert exc_info.value.context["id"] == "z"
            assert manager.list_ids() == ["a"]

            manager.store(make_doc("a", [1.0, 0.0, 0.0]))
            assert len(manager.retrieve("a").embedding) == 3
        finally:
            manager.close()

    def test_delete(self, manager, make_doc):
        """Deleted documents disappear; deleting twice raises."""
        manager.store(make_doc("doc-1", embedding(1)))
        manager.delete("doc-1")

        assert manager.retrieve("doc-1") is None
        with pytest.raises(DocumentNotFound):
            manager.delete("doc-1")

    def test_list_ids_by_collection(self, manager, make_doc):
        """Ids can be filtered by collection."""
        manager.store(make_doc("a", embedding(1), collection="x"))
        manager.store(make_doc("b", embedding(2), collection="y"))

        assert manager.list_ids() == ["a", "b"]
        assert manager.list_ids("y") == ["b"]
        assert [d.id for d in manager.iter_documents("x")] == ["a"]


class TestIntegrity:
    """Tests for corruption detection."""

    def test_corrupted_package_raises_checksum_mismatch(self, manager, make_doc, tmp_path):
        """Flipping a byte on disk is detected on read."""
        manager.store(make_doc("doc-1", embedding(1)))
        path = FileStore(tmp_path).path_for("doc-1")
        data = bytearray(path.read_bytes())
        data[len(data) // 2] ^= 0xFF
        path.write_bytes(bytes(data))

        with pytest.raises(ChecksumMismatch) as exc_info:
            manager.retrieve("doc-1")
        assert exc_info.value.context["id"] == "doc-1"

    def test_missing_package_raises(self, manager, make_doc, tmp_path):
        """A cached id whose file vanished is reported."""
        manager.store(make_doc("doc-1", embedding(1)))
        FileStore(tmp_path).path_for("doc-1").unlink()

        with pytest.raises(DocumentNotFound):
            manager.retrieve("doc-1")


class TestMetadataCache:
    """Tests for the Parquet snapshot."""

    def test_cache_written_as_parquet(self, manager, make_doc, tmp_path):
        """Every store updates the snapshot."""
        manager.store(make_doc("doc-1", embedding(1)))
        manager.store(make_doc("doc-2", embedding(2)))

        df = pd.read_parquet(tmp_path / CACHE_FILE_NAME)
        assert sorted(df["id"]) == ["doc-1", "doc-2"]
        assert manager.verify_cache()

    def test_cache_reloaded_on_startup(self, tmp_path, make_doc):
        """A new manager sees documents stored by a previous one."""
        config = StorageConfig(root=str(tmp_path))
        first = StorageManager.from_config(config, dimension=16)
        record = first.store(make_doc("doc-1", embedding(1)))
        first.close()

        second = StorageManager.from_config(config, dimension=16)
        try:
            assert second.get_record("doc-1") == record
            assert second.retrieve("doc-1") is not None
        finally:
            second.close()

    def test_unreadable_cache_rebuilt_from_packages(self, tmp_path, make_doc):
        """A corrupt snapshot is rebuilt by scanning the store."""
        config = StorageConfig(root=str(tmp_path))
        first = StorageManager.from_config(config, dimension=16)
        record = first.store(make_doc("doc-1", embedding(1), collection="c"))
        first.close()
        (tmp_path / CACHE_FILE_NAME).write_bytes(b"garbage")

        second = StorageManager.from_config(config, dimension=16)
        try:
            rebuilt = second.get_record("doc-1")
            assert rebuilt.checksum == record.checksum
            assert rebuilt.collection == "c"
            assert second.retrieve("doc-1") is not None
        finally:
            second.close()

    def test_statistics(self, manager, make_doc):
        """Statistics aggregate sizes and compression ratios."""
        for i in range(3):
            manager.store(make_doc(f"doc-{i}", embedding(i)))
        stats = manager.get_statistics()

        assert stats.total_documents == 3
        assert stats.total_bytes == sum(r.file_size for r in manager.records())
        assert stats.average_compression_ratio > 0
        assert stats.storage_efficiency == pytest.approx(3 * 16 * 4 / stats.total_bytes)


class TestBatchStore:
    """Tests for concurrent batch stores."""

    def test_partial_failure(self, manager, make_doc):
        """One bad document does not stop the rest."""
        docs = [make_doc(f"doc-{i}", embedding(i)) for i in range(25)]
        docs[7] = make_doc("bad", [1.0, 2.0])

        results = manager.store_batch(docs)

        assert [r.id for r in results] == [d.id for d in docs]
        assert sum(r.ok for r in results) == 24
        assert not results[7].ok
        assert "Expected 16 dimensions" in results[7].error
        assert len(manager.list_ids()) == 24

    def test_cancelled_batch_reports_unprocessed(self, manager, make_doc):
        """Documents not reached before cancellation carry an error."""
        token = CancellationToken()
        token.cancel()
        docs = [make_doc(f"doc-{i}", embedding(i)) for i in range(5)]

        results = manager.store_batch(docs, cancel=token)

        assert all(not r.ok for r in results)
        assert str(OperationCancelled()) in results[0].error
        assert manager.list_ids() == []

    def test_shared_executor(self, tmp_path, make_doc):
        """An injected pool is used and left running."""
        with ThreadPoolExecutor(max_workers=2) as pool:
            manager = StorageManager.from_config(
                StorageConfig(root=str(tmp_path), batch_size=3), executor=pool
            )
            results = manager.store_batch([make_doc(f"d{i}", embedding(i, 4)) for i in range(7)])
            manager.close()
            assert all(r.ok for r in results)
            assert pool.submit(lambda: 1).result() == 1


class TestConcurrentAccess:
    """Tests for stores and reads from several threads."""

    def test_concurrent_writers_and_readers(self, manager, make_doc, tmp_path):
        """Parallel stores all land in the cache and the snapshot."""
        docs = [make_doc(f"doc-{i:02d}", embedding(i)) for i in range(40)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(manager.store, docs))
            restored = list(pool.map(manager.retrieve, [d.id for d in docs]))

        assert all(doc is not None for doc in restored)
        df = pd.read_parquet(tmp_path / CACHE_FILE_NAME)
        assert sorted(df["id"]) == [d.id for d in docs]


class TestInMemoryAndQuota:
    """Tests for the in-memory backend and storage quota."""

    def test_in_memory_round_trip(self, make_doc):
        """In-memory storage writes no files but behaves the same."""
        manager = StorageManager.from_config(
            StorageConfig(in_memory=True), CodecConfig(quantization_bits=None)
        )
        try:
            doc = make_doc("doc-1", [0.5, -0.25, 1.0])
            manager.store(doc)
            assert manager.retrieve("doc-1").embedding == doc.embedding
            assert manager.backend.list_keys() == ["doc-1"]
        finally:
            manager.close()

    def test_quota_exceeded(self, make_doc):
        """Writes that would exceed max_bytes raise StorageFull."""
        manager = StorageManager.from_config(StorageConfig(in_memory=True, max_bytes=600))
        try:
            manager.store(make_doc("a", embedding(1)))
            with pytest.raises(StorageFull):
                for i in range(10):
                    manager.store(make_doc(f"more-{i}", embedding(i)))
            assert manager.get_statistics().total_bytes <= 600
        finally:
            manager.close()

    def test_non_finite_rejected_by_codec(self):
        """The codec refuses vectors the model layer would also reject."""
        with pytest.raises(CompressionFailure):
            VectorCodec().compress([float("nan")])
