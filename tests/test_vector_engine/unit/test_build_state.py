"""Unit tests for vector_engine.build_state functionality.

Covers:
- Stable config and documents fingerprints
- BuildRecord persistence and loading
- Rebuild planning
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from vector_engine.build_state import (
    build_record,
    compute_config_fingerprint,
    compute_documents_fingerprint,
    load_build_record,
    plan_rebuild,
    save_build_record,
    should_rebuild,
)
from vector_engine.config import VectorSearchConfig
from vector_engine.models import BuildRecord, StorageRecord


def make_record(doc_id: str, checksum: str = "0000ABCD") -> StorageRecord:
    return StorageRecord(
        id=doc_id,
        dimension=4,
        compressed_size=20,
        checksum=checksum,
        compression_ratio=0.8,
        created_at=datetime(2025, 1, 1, tzinfo=UTC),
        file_size=200,
    )


class TestFingerprints:
    """Tests for fingerprint stability and sensitivity."""

    def test_config_fingerprint_is_stable(self) -> None:
        """Equal configs hash equally."""
        assert compute_config_fingerprint(VectorSearchConfig()) == compute_config_fingerprint(
            VectorSearchConfig()
        )

    def test_config_fingerprint_ignores_unrelated_fields(self) -> None:
        """Storage location and ranking do not affect the tree."""
        base = compute_config_fingerprint(VectorSearchConfig())
        moved = VectorSearchConfig(
            storage={"root": "/elsewhere", "batch_size": 50},
            ranking={"diversity_threshold": 0.5},
        )
        assert compute_config_fingerprint(moved) == base

    def test_config_fingerprint_tracks_index_shape(self) -> None:
        """Changing leaf capacity changes the fingerprint."""
        base = compute_config_fingerprint(VectorSearchConfig())
        changed = VectorSearchConfig(index={"max_points_per_node": 10})
        assert compute_config_fingerprint(changed) != base

    def test_documents_fingerprint_order_independent(self) -> None:
        """The same set of documents hashes equally in any order."""
        a, b = make_record("a"), make_record("b")
        assert compute_documents_fingerprint([a, b]) == compute_documents_fingerprint([b, a])

    def test_documents_fingerprint_tracks_content(self) -> None:
        """A changed checksum changes the fingerprint."""
        before = compute_documents_fingerprint([make_record("a")])
        after = compute_documents_fingerprint([make_record("a", checksum="FFFF0000")])
        assert before != after


class TestBuildRecordPersistence:
    """Tests for saving and loading build records."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """A saved record loads back unchanged."""
        path = tmp_path / "state" / ".last_indexed"
        record = build_record("cfg", "docs", 3)

        save_build_record(path, record)

        assert load_build_record(path) == record

    def test_missing_file(self, tmp_path: Path) -> None:
        """No file means no record."""
        assert load_build_record(tmp_path / "absent") is None

    def test_corrupt_file(self, tmp_path: Path) -> None:
        """An unreadable record is ignored."""
        path = tmp_path / ".last_indexed"
        path.write_text("{not json")
        assert load_build_record(path) is None


class TestPlanRebuild:
    """Tests for rebuild decisions."""

    RECORD = BuildRecord(
        built_at=datetime(2025, 1, 1, tzinfo=UTC),
        config_fingerprint="cfg",
        documents_fingerprint="docs",
        document_count=2,
    )

    def test_force(self) -> None:
        """Force always rebuilds."""
        plan = plan_rebuild(self.RECORD, "cfg", "docs", force=True)
        assert plan["action"] == "rebuild"
        assert plan["reason"] == "force"
        assert plan["built_at"] == "2025-01-01T00:00:00+00:00"

    def test_no_record(self) -> None:
        """Without a record the index must be built."""
        plan = plan_rebuild(None, "cfg", "docs")
        assert plan == {"action": "rebuild", "reason": "no_record", "built_at": None}

    def test_config_changed(self) -> None:
        """A config change is reported before a documents change."""
        plan = plan_rebuild(self.RECORD, "other", "other")
        assert plan["reason"] == "config_changed"

    def test_documents_changed(self) -> None:
        """New or modified documents trigger a rebuild."""
        plan = plan_rebuild(self.RECORD, "cfg", "new-docs")
        assert plan["action"] == "rebuild"
        assert plan["reason"] == "documents_changed"

    def test_up_to_date(self) -> None:
        """Matching fingerprints skip the rebuild."""
        assert plan_rebuild(self.RECORD, "cfg", "docs")["action"] == "skip"
        assert not should_rebuild(self.RECORD, "cfg", "docs")
