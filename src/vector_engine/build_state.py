"""Build-state tracking for the hierarchical index.

Stores a compact record of the last successful index build next to the index
snapshot so the engine can decide to reuse the persisted tree or rebuild it.
A rebuild is planned when the index-relevant configuration changes or when
the set of stored documents (ids and package checksums) differs from the one
that was indexed.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict

from loguru import logger
from pydantic import ValidationError

from vector_engine.config import VectorSearchConfig
from vector_engine.models import BuildRecord, StorageRecord

BUILD_RECORD_FILE = ".last_indexed"
INDEX_FILE = "index.json"


def _index_subset(config: VectorSearchConfig) -> dict[str, Any]:
    """Deterministic subset of configuration that shapes the index tree."""
    return {
        "similarity": {
            "metric": config.similarity.metric.value,
            "scale": config.similarity.scale,
        },
        "codec": {
            "quantization_bits": config.codec.quantization_bits,
        },
        "embedding": {
            "version": config.embedding.version,
            "dimensions": config.embedding.dimensions,
        },
        "index": {
            "max_points_per_node": config.index.max_points_per_node,
            "max_branching": config.index.max_branching,
            "kmeans_iterations": config.index.kmeans_iterations,
            "leaf_scoring": config.index.leaf_scoring.value,
            "seed": config.index.seed,
        },
    }


def _digest(payload: Any) -> str:
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    ).hexdigest()


def compute_config_fingerprint(config: VectorSearchConfig) -> str:
    """Hex SHA256 of a canonical JSON rendering of the index-relevant config."""
    return _digest(_index_subset(config))


def compute_documents_fingerprint(records: Iterable[StorageRecord]) -> str:
    """Hex SHA256 over the sorted (id, checksum) pairs of stored documents."""
    return _digest(sorted([r.id, r.checksum] for r in records))


def load_build_record(path: Path) -> BuildRecord | None:
    """Load the build record at ``path``; None if missing or unreadable."""
    if not path.exists():
        return None
    try:
        return BuildRecord.model_validate_json(path.read_text())
    except (OSError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable build record {path}: {e}")
        return None


def save_build_record(path: Path, record: BuildRecord) -> None:
    """Persist the build record (creating the parent directory if needed)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(record.model_dump_json(indent=2))


def should_rebuild(record: BuildRecord, config_fingerprint: str, documents_fingerprint: str) -> bool:
    """True if the recorded build no longer matches config or documents."""
    return (
        record.config_fingerprint != config_fingerprint
        or record.documents_fingerprint != documents_fingerprint
    )


def build_record(
    config_fingerprint: str, documents_fingerprint: str, document_count: int
) -> BuildRecord:
    """Create a BuildRecord stamped with the current time."""
    return BuildRecord(
        built_at=datetime.now(UTC),
        config_fingerprint=config_fingerprint,
        documents_fingerprint=documents_fingerprint,
        document_count=document_count,
    )


class RebuildDecision(TypedDict):
    action: str  # "skip" | "rebuild"
    reason: str
    built_at: str | None


def plan_rebuild(
    record: BuildRecord | None,
    config_fingerprint: str,
    documents_fingerprint: str,
    *,
    force: bool = False,
) -> RebuildDecision:
    """Decide whether the index must be rebuilt.

    Args:
        record: Previously saved BuildRecord (or None)
        config_fingerprint: Current config fingerprint
        documents_fingerprint: Current documents fingerprint
        force: Rebuild regardless of the record

    Returns:
        RebuildDecision with action and reason
    """
    built_at = record.built_at.isoformat() if record else None
    if force:
        return {"action": "rebuild", "reason": "force", "built_at": built_at}

    if record is None:
        return {"action": "rebuild", "reason": "no_record", "built_at": None}

    if should_rebuild(record, config_fingerprint, documents_fingerprint):
        if record.config_fingerprint != config_fingerprint:
            reason = "config_changed"
        else:
            reason = "documents_changed"
        return {"action": "rebuild", "reason": reason, "built_at": built_at}

    return {"action": "skip", "reason": "up_to_date", "built_at": built_at}
