"""Pydantic models for vector engine data structures.

All documents, storage records and search results flowing through the engine
are validated against these schemas, so malformed input fails fast.
"""

import math
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class Document(BaseModel):
    """A stored document: text content plus its embedding.

    Documents are immutable once stored; an update is a full replace.

    Attributes:
        id: Unique identifier, also used as the on-disk file name
        content: Raw text content
        embedding: Embedding vector produced by an external provider
        metadata: Arbitrary JSON-compatible metadata (``view_count``, ``created_at``...)
        source: Optional provenance label (``official``, ``community``...)
        collection: Logical collection name
        created_at: Creation timestamp
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=200)
    content: str
    embedding: list[float] = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None
    collection: str = Field(default="default", min_length=1)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Ensure the id is safe to use as a file name."""
        if "/" in v or "\\" in v or v.startswith(".") or "\x00" in v:
            raise ValueError(f"id must not contain path separators or start with '.', got {v!r}")
        return v

    @field_validator("embedding")
    @classmethod
    def validate_embedding_values(cls, v: list[float]) -> list[float]:
        """Ensure embedding contains valid finite floats."""
        for i, val in enumerate(v):
            if not math.isfinite(val):
                raise ValueError(f"Embedding contains non-finite value at index {i}: {val}")
        return v

    @field_validator("created_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)

    @property
    def dimension(self) -> int:
        return len(self.embedding)


class StorageRecord(BaseModel):
    """Metadata-cache entry describing one persisted document.

    Attributes:
        id: Document id
        dimension: Embedding dimensionality
        compressed_size: Size of the compressed embedding in bytes
        checksum: CRC32 (8 upper-case hex digits) of the persisted package bytes
        compression_ratio: Original float32 size / compressed size
        created_at: Document creation timestamp
        file_size: Size of the package file in bytes
        collection: Collection the document belongs to
    """

    id: str
    dimension: int = Field(ge=1)
    compressed_size: int = Field(ge=0)
    checksum: str = Field(pattern="^[0-9A-F]{8}$")
    compression_ratio: float = Field(ge=0.0)
    created_at: datetime
    file_size: int = Field(ge=0)
    collection: str = "default"


class StorageStatistics(BaseModel):
    """Aggregate statistics over the metadata cache."""

    total_documents: int = Field(ge=0)
    total_bytes: int = Field(ge=0)
    average_compression_ratio: float = Field(ge=0.0)
    storage_efficiency: float = Field(ge=0.0)

    @property
    def total_size_mb(self) -> float:
        return self.total_bytes / (1024 * 1024)


class BatchItemResult(BaseModel):
    """Outcome of storing one document within a batch.

    Exactly one of ``record`` or ``error`` is set.
    """

    id: str
    record: StorageRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RankedResult(BaseModel):
    """A ranked candidate.

    Attributes:
        item: The candidate document
        score: Raw similarity (or weighted factor total for multi-factor ranking)
        relevance_score: Final ordering key
        factor_scores: Per-factor breakdown for multi-factor ranking
    """

    item: Document
    score: float
    relevance_score: float
    factor_scores: dict[str, float] | None = None

    def explanation(self) -> str:
        """Human-readable score breakdown."""
        parts = [f"Overall Score: {self.relevance_score * 100:.2f}%"]
        if self.factor_scores:
            parts.append("Factors:")
            for name, score in sorted(self.factor_scores.items(), key=lambda kv: -kv[1]):
                parts.append(f"  - {name}: {score * 100:.2f}%")
        return "\n".join(parts)


class SearchRequest(BaseModel):
    """A vector search request.

    Attributes:
        vector: Query embedding
        limit: Maximum number of results to return
        min_score: Minimum normalized similarity for a result to be returned
        collection: Optional collection filter
        pruning_factor: Overrides the index pruning factor for this request
        use_index: Set False to score every stored document instead of index candidates
    """

    vector: list[float] = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=1000)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)
    collection: str | None = None
    pruning_factor: float | None = Field(default=None, ge=1.0)
    use_index: bool = True


class SearchResult(BaseModel):
    """A single search result with similarity score.

    Attributes:
        document: The matched document
        score: Normalized similarity (0.0-1.0, higher is better)
        raw_score: Raw metric value
        rank: Result rank in the returned list (1-indexed)
    """

    document: Document
    score: float = Field(ge=0.0, le=1.0)
    raw_score: float
    rank: int = Field(ge=1)


class IndexStats(BaseModel):
    """Statistics about the engine.

    Attributes:
        total_documents: Number of stored documents
        total_collections: Number of distinct collections
        node_count: Nodes in the current index tree (0 when unbuilt)
        leaf_count: Leaf nodes in the current index tree
        depth: Maximum node depth
        last_built: Timestamp of the last index build
        storage_size_mb: Size of persisted packages in MB
        unreadable_documents: Stored documents skipped because their package
            failed to read back (checksum or decompression errors)
    """

    total_documents: int = Field(ge=0)
    total_collections: int = Field(ge=0)
    node_count: int = Field(ge=0)
    leaf_count: int = Field(ge=0)
    depth: int = Field(ge=0)
    last_built: datetime | None = None
    storage_size_mb: float = Field(ge=0.0)
    unreadable_documents: int = Field(default=0, ge=0)


class BuildRecord(BaseModel):
    """Record of the last successful index build.

    Attributes:
        built_at: When the tree was built
        config_fingerprint: Hash of the index-relevant configuration
        documents_fingerprint: Hash of the (id, checksum) pairs that were indexed
        document_count: Number of documents indexed
    """

    built_at: datetime
    config_fingerprint: str
    documents_fingerprint: str
    document_count: int = Field(ge=0)
