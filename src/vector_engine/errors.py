"""Exception hierarchy for the vector engine.

Every error raised by the engine derives from ``VectorEngineError`` so callers can
catch engine failures in one place. Integrity failures (``ChecksumMismatch``,
``DecompressionFailure``) are fatal for the affected record and are never retried.
"""

from __future__ import annotations

from typing import Any


class VectorEngineError(Exception):
    """Base exception for all vector engine errors.

    Attributes:
        message: Human-readable error description
        code: Optional numeric error code for programmatic handling
        context: Optional diagnostic details (document id, dimensions, paths)
    """

    def __init__(self, message: str, code: int | None = None, context: Any = None):
        self.message = message
        self.code = code
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.message} (Code: {self.code})"
        return self.message


class CompressionFailure(VectorEngineError):
    """Raised when an embedding cannot be quantized or compressed."""

    def __init__(self, message: str, context: Any = None):
        super().__init__(message, 1001, context)


class DecompressionFailure(VectorEngineError):
    """Raised when stored bytes cannot be decoded back into a vector."""

    def __init__(self, message: str, context: Any = None):
        super().__init__(message, 1002, context)


class ChecksumMismatch(VectorEngineError):
    """Raised when the checksum of bytes read from disk disagrees with the record."""

    def __init__(self, message: str, context: Any = None):
        super().__init__(message, 1003, context)


class DocumentNotFound(VectorEngineError):
    """Raised when an operation targets a document id that is not stored."""

    def __init__(self, document_id: str, context: Any = None):
        super().__init__(f"Document {document_id!r} not found", 404, context)
        self.document_id = document_id


class DimensionMismatch(VectorEngineError):
    """Raised when two vectors (or a vector and an index) disagree on dimension."""

    def __init__(self, expected: int, actual: int, context: Any = None):
        super().__init__(f"Expected {expected} dimensions, got {actual}", 422, context)
        self.expected = expected
        self.actual = actual


class StorageFull(VectorEngineError):
    """Raised when a write would exceed the configured storage quota."""

    def __init__(self, message: str, context: Any = None):
        super().__init__(message, 507, context)


class IndexNotBuilt(VectorEngineError):
    """Raised by operations that need a built index tree (e.g. saving it)."""

    def __init__(self, message: str = "Index has not been built", context: Any = None):
        super().__init__(message, 409, context)


class OperationCancelled(VectorEngineError):
    """Raised when a long-running operation observes a cancellation request."""

    def __init__(self, message: str = "Operation cancelled", context: Any = None):
        super().__init__(message, 499, context)


class ConfigurationError(VectorEngineError):
    """Raised for invalid or missing configuration."""

    pass
