"""Pytest configuration for test discovery and shared fixtures.

This file ensures that:
- `src/` is importable
- Tests get small, deterministic document sets to work with
"""

from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Ensure src directory is in path for imports
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from vector_engine.models import Document  # noqa: E402


def make_document(
    doc_id: str,
    embedding: list[float],
    content: str | None = None,
    **kwargs: object,
) -> Document:
    """Build a Document with a fixed creation time."""
    kwargs.setdefault("created_at", datetime(2025, 1, 1, tzinfo=UTC))
    return Document(
        id=doc_id,
        content=content if content is not None else f"Document {doc_id}",
        embedding=embedding,
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture
def make_doc():
    """Factory fixture for documents."""
    return make_document


@pytest.fixture
def abc_documents() -> list[Document]:
    """A=[1,0], B=[0,1], C=[0.9,0.1]."""
    return [
        make_document("A", [1.0, 0.0]),
        make_document("B", [0.0, 1.0]),
        make_document("C", [0.9, 0.1]),
    ]
