"""Embedded vector similarity search engine.

Stores documents with compressed embeddings, indexes them in a hierarchical
cluster tree for approximate nearest-neighbour search, and ranks and
thresholds the results. Embeddings come from an external provider.

Architecture:
    - similarity: Metrics, score normalization, batch scoring
    - codec: Quantization + zlib compression of embeddings
    - storage: Durable document packages with checksummed metadata cache
    - clustering: k-means, agglomerative and DBSCAN clustering
    - index: Hierarchical k-means tree with pruned search
    - ranking: Relevance boosts, multi-factor ranking, diversity reranking
    - thresholds: Dynamic relevance cutoffs and grid-search optimisation
    - engine: Async facade wiring everything together

Usage:
    >>> from vector_engine import VectorSearchEngine, load_config
    >>> engine = VectorSearchEngine.from_config(load_config("default"))
    >>> await engine.insert(document)
    >>> results = await engine.search(SearchRequest(vector=query, limit=5))
"""

__version__ = "0.1.0"

from vector_engine.config import VectorSearchConfig, load_config
from vector_engine.engine import VectorSearchEngine
from vector_engine.errors import VectorEngineError
from vector_engine.models import Document, RankedResult, SearchRequest, SearchResult

__all__ = [
    "Document",
    "RankedResult",
    "SearchRequest",
    "SearchResult",
    "VectorEngineError",
    "VectorSearchConfig",
    "VectorSearchEngine",
    "load_config",
]
