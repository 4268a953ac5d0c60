"""Configuration management for the vector engine using Hydra.

All configuration is loaded from YAML files in conf/vector_search/.
This module provides typed config objects and validation.
"""

from pathlib import Path

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field

from vector_engine.codec import CodecConfig
from vector_engine.embedding import EmbeddingConfig
from vector_engine.index import IndexConfig
from vector_engine.ranking import RankingConfig
from vector_engine.similarity import SimilarityConfig
from vector_engine.storage import StorageConfig
from vector_engine.thresholds import ThresholdConfig


class VectorSearchConfig(BaseModel):
    """Top-level configuration for the vector engine.

    Attributes:
        similarity: Metric and dimension-mismatch policy
        codec: Embedding quantization and compression
        storage: Document store location, batching and quota
        index: Hierarchical index shape and search defaults
        ranking: Reranking boosts and diversity filter
        thresholds: Threshold calibration defaults
        embedding: Description of the stored embeddings
    """

    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    codec: CodecConfig = Field(default_factory=CodecConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)


def load_config(
    config_name: str = "default",
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> VectorSearchConfig:
    """Load vector engine configuration from Hydra YAML files.

    Args:
        config_name: Name of config file (without .yaml extension)
        config_path: Path to config directory (defaults to conf/vector_search/)
        overrides: List of config overrides (e.g., ["index.max_points_per_node=50"])

    Returns:
        Validated configuration object

    Example:
        >>> config = load_config("default")
        >>> config.similarity.metric
        <MetricKind.COSINE: 'cosine'>

        >>> config = load_config("default", overrides=["codec.quantization_bits=12"])
        >>> config.codec.quantization_bits
        12
    """
    if config_path is None:
        # Default to conf/vector_search/ relative to repo root
        repo_root = Path(__file__).parent.parent.parent
        config_path = repo_root / "conf" / "vector_search"

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config directory not found: {config_path}\n" f"Create it with: mkdir -p {config_path}"
        )

    with initialize_config_dir(
        config_dir=str(config_path), version_base=None, job_name="vector_search"
    ):
        cfg: DictConfig = compose(config_name=config_name, overrides=overrides or [])

    # Convert OmegaConf to dict and validate with Pydantic
    config_dict = OmegaConf.to_container(cfg, resolve=True)
    return VectorSearchConfig(**config_dict)  # type: ignore


def create_default_config() -> dict[str, dict[str, object]]:
    """Create a default configuration dictionary for bootstrapping.

    Returns:
        Dictionary suitable for writing to YAML
    """
    return {
        "similarity": {
            "metric": "cosine",
            "scale": None,
            "dimension_policy": "strict",
        },
        "codec": {
            "quantization_bits": 8,
            "compression_level": 6,
        },
        "storage": {
            "root": "${oc.env:VECTOR_ENGINE_ROOT,data/vector_store}",
            "in_memory": False,
            "batch_size": 10,
            "max_workers": 4,
            "max_bytes": None,
        },
        "index": {
            "max_points_per_node": 100,
            "max_branching": 4,
            "kmeans_iterations": 10,
            "pruning_factor": 2.0,
            "leaf_scoring": "exact",
            "candidate_multiplier": 3,
            "seed": None,
        },
        "ranking": {
            "diversity_enabled": True,
            "diversity_threshold": 0.85,
            "ideal_length": 200,
            "source_boosts": {"official": 1.2, "verified": 1.1, "community": 0.9},
        },
        "thresholds": {
            "default_percentile": 0.8,
            "optimization_steps": 100,
            "search_min": 0.0,
            "search_max": 1.0,
            "histogram_bins": 100,
        },
        "embedding": {
            "model": "external",
            "version": "v1",
            "dimensions": None,
            "batch_size": 100,
        },
    }
