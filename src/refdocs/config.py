"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Literal, Optional, Tuple

from refdocs.embedding.encoder import DEFAULT_DIMENSION, DEFAULT_MODEL

DEFAULT_BASE_URL = "https://svelte.dev"


@dataclass(frozen=True, slots=True)
class DocSource:
    """A remote document the refresh cycle keeps cached."""

    key: str
    package: Optional[str] = None


DEFAULT_SOURCES: Tuple[DocSource, ...] = (
    DocSource("/llms.txt"),
    DocSource("/llms-full.txt"),
    DocSource("/llms-small.txt"),
    DocSource("/docs/svelte/llms.txt", package="svelte"),
    DocSource("/docs/kit/llms.txt", package="kit"),
    DocSource("/docs/cli/llms.txt", package="cli"),
)


def _get_default_db_path() -> Path:
    """Get the default database path based on execution context."""
    # When running from source, prefer local data/ if it exists
    local_db = Path("data/refdocs.db")
    if local_db.exists():
        return local_db
    return Path.home() / ".cache" / "refdocs" / "refdocs.db"


@dataclass(slots=True)
class ScoringConfig:
    """Tunable constants of the lexical relevance function.

    Only the relative orderings matter: type weights must keep
    api > error > tutorial > example > general, the exact-match bonus must be
    greater than 1.0 and section weights must not increase with depth.
    """

    tf_weight: float = 0.4
    depth_weight: float = 0.3
    cutoff: float = 0.2
    exact_match_bonus: float = 1.5
    type_weights: Dict[str, float] = field(
        default_factory=lambda: {
            "api": 1.5,
            "error": 1.4,
            "tutorial": 1.3,
            "example": 1.2,
            "general": 1.0,
        }
    )
    term_weights: Dict[str, float] = field(default_factory=dict)
    root_section_weight: float = 2.0
    section_weight_step: float = 0.25
    min_section_weight: float = 1.0
    min_term_length: int = 3

    def section_weight(self, level: int) -> float:
        # Text before the first heading sits at the root.
        depth = max(level, 1)
        return max(
            self.min_section_weight,
            self.root_section_weight - self.section_weight_step * (depth - 1),
        )

    def type_weight(self, doc_type: str) -> float:
        return self.type_weights.get(doc_type, self.type_weights.get("general", 1.0))


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    base_url: str = DEFAULT_BASE_URL
    sources: Tuple[DocSource, ...] = DEFAULT_SOURCES
    embedding_backend: Literal["sentence-transformers", "hashing"] = "sentence-transformers"
    model_name: str = DEFAULT_MODEL
    dimension: int = DEFAULT_DIMENSION
    chunk_size: int = 40_000
    token_budget: int = 150_000
    http_timeout: float = 30.0
    index_batch_size: int = 500
    vector_batch_size: int = 100
    search_strategy: Literal["lexical", "vector"] = "lexical"
    vector_min_similarity: float = 0.0
    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()

    @classmethod
    def from_env(cls, **overrides: object) -> "AppConfig":
        """Build a config from ``REFDOCS_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        env: Dict[str, object] = {}
        if os.environ.get("REFDOCS_DB"):
            env["db_path"] = Path(os.environ["REFDOCS_DB"])
        if os.environ.get("REFDOCS_BASE_URL"):
            env["base_url"] = os.environ["REFDOCS_BASE_URL"].rstrip("/")
        if os.environ.get("REFDOCS_EMBEDDING_BACKEND"):
            env["embedding_backend"] = os.environ["REFDOCS_EMBEDDING_BACKEND"]
        if os.environ.get("REFDOCS_MODEL"):
            env["model_name"] = os.environ["REFDOCS_MODEL"]
        if os.environ.get("REFDOCS_SEARCH_STRATEGY"):
            env["search_strategy"] = os.environ["REFDOCS_SEARCH_STRATEGY"]
        env.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**env)  # type: ignore[arg-type]

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def package_for(self, key: str) -> Optional[str]:
        for source in self.sources:
            if source.key == key:
                return source.package
        return None
