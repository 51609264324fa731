"""Core refdocs data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from refdocs.errors import BatchWriteError

DocType = Literal["api", "tutorial", "example", "error", "general"]
DOC_TYPES: Tuple[str, ...] = ("api", "tutorial", "example", "error", "general")
FetchStatus = Literal["cached", "retrieved", "fallback"]


@dataclass(slots=True)
class CachedDocument:
    """A cached copy of one remote document and its validators."""

    key: str
    content: str
    last_modified: str
    last_checked: str
    etag: Optional[str] = None
    package: Optional[str] = None
    doc_type: str = "general"
    hierarchy: Optional[str] = None


@dataclass(slots=True)
class SectionNode:
    """Node of a document's heading tree. The synthetic root has level 0."""

    title: str
    level: int
    children: List["SectionNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "level": self.level,
            "children": [child.to_dict() for child in self.children],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SectionNode":
        return cls(
            title=data["title"],
            level=int(data["level"]),
            children=[cls.from_dict(child) for child in data.get("children", [])],
        )

    def find_path(self, title: str) -> List[str]:
        """Return the titles from the root down to the first node named ``title``."""
        if self.title == title:
            return [self.title] if self.title else []
        for child in self.children:
            path = child.find_path(title)
            if path:
                return ([self.title] if self.title else []) + path
        return []


@dataclass(slots=True)
class IndexedTerm:
    document_key: str
    term: str
    frequency: int
    section_importance: float


@dataclass(slots=True)
class SearchQuery:
    """Validated search request."""

    text: str
    doc_type: str = "all"
    context_depth: int = 1
    include_hierarchy: bool = True
    package_filter: Optional[str] = None
    limit: int = 10


@dataclass(slots=True)
class SearchResult:
    document_key: str
    excerpt: str
    hierarchy_path: List[str]
    relevance_score: float
    doc_type: str
    section_importance: float


@dataclass(slots=True)
class ChunkSet:
    chunks: List[str]
    total_size: int
    chunk_size: int

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


@dataclass(slots=True)
class ChunkPage:
    """One page of a chunked document."""

    text: str
    total_chunks: int
    current_chunk: int
    next_chunk_available: bool
    document_key: Optional[str] = None


@dataclass(slots=True)
class CompressedDocument:
    text: str
    original_size: int
    compressed_size: int
    compression_ratio: str
    estimated_tokens: int
    over_budget: bool = False


@dataclass(slots=True)
class DocumentView:
    """Full or compressed document content as served to callers."""

    key: str
    text: str
    compressed: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FetchOutcome:
    document: CachedDocument
    status: FetchStatus

    @property
    def retrieved(self) -> bool:
        return self.status == "retrieved"


@dataclass(slots=True)
class RefreshReport:
    """Summary of a refresh or re-index run."""

    requested: int = 0
    retrieved: int = 0
    unchanged: int = 0
    fallback: int = 0
    fetch_failures: Dict[str, str] = field(default_factory=dict)
    committed_batches: List[int] = field(default_factory=list)
    failed_batch: Optional[int] = None
    aborted_batches: List[int] = field(default_factory=list)
    documents_indexed: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failed_batch is None

    def record_fetch(self, status: str) -> None:
        if status == "retrieved":
            self.retrieved += 1
        elif status == "cached":
            self.unchanged += 1
        else:
            self.fallback += 1

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise BatchWriteError(self)
