"""Structured error types raised by the refdocs core.

Every error carries a machine-readable ``kind`` and a human-readable message so
that callers (CLI, web layer, protocol adapters) can decide whether a retry
makes sense without parsing strings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from refdocs.models import RefreshReport


class DocsError(Exception):
    """Base exception for refdocs errors."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class FetchError(DocsError):
    """Remote retrieval failed and no cached copy was available."""

    kind = "fetch_failed"
    retryable = True

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"Failed to fetch {key}: {message}")


class CacheInconsistencyError(DocsError):
    """Freshness check reported a cached entry that does not exist."""

    kind = "cache_inconsistency"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Cache inconsistency detected for {key}")


class DimensionMismatchError(DocsError):
    """Two vectors (or a vector and the store) disagree on dimension."""

    kind = "dimension_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")


class ChunkIndexError(DocsError):
    """Requested chunk number is outside ``[1, total_chunks]``."""

    kind = "invalid_chunk"

    def __init__(self, chunk_number: int, total_chunks: int) -> None:
        self.chunk_number = chunk_number
        self.total_chunks = total_chunks
        super().__init__(
            f"Chunk {chunk_number} out of range: document has {total_chunks} chunk(s)"
        )


class InvalidQueryError(DocsError):
    """Query was empty or had invalid options."""

    kind = "invalid_query"


class DocumentNotFoundError(DocsError):
    kind = "not_found"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Document not found: {key}")


class BatchWriteError(DocsError):
    """An index batch failed; earlier batches stay committed.

    Attributes:
        report: The refresh report describing committed and aborted batches.
    """

    kind = "batch_write"
    retryable = True

    def __init__(self, report: "RefreshReport") -> None:
        self.report = report
        committed = ", ".join(str(i) for i in report.committed_batches) or "none"
        super().__init__(
            f"Batch {report.failed_batch} failed ({report.error}); "
            f"committed batches: {committed}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            committed_batches=list(self.report.committed_batches),
            failed_batch=self.report.failed_batch,
            aborted_batches=list(self.report.aborted_batches),
        )
        return data
