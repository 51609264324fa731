"""SQLite document store: cached documents, lexical index rows and embeddings."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from refdocs.embedding.vectors import VECTOR_DTYPE, cosine_similarity, decode_vector, encode_vector
from refdocs.errors import DimensionMismatchError
from refdocs.models import CachedDocument, IndexedTerm

LOGGER = logging.getLogger(__name__)


def _vector_distance_cos(a: bytes | None, b: bytes | None) -> float | None:
    """SQL function: cosine distance between two packed float32 blobs."""
    if a is None or b is None:
        return None
    return 1.0 - cosine_similarity(decode_vector(a), decode_vector(b))


class DocumentStore:
    """Persistence layer for cached documents, term index and embeddings.

    Writes go through a single connection serialised by a re-entrant lock.
    Reads use a second connection so that, in WAL mode, they see the last
    committed state instead of waiting for an in-progress batch.
    """

    def __init__(self, db_path: Path, *, dimension: int) -> None:
        self.db_path = Path(db_path)
        self.dimension = dimension
        self._lock = threading.RLock()
        self._read_lock = threading.Lock()
        self._depth = 0
        self._conn = self._connect()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            self._ensure_schema()
        except Exception:
            self._conn.close()
            raise
        self._reader = self._connect()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.create_function("vector_distance_cos", 2, _vector_distance_cos, deterministic=True)
        return conn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._reader.close()
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in one write transaction; nested use joins the outer one."""
        with self._lock:
            outer = self._depth == 0
            if outer:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outer:
                self._conn.execute("COMMIT")

    def _read(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._read_lock:
            return self._reader.execute(sql, tuple(params)).fetchall()

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    key TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    last_modified TEXT NOT NULL,
                    last_checked TEXT NOT NULL,
                    etag TEXT,
                    package TEXT,
                    doc_type TEXT NOT NULL DEFAULT 'general',
                    hierarchy TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS documents_updated
                AFTER UPDATE ON documents
                BEGIN
                    UPDATE documents SET updated_at = CURRENT_TIMESTAMP WHERE key = NEW.key;
                END;
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS search_index (
                    doc_key TEXT NOT NULL,
                    term TEXT NOT NULL,
                    frequency INTEGER NOT NULL CHECK (frequency >= 1),
                    section_importance REAL NOT NULL,
                    PRIMARY KEY (doc_key, term)
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_search_index_term
                    ON search_index(term)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS embeddings (
                    doc_key TEXT PRIMARY KEY,
                    dimension INTEGER NOT NULL,
                    embedding BLOB NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_meta (
                    name TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

            row = conn.execute(
                "SELECT value FROM store_meta WHERE name = 'embedding_dimension'"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO store_meta(name, value) VALUES ('embedding_dimension', ?)",
                    (str(self.dimension),),
                )
                LOGGER.info("Initialised store %s (embedding dimension %d)", self.db_path, self.dimension)
            elif int(row["value"]) != self.dimension:
                raise DimensionMismatchError(int(row["value"]), self.dimension)

    # -- documents ---------------------------------------------------------

    def put(self, document: CachedDocument) -> None:
        """Insert or overwrite the cached document for ``document.key``."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents(
                    key, content, last_modified, last_checked, etag, package, doc_type, hierarchy
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    content = excluded.content,
                    last_modified = excluded.last_modified,
                    last_checked = excluded.last_checked,
                    etag = excluded.etag,
                    package = excluded.package,
                    doc_type = excluded.doc_type,
                    hierarchy = excluded.hierarchy
                """,
                (
                    document.key,
                    document.content,
                    document.last_modified,
                    document.last_checked,
                    document.etag,
                    document.package,
                    document.doc_type,
                    document.hierarchy,
                ),
            )

    def get(self, key: str) -> Optional[CachedDocument]:
        rows = self._read(
            """
            SELECT key, content, last_modified, last_checked, etag, package, doc_type, hierarchy
            FROM documents WHERE key = ?
            """,
            (key,),
        )
        if not rows:
            return None
        row = rows[0]
        return CachedDocument(
            key=row["key"],
            content=row["content"],
            last_modified=row["last_modified"],
            last_checked=row["last_checked"],
            etag=row["etag"],
            package=row["package"],
            doc_type=row["doc_type"],
            hierarchy=row["hierarchy"],
        )

    def delete(self, key: str) -> bool:
        """Remove a document with its terms and embedding."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM search_index WHERE doc_key = ?", (key,))
            conn.execute("DELETE FROM embeddings WHERE doc_key = ?", (key,))
            cursor = conn.execute("DELETE FROM documents WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def list_documents(self) -> List[Dict[str, Any]]:
        """List cached documents without their content."""
        rows = self._read(
            """
            SELECT
                d.key AS key,
                d.package AS package,
                d.doc_type AS doc_type,
                d.last_modified AS last_modified,
                d.last_checked AS last_checked,
                d.etag AS etag,
                LENGTH(d.content) AS size,
                (SELECT COUNT(*) FROM search_index s WHERE s.doc_key = d.key) AS term_count
            FROM documents d
            ORDER BY d.key
            """
        )
        return [dict(row) for row in rows]

    def iter_documents(self) -> Iterator[CachedDocument]:
        """Yield every cached document, one row at a time."""
        keys = [row["key"] for row in self._read("SELECT key FROM documents ORDER BY key")]
        for key in keys:
            document = self.get(key)
            if document is not None:
                yield document

    def get_stats(self) -> Dict[str, int]:
        row = self._read(
            """
            SELECT
                (SELECT COUNT(*) FROM documents) AS document_count,
                (SELECT COUNT(*) FROM search_index) AS term_count,
                (SELECT COUNT(*) FROM embeddings) AS embedding_count,
                (SELECT COALESCE(SUM(LENGTH(content)), 0) FROM documents) AS total_size
            """
        )[0]
        return {name: int(row[name]) for name in row.keys()}

    # -- lexical index -----------------------------------------------------

    def put_terms(self, key: str, terms: Sequence[IndexedTerm]) -> None:
        """Replace every index row of ``key`` with ``terms``."""
        for term in terms:
            if term.document_key != key:
                raise ValueError(f"Term {term.term!r} belongs to {term.document_key}, not {key}")
            if term.frequency < 1:
                raise ValueError(f"Term {term.term!r} has frequency {term.frequency}")

        with self.transaction() as conn:
            conn.execute("DELETE FROM search_index WHERE doc_key = ?", (key,))
            conn.executemany(
                """
                INSERT INTO search_index(doc_key, term, frequency, section_importance)
                VALUES (?, ?, ?, ?)
                """,
                [(key, t.term, t.frequency, t.section_importance) for t in terms],
            )

    def get_terms(self, key: str) -> List[IndexedTerm]:
        rows = self._read(
            """
            SELECT doc_key, term, frequency, section_importance
            FROM search_index WHERE doc_key = ? ORDER BY term
            """,
            (key,),
        )
        return [
            IndexedTerm(
                document_key=row["doc_key"],
                term=row["term"],
                frequency=int(row["frequency"]),
                section_importance=float(row["section_importance"]),
            )
            for row in rows
        ]

    def candidate_keys(
        self,
        terms: Sequence[str],
        *,
        doc_type: Optional[str] = None,
        package: Optional[str] = None,
    ) -> List[str]:
        """Keys of documents containing at least one of ``terms``."""
        if not terms:
            return []
        placeholders = ",".join("?" for _ in terms)
        sql = f"""
            SELECT DISTINCT s.doc_key AS key
            FROM search_index s
            JOIN documents d ON d.key = s.doc_key
            WHERE s.term IN ({placeholders})
        """
        params: List[Any] = list(terms)
        if doc_type:
            sql += " AND d.doc_type = ?"
            params.append(doc_type)
        if package:
            sql += " AND d.package = ?"
            params.append(package)
        sql += " ORDER BY s.doc_key"
        return [row["key"] for row in self._read(sql, params)]

    # -- embeddings --------------------------------------------------------

    def _as_blob(self, vector: bytes | np.ndarray | Sequence[float]) -> bytes:
        blob = vector if isinstance(vector, (bytes, bytearray, memoryview)) else encode_vector(vector)
        blob = bytes(blob)
        components = len(blob) // VECTOR_DTYPE.itemsize
        if len(blob) % VECTOR_DTYPE.itemsize or components != self.dimension:
            raise DimensionMismatchError(self.dimension, components)
        return blob

    def put_vector(self, key: str, vector: bytes | np.ndarray | Sequence[float]) -> None:
        self.put_vectors([(key, vector)])

    def put_vectors(self, items: Sequence[Tuple[str, bytes | np.ndarray]]) -> None:
        """Upsert several embeddings in one statement."""
        rows = [(key, self.dimension, sqlite3.Binary(self._as_blob(vector))) for key, vector in items]
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO embeddings(doc_key, dimension, embedding)
                VALUES (?, ?, ?)
                ON CONFLICT(doc_key) DO UPDATE SET
                    dimension = excluded.dimension,
                    embedding = excluded.embedding
                """,
                rows,
            )

    def get_vector(self, key: str) -> Optional[np.ndarray]:
        rows = self._read("SELECT embedding FROM embeddings WHERE doc_key = ?", (key,))
        if not rows:
            return None
        return decode_vector(bytes(rows[0]["embedding"]))

    def nearest(
        self,
        vector: bytes,
        k: int = 10,
        *,
        doc_type: Optional[str] = None,
        package: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        """Return the ``k`` most similar stored embeddings as ``(key, similarity)``.

        The ranking runs inside SQLite (``ORDER BY ... LIMIT``), so only ``k``
        rows ever reach Python.
        """
        blob = self._as_blob(vector)
        sql = """
            SELECT e.doc_key AS key, vector_distance_cos(e.embedding, ?) AS distance
            FROM embeddings e
            JOIN documents d ON d.key = e.doc_key
            WHERE 1=1
        """
        params: List[Any] = [sqlite3.Binary(blob)]
        if doc_type:
            sql += " AND d.doc_type = ?"
            params.append(doc_type)
        if package:
            sql += " AND d.package = ?"
            params.append(package)
        sql += " ORDER BY distance ASC, e.doc_key ASC LIMIT ?"
        params.append(int(k))
        return [(row["key"], 1.0 - float(row["distance"])) for row in self._read(sql, params)]
