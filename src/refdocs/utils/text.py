"""Text helpers: deterministic chunking and compression of large documents."""

from __future__ import annotations

import logging
import math
import re
from typing import Iterable, List

from refdocs.errors import ChunkIndexError
from refdocs.models import ChunkPage, ChunkSet, CompressedDocument

LOGGER = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

_HTML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_CODE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1")
_ITALIC_RE = re.compile(r"(?<!\w)(\*|_)(?=\S)(.+?)(?<=\S)\1(?!\w)")
_INLINE_SPACE_RE = re.compile(r"[ \t]+")


def _check_chunk_size(chunk_size: int) -> None:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")


def count_chunks(content: str, chunk_size: int) -> int:
    _check_chunk_size(chunk_size)
    return math.ceil(len(content) / chunk_size)


def chunk_text(content: str, chunk_size: int = 40_000) -> List[str]:
    """Split text into contiguous, non-overlapping chunks of ``chunk_size`` chars.

    ``"".join(chunk_text(c, n)) == c`` for any content.
    """
    _check_chunk_size(chunk_size)
    return [content[start : start + chunk_size] for start in range(0, len(content), chunk_size)]


def chunk_document(content: str, chunk_size: int = 40_000) -> ChunkSet:
    return ChunkSet(chunks=chunk_text(content, chunk_size), total_size=len(content), chunk_size=chunk_size)


def get_chunk(content: str, chunk_size: int, chunk_number: int) -> ChunkPage:
    """Return chunk ``chunk_number`` (1-based) computed directly from offsets."""
    total = count_chunks(content, chunk_size)
    if chunk_number < 1 or chunk_number > total:
        raise ChunkIndexError(chunk_number, total)
    start = (chunk_number - 1) * chunk_size
    return ChunkPage(
        text=content[start : start + chunk_size],
        total_chunks=total,
        current_chunk=chunk_number,
        next_chunk_available=chunk_number < total,
    )


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def compress_text(content: str, *, token_budget: int = 150_000) -> CompressedDocument:
    """Strip markup that costs tokens but carries little meaning.

    Removes HTML comments, fenced code blocks, link targets, heading markers and
    emphasis markers, then collapses whitespace and blank lines. Exceeding the
    token budget only logs a warning.
    """
    text = _HTML_COMMENT_RE.sub("", content)
    text = _CODE_BLOCK_RE.sub("", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _HEADING_RE.sub("", text)
    text = _BOLD_RE.sub(r"\2", text)
    text = _ITALIC_RE.sub(r"\2", text)
    text = normalize_whitespace(_INLINE_SPACE_RE.sub(" ", line) for line in text.splitlines())

    estimated_tokens = round(len(text) / CHARS_PER_TOKEN)
    over_budget = estimated_tokens > token_budget
    if over_budget:
        LOGGER.warning(
            "Compressed content still large: ~%d tokens (budget %d)", estimated_tokens, token_budget
        )

    ratio = (1 - len(text) / len(content)) * 100 if content else 0.0
    return CompressedDocument(
        text=text,
        original_size=len(content),
        compressed_size=len(text),
        compression_ratio=f"{ratio:.1f}%",
        estimated_tokens=estimated_tokens,
        over_budget=over_budget,
    )
