"""Markdown structure helpers: tokens, sections, paragraphs and heading trees."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple

from refdocs.models import SectionNode

HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
FENCE_RE = re.compile(r"^\s*(```|~~~)")
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
TOKEN_SPLIT_RE = re.compile(r"\W+")


@dataclass(slots=True)
class Section:
    """A heading and the text up to the next heading.

    ``path`` holds the titles from the outermost heading down to this one; the
    preamble before the first heading has an empty path and level 0.
    """

    title: str
    level: int
    path: Tuple[str, ...]
    text: str


@dataclass(slots=True)
class Paragraph:
    text: str
    path: Tuple[str, ...]
    level: int


def tokenize(text: str, *, min_length: int = 3) -> List[str]:
    """Case-fold and split on non-word characters, dropping short tokens."""
    return [token for token in TOKEN_SPLIT_RE.split(text.lower()) if len(token) >= min_length]


def iter_sections(content: str) -> Iterator[Section]:
    """Split markdown into sections, ignoring headings inside fenced code."""
    stack: List[Tuple[int, str]] = []
    seen: Dict[Tuple[str, ...], Dict[str, int]] = {}
    title, level, path = "", 0, ()
    lines: List[str] = []
    in_fence = False

    for line in content.split("\n"):
        if FENCE_RE.match(line):
            in_fence = not in_fence
        match = None if in_fence else HEADING_RE.match(line)
        if match is None:
            lines.append(line)
            continue

        if level > 0 or "".join(lines).strip():
            yield Section(title=title, level=level, path=path, text="\n".join(lines))

        level = len(match.group(1))
        title = match.group(2).strip().rstrip("#").strip()
        while stack and stack[-1][0] >= level:
            stack.pop()
        parent = tuple(t for _, t in stack)
        # Sibling headings with the same title get an ordinal suffix.
        counts = seen.setdefault(parent, {})
        counts[title] = counts.get(title, 0) + 1
        if counts[title] > 1:
            title = f"{title} ({counts[title]})"
        stack.append((level, title))
        path = parent + (title,)
        lines = [line]

    if level > 0 or "".join(lines).strip():
        yield Section(title=title, level=level, path=path, text="\n".join(lines))


def extract_hierarchy(content: str) -> SectionNode:
    """Build the heading tree of ``content`` under a synthetic level-0 root."""
    root = SectionNode(title="", level=0)
    nodes: Dict[Tuple[str, ...], SectionNode] = {(): root}
    for section in iter_sections(content):
        if section.level == 0:
            continue
        node = SectionNode(title=section.title, level=section.level)
        nodes[section.path[:-1]].children.append(node)
        nodes[section.path] = node
    return root


def split_paragraphs(content: str) -> List[Paragraph]:
    """Blank-line separated paragraphs, each tagged with its section path."""
    paragraphs: List[Paragraph] = []
    for section in iter_sections(content):
        for block in PARAGRAPH_SPLIT_RE.split(section.text):
            if block.strip():
                paragraphs.append(Paragraph(text=block.strip("\n"), path=section.path, level=section.level))
    return paragraphs


def detect_doc_type(content: str, key: str) -> str:
    """Classify a document as api, tutorial, example, error or general."""
    lower_content = content.lower()
    lower_key = key.lower()

    if "/api/" in lower_key or "api reference" in lower_content:
        return "api"
    if "/tutorial/" in lower_key or "tutorial:" in lower_content:
        return "tutorial"
    if "/examples/" in lower_key or re.search(r"example\s*\d+:", lower_content):
        return "example"
    if "/errors/" in lower_key or "error code:" in lower_content:
        return "error"
    return "general"
