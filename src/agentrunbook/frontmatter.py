"""
Front-Matter Parser — splits a document into YAML metadata and body.

A front-matter block is recognized only when the very first line is
exactly ``---``. It ends at the next line that is exactly ``---`` (or the
YAML document-end marker ``...``). Everything after the closing marker is
the body.

Example:

    ---
    name: feature-development
    description: Multi-phase feature workflow
    allowed-tools: Read, Edit, Bash
    flags: [--skip-tests, --draft-pr]
    ---
    # Feature Development

    ## Phase 1: Discovery
    ...
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from .errors import MalformedMetadata
from .models import Document, DocumentKind, Metadata

logger = logging.getLogger(__name__)

OPEN_MARKER = "---"
CLOSE_MARKERS = ("---", "...")


def parse_front_matter(
    text: str,
    path: str | Path | None = None,
) -> tuple[Metadata, str]:
    """
    Parse an optional leading YAML block.

    Returns (metadata, body). With no block, metadata is empty and the
    whole input is the body.

    Raises:
        MalformedMetadata: unterminated block, invalid YAML, or a block
            that is not a mapping.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip("\r\n").rstrip() != OPEN_MARKER:
        return Metadata(), text

    for index in range(1, len(lines)):
        if lines[index].rstrip("\r\n").rstrip() in CLOSE_MARKERS:
            block = "".join(lines[1:index])
            body = "".join(lines[index + 1:])
            break
    else:
        raise MalformedMetadata("unterminated front-matter block (missing closing '---')", path)

    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as e:
        raise MalformedMetadata(f"invalid YAML: {e}", path) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedMetadata(
            f"front-matter must be a YAML mapping, got {type(data).__name__}", path
        )

    logger.debug(f"Parsed front-matter keys: {sorted(map(str, data))}")
    return Metadata(data), body.lstrip("\r\n")


def load_document(
    path: str | Path,
    kind: DocumentKind | None = None,
) -> Document:
    """Load a markdown document from disk."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")

    text = path.read_text(encoding="utf-8")
    document = Document.from_text(text, path=path, kind=kind or infer_kind(path))
    logger.info(f"Loaded document '{document.name}' from {path}")
    return document


def infer_kind(path: Path) -> DocumentKind:
    """Guess the document kind from the directory it lives in."""
    for parent in path.parents:
        name = parent.name.lower()
        if name in ("agents", "agent"):
            return DocumentKind.AGENT
        if name in ("commands", "command", "tools"):
            return DocumentKind.COMMAND
        if name in ("workflows", "workflow"):
            return DocumentKind.WORKFLOW
    return DocumentKind.DOCUMENT
